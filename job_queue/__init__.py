"""
Prompt Queue — Relays prompt tasks between the API and the worker.

- API producer PUBLISHES prompt tasks to a durable RabbitMQ queue
- Worker consumer PULLS them one at a time and acks or discards each
- Each side owns a ConnectionManager that reconnects on a flat delay
"""
