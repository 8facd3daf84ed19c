"""
Prompt Consumer — Pulls prompt tasks from the queue and drives processing.

Runs inside the worker process with its own ConnectionManager.

Topology:
  ┌──────────────┐       ┌──────────────────────┐       ┌────────────┐
  │ API producer │──pub──▶│ prompt_tasks_queue   │──────▶│  Consumer  │
  └──────────────┘       │ (durable, manual ack) │       └─────┬──────┘
                         └──────────────────────┘             │
                                                 ack ◀── ok ───┤
                                  nack(requeue=False) ◀── fail ┘

Failed messages are never requeued: the usual causes (bad input, unknown
promptId, missing credentials) fail the same way on every redelivery.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Optional

from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue

from config.settings import QueueConfig, get_settings
from core.prompt_service import PromptProcessor
from job_queue.connection import ConnectionManager
from job_queue.message import MessageDecodeError, TaskMessage

logger = structlog.get_logger()


class PromptConsumer:
    """
    Consumes prompt tasks one at a time and settles each before the next.

    Usage:
        consumer = create_consumer(prompt_service)
        if await consumer.start():
            await consumer.run_until_stopped(stop_event)
    """

    def __init__(
        self,
        processor: Optional[PromptProcessor],
        url: str,
        queue_name: str,
        reconnect_delay: float,
        prefetch_count: int = 1,
        connect_fn=None,
    ):
        self.processor = processor
        self.prefetch_count = prefetch_count
        self.manager = ConnectionManager(
            url,
            queue_name=queue_name,
            role="consumer",
            reconnect_delay=reconnect_delay,
            on_ready=self._subscribe,
            connect_fn=connect_fn,
        )
        self._lock = asyncio.Lock()
        self._running = False
        self.processed = 0
        self.discarded = 0

    @property
    def queue_name(self) -> str:
        return self.manager.queue_name

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> bool:
        """Connect and subscribe. Returns False without connecting if there is no processor."""
        if self.processor is None:
            logger.warning("prompt_consumer_not_started",
                           reason="processing capability unavailable (likely missing LLM API key)")
            return False
        self._running = True
        logger.info("prompt_consumer_starting", queue=self.queue_name)
        await self.manager.connect()
        return True

    async def run_until_stopped(self, stop_event: asyncio.Event):
        """Block until stop_event is set, then shut down."""
        try:
            await stop_event.wait()
        finally:
            await self.stop()

    async def stop(self):
        self._running = False
        await self.manager.close()
        logger.info("prompt_consumer_stopped",
                    processed=self.processed, discarded=self.discarded)

    async def _subscribe(self, channel: AbstractChannel, queue: AbstractQueue):
        await channel.set_qos(prefetch_count=self.prefetch_count)
        await queue.consume(self.handle_message, no_ack=False)
        logger.info("prompt_consumer_waiting", queue=self.queue_name)

    async def handle_message(self, message: Optional[AbstractIncomingMessage]):
        """
        Settle one delivery.

        Flow:
        1. Empty delivery (consumer cancelled) → log only
        2. Decode → discard if malformed
        3. Require promptText or promptId → discard if neither
        4. Dispatch → ack on success, discard on any failure
        """
        async with self._lock:
            if message is None:
                logger.warning("prompt_consumer_empty_delivery", queue=self.queue_name)
                return

            raw = message.body.decode("utf-8", errors="replace")
            logger.info("prompt_message_received", queue=self.queue_name, body=raw)

            try:
                task = TaskMessage.from_json(message.body)
            except MessageDecodeError as e:
                logger.error("prompt_message_malformed", error=str(e), body=raw)
                await self._discard(message)
                return

            if not task.has_source:
                logger.error("prompt_message_invalid",
                             reason="promptText or promptId must be provided", body=raw)
                await self._discard(message)
                return

            try:
                result = await self.processor.process_prompt(
                    task.prompt_text,
                    task.requested_model,
                    bool(task.enhance),
                    task.prompt_id,
                )
            except Exception as e:
                logger.error("prompt_processing_failed", error=str(e),
                             error_type=type(e).__name__, body=raw)
                await self._discard(message)
                return

            try:
                await message.ack()
            except Exception as e:
                logger.error("prompt_message_ack_failed", error=str(e))
                return
            self.processed += 1
            logger.info("prompt_message_acked", result=result)

    async def _discard(self, message: AbstractIncomingMessage):
        """Reject without requeue; the message is gone for good."""
        try:
            await message.nack(requeue=False)
        except Exception as e:
            logger.error("prompt_message_nack_failed", error=str(e))
            return
        self.discarded += 1
        logger.warning("prompt_message_discarded")


def create_consumer(processor: Optional[PromptProcessor], config: QueueConfig = None,
                    connect_fn=None) -> PromptConsumer:
    """Factory: build a consumer with its own connection manager."""
    config = config or get_settings().queue
    return PromptConsumer(
        processor,
        config.amqp_url,
        queue_name=config.queue_name,
        reconnect_delay=config.reconnect_delay,
        prefetch_count=config.prefetch_count,
        connect_fn=connect_fn,
    )
