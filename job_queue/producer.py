"""
Prompt Producer — API-side relay that publishes prompt tasks to the queue.

submit() acknowledges acceptance, not completion: ACCEPTED means the broker
took the message, nothing more. Nothing is persisted locally while in flight.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from aio_pika import DeliveryMode, Message
from aio_pika.exceptions import DeliveryError

from config.settings import QueueConfig, get_settings
from job_queue.connection import ConnectionManager
from job_queue.message import TaskMessage

logger = structlog.get_logger()


class SubmitStatus(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"          # client fault, never reaches the queue
    UNAVAILABLE = "unavailable"    # transient, caller should retry
    ERROR = "error"                # unexpected publish failure


@dataclass(frozen=True)
class SubmitResult:
    status: SubmitStatus
    reason: str = ""

    @property
    def accepted(self) -> bool:
        return self.status is SubmitStatus.ACCEPTED


ACCEPTED = SubmitResult(SubmitStatus.ACCEPTED, "Prompt request received and is being processed.")
MISSING_SOURCE = SubmitResult(SubmitStatus.REJECTED, "Either promptText or promptId must be provided.")
NO_CHANNEL = SubmitResult(SubmitStatus.UNAVAILABLE, "Service temporarily unavailable. Please try again later.")
OVERLOADED = SubmitResult(SubmitStatus.UNAVAILABLE, "Service temporarily overloaded. Please try again.")
PUBLISH_FAILED = SubmitResult(SubmitStatus.ERROR, "Failed to publish prompt request due to an internal error.")


class PromptProducer:
    """
    Publishes TaskMessages through its own ConnectionManager.

    Usage:
        producer = create_producer()
        await producer.start()
        result = await producer.submit(prompt_text="Summarize this")
        await producer.stop()
    """

    def __init__(self, manager: ConnectionManager):
        self.manager = manager

    @property
    def queue_name(self) -> str:
        return self.manager.queue_name

    async def start(self) -> bool:
        """Initial connection attempt. Failure is retried in the background."""
        return await self.manager.connect()

    async def stop(self):
        await self.manager.close()

    async def submit(
        self,
        prompt_text: Optional[str] = None,
        prompt_id: Optional[str] = None,
        requested_model: Optional[str] = None,
        enhance: Optional[bool] = None,
    ) -> SubmitResult:
        message = TaskMessage(
            prompt_text=prompt_text,
            requested_model=requested_model,
            enhance=enhance,
            prompt_id=prompt_id,
        )
        if not message.has_source:
            logger.warning("submit_rejected", reason="promptText or promptId is required")
            return MISSING_SOURCE

        channel = self.manager.channel
        if channel is None:
            logger.error("submit_channel_unavailable", queue=self.queue_name,
                         state=self.manager.state.value)
            # Recovery nudge for later calls; this call does not wait on it
            self.manager.request_connect()
            return NO_CHANNEL

        payload = message.to_dict()
        try:
            # Re-declared in case the queue was deleted or the channel is new
            await channel.declare_queue(self.queue_name, durable=True)
            await channel.default_exchange.publish(
                Message(
                    body=message.to_json(),
                    content_type="application/json",
                    delivery_mode=DeliveryMode.PERSISTENT,
                ),
                routing_key=self.queue_name,
            )
        except DeliveryError as e:
            logger.error("submit_publish_refused", queue=self.queue_name,
                         payload=payload, error=str(e))
            return OVERLOADED
        except Exception as e:
            # Channel may be broken; the manager's close handling reconnects
            logger.error("submit_publish_failed", queue=self.queue_name,
                         payload=payload, error=str(e))
            return PUBLISH_FAILED

        logger.info("submit_published", queue=self.queue_name, payload=payload)
        return ACCEPTED


def create_producer(config: QueueConfig = None, connect_fn=None) -> PromptProducer:
    """Factory: build a producer with its own connection manager."""
    config = config or get_settings().queue
    manager = ConnectionManager(
        config.amqp_url,
        queue_name=config.queue_name,
        role="producer",
        reconnect_delay=config.reconnect_delay,
        connect_fn=connect_fn,
    )
    return PromptProducer(manager)
