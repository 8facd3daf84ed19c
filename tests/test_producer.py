"""
Tests for the API-side prompt producer.

Covers the four submit outcomes: accepted, rejected, unavailable
(no channel / broker refused), error.
"""
import json

import pytest
import pytest_asyncio
from aio_pika import DeliveryMode, Message
from structlog.testing import capture_logs

from config.settings import QueueConfig
from job_queue.connection import ConnectionState
from job_queue.producer import (
    ACCEPTED, MISSING_SOURCE, NO_CHANNEL, OVERLOADED, PUBLISH_FAILED,
    SubmitStatus, create_producer,
)

from tests.fakes import FakeBroker, broker_nack


@pytest_asyncio.fixture
async def producer(broker, queue_config):
    p = create_producer(queue_config, connect_fn=broker.connect)
    await p.start()
    yield p
    await p.stop()


def published(broker) -> Message:
    publish = broker.last.fake_channel.default_exchange.publish
    publish.assert_awaited_once()
    args, kwargs = publish.await_args
    assert kwargs["routing_key"] == "prompt_tasks_queue"
    return args[0]


# ─── Accepted ─────────────────────────────────────────────────

class TestAccepted:
    @pytest.mark.asyncio
    async def test_prompt_text_published_persistently(self, producer, broker):
        result = await producer.submit(prompt_text="Test prompt")

        assert result == ACCEPTED
        assert result.accepted
        assert result.reason == "Prompt request received and is being processed."

        message = published(broker)
        assert json.loads(message.body) == {"promptText": "Test prompt"}
        assert message.content_type == "application/json"
        assert message.delivery_mode == DeliveryMode.PERSISTENT

    @pytest.mark.asyncio
    async def test_prompt_id_only(self, producer, broker):
        result = await producer.submit(prompt_id="test_id")
        assert result.status is SubmitStatus.ACCEPTED
        assert json.loads(published(broker).body) == {"promptId": "test_id"}

    @pytest.mark.asyncio
    async def test_all_fields_pass_through(self, producer, broker):
        result = await producer.submit(
            prompt_text="Hello", prompt_id="greeting",
            requested_model="gpt-4", enhance=True,
        )
        assert result.accepted
        assert json.loads(published(broker).body) == {
            "promptText": "Hello",
            "requestedModel": "gpt-4",
            "enhance": True,
            "promptId": "greeting",
        }

    @pytest.mark.asyncio
    async def test_queue_redeclared_before_publish(self, producer, broker):
        channel = broker.last.fake_channel
        channel.declare_queue.reset_mock()

        await producer.submit(prompt_text="x")

        channel.declare_queue.assert_awaited_once_with("prompt_tasks_queue", durable=True)

    @pytest.mark.asyncio
    async def test_publish_logged(self, producer):
        with capture_logs() as logs:
            await producer.submit(prompt_text="Test prompt")
        entry = [e for e in logs if e["event"] == "submit_published"][0]
        assert entry["payload"] == {"promptText": "Test prompt"}


# ─── Rejected ─────────────────────────────────────────────────

class TestRejected:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {},
        {"prompt_text": ""},
        {"prompt_id": ""},
        {"requested_model": "gpt-4", "enhance": True},
    ])
    async def test_missing_source(self, producer, broker, kwargs):
        result = await producer.submit(**kwargs)

        assert result == MISSING_SOURCE
        assert result.reason == "Either promptText or promptId must be provided."
        broker.last.fake_channel.default_exchange.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejection_does_not_touch_connection(self, queue_config):
        broker = FakeBroker(ConnectionError("down"))
        p = create_producer(QueueConfig(amqp_url=queue_config.amqp_url, reconnect_delay_ms=60000),
                            connect_fn=broker.connect)
        await p.start()
        try:
            assert (await p.submit()).status is SubmitStatus.REJECTED
            assert p.manager.request_connect() is not None  # nothing was in flight
        finally:
            await p.stop()


# ─── Unavailable ──────────────────────────────────────────────

class TestUnavailable:
    @pytest.mark.asyncio
    async def test_no_channel_triggers_one_connect_attempt(self, queue_config):
        broker = FakeBroker(ConnectionError("Initial connection failed"))
        config = QueueConfig(amqp_url=queue_config.amqp_url, reconnect_delay_ms=60000)
        p = create_producer(config, connect_fn=broker.connect)
        try:
            assert await p.start() is False
            assert broker.calls == 1

            with capture_logs() as logs:
                result = await p.submit(prompt_text="Test prompt")

            assert result == NO_CHANNEL
            assert result.reason == "Service temporarily unavailable. Please try again later."
            assert "submit_channel_unavailable" in [e["event"] for e in logs]
            # The nudge runs in the background; submit returned before it started
            assert broker.calls == 1

            await p.manager._connect_task
            assert broker.calls == 2
            assert p.manager.state is ConnectionState.CONNECTED

            assert (await p.submit(prompt_text="Test prompt")).accepted
        finally:
            await p.stop()

    @pytest.mark.asyncio
    async def test_repeated_submits_share_one_attempt(self, queue_config):
        broker = FakeBroker(ConnectionError("down"))
        config = QueueConfig(amqp_url=queue_config.amqp_url, reconnect_delay_ms=60000)
        p = create_producer(config, connect_fn=broker.connect)
        try:
            await p.start()
            for _ in range(3):
                assert (await p.submit(prompt_text="x")).status is SubmitStatus.UNAVAILABLE
            await p.manager._connect_task
            assert broker.calls == 2
        finally:
            await p.stop()

    @pytest.mark.asyncio
    async def test_broker_refusal_is_overloaded(self, producer, broker):
        broker.last.fake_channel.default_exchange.publish.side_effect = broker_nack()

        with capture_logs() as logs:
            result = await producer.submit(prompt_text="Test prompt")

        assert result == OVERLOADED
        refused = [e for e in logs if e["event"] == "submit_publish_refused"][0]
        assert refused["error"]
        assert refused["payload"] == {"promptText": "Test prompt"}
        assert result.status is SubmitStatus.UNAVAILABLE
        assert result.reason == "Service temporarily overloaded. Please try again."


# ─── Error ────────────────────────────────────────────────────

class TestError:
    @pytest.mark.asyncio
    async def test_publish_exception(self, producer, broker):
        broker.last.fake_channel.default_exchange.publish.side_effect = RuntimeError("Publish error")

        with capture_logs() as logs:
            result = await producer.submit(prompt_text="Test prompt")

        assert result == PUBLISH_FAILED
        assert result.reason == "Failed to publish prompt request due to an internal error."
        failed = [e for e in logs if e["event"] == "submit_publish_failed"][0]
        assert failed["error"] == "Publish error"
        assert failed["payload"] == {"promptText": "Test prompt"}

    @pytest.mark.asyncio
    async def test_declare_exception(self, producer, broker):
        broker.last.fake_channel.declare_queue.side_effect = RuntimeError("channel closed")
        result = await producer.submit(prompt_text="Test prompt")
        assert result.status is SubmitStatus.ERROR
        broker.last.fake_channel.default_exchange.publish.assert_not_awaited()
