"""
Tests for the worker-side prompt consumer.

Covers:
  - startup guard when no processor is available
  - subscription (prefetch, manual ack) and resubscription after reconnect
  - settlement: ack on success, nack(requeue=False) on every failure
  - one message in flight at a time
"""
import asyncio
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from structlog.testing import capture_logs

from job_queue.consumer import create_consumer

from tests.fakes import FakeConnection, FakeIncomingMessage


@pytest_asyncio.fixture
async def consumer(processor, queue_config, broker):
    c = create_consumer(processor, queue_config, connect_fn=broker.connect)
    await c.start()
    yield c
    await c.stop()


def assert_discarded(message):
    message.nack.assert_awaited_once_with(requeue=False)
    message.ack.assert_not_awaited()


# ─── Startup ──────────────────────────────────────────────────

class TestStartup:
    @pytest.mark.asyncio
    async def test_no_processor_does_not_connect(self, queue_config, broker):
        c = create_consumer(None, queue_config, connect_fn=broker.connect)

        with capture_logs() as logs:
            assert await c.start() is False

        assert broker.calls == 0
        assert not c.running
        assert "prompt_consumer_not_started" in [e["event"] for e in logs]

    @pytest.mark.asyncio
    async def test_subscribes_with_manual_ack(self, consumer, broker):
        channel = broker.last.fake_channel
        channel.set_qos.assert_awaited_once_with(prefetch_count=1)
        channel.queue.consume.assert_awaited_once_with(consumer.handle_message, no_ack=False)
        assert consumer.running

    @pytest.mark.asyncio
    async def test_resubscribes_after_reconnect(self, consumer, broker):
        first = broker.last
        first.drop()

        await consumer.manager._reconnect_task

        second = broker.last
        assert second is not first
        second.fake_channel.declare_queue.assert_awaited_once_with("prompt_tasks_queue", durable=True)
        second.fake_channel.queue.consume.assert_awaited_once_with(consumer.handle_message, no_ack=False)

    @pytest.mark.asyncio
    async def test_run_until_stopped(self, processor, queue_config, broker):
        c = create_consumer(processor, queue_config, connect_fn=broker.connect)
        await c.start()
        stop = asyncio.Event()
        stop.set()

        await c.run_until_stopped(stop)

        assert not c.running
        broker.last.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stop_during_reconnect_does_not_resubscribe(self, processor, queue_config):
        late = FakeConnection()
        entered = asyncio.Event()
        release = asyncio.Event()
        calls = []

        async def connect(url):
            calls.append(url)
            if len(calls) == 1:
                raise ConnectionError("down")
            entered.set()
            await release.wait()
            return late

        c = create_consumer(processor, queue_config, connect_fn=connect)
        await c.start()
        await entered.wait()

        await c.stop()
        release.set()
        for _ in range(5):
            await asyncio.sleep(0)

        late.fake_channel.queue.consume.assert_not_awaited()
        late.close.assert_awaited_once()
        assert not c.manager.is_connected


# ─── Settlement ───────────────────────────────────────────────

class TestHandleMessage:
    @pytest.mark.asyncio
    async def test_success_acks(self, consumer, processor):
        message = FakeIncomingMessage({"promptText": "Hello"})

        await consumer.handle_message(message)

        processor.process_prompt.assert_awaited_once_with("Hello", None, False, None)
        message.ack.assert_awaited_once()
        message.nack.assert_not_awaited()
        assert consumer.processed == 1

    @pytest.mark.asyncio
    async def test_all_fields_forwarded(self, consumer, processor):
        message = FakeIncomingMessage({
            "promptText": "Hello", "requestedModel": "gpt-4",
            "enhance": True, "promptId": "greeting",
        })
        await consumer.handle_message(message)
        processor.process_prompt.assert_awaited_once_with("Hello", "gpt-4", True, "greeting")

    @pytest.mark.asyncio
    async def test_unknown_fields_ignored(self, consumer, processor):
        message = FakeIncomingMessage({"promptId": "greeting", "schema": 2})
        await consumer.handle_message(message)
        processor.process_prompt.assert_awaited_once_with(None, None, False, "greeting")
        message.ack.assert_awaited_once()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        b"not json",
        b"\xff\xfe",
        "[1, 2]",
        {"promptText": 42},
        {"promptText": "x", "enhance": "yes"},
    ])
    async def test_malformed_discarded(self, consumer, processor, body):
        message = FakeIncomingMessage(body)

        with capture_logs() as logs:
            await consumer.handle_message(message)

        assert_discarded(message)
        processor.process_prompt.assert_not_awaited()
        assert "prompt_message_malformed" in [e["event"] for e in logs]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        {},
        {"requestedModel": "gpt-4"},
        {"promptText": "", "promptId": ""},
    ])
    async def test_missing_source_discarded(self, consumer, processor, body):
        message = FakeIncomingMessage(body)
        await consumer.handle_message(message)
        assert_discarded(message)
        processor.process_prompt.assert_not_awaited()
        assert consumer.discarded == 1

    @pytest.mark.asyncio
    async def test_processing_failure_discarded(self, consumer, processor):
        processor.process_prompt.side_effect = RuntimeError("Processing error")
        message = FakeIncomingMessage({"promptText": "Hello"})

        with capture_logs() as logs:
            await consumer.handle_message(message)

        assert_discarded(message)
        failed = [e for e in logs if e["event"] == "prompt_processing_failed"][0]
        assert failed["error"] == "Processing error"
        assert consumer.processed == 0

    @pytest.mark.asyncio
    async def test_empty_delivery_ignored(self, consumer, processor):
        with capture_logs() as logs:
            await consumer.handle_message(None)
        processor.process_prompt.assert_not_awaited()
        assert [e["log_level"] for e in logs] == ["warning"]

    @pytest.mark.asyncio
    async def test_ack_failure_logged(self, consumer):
        message = FakeIncomingMessage({"promptText": "Hello"})
        message.ack.side_effect = RuntimeError("channel closed")

        with capture_logs() as logs:
            await consumer.handle_message(message)

        assert "prompt_message_ack_failed" in [e["event"] for e in logs]
        message.nack.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_one_message_at_a_time(self, consumer, processor):
        active = 0
        peak = 0

        async def slow(*args):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return "done"

        processor.process_prompt = AsyncMock(side_effect=slow)
        messages = [FakeIncomingMessage({"promptText": f"p{i}"}) for i in range(3)]

        await asyncio.gather(*(consumer.handle_message(m) for m in messages))

        assert peak == 1
        assert consumer.processed == 3
        for m in messages:
            m.ack.assert_awaited_once()
