"""Tests for the relay processor worker loops."""

import asyncio

import httpx
import pytest
from unittest.mock import AsyncMock

from wabridge.infra.errors import (
    ConfigurationError,
    PermanentRejectError,
    RateLimitedError,
    TransientNetworkError,
)
from wabridge.models.queue import Direction, OutgoingPayload, QueueMessage
from wabridge.workers.relay_processor import RelayProcessor


def outgoing(text="hi"):
    return QueueMessage.create(Direction.OUTGOING, "acc-1", OutgoingPayload(to="79991234567", text=text))


@pytest.fixture
def processor(queue):
    return RelayProcessor(queue, max_retries=3, dequeue_timeout=1, error_backoff=0.01)


class TestRegistration:
    """Test handler registration."""

    def test_duplicate_registration_rejected(self, processor):
        processor.register(Direction.OUTGOING, AsyncMock())

        with pytest.raises(ValueError):
            processor.register(Direction.OUTGOING, AsyncMock())


class TestProcess:
    """Test the per-message failure policy."""

    @pytest.mark.asyncio
    async def test_success(self, processor, queue):
        handler = AsyncMock()
        processor.register(Direction.OUTGOING, handler)
        message = outgoing()

        outcome = await processor.process(message)

        assert outcome == "success"
        handler.assert_awaited_once_with("acc-1", message.payload)
        assert await queue.length("outgoing:queue") == 0

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, processor, queue):
        processor.register(Direction.OUTGOING, AsyncMock(side_effect=TransientNetworkError("down")))

        outcome = await processor.process(outgoing())

        assert outcome == "retried"
        requeued = await queue.dequeue("outgoing:queue", timeout=1)
        assert requeued.retry_count == 1

    @pytest.mark.asyncio
    async def test_unknown_exception_uses_retry_budget(self, processor, queue):
        processor.register(Direction.OUTGOING, AsyncMock(side_effect=RuntimeError("boom")))
        message = outgoing()
        message.retry_count = 3

        outcome = await processor.process(message)

        assert outcome == "dead_lettered"
        assert await queue.length("outgoing:dead-letter") == 1

    @pytest.mark.asyncio
    async def test_permanent_reject_is_dead_lettered_immediately(self, processor, queue):
        processor.register(
            Direction.OUTGOING, AsyncMock(side_effect=PermanentRejectError("bad", status_code=400))
        )

        outcome = await processor.process(outgoing())

        assert outcome == "dead_lettered"
        assert await queue.length("outgoing:queue") == 0
        dead = await queue.peek("outgoing:dead-letter")
        assert dead[0].retry_count == 0

    @pytest.mark.asyncio
    async def test_configuration_error_is_dropped(self, processor, queue):
        processor.register(Direction.OUTGOING, AsyncMock(side_effect=ConfigurationError("no scope")))

        outcome = await processor.process(outgoing())

        assert outcome == "dropped"
        assert await queue.length("outgoing:queue") == 0
        assert await queue.length("outgoing:dead-letter") == 0

    @pytest.mark.asyncio
    async def test_rate_limited_is_requeued_without_counting(self, processor, queue):
        processor.register(Direction.OUTGOING, AsyncMock(side_effect=RateLimitedError("slow down")))
        message = outgoing()

        outcome = await processor.process(message)

        assert outcome == "rate_limited"
        requeued = await queue.dequeue("outgoing:queue", timeout=1)
        assert requeued.id == message.id
        assert requeued.retry_count == 0

    @pytest.mark.asyncio
    async def test_http_status_error_is_classified(self, processor, queue):
        request = httpx.Request("POST", "https://example.test")
        error = httpx.HTTPStatusError(
            "bad request", request=request, response=httpx.Response(400, request=request)
        )
        processor.register(Direction.OUTGOING, AsyncMock(side_effect=error))

        outcome = await processor.process(outgoing())

        assert outcome == "dead_lettered"


class TestLoops:
    """Test the worker loops end to end against the fake broker."""

    @pytest.mark.asyncio
    async def test_loop_processes_in_order_and_stops(self, processor, queue):
        seen = []

        async def handler(account_id, payload):
            seen.append(payload.text)

        processor.register(Direction.OUTGOING, handler)
        for text in ("a", "b", "c"):
            await queue.enqueue("outgoing:queue", outgoing(text))

        processor.start()
        assert processor.running is True
        for _ in range(100):
            if len(seen) == 3:
                break
            await asyncio.sleep(0.01)
        await processor.stop()

        assert seen == ["a", "b", "c"]
        assert processor.running is False

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_handler(self, processor, queue):
        started = asyncio.Event()
        finished = []

        async def handler(account_id, payload):
            started.set()
            await asyncio.sleep(0.05)
            finished.append(payload.text)

        processor.register(Direction.OUTGOING, handler)
        await queue.enqueue("outgoing:queue", outgoing("slow"))

        processor.start()
        await asyncio.wait_for(started.wait(), timeout=1)
        await processor.stop()

        assert finished == ["slow"]

    @pytest.mark.asyncio
    async def test_broker_error_backs_off_and_recovers(self, processor, queue, fake_redis):
        seen = []

        async def handler(account_id, payload):
            seen.append(payload.text)

        processor.register(Direction.OUTGOING, handler)
        fake_redis.fail = True
        processor.start()
        await asyncio.sleep(0.03)

        fake_redis.fail = False
        await queue.enqueue("outgoing:queue", outgoing("after"))
        for _ in range(100):
            if seen:
                break
            await asyncio.sleep(0.01)
        await processor.stop()

        assert seen == ["after"]
