"""Tests for the durable Redis queue."""

import pytest

from wabridge.infra.errors import QueueError
from wabridge.infra.queue import DurableQueue, dead_letter_channel, queue_channel
from wabridge.models.queue import Direction, IncomingPayload, OutgoingPayload, QueueMessage


def outgoing(text="hi", to="79991234567", account_id="acc-1"):
    return QueueMessage.create(Direction.OUTGOING, account_id, OutgoingPayload(to=to, text=text))


class TestChannels:
    """Test channel naming."""

    def test_live_channels(self):
        assert queue_channel(Direction.INCOMING) == "incoming:queue"
        assert queue_channel(Direction.OUTGOING) == "outgoing:queue"

    def test_dead_letter_channels(self):
        assert dead_letter_channel(Direction.INCOMING) == "incoming:dead-letter"
        assert dead_letter_channel(Direction.OUTGOING) == "outgoing:dead-letter"


class TestDurableQueue:
    """Test enqueue/dequeue/retry behavior."""

    @pytest.mark.asyncio
    async def test_dequeue_returns_oldest_first(self, queue):
        first, second, third = outgoing("1"), outgoing("2"), outgoing("3")
        for message in (first, second, third):
            await queue.enqueue("outgoing:queue", message)

        popped = [await queue.dequeue("outgoing:queue", timeout=1) for _ in range(3)]

        assert [m.id for m in popped] == [first.id, second.id, third.id]
        assert [m.payload.text for m in popped] == ["1", "2", "3"]

    @pytest.mark.asyncio
    async def test_dequeue_empty_returns_none(self, queue):
        assert await queue.dequeue("outgoing:queue", timeout=1) is None

    @pytest.mark.asyncio
    async def test_incoming_payload_round_trips_from_alias(self, queue):
        payload = IncomingPayload(
            **{"from": "79991234567@s.whatsapp.net"},
            counterpart_id="79991234567",
            text="hello",
            event_time=1700000000000,
        )
        message = QueueMessage.create(Direction.INCOMING, "acc-1", payload)
        await queue.enqueue("incoming:queue", message)

        popped = await queue.dequeue("incoming:queue", timeout=1)

        assert isinstance(popped.payload, IncomingPayload)
        assert popped.payload.from_ == "79991234567@s.whatsapp.net"
        assert popped.payload.event_time == 1700000000000

    @pytest.mark.asyncio
    async def test_retry_increments_and_reenqueues(self, queue):
        message = outgoing()

        requeued = await queue.retry(message, max_retries=3)

        assert requeued is True
        assert await queue.length("outgoing:queue") == 1
        popped = await queue.dequeue("outgoing:queue", timeout=1)
        assert popped.retry_count == 1

    @pytest.mark.asyncio
    async def test_retry_dead_letters_when_budget_spent(self, queue):
        message = outgoing()
        message.retry_count = 3

        requeued = await queue.retry(message, max_retries=3)

        assert requeued is False
        assert await queue.length("outgoing:queue") == 0
        assert await queue.length("outgoing:dead-letter") == 1

    @pytest.mark.asyncio
    async def test_each_message_is_tried_max_retries_plus_one_times(self, queue):
        message = outgoing()
        await queue.enqueue("outgoing:queue", message)

        attempts = 0
        while True:
            current = await queue.dequeue("outgoing:queue", timeout=1)
            if current is None:
                break
            attempts += 1
            await queue.retry(current, max_retries=3)

        assert attempts == 4
        dead = await queue.peek("outgoing:dead-letter")
        assert [m.id for m in dead] == [message.id]
        assert dead[0].retry_count == 3

    @pytest.mark.asyncio
    async def test_requeue_keeps_retry_count_and_order(self, queue):
        first, second = outgoing("1"), outgoing("2")
        await queue.enqueue("outgoing:queue", second)
        first.retry_count = 1

        await queue.requeue(first)
        popped = await queue.dequeue("outgoing:queue", timeout=1)

        assert popped.id == first.id
        assert popped.retry_count == 1

    @pytest.mark.asyncio
    async def test_malformed_entry_is_parked(self, queue, fake_redis):
        await fake_redis.lpush("outgoing:queue", "{not json")

        assert await queue.dequeue("outgoing:queue", timeout=1) is None
        assert list(fake_redis.lists["outgoing:malformed"]) == ["{not json"]

    @pytest.mark.asyncio
    async def test_peek_returns_oldest_first_without_removing(self, queue):
        messages = [outgoing(str(i)) for i in range(5)]
        for message in messages:
            await queue.dead_letter(message)

        peeked = await queue.peek("outgoing:dead-letter", limit=3)

        assert [m.id for m in peeked] == [m.id for m in messages[:3]]
        assert await queue.length("outgoing:dead-letter") == 5

    @pytest.mark.asyncio
    async def test_replay_dead_letters_resets_retry_budget(self, queue):
        messages = [outgoing(str(i)) for i in range(3)]
        for message in messages:
            message.retry_count = 3
            await queue.dead_letter(message)

        moved = await queue.replay_dead_letters(Direction.OUTGOING, limit=2)

        assert moved == 2
        assert await queue.length("outgoing:dead-letter") == 1
        replayed = [await queue.dequeue("outgoing:queue", timeout=1) for _ in range(2)]
        assert [m.id for m in replayed] == [m.id for m in messages[:2]]
        assert all(m.retry_count == 0 for m in replayed)

    @pytest.mark.asyncio
    async def test_broker_failure_raises_queue_error(self, queue, fake_redis):
        fake_redis.fail = True

        with pytest.raises(QueueError):
            await queue.enqueue("outgoing:queue", outgoing())
        with pytest.raises(QueueError):
            await queue.dequeue("outgoing:queue", timeout=1)
        assert await queue.ping() is False

    @pytest.mark.asyncio
    async def test_not_connected_raises_queue_error(self):
        with pytest.raises(QueueError):
            await DurableQueue().enqueue("outgoing:queue", outgoing())

    @pytest.mark.asyncio
    async def test_disconnect_closes_client(self, queue, fake_redis):
        await queue.connect()
        await queue.disconnect()

        assert fake_redis.closed is True
