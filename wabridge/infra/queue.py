"""Durable FIFO message queue on Redis lists."""

import logging
from typing import List, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from wabridge.infra.config import config
from wabridge.infra.errors import QueueError
from wabridge.models.queue import Direction, QueueMessage

logger = logging.getLogger(__name__)


def queue_channel(direction: Direction) -> str:
    """Channel name holding live messages for a direction."""
    return f"{direction.value}:queue"


def dead_letter_channel(direction: Direction) -> str:
    """Channel name holding messages that exhausted their retries."""
    return f"{direction.value}:dead-letter"


class DurableQueue:
    """
    At-least-once FIFO queue per named channel.

    Producers LPUSH, consumers BRPOP, so the oldest message is popped
    first. BRPOP is atomic on the broker: a message is handed to exactly
    one consumer. The pop is destructive; redelivery happens only through
    retry(), which re-enqueues explicitly.
    """

    def __init__(self, redis_client=None, redis_url: Optional[str] = None):
        self._client = redis_client
        self._redis_url = redis_url or config.REDIS_URL

    @property
    def client(self):
        if self._client is None:
            raise QueueError("Redis not connected")
        return self._client

    async def connect(self) -> None:
        """Open the broker connection and verify it answers."""
        if self._client is None:
            self._client = aioredis.from_url(self._redis_url, decode_responses=True)
        try:
            await self._client.ping()
        except RedisError as e:
            logger.error("Failed to connect to Redis", extra={"error": str(e)})
            raise QueueError(f"Failed to connect to Redis: {e}") from e
        logger.info("Redis connected")

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
            logger.info("Redis disconnected")

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except (RedisError, QueueError):
            return False

    async def enqueue(self, channel: str, message: QueueMessage) -> None:
        """
        Append a message to a channel.

        Args:
            channel: Channel name, e.g. "incoming:queue"
            message: Message to store

        Raises:
            QueueError: If the broker is unreachable
        """
        try:
            await self.client.lpush(channel, message.to_json())
        except RedisError as e:
            logger.error(
                "Failed to enqueue message",
                extra={"channel": channel, "message_id": message.id, "error": str(e)},
            )
            raise QueueError(f"Failed to enqueue message: {e}") from e
        logger.debug("Message enqueued", extra={"channel": channel, "message_id": message.id})

    async def dequeue(self, channel: str, timeout: int = 0) -> Optional[QueueMessage]:
        """
        Pop the oldest message, blocking up to timeout seconds.

        Args:
            channel: Channel name
            timeout: Seconds to block; 0 blocks indefinitely

        Returns:
            The message, or None when the timeout elapsed

        Raises:
            QueueError: If the broker is unreachable
        """
        try:
            result = await self.client.brpop([channel], timeout=timeout)
        except RedisError as e:
            logger.error("Failed to dequeue message", extra={"channel": channel, "error": str(e)})
            raise QueueError(f"Failed to dequeue message: {e}") from e

        if not result:
            return None

        _, raw = result
        try:
            message = QueueMessage.from_json(raw)
        except ValueError:
            # Unparseable entries cannot be retried; park them for inspection
            logger.error("Discarding malformed queue entry", extra={"channel": channel})
            await self.client.lpush(f"{channel.split(':', 1)[0]}:malformed", raw)
            return None

        logger.debug("Message dequeued", extra={"channel": channel, "message_id": message.id})
        return message

    async def retry(self, message: QueueMessage, max_retries: Optional[int] = None) -> bool:
        """
        Re-enqueue a failed message, or dead-letter it when out of retries.

        Args:
            message: Message whose handler failed
            max_retries: Retry budget (defaults to QUEUE_MAX_RETRIES)

        Returns:
            True if re-enqueued, False if moved to the dead-letter channel
        """
        limit = config.QUEUE_MAX_RETRIES if max_retries is None else max_retries
        if message.retry_count >= limit:
            await self.dead_letter(message)
            return False

        message.retry_count += 1
        await self.enqueue(queue_channel(message.direction), message)
        logger.debug(
            "Message retried",
            extra={"message_id": message.id, "retry_count": message.retry_count},
        )
        return True

    async def requeue(self, message: QueueMessage) -> None:
        """
        Put a message back at the consuming end of its channel.

        retry_count is left untouched. The message is popped again before
        anything enqueued after it, so per-conversation order holds.
        """
        channel = queue_channel(message.direction)
        try:
            await self.client.rpush(channel, message.to_json())
        except RedisError as e:
            raise QueueError(f"Failed to requeue message: {e}") from e
        logger.debug("Message requeued", extra={"channel": channel, "message_id": message.id})

    async def dead_letter(self, message: QueueMessage) -> None:
        channel = dead_letter_channel(message.direction)
        logger.error(
            "Message moved to dead letter queue",
            extra={"message_id": message.id, "channel": channel, "retry_count": message.retry_count},
        )
        await self.enqueue(channel, message)

    async def replay_dead_letters(self, direction: Direction, limit: int = 100) -> int:
        """
        Move dead-lettered messages back to the live channel, oldest first.

        Replayed messages start with a fresh retry budget.

        Args:
            direction: Channel direction to replay
            limit: Maximum number of messages to move

        Returns:
            Number of messages moved
        """
        source = dead_letter_channel(direction)
        moved = 0
        while moved < limit:
            try:
                raw = await self.client.rpop(source)
            except RedisError as e:
                raise QueueError(f"Failed to read dead letters: {e}") from e
            if raw is None:
                break
            message = QueueMessage.from_json(raw)
            message.retry_count = 0
            await self.enqueue(queue_channel(direction), message)
            moved += 1

        if moved:
            logger.info("Dead letters replayed", extra={"channel": source, "count": moved})
        return moved

    async def length(self, channel: str) -> int:
        try:
            return int(await self.client.llen(channel))
        except RedisError as e:
            raise QueueError(f"Failed to get queue length: {e}") from e

    async def peek(self, channel: str, limit: int = 50) -> List[QueueMessage]:
        """
        Read up to limit messages, oldest first, without removing them.

        Used to inspect dead-letter channels.
        """
        try:
            raw_items = await self.client.lrange(channel, -limit, -1)
        except RedisError as e:
            raise QueueError(f"Failed to read queue: {e}") from e
        messages = []
        for raw in reversed(raw_items):
            try:
                messages.append(QueueMessage.from_json(raw))
            except ValueError:
                continue
        return messages


# Singleton used by the application
queue = DurableQueue()
