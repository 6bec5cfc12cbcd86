"""Relay worker loops: one per queue channel."""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Optional, Union

from wabridge.infra.config import config
from wabridge.infra.errors import (
    ErrorCategory,
    QueueError,
    RateLimitedError,
    classify_error,
)
from wabridge.infra.metrics import queue_handler_duration, queue_messages_total
from wabridge.infra.queue import DurableQueue, queue_channel
from wabridge.models.queue import Direction, IncomingPayload, OutgoingPayload, QueueMessage

logger = logging.getLogger(__name__)

Handler = Callable[[str, Union[IncomingPayload, OutgoingPayload]], Awaitable[None]]


class RelayProcessor:
    """
    Pulls messages from each registered channel and runs its handler.

    Handler failures go through the queue's retry policy. Broker errors
    pause the affected loop for a fixed backoff. stop() lets in-flight
    handlers finish instead of cancelling them.
    """

    def __init__(
        self,
        queue: DurableQueue,
        max_retries: Optional[int] = None,
        dequeue_timeout: Optional[int] = None,
        error_backoff: Optional[float] = None,
    ):
        self.queue = queue
        self.max_retries = config.QUEUE_MAX_RETRIES if max_retries is None else max_retries
        self.dequeue_timeout = (
            config.QUEUE_DEQUEUE_TIMEOUT if dequeue_timeout is None else dequeue_timeout
        )
        self.error_backoff = (
            config.QUEUE_ERROR_BACKOFF_SECONDS if error_backoff is None else error_backoff
        )
        self._handlers: Dict[Direction, Handler] = {}
        self._tasks: Dict[Direction, asyncio.Task] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def register(self, direction: Direction, handler: Handler) -> None:
        """
        Register the handler for a channel.

        Raises:
            ValueError: A handler is already registered for the channel
        """
        if direction in self._handlers:
            raise ValueError(f"Handler already registered for {direction.value}")
        self._handlers[direction] = handler
        logger.info("Processor registered", extra={"channel": direction.value})

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        for direction in self._handlers:
            self._tasks[direction] = asyncio.create_task(
                self._run(direction), name=f"relay-{direction.value}"
            )
        logger.info("Relay processor started", extra={"channels": [d.value for d in self._tasks]})

    async def stop(self) -> None:
        """Stop taking new messages and wait for in-flight handlers."""
        if not self._running:
            return
        self._running = False
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()
        logger.info("Relay processor stopped")

    async def _run(self, direction: Direction) -> None:
        channel = queue_channel(direction)
        while self._running:
            try:
                message = await self.queue.dequeue(channel, self.dequeue_timeout)
                if message is None:
                    continue
                await self.process(message)
            except QueueError as e:
                logger.error("Queue processing error", extra={"channel": channel, "error": str(e)})
                await asyncio.sleep(self.error_backoff)

    async def process(self, message: QueueMessage) -> str:
        """
        Run the handler for one message and apply the failure policy.

        Returns:
            Outcome label: success, retried, dead_lettered, dropped or rate_limited
        """
        channel = message.direction.value
        handler = self._handlers[message.direction]
        log_extra = {
            "channel": channel,
            "message_id": message.id,
            "account_id": message.account_id,
            "retry_count": message.retry_count,
        }
        logger.debug("Processing message", extra=log_extra)

        start = time.monotonic()
        try:
            await handler(message.account_id, message.payload)
            outcome = "success"
        except RateLimitedError:
            logger.warning("Rate limited, message requeued", extra=log_extra)
            await self.queue.requeue(message)
            outcome = "rate_limited"
        except Exception as e:
            category, retryable = classify_error(e)
            log_extra.update({"error": str(e), "category": category.value})
            if category == ErrorCategory.CONFIGURATION:
                logger.error("Configuration error, message dropped", extra=log_extra)
                outcome = "dropped"
            elif not retryable:
                logger.error("Message permanently rejected", extra=log_extra)
                await self.queue.dead_letter(message)
                outcome = "dead_lettered"
            else:
                logger.error("Message processing failed", extra=log_extra)
                requeued = await self.queue.retry(message, self.max_retries)
                outcome = "retried" if requeued else "dead_lettered"
        finally:
            queue_handler_duration.labels(channel=channel).observe(time.monotonic() - start)

        queue_messages_total.labels(channel=channel, outcome=outcome).inc()
        if outcome == "success":
            logger.info("Message processed", extra=log_extra)
        return outcome
