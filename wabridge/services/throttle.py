"""Abuse-avoidance throttle: rate limiting, randomized delay, typing simulation."""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from wabridge.infra.config import config
from wabridge.infra.logging import hash_identifier

logger = logging.getLogger(__name__)

PresenceSender = Callable[[str, str, str], Awaitable[None]]
Sleep = Callable[[float], Awaitable[None]]


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """
    Fixed-window limiter keyed by account.

    State is process-local and in memory; it is not shared between
    processes of the service.
    """

    def __init__(
        self,
        max_requests: int = 10,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, _Window] = {}

    def check_limit(self, key: str) -> bool:
        """
        Count one request against key's window.

        Returns:
            True if permitted now, False if the window is exhausted
        """
        now = self._clock()
        window = self._windows.get(key)

        if window is None or now >= window.reset_at:
            self._windows[key] = _Window(count=1, reset_at=now + self.window_seconds)
            return True

        if window.count >= self.max_requests:
            logger.warning("Rate limit exceeded", extra={"key": key, "count": window.count})
            return False

        window.count += 1
        return True

    def remaining(self, key: str) -> int:
        window = self._windows.get(key)
        if window is None or self._clock() >= window.reset_at:
            return self.max_requests
        return max(0, self.max_requests - window.count)

    def reset(self, key: str) -> None:
        self._windows.pop(key, None)

    def reset_all(self) -> None:
        self._windows.clear()


async def random_delay(
    min_ms: Optional[int] = None,
    max_ms: Optional[int] = None,
    sleep: Sleep = asyncio.sleep,
) -> float:
    """
    Sleep for a uniform random duration in [min_ms, max_ms].

    Returns:
        The applied delay in seconds
    """
    low = config.MIN_DELAY_MS if min_ms is None else min_ms
    high = config.MAX_DELAY_MS if max_ms is None else max_ms
    delay = random.randint(low, max(low, high)) / 1000.0
    logger.debug("Applying random delay", extra={"delay_seconds": delay})
    await sleep(delay)
    return delay


async def simulate_typing(
    send_presence: PresenceSender,
    account_id: str,
    target: str,
    duration_ms: Optional[int] = None,
    sleep: Sleep = asyncio.sleep,
) -> None:
    """
    Show a "composing" indicator for duration_ms, then clear it.

    Purely cosmetic: failures are logged and never raised.
    """
    duration = (config.TYPING_DURATION_MS if duration_ms is None else duration_ms) / 1000.0
    try:
        await send_presence(account_id, target, "composing")
        await sleep(duration)
        await send_presence(account_id, target, "paused")
    except Exception as e:
        logger.warning(
            "Failed to simulate typing",
            extra={"account_id": account_id, "target": hash_identifier(target), "error": str(e)},
        )


class Throttle:
    """Outbound pacing applied before every send to the messaging network."""

    def __init__(
        self,
        text_limiter: Optional[RateLimiter] = None,
        media_limiter: Optional[RateLimiter] = None,
        min_delay_ms: Optional[int] = None,
        max_delay_ms: Optional[int] = None,
        typing_duration_ms: Optional[int] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.text_limiter = text_limiter or RateLimiter(
            config.TEXT_RATE_LIMIT, config.RATE_LIMIT_WINDOW_SECONDS
        )
        self.media_limiter = media_limiter or RateLimiter(
            config.MEDIA_RATE_LIMIT, config.RATE_LIMIT_WINDOW_SECONDS
        )
        self.min_delay_ms = config.MIN_DELAY_MS if min_delay_ms is None else min_delay_ms
        self.max_delay_ms = config.MAX_DELAY_MS if max_delay_ms is None else max_delay_ms
        self.typing_duration_ms = (
            config.TYPING_DURATION_MS if typing_duration_ms is None else typing_duration_ms
        )
        self._sleep = sleep

    async def delay(self) -> float:
        return await random_delay(self.min_delay_ms, self.max_delay_ms, sleep=self._sleep)

    async def before_outgoing(
        self,
        send_presence: PresenceSender,
        account_id: str,
        target: str,
        has_media: bool = False,
    ) -> bool:
        """
        Run typing -> delay -> rate-limit check, in that order.

        The limit is checked last so it reflects the window at send time.

        Returns:
            True if the send may proceed now, False if the caller must
            re-enqueue the message
        """
        await simulate_typing(
            send_presence, account_id, target, self.typing_duration_ms, sleep=self._sleep
        )
        await self.delay()
        limiter = self.media_limiter if has_media else self.text_limiter
        return limiter.check_limit(account_id)
