"""Tests for the abuse-avoidance throttle."""

import pytest
from unittest.mock import AsyncMock

from wabridge.services.throttle import RateLimiter, Throttle, random_delay, simulate_typing


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestRateLimiter:
    """Test fixed-window limiting."""

    def test_permits_up_to_max_then_refuses(self):
        limiter = RateLimiter(max_requests=3, window_seconds=60, clock=FakeClock())

        results = [limiter.check_limit("acc-1") for _ in range(4)]

        assert results == [True, True, True, False]

    def test_window_resets_after_expiry(self):
        clock = FakeClock()
        limiter = RateLimiter(max_requests=2, window_seconds=60, clock=clock)
        limiter.check_limit("acc-1")
        limiter.check_limit("acc-1")
        assert limiter.check_limit("acc-1") is False

        clock.now += 60
        assert limiter.check_limit("acc-1") is True
        assert limiter.remaining("acc-1") == 1

    def test_refused_calls_do_not_extend_window(self):
        clock = FakeClock()
        limiter = RateLimiter(max_requests=1, window_seconds=10, clock=clock)
        limiter.check_limit("acc-1")
        clock.now += 9
        assert limiter.check_limit("acc-1") is False

        clock.now += 1
        assert limiter.check_limit("acc-1") is True

    def test_keys_are_independent(self):
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=FakeClock())

        assert limiter.check_limit("acc-1") is True
        assert limiter.check_limit("acc-2") is True
        assert limiter.check_limit("acc-1") is False

    def test_remaining_and_reset(self):
        limiter = RateLimiter(max_requests=5, window_seconds=60, clock=FakeClock())
        assert limiter.remaining("acc-1") == 5
        limiter.check_limit("acc-1")
        limiter.check_limit("acc-1")
        assert limiter.remaining("acc-1") == 3

        limiter.reset("acc-1")
        assert limiter.remaining("acc-1") == 5

        limiter.check_limit("acc-1")
        limiter.check_limit("acc-2")
        limiter.reset_all()
        assert limiter.remaining("acc-1") == 5
        assert limiter.remaining("acc-2") == 5


class TestDelays:
    """Test randomized delay and typing simulation."""

    @pytest.mark.asyncio
    async def test_random_delay_within_bounds(self):
        sleep = AsyncMock()
        for _ in range(20):
            delay = await random_delay(2000, 10000, sleep=sleep)
            assert 2.0 <= delay <= 10.0
        assert sleep.await_count == 20

    @pytest.mark.asyncio
    async def test_random_delay_with_equal_bounds(self):
        sleep = AsyncMock()

        delay = await random_delay(500, 500, sleep=sleep)

        assert delay == 0.5
        sleep.assert_awaited_once_with(0.5)

    @pytest.mark.asyncio
    async def test_typing_sends_composing_then_paused(self):
        send_presence = AsyncMock()
        sleep = AsyncMock()

        await simulate_typing(send_presence, "acc-1", "79991234567@s.whatsapp.net", 1500, sleep=sleep)

        states = [call.args[2] for call in send_presence.await_args_list]
        assert states == ["composing", "paused"]
        sleep.assert_awaited_once_with(1.5)

    @pytest.mark.asyncio
    async def test_typing_failure_is_swallowed(self):
        send_presence = AsyncMock(side_effect=RuntimeError("not connected"))

        await simulate_typing(send_presence, "acc-1", "target", 10, sleep=AsyncMock())

        send_presence.assert_awaited_once()


class TestThrottle:
    """Test the combined outbound pacing."""

    @pytest.mark.asyncio
    async def test_order_is_typing_delay_then_limit(self):
        calls = []

        async def send_presence(account_id, target, state):
            calls.append(f"presence:{state}")

        async def sleep(seconds):
            calls.append("sleep")

        class RecordingLimiter(RateLimiter):
            def check_limit(self, key):
                calls.append("limit")
                return super().check_limit(key)

        throttle = Throttle(
            text_limiter=RecordingLimiter(max_requests=1, window_seconds=60, clock=FakeClock()),
            min_delay_ms=0,
            max_delay_ms=0,
            typing_duration_ms=0,
            sleep=sleep,
        )
        allowed = await throttle.before_outgoing(send_presence, "acc-1", "target")

        assert allowed is True
        assert calls == ["presence:composing", "sleep", "presence:paused", "sleep", "limit"]

    @pytest.mark.asyncio
    async def test_media_uses_media_limiter(self):
        text_limiter = RateLimiter(max_requests=10, window_seconds=60, clock=FakeClock())
        media_limiter = RateLimiter(max_requests=1, window_seconds=60, clock=FakeClock())
        throttle = Throttle(
            text_limiter=text_limiter,
            media_limiter=media_limiter,
            min_delay_ms=0,
            max_delay_ms=0,
            typing_duration_ms=0,
            sleep=AsyncMock(),
        )
        presence = AsyncMock()

        assert await throttle.before_outgoing(presence, "acc-1", "t", has_media=True) is True
        assert await throttle.before_outgoing(presence, "acc-1", "t", has_media=True) is False
        assert await throttle.before_outgoing(presence, "acc-1", "t", has_media=False) is True
        assert text_limiter.remaining("acc-1") == 9
