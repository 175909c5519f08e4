"""Tests for the token bucket RateLimiter."""

from unittest.mock import AsyncMock, MagicMock

from coverkeep.infrastructure.rate_limiter import RateLimiter, RateLimiterConfig


class TestRateLimiter:
    """Test token consumption and adaptive backoff."""

    async def test_acquire_consumes_tokens(self) -> None:
        """Each acquire takes one token."""
        limiter = RateLimiter(config=RateLimiterConfig(max_tokens=3, refill_rate=0.001))

        await limiter.acquire()
        await limiter.acquire()

        assert 0.9 < limiter._tokens < 1.1

    async def test_empty_bucket_waits(self, mocker: MagicMock) -> None:
        """No tokens left: acquire sleeps until one is back."""
        sleep = mocker.patch(
            "coverkeep.infrastructure.rate_limiter.asyncio.sleep", new_callable=AsyncMock
        )
        limiter = RateLimiter(config=RateLimiterConfig(max_tokens=1, refill_rate=1000.0))

        await limiter.acquire()
        limiter._tokens = 0.0
        await limiter.acquire()

        assert sleep.await_count >= 1

    async def test_backoff_doubles_and_resets(self, mocker: MagicMock) -> None:
        """Consecutive 429s double the wait, success resets it."""
        mocker.patch(
            "coverkeep.infrastructure.rate_limiter.asyncio.sleep", new_callable=AsyncMock
        )
        limiter = RateLimiter(
            config=RateLimiterConfig(initial_backoff_seconds=1.0, max_backoff_seconds=3.0)
        )

        assert await limiter.handle_rate_limit_response() == 1.0
        assert await limiter.handle_rate_limit_response() == 2.0
        assert await limiter.handle_rate_limit_response() == 3.0

        limiter.reset_backoff()
        assert await limiter.handle_rate_limit_response() == 1.0

    async def test_retry_after_wins(self, mocker: MagicMock) -> None:
        """Retry-After from the API overrides the backoff, capped at the max."""
        mocker.patch(
            "coverkeep.infrastructure.rate_limiter.asyncio.sleep", new_callable=AsyncMock
        )
        limiter = RateLimiter(config=RateLimiterConfig(max_backoff_seconds=10.0))

        assert await limiter.handle_rate_limit_response(retry_after=4) == 4.0
        assert await limiter.handle_rate_limit_response(retry_after=120) == 10.0

    def test_for_igdb(self) -> None:
        """IGDB limiter allows no burst above the per-second limit."""
        limiter = RateLimiter.for_igdb(requests_per_second=4.0)

        assert limiter.name == "igdb"
        assert limiter.config.max_tokens == 4
        assert limiter.config.refill_rate == 4.0
