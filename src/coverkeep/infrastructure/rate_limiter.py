"""
Token bucket rate limiter for the metadata source API.

Hey future me - IGDB allows 4 requests per second per client and answers with
429 when we go over. Every IGDB request goes through one of these, shared by
the single-game refresh and the batch staleness pass.

ALGORITHM: Token Bucket
- Bucket holds max_tokens
- Tokens refill at refill_rate per second
- Each request consumes 1 token
- Empty bucket: wait until a token is back

ADAPTIVE BACKOFF on 429:
- First 429 waits initial_backoff_seconds, every further 429 doubles it
- Retry-After from the response wins when present
- A successful request resets the backoff

USAGE:
    limiter = RateLimiter.for_igdb(requests_per_second=4.0)

    await limiter.acquire()
    response = await client.post(url, content=body)
    if response.status_code == 429:
        await limiter.handle_rate_limit_response(retry_after)
    else:
        limiter.reset_backoff()
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class RateLimiterConfig:
    """Configuration for rate limiter."""

    max_tokens: int = 4  # Bucket size
    refill_rate: float = 4.0  # Tokens per second
    max_backoff_seconds: float = 60.0
    initial_backoff_seconds: float = 1.0
    backoff_multiplier: float = 2.0


@dataclass
class RateLimiter:
    """Token Bucket Rate Limiter with adaptive backoff."""

    config: RateLimiterConfig = field(default_factory=RateLimiterConfig)
    name: str = "default"

    _tokens: float = field(default=0.0, init=False)
    _last_refill: float = field(default_factory=time.monotonic, init=False)
    _current_backoff: float = field(default=0.0, init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)

    def __post_init__(self) -> None:
        """Initialize tokens to max capacity."""
        self._tokens = float(self.config.max_tokens)
        self._current_backoff = self.config.initial_backoff_seconds

    @classmethod
    def for_igdb(cls, requests_per_second: float = 4.0) -> "RateLimiter":
        """Create rate limiter for the IGDB API (no bursts above the per-second limit)."""
        return cls(
            config=RateLimiterConfig(
                max_tokens=max(1, int(requests_per_second)),
                refill_rate=requests_per_second,
                max_backoff_seconds=60.0,
                initial_backoff_seconds=1.0,
            ),
            name="igdb",
        )

    def _refill_tokens(self) -> None:
        now = time.monotonic()
        elapsed = now - self._last_refill
        self._tokens = min(
            self.config.max_tokens, self._tokens + elapsed * self.config.refill_rate
        )
        self._last_refill = now

    async def acquire(self) -> None:
        """Acquire one token, waiting if necessary.

        The lock is held while waiting, so waiters are served in arrival order.
        """
        async with self._lock:
            self._refill_tokens()
            while self._tokens < 1.0:
                wait_time = (1.0 - self._tokens) / self.config.refill_rate
                logger.debug(
                    f"RateLimiter[{self.name}]: No tokens available, "
                    f"waiting {wait_time:.2f}s"
                )
                await asyncio.sleep(wait_time)
                self._refill_tokens()
            self._tokens -= 1.0

    async def handle_rate_limit_response(self, retry_after: float | None = None) -> float:
        """Handle a 429 response with adaptive backoff.

        Args:
            retry_after: Retry-After header value in seconds, if the API sent one

        Returns:
            The wait time used
        """
        async with self._lock:
            wait_time = (
                float(retry_after) if retry_after is not None else self._current_backoff
            )
            wait_time = min(wait_time, self.config.max_backoff_seconds)

            logger.warning(
                f"RateLimiter[{self.name}]: 429 Rate Limited! "
                f"Waiting {wait_time:.1f}s before retry"
            )

            self._current_backoff = min(
                self._current_backoff * self.config.backoff_multiplier,
                self.config.max_backoff_seconds,
            )
            self._tokens = 0.0

        await asyncio.sleep(wait_time)
        return wait_time

    def reset_backoff(self) -> None:
        """Reset backoff after a successful request."""
        self._current_backoff = self.config.initial_backoff_seconds


__all__ = ["RateLimiter", "RateLimiterConfig"]
