"""
Provider rate limiting.

One token bucket per provider, shared by every sync task of that provider, so
concurrent kinds and scopes of the same provider draw from the same quota.
Rates come from `PROVIDER_RATE_LIMITS` (requests per second).
"""

import asyncio
import time

import structlog

from strata.shared.core.config import get_settings
from strata.shared.core.ops_metrics import RATE_LIMIT_WAIT_SECONDS

logger = structlog.get_logger()


class RateLimiter:
    """
    Token bucket rate limiter for provider API calls.

    The bucket holds at most `burst` tokens (defaults to one second of rate).
    """

    def __init__(self, rate_per_second: float, burst: float | None = None, provider: str = "default"):
        if rate_per_second <= 0:
            raise ValueError("rate_per_second must be > 0")
        self.rate = rate_per_second
        self.capacity = burst if burst is not None else max(rate_per_second, 1.0)
        self.tokens = self.capacity
        self.provider = provider
        self.last_update = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = max(now - self.last_update, 0)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.last_update = now

    async def acquire(self) -> None:
        """Wait until a token is available. Cancellation propagates to the caller."""
        async with self._lock:
            self._refill()
            if self.tokens >= 1:
                self.tokens -= 1
                return

            wait_time = (1 - self.tokens) / self.rate
            logger.debug(
                "rate_limit_waiting",
                provider=self.provider,
                wait_seconds=round(wait_time, 3),
            )
            RATE_LIMIT_WAIT_SECONDS.labels(provider=self.provider).observe(wait_time)
            await asyncio.sleep(wait_time)
            self._refill()
            self.tokens = max(self.tokens - 1, 0)


# Registry of provider limiters
_limiters: dict[str, RateLimiter] = {}


def get_provider_rate_limiter(provider: str) -> RateLimiter:
    """Get or create the shared rate limiter for a provider."""
    provider = provider.lower()
    if provider not in _limiters:
        limits = get_settings().PROVIDER_RATE_LIMITS
        rate = limits.get(provider, limits.get("default", 5.0))
        _limiters[provider] = RateLimiter(rate_per_second=rate, provider=provider)
    return _limiters[provider]


def reset_rate_limiters() -> None:
    """Test helper: drop cached limiters so new settings take effect."""
    _limiters.clear()
