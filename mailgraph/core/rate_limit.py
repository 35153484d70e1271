"""Rate limiting: inbound (slowapi) and outbound (per-account token buckets)."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

from slowapi import Limiter
from slowapi.util import get_remote_address

from mailgraph.core.config import settings

logger = logging.getLogger(__name__)

# =============================================================================
# Inbound: webhook ingress
# =============================================================================

DEFAULT_LIMITS = (
    [f"{settings.RATE_LIMIT_WEBHOOK_PER_MINUTE}/minute"]
    if settings.RATE_LIMIT_WEBHOOK_PER_MINUTE > 0
    else []
)

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=settings.RATE_LIMIT_STORAGE_URI,
    default_limits=DEFAULT_LIMITS,
    enabled=settings.RATE_LIMIT_WEBHOOK_PER_MINUTE > 0,
)


def webhook_limit() -> str:
    """Per-route limit string for webhook endpoints."""
    return f"{max(settings.RATE_LIMIT_WEBHOOK_PER_MINUTE, 1)}/minute"


# =============================================================================
# Outbound: provider API calls
# =============================================================================


class TokenBucket:
    """
    Token bucket limiter for provider API calls.

    Example:
        bucket = TokenBucket(rate=10, capacity=20)  # 10/s sustained, bursts of 20

        async def call_api():
            await bucket.acquire()
            return await api_call()
    """

    def __init__(
        self,
        rate: float,
        capacity: int,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], object] = asyncio.sleep,
    ):
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.rate = float(rate)
        self.capacity = max(1, int(capacity))
        self.tokens = float(self.capacity)
        self._clock = clock
        self._sleep = sleep
        self._last = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last)
        self._last = now
        self.tokens = min(float(self.capacity), self.tokens + elapsed * self.rate)

    def try_acquire(self, tokens: float = 1.0) -> bool:
        """Take tokens without waiting."""
        self._refill()
        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    async def acquire(self, tokens: float = 1.0) -> float:
        """Wait until tokens are available. Returns seconds waited."""
        waited = 0.0
        async with self._lock:
            while True:
                self._refill()
                if self.tokens >= tokens:
                    self.tokens -= tokens
                    return waited
                wait_time = (tokens - self.tokens) / self.rate
                logger.debug("Rate limit: waiting %.2fs", wait_time)
                await self._sleep(wait_time)
                waited += wait_time


class TokenBucketRegistry:
    """One bucket per key (account id or credential), created on first use."""

    def __init__(self, rate: float | None = None, capacity: int | None = None):
        self.rate = rate or settings.GMAIL_RATE_LIMIT_PER_SECOND
        self.capacity = capacity or settings.GMAIL_RATE_LIMIT_BURST
        self._buckets: dict[str, TokenBucket] = {}

    def get(self, key: str) -> TokenBucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = TokenBucket(self.rate, self.capacity)
            self._buckets[key] = bucket
        return bucket

    async def acquire(self, key: str, tokens: float = 1.0) -> float:
        return await self.get(key).acquire(tokens)
