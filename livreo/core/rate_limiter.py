"""Fixed-window rate limiter for payment and authentication endpoints."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from threading import Lock
from typing import Protocol

from livreo.api.middleware.error_handler import RateLimitError

logger = logging.getLogger(__name__)

UNKNOWN_CLIENT = "unknown"


@dataclass
class RateLimitBucket:
    """Counter for one action/client pair."""

    count: int
    reset_at: float


class RateLimitStore(Protocol):
    """Backend holding window counters.

    The in-memory store is process-local. A shared cache (e.g. Redis
    INCR + EXPIRE) can implement the same call so limits hold across
    instances.
    """

    async def hit(self, key: str, window_seconds: float) -> RateLimitBucket:
        """Count one request against key and return the bucket after counting."""
        ...


class InMemoryRateLimitStore:
    """Thread-safe in-memory fixed-window counters with periodic cleanup."""

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        cleanup_interval_seconds: int = 300,
    ) -> None:
        self._clock = clock
        self._buckets: dict[str, RateLimitBucket] = {}
        self._lock = Lock()
        self._cleanup_interval_seconds = cleanup_interval_seconds
        self._cleanup_task: asyncio.Task | None = None

    async def hit(self, key: str, window_seconds: float) -> RateLimitBucket:
        now = self._clock()
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None or now >= bucket.reset_at:
                bucket = RateLimitBucket(count=1, reset_at=now + window_seconds)
                self._buckets[key] = bucket
            else:
                bucket.count += 1
            return RateLimitBucket(count=bucket.count, reset_at=bucket.reset_at)

    def seconds_until(self, reset_at: float) -> int:
        """Whole seconds until reset_at, at least 1."""
        return max(1, math.ceil(reset_at - self._clock()))

    async def start_cleanup_task(self) -> None:
        """Start background cleanup task."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
            logger.info("Rate limiter cleanup task started")

    async def stop_cleanup_task(self) -> None:
        """Stop background cleanup task."""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
            logger.info("Rate limiter cleanup task stopped")

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._cleanup_interval_seconds)
            count = self.cleanup()
            if count > 0:
                logger.debug("Rate limiter cleaned up %d expired buckets", count)

    def cleanup(self) -> int:
        """Remove buckets whose window has ended."""
        now = self._clock()
        with self._lock:
            expired = [key for key, bucket in self._buckets.items() if now >= bucket.reset_at]
            for key in expired:
                del self._buckets[key]
        return len(expired)

    def get_stats(self) -> dict:
        """Get storage statistics for monitoring."""
        with self._lock:
            return {"active_buckets": len(self._buckets)}


def client_identifier(headers: Mapping[str, str]) -> str:
    """Identify the caller by the first forwarded-for address.

    Falls back to X-Real-IP, then to a shared "unknown" bucket.
    """
    forwarded_for = headers.get("x-forwarded-for", "")
    first = forwarded_for.split(",")[0].strip()
    if first:
        return first
    return headers.get("x-real-ip", "").strip() or UNKNOWN_CLIENT


class RateLimiter:
    """Admission control keyed by action and client identity."""

    def __init__(self, store: RateLimitStore | None = None) -> None:
        self.store = store or InMemoryRateLimitStore()

    async def admit(
        self,
        key: str,
        limit: int,
        window_seconds: float,
        message: str = "Too many requests",
    ) -> int:
        """Count a request and reject it once the window is over limit.

        Args:
            key: Bucket key, "{action}:{client_id}".
            limit: Requests allowed per window.
            window_seconds: Window length.
            message: Error message for rejected calls.

        Returns:
            int: Requests remaining in the current window.

        Raises:
            RateLimitError: If the request exceeds the limit.
        """
        bucket = await self.store.hit(key, window_seconds)
        if bucket.count > limit:
            retry_after = self._retry_after(bucket)
            logger.warning("Rate limit exceeded for %s (%d/%d)", key, bucket.count, limit)
            raise RateLimitError(message=message, retry_after=retry_after, limit=limit)
        return limit - bucket.count

    def _retry_after(self, bucket: RateLimitBucket) -> int:
        seconds_until = getattr(self.store, "seconds_until", None)
        if seconds_until is not None:
            return seconds_until(bucket.reset_at)
        return max(1, math.ceil(bucket.reset_at - time.time()))


# Global singleton instance
_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    """Get or create the global rate limiter instance."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


async def init_rate_limiter() -> RateLimiter:
    """Initialize rate limiter with cleanup task. Call at app startup."""
    limiter = get_rate_limiter()
    if isinstance(limiter.store, InMemoryRateLimitStore):
        await limiter.store.start_cleanup_task()
    return limiter


async def shutdown_rate_limiter() -> None:
    """Shutdown rate limiter cleanup task. Call at app shutdown."""
    if _rate_limiter and isinstance(_rate_limiter.store, InMemoryRateLimitStore):
        await _rate_limiter.store.stop_cleanup_task()
