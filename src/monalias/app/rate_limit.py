"""Per-source token bucket rate limiting for the public resolve endpoint.

Each request source (normally the client IP) gets its own bucket, created on
first use. Admission never waits: a request either takes a token or is
rejected with a fixed retry hint. Idle buckets are evicted by a periodic sweep
so the map stays bounded.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, Collection, Dict, Optional

from aiohttp import web

from monalias.app.metrics import MetricsClient, NoOpMetricsClient

logger = logging.getLogger(__name__)

DEFAULT_IDLE_SECONDS = 600.0
DEFAULT_RETRY_AFTER_SECONDS = 30


@dataclass
class RateBucket:
    tokens: float
    last_refill: float
    last_seen: float


class RateLimiter:
    """
    Token buckets keyed by request source.

    rate is the refill in tokens per second and burst the bucket size, both
    shared by every source. The clock is injectable so tests can advance
    time deterministically.
    """

    def __init__(
        self,
        rate: float,
        burst: int,
        idle_seconds: float = DEFAULT_IDLE_SECONDS,
        retry_after: int = DEFAULT_RETRY_AFTER_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.rate = rate
        self.burst = burst
        self.idle_seconds = idle_seconds
        self.retry_after = retry_after
        self.clock = clock
        self._buckets: Dict[str, RateBucket] = {}
        self._lock = asyncio.Lock()

    async def admit(self, source_key: str) -> bool:
        """Take one token from source_key's bucket, False when it is empty."""
        async with self._lock:
            now = self.clock()
            bucket = self._buckets.get(source_key)
            if bucket is None:
                bucket = RateBucket(tokens=float(self.burst), last_refill=now, last_seen=now)
                self._buckets[source_key] = bucket

            elapsed = max(0.0, now - bucket.last_refill)
            bucket.tokens = min(float(self.burst), bucket.tokens + elapsed * self.rate)
            bucket.last_refill = now
            bucket.last_seen = now

            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return True
            return False

    async def sweep(self) -> int:
        """Evict buckets idle for longer than idle_seconds, returns how many."""
        async with self._lock:
            now = self.clock()
            stale = [
                key
                for key, bucket in self._buckets.items()
                if now - bucket.last_seen > self.idle_seconds
            ]
            for key in stale:
                del self._buckets[key]
            return len(stale)

    def __len__(self) -> int:
        return len(self._buckets)


def request_source_key(request: web.Request, trust_forwarded_for: bool = False) -> str:
    """Identify the source of a request for rate limiting."""
    if trust_forwarded_for:
        forwarded: Optional[str] = request.headers.get("X-Forwarded-For")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
    return request.remote or "unknown"


def rate_limited_response(retry_after: int) -> web.Response:
    return web.Response(
        status=429,
        body=json.dumps({"error": "rate_limited", "retry_after_seconds": retry_after}),
        content_type="application/json",
        headers={"Retry-After": str(retry_after)},
    )


def rate_limit_middleware(
    limiter: RateLimiter,
    paths: Collection[str],
    trust_forwarded_for: bool = False,
    metrics_client: Optional[MetricsClient] = None,
):
    """Build middleware that rate limits requests to the given paths only."""
    metrics_client = metrics_client or NoOpMetricsClient()

    @web.middleware
    async def middleware(request: web.Request, handler):
        if request.path not in paths:
            return await handler(request)

        source_key = request_source_key(request, trust_forwarded_for)
        if not await limiter.admit(source_key):
            logger.debug("rate limited %s on %s", source_key, request.path)
            metrics_client.increment(
                "monalias.rate_limit.rejected", 1, tag_dict={"path": request.path}
            )
            return rate_limited_response(limiter.retry_after)
        return await handler(request)

    return middleware
