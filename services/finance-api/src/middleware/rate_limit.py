import asyncio
import os
import time
from collections import defaultdict, deque

from fastapi import Request
from shared.observability.telemetry import USER_ID_HEADER


class SimpleRateLimiter:
    """
    Sliding-window rate limiter keyed by caller (user id, falling back to client IP).

    Keeps per-key deques of recent request timestamps in process memory; each
    worker enforces its own window.
    """

    def __init__(self, max_requests: int, window_seconds: int = 60, burst: int = 0):
        self._max_requests = max(1, max_requests)
        self._window_seconds = max(1, window_seconds)
        self._burst = max(0, burst)
        self._buckets: dict[str, deque[float]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    async def allow(self, client_id: str) -> tuple[bool, float]:
        """
        Returns (allowed, retry_after_seconds). When disallowed, retry_after_seconds
        represents how long the client should wait before retrying.
        """

        now = time.monotonic()
        async with self._lock:
            bucket = self._buckets[client_id]
            self._evict_old(bucket, now)

            limit = self._max_requests + self._burst
            if len(bucket) >= limit:
                retry_after = self._window_seconds - (now - bucket[0])
                return False, max(retry_after, 0.0)

            bucket.append(now)
            return True, 0.0

    def _evict_old(self, bucket: deque[float], now: float) -> None:
        threshold = now - self._window_seconds
        while bucket and bucket[0] <= threshold:
            bucket.popleft()


def rate_limit_key(request: Request) -> str:
    user_id = request.headers.get(USER_ID_HEADER)
    if user_id:
        return f"user:{user_id}"
    client = request.client
    return f"ip:{client.host}" if client else "ip:unknown"


def build_default_rate_limiter() -> SimpleRateLimiter:
    per_minute = int(os.getenv("FINANCE_RATE_LIMIT_PER_MIN", "120"))
    burst = int(os.getenv("FINANCE_RATE_LIMIT_BURST", "30"))
    return SimpleRateLimiter(max_requests=per_minute, window_seconds=60, burst=burst)
