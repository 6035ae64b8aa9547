from __future__ import annotations

import math
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass

from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import get_correlation_id
from app.core.config import get_settings
from app.core.context import resolve_client_ip


WINDOW_SECONDS = 60


@dataclass
class _Bucket:
    tokens: float
    refilled_at: float


class TokenBucketLimiter:
    """Per (client, route group) token buckets that refill linearly over the window.

    A bucket left alone for a whole window is full again, so it is dropped. When
    the store reaches ``max_buckets`` the least recently used bucket is evicted.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, *, max_buckets: int = 10_000) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._buckets: dict[tuple[str, str], _Bucket] = {}
        self._swept_at = clock()
        self.max_buckets = max_buckets

    def __len__(self) -> int:
        with self._lock:
            return len(self._buckets)

    def take(self, client_key: str, route_group: str, capacity: int, window_seconds: int = WINDOW_SECONDS) -> tuple[bool, int]:
        """Spend one token; returns ``(allowed, retry_after_seconds)``."""
        if capacity <= 0:
            return False, window_seconds

        now = self._clock()
        per_second = capacity / float(window_seconds)
        with self._lock:
            key = (client_key, route_group)
            if now - self._swept_at >= window_seconds:
                self._evict_idle(now, window_seconds)
            if key not in self._buckets and len(self._buckets) >= self.max_buckets:
                self._evict_idle(now, window_seconds)
                if len(self._buckets) >= self.max_buckets:
                    oldest = min(self._buckets, key=lambda item: self._buckets[item].refilled_at)
                    del self._buckets[oldest]
            bucket = self._buckets.setdefault(key, _Bucket(float(capacity), now))
            bucket.tokens = min(float(capacity), bucket.tokens + max(0.0, now - bucket.refilled_at) * per_second)
            bucket.refilled_at = now
            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return True, 0
            return False, max(1, math.ceil((1.0 - bucket.tokens) / per_second))

    def _evict_idle(self, now: float, window_seconds: int) -> None:
        self._swept_at = now
        idle = [key for key, bucket in self._buckets.items() if now - bucket.refilled_at >= window_seconds]
        for key in idle:
            del self._buckets[key]

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()


limiter = TokenBucketLimiter(max_buckets=get_settings().rate_limit_max_buckets)


class PublicActionRateLimitMiddleware(BaseHTTPMiddleware):
    """Throttles counterparty actions on the unauthenticated ``/public`` routes per client address.

    Reads are not limited; accept, reject and sign calls share one token bucket per
    route group (quotes or agreements).
    """

    mutating_methods = {"POST", "PUT", "PATCH", "DELETE"}

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        settings = get_settings()
        path = request.url.path
        if (
            settings.rate_limit_disabled
            or not path.startswith("/public/")
            or request.method.upper() not in self.mutating_methods
        ):
            return await call_next(request)

        allowed, retry_after = limiter.take(
            _resolve_client_key(request),
            _resolve_route_group(path),
            settings.rate_limit_public_actions_per_minute,
        )
        if allowed:
            return await call_next(request)

        correlation_id = (
            get_correlation_id()
            or getattr(request.state, "correlation_id", None)
            or str(uuid.uuid4())
        )
        return JSONResponse(
            status_code=429,
            content={
                "code": "rate_limited",
                "message": "Too many requests",
                "details": {"retry_after": retry_after},
                "correlation_id": correlation_id,
            },
            headers={"Retry-After": str(retry_after), "X-Correlation-Id": correlation_id},
        )


def _resolve_route_group(path: str) -> str:
    parts = [part for part in path.split("/") if part]
    return parts[1] if len(parts) > 1 else "public"


def _resolve_client_key(request: Request) -> str:
    return resolve_client_ip(request) or "unknown"


def reset_rate_limiter() -> None:
    limiter.clear()
