"""
middleware/rate_limit.py

Per-client rate limiting:
- Key is the user (when RATE_LIMIT_BY_USER and a user is bound) or the client IP.
- In-memory token buckets by default (one process); Redis fixed-window
  counters when REDIS_URL is set (shared across processes).
- Graceful degradation: Redis errors admit the request and log a warning.

Non-developer summary:
----------------------
This protects the server from bursts and abuse. Each client gets a
budget of requests per time window (e.g. 100 per minute). Over budget,
they get "429 Too Many Requests" with a hint of how many seconds to wait.
"""

from __future__ import annotations

import logging
import math
import re
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple

from fastapi import Request
from redis.asyncio import Redis
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from ..core.config import get_settings
from ..core.context import get_context
from ..core.errors import AppError, error_response
from ..core.logging import log_extra
from ..infra.redis import get_redis

log = logging.getLogger("apps.lumen_pg.rate_limit")

_rate_pattern = re.compile(r"^\s*(\d+)\s*/\s*([smhd])\w*\s*$", re.IGNORECASE)
_unit_seconds = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def _parse_rate(s: str) -> Tuple[int, int]:
    """
    Parses a simple rate string like "20/m" -> (20, 60)
    """
    m = _rate_pattern.match(s or "")
    if not m:
        # default to a conservative 60/m if misconfigured
        return 60, 60
    count = int(m.group(1))
    window = _unit_seconds[m.group(2).lower()]
    return count, window


def _client_ip(request: Request) -> str:
    # Best-effort extraction; in production put the correct header through the load balancer
    xff = request.headers.get("x-forwarded-for")
    if xff:
        return xff.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def rate_limit_key(request: Request, by_user: bool) -> str:
    if by_user:
        user = get_context(request).user
        if user is not None:
            return f"user:{user.username}"
    return f"ip:{_client_ip(request)}"


class RateLimitBackend(Protocol):
    async def hit(self, key: str) -> Tuple[bool, int]:
        """Consume one request for `key`; return (allowed, retry_after_seconds)."""
        ...


@dataclass
class _Bucket:
    tokens: float
    updated: float


class InMemoryRateLimitBackend:
    """
    Token bucket per key: capacity `limit`, refilled at limit/window per second.
    Buckets untouched for `idle_sec` are evicted.
    """

    def __init__(
        self,
        limit: int,
        window_sec: int,
        idle_sec: int = 600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = max(1, int(limit))
        self.window_sec = max(1, int(window_sec))
        self.rate = self.limit / self.window_sec
        self.idle_sec = idle_sec
        self.clock = clock
        self._buckets: Dict[str, _Bucket] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    async def hit(self, key: str) -> Tuple[bool, int]:
        return self.consume(key)

    def consume(self, key: str) -> Tuple[bool, int]:
        now = self.clock()
        with self._lock:
            self._sweep(now)
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = _Bucket(tokens=float(self.limit), updated=now)
                self._buckets[key] = bucket
            else:
                elapsed = max(0.0, now - bucket.updated)
                bucket.tokens = min(float(self.limit), bucket.tokens + elapsed * self.rate)
                bucket.updated = now

            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return True, 0
            retry_after = max(1, math.ceil((1.0 - bucket.tokens) / self.rate))
            return False, retry_after

    def _sweep(self, now: float) -> None:
        # Called with the lock held
        if now - self._last_sweep < self.idle_sec:
            return
        self._last_sweep = now
        stale = [k for k, b in self._buckets.items() if now - b.updated >= self.idle_sec]
        for k in stale:
            del self._buckets[k]

    def __len__(self) -> int:
        return len(self._buckets)


class RedisRateLimitBackend:
    """Fixed-window counters in Redis (coarse window bucketing)."""

    def __init__(self, redis: Redis, limit: int, window_sec: int, prefix: str = "rl") -> None:
        self.redis = redis
        self.limit = max(1, int(limit))
        self.window_sec = max(1, int(window_sec))
        self.prefix = prefix

    async def hit(self, key: str) -> Tuple[bool, int]:
        now = int(time.time())
        bucket = now // self.window_sec
        redis_key = f"{self.prefix}:{key}:{bucket}"
        try:
            count = await self.redis.incr(redis_key)
            if count == 1:
                await self.redis.expire(redis_key, self.window_sec)
        except RedisError as exc:
            # On Redis error, skip limiting (favor availability)
            log.warning("rate_limit_redis_failed", extra=log_extra(key=key, error=type(exc).__name__))
            return True, 0
        if count > self.limit:
            return False, max(1, self.window_sec - (now % self.window_sec))
        return True, 0


def build_rate_limit_backend(rate: Optional[str] = None) -> RateLimitBackend:
    """Redis when configured, else in-process buckets. Called once at app assembly."""
    s = get_settings()
    limit, window = _parse_rate(rate or s.RATE_LIMIT)
    r = get_redis()
    if r is not None:
        return RedisRateLimitBackend(r, limit, window)
    return InMemoryRateLimitBackend(limit, window, idle_sec=s.RATE_LIMIT_IDLE_SEC)


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: ASGIApp,
        backend: Optional[RateLimitBackend] = None,
        rate: Optional[str] = None,
        by_user: Optional[bool] = None,
    ) -> None:
        super().__init__(app)
        s = get_settings()
        self.backend = backend or build_rate_limit_backend(rate)
        self.by_user = s.RATE_LIMIT_BY_USER if by_user is None else by_user

    async def dispatch(self, request: Request, call_next):
        key = rate_limit_key(request, self.by_user)
        allowed, retry_after = await self.backend.hit(key)
        if not allowed:
            log.warning("rate_limited", extra=log_extra(request, key=key, path=request.url.path))
            return error_response(
                request,
                AppError(
                    "RATE_LIMITED",
                    "Too many requests. Please slow down.",
                    status=429,
                    details={"scope": key.split(":", 1)[0]},
                    headers={"Retry-After": str(retry_after)},
                ),
            )
        return await call_next(request)
