"""
infra/redis.py

Optional Redis client provider.

Non-developer summary:
----------------------
Redis lets several server processes share rate-limit counters and the
permission / metadata caches. If it's not configured, each process keeps
its own in-memory state instead, which is fine for a single instance.
"""

from __future__ import annotations

import logging
from typing import Optional

import redis.asyncio as redis

from ..core.config import get_settings

log = logging.getLogger("apps.lumen_pg.redis")

# Global singleton client reused across the process (if configured).
_redis_client: Optional[redis.Redis] = None


def get_redis(url: Optional[str] = None) -> Optional[redis.Redis]:
    """
    Return the global Redis client if REDIS_URL (or `url`) is configured,
    otherwise None so callers can degrade to in-process state.
    """
    global _redis_client
    target = url or get_settings().REDIS_URL
    if not target:
        return None

    if _redis_client is None:
        _redis_client = redis.from_url(str(target), decode_responses=True)

    return _redis_client


async def ping_redis() -> Optional[bool]:
    """True/False for a configured Redis, None when Redis is disabled."""
    r = get_redis()
    if r is None:
        return None
    try:
        return bool(await r.ping())
    except redis.RedisError as exc:
        log.warning("redis_ping_failed", extra={"error": type(exc).__name__})
        return False


async def close_redis() -> None:
    """
    Close the global Redis client (useful for local tests and shutdown).
    """
    global _redis_client
    if _redis_client is not None:
        try:
            await _redis_client.aclose()
        finally:
            _redis_client = None
