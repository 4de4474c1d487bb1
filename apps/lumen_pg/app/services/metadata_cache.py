"""
services/metadata_cache.py

Cache for role permissions (per username) and database metadata (per
session id). In-process TTL map, mirrored to Redis when configured so that
several workers share one warm copy.

Non-developer summary:
----------------------
Asking PostgreSQL "what can this role see?" on every click would be slow.
We remember the answer for a few minutes. If many requests for the same
user arrive at once while nothing is cached, only one of them asks the
database and the others wait for that answer.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ValidationError
from redis.exceptions import RedisError

from ..core.config import get_settings
from ..core.logging import log_extra
from ..infra.redis import get_redis
from ..schemas.identity import DatabaseMetadata, RoleMetadata, Session

log = logging.getLogger("apps.lumen_pg.cache")

M = TypeVar("M", bound=BaseModel)

# key -> (expires_at_monotonic, json payload)
_local: Dict[str, Tuple[float, str]] = {}

# In-process "single-flight" locks per key to avoid thundering herd when cold.
# key -> [lock, coroutines holding or waiting on it]; dropped when nobody is left.
_singleflight_locks: Dict[str, List] = {}

# Expired entries are swept when the map reaches _sweep_at; the next mark is
# twice the live count, never below _SWEEP_FLOOR.
_SWEEP_FLOOR = 256
_sweep_at = _SWEEP_FLOOR


@asynccontextmanager
async def _single_flight(key: str) -> AsyncIterator[None]:
    entry = _singleflight_locks.get(key)
    if entry is None:
        entry = [asyncio.Lock(), 0]
        _singleflight_locks[key] = entry
    entry[1] += 1
    try:
        async with entry[0]:
            yield
    finally:
        entry[1] -= 1
        if entry[1] == 0 and _singleflight_locks.get(key) is entry:
            del _singleflight_locks[key]


def _sweep(now: float) -> None:
    global _sweep_at
    for key in [k for k, (expires, _) in _local.items() if expires <= now]:
        del _local[key]
    _sweep_at = max(_SWEEP_FLOOR, 2 * len(_local))


def _perm_key(username: str) -> str:
    return f"lumen:perms:{username}"


def _meta_key(session_id: str) -> str:
    return f"lumen:meta:{session_id}"


async def _read(key: str, model: Type[M]) -> Optional[M]:
    hit = _local.get(key)
    if hit is not None:
        expires, raw = hit
        if expires > time.monotonic():
            return model.model_validate_json(raw)
        _local.pop(key, None)

    r = get_redis()
    if r is None:
        return None
    try:
        raw = await r.get(key)
    except RedisError:
        log.warning("redis_cache_get_failed", extra=log_extra(key=key))
        return None
    if raw is None:
        return None
    try:
        return model.model_validate_json(raw)
    except ValidationError:
        # Stale shape from an older deploy; treat as a miss
        log.warning("cache_payload_invalid", extra=log_extra(key=key))
        return None


async def _write(key: str, value: BaseModel, ttl_sec: int) -> None:
    raw = value.model_dump_json(by_alias=True)
    now = time.monotonic()
    if len(_local) >= _sweep_at:
        _sweep(now)
    _local[key] = (now + ttl_sec, raw)
    r = get_redis()
    if r is None:
        return
    try:
        await r.set(key, raw, ex=int(ttl_sec))
    except RedisError:
        log.warning("redis_cache_set_failed", extra=log_extra(key=key))


async def _get_or_load(
    key: str,
    model: Type[M],
    ttl_sec: int,
    loader: Callable[[], Awaitable[Optional[M]]],
) -> Optional[M]:
    cached = await _read(key, model)
    if cached is not None:
        return cached
    async with _single_flight(key):
        # Another coroutine may have filled it while we waited
        cached = await _read(key, model)
        if cached is not None:
            return cached
        value = await loader()
        # Negative results are not cached; a role may gain grants any moment
        if value is not None:
            await _write(key, value, ttl_sec)
        return value


async def cached_permissions(
    username: str,
    loader: Callable[[str], Awaitable[Optional[RoleMetadata]]],
    ttl_sec: Optional[int] = None,
) -> Optional[RoleMetadata]:
    ttl = ttl_sec if ttl_sec is not None else get_settings().PERMISSIONS_CACHE_TTL_SEC
    return await _get_or_load(_perm_key(username), RoleMetadata, ttl, lambda: loader(username))


async def cached_metadata(
    session: Session,
    loader: Callable[[Session], Awaitable[Optional[DatabaseMetadata]]],
    ttl_sec: Optional[int] = None,
) -> Optional[DatabaseMetadata]:
    ttl = ttl_sec if ttl_sec is not None else get_settings().METADATA_CACHE_TTL_SEC
    return await _get_or_load(_meta_key(session.id), DatabaseMetadata, ttl, lambda: loader(session))


async def _drop(key: str) -> None:
    _local.pop(key, None)
    r = get_redis()
    if r is None:
        return
    try:
        await r.delete(key)
    except RedisError:
        log.warning("redis_cache_delete_failed", extra=log_extra(key=key))


async def invalidate_permissions(username: str) -> None:
    await _drop(_perm_key(username))


async def invalidate_metadata(session_id: str) -> None:
    await _drop(_meta_key(session_id))


def clear_local_cache() -> None:
    """Forget every in-process entry (tests, or after a bulk GRANT/REVOKE)."""
    global _sweep_at
    _local.clear()
    _singleflight_locks.clear()
    _sweep_at = _SWEEP_FLOOR
