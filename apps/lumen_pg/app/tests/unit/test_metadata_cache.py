import asyncio
from datetime import datetime, timedelta, timezone

from apps.lumen_pg.app.schemas.identity import DatabaseMetadata, RoleMetadata, Session
from apps.lumen_pg.app.services import metadata_cache as cache_mod
from apps.lumen_pg.app.services.metadata_cache import (
    cached_metadata,
    cached_permissions,
    invalidate_metadata,
    invalidate_permissions,
)


class CountingLoader:
    def __init__(self, result, delay: float = 0.0) -> None:
        self.result = result
        self.delay = delay
        self.calls = 0

    async def __call__(self, *_args):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.result


ROLE = RoleMetadata(name="alice", accessible_databases={"testdb"})
SESSION = Session(
    id="sess-1",
    username="alice",
    expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
)


def test_permissions_loaded_once_then_cached():
    loader = CountingLoader(ROLE)

    async def run():
        first = await cached_permissions("alice", loader)
        second = await cached_permissions("alice", loader)
        return first, second

    first, second = asyncio.run(run())
    assert first == ROLE
    assert second == ROLE
    assert loader.calls == 1


def test_concurrent_cold_requests_share_one_load():
    loader = CountingLoader(ROLE, delay=0.01)

    async def run():
        return await asyncio.gather(*(cached_permissions("alice", loader) for _ in range(5)))

    results = asyncio.run(run())
    assert all(r == ROLE for r in results)
    assert loader.calls == 1


def test_none_is_not_cached():
    loader = CountingLoader(None)

    async def run():
        await cached_permissions("ghost", loader)
        await cached_permissions("ghost", loader)

    asyncio.run(run())
    assert loader.calls == 2


def test_expired_entries_reload():
    loader = CountingLoader(ROLE)

    async def run():
        await cached_permissions("alice", loader, ttl_sec=10)
        # Age the entry past its deadline
        _, raw = cache_mod._local["lumen:perms:alice"]
        cache_mod._local["lumen:perms:alice"] = (0.0, raw)
        await cached_permissions("alice", loader, ttl_sec=10)

    asyncio.run(run())
    assert loader.calls == 2


def test_invalidate_forces_reload():
    perms = CountingLoader(ROLE)
    meta = CountingLoader(DatabaseMetadata(name="testdb", schemas=["public"]))

    async def run():
        await cached_permissions("alice", perms)
        await cached_metadata(SESSION, meta)
        await invalidate_permissions("alice")
        await invalidate_metadata(SESSION.id)
        await cached_permissions("alice", perms)
        await cached_metadata(SESSION, meta)

    asyncio.run(run())
    assert perms.calls == 2
    assert meta.calls == 2


def test_metadata_keyed_by_session():
    meta = CountingLoader(DatabaseMetadata(name="testdb"))
    other = SESSION.model_copy(update={"id": "sess-2"})

    async def run():
        await cached_metadata(SESSION, meta)
        await cached_metadata(other, meta)
        await cached_metadata(SESSION, meta)

    asyncio.run(run())
    assert meta.calls == 2


def test_expired_entries_reclaimed_across_rotating_sessions():
    meta = CountingLoader(DatabaseMetadata(name="testdb"))

    async def run():
        for i in range(1000):
            await cached_metadata(SESSION.model_copy(update={"id": f"sess-{i}"}), meta, ttl_sec=0)

    asyncio.run(run())
    assert meta.calls == 1000
    assert len(cache_mod._local) <= cache_mod._SWEEP_FLOOR
    assert cache_mod._singleflight_locks == {}


def test_sweep_keeps_live_entries():
    perms = CountingLoader(ROLE)
    meta = CountingLoader(DatabaseMetadata(name="testdb"))

    async def run():
        await cached_permissions("alice", perms, ttl_sec=600)
        for i in range(cache_mod._SWEEP_FLOOR + 10):
            await cached_metadata(SESSION.model_copy(update={"id": f"sess-{i}"}), meta, ttl_sec=0)
        await cached_permissions("alice", perms, ttl_sec=600)

    asyncio.run(run())
    assert "lumen:perms:alice" in cache_mod._local
    assert perms.calls == 1


def test_single_flight_lock_released_after_concurrent_fill():
    loader = CountingLoader(ROLE, delay=0.01)

    async def run():
        await asyncio.gather(*(cached_permissions("alice", loader) for _ in range(5)))

    asyncio.run(run())
    assert cache_mod._singleflight_locks == {}
