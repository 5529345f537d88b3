import asyncio
from datetime import timedelta

import pytest

from fakes import NOW
from fpl_refresh.cache.store import CacheBackend, CacheStore, MemoryCacheBackend


class FailingBackend(CacheBackend):
    async def get(self, key):
        raise ConnectionError("cache down")

    async def set(self, key, entry):
        raise ConnectionError("cache down")

    async def delete(self, *keys):
        raise ConnectionError("cache down")

    async def keys(self, pattern):
        raise ConnectionError("cache down")


def _store(timer=None):
    backend = MemoryCacheBackend(timer=timer) if timer else MemoryCacheBackend()
    return CacheStore(backend, clock=lambda: NOW)


def test_entries_expire_after_their_own_ttl():
    now = [0.0]
    store = _store(timer=lambda: now[0])

    async def _run():
        await store.set("short", "a", 10)
        await store.set("long", "b", 100)
        now[0] = 50.0
        return await store.get("short"), await store.get("long")

    assert asyncio.run(_run()) == (None, "b")


def test_invalidate_pattern_only_touches_matching_keys():
    store = _store()

    async def _run():
        await store.set("fpl:players:enriched", 1, 60)
        await store.set("fpl:players:enriched:team:1", 2, 60)
        await store.set("fpl:players:basic", 3, 60)
        deleted = await store.invalidate_pattern("fpl:players:enriched*")
        return deleted, await store.get("fpl:players:basic"), await store.get("fpl:players:enriched")

    assert asyncio.run(_run()) == (2, 3, None)


def test_backend_failures_are_misses_and_swallowed_writes():
    store = CacheStore(FailingBackend(), clock=lambda: NOW)

    async def _run():
        return (
            await store.get("k"),
            await store.set("k", 1, 60),
            await store.set_many([("a", 1, 60)]),
            await store.invalidate_any("fpl:*"),
        )

    assert asyncio.run(_run()) == (None, False, False, 0)


def test_get_or_fetch_is_single_flight():
    store = _store()
    calls = {"count": 0}

    async def fetch():
        calls["count"] += 1
        await asyncio.sleep(0.01)
        return {"value": 1}

    async def _run():
        return await asyncio.gather(*(store.get_or_fetch("k", fetch, 60) for _ in range(5)))

    results = asyncio.run(_run())
    assert calls["count"] == 1
    assert all(r == {"value": 1} for r in results)


def test_get_or_fetch_falls_through_to_fetch_when_cache_is_down():
    store = CacheStore(FailingBackend(), clock=lambda: NOW)

    async def fetch():
        return "fresh"

    assert asyncio.run(store.get_or_fetch("k", fetch, 60)) == "fresh"


def test_get_or_fetch_propagates_fetch_errors():
    store = _store()

    async def fetch():
        raise RuntimeError("upstream down")

    with pytest.raises(RuntimeError):
        asyncio.run(store.get_or_fetch("k", fetch, 60))


def test_schedule_invalidation_in_the_past_invalidates_now():
    store = _store()

    async def _run():
        await store.set("k", 1, 60)
        await store.schedule_invalidation("k", NOW - timedelta(minutes=1))
        return await store.get("k"), store.pending_invalidations()

    assert asyncio.run(_run()) == (None, [])


def test_scheduled_invalidation_fires_at_the_instant():
    store = _store()

    async def _run():
        await store.set("k", 1, 60)
        await store.schedule_invalidation("k", NOW + timedelta(milliseconds=20))
        before = await store.get("k")
        await asyncio.sleep(0.1)
        return before, await store.get("k"), store.pending_invalidations()

    assert asyncio.run(_run()) == (1, None, [])


def test_rescheduling_replaces_the_pending_invalidation():
    store = _store()
    at = NOW + timedelta(hours=5)

    async def _run():
        await store.schedule_invalidation("k", at)
        await store.schedule_invalidation("k", at)
        pending = store.pending_invalidations()
        cancelled = await store.cancel_scheduled_invalidations()
        return pending, cancelled, store.pending_invalidations()

    pending, cancelled, after = asyncio.run(_run())
    assert pending == [("k", at)]
    assert cancelled == 1
    assert after == []
