"""
Cache provider tests: key building, memory expiry, the no-op provider, and Redis failure handling.

Run: pytest backend/tests/test_cache.py -v
"""
from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from shared.config import CacheKind, Settings
from shared.errors import CacheUnavailable
from shared.utils.cache import (
    FilesystemCache,
    MemoryCache,
    NoOpCache,
    RedisCache,
    build_cache,
    cache_key,
    normalize_endpoint,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _redis(connected: bool = True) -> MagicMock:
    redis = MagicMock()
    redis.connected = connected
    redis.connect = AsyncMock()
    redis.disconnect = AsyncMock()
    redis.cache_get = AsyncMock(return_value=None)
    redis.cache_set = AsyncMock()
    redis.cache_ttl = AsyncMock(return_value=-2)
    redis.cache_delete = AsyncMock(return_value=0)
    redis.cache_flush = AsyncMock(return_value=0)
    redis.cache_count = AsyncMock(return_value=0)
    return redis


# ── Keys ────────────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "endpoint, expected",
    [
        ("/api/live-matches", "/api/live-matches"),
        ("/live-matches", "/api/live-matches"),
        ("draws/live", "/api/draws/live"),
    ],
)
def test_normalize_endpoint(endpoint: str, expected: str) -> None:
    assert normalize_endpoint(endpoint) == expected


def test_cache_key_ignores_parameter_order() -> None:
    assert cache_key("/live-matches") == "/api/live-matches"
    assert cache_key("/api/results", {"b": 2, "a": "x"}) == cache_key("/api/results", {"a": "x", "b": 2})
    assert cache_key("/api/results", {"b": 2, "a": "x"}) == "/api/results?a=x&b=2"


# ── Memory ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_memory_cache_expires_entries() -> None:
    clock = FakeClock()
    cache = MemoryCache(default_ttl_s=30, clock=clock)

    await cache.set("k", {"v": 1}, 10)
    assert await cache.get("k") == {"v": 1}
    assert await cache.get_ttl("k") == 10

    clock.now += 4
    assert await cache.get_ttl("k") == 6

    clock.now += 6
    assert await cache.get("k") is None
    assert await cache.get_ttl("k") is None

    stats = await cache.stats()
    assert stats == {"provider": "memory", "keys": 0, "hits": 1, "misses": 1}


@pytest.mark.asyncio
async def test_memory_cache_default_ttl_delete_and_flush() -> None:
    clock = FakeClock()
    cache = MemoryCache(default_ttl_s=30, clock=clock)

    await cache.set("a", 1)
    await cache.set("b", 2)
    assert await cache.get_ttl("a") == 30

    assert await cache.delete("a") is True
    assert await cache.delete("a") is False
    assert (await cache.stats())["keys"] == 1

    await cache.flush()
    assert await cache.get("b") is None


# ── No-op ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_noop_cache_never_stores() -> None:
    cache = NoOpCache()
    assert await cache.set("k", 1, 10) is False
    assert await cache.get("k") is None
    assert await cache.get_ttl("k") is None
    assert await cache.stats() == {"provider": "none", "keys": 0}


# ── Filesystem ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_filesystem_cache_stores_one_file_per_key(tmp_path: Path) -> None:
    clock = FakeClock()
    cache = FilesystemCache(tmp_path / "cache", default_ttl_s=30, clock=clock)
    await cache.connect()

    key = cache_key("/api/draws/live", {"id": "352"})
    assert await cache.set(key, {"Tournament": "Paris"}, 60) is True

    path = cache.path_for(key)
    assert path.parent == (tmp_path / "cache" / "api" / "draws" / "live").resolve()
    stored = json.loads(path.read_text(encoding="utf-8"))
    assert stored["key"] == key
    assert stored["data"] == {"Tournament": "Paris"}
    assert stored["expires_at"] == 1060.0

    assert await cache.get(key) == {"Tournament": "Paris"}
    assert await cache.get_ttl(key) == 60
    assert path != cache.path_for(cache_key("/api/draws/live", {"id": "353"}))


@pytest.mark.asyncio
async def test_filesystem_cache_expiry_delete_and_flush(tmp_path: Path) -> None:
    clock = FakeClock()
    cache = FilesystemCache(tmp_path, default_ttl_s=30, clock=clock)
    await cache.connect()

    await cache.set("/api/live-matches", [1])
    await cache.set("/api/results", [2], 10)
    clock.now += 15
    assert await cache.get("/api/results") is None
    assert not cache.path_for("/api/results").exists()
    assert await cache.get_ttl("/api/live-matches") == 15

    stats = await cache.stats()
    assert stats["provider"] == "filesystem"
    assert stats["keys"] == 1
    assert stats["hits"] == 0
    assert stats["misses"] == 1

    assert await cache.delete("/api/live-matches") is True
    assert await cache.delete("/api/live-matches") is False

    await cache.set("/api/schedules", {"d": 1})
    assert await cache.flush() is True
    assert (await cache.stats())["keys"] == 0


@pytest.mark.asyncio
async def test_filesystem_cache_survives_a_new_instance(tmp_path: Path) -> None:
    clock = FakeClock()
    await FilesystemCache(tmp_path, clock=clock).set("/api/player-list", {"players": 3}, 600)

    reopened = FilesystemCache(tmp_path, clock=clock)
    assert await reopened.get("/api/player-list") == {"players": 3}


@pytest.mark.asyncio
async def test_filesystem_cache_corrupt_file_is_a_miss(tmp_path: Path) -> None:
    cache = FilesystemCache(tmp_path, clock=FakeClock())
    path = cache.path_for("/api/results")
    path.parent.mkdir(parents=True)
    path.write_text("{broken", encoding="utf-8")

    assert await cache.get("/api/results") is None
    assert (await cache.stats())["errors"] == 1


@pytest.mark.asyncio
async def test_filesystem_cache_unusable_directory_is_fatal(tmp_path: Path) -> None:
    blocker = tmp_path / "taken"
    blocker.write_text("not a directory", encoding="utf-8")

    with pytest.raises(CacheUnavailable) as exc:
        await FilesystemCache(blocker / "cache").connect()
    assert exc.value.provider == "filesystem"


# ── Factory ─────────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "kind, expected",
    [
        (CacheKind.MEMORY, MemoryCache),
        (CacheKind.REDIS, RedisCache),
        (CacheKind.FILESYSTEM, FilesystemCache),
        (CacheKind.NONE, NoOpCache),
    ],
)
def test_build_cache_follows_settings(settings: Settings, kind: CacheKind, expected: type) -> None:
    cache = build_cache(settings.model_copy(update={"cache_provider": kind}), redis=_redis())
    assert isinstance(cache, expected)


# ── Redis ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_redis_cache_unreachable_store_is_fatal() -> None:
    redis = _redis(connected=False)
    redis.connect.side_effect = RedisConnectionError("connection refused")

    with pytest.raises(CacheUnavailable) as info:
        await RedisCache(redis).connect()
    assert info.value.provider == "redis"
    assert "connection refused" in info.value.reason


@pytest.mark.asyncio
async def test_redis_cache_reuses_existing_connection() -> None:
    redis = _redis(connected=True)
    await RedisCache(redis).connect()
    redis.connect.assert_not_awaited()


@pytest.mark.asyncio
async def test_redis_cache_round_trips_json() -> None:
    redis = _redis()
    cache = RedisCache(redis, default_ttl_s=30)

    await cache.set("/api/live-matches", {"TournamentMatches": []}, 10)
    key, payload, ttl = redis.cache_set.await_args.args
    assert key == "/api/live-matches"
    assert json.loads(payload) == {"TournamentMatches": []}
    assert ttl == 10

    redis.cache_get.return_value = payload
    assert await cache.get("/api/live-matches") == {"TournamentMatches": []}

    redis.cache_ttl.return_value = 7
    assert await cache.get_ttl("/api/live-matches") == 7
    redis.cache_ttl.return_value = -2
    assert await cache.get_ttl("/api/live-matches") is None


@pytest.mark.asyncio
async def test_redis_cache_runtime_errors_degrade_to_miss() -> None:
    redis = _redis()
    redis.cache_get.side_effect = RedisConnectionError("down")
    redis.cache_set.side_effect = RedisConnectionError("down")
    cache = RedisCache(redis)

    assert await cache.get("k") is None
    assert await cache.set("k", 1) is False
    assert (await cache.stats())["errors"] == 2
