"""
Response cache providers for the ATP live events services.

  MemoryCache    : in-process dict with per-key monotonic expiry
  RedisCache     : JSON values under the atp:cache: namespace with native TTL
  FilesystemCache: one JSON file per key carrying its wall-clock expiry
  NoOpCache      : caching disabled; every read misses

Keys are built by ``cache_key``: the endpoint path normalized to its /api form,
followed by the sorted query string.
"""
from __future__ import annotations

import abc
import asyncio
import hashlib
import json
import os
import time
from pathlib import Path
from typing import Any, Callable, Optional
from urllib.parse import urlencode

from redis.exceptions import RedisError

from shared.config import CacheKind, Settings, get_settings
from shared.errors import CacheUnavailable
from shared.utils.logging import get_logger
from shared.utils.redis_manager import RedisManager

logger = get_logger(__name__)


def normalize_endpoint(endpoint: str) -> str:
    """Ensure an endpoint path carries the /api prefix."""
    if endpoint.startswith("/api/"):
        return endpoint
    if endpoint.startswith("/"):
        return f"/api{endpoint}"
    return f"/api/{endpoint}"


def cache_key(endpoint: str, params: dict[str, Any] | None = None) -> str:
    """Cache key for an endpoint and its query parameters, independent of parameter order."""
    key = normalize_endpoint(endpoint)
    if params:
        key = f"{key}?{urlencode(sorted((k, str(v)) for k, v in params.items()))}"
    return key


class CacheProvider(abc.ABC):
    """Contract every cache backend implements. Values are JSON-compatible objects."""

    name: str = "base"

    async def connect(self) -> None:
        """Prepare the backend. Raises CacheUnavailable when a required store is unreachable."""

    async def disconnect(self) -> None:
        """Release backend resources."""

    @abc.abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abc.abstractmethod
    async def set(self, key: str, value: Any, ttl_s: int | None = None) -> bool:
        ...

    @abc.abstractmethod
    async def get_ttl(self, key: str) -> Optional[int]:
        """Remaining lifetime in whole seconds, or None when the key is absent."""

    @abc.abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    @abc.abstractmethod
    async def flush(self) -> bool:
        ...

    @abc.abstractmethod
    async def stats(self) -> dict[str, Any]:
        ...


class MemoryCache(CacheProvider):
    name = "memory"

    def __init__(
        self,
        default_ttl_s: int = 30,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._default_ttl = default_ttl_s
        self._clock = clock
        self._entries: dict[str, tuple[Any, float]] = {}
        self._hits = 0
        self._misses = 0

    def _live_entry(self, key: str) -> Optional[tuple[Any, float]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            del self._entries[key]
            return None
        return entry

    async def get(self, key: str) -> Optional[Any]:
        entry = self._live_entry(key)
        if entry is None:
            self._misses += 1
            return None
        self._hits += 1
        return entry[0]

    async def set(self, key: str, value: Any, ttl_s: int | None = None) -> bool:
        ttl = ttl_s or self._default_ttl
        self._entries[key] = (value, self._clock() + ttl)
        return True

    async def get_ttl(self, key: str) -> Optional[int]:
        entry = self._live_entry(key)
        if entry is None:
            return None
        return max(0, round(entry[1] - self._clock()))

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def flush(self) -> bool:
        self._entries.clear()
        return True

    async def stats(self) -> dict[str, Any]:
        now = self._clock()
        live = sum(1 for _, expires in self._entries.values() if expires > now)
        return {"provider": self.name, "keys": live, "hits": self._hits, "misses": self._misses}


class RedisCache(CacheProvider):
    name = "redis"

    def __init__(self, redis: RedisManager, default_ttl_s: int = 30) -> None:
        self._redis = redis
        self._default_ttl = default_ttl_s
        self._hits = 0
        self._misses = 0
        self._errors = 0

    async def connect(self) -> None:
        if self._redis.connected:
            return
        try:
            await self._redis.connect()
        except (RedisError, OSError) as exc:
            raise CacheUnavailable(self.name, str(exc)) from exc

    async def disconnect(self) -> None:
        await self._redis.disconnect()

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self._redis.cache_get(key)
        except RedisError as exc:
            self._errors += 1
            logger.warning("cache_get_failed", key=key, error=str(exc))
            return None
        if raw is None:
            self._misses += 1
            return None
        self._hits += 1
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl_s: int | None = None) -> bool:
        try:
            await self._redis.cache_set(key, json.dumps(value, default=str), ttl_s or self._default_ttl)
        except RedisError as exc:
            self._errors += 1
            logger.warning("cache_set_failed", key=key, error=str(exc))
            return False
        return True

    async def get_ttl(self, key: str) -> Optional[int]:
        try:
            ttl = await self._redis.cache_ttl(key)
        except RedisError as exc:
            self._errors += 1
            logger.warning("cache_ttl_failed", key=key, error=str(exc))
            return None
        return ttl if ttl >= 0 else None

    async def delete(self, key: str) -> bool:
        try:
            return await self._redis.cache_delete(key) > 0
        except RedisError as exc:
            self._errors += 1
            logger.warning("cache_delete_failed", key=key, error=str(exc))
            return False

    async def flush(self) -> bool:
        try:
            removed = await self._redis.cache_flush()
        except RedisError as exc:
            self._errors += 1
            logger.warning("cache_flush_failed", error=str(exc))
            return False
        logger.info("cache_flushed", provider=self.name, removed=removed)
        return True

    async def stats(self) -> dict[str, Any]:
        keys: Optional[int]
        try:
            keys = await self._redis.cache_count()
        except RedisError:
            keys = None
        return {
            "provider": self.name,
            "keys": keys,
            "hits": self._hits,
            "misses": self._misses,
            "errors": self._errors,
        }


class FilesystemCache(CacheProvider):
    """
    File-per-key cache under ``cache_dir``.

    ``/api/draws/live?id=1`` is stored at ``<cache_dir>/api/draws/live/<hash>.json``
    where the hash covers the full key. Each file holds the key, the value and
    an absolute expiry, so entries outlive the process that wrote them.
    """

    name = "filesystem"

    def __init__(
        self,
        cache_dir: str | Path,
        default_ttl_s: int = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache_dir = Path(cache_dir).resolve()
        self._default_ttl = default_ttl_s
        self._clock = clock
        self._hits = 0
        self._misses = 0
        self._errors = 0

    def path_for(self, key: str) -> Path:
        digest = hashlib.md5(key.encode("utf-8")).hexdigest()[:16]
        segments = [s for s in key.split("?", 1)[0].split("/") if s and s not in (".", "..")]
        return self.cache_dir.joinpath(*segments, f"{digest}.json")

    async def connect(self) -> None:
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise CacheUnavailable(self.name, str(exc)) from exc
        if not os.access(self.cache_dir, os.R_OK | os.W_OK):
            raise CacheUnavailable(self.name, f"{self.cache_dir} is not readable and writable")
        logger.info("filesystem_cache_ready", cache_dir=str(self.cache_dir))

    def _read(self, key: str) -> Optional[dict[str, Any]]:
        path = self.path_for(key)
        try:
            entry = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            self._errors += 1
            logger.warning("cache_get_failed", key=key, error=str(exc))
            return None
        if entry.get("key") != key:
            return None
        if entry.get("expires_at", 0) <= self._clock():
            path.unlink(missing_ok=True)
            return None
        return entry

    def _write(self, key: str, value: Any, ttl: int) -> None:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(
            json.dumps({"key": key, "data": value, "expires_at": self._clock() + ttl}, default=str),
            encoding="utf-8",
        )
        os.replace(tmp, path)

    async def get(self, key: str) -> Optional[Any]:
        entry = await asyncio.to_thread(self._read, key)
        if entry is None:
            self._misses += 1
            return None
        self._hits += 1
        return entry["data"]

    async def set(self, key: str, value: Any, ttl_s: int | None = None) -> bool:
        try:
            await asyncio.to_thread(self._write, key, value, ttl_s or self._default_ttl)
        except OSError as exc:
            self._errors += 1
            logger.warning("cache_set_failed", key=key, error=str(exc))
            return False
        return True

    async def get_ttl(self, key: str) -> Optional[int]:
        entry = await asyncio.to_thread(self._read, key)
        if entry is None:
            return None
        return max(0, round(entry["expires_at"] - self._clock()))

    async def delete(self, key: str) -> bool:
        path = self.path_for(key)
        if not path.is_file():
            return False
        path.unlink(missing_ok=True)
        return True

    def _files(self) -> list[Path]:
        if not self.cache_dir.is_dir():
            return []
        return [p for p in self.cache_dir.rglob("*.json") if p.is_file()]

    async def flush(self) -> bool:
        files = await asyncio.to_thread(self._files)
        for path in files:
            path.unlink(missing_ok=True)
        logger.info("cache_flushed", provider=self.name, removed=len(files))
        return True

    async def stats(self) -> dict[str, Any]:
        files = await asyncio.to_thread(self._files)
        return {
            "provider": self.name,
            "cache_dir": str(self.cache_dir),
            "keys": len(files),
            "size_bytes": sum(p.stat().st_size for p in files),
            "hits": self._hits,
            "misses": self._misses,
            "errors": self._errors,
        }


class NoOpCache(CacheProvider):
    name = "none"

    async def get(self, key: str) -> Optional[Any]:
        return None

    async def set(self, key: str, value: Any, ttl_s: int | None = None) -> bool:
        return False

    async def get_ttl(self, key: str) -> Optional[int]:
        return None

    async def delete(self, key: str) -> bool:
        return False

    async def flush(self) -> bool:
        return True

    async def stats(self) -> dict[str, Any]:
        return {"provider": self.name, "keys": 0}


def build_cache(settings: Settings | None = None, redis: RedisManager | None = None) -> CacheProvider:
    """Instantiate the configured cache provider (not yet connected)."""
    settings = settings or get_settings()
    if settings.cache_provider == CacheKind.REDIS:
        return RedisCache(redis or RedisManager(settings), settings.cache_default_ttl_s)
    if settings.cache_provider == CacheKind.FILESYSTEM:
        return FilesystemCache(settings.cache_dir, settings.cache_default_ttl_s)
    if settings.cache_provider == CacheKind.NONE:
        return NoOpCache()
    return MemoryCache(settings.cache_default_ttl_s)
