"""
Redis connection manager for the ATP live events services.
Provides async connection pool, cache and pub/sub helpers, and key namespace utilities.
"""
from __future__ import annotations

from typing import Any, Optional

import redis.asyncio as aioredis
from redis.asyncio import Redis

from shared.config import Settings, get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)

# ── Key namespaces ──────────────────────────────────────────────────────
CACHE_KEY = "atp:cache:{key}"
CACHE_PATTERN = "atp:cache:*"
LIVE_CHANNEL = "live:{endpoint}"


def _fmt(template: str, **kwargs: Any) -> str:
    return template.format(**kwargs)


class RedisManager:
    """Manages async Redis connection pool and provides typed helpers."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._pool: Optional[Redis] = None

    async def connect(self) -> None:
        """Initialize the connection pool."""
        pool = aioredis.from_url(
            self._settings.redis_url_str,
            max_connections=self._settings.redis_max_connections,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_keepalive=True,
            retry_on_timeout=True,
        )
        # Verify before exposing the pool
        try:
            await pool.ping()
        except BaseException:
            await pool.aclose()
            raise
        self._pool = pool
        logger.info("redis_connected", url=self._settings.redis_url_str)

    async def disconnect(self) -> None:
        """Graceful shutdown."""
        if self._pool:
            await self._pool.aclose()
            self._pool = None
            logger.info("redis_disconnected")

    @property
    def connected(self) -> bool:
        return self._pool is not None

    @property
    def client(self) -> Redis:
        if self._pool is None:
            raise RuntimeError("RedisManager not connected. Call connect() first.")
        return self._pool

    # ── Cache helpers ───────────────────────────────────────────────────
    async def cache_set(self, key: str, data: str, ttl_s: int) -> None:
        """Store a JSON value with TTL."""
        await self.client.set(_fmt(CACHE_KEY, key=key), data, ex=max(1, int(ttl_s)))

    async def cache_get(self, key: str) -> Optional[str]:
        return await self.client.get(_fmt(CACHE_KEY, key=key))

    async def cache_ttl(self, key: str) -> int:
        """Remaining TTL in seconds; negative when the key is missing or has no expiry."""
        return int(await self.client.ttl(_fmt(CACHE_KEY, key=key)))

    async def cache_delete(self, key: str) -> int:
        return int(await self.client.delete(_fmt(CACHE_KEY, key=key)))

    async def cache_flush(self) -> int:
        """Delete every key in the cache namespace. Returns the number removed."""
        removed = 0
        async for key in self.client.scan_iter(match=CACHE_PATTERN, count=500):
            removed += int(await self.client.delete(key))
        return removed

    async def cache_count(self) -> int:
        count = 0
        async for _ in self.client.scan_iter(match=CACHE_PATTERN, count=500):
            count += 1
        return count

    # ── Pub/Sub publish ─────────────────────────────────────────────────
    async def publish_live(self, endpoint: str, payload: str) -> int:
        """Publish a snapshot message to the endpoint's live channel."""
        channel = _fmt(LIVE_CHANNEL, endpoint=endpoint)
        return await self.client.publish(channel, payload)
