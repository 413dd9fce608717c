"""
Live subscriber directory and snapshot publishing.

The directory tracks which connections want which endpoints and drives the
scheduler's "subscription" polling reason: the first subscriber starts polling
an endpoint, the last one leaving stops it. Snapshots are published to Redis
for the transport layer to fan out.
"""
from __future__ import annotations

import json
from collections import defaultdict
from typing import Any, Optional, Protocol

from shared.models.domain import iso_now
from shared.models.enums import PollingReason
from shared.utils.logging import get_logger
from shared.utils.redis_manager import RedisManager

logger = get_logger(__name__)


class PollingControl(Protocol):
    def start_polling_for_endpoint(self, endpoint: str, reason: PollingReason) -> None: ...

    def stop_polling_for_endpoint(self, endpoint: str, reason: PollingReason) -> None: ...


class SubscriptionDirectory:
    """In-memory endpoint ↔ connection registry."""

    def __init__(self, scheduler: Optional[PollingControl] = None) -> None:
        self._scheduler = scheduler
        self._by_endpoint: dict[str, set[str]] = defaultdict(set)
        self._by_connection: dict[str, set[str]] = defaultdict(set)

    def bind(self, scheduler: PollingControl) -> None:
        self._scheduler = scheduler

    def subscribe(self, connection_id: str, endpoint: str) -> bool:
        """Register interest. Returns True when this is the endpoint's first subscriber."""
        subscribers = self._by_endpoint[endpoint]
        if connection_id in subscribers:
            return False
        first = not subscribers
        subscribers.add(connection_id)
        self._by_connection[connection_id].add(endpoint)
        logger.info("subscription_added", endpoint=endpoint, connection_id=connection_id,
                    subscribers=len(subscribers))
        if first and self._scheduler is not None:
            self._scheduler.start_polling_for_endpoint(endpoint, PollingReason.SUBSCRIPTION)
        return first

    def unsubscribe(self, connection_id: str, endpoint: str) -> bool:
        """Drop interest. Returns True when the endpoint has no subscribers left."""
        subscribers = self._by_endpoint.get(endpoint)
        if not subscribers or connection_id not in subscribers:
            return False
        subscribers.discard(connection_id)
        endpoints = self._by_connection.get(connection_id)
        if endpoints is not None:
            endpoints.discard(endpoint)
            if not endpoints:
                del self._by_connection[connection_id]
        logger.info("subscription_removed", endpoint=endpoint, connection_id=connection_id,
                    subscribers=len(subscribers))
        if subscribers:
            return False
        del self._by_endpoint[endpoint]
        if self._scheduler is not None:
            self._scheduler.stop_polling_for_endpoint(endpoint, PollingReason.SUBSCRIPTION)
        return True

    def remove_connection(self, connection_id: str) -> list[str]:
        """Unsubscribe a connection from everything; returns the endpoints it held."""
        endpoints = sorted(self._by_connection.get(connection_id, ()))
        for endpoint in endpoints:
            self.unsubscribe(connection_id, endpoint)
        return endpoints

    def subscribers(self, endpoint: str) -> set[str]:
        return set(self._by_endpoint.get(endpoint, ()))

    def has_subscribers(self, endpoint: str) -> bool:
        return bool(self._by_endpoint.get(endpoint))

    def stats(self) -> dict[str, Any]:
        return {
            "total_connections": len(self._by_connection),
            "endpoints": sorted(self._by_endpoint),
            "subscribers_per_endpoint": {ep: len(ids) for ep, ids in self._by_endpoint.items()},
        }


class RedisPublisher:
    """Publishes fresh snapshots on ``live:{endpoint}``."""

    def __init__(self, redis: RedisManager) -> None:
        self._redis = redis

    async def publish(self, endpoint: str, data: Any, ttl_s: int) -> int:
        message = {
            "endpoint": endpoint,
            "data": data,
            "cached": False,
            "timestamp": iso_now(),
            "ttl": ttl_s,
        }
        receivers = await self._redis.publish_live(endpoint, json.dumps(message, default=str))
        logger.debug("snapshot_published", endpoint=endpoint, receivers=receivers)
        return receivers
