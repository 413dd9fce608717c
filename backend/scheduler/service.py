"""
Polling scheduler service for the ATP live events platform.
Runs one fetch, detect, cache, capture and publish loop per active endpoint.

An endpoint is polled while at least one reason keeps it alive:
  subscription: a live client is subscribed to the endpoint
  events      : the endpoint is on the event-monitoring roster
Each loop sleeps only after its cycle finishes, so fetches for the same
endpoint never overlap.
"""
from __future__ import annotations

import asyncio
import signal
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol

from redis.exceptions import RedisError

from shared.config import Settings, get_settings
from shared.errors import CacheUnavailable, UpstreamNotFound
from shared.models.enums import PollingReason
from shared.utils.cache import CacheProvider, build_cache, cache_key
from shared.utils.logging import bind_endpoint, get_logger, setup_logging
from shared.utils.metrics import (
    POLL_ACTIVE_ENDPOINTS,
    POLL_BACKOFF_MULTIPLIER,
    POLL_CYCLE_DURATION,
    POLL_CYCLES,
    start_metrics_server,
)
from shared.utils.redis_manager import RedisManager

from delivery.pipeline import EventPipeline
from delivery.webhook import WebhookClient
from detection.engine import EventDetectionEngine
from ingest.providers.atp import AtpLiveClient
from scheduler.engine.backoff import BackoffPolicy, BackoffState
from replay.capture import ResponseLogger
from scheduler.subscriptions import RedisPublisher, SubscriptionDirectory

logger = get_logger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


class Upstream(Protocol):
    async def fetch(self, endpoint: str) -> Any: ...


class Publisher(Protocol):
    async def publish(self, endpoint: str, data: Any, ttl_s: int) -> int: ...


class PollingScheduler:
    """
    Per-endpoint poll loops with reason tracking and backoff.

    ``start_polling_for_endpoint``/``stop_polling_for_endpoint`` must be
    called from the event loop; they only touch in-memory state and
    create or cancel tasks.
    """

    def __init__(
        self,
        upstream: Upstream,
        engine: EventDetectionEngine,
        pipeline: EventPipeline,
        cache: CacheProvider,
        subscriptions: SubscriptionDirectory | None = None,
        publisher: Publisher | None = None,
        capture: ResponseLogger | None = None,
        settings: Settings | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._upstream = upstream
        self._engine = engine
        self._pipeline = pipeline
        self._cache = cache
        self._subscriptions = subscriptions
        self._publisher = publisher
        self._capture = capture
        self._settings = settings or get_settings()
        self._policy = BackoffPolicy(self._settings)
        self._sleep = sleep
        self._reasons: dict[str, set[PollingReason]] = {}
        self._backoff: dict[str, BackoffState] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._running = False

    # ── Reason management ───────────────────────────────────────────────

    def start_polling_for_endpoint(self, endpoint: str, reason: PollingReason) -> None:
        reasons = self._reasons.setdefault(endpoint, set())
        first = not reasons
        reasons.add(reason)
        if not first:
            logger.debug("poll_reason_added", endpoint=endpoint, reason=reason.value,
                         reasons=sorted(r.value for r in reasons))
            return

        state = self._policy.initial(endpoint)
        self._backoff[endpoint] = state
        self._tasks[endpoint] = asyncio.get_running_loop().create_task(
            self._poll_loop(endpoint), name=f"poll:{endpoint}"
        )
        POLL_ACTIVE_ENDPOINTS.set(len(self._tasks))
        logger.info("polling_started", endpoint=endpoint, reason=reason.value,
                    interval_s=state.base_interval_s)

    def stop_polling_for_endpoint(self, endpoint: str, reason: PollingReason) -> None:
        reasons = self._reasons.get(endpoint)
        if not reasons or reason not in reasons:
            return
        reasons.discard(reason)
        if reasons:
            logger.debug("poll_reason_removed", endpoint=endpoint, reason=reason.value)
            return

        del self._reasons[endpoint]
        self._backoff.pop(endpoint, None)
        task = self._tasks.pop(endpoint, None)
        if task and not task.done():
            task.cancel()
        POLL_ACTIVE_ENDPOINTS.set(len(self._tasks))
        POLL_BACKOFF_MULTIPLIER.labels(endpoint=endpoint).set(1.0)
        logger.info("polling_stopped", endpoint=endpoint, reason=reason.value)

    # ── Lifecycle ───────────────────────────────────────────────────────

    def start(self) -> None:
        """Put every monitored endpoint on the events roster when detection is enabled."""
        if self._running:
            logger.info("scheduler_already_running")
            return
        self._running = True
        if self._engine.enabled:
            for endpoint in self._engine.monitored_endpoints:
                self.start_polling_for_endpoint(endpoint, PollingReason.EVENTS)
        logger.info("scheduler_started", endpoints=sorted(self._reasons))

    async def stop(self) -> None:
        """Cancel every poll loop and wait for them to finish."""
        self._running = False
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._reasons.clear()
        self._backoff.clear()
        POLL_ACTIVE_ENDPOINTS.set(0)
        logger.info("scheduler_stopped")

    # ── Poll loop ───────────────────────────────────────────────────────

    async def _poll_loop(self, endpoint: str) -> None:
        with bind_endpoint(endpoint):
            try:
                while endpoint in self._reasons:
                    await self.poll_once(endpoint)
                    state = self._backoff.get(endpoint)
                    if state is None:
                        break
                    await self._sleep(state.interval_s)
            except asyncio.CancelledError:
                logger.debug("poll_loop_cancelled")
                raise

    async def poll_once(self, endpoint: str) -> bool:
        """
        Run one cycle for ``endpoint``. Returns True when a snapshot was processed.

        A 404 grows the backoff and skips the cycle; any other failure is
        logged and skips the cycle without touching backoff.
        """
        state = self._backoff.get(endpoint) or self._policy.initial(endpoint)
        start = time.perf_counter()

        try:
            data = await self._upstream.fetch(endpoint)
        except UpstreamNotFound:
            data = None
        except Exception as exc:
            POLL_CYCLES.labels(endpoint=endpoint, outcome="error").inc()
            logger.error("poll_fetch_failed", endpoint=endpoint, error=str(exc), exc_info=True)
            return False

        if data is None:
            self._policy.on_empty(state)
            POLL_CYCLES.labels(endpoint=endpoint, outcome="empty").inc()
            POLL_BACKOFF_MULTIPLIER.labels(endpoint=endpoint).set(state.multiplier)
            logger.info(
                "poll_backoff_applied",
                endpoint=endpoint,
                multiplier=round(state.multiplier, 3),
                next_in_s=round(state.interval_s, 2),
                consecutive_errors=state.consecutive_errors,
            )
            return False

        if state.backed_off:
            logger.info("poll_backoff_reset", endpoint=endpoint)
        self._policy.on_success(state)
        POLL_BACKOFF_MULTIPLIER.labels(endpoint=endpoint).set(state.multiplier)

        try:
            events = self._engine.process_data(endpoint, data)
            if events:
                self._pipeline.output(events)

            ttl = self._settings.endpoint_ttl(endpoint)
            await self._cache.set(cache_key(endpoint), data, ttl)
            if self._capture is not None:
                await self._capture.record(endpoint, data)

            if (
                self._publisher is not None
                and self._subscriptions is not None
                and self._subscriptions.has_subscribers(endpoint)
            ):
                await self._publisher.publish(endpoint, data, ttl)
        except Exception as exc:
            POLL_CYCLES.labels(endpoint=endpoint, outcome="error").inc()
            logger.error("poll_cycle_failed", endpoint=endpoint, error=str(exc), exc_info=True)
            return False

        POLL_CYCLES.labels(endpoint=endpoint, outcome="ok").inc()
        POLL_CYCLE_DURATION.labels(endpoint=endpoint).observe(time.perf_counter() - start)
        return True

    # ── Introspection ───────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._running

    def reasons_for(self, endpoint: str) -> set[PollingReason]:
        return set(self._reasons.get(endpoint, ()))

    def backoff_for(self, endpoint: str) -> Optional[BackoffState]:
        return self._backoff.get(endpoint)

    def stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "active_endpoints": sorted(self._tasks),
            "total_active_endpoints": len(self._tasks),
            "reasons": {ep: sorted(r.value for r in rs) for ep, rs in self._reasons.items()},
            "backoff": {ep: s.as_dict() for ep, s in self._backoff.items()},
            "monitored_endpoints": self._engine.monitored_endpoints,
            "events_enabled": self._engine.enabled,
        }


# ── Wiring ──────────────────────────────────────────────────────────────

@dataclass
class Runtime:
    """Everything one service process owns, built once and shared with the API."""
    settings: Settings
    cache: CacheProvider
    upstream: AtpLiveClient
    engine: EventDetectionEngine
    webhook: WebhookClient
    pipeline: EventPipeline
    subscriptions: SubscriptionDirectory
    scheduler: PollingScheduler
    redis: Optional[RedisManager] = None
    capture: Optional[ResponseLogger] = None


async def build_runtime(settings: Settings | None = None) -> Runtime:
    """
    Connect infrastructure and assemble the service graph.

    Raises:
        CacheUnavailable: The configured external cache could not be reached.
    """
    settings = settings or get_settings()

    redis = RedisManager(settings)
    cache = build_cache(settings, redis)
    await cache.connect()
    if settings.cache_flush_on_startup:
        await cache.flush()

    publisher: Optional[RedisPublisher] = None
    if not redis.connected:
        try:
            await redis.connect()
        except (RedisError, OSError) as exc:
            logger.warning("live_publish_disabled", reason=str(exc))
    if redis.connected:
        publisher = RedisPublisher(redis)

    upstream = AtpLiveClient(settings)
    await upstream.start()

    engine = EventDetectionEngine(settings)
    unpollable = [ep for ep in engine.monitored_endpoints if not upstream.supports(ep)]
    if unpollable:
        logger.warning("monitored_endpoints_unsupported", endpoints=unpollable,
                       supported=upstream.endpoints)
    webhook = WebhookClient(settings)
    pipeline = EventPipeline.from_settings(settings, webhook)
    capture = ResponseLogger(settings) if settings.response_log_enabled else None
    subscriptions = SubscriptionDirectory()
    scheduler = PollingScheduler(
        upstream, engine, pipeline, cache,
        subscriptions=subscriptions,
        publisher=publisher,
        capture=capture,
        settings=settings,
    )
    subscriptions.bind(scheduler)

    return Runtime(
        settings=settings,
        cache=cache,
        upstream=upstream,
        engine=engine,
        webhook=webhook,
        pipeline=pipeline,
        subscriptions=subscriptions,
        scheduler=scheduler,
        redis=redis if redis.connected else None,
        capture=capture,
    )


async def shutdown_runtime(runtime: Runtime) -> None:
    """Stop polling, drain webhook deliveries, then close clients."""
    await runtime.scheduler.stop()
    await runtime.pipeline.shutdown()
    if runtime.capture is not None:
        await runtime.capture.flush()
    await runtime.webhook.close()
    await runtime.upstream.close()
    await runtime.cache.disconnect()
    if runtime.redis is not None and runtime.redis.connected:
        await runtime.redis.disconnect()


async def main() -> None:
    """Headless poller entrypoint."""
    settings = get_settings()
    setup_logging("poller", settings)
    start_metrics_server()

    try:
        runtime = await build_runtime(settings)
    except CacheUnavailable as exc:
        logger.critical("cache_unavailable", provider=exc.provider, reason=exc.reason)
        raise SystemExit(1) from exc

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    runtime.scheduler.start()
    logger.info("poller_service_started", instance_id=settings.instance_id)

    try:
        await shutdown.wait()
    finally:
        await shutdown_runtime(runtime)
        logger.info("poller_service_stopped")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
