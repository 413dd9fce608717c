"""
FastAPI application factory for the ATP live events API.

Creates the app with:
- Operational routes (event stats, state reset, feeds, cache, subscriptions)
- Middleware stack
- Health check endpoint
- Lifespan management: builds the service runtime, starts polling on
  startup and drains deliveries on shutdown
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, HTTPException, Query, Request

from shared.config import get_settings
from shared.utils.cache import cache_key, normalize_endpoint
from shared.utils.logging import get_logger, setup_logging
from shared.utils.metrics import start_metrics_server

from api.middleware import setup_middleware
from scheduler.service import Runtime, build_runtime, shutdown_runtime

logger = get_logger(__name__)


def _runtime(request: Request) -> Runtime:
    runtime: Optional[Runtime] = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="service runtime not ready")
    return runtime


@asynccontextmanager
async def _noop_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """No-op lifespan for testing without Redis or the upstream feed."""
    yield


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build the runtime unless one was injected, start polling, and tear down on exit."""
    settings = get_settings()
    setup_logging("api", settings)
    start_metrics_server()

    owned = app.state.runtime is None
    if owned:
        app.state.runtime = await build_runtime(settings)
    runtime: Runtime = app.state.runtime
    runtime.scheduler.start()

    logger.info("api_service_started", host=settings.api_host, port=settings.api_port)
    try:
        yield
    finally:
        if owned:
            await shutdown_runtime(runtime)
            app.state.runtime = None
        else:
            await runtime.scheduler.stop()
        logger.info("api_service_stopped")


def create_app(runtime: Runtime | None = None, *, use_lifespan: bool = True) -> FastAPI:
    """Create and configure the FastAPI application. Set use_lifespan=False to skip startup wiring."""
    app = FastAPI(
        title="ATP Live Events API",
        description="Change detection and delivery over live ATP tennis feeds",
        version="1.0.0",
        lifespan=lifespan if use_lifespan else _noop_lifespan,
    )
    app.state.runtime = runtime

    setup_middleware(app)

    @app.get("/health", tags=["system"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "api"}

    @app.get("/api/events/stats", tags=["events"])
    async def event_stats(request: Request) -> dict[str, Any]:
        rt = _runtime(request)
        return {
            "engine": rt.engine.get_stats(),
            "scheduler": rt.scheduler.stats(),
            "delivery": rt.pipeline.get_config(),
            "webhook": rt.webhook.get_stats(),
        }

    @app.post("/api/events/reset", tags=["events"])
    async def reset_event_state(
        request: Request,
        endpoint: Optional[str] = Query(default=None, description="Reset one endpoint only"),
    ) -> dict[str, Any]:
        rt = _runtime(request)
        rt.engine.clear_states(endpoint)
        return {"status": "ok", "cleared": endpoint or "all"}

    @app.get("/api/cache/stats", tags=["cache"])
    async def cache_stats(request: Request) -> dict[str, Any]:
        return await _runtime(request).cache.stats()

    @app.get("/api/cache/entry", tags=["cache"])
    async def cache_entry(
        request: Request,
        endpoint: str = Query(..., description="Endpoint path, e.g. /api/live-matches"),
    ) -> dict[str, Any]:
        """Latest cached snapshot for an endpoint, with its remaining TTL."""
        rt = _runtime(request)
        key = cache_key(endpoint)
        data = await rt.cache.get(key)
        if data is None:
            raise HTTPException(status_code=404, detail=f"no cached snapshot for {endpoint}")
        return {"endpoint": key, "data": data, "cached": True, "ttl": await rt.cache.get_ttl(key)}

    @app.get("/api/feeds", tags=["system"])
    async def feeds(request: Request) -> dict[str, Any]:
        """Endpoint paths the upstream connector can poll."""
        return {"endpoints": _runtime(request).upstream.endpoints}

    @app.get("/api/subscriptions", tags=["subscriptions"])
    async def subscription_stats(request: Request) -> dict[str, Any]:
        return _runtime(request).subscriptions.stats()

    @app.put("/api/subscriptions/{connection_id}", tags=["subscriptions"])
    async def subscribe(
        request: Request,
        connection_id: str,
        endpoint: str = Query(..., description="Endpoint path, e.g. /api/live-matches"),
    ) -> dict[str, Any]:
        """Register a connection's interest; the first subscriber starts polling the endpoint."""
        rt = _runtime(request)
        path = normalize_endpoint(endpoint)
        if not rt.upstream.supports(path):
            raise HTTPException(status_code=404, detail=f"unknown endpoint {endpoint}")
        first = rt.subscriptions.subscribe(connection_id, path)
        return {
            "connection_id": connection_id,
            "endpoint": path,
            "first_subscriber": first,
            "subscribers": len(rt.subscriptions.subscribers(path)),
        }

    @app.delete("/api/subscriptions/{connection_id}", tags=["subscriptions"])
    async def unsubscribe(
        request: Request,
        connection_id: str,
        endpoint: Optional[str] = Query(default=None, description="Drop one endpoint; all when omitted"),
    ) -> dict[str, Any]:
        """Drop a connection's interest; the last subscriber leaving stops polling."""
        rt = _runtime(request)
        if endpoint is None:
            removed = rt.subscriptions.remove_connection(connection_id)
        else:
            path = normalize_endpoint(endpoint)
            removed = [path] if connection_id in rt.subscriptions.subscribers(path) else []
            rt.subscriptions.unsubscribe(connection_id, path)
        if not removed:
            raise HTTPException(status_code=404, detail=f"no subscriptions for {connection_id}")
        return {"connection_id": connection_id, "removed": removed}

    return app


# For running with uvicorn directly
app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run("api.app:app", host=_settings.api_host, port=_settings.api_port)
