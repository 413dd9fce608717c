"""
API middleware stack.

- Request ID injection (X-Request-ID header)
- Structured request/response logging
- Global exception handlers
"""
from __future__ import annotations

import time
import uuid

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from shared.errors import CacheUnavailable
from shared.utils.logging import get_logger

logger = get_logger(__name__)

QUIET_PATHS = ("/health", "/metrics")


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:16]
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs one structured line per request, except for health checks."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in QUIET_PATHS:
            return await call_next(request)

        start = time.monotonic()
        request_id = getattr(request.state, "request_id", "unknown")
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "http_request_error",
                method=request.method,
                path=path,
                duration_ms=round((time.monotonic() - start) * 1000, 2),
                request_id=request_id,
                error=str(exc),
                exc_info=True,
            )
            raise

        logger.info(
            "http_request",
            method=request.method,
            path=path,
            status=response.status_code,
            duration_ms=round((time.monotonic() - start) * 1000, 2),
            request_id=request_id,
        )
        return response


def setup_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(CacheUnavailable)
    async def cache_unavailable_handler(request: Request, exc: CacheUnavailable) -> JSONResponse:
        logger.error("cache_unavailable", path=request.url.path, provider=exc.provider, reason=exc.reason)
        return JSONResponse(
            status_code=503,
            content={"error": "cache_unavailable", "message": str(exc)},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        request_id = getattr(request.state, "request_id", "unknown")
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            error=str(exc),
            request_id=request_id,
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
                "request_id": request_id,
            },
        )


def setup_middleware(app: FastAPI) -> None:
    """Apply middleware in order: request ID outermost, then logging."""
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    setup_exception_handlers(app)
