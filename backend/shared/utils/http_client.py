"""
Async HTTP client wrapper for upstream feed requests.
Includes retry logic, timeout management, and metrics collection.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Optional

import httpx

from shared.config import Settings, get_settings
from shared.errors import UpstreamError, UpstreamNotFound
from shared.utils.logging import get_logger
from shared.utils.metrics import UPSTREAM_LATENCY, UPSTREAM_REQUESTS

logger = get_logger(__name__)


class UpstreamHTTPClient:
    """
    Async HTTP client tailored for the upstream live feed.
    Handles timeouts, retries, and records metrics per request.

    404 is surfaced as ``UpstreamNotFound`` without retrying; other 4xx (except
    429) raise ``UpstreamError`` immediately. 429, 5xx and timeouts are retried.
    """

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str] | None = None,
        timeout_s: float | None = None,
        max_retries: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_s or settings.upstream_timeout_s
        self._max_retries = max(1, max_retries if max_retries is not None else settings.upstream_max_retries)
        self._default_headers = headers or {}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def start(self) -> None:
        """Initialize the underlying httpx client."""
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._default_headers,
            timeout=httpx.Timeout(self._timeout, connect=5.0),
            follow_redirects=True,
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            transport=self._transport,
        )

    async def close(self) -> None:
        """Close the underlying httpx client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """GET ``path`` and decode the JSON body."""
        resp = await self.get(path, params=params)
        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamError(path, resp.status_code, "invalid JSON body") from exc

    async def get(self, path: str, params: dict[str, Any] | None = None) -> httpx.Response:
        """
        Perform a GET request with retry, metrics, and structured logging.

        Raises:
            UpstreamNotFound: The feed answered 404.
            UpstreamError: Any other non-retryable failure, or retries exhausted.
        """
        if not self._client:
            raise RuntimeError("UpstreamHTTPClient not started. Call start() first.")

        last_error: Optional[UpstreamError] = None

        for attempt in range(1, self._max_retries + 1):
            start_time = time.perf_counter()
            status = "unknown"

            try:
                resp = await self._client.get(path, params=params)
                status = str(resp.status_code)

                if resp.status_code == 404:
                    raise UpstreamNotFound(path)

                if resp.status_code == 429 or resp.status_code >= 500:
                    last_error = UpstreamError(path, resp.status_code)
                    logger.warning(
                        "upstream_retryable_status",
                        path=path,
                        status=resp.status_code,
                        attempt=attempt,
                    )
                    if attempt < self._max_retries:
                        await asyncio.sleep(self._retry_delay(resp, attempt))
                    continue

                if resp.status_code >= 400:
                    logger.error("upstream_http_error", path=path, status=resp.status_code)
                    raise UpstreamError(path, resp.status_code)

                logger.debug(
                    "upstream_request_success",
                    path=path,
                    status=resp.status_code,
                    latency_ms=round((time.perf_counter() - start_time) * 1000, 2),
                )
                return resp

            except httpx.TimeoutException:
                status = "timeout"
                last_error = UpstreamError(path, detail="timeout")
                logger.warning("upstream_timeout", path=path, attempt=attempt)
                if attempt < self._max_retries:
                    await asyncio.sleep(1.0 * attempt)

            except httpx.TransportError as exc:
                status = "error"
                last_error = UpstreamError(path, detail=str(exc))
                logger.warning("upstream_transport_error", path=path, error=str(exc), attempt=attempt)
                if attempt < self._max_retries:
                    await asyncio.sleep(1.0 * attempt)

            finally:
                UPSTREAM_REQUESTS.labels(path=path, status=status).inc()
                UPSTREAM_LATENCY.labels(path=path).observe(time.perf_counter() - start_time)

        # All retries exhausted
        if last_error:
            raise last_error
        raise UpstreamError(path, detail=f"failed after {self._max_retries} attempts")

    @staticmethod
    def _retry_delay(resp: httpx.Response, attempt: int) -> float:
        if resp.status_code == 429:
            try:
                return min(float(resp.headers.get("Retry-After", "2")), 10.0)
            except ValueError:
                return 2.0
        return 1.0 * attempt
