"""
Signed, batched webhook delivery for domain events.

Events are queued and flushed either when the queue reaches the batch size or
after the batch interval elapses with no new events. Every request body is
signed with HMAC-SHA256 over ``body + timestamp``; the receiver recomputes it
from the raw body and the body's ``timestamp`` field.
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import secrets
import time
from typing import Any, Awaitable, Callable, Iterable, Optional

import httpx

from shared.config import Settings, get_settings
from shared.models.domain import DomainEvent, WebhookBatch, iso_now
from shared.utils.logging import get_logger
from shared.utils.metrics import WEBHOOK_DELIVERIES, WEBHOOK_QUEUE_SIZE

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-ATP-Live-Signature"
USER_AGENT = "ATP-Live-Proxy/1.0"


def sign_payload(payload: str, timestamp: str, secret: str) -> str:
    """``sha256=<hex>`` HMAC of the serialized body followed by the timestamp."""
    digest = hmac.new(secret.encode(), (payload + timestamp).encode(), hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def retry_delay(attempt: int, base_s: float, cap_s: float) -> float:
    """Delay before retry ``attempt`` (1-based): base * 2^(attempt-1), capped."""
    if attempt <= 0:
        return 0.0
    return min(base_s * (2 ** (attempt - 1)), cap_s)


def new_batch_id() -> str:
    return f"batch_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"


def _is_retryable(status: int) -> bool:
    return status == 429 or status >= 500


class WebhookClient:
    """
    Process-wide webhook sender with a batch queue.

    All queue and timer access happens on the event loop, so no locking is used.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._settings = settings or get_settings()
        self._url = self._settings.webhook_url
        self._secret = self._settings.webhook_secret or ""
        self._timeout = self._settings.webhook_timeout_s
        self._attempts = max(1, self._settings.webhook_retries)
        self._batch_size = max(1, self._settings.webhook_batch_size)
        self._batch_interval = self._settings.webhook_batch_interval_s
        self._retry_base = self._settings.webhook_retry_base_delay_s
        self._retry_cap = self._settings.webhook_retry_max_delay_s
        self._transport = transport
        self._sleep = sleep

        self._queue: list[dict[str, Any]] = []
        self._timer: Optional[asyncio.TimerHandle] = None
        self._flushes: set[asyncio.Task[bool]] = set()
        self._client: Optional[httpx.AsyncClient] = None
        self._sent = 0
        self._failed = 0

        if self.enabled:
            logger.info("webhook_enabled", url=self._url)
        else:
            logger.info("webhook_disabled", reason="missing url or secret")

    @property
    def enabled(self) -> bool:
        return self._settings.webhook_enabled

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    # ── Lifecycle ───────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
            )

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("WebhookClient not started. Call start() first.")
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def shutdown(self) -> None:
        """Cancel the batch timer, wait for in-flight flushes, and drain the queue."""
        self._clear_timer()
        if self._flushes:
            await asyncio.gather(*self._flushes, return_exceptions=True)
        if self._queue:
            logger.info("webhook_draining_queue", pending=len(self._queue))
            await self.flush()
        await self.close()
        logger.info("webhook_shutdown_complete", sent=self._sent, failed=self._failed)

    # ── Queue ───────────────────────────────────────────────────────────

    def queue_events(self, events: Iterable[DomainEvent | dict[str, Any]]) -> None:
        """Add events to the batch queue; flushes at batch size, otherwise re-arms the timer."""
        if not self.enabled:
            return
        for event in events:
            self._queue.append(event.to_wire() if isinstance(event, DomainEvent) else dict(event))
        WEBHOOK_QUEUE_SIZE.set(len(self._queue))

        if len(self._queue) >= self._batch_size:
            self._spawn_flush()
        else:
            self._reset_timer()

    async def flush(self) -> bool:
        """Send everything currently queued. Returns True when delivery succeeded."""
        self._clear_timer()
        if not self._queue:
            return True
        pending, self._queue = self._queue, []
        WEBHOOK_QUEUE_SIZE.set(0)
        logger.debug("webhook_flushing", count=len(pending))
        return await self.send_events(pending)

    def _spawn_flush(self) -> None:
        task = asyncio.get_running_loop().create_task(self.flush())
        self._flushes.add(task)
        task.add_done_callback(self._flushes.discard)

    def _reset_timer(self) -> None:
        self._clear_timer()
        self._timer = asyncio.get_running_loop().call_later(self._batch_interval, self._spawn_flush)

    def _clear_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    # ── Delivery ────────────────────────────────────────────────────────

    def build_body(self, events: list[dict[str, Any]], timestamp: str) -> dict[str, Any]:
        """A single event goes out as-is with a fresh timestamp; several go in a batch envelope."""
        if len(events) == 1:
            return {**events[0], "timestamp": timestamp}
        batch = WebhookBatch(
            batch_id=new_batch_id(),
            timestamp=timestamp,
            events=[{**e, "timestamp": e.get("timestamp") or timestamp} for e in events],
        )
        return batch.model_dump(mode="json")

    async def send_events(self, events: list[dict[str, Any]]) -> bool:
        """
        POST events with signature and bounded retries.

        4xx other than 429 stops immediately; 429, 5xx and network errors are
        retried with capped exponential backoff. Exhausted deliveries are logged
        and dropped.
        """
        if not self.enabled or not events:
            return False
        await self.start()
        client = self.client

        timestamp = iso_now()
        payload = json.dumps(self.build_body(events, timestamp), separators=(",", ":"), default=str)
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_payload(payload, timestamp, self._secret),
            "User-Agent": USER_AGENT,
        }

        last_error = ""
        for attempt in range(self._attempts):
            delay = retry_delay(attempt, self._retry_base, self._retry_cap)
            if delay > 0:
                logger.info("webhook_retry_scheduled", attempt=attempt + 1, delay_s=delay)
                await self._sleep(delay)

            try:
                resp = await client.post(self._url, content=payload, headers=headers)
            except httpx.HTTPError as exc:
                last_error = str(exc) or type(exc).__name__
                logger.warning("webhook_network_error", error=last_error, attempt=attempt + 1)
                continue

            if 200 <= resp.status_code < 300:
                self._sent += len(events)
                WEBHOOK_DELIVERIES.labels(outcome="success").inc()
                logger.info("webhook_delivered", count=len(events), status=resp.status_code)
                return True

            last_error = f"HTTP {resp.status_code}"
            logger.warning("webhook_http_error", status=resp.status_code, attempt=attempt + 1)
            if not _is_retryable(resp.status_code):
                logger.error("webhook_not_retrying", status=resp.status_code)
                break

        self._failed += len(events)
        WEBHOOK_DELIVERIES.labels(outcome="failed").inc()
        logger.error(
            "webhook_delivery_failed",
            count=len(events),
            attempts=self._attempts,
            error=last_error,
        )
        return False

    # ── Introspection ───────────────────────────────────────────────────

    def get_config(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "webhook_url": self._url,
            "has_secret": bool(self._secret),
            "timeout_s": self._timeout,
            "retries": self._attempts,
            "batch_size": self._batch_size,
            "batch_interval_s": self._batch_interval,
            "queue_size": len(self._queue),
        }

    def get_stats(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "queue_size": len(self._queue),
            "batch_timer_active": self._timer is not None,
            "sent": self._sent,
            "failed": self._failed,
        }
