"""
Lightweight metrics collection for the ATP live events services.
Wraps prometheus_client counters, histograms and gauges.
"""
from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from shared.config import get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)

# ── Counters ────────────────────────────────────────────────────────────
UPSTREAM_REQUESTS = Counter(
    "atp_upstream_requests_total",
    "Total upstream feed HTTP requests",
    ["path", "status"],
)
POLL_CYCLES = Counter(
    "atp_poll_cycles_total",
    "Completed polling cycles per endpoint",
    ["endpoint", "outcome"],
)
EVENTS_GENERATED = Counter(
    "atp_events_generated_total",
    "Domain events emitted by the detection engine",
    ["event_type"],
)
EVENTS_DROPPED = Counter(
    "atp_events_dropped_total",
    "Domain events dropped before delivery",
    ["reason"],
)
WEBHOOK_DELIVERIES = Counter(
    "atp_webhook_deliveries_total",
    "Webhook delivery attempts by final outcome",
    ["outcome"],
)

# ── Histograms ──────────────────────────────────────────────────────────
UPSTREAM_LATENCY = Histogram(
    "atp_upstream_latency_seconds",
    "Upstream feed request latency in seconds",
    ["path"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)
POLL_CYCLE_DURATION = Histogram(
    "atp_poll_cycle_seconds",
    "Time to run one fetch/detect/cache/publish cycle",
    ["endpoint"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# ── Gauges ──────────────────────────────────────────────────────────────
POLL_ACTIVE_ENDPOINTS = Gauge(
    "atp_poll_active_endpoints",
    "Endpoints with a running poll loop",
)
POLL_BACKOFF_MULTIPLIER = Gauge(
    "atp_poll_backoff_multiplier",
    "Current backoff multiplier applied to an endpoint's base interval",
    ["endpoint"],
)
WEBHOOK_QUEUE_SIZE = Gauge(
    "atp_webhook_queue_size",
    "Events waiting in the webhook batch queue",
)


def start_metrics_server(port: int | None = None) -> None:
    """Start the Prometheus metrics HTTP server."""
    settings = get_settings()
    if not settings.metrics_enabled:
        return
    metrics_port = port or settings.metrics_port
    try:
        start_http_server(metrics_port)
        logger.info("metrics_server_started", port=metrics_port)
    except OSError as exc:
        logger.warning("metrics_server_failed", error=str(exc), port=metrics_port)
