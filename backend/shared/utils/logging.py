"""
Structured logging for the ATP live events services.

Every entry is a structlog event with snake_case names and keyword context.
Process context (service, instance) is bound once at startup; poll loops bind
their endpoint for the lifetime of the task, so every line a cycle emits,
including those from the upstream client, cache and webhook layers, carries
``endpoint``. Detected events go to the dedicated ``EVENTS_LOGGER`` so they
can be routed or filtered apart from operational logs.
"""
from __future__ import annotations

import logging
import sys
from contextlib import AbstractContextManager
from typing import Any

import structlog
from shared.config import Environment, Settings, get_settings

EVENTS_LOGGER = "atp.events"
QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "asyncio", "redis")


def resolve_level(settings: Settings) -> int:
    """DEBUG when ``debug`` is set, otherwise the configured level name (INFO if unknown)."""
    if settings.debug:
        return logging.DEBUG
    return getattr(logging, settings.log_level.upper(), logging.INFO)


def use_console_renderer(settings: Settings) -> bool:
    return settings.debug or settings.environment == Environment.DEV


def setup_logging(
    service_name: str,
    settings: Settings | None = None,
    extra_context: dict[str, Any] | None = None,
) -> None:
    """
    Configure structlog and the stdlib root logger for one service process.

    Args:
        service_name: The service identifier (poller, api, replay).
        settings: Defaults to the process settings.
        extra_context: Additional static fields bound to every entry.
    """
    settings = settings or get_settings()

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    renderer: structlog.types.Processor
    if use_console_renderer(settings):
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=shared_processors,
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(resolve_level(settings))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        service=service_name,
        instance_id=settings.instance_id,
        environment=settings.environment.value,
        **(extra_context or {}),
    )


def bind_endpoint(endpoint: str, **extra: Any) -> AbstractContextManager[Any]:
    """Bind ``endpoint`` (and ``extra``) to every entry logged inside the block."""
    return structlog.contextvars.bound_contextvars(endpoint=endpoint, **extra)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def get_events_logger() -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(EVENTS_LOGGER)
