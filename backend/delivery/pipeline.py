"""
Event delivery pipeline.
Validates detected events and fans them out to every registered sink.
"""
from __future__ import annotations

import abc
from typing import Any, Iterable, Optional

from pydantic import ValidationError

from shared.config import Settings, get_settings
from shared.models.domain import DomainEvent
from shared.utils.logging import get_events_logger, get_logger
from shared.utils.metrics import EVENTS_DROPPED

from delivery.webhook import WebhookClient

logger = get_logger(__name__)

REQUIRED_FIELDS: tuple[str, ...] = ("event_type", "timestamp", "match_id", "description", "data")


def validate_event(candidate: Any) -> Optional[DomainEvent]:
    """Return a DomainEvent for a well-formed candidate, or None (logged) when it is not."""
    if isinstance(candidate, DomainEvent):
        return candidate
    if not isinstance(candidate, dict):
        logger.warning("event_invalid", reason="not a mapping", kind=type(candidate).__name__)
        return None
    missing = [f for f in REQUIRED_FIELDS if f not in candidate]
    if missing:
        logger.warning("event_invalid", reason="missing fields", missing=missing)
        return None
    try:
        return DomainEvent.model_validate(candidate)
    except ValidationError as exc:
        logger.warning(
            "event_invalid",
            event_type=candidate.get("event_type"),
            match_id=candidate.get("match_id"),
            errors=[".".join(str(p) for p in err["loc"]) for err in exc.errors()],
        )
        return None


class EventSink(abc.ABC):
    name: str = "sink"

    @abc.abstractmethod
    def handle(self, events: list[DomainEvent]) -> None:
        ...

    async def shutdown(self) -> None:
        """Flush anything buffered. Default: nothing to do."""


class LogSink(EventSink):
    """Writes events to the structured log: one line per event, or a grouped summary."""
    name = "log"

    def __init__(self) -> None:
        self._log = get_events_logger()

    def handle(self, events: list[DomainEvent]) -> None:
        if len(events) == 1:
            event = events[0]
            self._log.info(
                event.event_type.value,
                description=event.description,
                match_id=event.match_id,
                priority=event.priority.value,
                data=event.data,
            )
            return
        self._log.info(
            "events_generated",
            count=len(events),
            events=[f"{e.event_type.value}: {e.description}" for e in events],
        )


class WebhookSink(EventSink):
    name = "webhook"

    def __init__(self, client: WebhookClient) -> None:
        self._client = client

    @property
    def client(self) -> WebhookClient:
        return self._client

    def handle(self, events: list[DomainEvent]) -> None:
        self._client.queue_events(events)

    async def shutdown(self) -> None:
        await self._client.shutdown()


class EventPipeline:
    """
    Validates events and dispatches the valid ones to all sinks.

    A failing sink is logged and skipped; it never blocks the others.
    """

    def __init__(self, sinks: Iterable[EventSink] | None = None, enabled: bool = True) -> None:
        self._sinks: list[EventSink] = list(sinks or [])
        self._enabled = enabled

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        webhook: WebhookClient | None = None,
    ) -> "EventPipeline":
        settings = settings or get_settings()
        sinks: list[EventSink] = []
        if settings.events_console_output:
            sinks.append(LogSink())
        webhook = webhook or WebhookClient(settings)
        if webhook.enabled:
            sinks.append(WebhookSink(webhook))
        return cls(sinks, enabled=settings.events_enabled)

    @property
    def sinks(self) -> list[EventSink]:
        return list(self._sinks)

    def add_sink(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled

    def output(self, events: Iterable[DomainEvent | dict[str, Any]]) -> list[DomainEvent]:
        """Validate and dispatch; returns the events that were forwarded."""
        if not self._enabled:
            return []

        valid: list[DomainEvent] = []
        for candidate in events:
            event = validate_event(candidate)
            if event is None:
                EVENTS_DROPPED.labels(reason="invalid").inc()
                continue
            valid.append(event)

        if not valid:
            return []

        for sink in self._sinks:
            try:
                sink.handle(valid)
            except Exception as exc:
                logger.error("event_sink_failed", sink=sink.name, error=str(exc), exc_info=True)
        return valid

    async def shutdown(self) -> None:
        for sink in self._sinks:
            await sink.shutdown()

    def get_config(self) -> dict[str, Any]:
        webhook = next((s for s in self._sinks if isinstance(s, WebhookSink)), None)
        return {
            "enabled": self._enabled,
            "sinks": [s.name for s in self._sinks],
            "webhook": webhook.client.get_config() if webhook else {"enabled": False},
        }
