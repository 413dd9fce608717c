"""
Pydantic v2 domain models shared across the ATP live events services.
These are the canonical wire/internal representations of detected events.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from shared.models.enums import EventPriority, EventType

EVENT_SOURCE = "atp-live-proxy"
EVENT_VERSION = "1.0.0"


def iso_now() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    return format_iso(datetime.now(timezone.utc))


def format_iso(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, accepting the trailing Z form."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    moment = datetime.fromisoformat(text)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


# ── Base ────────────────────────────────────────────────────────────────
class DomainModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ── Events ──────────────────────────────────────────────────────────────
class EventMetadata(DomainModel):
    model_config = ConfigDict(frozen=True)

    source: str = EVENT_SOURCE
    version: str = EVENT_VERSION


class DomainEvent(DomainModel):
    """
    A single semantic change detected between two snapshots of an endpoint.

    Immutable: ordering and replay produce shifted copies via ``shifted``.
    ``match_id`` is the subject identifier, a match id for live matches or
    a fixture code / round / tournament key for draws.
    """
    model_config = ConfigDict(frozen=True)

    event_type: EventType
    timestamp: str = Field(default_factory=iso_now)
    match_id: str
    tournament_id: Optional[str] = None
    description: str
    data: dict[str, Any] = Field(default_factory=dict)
    priority: EventPriority = EventPriority.MEDIUM
    metadata: EventMetadata = Field(default_factory=EventMetadata)

    def shifted(self, offset_ms: int) -> "DomainEvent":
        """Copy of this event with its timestamp moved forward by ``offset_ms``."""
        moved = parse_iso(self.timestamp) + timedelta(milliseconds=offset_ms)
        return self.model_copy(update={"timestamp": format_iso(moved)})

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class WebhookBatch(DomainModel):
    """Envelope used when more than one event is delivered in one request."""
    batch_id: str
    timestamp: str = Field(default_factory=iso_now)
    events: list[dict[str, Any]] = Field(default_factory=list)
