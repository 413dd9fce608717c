"""
Causal ordering of events that share a source timestamp.

Replayed snapshots produce batches whose events all carry the capture time.
``order_events`` sorts a batch by the tables below and then moves each event
forward by its position in milliseconds, so timestamps end up unique and
strictly increasing in causal order.
"""
from __future__ import annotations

from typing import Iterable

from shared.models.domain import DomainEvent
from shared.models.enums import EventType

UNRANKED = 999

DRAW_EVENT_ORDER: dict[EventType, int] = {
    EventType.DRAW_MATCH_RESULT: 0,
    EventType.DRAW_PLAYER_ADVANCED: 1,
    EventType.DRAW_ROUND_COMPLETED: 2,
    EventType.DRAW_TOURNAMENT_COMPLETED: 3,
}

MATCH_EVENT_ORDER: dict[EventType, int] = {
    EventType.MATCH_FINISHED: 0,
    EventType.SET_COMPLETED: 1,
    EventType.MATCH_STARTED: 2,
    EventType.MATCH_PLAY_BEGAN: 3,
    EventType.SCORE_UPDATED: 4,
    EventType.COURT_CHANGED: 5,
    EventType.MATCH_SUSPENDED: 6,
    EventType.MATCH_RESUMED: 7,
    EventType.MEDICAL_TIMEOUT: 8,
    EventType.TOILET_BREAK: 9,
    EventType.CHALLENGE_IN_PROGRESS: 10,
    EventType.CORRECTION_MODE: 11,
    EventType.WARMUP_STARTED: 12,
    EventType.UMPIRE_ON_COURT: 13,
}

EVENT_ORDER: dict[EventType, int] = {**DRAW_EVENT_ORDER, **MATCH_EVENT_ORDER}


def event_rank(event_type: EventType) -> int:
    return EVENT_ORDER.get(event_type, UNRANKED)


def sort_events(events: Iterable[DomainEvent]) -> list[DomainEvent]:
    """Stable sort by causal rank; events of equal rank keep their detection order."""
    return sorted(events, key=lambda e: event_rank(e.event_type))


def order_events(events: Iterable[DomainEvent], sort: bool = True) -> list[DomainEvent]:
    """Sort (optionally) and offset each event's timestamp by its index in milliseconds."""
    batch = sort_events(events) if sort else list(events)
    return [event.shifted(index) for index, event in enumerate(batch)]
