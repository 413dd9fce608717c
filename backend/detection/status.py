"""
Status-code classification for live matches.

  C=umpire on court  W=warmup  P=in progress  S=suspended  D=toilet break
  M=medical timeout  R=challenge  E=correction mode  F=finished

F never reaches this table: finished matches go through the engine's
finished-event path.
"""
from __future__ import annotations

from typing import Optional

from shared.models.enums import EventPriority, EventType, MatchStatus

StatusEvent = tuple[EventType, EventPriority]

STATUS_EVENTS: dict[MatchStatus, StatusEvent] = {
    MatchStatus.SUSPENDED: (EventType.MATCH_SUSPENDED, EventPriority.HIGH),
    MatchStatus.MEDICAL_TIMEOUT: (EventType.MEDICAL_TIMEOUT, EventPriority.MEDIUM),
    MatchStatus.TOILET_BREAK: (EventType.TOILET_BREAK, EventPriority.LOW),
    MatchStatus.CHALLENGE: (EventType.CHALLENGE_IN_PROGRESS, EventPriority.MEDIUM),
    MatchStatus.CORRECTION: (EventType.CORRECTION_MODE, EventPriority.LOW),
    MatchStatus.UMPIRE_ON_COURT: (EventType.UMPIRE_ON_COURT, EventPriority.MEDIUM),
    MatchStatus.WARMUP: (EventType.WARMUP_STARTED, EventPriority.LOW),
}

TRANSITION_EVENTS: dict[tuple[MatchStatus, MatchStatus], StatusEvent] = {
    (MatchStatus.SUSPENDED, MatchStatus.IN_PROGRESS): (EventType.MATCH_RESUMED, EventPriority.HIGH),
    (MatchStatus.TOILET_BREAK, MatchStatus.IN_PROGRESS): (EventType.MATCH_RESUMED, EventPriority.MEDIUM),
    (MatchStatus.MEDICAL_TIMEOUT, MatchStatus.IN_PROGRESS): (EventType.MATCH_RESUMED, EventPriority.MEDIUM),
    (MatchStatus.CHALLENGE, MatchStatus.IN_PROGRESS): (EventType.MATCH_RESUMED, EventPriority.MEDIUM),
    (MatchStatus.CORRECTION, MatchStatus.IN_PROGRESS): (EventType.MATCH_RESUMED, EventPriority.MEDIUM),
    (MatchStatus.UMPIRE_ON_COURT, MatchStatus.WARMUP): (EventType.WARMUP_STARTED, EventPriority.LOW),
    (MatchStatus.WARMUP, MatchStatus.IN_PROGRESS): (EventType.MATCH_PLAY_BEGAN, EventPriority.HIGH),
}

DEFAULT_STATUS_EVENT: StatusEvent = (EventType.STATUS_CHANGED, EventPriority.MEDIUM)

_DESCRIPTIONS: dict[MatchStatus, str] = {
    MatchStatus.UMPIRE_ON_COURT: "Umpire on court",
    MatchStatus.WARMUP: "Warmup started",
    MatchStatus.SUSPENDED: "Match suspended",
    MatchStatus.TOILET_BREAK: "Toilet break",
    MatchStatus.MEDICAL_TIMEOUT: "Medical timeout",
    MatchStatus.CHALLENGE: "Challenge in progress",
    MatchStatus.CORRECTION: "Correction mode",
    MatchStatus.FINISHED: "Match finished",
}


def classify_status_change(old_code: object, new_code: object) -> StatusEvent:
    """Event type and priority for a status transition; transitions beat direct codes."""
    old = MatchStatus.parse(old_code)
    new = MatchStatus.parse(new_code)
    if old is not None and new is not None and old != new:
        transition = TRANSITION_EVENTS.get((old, new))
        if transition:
            return transition
    if new is not None and new in STATUS_EVENTS:
        return STATUS_EVENTS[new]
    return DEFAULT_STATUS_EVENT


def describe_status_change(old_code: object, new_code: object, label: str) -> str:
    old: Optional[MatchStatus] = MatchStatus.parse(old_code)
    new: Optional[MatchStatus] = MatchStatus.parse(new_code)
    if new == MatchStatus.IN_PROGRESS:
        if old == MatchStatus.SUSPENDED:
            return f"Match resumed: {label}"
        if old == MatchStatus.WARMUP:
            return f"Match play began: {label}"
        return f"Match in progress: {label}"
    if new is not None and new in _DESCRIPTIONS:
        return f"{_DESCRIPTIONS[new]}: {label}"
    return f"Status change: {label} - {new_code}"
