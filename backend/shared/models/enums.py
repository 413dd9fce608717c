"""Domain enumerations for the ATP live events platform."""
from __future__ import annotations

from enum import Enum


class MatchStatus(str, Enum):
    """Single-letter match state codes used by the upstream live feed."""
    UMPIRE_ON_COURT = "C"
    WARMUP = "W"
    IN_PROGRESS = "P"
    SUSPENDED = "S"
    TOILET_BREAK = "D"
    MEDICAL_TIMEOUT = "M"
    CHALLENGE = "R"
    CORRECTION = "E"
    FINISHED = "F"

    @property
    def is_under_way(self) -> bool:
        """Play has begun: the match is in progress, interrupted, or over."""
        return self not in (MatchStatus.UMPIRE_ON_COURT, MatchStatus.WARMUP)

    @classmethod
    def parse(cls, code: object) -> "MatchStatus | None":
        if not isinstance(code, str):
            return None
        try:
            return cls(code.strip().upper())
        except ValueError:
            return None


class EventType(str, Enum):
    # Live matches
    MATCH_STARTED = "match_started"
    MATCH_FINISHED = "match_finished"
    SCORE_UPDATED = "score_updated"
    SET_COMPLETED = "set_completed"
    COURT_CHANGED = "court_changed"
    STATUS_CHANGED = "status_changed"
    MATCH_SUSPENDED = "match_suspended"
    MATCH_RESUMED = "match_resumed"
    MATCH_PLAY_BEGAN = "match_play_began"
    MEDICAL_TIMEOUT = "medical_timeout"
    TOILET_BREAK = "toilet_break"
    CHALLENGE_IN_PROGRESS = "challenge_in_progress"
    CORRECTION_MODE = "correction_mode"
    WARMUP_STARTED = "warmup_started"
    UMPIRE_ON_COURT = "umpire_on_court"
    # Draws
    DRAW_MATCH_RESULT = "draw_match_result"
    DRAW_PLAYER_ADVANCED = "draw_player_advanced"
    DRAW_ROUND_COMPLETED = "draw_round_completed"
    DRAW_TOURNAMENT_COMPLETED = "draw_tournament_completed"


class EventPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class PollingReason(str, Enum):
    """Why an endpoint is being polled."""
    SUBSCRIPTION = "subscription"
    EVENTS = "events"


class DrawSlot(str, Enum):
    TOP = "top"
    BOTTOM = "bottom"


class ResultType(str, Enum):
    COMPLETED = "completed"
    WALKOVER = "walkover"
