"""
Event detection engine.

Keeps the last snapshot seen per endpoint and, on each new snapshot, compares
entity sets and a fixed set of tracked fields to emit typed domain events:

  live matches: started, finished, score/set, court, status transitions
  live draw   : match result, player advanced, round and tournament completed

The engine is pure with respect to delivery: it returns events and leaves
dispatching to the caller.
"""
from __future__ import annotations

import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from shared.config import LIVE_DRAW_ENDPOINT, LIVE_MATCHES_ENDPOINT, Settings, get_settings
from shared.models.domain import DomainEvent, iso_now
from shared.models.enums import DrawSlot, EventPriority, EventType, MatchStatus, ResultType
from shared.utils.logging import get_logger
from shared.utils.metrics import EVENTS_DROPPED, EVENTS_GENERATED

from detection.extractor import (
    FixtureEntity,
    MatchEntity,
    determine_identifier_field,
    extract_fixtures,
    extract_matches,
    index_matches,
)
from detection.rounds import is_final_round, round_code, round_stage
from detection.scoring import is_set_completion, set_winner
from detection.status import classify_status_change, describe_status_change

logger = get_logger(__name__)

# (feed field, change name); only score, status and court produce events
TRACKED_MATCH_FIELDS: tuple[tuple[str, str], ...] = (
    ("ResultString", "score"),
    ("Status", "status"),
    ("CourtName", "court"),
    ("MatchTime", "matchTime"),
    ("Serve", "serve"),
)

WALKOVER_PATTERN = re.compile(
    r"(?<![A-Za-z])(w/o|w\.o\.?|wo|ret(?:d|ired)?\.?|walkover|retirement)(?![A-Za-z])",
    re.IGNORECASE,
)


@dataclass
class EngineState:
    """Per-endpoint memory: the last snapshot and matches already reported finished."""
    previous: Any = None
    finished: set[str] = field(default_factory=set)
    updated_at: Optional[str] = None


@dataclass
class FieldChange:
    name: str
    source_field: str
    old: Any
    new: Any


def classify_result(result_string: str) -> ResultType:
    return ResultType.WALKOVER if WALKOVER_PATTERN.search(result_string or "") else ResultType.COMPLETED


def draw_subject(fixture: FixtureEntity, *parts: str) -> str:
    """Subject id for draw events: ``<tournament>:<event type>[:<part>...]``."""
    return ":".join([fixture.tournament_id or "", fixture.event_type or "", *parts])


def deduplicate(events: Iterable[DomainEvent]) -> list[DomainEvent]:
    """Keep the first event per (type, subject); later duplicates are dropped."""
    seen: set[tuple[str, str]] = set()
    kept: list[DomainEvent] = []
    for event in events:
        key = (event.event_type.value, event.match_id)
        if key in seen:
            EVENTS_DROPPED.labels(reason="duplicate").inc()
            logger.info("event_deduplicated", event_type=key[0], match_id=event.match_id)
            continue
        seen.add(key)
        kept.append(event)
    return kept


class EventDetectionEngine:
    """
    Snapshot-to-event classifier with per-endpoint state.

    Args:
        settings: Supplies the enabled flag and the monitored endpoints.
        monitored_endpoints: Overrides ``settings.events_endpoints``.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        monitored_endpoints: Iterable[str] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._enabled = self._settings.events_enabled
        self._monitored = set(
            monitored_endpoints if monitored_endpoints is not None else self._settings.events_endpoints
        )
        self._states: dict[str, EngineState] = {}

    # ── Introspection ───────────────────────────────────────────────────

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def monitored_endpoints(self) -> list[str]:
        return sorted(self._monitored)

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled
        logger.info("event_detection_toggled", enabled=enabled)

    def state_for(self, endpoint: str) -> Optional[EngineState]:
        return self._states.get(endpoint)

    def clear_states(self, endpoint: str | None = None) -> None:
        """Forget retained snapshots and finished-sets, for one endpoint or all."""
        if endpoint is None:
            self._states.clear()
        else:
            self._states.pop(endpoint, None)
        logger.info("event_states_cleared", endpoint=endpoint or "*")

    def get_stats(self) -> dict[str, Any]:
        return {
            "enabled": self._enabled,
            "monitored_endpoints": self.monitored_endpoints,
            "tracked_endpoints": sorted(self._states),
            "total_states": len(self._states),
            "finished_matches": {ep: len(s.finished) for ep, s in self._states.items()},
        }

    # ── Entry point ─────────────────────────────────────────────────────

    def process_data(
        self,
        endpoint: str,
        current: Any,
        timestamp: str | None = None,
    ) -> list[DomainEvent]:
        """
        Compare ``current`` with the endpoint's retained snapshot and return new events.

        The snapshot is always retained, even when no events can be produced
        (detection disabled, endpoint not monitored, first observation).
        ``timestamp`` pins every produced event to a capture time for replay.
        """
        if current is None:
            return []

        state = self._states.setdefault(endpoint, EngineState())
        previous = state.previous
        event_time = timestamp or iso_now()
        state.previous = current
        state.updated_at = event_time

        if not self._enabled or endpoint not in self._monitored:
            return []
        if previous is None:
            logger.debug("event_state_seeded", endpoint=endpoint)
            return []

        finished = set(state.finished)
        try:
            if endpoint == LIVE_MATCHES_ENDPOINT:
                events = self._match_events(previous, current, finished, event_time)
            elif endpoint == LIVE_DRAW_ENDPOINT:
                events = self._draw_events(previous, current, event_time)
            else:
                logger.debug("no_event_rules_for_endpoint", endpoint=endpoint)
                return []
        except Exception as exc:
            logger.error("event_detection_failed", endpoint=endpoint, error=str(exc), exc_info=True)
            return []

        state.finished = finished
        events = deduplicate(events)
        for event in events:
            EVENTS_GENERATED.labels(event_type=event.event_type.value).inc()
        if events:
            logger.debug("events_detected", endpoint=endpoint, count=len(events))
        return events

    # ── Live matches ────────────────────────────────────────────────────

    def _match_events(
        self,
        previous: Any,
        current: Any,
        finished: set[str],
        ts: str,
    ) -> list[DomainEvent]:
        previous_matches = extract_matches(previous)
        current_matches = extract_matches(current)
        id_field = determine_identifier_field(previous_matches + current_matches)
        before = index_matches(previous_matches, id_field)
        after = index_matches(current_matches, id_field)

        events: list[DomainEvent] = []

        for match_id, match in after.items():
            if match_id in before:
                continue
            status = MatchStatus.parse(match.status)
            if status is not None and status.is_under_way:
                logger.debug("match_started_skipped", match_id=match_id, status=status.value)
                continue
            events.append(self._match_started(match, match_id, ts))

        for match_id, match in before.items():
            if match_id in after or match_id in finished:
                continue
            events.append(self._match_finished(match, match_id, match.score, ts))
            finished.add(match_id)

        for match_id, match in after.items():
            old = before.get(match_id)
            if old is None:
                continue
            for change in self._field_changes(old, match):
                event = self._event_for_change(change, match, match_id, finished, ts)
                if event is not None:
                    events.append(event)

        return events

    @staticmethod
    def _field_changes(old: MatchEntity, new: MatchEntity) -> list[FieldChange]:
        changes = []
        for source_field, name in TRACKED_MATCH_FIELDS:
            before, after = old.get(source_field), new.get(source_field)
            if before != after:
                changes.append(FieldChange(name, source_field, before, after))
        return changes

    def _event_for_change(
        self,
        change: FieldChange,
        match: MatchEntity,
        match_id: str,
        finished: set[str],
        ts: str,
    ) -> Optional[DomainEvent]:
        if change.name == "score":
            if is_set_completion(change.old, change.new):
                winner = set_winner(change.new)
                if winner is not None:
                    return self._set_completed(match, match_id, change.old, change.new, winner, ts)
                logger.debug("set_winner_ambiguous", match_id=match_id, score=change.new)
            return self._score_updated(match, match_id, change.old, change.new, ts)

        if change.name == "court":
            return self._court_changed(match, match_id, change.old, change.new, ts)

        if change.name == "status":
            if MatchStatus.parse(change.new) == MatchStatus.FINISHED:
                if match_id in finished:
                    return None
                finished.add(match_id)
                return self._match_finished(match, match_id, match.score, ts)
            return self._status_changed(match, match_id, change.old, change.new, ts)

        return None

    @staticmethod
    def _match_event(
        event_type: EventType,
        match: MatchEntity,
        match_id: str,
        description: str,
        data: dict[str, Any],
        priority: EventPriority,
        ts: str,
    ) -> DomainEvent:
        payload = {"players": match.players, **data}
        payload.setdefault("tournament", match.tournament)
        payload.setdefault("round", match.round)
        return DomainEvent(
            event_type=event_type,
            timestamp=ts,
            match_id=match_id,
            tournament_id=match.tournament_id,
            description=description,
            data=payload,
            priority=priority,
        )

    def _match_started(self, match: MatchEntity, match_id: str, ts: str) -> DomainEvent:
        return self._match_event(
            EventType.MATCH_STARTED, match, match_id,
            f"Match started: {match.label}",
            {"court": match.court, "initialScore": match.score},
            EventPriority.HIGH, ts,
        )

    def _match_finished(self, match: MatchEntity, match_id: str, final_score: str, ts: str) -> DomainEvent:
        return self._match_event(
            EventType.MATCH_FINISHED, match, match_id,
            f"Match finished: {match.label} ({final_score})",
            {"finalScore": final_score},
            EventPriority.HIGH, ts,
        )

    def _score_updated(self, match: MatchEntity, match_id: str, old: Any, new: Any, ts: str) -> DomainEvent:
        return self._match_event(
            EventType.SCORE_UPDATED, match, match_id,
            f"Score update: {match.label} - {new}",
            {"previousScore": old, "currentScore": new},
            EventPriority.MEDIUM, ts,
        )

    def _set_completed(
        self, match: MatchEntity, match_id: str, old: Any, new: Any, winner: int, ts: str
    ) -> DomainEvent:
        return self._match_event(
            EventType.SET_COMPLETED, match, match_id,
            f"Set completed: {match.label} - {new}",
            {"previousScore": old, "currentScore": new, "setWinner": winner},
            EventPriority.HIGH, ts,
        )

    def _court_changed(self, match: MatchEntity, match_id: str, old: Any, new: Any, ts: str) -> DomainEvent:
        return self._match_event(
            EventType.COURT_CHANGED, match, match_id,
            f"Court changed: {match.label} moved from {old} to {new}",
            {"previousCourt": old, "currentCourt": new},
            EventPriority.MEDIUM, ts,
        )

    def _status_changed(self, match: MatchEntity, match_id: str, old: Any, new: Any, ts: str) -> DomainEvent:
        event_type, priority = classify_status_change(old, new)
        return self._match_event(
            event_type, match, match_id,
            describe_status_change(old, new, match.label),
            {"previousStatus": old, "currentStatus": new},
            priority, ts,
        )

    # ── Live draw ───────────────────────────────────────────────────────

    def _draw_events(self, previous: Any, current: Any, ts: str) -> list[DomainEvent]:
        before_fixtures = extract_fixtures(previous)
        after_fixtures = extract_fixtures(current)
        before = {f.key: f for f in before_fixtures}
        after = {f.key: f for f in after_fixtures}

        events: list[DomainEvent] = []

        for key, fixture in after.items():
            old = before.get(key)
            if old is None:
                continue
            if not old.decided and fixture.decided:
                events.append(self._draw_match_result(fixture, ts))
            if not old.top_known and fixture.top_known:
                events.append(self._player_advanced(fixture, DrawSlot.TOP, ts))
            if not old.bottom_known and fixture.bottom_known:
                events.append(self._player_advanced(fixture, DrawSlot.BOTTOM, ts))

        before_rounds = _group_rounds(before_fixtures)
        for round_key, fixtures in _group_rounds(after_fixtures).items():
            old_round = before_rounds.get(round_key)
            if not old_round:
                continue
            if all(f.decided for f in fixtures) and not all(f.decided for f in old_round):
                events.append(self._round_completed(fixtures, ts))
                if len(fixtures) == 1 and is_final_round(fixtures[0].round_name):
                    events.append(self._tournament_completed(fixtures[0], ts))

        return events

    @staticmethod
    def _draw_context(fixture: FixtureEntity) -> dict[str, Any]:
        return {
            "tournament": fixture.tournament_name or "Unknown Tournament",
            "tournamentId": fixture.tournament_id,
            "eventType": fixture.event_type,
            "eventDescription": fixture.event_description,
            "round": fixture.round_name,
            "roundCode": round_code(fixture.round_name, fixture.modernized_round_id),
            "stage": round_stage(fixture.modernized_round_id),
        }

    def _draw_match_result(self, fixture: FixtureEntity, ts: str) -> DomainEvent:
        winners = fixture.side(fixture.winner)
        losers = fixture.side(2 if fixture.winner == 1 else 1)
        result_type = classify_result(fixture.result_string)
        winning_slot = DrawSlot.TOP if fixture.winner == 1 else DrawSlot.BOTTOM
        description = (
            f"Draw result: {' / '.join(winners) or 'TBD'} d. {' / '.join(losers) or 'TBD'}"
            f" {fixture.result_string}".rstrip()
        )
        if result_type == ResultType.WALKOVER:
            description += " (walkover)"
        return DomainEvent(
            event_type=EventType.DRAW_MATCH_RESULT,
            timestamp=ts,
            match_id=draw_subject(fixture, fixture.match_code),
            tournament_id=fixture.tournament_id,
            description=description,
            data={
                **self._draw_context(fixture),
                "matchCode": fixture.match_code,
                "result": fixture.result_string,
                "resultType": result_type.value,
                "winner": winning_slot.value,
                "winningPlayers": winners,
                "losingPlayers": losers,
                "topPlayers": fixture.top_players,
                "bottomPlayers": fixture.bottom_players,
            },
            priority=EventPriority.HIGH,
        )

    def _player_advanced(self, fixture: FixtureEntity, slot: DrawSlot, ts: str) -> DomainEvent:
        players = fixture.top_players if slot == DrawSlot.TOP else fixture.bottom_players
        context = self._draw_context(fixture)
        return DomainEvent(
            event_type=EventType.DRAW_PLAYER_ADVANCED,
            timestamp=ts,
            match_id=draw_subject(fixture, fixture.match_code, slot.value),
            tournament_id=fixture.tournament_id,
            description=(
                f"Player advanced: {' / '.join(players) or 'TBD'} into {context['roundCode']}"
                f" ({slot.value})"
            ),
            data={
                **context,
                "matchCode": fixture.match_code,
                "slot": slot.value,
                "players": players,
            },
            priority=EventPriority.MEDIUM,
        )

    def _round_completed(self, fixtures: list[FixtureEntity], ts: str) -> DomainEvent:
        first = fixtures[0]
        context = self._draw_context(first)
        return DomainEvent(
            event_type=EventType.DRAW_ROUND_COMPLETED,
            timestamp=ts,
            match_id=draw_subject(first, context["roundCode"]),
            tournament_id=first.tournament_id,
            description=f"Round completed: {context['tournament']} {first.round_name or context['roundCode']}",
            data={
                **context,
                "matchCount": len(fixtures),
                "matchCodes": [f.match_code for f in fixtures],
            },
            priority=EventPriority.HIGH,
        )

    def _tournament_completed(self, final: FixtureEntity, ts: str) -> DomainEvent:
        context = self._draw_context(final)
        champion = final.side(final.winner)
        finalist = final.side(2 if final.winner == 1 else 1)
        return DomainEvent(
            event_type=EventType.DRAW_TOURNAMENT_COMPLETED,
            timestamp=ts,
            match_id=draw_subject(final),
            tournament_id=final.tournament_id,
            description=(
                f"Tournament completed: {context['tournament']} - champion "
                f"{' / '.join(champion) or 'TBD'} d. {' / '.join(finalist) or 'TBD'} {final.result_string}"
            ).rstrip(),
            data={
                **context,
                "champion": champion,
                "finalist": finalist,
                "finalScore": final.result_string,
                "resultType": classify_result(final.result_string).value,
            },
            priority=EventPriority.CRITICAL,
        )


def _group_rounds(fixtures: Iterable[FixtureEntity]) -> dict[tuple[str, str, str], list[FixtureEntity]]:
    grouped: dict[tuple[str, str, str], list[FixtureEntity]] = defaultdict(list)
    for fixture in fixtures:
        grouped[fixture.round_key].append(fixture)
    return grouped
