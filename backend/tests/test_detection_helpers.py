"""
Unit tests for snapshot extraction, score parsing, round naming, status
classification and event ordering.

Run: pytest backend/tests/test_detection_helpers.py -v
"""
from __future__ import annotations

import pytest

from detection.extractor import (
    MatchEntity,
    determine_identifier_field,
    extract_fixtures,
    extract_matches,
    index_matches,
)
from detection.ordering import UNRANKED, event_rank, order_events, sort_events
from detection.rounds import is_final_round, round_code, round_stage
from detection.scoring import is_set_completion, set_winner, tokenize_score
from detection.status import classify_status_change, describe_status_change
from shared.models.domain import DomainEvent
from shared.models.enums import EventPriority, EventType


# ── Extraction ──────────────────────────────────────────────────────────

def test_extract_matches_carries_tournament_context(live, match) -> None:
    snapshot = live(match("MS001"), match("MS002"), tournament="Basel", tournament_id="328")
    matches = extract_matches(snapshot)
    assert [m.identifier("MatchId") for m in matches] == ["MS001", "MS002"]
    assert all(m.tournament == "Basel" and m.tournament_id == "328" for m in matches)


def test_extract_matches_accepts_flat_list(match) -> None:
    matches = extract_matches([match("MS001"), "junk"])
    assert len(matches) == 1
    assert matches[0].tournament == "Unknown Tournament"


def test_extract_matches_unknown_shape_is_empty() -> None:
    assert extract_matches({"Something": []}) == []
    assert extract_matches("not a snapshot") == []
    assert extract_matches(None) == []


def test_match_entity_defaults_and_doubles_roster(match) -> None:
    raw = match("MD001", score="")
    raw["PlayerTeam1"].update({"PartnerFirstName": "Simone", "PartnerLastName": "Bolelli"})
    entity = MatchEntity(raw=raw)
    assert entity.score == "0-0"
    assert entity.players == ["Jannik Sinner/Simone Bolelli", "Daniil Medvedev"]
    assert entity.label == "Jannik Sinner/Simone Bolelli vs Daniil Medvedev"


def test_identifier_field_prefers_first_unique_candidate() -> None:
    entities = [MatchEntity(raw={"MatchId": "A", "id": 1}), MatchEntity(raw={"MatchId": "B", "id": 2})]
    assert determine_identifier_field(entities) == "MatchId"


def test_identifier_field_skips_duplicated_candidate() -> None:
    entities = [MatchEntity(raw={"MatchId": "A", "id": 1}), MatchEntity(raw={"MatchId": "A", "id": 2})]
    assert determine_identifier_field(entities) == "id"


def test_identifier_field_falls_back_to_most_populated() -> None:
    entities = [
        MatchEntity(raw={"MatchId": "A"}),
        MatchEntity(raw={"id": "x"}),
        MatchEntity(raw={"id": "y"}),
    ]
    assert determine_identifier_field(entities) == "id"
    assert determine_identifier_field([]) == "MatchId"
    assert determine_identifier_field([MatchEntity(raw={})]) == "MatchId"


def test_index_matches_skips_missing_ids() -> None:
    entities = [MatchEntity(raw={"MatchId": "A", "n": 1}), MatchEntity(raw={"MatchId": ""}),
                MatchEntity(raw={"MatchId": "A", "n": 2})]
    indexed = index_matches(entities, "MatchId")
    assert list(indexed) == ["A"]
    assert indexed["A"].get("n") == 2


def test_extract_fixtures_flattens_context(draw, draw_round, draw_fixture) -> None:
    snapshot = draw(draw_round("Quarter-Finals", 8, draw_fixture("QF01", winner=1, result="64 64")))
    [fixture] = extract_fixtures(snapshot)
    assert fixture.match_code == "QF01"
    assert fixture.tournament_id == "352"
    assert fixture.event_type == "LS"
    assert fixture.round_name == "Quarter-Finals"
    assert fixture.modernized_round_id == 8
    assert fixture.decided
    assert fixture.side(1) == ["Jannik Sinner"]


def test_extract_fixtures_tolerates_alternate_keys() -> None:
    snapshot = {
        "Draws": [
            {
                "EventId": "404",
                "Events": [
                    {
                        "DrawType": "LD",
                        "Rounds": [{"RoundName": "Final", "Matches": [{"MatchId": "F01"}, {"Winner": 1}]}],
                    }
                ],
            }
        ]
    }
    fixtures = extract_fixtures(snapshot)
    assert [f.match_code for f in fixtures] == ["F01"]
    assert fixtures[0].tournament_id == "404"
    assert fixtures[0].event_type == "LD"


def test_extract_fixtures_unknown_shape_is_empty() -> None:
    assert extract_fixtures({"unexpected": True}) == []


# ── Scores ──────────────────────────────────────────────────────────────

def test_tokenize_score_normalizes_separators_and_tiebreaks() -> None:
    assert tokenize_score("7-6(5) 6-4") == ["76", "64"]
    assert tokenize_score("6-4, 3-6 2-1") == ["64", "36", "21"]
    assert tokenize_score(None) == []


@pytest.mark.parametrize(
    "old, new, expected",
    [
        ("64 32", "64 42", False),
        ("64 54", "64 64", True),
        ("64", "64 00", True),
        ("64 65", "64 76(4)", True),
        ("", "21", False),
        (None, "64", False),
    ],
)
def test_is_set_completion(old: object, new: object, expected: bool) -> None:
    assert is_set_completion(old, new) is expected


def test_set_winner_reads_latest_finished_set() -> None:
    assert set_winner("64 46") == 2
    assert set_winner("64 32") == 1
    assert set_winner("75 00") == 1
    assert set_winner("32") is None
    assert set_winner("") is None


# ── Rounds ──────────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "name, modernized, expected",
    [
        ("Semi-Finals", None, "SF"),
        ("Quarterfinals", None, "QF"),
        ("Final", None, "F"),
        ("Round of 16", None, "R16"),
        ("Qualifying Round 2", None, "Q2"),
        (None, 7, "R16"),
        ("Mystery Stage", None, "MS"),
        (None, None, "RD"),
    ],
)
def test_round_code(name: str | None, modernized: int | None, expected: str) -> None:
    assert round_code(name, modernized) == expected


def test_round_stage_and_final_detection() -> None:
    assert round_stage(10) == 1
    assert round_stage(9) == 2
    assert round_stage(None) is None
    assert round_stage(12) is None
    assert is_final_round("Final")
    assert is_final_round("Finals")
    assert not is_final_round("Semi-Final")
    assert not is_final_round(None)


# ── Status ──────────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "old, new, expected",
    [
        ("S", "P", (EventType.MATCH_RESUMED, EventPriority.HIGH)),
        ("M", "P", (EventType.MATCH_RESUMED, EventPriority.MEDIUM)),
        ("W", "P", (EventType.MATCH_PLAY_BEGAN, EventPriority.HIGH)),
        ("C", "W", (EventType.WARMUP_STARTED, EventPriority.LOW)),
        ("P", "S", (EventType.MATCH_SUSPENDED, EventPriority.HIGH)),
        ("P", "D", (EventType.TOILET_BREAK, EventPriority.LOW)),
        ("P", "R", (EventType.CHALLENGE_IN_PROGRESS, EventPriority.MEDIUM)),
        ("P", "Z", (EventType.STATUS_CHANGED, EventPriority.MEDIUM)),
    ],
)
def test_classify_status_change(old: str, new: str, expected: tuple[EventType, EventPriority]) -> None:
    assert classify_status_change(old, new) == expected


def test_describe_status_change() -> None:
    assert describe_status_change("S", "P", "A vs B") == "Match resumed: A vs B"
    assert describe_status_change("P", "M", "A vs B") == "Medical timeout: A vs B"
    assert describe_status_change("P", "Z", "A vs B") == "Status change: A vs B - Z"


# ── Ordering ────────────────────────────────────────────────────────────

def _event(event_type: EventType, match_id: str = "M1", ts: str = "2024-10-20T12:00:00.000Z") -> DomainEvent:
    return DomainEvent(event_type=event_type, timestamp=ts, match_id=match_id, description=event_type.value)


def test_sort_events_is_causal_and_stable() -> None:
    events = [
        _event(EventType.SCORE_UPDATED, "A"),
        _event(EventType.COURT_CHANGED),
        _event(EventType.MATCH_FINISHED),
        _event(EventType.SCORE_UPDATED, "B"),
        _event(EventType.SET_COMPLETED),
        _event(EventType.STATUS_CHANGED),
    ]
    ordered = sort_events(events)
    assert [e.event_type for e in ordered] == [
        EventType.MATCH_FINISHED,
        EventType.SET_COMPLETED,
        EventType.SCORE_UPDATED,
        EventType.SCORE_UPDATED,
        EventType.COURT_CHANGED,
        EventType.STATUS_CHANGED,
    ]
    assert [e.match_id for e in ordered if e.event_type == EventType.SCORE_UPDATED] == ["A", "B"]
    assert event_rank(EventType.STATUS_CHANGED) == UNRANKED


def test_order_events_offsets_timestamps_by_position() -> None:
    events = [_event(EventType.DRAW_ROUND_COMPLETED), _event(EventType.DRAW_MATCH_RESULT)]
    ordered = order_events(events)
    assert [e.event_type for e in ordered] == [EventType.DRAW_MATCH_RESULT, EventType.DRAW_ROUND_COMPLETED]
    assert [e.timestamp for e in ordered] == ["2024-10-20T12:00:00.000Z", "2024-10-20T12:00:00.001Z"]


def test_order_events_without_sorting_keeps_input_order() -> None:
    events = [_event(EventType.DRAW_ROUND_COMPLETED), _event(EventType.DRAW_MATCH_RESULT)]
    ordered = order_events(events, sort=False)
    assert [e.event_type for e in ordered] == [EventType.DRAW_ROUND_COMPLETED, EventType.DRAW_MATCH_RESULT]
    assert ordered[1].timestamp == "2024-10-20T12:00:00.001Z"
    assert events[1].timestamp == "2024-10-20T12:00:00.000Z"
