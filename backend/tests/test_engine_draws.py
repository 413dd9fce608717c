"""
Event detection over live draw snapshots.

Run: pytest backend/tests/test_engine_draws.py -v
"""
from __future__ import annotations

import pytest

from detection.engine import EventDetectionEngine, classify_result
from detection.ordering import order_events
from shared.config import LIVE_DRAW_ENDPOINT, Settings
from shared.models.enums import EventPriority, EventType, ResultType

DRAW = LIVE_DRAW_ENDPOINT
TS = "2024-11-03T15:30:00.000Z"


@pytest.fixture
def engine(settings: Settings) -> EventDetectionEngine:
    return EventDetectionEngine(settings)


def test_classify_result() -> None:
    assert classify_result("64 64") == ResultType.COMPLETED
    assert classify_result("W/O") == ResultType.WALKOVER
    assert classify_result("63 21 RET") == ResultType.WALKOVER
    assert classify_result("") == ResultType.COMPLETED


def test_match_result_and_player_advanced(engine, draw, draw_round, draw_fixture) -> None:
    engine.process_data(DRAW, draw(
        draw_round("Quarter-Finals", 8, draw_fixture("QF01"), draw_fixture("QF02")),
        draw_round("Semi-Finals", 9, draw_fixture("SF01", top_known=False, bottom_known=False)),
    ))
    events = engine.process_data(DRAW, draw(
        draw_round("Quarter-Finals", 8, draw_fixture("QF01", winner=1, result="64 64"), draw_fixture("QF02")),
        draw_round("Semi-Finals", 9, draw_fixture("SF01", top_known=True, bottom_known=False)),
    ))

    assert [e.event_type for e in events] == [EventType.DRAW_MATCH_RESULT, EventType.DRAW_PLAYER_ADVANCED]
    result, advanced = events

    assert result.match_id == "352:LS:QF01"
    assert result.data["matchCode"] == "QF01"
    assert result.tournament_id == "352"
    assert result.priority == EventPriority.HIGH
    assert result.data["winner"] == "top"
    assert result.data["winningPlayers"] == ["Jannik Sinner"]
    assert result.data["losingPlayers"] == ["Daniil Medvedev"]
    assert result.data["resultType"] == "completed"
    assert result.data["roundCode"] == "QF"
    assert result.data["stage"] == 3
    assert result.data["tournament"] == "Paris"
    assert result.data["eventType"] == "LS"

    assert advanced.match_id == "352:LS:SF01:top"
    assert advanced.data["matchCode"] == "SF01"
    assert advanced.priority == EventPriority.MEDIUM
    assert advanced.data["slot"] == "top"
    assert advanced.data["players"] == ["Jannik Sinner"]
    assert advanced.data["roundCode"] == "SF"


def test_both_slots_filled_in_one_cycle(engine, draw, draw_round, draw_fixture) -> None:
    engine.process_data(DRAW, draw(draw_round("Final", 10, draw_fixture("F01", top_known=False, bottom_known=False))))
    events = engine.process_data(DRAW, draw(draw_round("Final", 10, draw_fixture("F01"))))

    assert [e.data["slot"] for e in events] == ["top", "bottom"]
    assert [e.match_id for e in events] == ["352:LS:F01:top", "352:LS:F01:bottom"]
    assert {e.event_type for e in events} == {EventType.DRAW_PLAYER_ADVANCED}


def test_walkover_result(engine, draw, draw_round, draw_fixture) -> None:
    engine.process_data(DRAW, draw(draw_round("Round of 32", 6, draw_fixture("R01"), draw_fixture("R02"))))
    [event] = engine.process_data(DRAW, draw(draw_round(
        "Round of 32", 6, draw_fixture("R01", winner=2, result="W/O"), draw_fixture("R02"),
    )))

    assert event.data["resultType"] == "walkover"
    assert event.data["winner"] == "bottom"
    assert event.description.endswith("(walkover)")


def test_round_completed_when_last_fixture_decided(engine, draw, draw_round, draw_fixture) -> None:
    engine.process_data(DRAW, draw(draw_round(
        "Semi-Finals", 9, draw_fixture("SF01", winner=1, result="64 64"), draw_fixture("SF02"),
    )))
    events = engine.process_data(DRAW, draw(draw_round(
        "Semi-Finals", 9, draw_fixture("SF01", winner=1, result="64 64"),
        draw_fixture("SF02", winner=2, result="76 76"),
    )))

    assert [e.event_type for e in events] == [EventType.DRAW_MATCH_RESULT, EventType.DRAW_ROUND_COMPLETED]
    completed = events[1]
    assert completed.match_id == "352:LS:SF"
    assert completed.priority == EventPriority.HIGH
    assert completed.data["matchCount"] == 2
    assert completed.data["matchCodes"] == ["SF01", "SF02"]
    assert completed.data["stage"] == 2


def test_completed_round_is_not_reported_again(engine, draw, draw_round, draw_fixture) -> None:
    decided = draw(draw_round("Semi-Finals", 9, draw_fixture("SF01", winner=1), draw_fixture("SF02", winner=1)))
    engine.process_data(DRAW, decided)
    assert engine.process_data(DRAW, decided) == []


def test_final_completes_tournament(engine, draw, draw_round, draw_fixture) -> None:
    engine.process_data(DRAW, draw(draw_round("Final", 10, draw_fixture("F01"))))
    events = engine.process_data(
        DRAW,
        draw(draw_round("Final", 10, draw_fixture("F01", winner=1, result="76(5) 63"))),
        timestamp=TS,
    )

    assert [e.event_type for e in events] == [
        EventType.DRAW_MATCH_RESULT,
        EventType.DRAW_ROUND_COMPLETED,
        EventType.DRAW_TOURNAMENT_COMPLETED,
    ]
    tournament = events[2]
    assert tournament.match_id == "352:LS"
    assert tournament.priority == EventPriority.CRITICAL
    assert tournament.data["champion"] == ["Jannik Sinner"]
    assert tournament.data["finalist"] == ["Daniil Medvedev"]
    assert tournament.data["finalScore"] == "76(5) 63"

    ordered = order_events(events)
    assert [e.timestamp for e in ordered] == [
        "2024-11-03T15:30:00.000Z",
        "2024-11-03T15:30:00.001Z",
        "2024-11-03T15:30:00.002Z",
    ]


def test_same_round_in_two_tournaments_is_reported_for_each(engine, draw_round, draw_fixture) -> None:
    def snapshot(winner: int) -> dict:
        return {
            "Associations": [
                {
                    "TournamentId": tid,
                    "TournamentName": name,
                    "Events": [{"EventType": "LS", "Rounds": [draw_round("Final", 10, draw_fixture("F01", winner=winner))]}],
                }
                for tid, name in (("352", "Paris"), ("605", "Turin"))
            ]
        }

    engine.process_data(DRAW, snapshot(0))
    events = engine.process_data(DRAW, snapshot(1))

    results = [e for e in events if e.event_type == EventType.DRAW_MATCH_RESULT]
    assert sorted(e.match_id for e in results) == ["352:LS:F01", "605:LS:F01"]
    completed = [e for e in events if e.event_type == EventType.DRAW_ROUND_COMPLETED]
    assert sorted(e.match_id for e in completed) == ["352:LS:F", "605:LS:F"]
    champions = [e for e in events if e.event_type == EventType.DRAW_TOURNAMENT_COMPLETED]
    assert len(champions) == 2


def test_fixture_appearing_already_decided_is_silent(engine, draw, draw_round, draw_fixture) -> None:
    engine.process_data(DRAW, draw(draw_round("Quarter-Finals", 8, draw_fixture("QF01"))))
    events = engine.process_data(DRAW, draw(draw_round(
        "Quarter-Finals", 8, draw_fixture("QF01"), draw_fixture("QF02", winner=1),
    )))
    assert events == []


@pytest.mark.parametrize(
    "result, expected",
    [("6-4, 6-3", "completed"), ("W.O.", "walkover"), ("6-2 3-1 Ret.", "walkover")],
)
def test_result_type_from_result_string(engine, draw, draw_round, draw_fixture, result, expected) -> None:
    engine.process_data(DRAW, draw(draw_round("Round of 16", 7, draw_fixture("R01"), draw_fixture("R02"))))
    [event] = engine.process_data(DRAW, draw(draw_round(
        "Round of 16", 7, draw_fixture("R01", winner=1, result=result), draw_fixture("R02"),
    )))
    assert event.data["resultType"] == expected
