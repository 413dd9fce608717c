"""Shared fixtures: isolated settings and builders for live-matches and draw snapshots."""
from __future__ import annotations

from typing import Any, Callable

import pytest

from shared.config import Settings


@pytest.fixture
def settings() -> Settings:
    """Settings detached from the environment and any .env file."""
    return Settings(
        _env_file=None,
        environment="test",
        events_enabled=True,
        events_console_output=True,
        cache_provider="memory",
        metrics_enabled=False,
        webhook_url=None,
        webhook_secret=None,
    )


@pytest.fixture
def webhook_settings(settings: Settings) -> Settings:
    return settings.model_copy(update={
        "webhook_url": "https://hooks.example.test/atp",
        "webhook_secret": "s3cret",
        "webhook_retries": 3,
        "webhook_batch_size": 10,
        "webhook_retry_base_delay_s": 1.0,
        "webhook_retry_max_delay_s": 10.0,
    })


# ── Live matches ────────────────────────────────────────────────────────

def _team(name: str) -> dict[str, Any]:
    first, _, last = name.partition(" ")
    return {"PlayerFirstName": first, "PlayerLastName": last}


def make_match(
    match_id: str,
    status: str = "P",
    score: str = "",
    court: str = "Centre Court",
    players: tuple[str, str] = ("Jannik Sinner", "Daniil Medvedev"),
    **extra: Any,
) -> dict[str, Any]:
    match = {
        "MatchId": match_id,
        "Status": status,
        "ResultString": score,
        "CourtName": court,
        "Round": {"ShortName": "QF", "LongName": "Quarter-Finals"},
        "PlayerTeam1": _team(players[0]),
        "PlayerTeam2": _team(players[1]),
    }
    match.update(extra)
    return match


def make_live(*matches: dict[str, Any], tournament: str = "Vienna", tournament_id: str = "337") -> dict[str, Any]:
    return {
        "TournamentMatches": [
            {
                "TournamentDisplayName": tournament,
                "TournamentId": tournament_id,
                "TournamentYear": "2024",
                "Matches": list(matches),
            }
        ]
    }


@pytest.fixture
def match() -> Callable[..., dict[str, Any]]:
    return make_match


@pytest.fixture
def live() -> Callable[..., dict[str, Any]]:
    return make_live


# ── Draws ───────────────────────────────────────────────────────────────

def _line(names: tuple[str, ...]) -> dict[str, Any]:
    players = []
    for name in names:
        first, _, last = name.partition(" ")
        players.append({"PlayerFirstName": first, "PlayerLastName": last})
    return {"Players": players}


def make_fixture(
    code: str,
    winner: int = 0,
    top: tuple[str, ...] = ("Jannik Sinner",),
    bottom: tuple[str, ...] = ("Daniil Medvedev",),
    top_known: bool = True,
    bottom_known: bool = True,
    result: str = "",
) -> dict[str, Any]:
    return {
        "MatchCode": code,
        "Winner": winner,
        "ResultString": result,
        "IsTopKnown": top_known,
        "IsBottomKnown": bottom_known,
        "DrawLineTop": _line(top if top_known else ()),
        "DrawLineBottom": _line(bottom if bottom_known else ()),
    }


def make_round(name: str, modernized_id: int, *fixtures: dict[str, Any]) -> dict[str, Any]:
    return {"RoundName": name, "ModernizedRoundId": modernized_id, "Fixtures": list(fixtures)}


def make_draw(*rounds: dict[str, Any], tournament: str = "Paris", tournament_id: str = "352") -> dict[str, Any]:
    return {
        "Associations": [
            {
                "TournamentId": tournament_id,
                "TournamentName": tournament,
                "Events": [
                    {"EventType": "LS", "EventDescription": "Singles", "Rounds": list(rounds)},
                ],
            }
        ]
    }


@pytest.fixture
def draw_fixture() -> Callable[..., dict[str, Any]]:
    return make_fixture


@pytest.fixture
def draw_round() -> Callable[..., dict[str, Any]]:
    return make_round


@pytest.fixture
def draw() -> Callable[..., dict[str, Any]]:
    return make_draw
