"""
Snapshot flattening for the two feed shapes the engine understands.

  match tree: {TournamentMatches: [{Tournament*, Matches: [...]}, ...]}
  draw tree : association → event → round → fixture

Both walkers are tolerant: unknown shapes yield an empty list and a log line,
never an exception.
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from shared.utils.logging import get_logger

logger = get_logger(__name__)

MATCH_ID_CANDIDATES: tuple[str, ...] = ("MatchId", "matchId", "id", "Id", "match_id")
DEFAULT_MATCH_ID_FIELD = "MatchId"

UNKNOWN_ROUND: dict[str, str] = {"ShortName": "Unknown", "LongName": "Unknown Round"}


def _present(value: Any) -> bool:
    return value is not None and value != ""


def _first(mapping: dict[str, Any], *keys: str) -> Any:
    """Value of the first key present in ``mapping``."""
    for key in keys:
        value = mapping.get(key)
        if _present(value):
            return value
    return None


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _as_str(value: Any) -> Optional[str]:
    return str(value) if _present(value) else None


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _full_name(first: Any, last: Any) -> str:
    return f"{first or ''} {last or ''}".strip()


# ── Matches ─────────────────────────────────────────────────────────────
@dataclass
class MatchEntity:
    """A live match flattened out of its tournament group."""
    raw: dict[str, Any]
    tournament_name: Optional[str] = None
    tournament_id: Optional[str] = None
    tournament_type: Optional[str] = None
    tournament_level: Optional[str] = None
    tournament_year: Optional[str] = None

    def get(self, name: str) -> Any:
        return self.raw.get(name)

    def identifier(self, id_field: str) -> Optional[str]:
        return _as_str(self.raw.get(id_field))

    @property
    def status(self) -> Optional[str]:
        return self.raw.get("Status")

    @property
    def score(self) -> str:
        return self.raw.get("ResultString") or "0-0"

    @property
    def court(self) -> str:
        return self.raw.get("CourtName") or "Unknown Court"

    @property
    def round(self) -> Any:
        return self.raw.get("Round") or dict(UNKNOWN_ROUND)

    @property
    def tournament(self) -> str:
        return self.tournament_name or "Unknown Tournament"

    @property
    def rosters(self) -> list[list[str]]:
        """Player names per side; doubles sides carry two names."""
        team1, team2 = self.raw.get("PlayerTeam1"), self.raw.get("PlayerTeam2")
        if isinstance(team1, dict) and isinstance(team2, dict):
            return [_team_roster(team1), _team_roster(team2)]
        players = self.raw.get("players")
        if isinstance(players, list) and players:
            return [[str(p.get("name") or "Unknown")] if isinstance(p, dict) else [str(p)] for p in players]
        return [["Unknown Player 1"], ["Unknown Player 2"]]

    @property
    def players(self) -> list[str]:
        return ["/".join(side) or "Unknown" for side in self.rosters]

    @property
    def label(self) -> str:
        return " vs ".join(self.players)


def _team_roster(team: dict[str, Any]) -> list[str]:
    main = _full_name(
        team.get("PlayerFirstNameFull") or team.get("PlayerFirstName"),
        team.get("PlayerLastName"),
    )
    roster = [main or "Unknown"]
    if team.get("PartnerFirstName") and team.get("PartnerLastName"):
        roster.append(_full_name(team["PartnerFirstName"], team["PartnerLastName"]))
    return roster


def extract_matches(snapshot: Any) -> list[MatchEntity]:
    """Flatten a live-matches snapshot, carrying tournament context down to each match."""
    if snapshot is None:
        return []

    if isinstance(snapshot, list):
        return [MatchEntity(raw=m) for m in snapshot if isinstance(m, dict)]

    groups = snapshot.get("TournamentMatches") if isinstance(snapshot, dict) else None
    if not isinstance(groups, list):
        logger.warning(
            "snapshot_shape_unrecognized",
            kind="matches",
            keys=sorted(snapshot.keys()) if isinstance(snapshot, dict) else type(snapshot).__name__,
        )
        return []

    matches: list[MatchEntity] = []
    for group in groups:
        if not isinstance(group, dict):
            continue
        nested = group.get("Matches")
        if isinstance(nested, list):
            context = {
                "tournament_name": _as_str(group.get("TournamentDisplayName")),
                "tournament_id": _as_str(group.get("TournamentId")),
                "tournament_type": _as_str(group.get("TournamentType")),
                "tournament_level": _as_str(group.get("TournamentLevel")),
                "tournament_year": _as_str(group.get("TournamentYear")),
            }
            matches.extend(MatchEntity(raw=m, **context) for m in nested if isinstance(m, dict))
        elif _present(group.get("MatchId")):
            # Flat variant: the group itself is a match
            matches.append(MatchEntity(raw=group))
    return matches


def determine_identifier_field(entities: Iterable[MatchEntity]) -> str:
    """
    Pick the identifier field for a set of matches.

    The first candidate that every entity populates with unique values wins.
    Otherwise the most frequently populated candidate is used, defaulting to
    MatchId when none is populated at all.
    """
    items = list(entities)
    if not items:
        return DEFAULT_MATCH_ID_FIELD

    for candidate in MATCH_ID_CANDIDATES:
        values = [e.raw.get(candidate) for e in items]
        if all(_present(v) for v in values) and len({str(v) for v in values}) == len(values):
            return candidate

    counts = Counter(
        {c: sum(1 for e in items if _present(e.raw.get(c))) for c in MATCH_ID_CANDIDATES}
    )
    best, populated = max(counts.items(), key=lambda kv: (kv[1], -MATCH_ID_CANDIDATES.index(kv[0])))
    return best if populated > 0 else DEFAULT_MATCH_ID_FIELD


def index_matches(entities: Iterable[MatchEntity], id_field: str) -> dict[str, MatchEntity]:
    """Key matches by identifier; matches without one are skipped, later duplicates win."""
    indexed: dict[str, MatchEntity] = {}
    for entity in entities:
        ident = entity.identifier(id_field)
        if ident is not None:
            indexed[ident] = entity
    return indexed


# ── Draws ───────────────────────────────────────────────────────────────
@dataclass
class FixtureEntity:
    """One draw slot, flattened with its association/event/round context."""
    match_code: str
    winner: int = 0
    result_string: str = ""
    top_known: bool = False
    bottom_known: bool = False
    top_players: list[str] = field(default_factory=list)
    bottom_players: list[str] = field(default_factory=list)
    tournament_id: Optional[str] = None
    tournament_name: Optional[str] = None
    event_type: Optional[str] = None
    event_description: Optional[str] = None
    round_id: Optional[str] = None
    round_name: Optional[str] = None
    modernized_round_id: Optional[int] = None

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.tournament_id or "", self.event_type or "", self.match_code)

    @property
    def round_key(self) -> tuple[str, str, str]:
        return (self.tournament_id or "", self.event_type or "", self.round_name or "")

    @property
    def decided(self) -> bool:
        return self.winner != 0

    def side(self, winner: int) -> list[str]:
        return self.top_players if winner == 1 else self.bottom_players


def _draw_line_players(line: Any) -> list[str]:
    if not isinstance(line, dict):
        return []
    names: list[str] = []
    for player in _as_list(line.get("Players")):
        if not isinstance(player, dict):
            continue
        name = _full_name(
            player.get("PlayerFirstName") or player.get("FirstName"),
            player.get("PlayerLastName") or player.get("LastName"),
        ) or str(player.get("Name") or "")
        if name:
            names.append(name)
    return names


def _associations(snapshot: Any) -> list[dict[str, Any]]:
    if isinstance(snapshot, list):
        return [a for a in snapshot if isinstance(a, dict)]
    if isinstance(snapshot, dict):
        nested = _first(snapshot, "Associations", "Draws", "draws")
        if isinstance(nested, list):
            return [a for a in nested if isinstance(a, dict)]
        if isinstance(snapshot.get("Events"), list):
            return [snapshot]
    return []


def extract_fixtures(snapshot: Any) -> list[FixtureEntity]:
    """Flatten a draw snapshot into fixtures keyed by match code."""
    if snapshot is None:
        return []

    associations = _associations(snapshot)
    if not associations:
        logger.warning("snapshot_shape_unrecognized", kind="draws", type=type(snapshot).__name__)
        return []

    fixtures: list[FixtureEntity] = []
    for assoc in associations:
        tournament_id = _as_str(_first(assoc, "TournamentId", "EventId"))
        tournament_name = _as_str(_first(assoc, "TournamentName", "TournamentDisplayName"))
        for event in _as_list(assoc.get("Events")):
            if not isinstance(event, dict):
                continue
            event_type = _as_str(_first(event, "EventType", "DrawType"))
            event_description = _as_str(_first(event, "EventDescription", "Description"))
            for rnd in _as_list(event.get("Rounds")):
                if not isinstance(rnd, dict):
                    continue
                modernized = _first(rnd, "ModernizedRoundId")
                round_context = {
                    "round_id": _as_str(rnd.get("RoundId")),
                    "round_name": _as_str(rnd.get("RoundName")),
                    "modernized_round_id": _as_int(modernized) if modernized is not None else None,
                }
                for fixture in _as_list(_first(rnd, "Fixtures", "Matches")):
                    if not isinstance(fixture, dict):
                        continue
                    match_code = _as_str(_first(fixture, "MatchCode", "MatchId"))
                    if match_code is None:
                        continue
                    fixtures.append(FixtureEntity(
                        match_code=match_code,
                        winner=_as_int(fixture.get("Winner")),
                        result_string=str(fixture.get("ResultString") or ""),
                        top_known=bool(fixture.get("IsTopKnown")),
                        bottom_known=bool(fixture.get("IsBottomKnown")),
                        top_players=_draw_line_players(fixture.get("DrawLineTop")),
                        bottom_players=_draw_line_players(fixture.get("DrawLineBottom")),
                        tournament_id=tournament_id,
                        tournament_name=tournament_name,
                        event_type=event_type,
                        event_description=event_description,
                        **round_context,
                    ))
    return fixtures
