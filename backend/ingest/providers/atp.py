"""
ATP live feed connector.

One method per upstream feed, plus a routing table used by ``fetch``:
fixed endpoints map straight to a method, templated endpoints such as
``/api/match-stats/{match_id}`` carry their arguments in the path.
Endpoint paths are the service's own /api paths; the upstream paths differ.
"""
from __future__ import annotations

import re
from typing import Any, Awaitable, Callable

import httpx

from shared.config import LIVE_DRAW_ENDPOINT, LIVE_MATCHES_ENDPOINT, Settings, get_settings
from shared.errors import UnknownEndpoint
from shared.utils.http_client import UpstreamHTTPClient
from shared.utils.logging import get_logger

logger = get_logger(__name__)

USER_AGENT = "ATP-Live-Proxy/1.0.0"

_SEGMENT = r"([^/?]+)"


def _template(path: str) -> re.Pattern[str]:
    return re.compile("^" + re.sub(r"\{\w+\}", _SEGMENT, path) + "$")


class AtpLiveClient:
    """
    Async client for the ATP live data feed.

    Raises ``UpstreamNotFound`` when a feed has no data (404) and
    ``UpstreamError`` for any other failure.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        if self._settings.bearer_token:
            headers["Authorization"] = f"Bearer {self._settings.bearer_token}"
        self._http = UpstreamHTTPClient(
            base_url=self._settings.api_base_url,
            headers=headers,
            transport=transport,
            settings=self._settings,
        )
        self._endpoints: dict[str, Callable[[], Awaitable[Any]]] = {
            LIVE_MATCHES_ENDPOINT: self.get_live_matches,
            LIVE_DRAW_ENDPOINT: self.get_live_draw,
            "/api/draws": self.get_draws,
            "/api/results": self.get_results,
            "/api/schedules": self.get_schedules,
            "/api/player-list": self.get_player_list,
            "/api/team-cup-rankings": self.get_team_cup_rankings,
        }
        # /api/h2h/match/{id} must be tried before the two-player form
        self._templates: list[tuple[str, re.Pattern[str], Callable[..., Awaitable[Any]]]] = [
            (path, _template(path), method)
            for path, method in (
                ("/api/match-stats/{match_id}", self.get_match_stats),
                ("/api/h2h/match/{match_id}", self.get_h2h_by_match),
                ("/api/h2h/{player_id}/{opponent_id}", self.get_h2h_by_players),
                ("/api/tournaments/{tournament_year}/{tournament_id}", self.get_tournaments),
            )
        ]

    async def start(self) -> None:
        await self._http.start()
        logger.info("atp_client_started", base_url=self._settings.api_base_url,
                    endpoints=len(self.endpoints))

    async def close(self) -> None:
        await self._http.close()

    @property
    def endpoints(self) -> list[str]:
        """Fixed endpoint paths followed by the templated ones."""
        return sorted(self._endpoints) + [path for path, _, _ in self._templates]

    def _resolve(self, endpoint: str) -> Callable[[], Awaitable[Any]] | None:
        method = self._endpoints.get(endpoint)
        if method is not None:
            return method
        for _, pattern, templated in self._templates:
            match = pattern.match(endpoint)
            if match:
                args = match.groups()
                return lambda: templated(*args)
        return None

    def supports(self, endpoint: str) -> bool:
        return self._resolve(endpoint) is not None

    async def fetch(self, endpoint: str) -> Any:
        """Fetch the snapshot behind one of the service's endpoint paths."""
        method = self._resolve(endpoint)
        if method is None:
            raise UnknownEndpoint(endpoint)
        return await method()

    # ── Draws ───────────────────────────────────────────────────────────
    async def get_live_draw(self, params: dict[str, Any] | None = None) -> Any:
        return await self._http.get_json("/Draws/live", params)

    async def get_draws(self, params: dict[str, Any] | None = None) -> Any:
        return await self._http.get_json("/Draws", params)

    # ── Live matches ────────────────────────────────────────────────────
    async def get_live_matches(self, params: dict[str, Any] | None = None) -> Any:
        return await self._http.get_json("/LiveMatches/tournament", params)

    async def get_match_stats(self, match_id: str, params: dict[str, Any] | None = None) -> Any:
        return await self._http.get_json(f"/MatchStats/{match_id}", params)

    # ── Head to head ────────────────────────────────────────────────────
    async def get_h2h_by_match(self, match_id: str, params: dict[str, Any] | None = None) -> Any:
        return await self._http.get_json(f"/H2H/{match_id}", params)

    async def get_h2h_by_players(
        self, player_id: str, opponent_id: str, params: dict[str, Any] | None = None
    ) -> Any:
        return await self._http.get_json(f"/H2H/{player_id}/{opponent_id}", params)

    # ── Results, schedules, reference data ──────────────────────────────
    async def get_results(self, params: dict[str, Any] | None = None) -> Any:
        return await self._http.get_json("/Results", params)

    async def get_schedules(self, params: dict[str, Any] | None = None) -> Any:
        return await self._http.get_json("/Schedules", params)

    async def get_player_list(self, params: dict[str, Any] | None = None) -> Any:
        return await self._http.get_json("/PlayerList", params)

    async def get_team_cup_rankings(self, params: dict[str, Any] | None = None) -> Any:
        return await self._http.get_json("/TeamCupRankings", params)

    async def get_tournaments(
        self, tournament_year: int | str, tournament_id: int | str, params: dict[str, Any] | None = None
    ) -> Any:
        return await self._http.get_json(f"/Tournaments/{tournament_year}/{tournament_id}", params)
