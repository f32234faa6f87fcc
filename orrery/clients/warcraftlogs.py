"""
orrery.clients.warcraftlogs — Warcraft Logs GraphQL Client
===========================================================

Implements ``LogSource`` over the v2 client API.

Auth is an OAuth client-credentials exchange.  The bearer token is cached
until 30 s before it expires (5 minutes when the token response carries
no ``expires_in``); an :class:`asyncio.Lock` makes concurrent callers
share one refresh.

Two typed queries sit on top of :meth:`WarcraftLogsClient.query`:

- :meth:`fetch_character_runs` — recent Mythic+ fights for one character,
  the primary input of the matcher.
- :meth:`fetch_reports` — reports in a time window, used by the coarse
  report-window fallback.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from orrery.engine.records import CandidateLogRun, Character, ReportFilter, ReportSummary
from orrery.errors import SourceError

logger = logging.getLogger(__name__)

DEFAULT_GRAPHQL_URL = "https://www.warcraftlogs.com/api/v2/client"
DEFAULT_TOKEN_URL = "https://www.warcraftlogs.com/oauth/token"
DEFAULT_RUN_LIMIT = 10
TOKEN_REFRESH_MARGIN = 30.0
DEFAULT_TOKEN_TTL = 300.0
MAX_ERROR_BODY = 512

CHARACTER_RUNS_QUERY = """
query($name: String!, $serverSlug: String!, $serverRegion: String!, $limit: Int!) {
  characterData {
    character(name: $name, serverSlug: $serverSlug, serverRegion: $serverRegion) {
      id
      name
      recentReports(limit: $limit) {
        data {
          code
          title
          startTime
          fights {
            id
            name
            encounterID
            keystoneLevel
            keystoneTime
            keystoneBonus
            rating
            endTime
            kill
          }
        }
      }
    }
  }
}
"""

REPORTS_QUERY = """
query Reports($startTime: Float!, $endTime: Float!, $guildName: String,
              $guildServerSlug: String, $guildServerRegion: String, $limit: Int) {
  reportData {
    reports(startTime: $startTime, endTime: $endTime, guildName: $guildName,
            guildServerSlug: $guildServerSlug, guildServerRegion: $guildServerRegion,
            limit: $limit) {
      data {
        code
        title
        startTime
        endTime
        zone { name }
      }
    }
  }
}
"""


def server_slug(realm: str) -> str:
    """Realm name → Warcraft Logs server slug (``Area 52`` → ``area52``)."""
    slug = realm.lower()
    for ch in ("'", "-", " "):
        slug = slug.replace(ch, "")
    return slug


def _from_millis(value: int | float | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(value / 1000, tz=UTC)


class WarcraftLogsClient:
    """Async Warcraft Logs client implementing ``LogSource``."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        graphql_url: str = DEFAULT_GRAPHQL_URL,
        token_url: str = DEFAULT_TOKEN_URL,
        user_agent: str = "",
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._graphql_url = graphql_url
        self._token_url = token_url
        self._user_agent = user_agent
        self._monotonic = monotonic
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout, transport=httpx.AsyncHTTPTransport(retries=1)
        )

        self._token: str | None = None
        self._token_expiry = 0.0
        self._token_lock = asyncio.Lock()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._user_agent:
            headers["User-Agent"] = self._user_agent
        return headers

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------
    async def get_token(self) -> str:
        """Return a valid bearer token, exchanging credentials if needed."""
        if not self._client_id or not self._client_secret:
            raise SourceError("warcraftlogs: missing client credentials")

        async with self._token_lock:
            now = self._monotonic()
            if self._token and now < self._token_expiry - TOKEN_REFRESH_MARGIN:
                return self._token

            try:
                resp = await self._client.post(
                    self._token_url,
                    data={"grant_type": "client_credentials"},
                    auth=(self._client_id, self._client_secret),
                    headers=self._headers(),
                )
            except httpx.HTTPError as exc:
                raise SourceError(f"warcraftlogs: token request failed: {exc}") from exc

            if not resp.is_success:
                raise SourceError(
                    f"warcraftlogs: token status {resp.status_code}: "
                    f"{resp.text[:MAX_ERROR_BODY]}"
                )

            payload = resp.json()
            token = payload.get("access_token")
            if not token:
                raise SourceError("warcraftlogs: empty access token")

            ttl = float(payload.get("expires_in") or 0) or DEFAULT_TOKEN_TTL
            self._token = token
            self._token_expiry = now + ttl
            logger.debug("Warcraft Logs token refreshed (ttl %.0fs)", ttl)
            return token

    # ------------------------------------------------------------------
    # GraphQL passthrough
    # ------------------------------------------------------------------
    async def query(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        """Run one GraphQL query and return its ``data`` object."""
        if not query:
            raise SourceError("warcraftlogs: query is empty")

        token = await self.get_token()
        headers = self._headers() | {"Authorization": f"Bearer {token}"}
        try:
            resp = await self._client.post(
                self._graphql_url,
                json={"query": query, "variables": variables or {}},
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise SourceError(f"warcraftlogs: request failed: {exc}") from exc

        if not resp.is_success:
            raise SourceError(
                f"warcraftlogs: status {resp.status_code}: {resp.text[:MAX_ERROR_BODY]}"
            )

        try:
            envelope = resp.json()
        except ValueError as exc:
            raise SourceError("warcraftlogs: invalid JSON response") from exc

        if envelope.get("errors"):
            raise SourceError(f"warcraftlogs: graphql errors: {envelope['errors']}")
        return envelope.get("data") or {}

    # ------------------------------------------------------------------
    # Typed queries
    # ------------------------------------------------------------------
    async def fetch_character_runs(
        self, character: Character, limit: int = DEFAULT_RUN_LIMIT
    ) -> list[CandidateLogRun]:
        """Mythic+ fights from the character's most recent reports.

        A fight's completion time is its report's start plus the fight's
        ``endTime`` offset.  Fights without a keystone level are skipped.
        """
        if limit <= 0:
            limit = DEFAULT_RUN_LIMIT
        data = await self.query(
            CHARACTER_RUNS_QUERY,
            {
                "name": character.name,
                "serverSlug": server_slug(character.realm),
                "serverRegion": character.region.lower(),
                "limit": limit,
            },
        )

        found = (data.get("characterData") or {}).get("character")
        if found is None:
            raise SourceError(
                f"warcraftlogs: character not found: {character.name}-{character.realm}"
            )
        return parse_character_runs(found)

    async def fetch_reports(self, report_filter: ReportFilter) -> list[ReportSummary]:
        if report_filter.start_time is None or report_filter.end_time is None:
            raise SourceError("warcraftlogs: start/end time required")

        variables: dict[str, Any] = {
            "startTime": float(int(report_filter.start_time.timestamp() * 1000)),
            "endTime": float(int(report_filter.end_time.timestamp() * 1000)),
        }
        if report_filter.guild_name:
            variables["guildName"] = report_filter.guild_name
        if report_filter.server_slug:
            variables["guildServerSlug"] = report_filter.server_slug
        if report_filter.server_region:
            variables["guildServerRegion"] = report_filter.server_region
        if report_filter.limit > 0:
            variables["limit"] = report_filter.limit

        data = await self.query(REPORTS_QUERY, variables)
        reports = ((data.get("reportData") or {}).get("reports") or {}).get("data") or []
        return [
            ReportSummary(
                code=report.get("code") or "",
                title=report.get("title") or "",
                zone_name=(report.get("zone") or {}).get("name") or "",
                start=_from_millis(report.get("startTime")),
                end=_from_millis(report.get("endTime")),
            )
            for report in reports
        ]


def parse_character_runs(character: dict[str, Any]) -> list[CandidateLogRun]:
    runs: list[CandidateLogRun] = []
    for report in (character.get("recentReports") or {}).get("data") or []:
        report_start = _from_millis(report.get("startTime")) or datetime.fromtimestamp(0, tz=UTC)
        for fight in report.get("fights") or []:
            level = fight.get("keystoneLevel")
            if not level:
                continue
            runs.append(
                CandidateLogRun(
                    report_code=report.get("code") or "",
                    fight_id=int(fight.get("id") or 0),
                    dungeon=fight.get("name") or "",
                    keystone_level=int(level),
                    completed_at=report_start + timedelta(milliseconds=fight.get("endTime") or 0),
                    keystone_time_ms=int(fight.get("keystoneTime") or 0),
                    kill=bool(fight.get("kill")),
                    encounter_id=int(fight.get("encounterID") or 0),
                    keystone_bonus=int(fight.get("keystoneBonus") or 0),
                    rating=float(fight.get("rating") or 0.0),
                )
            )
    return runs
