"""
orrery.clients.raiderio — Raider.IO Profile Client
===================================================

One GET per character against ``/api/v1/characters/profile`` asking for
this week's highest-level runs and the current season score.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from orrery.engine.records import (
    SOURCE_RAIDERIO,
    Character,
    CompletedKey,
    ProfileResult,
    normalize,
)
from orrery.errors import SourceError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://raider.io"
PROFILE_PATH = "/api/v1/characters/profile"
PROFILE_FIELDS = "mythic_plus_weekly_highest_level_runs,mythic_plus_scores_by_season:current"
MAX_ERROR_BODY = 512


class RaiderIOClient:
    """Async Raider.IO client implementing ``ProfileSource``."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        user_agent: str = "",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if user_agent:
            headers["User-Agent"] = user_agent
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers=headers,
            transport=httpx.AsyncHTTPTransport(retries=1),
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch_weekly_completions(self, character: Character) -> ProfileResult:
        params = {
            "region": character.region,
            "realm": character.realm,
            "name": character.name,
            "fields": PROFILE_FIELDS,
        }
        try:
            resp = await self._client.get(PROFILE_PATH, params=params)
        except httpx.HTTPError as exc:
            raise SourceError(f"raiderio: request for {character} failed: {exc}") from exc

        if not resp.is_success:
            raise SourceError(
                f"raiderio: status {resp.status_code}: {resp.text[:MAX_ERROR_BODY]}"
            )

        try:
            payload = resp.json()
        except ValueError as exc:
            raise SourceError(f"raiderio: invalid JSON for {character}") from exc

        return parse_profile(payload, character)


def parse_profile(payload: dict[str, Any], character: Character) -> ProfileResult:
    """Turn a profile response into keys owned by *character*.

    A run whose fields do not convert is logged and dropped on its own;
    the remaining runs and the score are still returned.
    """
    keys = []
    for run in payload.get("mythic_plus_weekly_highest_level_runs") or []:
        try:
            keys.append(_parse_run(run, character))
        except (TypeError, ValueError, AttributeError) as exc:
            logger.warning("Skipping malformed Raider.IO run for %s: %s", character, exc)

    return ProfileResult(keys=keys, rating_score=_parse_score(payload))


def _parse_run(run: dict[str, Any], character: Character) -> CompletedKey:
    return CompletedKey(
        key_id=int(run.get("keystone_run_id") or 0),
        character=normalize(character.name),
        realm=normalize(character.realm),
        region=normalize(character.region),
        dungeon=str(run.get("dungeon") or ""),
        key_level=int(run.get("mythic_level") or 0),
        run_time_ms=int(run.get("clear_time_ms") or 0),
        par_time_ms=int(run.get("par_time_ms") or 0),
        completed_at=str(run.get("completed_at") or ""),
        source=SOURCE_RAIDERIO,
    )


def _parse_score(payload: dict[str, Any]) -> float | None:
    seasons = payload.get("mythic_plus_scores_by_season") or []
    if not seasons or not isinstance(seasons[0], dict):
        return None
    score = (seasons[0].get("scores") or {}).get("all")
    try:
        return float(score) if score is not None else None
    except (TypeError, ValueError):
        logger.warning("Ignoring non-numeric Raider.IO score: %r", score)
        return None
