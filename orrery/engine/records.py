"""
orrery.engine.records — Domain Records
=======================================

Plain dataclasses shared by the store, the matcher, the poller and the
API clients.  None of them know about SQLAlchemy or HTTP.

Identity rules live here too: a completed key is identified by its
Raider.IO run ID when the source provides one, otherwise by a
**synthetic ID** derived from its normalized fields so that re-inserting
the same run never creates a second row.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, replace
from datetime import datetime

from orrery.engine.epoch import parse_timestamp

__all__ = [
    "Character",
    "CompletedKey",
    "CandidateLogRun",
    "CorrelatedLink",
    "CharacterKeyCount",
    "MatchResult",
    "ProfileResult",
    "ReportFilter",
    "ReportSummary",
    "SOURCE_RAIDERIO",
    "normalize",
]

SOURCE_RAIDERIO = "raiderio"

_INT63_MASK = 0x7FFF_FFFF_FFFF_FFFF


def normalize(value: str | None) -> str:
    """Case-fold and strip a natural-key component."""
    return (value or "").strip().lower()


# ---------------------------------------------------------------------------
# Characters
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Character:
    """A tracked character, identified by (region, realm, name)."""

    name: str
    realm: str
    region: str
    rating_score: float | None = None

    @property
    def key(self) -> str:
        return f"{normalize(self.region)}|{normalize(self.realm)}|{normalize(self.name)}"

    def normalized(self) -> Character:
        return replace(
            self,
            name=normalize(self.name),
            realm=normalize(self.realm),
            region=normalize(self.region),
        )

    def __str__(self) -> str:
        return f"{self.name}-{self.realm} ({self.region})"


@dataclass(frozen=True, slots=True)
class CharacterKeyCount:
    """One row of the per-character weekly key tally."""

    region: str
    realm: str
    name: str
    key_count: int


# ---------------------------------------------------------------------------
# Completed keys
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class CompletedKey:
    """One Mythic+ key clear as reported by the profile source."""

    key_id: int
    character: str
    realm: str
    region: str
    dungeon: str
    key_level: int
    run_time_ms: int
    par_time_ms: int
    completed_at: str
    source: str = SOURCE_RAIDERIO

    @property
    def owner(self) -> Character:
        return Character(name=self.character, realm=self.realm, region=self.region)

    @property
    def has_native_id(self) -> bool:
        return bool(self.key_id) and self.key_id > 0

    def synthetic_hash(self) -> str:
        """Hex SHA-256 over the normalized identifying fields."""
        parts = [
            normalize(self.region),
            normalize(self.realm),
            normalize(self.character),
            normalize(self.dungeon),
            str(self.key_level),
            str(self.run_time_ms),
            str(self.par_time_ms),
            normalize(self.completed_at),
        ]
        return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()

    def synthetic_id(self) -> int:
        """Positive 63-bit integer derived from :meth:`synthetic_hash`."""
        raw = bytes.fromhex(self.synthetic_hash())
        value = int.from_bytes(raw[:8], "big") & _INT63_MASK
        return value or 1

    @property
    def effective_id(self) -> int:
        """The ID this key is stored under: native when present, else synthetic."""
        return self.key_id if self.has_native_id else self.synthetic_id()

    def completed_time(self) -> datetime:
        """Parsed completion time; raises ``MalformedRecordError``."""
        return parse_timestamp(self.completed_at)


# ---------------------------------------------------------------------------
# Warcraft Logs side
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class CandidateLogRun:
    """A single Mythic+ fight fetched live from Warcraft Logs."""

    report_code: str
    fight_id: int
    dungeon: str
    keystone_level: int
    completed_at: datetime
    keystone_time_ms: int = 0
    kill: bool = False
    encounter_id: int = 0
    keystone_bonus: int = 0
    rating: float = 0.0


@dataclass(frozen=True, slots=True)
class ReportSummary:
    """A report returned by the time-window report search."""

    code: str
    title: str = ""
    zone_name: str = ""
    start: datetime | None = None
    end: datetime | None = None


@dataclass(frozen=True, slots=True)
class ReportFilter:
    """Search parameters for :meth:`LogSource.fetch_reports`."""

    start_time: datetime | None = None
    end_time: datetime | None = None
    guild_name: str = ""
    server_slug: str = ""
    server_region: str = ""
    limit: int = 0


@dataclass(frozen=True, slots=True)
class MatchResult:
    """A key paired with the log run that most likely describes it."""

    key: CompletedKey
    run: CandidateLogRun
    confidence: float


@dataclass(frozen=True, slots=True)
class CorrelatedLink:
    """Persisted association between a key and a report/fight/pull."""

    key_id: int
    character: str
    realm: str
    region: str
    report_code: str
    fight_id: int | None = None
    pull_id: int | None = None
    url: str = ""
    inserted_at: str | None = None


# ---------------------------------------------------------------------------
# Profile source payload
# ---------------------------------------------------------------------------
@dataclass(slots=True)
class ProfileResult:
    """What a profile fetch returns: this week's keys plus the current score."""

    keys: list[CompletedKey] = field(default_factory=list)
    rating_score: float | None = None
