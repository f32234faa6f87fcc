"""
orrery.clients.ports — External Collaborator Interfaces
========================================================

The poller, linker and services depend on these protocols, never on a
concrete HTTP client.  Production wiring passes :class:`RaiderIOClient`,
:class:`WarcraftLogsClient` and :class:`DiscordNotifier`; tests pass
hand-written fakes with the same methods.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from orrery.engine.records import (
    CandidateLogRun,
    Character,
    ProfileResult,
    ReportFilter,
    ReportSummary,
)

Clock = Callable[[], datetime]
"""Returns the current aware UTC time.  Drift correction lives outside Orrery."""


@runtime_checkable
class ProfileSource(Protocol):
    """Where weekly key completions come from (Raider.IO)."""

    async def fetch_weekly_completions(self, character: Character) -> ProfileResult:
        """Raises ``SourceError`` on any transport or status failure."""
        ...


@runtime_checkable
class LogSource(Protocol):
    """Where candidate combat-log runs come from (Warcraft Logs)."""

    async def query(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        ...

    async def fetch_character_runs(
        self, character: Character, limit: int
    ) -> list[CandidateLogRun]:
        ...

    async def fetch_reports(self, report_filter: ReportFilter) -> list[ReportSummary]:
        ...


@runtime_checkable
class NotificationSink(Protocol):
    """Fire-and-forget text delivery.  Failures are logged, never retried."""

    async def send(self, channel_ref: int, text: str) -> None:
        ...
