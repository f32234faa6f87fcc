"""
orrery.database.models — SQLAlchemy 2.0 Data Models
====================================================

ORM mappings over the schema created by ``orrery/database/migrations``.
The SQL files own the DDL (they are re-applied at every open); these
classes only describe the tables to the query layer, so ``create_all``
is never called.

Tables:
- characters      — Tracked characters, unique by (region, realm, name)
- completed_keys  — One row per (key_id, character_id)
- log_links       — Key ↔ Warcraft Logs report/fight/pull associations
- archived_keys   — Keys moved out by the weekly archive

All timestamps are stored as canonical UTC text
(``YYYY-MM-DDTHH:MM:SS.mmmZ``) so they compare correctly as strings.
"""

from __future__ import annotations

from sqlalchemy import Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Orrery ORM models."""


# ---------------------------------------------------------------------------
# Characters
# ---------------------------------------------------------------------------
class TrackedCharacter(Base):
    __tablename__ = "characters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    region: Mapped[str] = mapped_column(Text, nullable=False)
    realm: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    rating_score: Mapped[float | None] = mapped_column(Float, default=None)
    created_at: Mapped[str | None] = mapped_column(String, default=None)

    def __repr__(self) -> str:
        return f"<TrackedCharacter {self.name}-{self.realm} ({self.region})>"


# ---------------------------------------------------------------------------
# Completed keys
# ---------------------------------------------------------------------------
class KeyCompletion(Base):
    __tablename__ = "completed_keys"

    key_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    character_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("characters.id"), primary_key=True
    )
    dungeon: Mapped[str] = mapped_column(Text, nullable=False)
    key_lvl: Mapped[int] = mapped_column(Integer, nullable=False)
    run_time_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    par_time_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    completed_at: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[str] = mapped_column(Text, nullable=False)
    inserted_at: Mapped[str | None] = mapped_column(String, default=None)


# ---------------------------------------------------------------------------
# Log links
# ---------------------------------------------------------------------------
class KeyLogLink(Base):
    __tablename__ = "log_links"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key_id: Mapped[int] = mapped_column(Integer, nullable=False)
    character_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("characters.id"), nullable=False
    )
    report_code: Mapped[str] = mapped_column(Text, nullable=False)
    fight_id: Mapped[int | None] = mapped_column(Integer, default=None)
    pull_id: Mapped[int | None] = mapped_column(Integer, default=None)
    url: Mapped[str | None] = mapped_column(Text, default=None)
    inserted_at: Mapped[str | None] = mapped_column(String, default=None)


# ---------------------------------------------------------------------------
# Weekly archive
# ---------------------------------------------------------------------------
class ArchivedKeyCompletion(Base):
    __tablename__ = "archived_keys"

    key_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    region: Mapped[str] = mapped_column(Text, primary_key=True)
    realm: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str] = mapped_column(Text, primary_key=True)
    dungeon: Mapped[str] = mapped_column(Text, nullable=False)
    key_lvl: Mapped[int] = mapped_column(Integer, nullable=False)
    run_time_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    par_time_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    completed_at: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[str] = mapped_column(Text, nullable=False)
    archived_at: Mapped[str | None] = mapped_column(String, default=None)
