"""
orrery.errors — Error Taxonomy
==============================

Every layer raises from this small hierarchy so callers can decide what
is transient (retry next cycle), what is a bad record (skip it) and what
is a programming error (surface it).

- :class:`SourceError` — an external API call failed.  Logged, the poll
  cycle is abandoned, the next interval retries.
- :class:`MalformedRecordError` — one record cannot be used (bad
  timestamp, missing field).  Only that record is skipped.
- :class:`StoreClosedError` — the store was used before ``open()`` or
  after ``close()``.
- :class:`CharacterNotFoundError` — purge/link of an unknown character.
- :class:`MigrationError` — the schema could not be applied.  Fatal.

Duplicate keys and links are never errors; upserts absorb them.
"""

from __future__ import annotations


class OrreryError(Exception):
    """Base class for all Orrery errors."""


class SourceError(OrreryError):
    """An external data source (Raider.IO, Warcraft Logs) failed."""


class MalformedRecordError(OrreryError):
    """A single record is unusable and must be skipped."""


class StoreClosedError(OrreryError):
    """The key store is not open."""

    def __init__(self) -> None:
        super().__init__("store is not open")


class CharacterNotFoundError(OrreryError):
    """The requested character does not exist in the store."""

    def __init__(self, name: str, realm: str, region: str) -> None:
        super().__init__(f"character not found: {name}-{realm} ({region})")
        self.name = name
        self.realm = realm
        self.region = region


class MigrationError(OrreryError):
    """A schema migration failed while opening the store."""
