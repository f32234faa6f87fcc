"""
orrery.database.store — The Key Store
======================================

:class:`KeyStore` is the only thing in Orrery that touches the database.
Every public method is synchronous and meant to be called through
``run_db`` from async code::

    key_id = await run_db(store.upsert_completed_key, key)

Concurrency: one :class:`threading.Lock` guards the single shared SQLite
connection.  Reads, writes, the debounced flush and restore all take it,
so a snapshot never interleaves with a half-applied write.

Durability: every mutation posts "dirty" to a :class:`DebouncedFlusher`;
a burst of writes becomes one page-level copy to ``snapshot_path`` one
debounce delay after the last write.  ``shutdown()`` flushes whatever is
still pending before closing.

"Since" queries are strictly after the cutoff.  Stored completion times
are canonical UTC text, so the comparison happens in SQL.

:meth:`KeyStore.count_keys_by_character_since` backs the weekly summary
command, which is not part of this package; only tests call it.
"""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from sqlalchemy import Engine, delete, func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from orrery.database.engine import (
    apply_migrations,
    copy_engine_to_file,
    copy_file_to_engine,
    create_memory_engine,
    get_session,
)
from orrery.database.flush import DEFAULT_FLUSH_DELAY, DebouncedFlusher
from orrery.database.models import (
    ArchivedKeyCompletion,
    KeyCompletion,
    KeyLogLink,
    TrackedCharacter,
)
from orrery.engine.epoch import format_timestamp
from orrery.engine.records import (
    Character,
    CharacterKeyCount,
    CompletedKey,
    CorrelatedLink,
    normalize,
)
from orrery.errors import CharacterNotFoundError, MalformedRecordError, StoreClosedError

logger = logging.getLogger(__name__)

DEFAULT_SHUTDOWN_TIMEOUT = 30.0


class KeyStore:
    """Transactional record store over an in-memory SQLite database."""

    def __init__(
        self,
        snapshot_path: str | os.PathLike[str] | None = None,
        flush_delay: float = DEFAULT_FLUSH_DELAY,
    ) -> None:
        self.snapshot_path = Path(snapshot_path) if snapshot_path else None
        self._flush_delay = flush_delay
        self._lock = threading.Lock()
        self._engine: Engine | None = None
        self._flusher: DebouncedFlusher | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def is_open(self) -> bool:
        return self._engine is not None

    def open(self) -> None:
        """Create the in-memory database and apply every migration.

        Raises ``MigrationError`` if the schema cannot be applied.
        """
        with self._lock:
            if self._engine is not None:
                return
            engine = create_memory_engine()
            try:
                apply_migrations(engine)
            except Exception:
                engine.dispose()
                raise
            self._engine = engine

        if self.snapshot_path is not None:
            self._flusher = DebouncedFlusher(self._scheduled_flush, delay=self._flush_delay)
            self._flusher.start()
        logger.info("Key store opened (snapshot: %s)", self.snapshot_path or "disabled")

    def restore_from_disk(self, path: str | os.PathLike[str] | None = None) -> bool:
        """Load the snapshot file into memory, replacing current contents.

        Returns ``False`` when there is no file to restore from.
        """
        target = Path(path) if path else self.snapshot_path
        if target is None:
            return False
        with self._lock:
            engine = self._require_engine()
            if not copy_file_to_engine(engine, target):
                logger.info("No snapshot at %s, starting empty", target)
                return False
            apply_migrations(engine)
        logger.info("Restored key store from %s", target)
        return True

    def flush_to_disk(self, path: str | os.PathLike[str] | None = None) -> None:
        """Copy the in-memory database to disk right now."""
        target = Path(path) if path else self.snapshot_path
        if target is None:
            raise ValueError("no snapshot path configured")
        with self._lock:
            copy_engine_to_file(self._require_engine(), target)
        logger.debug("Flushed key store to %s", target)

    def shutdown(self, timeout: float = DEFAULT_SHUTDOWN_TIMEOUT) -> None:
        """Flush pending changes (bounded by *timeout*), then close.

        A failed final flush is logged; the store still closes.
        """
        if self._flusher is not None:
            if not self._flusher.stop(flush=True, timeout=timeout):
                logger.error("Final flush did not complete; recent changes may be lost")
            self._flusher = None
        self.close()

    def close(self) -> None:
        """Close without flushing."""
        if self._flusher is not None:
            self._flusher.stop(flush=False, timeout=DEFAULT_SHUTDOWN_TIMEOUT)
            self._flusher = None
        with self._lock:
            if self._engine is None:
                return
            self._engine.dispose()
            self._engine = None
        logger.info("Key store closed")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _require_engine(self) -> Engine:
        if self._engine is None:
            raise StoreClosedError()
        return self._engine

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with self._lock:
            with get_session(self._require_engine()) as session:
                yield session

    def _touch(self) -> None:
        if self._flusher is not None:
            self._flusher.mark_dirty()

    def _scheduled_flush(self) -> None:
        if self.snapshot_path is None:
            return
        with self._lock:
            if self._engine is None:
                return
            copy_engine_to_file(self._engine, self.snapshot_path)
        logger.debug("Debounced flush wrote %s", self.snapshot_path)

    @staticmethod
    def _character_filter(region: str, realm: str, name: str):
        return (
            TrackedCharacter.region == normalize(region),
            TrackedCharacter.realm == normalize(realm),
            TrackedCharacter.name == normalize(name),
        )

    def _character_id(self, session: Session, region: str, realm: str, name: str) -> int | None:
        return session.scalar(
            select(TrackedCharacter.id).where(*self._character_filter(region, realm, name))
        )

    @staticmethod
    def _upsert_character(session: Session, region: str, realm: str, name: str) -> int:
        stmt = sqlite_insert(TrackedCharacter).values(
            region=normalize(region), realm=normalize(realm), name=normalize(name)
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["region", "realm", "name"],
            set_={"name": stmt.excluded.name},
        ).returning(TrackedCharacter.id)
        return session.execute(stmt).scalar_one()

    @staticmethod
    def _key_query():
        return select(
            KeyCompletion.key_id,
            TrackedCharacter.region,
            TrackedCharacter.realm,
            TrackedCharacter.name,
            KeyCompletion.dungeon,
            KeyCompletion.key_lvl,
            KeyCompletion.run_time_ms,
            KeyCompletion.par_time_ms,
            KeyCompletion.completed_at,
            KeyCompletion.source,
        ).join(TrackedCharacter, TrackedCharacter.id == KeyCompletion.character_id)

    @staticmethod
    def _to_key(row) -> CompletedKey:
        return CompletedKey(
            key_id=row.key_id,
            character=row.name,
            realm=row.realm,
            region=row.region,
            dungeon=row.dungeon,
            key_level=row.key_lvl,
            run_time_ms=row.run_time_ms,
            par_time_ms=row.par_time_ms,
            completed_at=row.completed_at,
            source=row.source,
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def upsert_character(self, region: str, realm: str, name: str) -> int:
        """Insert the character if new; return its row ID either way."""
        with self._session() as session:
            character_id = self._upsert_character(session, region, realm, name)
        self._touch()
        return character_id

    def update_character_score(
        self, region: str, realm: str, name: str, score: float | None
    ) -> bool:
        """Set the rating score.  Returns ``True`` only if the value changed."""
        stmt = (
            update(TrackedCharacter)
            .where(*self._character_filter(region, realm, name))
            .where(TrackedCharacter.rating_score.is_distinct_from(score))
            .values(rating_score=score)
        )
        with self._session() as session:
            result = session.execute(stmt, execution_options={"synchronize_session": False})
            changed = result.rowcount > 0
        if changed:
            self._touch()
        return changed

    def upsert_completed_key(self, key: CompletedKey) -> int:
        """Store *key* under its effective ID, creating its character.

        Both writes share one transaction; on any failure neither lands.
        A second call for the same (ID, character) overwrites the fields.
        Returns the effective ID.
        """
        if not key.character or not key.realm or not key.region:
            raise MalformedRecordError("key is missing its character")
        if not key.dungeon:
            raise MalformedRecordError(f"key {key.key_id} has no dungeon")
        if key.key_level < 1:
            raise MalformedRecordError(f"key {key.key_id} has level {key.key_level}")
        completed_at = format_timestamp(key.completed_time())
        key_id = key.effective_id

        with self._session() as session:
            character_id = self._upsert_character(session, key.region, key.realm, key.character)
            stmt = sqlite_insert(KeyCompletion).values(
                key_id=key_id,
                character_id=character_id,
                dungeon=key.dungeon,
                key_lvl=key.key_level,
                run_time_ms=key.run_time_ms,
                par_time_ms=key.par_time_ms,
                completed_at=completed_at,
                source=key.source,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["key_id", "character_id"],
                set_={
                    "dungeon": stmt.excluded.dungeon,
                    "key_lvl": stmt.excluded.key_lvl,
                    "run_time_ms": stmt.excluded.run_time_ms,
                    "par_time_ms": stmt.excluded.par_time_ms,
                    "completed_at": stmt.excluded.completed_at,
                    "source": stmt.excluded.source,
                },
            )
            session.execute(stmt)
        self._touch()
        return key_id

    def insert_link(self, link: CorrelatedLink) -> bool:
        """Insert-or-ignore.  Returns ``False`` when the link already exists."""
        with self._session() as session:
            character_id = self._character_id(session, link.region, link.realm, link.character)
            if character_id is None:
                raise CharacterNotFoundError(link.character, link.realm, link.region)
            stmt = (
                sqlite_insert(KeyLogLink)
                .values(
                    key_id=link.key_id,
                    character_id=character_id,
                    report_code=link.report_code,
                    fight_id=link.fight_id,
                    pull_id=link.pull_id,
                    url=link.url or None,
                )
                .on_conflict_do_nothing()
                .returning(KeyLogLink.id)
            )
            inserted = session.execute(stmt).scalar_one_or_none() is not None
        if inserted:
            self._touch()
        return inserted

    def delete_character(self, region: str, realm: str, name: str) -> None:
        """Remove a character with all of its keys and links.

        Raises ``CharacterNotFoundError`` if there is no such character.
        """
        with self._session() as session:
            character_id = self._character_id(session, region, realm, name)
            if character_id is None:
                raise CharacterNotFoundError(name, realm, region)
            session.execute(delete(KeyLogLink).where(KeyLogLink.character_id == character_id))
            session.execute(
                delete(KeyCompletion).where(KeyCompletion.character_id == character_id)
            )
            session.execute(delete(TrackedCharacter).where(TrackedCharacter.id == character_id))
        self._touch()
        logger.info("Deleted character %s-%s (%s)", name, realm, region)

    def archive_keys_before(self, cutoff: datetime) -> int:
        """Move keys completed at or before *cutoff* into ``archived_keys``.

        Their links are dropped.  Returns the number of keys archived.
        """
        boundary = format_timestamp(cutoff)
        query = (
            select(KeyCompletion, TrackedCharacter)
            .join(TrackedCharacter, TrackedCharacter.id == KeyCompletion.character_id)
            .where(KeyCompletion.completed_at <= boundary)
        )
        with self._session() as session:
            rows = session.execute(query).all()
            if not rows:
                return 0
            for key, character in rows:
                stmt = sqlite_insert(ArchivedKeyCompletion).values(
                    key_id=key.key_id,
                    region=character.region,
                    realm=character.realm,
                    name=character.name,
                    dungeon=key.dungeon,
                    key_lvl=key.key_lvl,
                    run_time_ms=key.run_time_ms,
                    par_time_ms=key.par_time_ms,
                    completed_at=key.completed_at,
                    source=key.source,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["key_id", "region", "realm", "name"],
                    set_={
                        "dungeon": stmt.excluded.dungeon,
                        "key_lvl": stmt.excluded.key_lvl,
                        "run_time_ms": stmt.excluded.run_time_ms,
                        "par_time_ms": stmt.excluded.par_time_ms,
                        "completed_at": stmt.excluded.completed_at,
                        "source": stmt.excluded.source,
                        "archived_at": func.strftime("%Y-%m-%dT%H:%M:%fZ", "now"),
                    },
                )
                session.execute(stmt)

            archived = (
                select(KeyCompletion.key_id)
                .where(KeyCompletion.key_id == KeyLogLink.key_id)
                .where(KeyCompletion.character_id == KeyLogLink.character_id)
                .where(KeyCompletion.completed_at <= boundary)
                .exists()
            )
            session.execute(
                delete(KeyLogLink).where(archived),
                execution_options={"synchronize_session": False},
            )
            session.execute(delete(KeyCompletion).where(KeyCompletion.completed_at <= boundary))
        self._touch()
        logger.info("Archived %d key(s) completed at or before %s", len(rows), boundary)
        return len(rows)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_character(self, region: str, realm: str, name: str) -> Character | None:
        with self._session() as session:
            row = session.scalars(
                select(TrackedCharacter).where(*self._character_filter(region, realm, name))
            ).first()
            if row is None:
                return None
            return Character(
                name=row.name, realm=row.realm, region=row.region, rating_score=row.rating_score
            )

    def list_characters(self) -> list[Character]:
        query = select(TrackedCharacter).order_by(
            TrackedCharacter.region, TrackedCharacter.realm, TrackedCharacter.name
        )
        with self._session() as session:
            return [
                Character(
                    name=row.name, realm=row.realm, region=row.region, rating_score=row.rating_score
                )
                for row in session.scalars(query)
            ]

    def count_keys_by_character_since(self, since: datetime) -> list[CharacterKeyCount]:
        """Per-character key tally after *since*, busiest first."""
        key_count = func.count().label("key_count")
        query = (
            select(TrackedCharacter.region, TrackedCharacter.realm, TrackedCharacter.name, key_count)
            .join(KeyCompletion, KeyCompletion.character_id == TrackedCharacter.id)
            .where(KeyCompletion.completed_at > format_timestamp(since))
            .group_by(TrackedCharacter.region, TrackedCharacter.realm, TrackedCharacter.name)
            .order_by(key_count.desc(), TrackedCharacter.name)
        )
        with self._session() as session:
            return [
                CharacterKeyCount(
                    region=row.region, realm=row.realm, name=row.name, key_count=row.key_count
                )
                for row in session.execute(query)
            ]

    def list_keys_since(self, since: datetime) -> list[CompletedKey]:
        query = (
            self._key_query()
            .where(KeyCompletion.completed_at > format_timestamp(since))
            .order_by(KeyCompletion.completed_at.desc())
        )
        with self._session() as session:
            return [self._to_key(row) for row in session.execute(query)]

    def list_keys_by_character_since(
        self, character: Character, since: datetime
    ) -> list[CompletedKey]:
        query = (
            self._key_query()
            .where(*self._character_filter(character.region, character.realm, character.name))
            .where(KeyCompletion.completed_at > format_timestamp(since))
            .order_by(KeyCompletion.completed_at.desc())
        )
        with self._session() as session:
            return [self._to_key(row) for row in session.execute(query)]

    def list_unlinked_keys_since(self, since: datetime) -> list[CompletedKey]:
        """Keys after *since* that have no link for their own character."""
        linked = (
            select(KeyLogLink.id)
            .where(KeyLogLink.key_id == KeyCompletion.key_id)
            .where(KeyLogLink.character_id == KeyCompletion.character_id)
            .exists()
        )
        query = (
            self._key_query()
            .where(KeyCompletion.completed_at > format_timestamp(since))
            .where(~linked)
            .order_by(KeyCompletion.completed_at.desc())
        )
        with self._session() as session:
            return [self._to_key(row) for row in session.execute(query)]

    def list_links_for_key(
        self, key_id: int, character: Character | None = None
    ) -> list[CorrelatedLink]:
        """Links for *key_id*, newest first; optionally one character's only."""
        query = (
            select(KeyLogLink, TrackedCharacter)
            .join(TrackedCharacter, TrackedCharacter.id == KeyLogLink.character_id)
            .where(KeyLogLink.key_id == key_id)
            .order_by(KeyLogLink.inserted_at.desc(), KeyLogLink.id.desc())
        )
        if character is not None:
            query = query.where(
                *self._character_filter(character.region, character.realm, character.name)
            )
        with self._session() as session:
            return [
                CorrelatedLink(
                    key_id=link.key_id,
                    character=owner.name,
                    realm=owner.realm,
                    region=owner.region,
                    report_code=link.report_code,
                    fight_id=link.fight_id,
                    pull_id=link.pull_id,
                    url=link.url or "",
                    inserted_at=link.inserted_at,
                )
                for link, owner in session.execute(query)
            ]
