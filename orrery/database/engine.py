"""
orrery.database.engine — In-Memory Engine, Migrations & Snapshots
==================================================================

The live database is an in-memory SQLite database behind a single shared
connection (``StaticPool``).  A file on disk is only the durability
boundary: it is loaded once at startup and rewritten by the debounced
flush, both through SQLite's page-level backup API rather than by
replaying application writes.

The bridge to the bot's event loop is the same as everywhere else::

    keys = await run_db(store.list_keys_since, cutoff)

Usage::

    engine = create_memory_engine()
    apply_migrations(engine)                # every open, and after restore
    copy_file_to_engine(engine, path)       # restore
    copy_engine_to_file(engine, path)       # flush
"""

from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from orrery.errors import MigrationError

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

MIGRATIONS_DIR = Path(__file__).with_name("migrations")


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_memory_engine(echo: bool = False) -> Engine:
    """Build an engine over one private in-memory SQLite database.

    ``StaticPool`` hands every checkout the same DBAPI connection, so the
    whole process sees one database.  ``check_same_thread=False`` lets
    ``run_db`` worker threads use it; the store's lock serializes them.
    """
    engine = create_engine(
        "sqlite://",
        echo=echo,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_conn, _record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    logger.debug("In-memory database engine created")
    return engine


def driver_connection(engine: Engine) -> sqlite3.Connection:
    """Return the raw ``sqlite3`` connection behind the static pool."""
    raw = engine.raw_connection()
    conn = raw.driver_connection
    # Returning the proxy to the pool leaves the shared connection open.
    raw.close()
    return conn


# ---------------------------------------------------------------------------
# Schema migrations
# ---------------------------------------------------------------------------
def migration_files(directory: Path = MIGRATIONS_DIR) -> list[Path]:
    """Migration scripts in filename order."""
    return sorted(directory.glob("*.sql"), key=lambda p: p.name)


def apply_migrations(engine: Engine, directory: Path = MIGRATIONS_DIR) -> int:
    """Apply every migration script verbatim, in order.

    Runs at every open and after every restore, so each script must be
    idempotent.  Returns the number of scripts applied.

    Raises
    ------
    MigrationError
        If a script cannot be read or fails to execute.
    """
    files = migration_files(directory)
    conn = driver_connection(engine)
    for path in files:
        try:
            conn.executescript(path.read_text(encoding="utf-8"))
        except (OSError, sqlite3.Error) as exc:
            raise MigrationError(f"migration {path.name} failed: {exc}") from exc
    logger.info("Applied %d schema migration(s)", len(files))
    return len(files)


# ---------------------------------------------------------------------------
# Page-level snapshots
# ---------------------------------------------------------------------------
def copy_file_to_engine(engine: Engine, path: str | os.PathLike[str]) -> bool:
    """Replace the in-memory database with the contents of *path*.

    Returns ``False`` (and changes nothing) when the file does not exist.
    """
    path = Path(path)
    if not path.exists():
        return False

    target = driver_connection(engine)
    source = sqlite3.connect(path)
    try:
        source.backup(target)
    finally:
        source.close()
    return True


def copy_engine_to_file(engine: Engine, path: str | os.PathLike[str]) -> None:
    """Write a consistent copy of the in-memory database to *path*.

    The copy lands in a sibling temp file that is then renamed over
    *path*, so a crash mid-flush never leaves a torn snapshot.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")

    source = driver_connection(engine)
    target = sqlite3.connect(tmp)
    try:
        source.backup(target)
    finally:
        target.close()
    os.replace(tmp, path)


# ---------------------------------------------------------------------------
# Session helper
# ---------------------------------------------------------------------------
@contextmanager
def get_session(engine: Engine) -> Iterator[Session]:
    """Yield a :class:`Session` that commits on success and rolls back
    on exception.

    Usage::

        with get_session(engine) as session:
            session.execute(stmt)
            # commit happens automatically on block exit
    """
    session = Session(engine)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------
async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Run a **synchronous** store call on a background thread.

    Every store call made from a cog, the poller or the link sweep goes
    through this wrapper so the event loop never blocks on SQLite::

        key_id = await run_db(store.upsert_completed_key, key)
    """
    return await asyncio.to_thread(func, *args, **kwargs)
