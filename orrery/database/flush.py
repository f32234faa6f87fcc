"""
orrery.database.flush — Debounced Flush Actor
==============================================

One thread owns the "dirty" flag and the flush deadline; everyone else
talks to it through a single queue.

    mark_dirty()   →  DIRTY      (re-arm the deadline, coalesce the burst)
    flush_now()    →  FLUSH_NOW  (flush immediately if dirty, reply)
    stop()         →  STOP       (optionally flush, reply, exit)

When the deadline passes with no new message the actor calls the flush
callback once.  A failed flush is logged and the state stays dirty; the
deadline is re-armed so the next attempt happens one delay later.
"""

from __future__ import annotations

import enum
import logging
import queue
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DEFAULT_FLUSH_DELAY = 5.0


class _Kind(enum.StrEnum):
    DIRTY = "dirty"
    FLUSH_NOW = "flush_now"
    STOP = "stop"


@dataclass(slots=True)
class _Message:
    kind: _Kind
    flush: bool = True
    done: threading.Event = field(default_factory=threading.Event)
    ok: bool = True


class DebouncedFlusher:
    """Single-writer timer actor around a flush callback."""

    def __init__(
        self,
        flush: Callable[[], None],
        delay: float = DEFAULT_FLUSH_DELAY,
        name: str = "orrery-flush",
    ) -> None:
        self._flush = flush
        self._delay = delay
        self._name = name
        self._queue: queue.Queue[_Message] = queue.Queue()
        self._thread: threading.Thread | None = None
        self.flush_count = 0
        self.failure_count = 0

    # -- lifecycle ----------------------------------------------------------
    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()

    def stop(self, flush: bool = True, timeout: float | None = None) -> bool:
        """Stop the actor, flushing first when *flush* and dirty.

        Returns ``True`` when the actor exited cleanly within *timeout*
        and any final flush succeeded.
        """
        if not self.running:
            return True
        deadline = None if timeout is None else time.monotonic() + timeout
        msg = _Message(_Kind.STOP, flush=flush)
        self._queue.put(msg)
        if not msg.done.wait(timeout):
            logger.warning("Flush actor did not stop within %.1fs", timeout or 0.0)
            return False
        assert self._thread is not None
        # One deadline covers both the wait and the join.
        remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
        self._thread.join(remaining)
        if self._thread.is_alive():
            logger.warning("Flush actor did not exit within %.1fs", timeout or 0.0)
            return False
        self._thread = None
        return msg.ok

    # -- messages -----------------------------------------------------------
    def mark_dirty(self) -> None:
        """Note a mutation; the flush happens one delay after the last one."""
        self._queue.put(_Message(_Kind.DIRTY))

    def flush_now(self, timeout: float | None = None) -> bool:
        """Flush immediately if dirty and wait for the result."""
        if not self.running:
            return False
        msg = _Message(_Kind.FLUSH_NOW)
        self._queue.put(msg)
        return msg.done.wait(timeout) and msg.ok

    # -- actor loop ---------------------------------------------------------
    def _attempt(self) -> bool:
        try:
            self._flush()
        except Exception:
            self.failure_count += 1
            logger.exception("Debounced flush failed", extra={"task": self._name})
            return False
        self.flush_count += 1
        return True

    def _run(self) -> None:
        dirty = False
        deadline: float | None = None

        while True:
            timeout = None if deadline is None else max(0.0, deadline - time.monotonic())
            try:
                msg = self._queue.get(timeout=timeout)
            except queue.Empty:
                if self._attempt():
                    dirty, deadline = False, None
                else:
                    deadline = time.monotonic() + self._delay
                continue

            if msg.kind is _Kind.DIRTY:
                dirty = True
                deadline = time.monotonic() + self._delay
                continue

            if msg.kind is _Kind.FLUSH_NOW:
                if dirty:
                    msg.ok = self._attempt()
                    if msg.ok:
                        dirty, deadline = False, None
                msg.done.set()
                continue

            # STOP
            if msg.flush and dirty:
                msg.ok = self._attempt()
            msg.done.set()
            return
