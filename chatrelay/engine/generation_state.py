"""Durable "conversation X is generating on backend Y since T" flags.

Entries live in one SQLite table shared by every process pointed at the
same data directory, so every tab and every server instance sees the same
answer. In-process subscribers get a fresh snapshot on every change; writes
made by other processes are noticed through ``PRAGMA data_version`` and
republished by :meth:`GenerationStateTracker.run_watch_loop`.
"""
from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Iterator

from chatrelay.shared.services.process_cleanup import pid_alive

logger = logging.getLogger(__name__)

STALE_SECONDS = 10 * 60
SUBSCRIBER_QUEUE_SIZE = 16


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class GenerationEntry:
    conversation_id: str
    backend: str
    started_at: int
    owner_pid: int | None = None

    def age_seconds(self, now_ms: int | None = None) -> float:
        return ((now_ms if now_ms is not None else _now_ms()) - self.started_at) / 1000.0

    def to_dict(self) -> dict[str, Any]:
        return {"backend": self.backend, "startedAt": self.started_at}


class GenerationStateTracker:
    """SQLite-backed generation flags with change notification."""

    def __init__(self, db_path: str | Path, stale_seconds: float = STALE_SECONDS) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._stale_seconds = stale_seconds
        self._subscribers: set[asyncio.Queue] = set()
        self._last_snapshot: dict[str, dict[str, Any]] | None = None
        self._ensure_schema()

    @property
    def stale_seconds(self) -> float:
        return self._stale_seconds

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=5.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS generating (
                    conversation_id TEXT PRIMARY KEY,
                    backend TEXT NOT NULL,
                    started_at INTEGER NOT NULL,
                    owner_pid INTEGER
                )
                """
            )
        finally:
            conn.close()

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> GenerationEntry:
        return GenerationEntry(
            conversation_id=row["conversation_id"],
            backend=row["backend"],
            started_at=int(row["started_at"]),
            owner_pid=row["owner_pid"],
        )

    def _is_stale(self, entry: GenerationEntry, now_ms: int) -> bool:
        return entry.age_seconds(now_ms) > self._stale_seconds

    def set(self, conversation_id: str, backend: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO generating(conversation_id, backend, started_at, owner_pid)
                VALUES (?, ?, ?, ?)
                """,
                (conversation_id, backend, _now_ms(), os.getpid()),
            )
        self._publish()

    def try_claim(self, conversation_id: str, backend: str) -> bool:
        """Atomically mark *conversation_id* active unless someone else holds it.

        Stale entries and entries whose owning process is gone are taken
        over.
        """
        now = _now_ms()
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM generating WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
            if row is not None:
                existing = self._row_to_entry(row)
                if not self._is_stale(existing, now) and pid_alive(existing.owner_pid):
                    return False
                logger.info(
                    "Reclaiming generation entry %s (backend=%s age=%.0fs owner=%s)",
                    conversation_id, existing.backend, existing.age_seconds(now), existing.owner_pid,
                )
            conn.execute(
                """
                INSERT OR REPLACE INTO generating(conversation_id, backend, started_at, owner_pid)
                VALUES (?, ?, ?, ?)
                """,
                (conversation_id, backend, now, os.getpid()),
            )
        self._publish()
        return True

    def clear(self, conversation_id: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                "DELETE FROM generating WHERE conversation_id = ?", (conversation_id,)
            )
            removed = cur.rowcount > 0
        if removed:
            self._publish()
        return removed

    def get(self, conversation_id: str) -> GenerationEntry | None:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM generating WHERE conversation_id = ?", (conversation_id,)
            ).fetchone()
        finally:
            conn.close()
        return self._row_to_entry(row) if row is not None else None

    def is_active(self, conversation_id: str) -> bool:
        entry = self.get(conversation_id)
        return entry is not None and not self._is_stale(entry, _now_ms())

    def held_elsewhere(self, entry: GenerationEntry, now_ms: int | None = None) -> bool:
        """True while a live process other than this one holds a fresh claim."""
        if entry.owner_pid in (None, os.getpid()):
            return False
        now = now_ms if now_ms is not None else _now_ms()
        return not self._is_stale(entry, now) and pid_alive(entry.owner_pid)

    def load(self) -> dict[str, GenerationEntry]:
        conn = self._connect()
        try:
            rows = conn.execute("SELECT * FROM generating ORDER BY started_at").fetchall()
        finally:
            conn.close()
        return {row["conversation_id"]: self._row_to_entry(row) for row in rows}

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {cid: entry.to_dict() for cid, entry in self.load().items()}

    def sweep_stale(self, now_ms: int | None = None) -> list[str]:
        """Clear entries older than the staleness threshold."""
        now = now_ms if now_ms is not None else _now_ms()
        cutoff = now - int(self._stale_seconds * 1000)
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT conversation_id FROM generating WHERE started_at < ?", (cutoff,)
            ).fetchall()
            stale = [row["conversation_id"] for row in rows]
            if stale:
                conn.execute("DELETE FROM generating WHERE started_at < ?", (cutoff,))
        if stale:
            logger.warning("Cleared %d stale generation flag(s): %s", len(stale), ", ".join(stale))
            self._publish()
        return stale

    # ── change notification ──

    def _publish(self) -> None:
        snapshot = self.snapshot()
        if snapshot == self._last_snapshot:
            return
        self._last_snapshot = snapshot
        for queue in list(self._subscribers):
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(snapshot)

    def add_listener(self) -> asyncio.Queue:
        """Queue that receives a snapshot on every change."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        self._subscribers.add(queue)
        return queue

    def remove_listener(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    async def subscribe(self) -> AsyncIterator[dict[str, dict[str, Any]]]:
        """Yield the current snapshot, then one snapshot per change."""
        queue = self.add_listener()
        try:
            yield self.snapshot()
            while True:
                yield await queue.get()
        finally:
            self.remove_listener(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def run_watch_loop(self, interval: float = 0.5) -> None:
        """Republish when another process writes the table."""
        conn = self._connect()
        try:
            last = conn.execute("PRAGMA data_version").fetchone()[0]
            while True:
                await asyncio.sleep(interval)
                version = conn.execute("PRAGMA data_version").fetchone()[0]
                if version != last:
                    last = version
                    self._publish()
        finally:
            conn.close()

    async def run_sweep_loop(self, interval: float = 60.0) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep_stale()
            except sqlite3.Error:
                logger.exception("Stale generation sweep failed")
