"""Durable, priority ordered job queue stored next to the Job Store.

Entries only carry a job reference. A dequeued entry is leased to one
worker until its visibility timeout expires; an entry that is neither
acked nor nacked in time becomes visible again so another worker can
pick the job up.
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .logger import get_logger
from .persistence import SqliteStore


class QueueUnavailableError(RuntimeError):
    """Raised when the queue is used outside its connect/close lifecycle."""


@dataclass
class QueueEntry:
    ref: str
    job_id: str
    priority: int
    enqueued_ts: float
    visible_ts: float
    locked_by: Optional[str] = None
    deliveries: int = 0
    failures: int = 0


def queue_ref_for(job_id: str) -> str:
    """Return the reference under which a job is enqueued."""
    return f"email-{job_id}"


class SQLiteJobQueue(SqliteStore):
    """Job queue persisted in SQLite and shared by every process."""

    def __init__(
        self,
        db_path: str = "/data/bulk_mail.db",
        *,
        visibility_timeout: float = 300.0,
        poll_interval: float = 1.0,
        busy_timeout: float = 30.0,
        logger=None,
    ):
        super().__init__(db_path, busy_timeout=busy_timeout)
        self.visibility_timeout = max(1.0, float(visibility_timeout))
        self.poll_interval = max(0.01, float(poll_interval))
        self.logger = logger or get_logger("BulkMailQueue")
        self._wake_event = asyncio.Event()
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Create the queue table and accept operations."""
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode = WAL")
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS queue_entries (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    ref TEXT NOT NULL UNIQUE,
                    job_id TEXT NOT NULL,
                    priority INTEGER NOT NULL DEFAULT 0,
                    enqueued_ts REAL NOT NULL,
                    visible_ts REAL NOT NULL,
                    locked_by TEXT,
                    deliveries INTEGER NOT NULL DEFAULT 0,
                    failures INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_queue_ready ON queue_entries(visible_ts, priority, seq)"
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_queue_job ON queue_entries(job_id)")
            await db.commit()
        self._connected = True

    async def close(self) -> None:
        """Stop accepting operations and release blocked consumers."""
        self._connected = False
        self._wake_event.set()

    def _require_connected(self) -> None:
        if not self._connected:
            raise QueueUnavailableError("Queue is not connected")

    # ------------------------------------------------------------------ producers
    async def enqueue(self, job_id: str, priority: int = 0) -> str:
        """Add a job reference; enqueuing the same job twice keeps one entry."""
        self._require_connected()
        ref = queue_ref_for(job_id)
        now = time.time()
        async with self._connect() as db:
            await db.execute(
                """
                INSERT OR IGNORE INTO queue_entries (ref, job_id, priority, enqueued_ts, visible_ts)
                VALUES (?, ?, ?, ?, ?)
                """,
                (ref, job_id, int(priority), now, now),
            )
            await db.commit()
        self._wake_event.set()
        return ref

    async def cancel(self, ref: str) -> bool:
        """Remove an entry whatever its state."""
        self._require_connected()
        async with self._connect() as db:
            cursor = await db.execute("DELETE FROM queue_entries WHERE ref=?", (ref,))
            await db.commit()
            return cursor.rowcount > 0

    # ------------------------------------------------------------------ consumers
    async def dequeue(self, worker_id: str, timeout: Optional[float] = None) -> Optional[QueueEntry]:
        """Lease the most urgent visible entry to ``worker_id``.

        Waits up to ``timeout`` seconds (forever when ``None``) for an entry
        to become available and returns ``None`` when none did.
        """
        deadline = None if timeout is None else time.monotonic() + max(0.0, float(timeout))
        while True:
            self._require_connected()
            entry = await self._claim(worker_id)
            if entry is not None:
                return entry
            if deadline is None:
                wait = self.poll_interval
            else:
                wait = min(self.poll_interval, deadline - time.monotonic())
                if wait <= 0:
                    return None
            await self._wait_for_wakeup(wait)

    async def _claim(self, worker_id: str) -> Optional[QueueEntry]:
        now = time.time()
        async with self._transaction() as db:
            rows = await self._fetch_dicts(
                db,
                """
                SELECT * FROM queue_entries
                WHERE visible_ts <= ?
                ORDER BY priority ASC, seq ASC
                LIMIT 1
                """,
                (now,),
            )
            if not rows:
                return None
            row = rows[0]
            if row["locked_by"]:
                self.logger.warning(
                    "Entry %s leased by %s expired, handing it to %s", row["ref"], row["locked_by"], worker_id
                )
            visible_ts = now + self.visibility_timeout
            await db.execute(
                """
                UPDATE queue_entries SET locked_by=?, visible_ts=?, deliveries=deliveries + 1
                WHERE seq=?
                """,
                (worker_id, visible_ts, row["seq"]),
            )
        return QueueEntry(
            ref=row["ref"],
            job_id=row["job_id"],
            priority=row["priority"],
            enqueued_ts=row["enqueued_ts"],
            visible_ts=visible_ts,
            locked_by=worker_id,
            deliveries=row["deliveries"] + 1,
            failures=row["failures"],
        )

    @staticmethod
    def _lease_clause(worker_id: Optional[str]) -> tuple[str, tuple[Any, ...]]:
        if worker_id is None:
            return "", ()
        return " AND locked_by=?", (worker_id,)

    async def ack(self, ref: str, worker_id: Optional[str] = None) -> bool:
        """Remove a processed entry. A worker that lost its lease cannot ack."""
        self._require_connected()
        clause, params = self._lease_clause(worker_id)
        async with self._connect() as db:
            cursor = await db.execute(f"DELETE FROM queue_entries WHERE ref=?{clause}", (ref, *params))
            await db.commit()
            return cursor.rowcount > 0

    async def nack(
        self,
        ref: str,
        delay: float = 0.0,
        worker_id: Optional[str] = None,
        *,
        failed: bool = False,
    ) -> bool:
        """Release an entry so it becomes visible again after ``delay`` seconds.

        ``failed`` counts the release as a processing failure.
        """
        self._require_connected()
        clause, params = self._lease_clause(worker_id)
        visible_ts = time.time() + max(0.0, float(delay))
        async with self._connect() as db:
            cursor = await db.execute(
                f"""
                UPDATE queue_entries SET locked_by=NULL, visible_ts=?, failures=failures + ?
                WHERE ref=?{clause}
                """,
                (visible_ts, 1 if failed else 0, ref, *params),
            )
            await db.commit()
            released = cursor.rowcount > 0
        if released and delay <= 0:
            self._wake_event.set()
        return released

    async def extend(self, ref: str, worker_id: str) -> bool:
        """Push the lease of an in-flight entry one visibility timeout ahead."""
        self._require_connected()
        async with self._connect() as db:
            cursor = await db.execute(
                "UPDATE queue_entries SET visible_ts=? WHERE ref=? AND locked_by=?",
                (time.time() + self.visibility_timeout, ref, worker_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    # ---------------------------------------------------------------- inspection
    async def has_entry(self, job_id: str) -> bool:
        self._require_connected()
        async with self._connect() as db:
            async with db.execute("SELECT 1 FROM queue_entries WHERE job_id=? LIMIT 1", (job_id,)) as cur:
                return await cur.fetchone() is not None

    async def stats(self) -> Dict[str, int]:
        """Return entry counts grouped by state."""
        self._require_connected()
        now = time.time()
        async with self._connect() as db:
            async with db.execute(
                """
                SELECT
                    COUNT(*),
                    SUM(CASE WHEN visible_ts <= ? THEN 1 ELSE 0 END),
                    SUM(CASE WHEN locked_by IS NOT NULL AND visible_ts > ? THEN 1 ELSE 0 END),
                    SUM(CASE WHEN locked_by IS NULL AND visible_ts > ? THEN 1 ELSE 0 END)
                FROM queue_entries
                """,
                (now, now, now),
            ) as cur:
                row = await cur.fetchone()
        total, ready, in_flight, delayed = (int(v or 0) for v in row)
        return {"total": total, "ready": ready, "in_flight": in_flight, "delayed": delayed}

    async def _wait_for_wakeup(self, timeout: float) -> None:
        """Sleep until an in-process enqueue or ``timeout`` seconds elapse."""
        if math.isinf(timeout):
            timeout = self.poll_interval
        try:
            async with asyncio.timeout(max(0.0, timeout)):
                await self._wake_event.wait()
        except asyncio.TimeoutError:
            return
        self._wake_event.clear()
