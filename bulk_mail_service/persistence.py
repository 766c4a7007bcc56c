"""SQLite backed Job Store used by the dispatcher, the workers and the scheduler."""

from __future__ import annotations

import json
import time
import uuid
from enum import Enum
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import aiosqlite

from .models import CREATOR_SCOPE_PREFIX, GLOBAL_SCOPE, JobStatus, LogStatus, Recipient

JOB_MUTABLE_COLUMNS = frozenset(
    {
        "queue_ref",
        "status",
        "priority",
        "scheduled_ts",
        "started_ts",
        "completed_ts",
        "failed_ts",
        "sent_count",
        "failed_count",
        "error",
        "cancel_requested",
    }
)
LOG_MUTABLE_COLUMNS = frozenset(
    {
        "status",
        "retry_count",
        "error",
        "message_id",
        "sent_ts",
        "delivered_ts",
        "bounced_ts",
        "opened_ts",
        "clicked_ts",
    }
)


def _value(v: Any) -> Any:
    """Unwrap enums before handing values to sqlite."""
    if isinstance(v, Enum):
        return v.value
    if isinstance(v, bool):
        return 1 if v else 0
    return v


class SqliteStore:
    """Connection helpers shared by every SQLite backed component."""

    def __init__(self, db_path: str = "/data/bulk_mail.db", busy_timeout: float = 30.0):
        """Persist data to the given database path (``:memory:`` allowed)."""
        self.db_path = db_path or ":memory:"
        self.busy_timeout = busy_timeout

    @asynccontextmanager
    async def _connect(self, *, autocommit: bool = False) -> AsyncIterator[aiosqlite.Connection]:
        kwargs: Dict[str, Any] = {"timeout": self.busy_timeout}
        if autocommit:
            kwargs["isolation_level"] = None
        async with aiosqlite.connect(self.db_path, **kwargs) as db:
            await db.execute("PRAGMA foreign_keys = ON")
            yield db

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open a write-locked transaction so read-then-write stays atomic."""
        async with self._connect(autocommit=True) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            await db.execute("COMMIT")

    @staticmethod
    async def _fetch_dicts(db: aiosqlite.Connection, query: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        async with db.execute(query, tuple(params)) as cur:
            rows = await cur.fetchall()
            cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows]


class Persistence(SqliteStore):
    """Read and write email jobs, recipient logs and rate-limit windows."""

    async def init_db(self) -> None:
        """Create the database schema."""
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode = WAL")
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS email_jobs (
                    id TEXT PRIMARY KEY,
                    queue_ref TEXT,
                    template_id TEXT,
                    subject TEXT NOT NULL,
                    html_content TEXT NOT NULL,
                    text_content TEXT,
                    recipient_type TEXT NOT NULL,
                    recipients TEXT NOT NULL,
                    total_count INTEGER NOT NULL,
                    selector TEXT,
                    template_data TEXT,
                    status TEXT NOT NULL DEFAULT 'QUEUED',
                    priority INTEGER NOT NULL DEFAULT 0,
                    scheduled_ts REAL,
                    max_retries INTEGER,
                    sent_count INTEGER NOT NULL DEFAULT 0,
                    failed_count INTEGER NOT NULL DEFAULT 0,
                    error TEXT,
                    cancel_requested INTEGER NOT NULL DEFAULT 0,
                    created_by TEXT,
                    created_ts REAL NOT NULL,
                    started_ts REAL,
                    completed_ts REAL,
                    failed_ts REAL,
                    updated_ts REAL NOT NULL
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS email_logs (
                    id TEXT PRIMARY KEY,
                    job_id TEXT NOT NULL REFERENCES email_jobs(id) ON DELETE CASCADE,
                    recipient_id TEXT NOT NULL,
                    email TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'PENDING',
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    error TEXT,
                    message_id TEXT,
                    sent_ts REAL,
                    delivered_ts REAL,
                    bounced_ts REAL,
                    opened_ts REAL,
                    clicked_ts REAL,
                    created_ts REAL NOT NULL,
                    updated_ts REAL NOT NULL,
                    UNIQUE (job_id, recipient_id)
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS rate_windows (
                    scope TEXT NOT NULL,
                    period TEXT NOT NULL,
                    window_start INTEGER NOT NULL,
                    count INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (scope, period, window_start)
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status ON email_jobs(status)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_jobs_scheduled ON email_jobs(status, scheduled_ts)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_jobs_created_by ON email_jobs(created_by)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_logs_job ON email_logs(job_id)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_logs_sent ON email_logs(sent_ts)")
            await db.commit()

    # Jobs ---------------------------------------------------------------------
    @staticmethod
    def _decode_job_row(data: Dict[str, Any]) -> Dict[str, Any]:
        for key in ("recipients", "selector", "template_data"):
            raw = data.get(key)
            if raw is None:
                continue
            try:
                data[key] = json.loads(raw)
            except json.JSONDecodeError:
                data[key] = None
        if "cancel_requested" in data:
            data["cancel_requested"] = bool(data["cancel_requested"])
        return data

    async def create_job(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        """Insert a new job row and return it.

        ``fields["recipients"]`` is snapshotted as JSON; it never changes
        afterwards, even if the users behind it do.
        """
        job_id = fields.get("id") or uuid.uuid4().hex
        recipients = [Recipient.from_value(r).to_dict() for r in fields.get("recipients") or []]
        now = time.time()
        status = _value(fields.get("status", JobStatus.QUEUED))
        selector = fields.get("selector")
        template_data = fields.get("template_data")
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO email_jobs
                (id, template_id, subject, html_content, text_content, recipient_type, recipients,
                 total_count, selector, template_data, status, priority, scheduled_ts, max_retries, created_by,
                 created_ts, updated_ts)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job_id,
                    fields.get("template_id"),
                    fields["subject"],
                    fields["html_content"],
                    fields.get("text_content"),
                    _value(fields.get("recipient_type", "CUSTOM_LIST")),
                    json.dumps(recipients),
                    len(recipients),
                    json.dumps(selector) if selector is not None else None,
                    json.dumps(template_data) if template_data else None,
                    status,
                    int(fields.get("priority", 0)),
                    fields.get("scheduled_ts"),
                    fields.get("max_retries"),
                    fields.get("created_by"),
                    now,
                    now,
                ),
            )
            await db.commit()
        job = await self.get_job(job_id)
        if job is None:
            raise RuntimeError(f"Job {job_id} was not stored")
        return job

    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Return a job by id, or ``None``."""
        async with self._connect() as db:
            rows = await self._fetch_dicts(db, "SELECT * FROM email_jobs WHERE id=?", (job_id,))
        return self._decode_job_row(rows[0]) if rows else None

    @staticmethod
    def _assignments(patch: Mapping[str, Any], allowed: frozenset[str]) -> Tuple[str, List[Any]]:
        unknown = set(patch) - allowed
        if unknown:
            raise ValueError(f"Cannot update column(s): {', '.join(sorted(unknown))}")
        columns = [f"{col}=?" for col in patch]
        values = [_value(v) for v in patch.values()]
        columns.append("updated_ts=?")
        values.append(time.time())
        return ", ".join(columns), values

    async def update_job(self, job_id: str, patch: Mapping[str, Any]) -> bool:
        """Apply a single-row update to a job."""
        if not patch:
            return False
        assignments, values = self._assignments(patch, JOB_MUTABLE_COLUMNS)
        async with self._connect() as db:
            cursor = await db.execute(f"UPDATE email_jobs SET {assignments} WHERE id=?", (*values, job_id))
            await db.commit()
            return cursor.rowcount > 0

    async def transition_job(
        self,
        job_id: str,
        from_statuses: Iterable[JobStatus],
        to_status: JobStatus,
        patch: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Move a job to ``to_status`` only if it is currently in ``from_statuses``.

        Affects 0 or 1 row; the return value tells whether this caller won.
        """
        sources = [_value(s) for s in from_statuses]
        if not sources:
            return False
        updates = dict(patch or {})
        updates["status"] = to_status
        assignments, values = self._assignments(updates, JOB_MUTABLE_COLUMNS)
        placeholders = ",".join("?" for _ in sources)
        async with self._connect() as db:
            cursor = await db.execute(
                f"UPDATE email_jobs SET {assignments} WHERE id=? AND status IN ({placeholders})",
                (*values, job_id, *sources),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def delete_job(self, job_id: str) -> bool:
        """Delete a job; its recipient logs go with it."""
        async with self._connect() as db:
            cursor = await db.execute("DELETE FROM email_jobs WHERE id=?", (job_id,))
            await db.commit()
            return cursor.rowcount > 0

    @staticmethod
    def _job_filters(
        *,
        status: Optional[JobStatus | str] = None,
        created_by: Optional[str] = None,
        template_id: Optional[str] = None,
        created_after: Optional[float] = None,
        created_before: Optional[float] = None,
    ) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if status:
            clauses.append("status=?")
            params.append(_value(status))
        if created_by:
            clauses.append("created_by=?")
            params.append(created_by)
        if template_id:
            clauses.append("template_id=?")
            params.append(template_id)
        if created_after is not None:
            clauses.append("created_ts>=?")
            params.append(created_after)
        if created_before is not None:
            clauses.append("created_ts<=?")
            params.append(created_before)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    async def list_jobs(
        self,
        *,
        status: Optional[JobStatus | str] = None,
        created_by: Optional[str] = None,
        template_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """Return jobs, newest first."""
        where, params = self._job_filters(status=status, created_by=created_by, template_id=template_id)
        query = f"SELECT * FROM email_jobs{where} ORDER BY created_ts DESC, id ASC LIMIT ? OFFSET ?"
        async with self._connect() as db:
            rows = await self._fetch_dicts(db, query, (*params, int(limit), int(offset)))
        return [self._decode_job_row(row) for row in rows]

    async def count_jobs(self, **filters: Any) -> int:
        """Count jobs matching the same filters accepted by :meth:`list_jobs`."""
        where, params = self._job_filters(**filters)
        async with self._connect() as db:
            async with db.execute(f"SELECT COUNT(*) FROM email_jobs{where}", params) as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)

    async def due_scheduled_jobs(self, now_ts: float, limit: int = 100) -> List[Dict[str, Any]]:
        """Return scheduled jobs whose time has come, most urgent first."""
        async with self._connect() as db:
            rows = await self._fetch_dicts(
                db,
                """
                SELECT id, priority, scheduled_ts, created_by FROM email_jobs
                WHERE status=? AND scheduled_ts <= ?
                ORDER BY priority ASC, scheduled_ts ASC, created_ts ASC
                LIMIT ?
                """,
                (JobStatus.SCHEDULED.value, now_ts, int(limit)),
            )
        return rows

    async def queued_jobs_before(self, threshold_ts: float, limit: int = 100) -> List[Dict[str, Any]]:
        """Return queued jobs untouched since ``threshold_ts``."""
        async with self._connect() as db:
            rows = await self._fetch_dicts(
                db,
                """
                SELECT id, priority, queue_ref, updated_ts FROM email_jobs
                WHERE status=? AND updated_ts < ?
                ORDER BY priority ASC, created_ts ASC
                LIMIT ?
                """,
                (JobStatus.QUEUED.value, threshold_ts, int(limit)),
            )
        return rows

    async def purge_finished_jobs(self, *, completed_before: Optional[float], failed_before: Optional[float]) -> int:
        """Delete completed jobs older than ``completed_before`` and failed or
        cancelled jobs older than ``failed_before``. ``None`` skips a group."""
        removed = 0
        async with self._connect() as db:
            if completed_before is not None:
                cursor = await db.execute(
                    "DELETE FROM email_jobs WHERE status=? AND completed_ts < ?",
                    (JobStatus.COMPLETED.value, completed_before),
                )
                removed += cursor.rowcount
            if failed_before is not None:
                cursor = await db.execute(
                    """
                    DELETE FROM email_jobs
                    WHERE status IN (?, ?) AND COALESCE(failed_ts, updated_ts) < ?
                    """,
                    (JobStatus.FAILED.value, JobStatus.CANCELLED.value, failed_before),
                )
                removed += cursor.rowcount
            await db.commit()
        return removed

    # Recipient logs -----------------------------------------------------------
    async def create_or_get_log(self, job_id: str, recipient: Recipient, subject: str) -> Dict[str, Any]:
        """Return the log for ``(job_id, recipient)``, creating it when missing."""
        now = time.time()
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO email_logs (id, job_id, recipient_id, email, subject, status, created_ts, updated_ts)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(job_id, recipient_id) DO NOTHING
                """,
                (uuid.uuid4().hex, job_id, recipient.id, recipient.email, subject, LogStatus.PENDING.value, now, now),
            )
            await db.commit()
            rows = await self._fetch_dicts(
                db,
                "SELECT * FROM email_logs WHERE job_id=? AND recipient_id=?",
                (job_id, recipient.id),
            )
        return rows[0]

    async def get_log(self, job_id: str, recipient_id: str) -> Optional[Dict[str, Any]]:
        async with self._connect() as db:
            rows = await self._fetch_dicts(
                db,
                "SELECT * FROM email_logs WHERE job_id=? AND recipient_id=?",
                (job_id, recipient_id),
            )
        return rows[0] if rows else None

    async def list_logs(self, job_id: str) -> List[Dict[str, Any]]:
        async with self._connect() as db:
            return await self._fetch_dicts(
                db,
                "SELECT * FROM email_logs WHERE job_id=? ORDER BY created_ts ASC, id ASC",
                (job_id,),
            )

    async def logs_by_recipient(self, job_id: str) -> Dict[str, Dict[str, Any]]:
        """Return the existing logs of a job keyed by recipient id."""
        return {log["recipient_id"]: log for log in await self.list_logs(job_id)}

    async def update_log(self, log_id: str, patch: Mapping[str, Any]) -> bool:
        """Apply a single-row update to a recipient log."""
        if not patch:
            return False
        assignments, values = self._assignments(patch, LOG_MUTABLE_COLUMNS)
        async with self._connect() as db:
            cursor = await db.execute(f"UPDATE email_logs SET {assignments} WHERE id=?", (*values, log_id))
            await db.commit()
            return cursor.rowcount > 0

    async def _settle_log(
        self,
        log_id: str,
        job_id: str,
        counter: str,
        assignments: str,
        values: Sequence[Any],
    ) -> bool:
        """Settle a pending log and bump the job counter in one transaction."""
        async with self._transaction() as db:
            cursor = await db.execute(
                f"UPDATE email_logs SET {assignments} WHERE id=? AND status=?",
                (*values, log_id, LogStatus.PENDING.value),
            )
            if cursor.rowcount != 1:
                return False
            cursor = await db.execute(
                f"""
                UPDATE email_jobs SET {counter}={counter} + 1, updated_ts=?
                WHERE id=? AND sent_count + failed_count < total_count
                """,
                (time.time(), job_id),
            )
            if cursor.rowcount != 1:
                raise RuntimeError(f"Counter overflow for job {job_id}")
        return True

    async def record_recipient_sent(
        self,
        log_id: str,
        job_id: str,
        *,
        message_id: Optional[str],
        retry_count: int,
        sent_ts: Optional[float] = None,
    ) -> bool:
        """Mark a pending log SENT and increment the job ``sent_count``."""
        now = time.time()
        return await self._settle_log(
            log_id,
            job_id,
            "sent_count",
            "status=?, message_id=?, retry_count=?, error=NULL, sent_ts=?, updated_ts=?",
            (LogStatus.SENT.value, message_id, retry_count, sent_ts or now, now),
        )

    async def record_recipient_failed(self, log_id: str, job_id: str, *, retry_count: int, error: str) -> bool:
        """Mark a pending log FAILED and increment the job ``failed_count``."""
        return await self._settle_log(
            log_id,
            job_id,
            "failed_count",
            "status=?, retry_count=?, error=?, updated_ts=?",
            (LogStatus.FAILED.value, retry_count, error, time.time()),
        )

    async def record_recipient_retry(self, log_id: str, *, retry_count: int, error: str) -> bool:
        """Store a failed attempt on a log that stays pending."""
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE email_logs SET retry_count=?, error=?, updated_ts=?
                WHERE id=? AND status=?
                """,
                (retry_count, error, time.time(), log_id, LogStatus.PENDING.value),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def count_recent(self, scope: Optional[str], since_ts: float) -> int:
        """Count recipients sent after ``since_ts``.

        ``scope`` uses the rate limiter keys: ``"global"`` (or ``None``) for
        every job, ``"user:<creator id>"`` for the jobs of one creator.
        """
        query = "SELECT COUNT(*) FROM email_logs l"
        params: List[Any] = []
        if scope and scope != GLOBAL_SCOPE:
            if not scope.startswith(CREATOR_SCOPE_PREFIX):
                raise ValueError(f"Unknown send scope: {scope}")
            query += " JOIN email_jobs j ON j.id = l.job_id WHERE j.created_by=? AND l.sent_ts >= ?"
            params.extend([scope[len(CREATOR_SCOPE_PREFIX):], since_ts])
        else:
            query += " WHERE l.sent_ts >= ?"
            params.append(since_ts)
        async with self._connect() as db:
            async with db.execute(query, params) as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)

    # Rate windows -------------------------------------------------------------
    async def consume_rate_windows(self, scope: str, windows: Sequence[Tuple[str, int, int]]) -> bool:
        """Atomically take one slot in every ``(window, start, cap)`` window.

        Nothing is consumed unless all windows still have room.
        """
        async with self._transaction() as db:
            for name, start, cap in windows:
                async with db.execute(
                    "SELECT count FROM rate_windows WHERE scope=? AND period=? AND window_start=?",
                    (scope, name, start),
                ) as cur:
                    row = await cur.fetchone()
                if row is not None and int(row[0]) >= cap:
                    return False
            for name, start, _cap in windows:
                await db.execute(
                    """
                    INSERT INTO rate_windows (scope, period, window_start, count) VALUES (?, ?, ?, 1)
                    ON CONFLICT(scope, period, window_start) DO UPDATE SET count = count + 1
                    """,
                    (scope, name, start),
                )
        return True

    async def rate_window_counts(self, scope: str, windows: Sequence[Tuple[str, int]]) -> Dict[str, int]:
        """Return the consumed count of each ``(window, start)``."""
        counts: Dict[str, int] = {}
        async with self._connect() as db:
            for name, start in windows:
                async with db.execute(
                    "SELECT count FROM rate_windows WHERE scope=? AND period=? AND window_start=?",
                    (scope, name, start),
                ) as cur:
                    row = await cur.fetchone()
                counts[name] = int(row[0]) if row else 0
        return counts

    async def purge_rate_windows(self, before_ts: int) -> int:
        """Drop windows that started before ``before_ts``."""
        async with self._connect() as db:
            cursor = await db.execute("DELETE FROM rate_windows WHERE window_start < ?", (int(before_ts),))
            await db.commit()
            return cursor.rowcount
