"""Composition root wiring the stores, the dispatcher, the workers and the scheduler."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Iterable, Mapping, Optional

from .audit import AuditSink, AuditTrail, LoggingAuditSink, create_audit_sink
from .dispatcher import Dispatcher, RecipientResolver, TemplateRenderer
from .logger import get_logger
from .models import GLOBAL_SCOPE
from .persistence import Persistence
from .prometheus import MailMetrics
from .queue import SQLiteJobQueue
from .rate_limit import WINDOWS, RateLimiter
from .scheduler import Scheduler
from .transport import MailTransport, SMTPTransport, TransportConfigurationError, create_transport
from .worker import WorkerPool

ROLE_WORKERS = "workers"
ROLE_SCHEDULER = "scheduler"


class BulkMailCore:
    """Own every collaborator of the service and their lifecycle.

    Nothing here is global: each process builds one core, calls
    :meth:`start` and eventually :meth:`stop`. ``roles`` selects which
    background components this process runs; the dispatcher is always
    available.
    """

    def __init__(
        self,
        *,
        db_path: str | None = "/data/bulk_mail.db",
        transport: Optional[MailTransport] = None,
        resolver: Optional[RecipientResolver] = None,
        renderer: Optional[TemplateRenderer] = None,
        audit: Optional[AuditSink] = None,
        metrics: MailMetrics | None = None,
        roles: Iterable[str] = (ROLE_WORKERS, ROLE_SCHEDULER),
        rate_limit_per_minute: Optional[int] = 10,
        rate_limit_per_hour: Optional[int] = 100,
        rate_limit_scope: str = "global",
        visibility_timeout: float = 300.0,
        enqueue_attempts: int = 3,
        default_priority: int = 0,
        worker_options: Optional[Mapping[str, Any]] = None,
        scheduler_options: Optional[Mapping[str, Any]] = None,
        pool_cleanup_interval: float = 150.0,
        logger=None,
    ):
        """Prepare the runtime collaborators."""
        self.logger = logger or get_logger()
        self.roles = frozenset(roles)
        self.metrics = metrics or MailMetrics()
        self.transport = transport
        self.audit = audit or LoggingAuditSink()
        self.audit_trail = AuditTrail(self.audit)
        self.persistence = Persistence(db_path or ":memory:")
        self.queue = SQLiteJobQueue(self.persistence.db_path, visibility_timeout=visibility_timeout)
        self.rate_limiter = RateLimiter(self.persistence, per_minute=rate_limit_per_minute, per_hour=rate_limit_per_hour)
        self.dispatcher = Dispatcher(
            self.persistence,
            self.queue,
            transport=transport,
            resolver=resolver,
            renderer=renderer,
            audit=self.audit_trail,
            metrics=self.metrics,
            default_priority=default_priority,
            enqueue_attempts=enqueue_attempts,
        )
        self.workers: Optional[WorkerPool] = None
        if ROLE_WORKERS in self.roles:
            if transport is None:
                raise TransportConfigurationError("Workers need a mail transport")
            self.workers = WorkerPool(
                self.persistence,
                self.queue,
                transport,
                self.rate_limiter,
                audit=self.audit_trail,
                metrics=self.metrics,
                renderer=renderer,
                rate_limit_scope=rate_limit_scope,
                **dict(worker_options or {}),
            )
        self.scheduler = Scheduler(
            self.persistence,
            self.queue,
            rate_limiter=self.rate_limiter,
            metrics=self.metrics,
            **dict(scheduler_options or {}),
        )
        self._pool_cleanup_interval = pool_cleanup_interval
        self._stop = asyncio.Event()
        self._task_cleanup: Optional[asyncio.Task] = None
        self._initialised = False

    @classmethod
    def from_settings(
        cls,
        settings: Mapping[str, Any],
        *,
        roles: Iterable[str] = (ROLE_WORKERS, ROLE_SCHEDULER),
        transport: Optional[MailTransport] = None,
        resolver: Optional[RecipientResolver] = None,
        renderer: Optional[TemplateRenderer] = None,
        audit: Optional[AuditSink] = None,
        metrics: Optional[MailMetrics] = None,
    ) -> "BulkMailCore":
        """Build a core from the dictionary returned by :func:`load_settings`."""
        roles = frozenset(roles)
        if transport is None:
            try:
                transport = create_transport(settings)
            except TransportConfigurationError as exc:
                if ROLE_WORKERS in roles:
                    raise
                get_logger().warning("Mail provider not configured: %s", exc)
        worker_options = {
            "concurrency": settings.get("worker_concurrency"),
            "max_recipient_retries": settings.get("max_recipient_retries"),
            "send_timeout": settings.get("send_timeout"),
            "recipient_retry_delay": settings.get("recipient_retry_delay"),
            "backoff_base": settings.get("backoff_base"),
            "backoff_cap": settings.get("backoff_cap"),
            "max_job_attempts": settings.get("max_job_attempts"),
            "poll_timeout": settings.get("poll_timeout"),
        }
        scheduler_options = {
            "interval": settings.get("scheduler_interval"),
            "orphan_grace": settings.get("orphan_grace"),
            "completed_retention": settings.get("completed_retention"),
            "failed_retention": settings.get("failed_retention"),
        }
        return cls(
            db_path=settings.get("db_path"),
            transport=transport,
            resolver=resolver,
            renderer=renderer,
            audit=audit or create_audit_sink(settings),
            metrics=metrics,
            roles=roles,
            rate_limit_per_minute=settings.get("rate_limit_per_minute"),
            rate_limit_per_hour=settings.get("rate_limit_per_hour"),
            rate_limit_scope=str(settings.get("rate_limit_scope") or "global"),
            visibility_timeout=float(settings.get("visibility_timeout") or 300.0),
            enqueue_attempts=int(settings.get("enqueue_attempts") or 3),
            default_priority=int(settings.get("default_priority") or 0),
            worker_options={k: v for k, v in worker_options.items() if v is not None},
            scheduler_options={k: v for k, v in scheduler_options.items() if v is not None},
        )

    # ----------------------------------------------------------------- lifecycle
    async def init(self) -> None:
        """Create the schema and connect the queue."""
        if self._initialised:
            return
        await self.persistence.init_db()
        await self.queue.connect()
        self._initialised = True

    async def start(self) -> None:
        """Start the background components selected by ``roles``."""
        self.logger.debug("Starting BulkMailCore with roles %s", sorted(self.roles))
        await self.init()
        self._stop.clear()
        if self.workers is not None:
            await self.workers.start()
        if ROLE_SCHEDULER in self.roles:
            await self.scheduler.start()
        if isinstance(self.transport, SMTPTransport) and self._pool_cleanup_interval > 0:
            self._task_cleanup = asyncio.create_task(self._cleanup_loop(), name="smtp-cleanup-loop")

    async def stop(self) -> None:
        """Stop the background tasks gracefully and release connections."""
        self._stop.set()
        if self.workers is not None:
            await self.workers.stop()
        await self.scheduler.stop()
        if self._task_cleanup:
            await asyncio.gather(self._task_cleanup, return_exceptions=True)
            self._task_cleanup = None
        await self.queue.close()
        self._initialised = False
        if self.transport is not None:
            await self.transport.close()
        await self.audit_trail.close()

    async def _cleanup_loop(self) -> None:
        """Keep pooled SMTP connections healthy."""
        while not self._stop.is_set():
            try:
                async with asyncio.timeout(self._pool_cleanup_interval):
                    await self._stop.wait()
                return
            except asyncio.TimeoutError:
                pass
            try:
                await self.transport.pool.cleanup()
            except Exception as exc:
                self.logger.warning("SMTP pool cleanup failed: %s", exc)

    async def queue_overview(self) -> dict:
        """Return queue entry counts, job counts per status and recent sends."""
        overview: dict = {"queue": await self.queue.stats(), "jobs": {}, "sent": {}}
        for status in ("QUEUED", "PROCESSING", "SCHEDULED"):
            overview["jobs"][status] = await self.persistence.count_jobs(status=status)
        now = time.time()
        for name, length in WINDOWS:
            overview["sent"][f"last_{name}"] = await self.persistence.count_recent(GLOBAL_SCOPE, now - length)
        self.metrics.set_queue_stats(overview["queue"])
        return overview
