"""Periodic housekeeping: promote due scheduled jobs, recover orphans, apply retention."""

from __future__ import annotations

import asyncio
import math
import time
from typing import Dict, Optional

from .logger import get_logger
from .models import JobStatus
from .persistence import Persistence
from .prometheus import MailMetrics
from .queue import SQLiteJobQueue
from .rate_limit import RateLimiter


class Scheduler:
    """Move scheduled jobs into the queue once they are due.

    Several schedulers may run against the same database: promotion is
    claimed with a conditional ``SCHEDULED -> QUEUED`` update, so only one
    of them enqueues a given job.
    """

    def __init__(
        self,
        persistence: Persistence,
        queue: SQLiteJobQueue,
        *,
        rate_limiter: Optional[RateLimiter] = None,
        metrics: Optional[MailMetrics] = None,
        interval: float = 60.0,
        orphan_grace: float = 120.0,
        completed_retention: int = 24 * 3600,
        failed_retention: int = 7 * 24 * 3600,
        batch_size: int = 100,
        logger=None,
    ):
        self.persistence = persistence
        self.queue = queue
        self.rate_limiter = rate_limiter
        self.metrics = metrics
        self.interval = max(0.0, float(interval))
        self.orphan_grace = max(0.0, float(orphan_grace))
        self.completed_retention = int(completed_retention)
        self.failed_retention = int(failed_retention)
        self.batch_size = max(1, int(batch_size))
        self.logger = logger or get_logger("BulkMailScheduler")

        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        self._stop.clear()
        self._task = asyncio.create_task(self._scheduler_loop(), name="bulk-mail-scheduler")

    async def stop(self) -> None:
        self._stop.set()
        self._wake_event.set()
        if self._task:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    def wake(self) -> None:
        """Run the next cycle now instead of waiting for the interval."""
        self._wake_event.set()

    async def _scheduler_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.run_once()
            except Exception as exc:
                self.logger.exception("Unhandled error in scheduler loop: %s", exc)
            await self._wait_for_wakeup(self.interval)

    async def _wait_for_wakeup(self, timeout: float) -> None:
        if self._stop.is_set():
            return
        if math.isinf(timeout):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        try:
            async with asyncio.timeout(max(0.0, timeout)):
                await self._wake_event.wait()
        except asyncio.TimeoutError:
            return
        self._wake_event.clear()

    # ------------------------------------------------------------------- cycles
    async def run_once(self, now: Optional[float] = None) -> Dict[str, int]:
        """Run one promotion, recovery and retention cycle."""
        now = time.time() if now is None else now
        summary = {
            "promoted": await self.promote_due(now),
            "recovered": await self.recover_orphans(now),
            "purged": await self.apply_retention(now),
        }
        if self.metrics:
            try:
                self.metrics.set_queue_stats(await self.queue.stats())
            except Exception:
                self.logger.exception("Failed to refresh queue gauges")
        if any(summary.values()):
            self.logger.info(
                "Scheduler cycle: %(promoted)d promoted, %(recovered)d recovered, %(purged)d purged", summary
            )
        return summary

    async def promote_due(self, now: Optional[float] = None) -> int:
        """Enqueue every scheduled job whose time has come."""
        now = time.time() if now is None else now
        promoted = 0
        for row in await self.persistence.due_scheduled_jobs(now, limit=self.batch_size):
            job_id = row["id"]
            if not await self.persistence.transition_job(job_id, [JobStatus.SCHEDULED], JobStatus.QUEUED):
                continue  # claimed by another scheduler or cancelled
            try:
                ref = await self.queue.enqueue(job_id, row["priority"])
            except Exception as exc:
                self.logger.warning("Enqueue of scheduled job %s failed, keeping it scheduled: %s", job_id, exc)
                await self.persistence.transition_job(job_id, [JobStatus.QUEUED], JobStatus.SCHEDULED)
                continue
            await self.persistence.update_job(job_id, {"queue_ref": ref})
            self.logger.info("Scheduled job %s promoted to the queue", job_id)
            promoted += 1
        return promoted

    async def recover_orphans(self, now: Optional[float] = None) -> int:
        """Re-enqueue queued jobs that lost their queue entry."""
        now = time.time() if now is None else now
        recovered = 0
        for row in await self.persistence.queued_jobs_before(now - self.orphan_grace, limit=self.batch_size):
            job_id = row["id"]
            if await self.queue.has_entry(job_id):
                continue
            ref = await self.queue.enqueue(job_id, row["priority"])
            await self.persistence.update_job(job_id, {"queue_ref": ref})
            self.logger.warning("Job %s was queued without a queue entry, re-enqueued as %s", job_id, ref)
            recovered += 1
        return recovered

    async def apply_retention(self, now: Optional[float] = None) -> int:
        """Delete finished jobs past their retention and stale rate windows."""
        now = time.time() if now is None else now
        completed_before = now - self.completed_retention if self.completed_retention > 0 else None
        failed_before = now - self.failed_retention if self.failed_retention > 0 else None
        removed = 0
        if completed_before is not None or failed_before is not None:
            removed = await self.persistence.purge_finished_jobs(
                completed_before=completed_before, failed_before=failed_before
            )
        if self.rate_limiter is not None:
            await self.rate_limiter.purge(now - 3600)
        return removed
