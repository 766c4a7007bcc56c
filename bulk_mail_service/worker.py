"""Worker pool pulling job references from the queue and delivering them.

Each worker task runs an independent loop: dequeue, rehydrate the job
from the Job Store, send to every recipient in list order, then ack.
Parallelism is across jobs; the recipients of one job are handled
sequentially by the worker holding its queue lease.
"""

from __future__ import annotations

import asyncio
import os
import socket
import time
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from .audit import AuditSink, AuditTrail, build_audit_event
from .dispatcher import TemplateRenderer
from .logger import get_logger
from .models import (
    DEFAULT_MAX_RECIPIENT_RETRIES,
    SETTLED_LOG_STATUSES,
    AuditAction,
    JobStatus,
    LogStatus,
    Recipient,
    RecipientAction,
    RecipientDecision,
    SendResult,
    creator_scope,
    decide_recipient,
    outcome_from_result,
)
from .persistence import Persistence
from .prometheus import MailMetrics
from .queue import QueueEntry, QueueUnavailableError, SQLiteJobQueue
from .rate_limit import GLOBAL_SCOPE, RateLimiter
from .transport import MailTransport

# Outcomes returned by WorkerPool.process_entry
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"
SKIPPED = "skipped"
RATE_LIMITED = "rate_limited"
RETRY = "retry"


class WorkerPool:
    """Run ``concurrency`` worker tasks against the shared queue."""

    def __init__(
        self,
        persistence: Persistence,
        queue: SQLiteJobQueue,
        transport: MailTransport,
        rate_limiter: RateLimiter,
        *,
        audit: Union[AuditTrail, AuditSink, None] = None,
        metrics: Optional[MailMetrics] = None,
        renderer: Optional[TemplateRenderer] = None,
        concurrency: int = 5,
        max_recipient_retries: int = DEFAULT_MAX_RECIPIENT_RETRIES,
        send_timeout: float = 10.0,
        recipient_retry_delay: float = 1.0,
        backoff_base: float = 5.0,
        backoff_cap: float = 300.0,
        max_job_attempts: int = 3,
        poll_timeout: float = 5.0,
        rate_limit_scope: str = GLOBAL_SCOPE,
        worker_prefix: Optional[str] = None,
        logger=None,
    ):
        self.persistence = persistence
        self.queue = queue
        self.transport = transport
        self.rate_limiter = rate_limiter
        self.metrics = metrics
        self.renderer = renderer
        self.concurrency = max(1, int(concurrency))
        self.max_recipient_retries = max(1, int(max_recipient_retries))
        self.send_timeout = float(send_timeout)
        self.recipient_retry_delay = max(0.0, float(recipient_retry_delay))
        self.backoff_base = max(0.0, float(backoff_base))
        self.backoff_cap = max(self.backoff_base, float(backoff_cap))
        self.max_job_attempts = max(1, int(max_job_attempts))
        self.poll_timeout = max(0.1, float(poll_timeout))
        self.rate_limit_scope = rate_limit_scope or GLOBAL_SCOPE
        self.worker_prefix = worker_prefix or f"{socket.gethostname()}-{os.getpid()}"
        self.logger = logger or get_logger("BulkMailWorker")
        self.audit = AuditTrail.wrap(audit, self.logger)

        self._stop = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Spawn the worker tasks."""
        self._stop.clear()
        for index in range(self.concurrency):
            worker_id = f"{self.worker_prefix}-{index}"
            self._tasks.append(asyncio.create_task(self._worker_loop(worker_id), name=f"bulk-mail-{worker_id}"))
        self.logger.info("Started %d worker(s) with prefix %s", self.concurrency, self.worker_prefix)

    async def stop(self, grace: float = 30.0) -> None:
        """Let in-flight jobs finish for up to ``grace`` seconds, then cancel."""
        self._stop.set()
        tasks, self._tasks = self._tasks, []
        if not tasks:
            return
        _done, pending = await asyncio.wait(tasks, timeout=grace)
        for task in pending:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def _sleep(self, delay: float) -> None:
        """Sleep ``delay`` seconds unless the pool is stopping."""
        try:
            async with asyncio.timeout(delay):
                await self._stop.wait()
        except asyncio.TimeoutError:
            return

    def backoff_delay(self, failures: int) -> float:
        """Queue redelivery delay after ``failures`` previous failed attempts."""
        return min(self.backoff_cap, self.backoff_base * (2 ** max(0, failures)))

    async def _worker_loop(self, worker_id: str) -> None:
        self.logger.debug("Worker %s started", worker_id)
        infra_failures = 0
        while not self._stop.is_set():
            try:
                entry = await self.queue.dequeue(worker_id, timeout=self.poll_timeout)
                if entry is not None:
                    await self.process_entry(entry, worker_id)
                infra_failures = 0
            except QueueUnavailableError:
                if self._stop.is_set():
                    break
                infra_failures += 1
                self.logger.warning("Worker %s: queue unavailable", worker_id)
                await self._sleep(min(60.0, 2 ** min(infra_failures, 6)))
            except Exception as exc:
                infra_failures += 1
                self.logger.exception("Worker %s loop error: %s", worker_id, exc)
                await self._sleep(min(60.0, 2 ** min(infra_failures, 6)))
        self.logger.debug("Worker %s stopped", worker_id)

    async def run_once(self, worker_id: Optional[str] = None) -> Optional[str]:
        """Process at most one ready entry; ``None`` when the queue is empty."""
        worker_id = worker_id or f"{self.worker_prefix}-once"
        entry = await self.queue.dequeue(worker_id, timeout=0)
        if entry is None:
            return None
        return await self.process_entry(entry, worker_id)

    # ---------------------------------------------------------------- processing
    async def process_entry(self, entry: QueueEntry, worker_id: str) -> str:
        """Handle one dequeued entry and settle it with ack or nack."""
        job = await self.persistence.get_job(entry.job_id)
        if job is None:
            self.logger.warning("Entry %s points to missing job %s, dropping it", entry.ref, entry.job_id)
            await self.queue.ack(entry.ref, worker_id)
            return SKIPPED

        status = JobStatus(job["status"])
        if status.is_terminal or status == JobStatus.SCHEDULED:
            # cancelled after enqueue, or finished by a previous lease holder
            await self.queue.ack(entry.ref, worker_id)
            return CANCELLED if status == JobStatus.CANCELLED else SKIPPED

        if job["cancel_requested"]:
            return await self._cancel_requested(job, entry, worker_id)

        try:
            return await self._process_job(job, entry, worker_id)
        except Exception as exc:
            return await self._handle_job_error(job, entry, worker_id, exc)

    async def _cancel_requested(self, job: Dict[str, Any], entry: QueueEntry, worker_id: str) -> str:
        job_id = job["id"]
        if await self.persistence.transition_job(
            job_id, [JobStatus.QUEUED, JobStatus.PROCESSING], JobStatus.CANCELLED, {"cancel_requested": False}
        ):
            self.logger.info("Job %s cancelled at dequeue", job_id)
            self._audit(AuditAction.JOB_CANCELLED, job, "Email job cancelled before processing resumed")
            if self.metrics:
                self.metrics.inc_job(JobStatus.CANCELLED.value)
        await self.queue.ack(entry.ref, worker_id)
        return CANCELLED

    async def _process_job(self, job: Dict[str, Any], entry: QueueEntry, worker_id: str) -> str:
        job_id = job["id"]
        first_start = job["started_ts"] is None
        if not await self.persistence.transition_job(
            job_id,
            [JobStatus.QUEUED, JobStatus.PROCESSING],
            JobStatus.PROCESSING,
            {"started_ts": job["started_ts"] or time.time()},
        ):
            # status moved away (e.g. cancelled) between the read and the claim
            self.logger.info("Job %s is no longer runnable, acking entry %s", job_id, entry.ref)
            await self.queue.ack(entry.ref, worker_id)
            return CANCELLED

        if first_start:
            self.logger.info("Job %s started by %s (%d recipient(s))", job_id, worker_id, job["total_count"])
            self._audit(AuditAction.JOB_STARTED, job, "Email job processing started")
        else:
            self.logger.info("Job %s resumed by %s (delivery %d)", job_id, worker_id, entry.deliveries)

        recipients = [Recipient.from_value(r) for r in job["recipients"] or []]
        ceiling = int(job["max_retries"] or self.max_recipient_retries)
        scope = self._scope(job)

        pending = recipients
        passes = 0
        while pending:
            if passes:
                await asyncio.sleep(self.recipient_retry_delay)
            passes += 1
            retry_later: List[Recipient] = []
            for recipient in pending:
                log = await self.persistence.create_or_get_log(job_id, recipient, job["subject"])
                if LogStatus(log["status"]) in SETTLED_LOG_STATUSES:
                    continue
                if not await self.rate_limiter.try_acquire(scope):
                    return await self._pause_for_rate_limit(job, entry, worker_id, scope)
                decision = await self._deliver(job, recipient, log, ceiling)
                if decision.action == RecipientAction.RETRY:
                    retry_later.append(recipient)
                await self.queue.extend(entry.ref, worker_id)
            pending = retry_later

        return await self._finalize(job_id, entry, worker_id)

    def _scope(self, job: Mapping[str, Any]) -> str:
        if self.rate_limit_scope == "creator" and job.get("created_by"):
            return creator_scope(job["created_by"])
        return GLOBAL_SCOPE

    async def _render_for(self, job: Mapping[str, Any], recipient: Recipient) -> Tuple[str, str, Optional[str]]:
        """Return subject, html and text for one recipient."""
        subject, html, text = job["subject"], job["html_content"], job["text_content"]
        template_id = job.get("template_id")
        if not template_id or self.renderer is None:
            return subject, html, text
        variables = dict(job.get("template_data") or {})
        variables["user"] = {"id": recipient.id, "email": recipient.email, "name": recipient.name or recipient.email}
        try:
            rendered = await self.renderer.render_template(template_id, variables)
        except Exception as exc:
            self.logger.warning("Rendering %s for %s failed, using stored content: %s", template_id, recipient.id, exc)
            return subject, html, text
        return rendered.subject, rendered.html, rendered.text

    async def _send(self, job_id: str, recipient: Recipient, subject: str, html: str, text: Optional[str]) -> SendResult:
        try:
            async with asyncio.timeout(self.send_timeout):
                return await self.transport.send_email(
                    recipient.email, subject, html, text, idempotency_key=f"{job_id}:{recipient.id}"
                )
        except asyncio.TimeoutError:
            return SendResult(success=False, error=f"Send timed out after {self.send_timeout}s", retryable=True)
        except Exception as exc:
            self.logger.warning("Transport raised for %s/%s: %s", job_id, recipient.id, exc)
            return SendResult(success=False, error=str(exc) or exc.__class__.__name__, retryable=True)

    async def _deliver(
        self, job: Mapping[str, Any], recipient: Recipient, log: Mapping[str, Any], ceiling: int
    ) -> RecipientDecision:
        job_id = job["id"]
        subject, html, text = await self._render_for(job, recipient)
        result = await self._send(job_id, recipient, subject, html, text)
        decision = decide_recipient(outcome_from_result(result), int(log["retry_count"]), ceiling)
        provider = getattr(self.transport, "name", "default")

        if decision.action == RecipientAction.MARK_SENT:
            await self.persistence.record_recipient_sent(
                log["id"], job_id, message_id=result.message_id, retry_count=decision.retry_count
            )
            if self.metrics:
                self.metrics.inc_sent(provider)
        elif decision.action == RecipientAction.RETRY:
            await self.persistence.record_recipient_retry(
                log["id"], retry_count=decision.retry_count, error=decision.error or ""
            )
            self.logger.warning(
                "Temporary error for job %s recipient %s (attempt %d/%d): %s",
                job_id,
                recipient.id,
                decision.retry_count,
                ceiling,
                decision.error,
            )
            if self.metrics:
                self.metrics.inc_retried(provider)
        else:
            await self.persistence.record_recipient_failed(
                log["id"], job_id, retry_count=decision.retry_count, error=decision.error or ""
            )
            self.logger.error("Job %s recipient %s failed: %s", job_id, recipient.id, decision.error)
            if self.metrics:
                self.metrics.inc_failed(provider)
        return decision

    async def _pause_for_rate_limit(self, job: Mapping[str, Any], entry: QueueEntry, worker_id: str, scope: str) -> str:
        """Return the job to the queue until the exhausted window rolls over."""
        delay = max(1.0, await self.rate_limiter.retry_after(scope))
        await self.persistence.transition_job(job["id"], [JobStatus.PROCESSING], JobStatus.QUEUED)
        await self.queue.nack(entry.ref, delay, worker_id)
        self.logger.info("Job %s paused by rate limit (%s) for %.0fs", job["id"], scope, delay)
        if self.metrics:
            self.metrics.inc_rate_limited(scope)
        return RATE_LIMITED

    async def _finalize(self, job_id: str, entry: QueueEntry, worker_id: str) -> str:
        job = await self.persistence.get_job(job_id)
        if job is None:
            await self.queue.ack(entry.ref, worker_id)
            return SKIPPED
        if job["sent_count"] + job["failed_count"] < job["total_count"]:
            raise RuntimeError(
                f"Job {job_id} has unsettled recipients "
                f"({job['sent_count']} sent, {job['failed_count']} failed of {job['total_count']})"
            )
        now = time.time()
        if job["sent_count"] > 0:
            status, patch, action = JobStatus.COMPLETED, {"completed_ts": now}, AuditAction.JOB_COMPLETED
        else:
            status, action = JobStatus.FAILED, AuditAction.JOB_FAILED
            patch = {"failed_ts": now, "error": job["error"] or f"All {job['total_count']} recipient(s) failed"}
        moved = await self.persistence.transition_job(job_id, [JobStatus.PROCESSING], status, patch)
        await self.queue.ack(entry.ref, worker_id)
        if not moved:
            return SKIPPED
        self.logger.info(
            "Job %s %s: %d sent, %d failed", job_id, status.value, job["sent_count"], job["failed_count"]
        )
        self._audit(
            action,
            job,
            f"Email job {status.value.lower()}",
            {"sent_count": job["sent_count"], "failed_count": job["failed_count"]},
        )
        if self.metrics:
            self.metrics.inc_job(status.value)
        return COMPLETED if status == JobStatus.COMPLETED else FAILED

    async def _handle_job_error(self, job: Mapping[str, Any], entry: QueueEntry, worker_id: str, exc: Exception) -> str:
        """Record an unexpected processing error and hand the entry back with backoff."""
        job_id = job["id"]
        attempts = entry.failures + 1
        error = f"{exc.__class__.__name__}: {exc}"
        self.logger.exception("Job %s failed on attempt %d/%d: %s", job_id, attempts, self.max_job_attempts, error)
        try:
            if attempts >= self.max_job_attempts:
                return await self._abandon(job, entry, worker_id, f"Processing failed after {attempts} attempt(s): {error}")
            await self.persistence.update_job(job_id, {"error": error})
            delay = self.backoff_delay(entry.failures)
            await self.queue.nack(entry.ref, delay, worker_id, failed=True)
            self.logger.warning("Job %s will be retried in %.0fs", job_id, delay)
        except Exception as nested:
            # the lease expires and another worker picks the job up
            self.logger.error("Could not record failure of job %s: %s", job_id, nested)
        return RETRY

    async def _abandon(self, job: Mapping[str, Any], entry: QueueEntry, worker_id: str, error: str) -> str:
        """Settle every remaining recipient as failed and close the job."""
        job_id = job["id"]
        for recipient in (Recipient.from_value(r) for r in job["recipients"] or []):
            log = await self.persistence.create_or_get_log(job_id, recipient, job["subject"])
            if LogStatus(log["status"]) in SETTLED_LOG_STATUSES:
                continue
            await self.persistence.record_recipient_failed(
                log["id"], job_id, retry_count=int(log["retry_count"]), error=error
            )
        await self.persistence.update_job(job_id, {"error": error})
        await self.persistence.transition_job(job_id, [JobStatus.QUEUED], JobStatus.PROCESSING)
        return await self._finalize(job_id, entry, worker_id)

    def _audit(
        self,
        action: AuditAction,
        job: Mapping[str, Any],
        description: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        if self.audit is None:
            return
        self.audit.emit(
            build_audit_event(
                action,
                job_id=job["id"],
                user_id=job.get("created_by"),
                description=description,
                metadata=metadata,
            )
        )
