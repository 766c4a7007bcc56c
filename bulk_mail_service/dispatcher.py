"""Admission of send requests: validation, recipient resolution, job creation and enqueue.

The dispatcher never sends mail itself. It records the intent in the Job
Store, hands a reference to the queue and returns the job id straight
away; everything after that is visible through polling and audit events.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from .audit import AuditSink, AuditTrail, build_audit_event
from .logger import get_logger
from .models import (
    CANCELLABLE_JOB_STATUSES,
    DEFAULT_PRIORITY,
    AuditAction,
    JobStatus,
    Recipient,
    RecipientType,
    RenderedTemplate,
    dedupe_recipients,
    normalise_priority,
)
from .persistence import Persistence
from .prometheus import MailMetrics
from .queue import SQLiteJobQueue
from .transport import MailTransport

SELECTOR_KEYS = ("role", "status", "cohort_id", "league_id")


# ------------------------------------------------------------------- errors
class AdmissionError(ValueError):
    """Raised when a request is rejected before any job exists."""

    code = "invalid_request"


class ValidationError(AdmissionError):
    code = "validation_error"


class NoRecipientsError(AdmissionError):
    code = "no_recipients"


class RecipientResolutionError(AdmissionError):
    code = "recipient_resolution_failed"


class TemplateRenderError(AdmissionError):
    code = "template_error"


class EnqueueError(RuntimeError):
    """Raised when a created job could not be handed to the queue."""

    code = "enqueue_failed"

    def __init__(self, job_id: str, message: str):
        super().__init__(message)
        self.job_id = job_id


class JobNotFoundError(LookupError):
    code = "job_not_found"


class CancelError(RuntimeError):
    code = "not_cancellable"


# ------------------------------------------------------------ collaborators
class RecipientResolver:
    """Turns a selector (role/status/cohort/league filters) into recipients."""

    async def resolve_recipients(self, selector: Mapping[str, Any]) -> List[Recipient]:
        raise NotImplementedError


class TemplateRenderer:
    """Renders a stored template; raises ``KeyError`` for unknown ids."""

    async def render_template(self, template_id: str, variables: Mapping[str, Any]) -> RenderedTemplate:
        raise NotImplementedError


def parse_scheduled_for(value: Any) -> Optional[float]:
    """Return ``value`` (datetime, epoch seconds or ISO-8601 string) as epoch seconds."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError("scheduled_for must be a timestamp")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValidationError(f"Invalid scheduled_for: {value!r}") from exc
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    raise ValidationError("scheduled_for must be a timestamp")


class Dispatcher:
    """Validate send requests and turn them into queued (or scheduled) jobs."""

    def __init__(
        self,
        persistence: Persistence,
        queue: SQLiteJobQueue,
        *,
        transport: Optional[MailTransport] = None,
        resolver: Optional[RecipientResolver] = None,
        renderer: Optional[TemplateRenderer] = None,
        audit: Union[AuditTrail, AuditSink, None] = None,
        metrics: Optional[MailMetrics] = None,
        default_priority: int = DEFAULT_PRIORITY,
        enqueue_attempts: int = 3,
        enqueue_retry_delay: float = 0.2,
        logger=None,
    ):
        self.persistence = persistence
        self.queue = queue
        self.transport = transport
        self.resolver = resolver
        self.renderer = renderer
        self.metrics = metrics
        self.default_priority = normalise_priority(default_priority)
        self.enqueue_attempts = max(1, int(enqueue_attempts))
        self.enqueue_retry_delay = max(0.0, float(enqueue_retry_delay))
        self.logger = logger or get_logger("BulkMailDispatcher")
        self.audit = AuditTrail.wrap(audit, self.logger)

    # --------------------------------------------------------------- admission
    async def send_email(self, request: Mapping[str, Any], actor_id: Optional[str]) -> Dict[str, Any]:
        """Queue a message for an explicit recipient list."""
        recipients = self._parse_recipients(request.get("recipients"))
        if not recipients:
            raise NoRecipientsError("No recipients specified")
        recipient_type = RecipientType.INDIVIDUAL if len(recipients) == 1 else RecipientType.CUSTOM_LIST
        prepared = await self._prepare(request)
        return await self._admit(prepared, request, actor_id, recipients, recipient_type, selector=None)

    async def send_bulk_email(self, request: Mapping[str, Any], actor_id: Optional[str]) -> Dict[str, Any]:
        """Queue a message for an explicit list or for the users matched by a selector."""
        recipients = self._parse_recipients(request.get("recipients"))
        if recipients:
            prepared = await self._prepare(request)
            return await self._admit(prepared, request, actor_id, recipients, RecipientType.CUSTOM_LIST, selector=None)

        selector = self._parse_selector(request.get("selector"))
        if not selector:
            raise ValidationError("Either recipients or a selector is required")
        recipient_type = self._recipient_type(request.get("recipient_type"), selector)
        # the request must be valid before the resolver is called
        prepared = await self._prepare(request)
        if self.resolver is None:
            raise RecipientResolutionError("Recipient resolution is not configured")
        try:
            resolved = await self.resolver.resolve_recipients(selector)
        except Exception as exc:
            self.logger.warning("Recipient resolution failed for %s: %s", selector, exc)
            raise RecipientResolutionError(f"Failed to resolve recipients: {exc}") from exc
        try:
            recipients = dedupe_recipients([Recipient.from_value(r) for r in resolved or []])
        except ValueError as exc:
            raise RecipientResolutionError(f"Resolver returned an invalid recipient: {exc}") from exc
        if not recipients:
            raise NoRecipientsError("No recipients found matching the criteria")
        return await self._admit(prepared, request, actor_id, recipients, recipient_type, selector=selector)

    @staticmethod
    def _parse_recipients(value: Any) -> List[Recipient]:
        if value is None:
            return []
        if not isinstance(value, (list, tuple)):
            raise ValidationError("recipients must be a list")
        try:
            return dedupe_recipients([Recipient.from_value(item) for item in value])
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

    @staticmethod
    def _parse_selector(value: Any) -> Dict[str, Any]:
        if value is None:
            return {}
        if not isinstance(value, Mapping):
            raise ValidationError("selector must be an object")
        unknown = set(value) - set(SELECTOR_KEYS) - {"all"}
        if unknown:
            raise ValidationError(f"Unknown selector field(s): {', '.join(sorted(unknown))}")
        return {key: val for key, val in value.items() if val not in (None, "", False)}

    @staticmethod
    def _recipient_type(value: Any, selector: Mapping[str, Any]) -> RecipientType:
        if value:
            try:
                return RecipientType(str(value).upper())
            except ValueError as exc:
                raise ValidationError(f"Unknown recipient type: {value}") from exc
        if "league_id" in selector:
            return RecipientType.LEAGUE_BASED
        if "cohort_id" in selector:
            return RecipientType.COHORT_BASED
        if "role" in selector:
            return RecipientType.ROLE_BASED
        return RecipientType.ALL_USERS

    async def _content(self, request: Mapping[str, Any]) -> RenderedTemplate:
        """Return the subject and bodies, rendering the template when one is named."""
        template_id = request.get("template_id")
        if template_id:
            if self.renderer is None:
                raise TemplateRenderError("Template rendering is not configured")
            try:
                return await self.renderer.render_template(str(template_id), dict(request.get("template_data") or {}))
            except KeyError as exc:
                raise TemplateRenderError(f"Template not found: {template_id}") from exc
            except Exception as exc:
                raise TemplateRenderError(f"Failed to render template {template_id}: {exc}") from exc
        subject = (request.get("subject") or "").strip()
        html = request.get("html_content") or ""
        if not subject:
            raise ValidationError("subject is required")
        if not html.strip():
            raise ValidationError("html_content is required")
        return RenderedTemplate(subject=subject, html=html, text=request.get("text_content") or None)

    @staticmethod
    def _max_retries(value: Any) -> Optional[int]:
        if value is None:
            return None
        try:
            parsed = int(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError("max_retries must be an integer") from exc
        if parsed < 1:
            raise ValidationError("max_retries must be at least 1")
        return parsed

    async def _prepare(self, request: Mapping[str, Any]) -> Tuple[RenderedTemplate, Optional[float], Optional[int], int]:
        """Validate everything in the request that does not depend on recipients."""
        content = await self._content(request)
        scheduled_ts = parse_scheduled_for(request.get("scheduled_for"))
        max_retries = self._max_retries(request.get("max_retries"))
        priority = normalise_priority(request.get("priority"), self.default_priority)
        return content, scheduled_ts, max_retries, priority

    async def _admit(
        self,
        prepared: Tuple[RenderedTemplate, Optional[float], Optional[int], int],
        request: Mapping[str, Any],
        actor_id: Optional[str],
        recipients: List[Recipient],
        recipient_type: RecipientType,
        *,
        selector: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        content, scheduled_ts, max_retries, priority = prepared
        now = time.time()
        status = JobStatus.SCHEDULED if scheduled_ts is not None and scheduled_ts > now else JobStatus.QUEUED

        job = await self.persistence.create_job(
            {
                "template_id": request.get("template_id"),
                "template_data": request.get("template_data"),
                "subject": content.subject,
                "html_content": content.html,
                "text_content": content.text,
                "recipient_type": recipient_type,
                "recipients": recipients,
                "selector": selector,
                "status": status,
                "priority": priority,
                "scheduled_ts": scheduled_ts,
                "max_retries": max_retries,
                "created_by": actor_id,
            }
        )
        job_id = job["id"]
        if status == JobStatus.QUEUED:
            await self._enqueue_or_fail(job_id, priority)
            self.logger.info("Job %s queued for %d recipient(s)", job_id, len(recipients))
        else:
            self.logger.info("Job %s scheduled at %s for %d recipient(s)", job_id, scheduled_ts, len(recipients))
        if self.metrics:
            self.metrics.inc_admitted(status.value)

        self._audit(
            AuditAction.JOB_CREATED,
            job_id,
            actor_id,
            f"Email job created for {len(recipients)} recipient(s)",
            {
                "recipient_type": recipient_type.value,
                "recipient_count": len(recipients),
                "subject": content.subject,
                "template_id": request.get("template_id"),
                "status": status.value,
            },
        )
        return {"job_id": job_id, "estimated_recipients": len(recipients), "status": status.value}

    async def _enqueue_or_fail(self, job_id: str, priority: int) -> str:
        """Enqueue a freshly created job, marking it FAILED when the queue keeps refusing."""
        last_error: Optional[Exception] = None
        for attempt in range(1, self.enqueue_attempts + 1):
            try:
                ref = await self.queue.enqueue(job_id, priority)
            except Exception as exc:
                last_error = exc
                self.logger.warning(
                    "Enqueue of job %s failed (attempt %d/%d): %s", job_id, attempt, self.enqueue_attempts, exc
                )
                if attempt < self.enqueue_attempts:
                    await asyncio.sleep(self.enqueue_retry_delay * attempt)
                continue
            await self.persistence.update_job(job_id, {"queue_ref": ref})
            return ref

        error = f"Failed to enqueue job: {last_error}"
        await self.persistence.transition_job(
            job_id, [JobStatus.QUEUED], JobStatus.FAILED, {"error": error, "failed_ts": time.time()}
        )
        self.logger.error("Job %s marked FAILED: %s", job_id, error)
        raise EnqueueError(job_id, error)

    # ------------------------------------------------------------ cancellation
    async def cancel_job(self, job_id: str, actor_id: Optional[str]) -> Dict[str, Any]:
        """Cancel a queued or scheduled job.

        A job already being processed only gets ``cancel_requested``; the
        flag is honoured the next time a worker dequeues it.
        """
        for _ in range(3):
            job = await self.persistence.get_job(job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            status = JobStatus(job["status"])
            if status in CANCELLABLE_JOB_STATUSES:
                if await self.persistence.transition_job(job_id, CANCELLABLE_JOB_STATUSES, JobStatus.CANCELLED):
                    await self._drop_queue_entry(job)
                    self.logger.info("Job %s cancelled by %s", job_id, actor_id)
                    self._audit(
                        AuditAction.JOB_CANCELLED,
                        job_id,
                        actor_id,
                        "Email job cancelled by user",
                        {"previous_status": status.value},
                    )
                    return {"job_id": job_id, "status": JobStatus.CANCELLED.value, "cancel_requested": False}
            elif status == JobStatus.PROCESSING:
                if await self.persistence.transition_job(
                    job_id, [JobStatus.PROCESSING], JobStatus.PROCESSING, {"cancel_requested": True}
                ):
                    self.logger.info("Cancel requested for in-flight job %s by %s", job_id, actor_id)
                    return {"job_id": job_id, "status": JobStatus.PROCESSING.value, "cancel_requested": True}
            else:
                raise CancelError(f"Job {job_id} is already {status.value}")
        # The job kept changing status under us
        raise CancelError(f"Job {job_id} could not be cancelled, try again")

    def _audit(
        self,
        action: AuditAction,
        job_id: str,
        actor_id: Optional[str],
        description: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        if self.audit is None:
            return
        self.audit.emit(
            build_audit_event(action, job_id=job_id, user_id=actor_id, description=description, metadata=metadata)
        )

    async def _drop_queue_entry(self, job: Mapping[str, Any]) -> None:
        ref = job.get("queue_ref")
        if not ref:
            return
        try:
            await self.queue.cancel(ref)
        except Exception as exc:
            # a leftover entry is acked by the worker once it sees CANCELLED
            self.logger.warning("Could not remove queue entry %s: %s", ref, exc)

    # ----------------------------------------------------------------- queries
    async def get_job_status(self, job_id: str) -> Dict[str, Any]:
        job = await self.persistence.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return {
            "job_id": job_id,
            "status": job["status"],
            "sent_count": job["sent_count"],
            "failed_count": job["failed_count"],
            "total_count": job["total_count"],
            "cancel_requested": job["cancel_requested"],
            "error": job["error"],
        }

    async def get_job(self, job_id: str, include_logs: bool = True) -> Dict[str, Any]:
        job = await self.persistence.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        if include_logs:
            job["logs"] = await self.persistence.list_logs(job_id)
        return job

    async def list_jobs(
        self,
        *,
        status: Optional[str] = None,
        created_by: Optional[str] = None,
        template_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        if status:
            try:
                status = JobStatus(str(status).upper())
            except ValueError as exc:
                raise ValidationError(f"Unknown job status: {status}") from exc
        return await self.persistence.list_jobs(
            status=status,
            created_by=created_by,
            template_id=template_id,
            limit=max(1, min(int(limit), 500)),
            offset=max(0, int(offset)),
        )

    async def get_analytics(
        self,
        *,
        start: Optional[Any] = None,
        end: Optional[Any] = None,
        template_id: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Return job totals and the completed share (in percent)."""
        filters = {
            "created_after": parse_scheduled_for(start),
            "created_before": parse_scheduled_for(end),
            "template_id": template_id,
            "created_by": created_by,
        }
        total = await self.persistence.count_jobs(**filters)
        completed = await self.persistence.count_jobs(status=JobStatus.COMPLETED, **filters)
        failed = await self.persistence.count_jobs(status=JobStatus.FAILED, **filters)
        return {
            "total_jobs": total,
            "completed_jobs": completed,
            "failed_jobs": failed,
            "success_rate": round(completed / total * 100, 2) if total else 0.0,
        }

    async def test_connection(self) -> Dict[str, Any]:
        if self.transport is None:
            return {"success": False, "error": "No mail provider configured"}
        try:
            return await self.transport.test_connection()
        except Exception as exc:
            return {"success": False, "error": str(exc) or "Failed to test email provider connection"}
