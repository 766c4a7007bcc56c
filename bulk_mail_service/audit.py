"""Audit sinks receiving job lifecycle events."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Set, Union

import aiohttp

from .logger import get_logger
from .models import AuditAction

JsonDict = Dict[str, Any]
AuditCallable = Callable[[JsonDict], Awaitable[None]]


def build_audit_event(
    action: AuditAction,
    *,
    job_id: str,
    user_id: Optional[str],
    description: str,
    metadata: Optional[Mapping[str, Any]] = None,
) -> JsonDict:
    return {
        "action": action.value,
        "user_id": user_id,
        "job_id": job_id,
        "description": description,
        "metadata": dict(metadata or {}),
        "timestamp": time.time(),
    }


class AuditSink:
    """Destination of audit events."""

    async def write(self, event: JsonDict) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class LoggingAuditSink(AuditSink):
    """Write audit events to the application log."""

    def __init__(self, logger=None):
        self.logger = logger or get_logger("BulkMailAudit")

    async def write(self, event: JsonDict) -> None:
        self.logger.info(
            "AUDIT %s job=%s user=%s: %s",
            event.get("action"),
            event.get("job_id"),
            event.get("user_id"),
            event.get("description"),
        )


class CallableAuditSink(AuditSink):
    """Forward audit events to an awaitable callable (used by embedders and tests)."""

    def __init__(self, callback: AuditCallable):
        self.callback = callback

    async def write(self, event: JsonDict) -> None:
        await self.callback(event)


class HTTPAuditSink(AuditSink):
    """POST audit events as JSON to an external audit service."""

    def __init__(
        self,
        url: str,
        *,
        token: Optional[str] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self.url = url
        self.token = token
        self.user = user
        self.password = password
        self.timeout = timeout

    async def write(self, event: JsonDict) -> None:
        headers = {}
        auth = None
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        elif self.user:
            auth = aiohttp.BasicAuth(self.user, self.password or "")
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
            async with session.post(self.url, json=event, headers=headers, auth=auth) as resp:
                resp.raise_for_status()


def create_audit_sink(settings: Mapping[str, Any]) -> AuditSink:
    """Return an HTTP sink when an audit URL is configured, else a logging sink."""
    url = settings.get("audit_url")
    if url:
        return HTTPAuditSink(
            str(url),
            token=settings.get("audit_token"),
            user=settings.get("audit_user"),
            password=settings.get("audit_password"),
        )
    return LoggingAuditSink()


async def emit_audit(sink: Optional[AuditSink], event: JsonDict, logger=None) -> None:
    """Write ``event`` to ``sink``; sink errors are logged and never raised."""
    if sink is None:
        return
    try:
        await sink.write(event)
    except Exception as exc:
        (logger or get_logger("BulkMailAudit")).warning(
            "Failed to write audit event %s for job %s: %s", event.get("action"), event.get("job_id"), exc
        )


class AuditTrail:
    """Write audit events in the background.

    :meth:`emit` schedules the write and returns at once, so admission and
    job processing never wait on the sink. Pending writes are tracked and
    flushed by :meth:`drain` (called from :meth:`close` on shutdown).
    """

    def __init__(self, sink: AuditSink, logger=None):
        self.sink = sink
        self.logger = logger or get_logger("BulkMailAudit")
        self._tasks: Set[asyncio.Task] = set()

    @classmethod
    def wrap(cls, audit: Union["AuditTrail", AuditSink, None], logger=None) -> Optional["AuditTrail"]:
        """Return ``audit`` as a trail, wrapping a bare sink."""
        if audit is None or isinstance(audit, AuditTrail):
            return audit
        return cls(audit, logger)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def emit(self, event: JsonDict) -> None:
        """Schedule ``event`` for writing without waiting for the sink."""
        task = asyncio.create_task(
            emit_audit(self.sink, event, self.logger), name=f"audit-{event.get('action')}-{event.get('job_id')}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._collect)

    def _collect(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.warning("Audit write task failed: %s", exc)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for pending writes; whatever is left after ``timeout`` is cancelled."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        _done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            self.logger.warning("Dropped %d audit event(s) still pending at shutdown", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)

    async def close(self, timeout: Optional[float] = 10.0) -> None:
        await self.drain(timeout)
        await self.sink.close()
