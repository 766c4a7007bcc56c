import asyncio
import time
import types

import pytest

from bulk_mail_service import worker as worker_module
from bulk_mail_service.audit import AuditTrail, CallableAuditSink
from bulk_mail_service.dispatcher import Dispatcher, TemplateRenderer
from bulk_mail_service.models import JobStatus, Recipient, RenderedTemplate, SendResult
from bulk_mail_service.persistence import Persistence
from bulk_mail_service.prometheus import MailMetrics
from bulk_mail_service.queue import SQLiteJobQueue
from bulk_mail_service.rate_limit import RateLimiter
from bulk_mail_service.transport import MailTransport
from bulk_mail_service.worker import WorkerPool


class DummyTransport(MailTransport):
    name = "dummy"

    def __init__(self, script=None, delay=0.0):
        self.calls = []
        self.script = {to: list(outcomes) for to, outcomes in (script or {}).items()}
        self.delay = delay

    async def send_email(self, to, subject, html, text=None, *, idempotency_key=None):
        self.calls.append({"to": to, "subject": subject, "html": html, "key": idempotency_key})
        if self.delay:
            await asyncio.sleep(self.delay)
        outcomes = self.script.get(to)
        if outcomes:
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return SendResult(success=True, message_id=f"<{idempotency_key}>")

    async def test_connection(self):
        return {"success": True}


class DummyRenderer(TemplateRenderer):
    async def render_template(self, template_id, variables):
        if template_id != "welcome":
            raise KeyError(template_id)
        name = (variables.get("user") or {}).get("name", "there")
        return RenderedTemplate(subject=f"Welcome {name}", html=f"<p>Hi {name}, {variables['league']} starts soon</p>")


class BrokenRateLimiter:
    async def try_acquire(self, scope="global"):
        raise RuntimeError("database is locked")

    async def retry_after(self, scope="global"):
        return 0.0


def _recipients(n):
    return [{"id": f"u{i}", "email": f"u{i}@example.com", "name": f"User {i}"} for i in range(n)]


def _request(n=3, **overrides):
    request = {"recipients": _recipients(n), "subject": "Season kickoff", "html_content": "<p>Hello</p>"}
    request.update(overrides)
    return request


async def _setup(
    tmp_path, transport=None, *, per_minute=None, per_hour=None, limiter=None, renderer=None, audit_sink=None, **options
):
    db_path = str(tmp_path / "bulk.db")
    persistence = Persistence(db_path)
    await persistence.init_db()
    queue = SQLiteJobQueue(db_path, poll_interval=0.01)
    await queue.connect()
    events = []

    async def record(event):
        events.append(event)

    audit = AuditTrail(audit_sink or CallableAuditSink(record))
    transport = transport or DummyTransport()
    limiter = limiter or RateLimiter(persistence, per_minute=per_minute, per_hour=per_hour)
    dispatcher = Dispatcher(persistence, queue, audit=audit, renderer=renderer, enqueue_retry_delay=0)
    options.setdefault("recipient_retry_delay", 0)
    pool = WorkerPool(
        persistence,
        queue,
        transport,
        limiter,
        audit=audit,
        metrics=MailMetrics(),
        renderer=renderer,
        worker_prefix="test",
        **options,
    )
    return types.SimpleNamespace(
        persistence=persistence,
        queue=queue,
        transport=transport,
        dispatcher=dispatcher,
        pool=pool,
        events=events,
        audit=audit,
    )


@pytest.mark.asyncio
async def test_job_is_sent_to_every_recipient(tmp_path):
    env = await _setup(tmp_path)
    admitted = await env.dispatcher.send_email(_request(3), "admin-1")
    job_id = admitted["job_id"]

    outcome = await env.pool.run_once()

    assert outcome == worker_module.COMPLETED
    job = await env.persistence.get_job(job_id)
    assert job["status"] == "COMPLETED"
    assert (job["sent_count"], job["failed_count"], job["total_count"]) == (3, 0, 3)
    assert job["started_ts"] is not None and job["completed_ts"] is not None
    assert [c["key"] for c in env.transport.calls] == [f"{job_id}:u0", f"{job_id}:u1", f"{job_id}:u2"]
    logs = await env.persistence.logs_by_recipient(job_id)
    assert {log["status"] for log in logs.values()} == {"SENT"}
    assert logs["u1"]["message_id"] == f"<{job_id}:u1>"
    assert (await env.queue.stats())["total"] == 0
    await env.audit.drain()
    assert [e["action"] for e in env.events] == [
        "BULK_EMAIL_STARTED",
        "BULK_EMAIL_PROCESSING",
        "BULK_EMAIL_COMPLETED",
    ]
    assert env.events[-1]["metadata"] == {"sent_count": 3, "failed_count": 0}


@pytest.mark.asyncio
async def test_transient_failures_are_retried_in_later_passes(tmp_path):
    busy = SendResult(success=False, error="421 try again later", retryable=True)
    transport = DummyTransport({"u1@example.com": [busy, busy]})
    env = await _setup(tmp_path, transport, max_recipient_retries=3)
    job_id = (await env.dispatcher.send_email(_request(3), "admin-1"))["job_id"]

    assert await env.pool.run_once() == worker_module.COMPLETED

    assert [c["to"] for c in transport.calls] == [
        "u0@example.com",
        "u1@example.com",
        "u2@example.com",
        "u1@example.com",
        "u1@example.com",
    ]
    job = await env.persistence.get_job(job_id)
    assert job["sent_count"] == 3
    log = await env.persistence.get_log(job_id, "u1")
    assert log["status"] == "SENT"
    assert log["retry_count"] == 2


@pytest.mark.asyncio
async def test_recipient_fails_after_max_retries(tmp_path):
    busy = SendResult(success=False, error="mailbox busy", retryable=True)
    transport = DummyTransport({"u1@example.com": [busy] * 5})
    env = await _setup(tmp_path, transport, max_recipient_retries=3)
    job_id = (await env.dispatcher.send_email(_request(2), "admin-1"))["job_id"]

    assert await env.pool.run_once() == worker_module.COMPLETED

    assert len([c for c in transport.calls if c["to"] == "u1@example.com"]) == 3
    log = await env.persistence.get_log(job_id, "u1")
    assert log["status"] == "FAILED"
    assert log["retry_count"] == 3
    assert log["error"] == "Max retries (3) exceeded: mailbox busy"
    job = await env.persistence.get_job(job_id)
    assert (job["status"], job["sent_count"], job["failed_count"]) == ("COMPLETED", 1, 1)


@pytest.mark.asyncio
async def test_job_max_retries_overrides_worker_default(tmp_path):
    busy = SendResult(success=False, error="busy", retryable=True)
    transport = DummyTransport({"u0@example.com": [busy] * 5})
    env = await _setup(tmp_path, transport, max_recipient_retries=5)
    job_id = (await env.dispatcher.send_email(_request(1, max_retries=1), "admin-1"))["job_id"]

    assert await env.pool.run_once() == worker_module.FAILED
    assert len(transport.calls) == 1
    assert (await env.persistence.get_log(job_id, "u0"))["retry_count"] == 1


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried(tmp_path):
    bounce = SendResult(success=False, error="550 user unknown (SMTP 550)", retryable=False)
    transport = DummyTransport({"u0@example.com": [bounce]})
    env = await _setup(tmp_path, transport)
    job_id = (await env.dispatcher.send_email(_request(2), "admin-1"))["job_id"]

    assert await env.pool.run_once() == worker_module.COMPLETED

    assert len(transport.calls) == 2
    log = await env.persistence.get_log(job_id, "u0")
    assert log["status"] == "FAILED"
    assert log["retry_count"] == 1
    assert log["error"].startswith("550 user unknown")


@pytest.mark.asyncio
async def test_job_fails_when_no_recipient_was_sent(tmp_path):
    bounce = SendResult(success=False, error="invalid address", retryable=False)
    transport = DummyTransport({"u0@example.com": [bounce], "u1@example.com": [bounce]})
    env = await _setup(tmp_path, transport)
    job_id = (await env.dispatcher.send_email(_request(2), "admin-1"))["job_id"]

    assert await env.pool.run_once() == worker_module.FAILED

    job = await env.persistence.get_job(job_id)
    assert job["status"] == "FAILED"
    assert job["failed_count"] == job["total_count"] == 2
    assert job["error"] == "All 2 recipient(s) failed"
    assert job["failed_ts"] is not None
    await env.audit.drain()
    assert env.events[-1]["action"] == "BULK_EMAIL_FAILED"


@pytest.mark.asyncio
async def test_transport_exceptions_and_timeouts_are_transient(tmp_path):
    transport = DummyTransport({"u0@example.com": [ConnectionResetError("reset by peer")]})
    env = await _setup(tmp_path, transport)
    job_id = (await env.dispatcher.send_email(_request(1), "admin-1"))["job_id"]

    assert await env.pool.run_once() == worker_module.COMPLETED
    assert len(transport.calls) == 2
    assert (await env.persistence.get_log(job_id, "u0"))["retry_count"] == 1

    slow_dir = tmp_path / "slow"
    slow_dir.mkdir()
    slow = DummyTransport(delay=1.0)
    env = await _setup(slow_dir, slow, send_timeout=0.05, max_recipient_retries=1)
    job_id = (await env.dispatcher.send_email(_request(1), "admin-1"))["job_id"]

    assert await env.pool.run_once() == worker_module.FAILED
    log = await env.persistence.get_log(job_id, "u0")
    assert "timed out" in log["error"]


@pytest.mark.asyncio
async def test_resumed_job_skips_recipients_already_sent(tmp_path):
    env = await _setup(tmp_path)
    job_id = (await env.dispatcher.send_email(_request(3), "admin-1"))["job_id"]
    job = await env.persistence.get_job(job_id)
    log = await env.persistence.create_or_get_log(job_id, Recipient("u0", "u0@example.com"), job["subject"])
    await env.persistence.record_recipient_sent(log["id"], job_id, message_id="<earlier>", retry_count=0)

    assert await env.pool.run_once() == worker_module.COMPLETED

    assert [c["to"] for c in env.transport.calls] == ["u1@example.com", "u2@example.com"]
    job = await env.persistence.get_job(job_id)
    assert job["sent_count"] == 3
    assert (await env.persistence.get_log(job_id, "u0"))["message_id"] == "<earlier>"


@pytest.mark.asyncio
async def test_rate_limit_pauses_job_and_defers_the_rest(tmp_path, monkeypatch):
    monkeypatch.setattr("bulk_mail_service.rate_limit.time.time", lambda: 1_000_000.0)
    env = await _setup(tmp_path, per_minute=10, per_hour=None)
    job_id = (await env.dispatcher.send_email(_request(200), "admin-1"))["job_id"]

    assert await env.pool.run_once() == worker_module.RATE_LIMITED

    assert len(env.transport.calls) == 10
    job = await env.persistence.get_job(job_id)
    assert job["status"] == "QUEUED"
    assert job["sent_count"] == 10
    assert await env.queue.stats() == {"total": 1, "ready": 0, "in_flight": 0, "delayed": 1}
    # the entry stays invisible until the minute window rolls over
    assert await env.pool.run_once() is None
    assert len(env.transport.calls) == 10


@pytest.mark.asyncio
async def test_creator_scope_limits_each_creator_separately(tmp_path, monkeypatch):
    monkeypatch.setattr("bulk_mail_service.rate_limit.time.time", lambda: 1_000_000.0)
    env = await _setup(tmp_path, per_minute=1, per_hour=None, rate_limit_scope="creator")
    alice_job = (await env.dispatcher.send_email(_request(2), "alice"))["job_id"]
    bob_job = (await env.dispatcher.send_email(_request(1), "bob"))["job_id"]

    assert await env.pool.run_once() == worker_module.RATE_LIMITED
    assert await env.pool.run_once() == worker_module.COMPLETED

    assert (await env.persistence.get_job(alice_job))["sent_count"] == 1
    assert (await env.persistence.get_job(bob_job))["status"] == "COMPLETED"


@pytest.mark.asyncio
async def test_cancelled_job_is_never_sent(tmp_path):
    env = await _setup(tmp_path)
    job_id = (await env.dispatcher.send_email(_request(2), "admin-1"))["job_id"]

    await env.dispatcher.cancel_job(job_id, "admin-1")

    assert await env.pool.run_once() is None
    assert env.transport.calls == []
    assert (await env.persistence.get_job(job_id))["status"] == "CANCELLED"


@pytest.mark.asyncio
async def test_stale_entry_of_cancelled_job_is_acked(tmp_path):
    env = await _setup(tmp_path)
    job_id = (await env.dispatcher.send_email(_request(2), "admin-1"))["job_id"]
    # cancelled without removing the queue entry
    await env.persistence.transition_job(job_id, [JobStatus.QUEUED], JobStatus.CANCELLED)

    assert await env.pool.run_once() == worker_module.CANCELLED
    assert env.transport.calls == []
    assert (await env.queue.stats())["total"] == 0


@pytest.mark.asyncio
async def test_cancel_request_is_honoured_at_next_dequeue(tmp_path):
    env = await _setup(tmp_path)
    job_id = (await env.dispatcher.send_email(_request(2), "admin-1"))["job_id"]
    entry = await env.queue.dequeue("other-worker", timeout=0)
    await env.persistence.transition_job(job_id, [JobStatus.QUEUED], JobStatus.PROCESSING)

    result = await env.dispatcher.cancel_job(job_id, "admin-1")
    assert result == {"job_id": job_id, "status": "PROCESSING", "cancel_requested": True}

    await env.queue.nack(entry.ref, 0, "other-worker")
    assert await env.pool.run_once() == worker_module.CANCELLED

    job = await env.persistence.get_job(job_id)
    assert job["status"] == "CANCELLED"
    assert job["cancel_requested"] is False
    assert env.transport.calls == []
    assert (await env.queue.stats())["total"] == 0
    await env.audit.drain()
    assert env.events[-1]["action"] == "BULK_EMAIL_CANCELLED"


class CancelDuringSendTransport(DummyTransport):
    """Cancels the job from inside the first send."""

    def __init__(self):
        super().__init__()
        self.cancel = None
        self.cancel_result = None

    async def send_email(self, to, subject, html, text=None, *, idempotency_key=None):
        if self.cancel is not None and self.cancel_result is None:
            self.cancel_result = await self.cancel()
        return await super().send_email(to, subject, html, text, idempotency_key=idempotency_key)


@pytest.mark.asyncio
async def test_cancel_during_processing_does_not_abort_recipient_loop(tmp_path):
    transport = CancelDuringSendTransport()
    env = await _setup(tmp_path, transport)
    job_id = (await env.dispatcher.send_email(_request(3), "admin-1"))["job_id"]
    transport.cancel = lambda: env.dispatcher.cancel_job(job_id, "admin-2")

    assert await env.pool.run_once() == worker_module.COMPLETED

    assert transport.cancel_result == {"job_id": job_id, "status": "PROCESSING", "cancel_requested": True}
    assert len(transport.calls) == 3
    job = await env.persistence.get_job(job_id)
    assert job["status"] == "COMPLETED"
    assert job["sent_count"] == 3
    assert job["cancel_requested"] is True
    assert (await env.queue.stats())["total"] == 0


@pytest.mark.asyncio
async def test_slow_audit_sink_does_not_delay_processing(tmp_path):
    released = asyncio.Event()
    written = []

    async def slow_write(event):
        await released.wait()
        written.append(event["action"])

    env = await _setup(tmp_path, audit_sink=CallableAuditSink(slow_write))
    job_id = (await env.dispatcher.send_email(_request(2), "admin-1"))["job_id"]

    started = time.monotonic()
    outcome = await asyncio.wait_for(env.pool.run_once(), timeout=5)
    elapsed = time.monotonic() - started

    assert outcome == worker_module.COMPLETED
    assert elapsed < 2.0
    assert (await env.persistence.get_job(job_id))["status"] == "COMPLETED"
    assert written == []
    assert env.audit.pending == 3

    released.set()
    await env.audit.drain()
    assert sorted(written) == ["BULK_EMAIL_COMPLETED", "BULK_EMAIL_PROCESSING", "BULK_EMAIL_STARTED"]
    assert env.audit.pending == 0


@pytest.mark.asyncio
async def test_entry_for_missing_job_is_dropped(tmp_path):
    env = await _setup(tmp_path)
    await env.queue.enqueue("does-not-exist", 0)

    assert await env.pool.run_once() == worker_module.SKIPPED
    assert (await env.queue.stats())["total"] == 0


@pytest.mark.asyncio
async def test_processing_error_is_retried_with_backoff(tmp_path):
    env = await _setup(tmp_path, limiter=BrokenRateLimiter(), backoff_base=5, max_job_attempts=3)
    job_id = (await env.dispatcher.send_email(_request(2), "admin-1"))["job_id"]

    assert await env.pool.run_once() == worker_module.RETRY

    job = await env.persistence.get_job(job_id)
    assert job["error"] == "RuntimeError: database is locked"
    stats = await env.queue.stats()
    assert (stats["total"], stats["delayed"]) == (1, 1)
    assert await env.pool.run_once() is None


@pytest.mark.asyncio
async def test_job_is_failed_after_max_attempts(tmp_path):
    env = await _setup(tmp_path, limiter=BrokenRateLimiter(), backoff_base=0, max_job_attempts=2)
    job_id = (await env.dispatcher.send_email(_request(2), "admin-1"))["job_id"]

    assert await env.pool.run_once() == worker_module.RETRY
    assert await env.pool.run_once() == worker_module.FAILED

    job = await env.persistence.get_job(job_id)
    assert job["status"] == "FAILED"
    assert job["failed_count"] == job["total_count"] == 2
    assert job["error"].startswith("Processing failed after 2 attempt(s)")
    assert (await env.queue.stats())["total"] == 0
    assert {log["status"] for log in await env.persistence.list_logs(job_id)} == {"FAILED"}


def test_backoff_delay_is_exponential_and_capped():
    pool = WorkerPool(None, None, DummyTransport(), None, backoff_base=5, backoff_cap=300, worker_prefix="t")
    assert [pool.backoff_delay(n) for n in (0, 1, 2, 3)] == [5, 10, 20, 40]
    assert pool.backoff_delay(10) == 300


@pytest.mark.asyncio
async def test_template_is_rendered_per_recipient(tmp_path):
    env = await _setup(tmp_path, renderer=DummyRenderer())
    request = {"recipients": _recipients(2), "template_id": "welcome", "template_data": {"league": "North"}}
    job_id = (await env.dispatcher.send_email(request, "admin-1"))["job_id"]
    job = await env.persistence.get_job(job_id)
    assert job["subject"] == "Welcome there"

    assert await env.pool.run_once() == worker_module.COMPLETED

    assert [c["subject"] for c in env.transport.calls] == ["Welcome User 0", "Welcome User 1"]
    assert env.transport.calls[1]["html"] == "<p>Hi User 1, North starts soon</p>"


@pytest.mark.asyncio
async def test_worker_pool_processes_jobs_in_background(tmp_path):
    env = await _setup(tmp_path, concurrency=2, poll_timeout=0.1)
    first = (await env.dispatcher.send_email(_request(2), "admin-1"))["job_id"]
    second = (await env.dispatcher.send_email(_request(3), "admin-2"))["job_id"]

    await env.pool.start()
    try:
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            statuses = {(await env.persistence.get_job(j))["status"] for j in (first, second)}
            if statuses == {"COMPLETED"}:
                break
            await asyncio.sleep(0.05)
        assert env.pool.running
    finally:
        await env.pool.stop(grace=2)

    assert statuses == {"COMPLETED"}
    assert len(env.transport.calls) == 5
    assert not env.pool.running
