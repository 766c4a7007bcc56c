from contextlib import asynccontextmanager

import pytest
from fastapi.testclient import TestClient

from bulk_mail_service.api import ACTOR_HEADER_NAME, API_TOKEN_HEADER_NAME, create_app
from bulk_mail_service.core import BulkMailCore
from bulk_mail_service.models import SendResult
from bulk_mail_service.transport import MailTransport


API_TOKEN = "secret-token"


class DummyTransport(MailTransport):
    name = "dummy"

    async def send_email(self, to, subject, html, text=None, *, idempotency_key=None):
        return SendResult(success=True, message_id=f"<{idempotency_key}>")

    async def test_connection(self):
        return {"success": True}


def _build_client(tmp_path, api_token=API_TOKEN):
    core = BulkMailCore(db_path=str(tmp_path / "api.db"), transport=DummyTransport(), roles=())

    @asynccontextmanager
    async def lifespan(app):
        await core.init()
        try:
            yield
        finally:
            await core.stop()

    return TestClient(create_app(core, api_token=api_token, lifespan=lifespan))


@pytest.fixture
def client(tmp_path):
    with _build_client(tmp_path) as client:
        client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})
        yield client


def _send_payload(n=1):
    return {
        "recipients": [{"id": f"u{i}", "email": f"u{i}@example.com", "name": f"User {i}"} for i in range(n)],
        "subject": "Training moved",
        "htmlContent": "<p>See you at 6pm</p>",
    }


def test_requires_token(tmp_path):
    with _build_client(tmp_path) as client:
        assert client.get("/status").status_code == 401
        response = client.get("/status", headers={API_TOKEN_HEADER_NAME: "wrong"})
        assert response.status_code == 401
        response = client.get("/status", headers={API_TOKEN_HEADER_NAME: API_TOKEN})
        assert response.status_code == 200
        assert response.json() == {"ok": True}


def test_no_token_configured_allows_requests(tmp_path):
    with _build_client(tmp_path, api_token=None) as client:
        assert client.get("/status").status_code == 200


def test_returns_500_when_core_missing(tmp_path):
    with _build_client(tmp_path) as client:
        client.app.state.core = None
        response = client.get("/emails/queue", headers={API_TOKEN_HEADER_NAME: API_TOKEN})
        assert response.status_code == 500
        assert response.json()["detail"] == "Service not initialized"


def test_send_email_returns_job_id(client):
    response = client.post("/emails/send", json=_send_payload(2), headers={ACTOR_HEADER_NAME: "admin-7"})

    assert response.status_code == 202
    body = response.json()
    assert body["ok"] is True
    assert body["status"] == "QUEUED"
    assert body["estimated_recipients"] == 2

    job = client.get(f"/emails/jobs/{body['job_id']}").json()["job"]
    assert job["created_by"] == "admin-7"
    assert job["html_content"] == "<p>See you at 6pm</p>"
    assert job["logs"] == []


def test_send_email_rejects_bad_requests(client):
    response = client.post("/emails/send", json={**_send_payload(), "recipients": []})
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "no_recipients"

    response = client.post("/emails/send", json={"subject": "x", "htmlContent": "<p>x</p>"})
    assert response.status_code == 422

    response = client.post("/emails/send", json={**_send_payload(), "maxRetries": 0})
    assert response.status_code == 422


def test_bulk_email_without_resolver_is_rejected(client):
    payload = {"selector": {"role": "PLAYER"}, "subject": "Hi", "html_content": "<p>x</p>"}

    response = client.post("/emails/bulk", json=payload)

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "recipient_resolution_failed"


def test_bulk_email_with_recipients(client):
    response = client.post("/emails/bulk", json={**_send_payload(3), "priority": "low"})

    assert response.status_code == 202
    job = client.get(f"/emails/jobs/{response.json()['job_id']}", params={"include_logs": False}).json()["job"]
    assert job["recipient_type"] == "CUSTOM_LIST"
    assert job["priority"] == 3
    assert "logs" not in job


def test_job_status_and_cancel(client):
    job_id = client.post("/emails/send", json=_send_payload()).json()["job_id"]

    status = client.get(f"/emails/jobs/{job_id}/status").json()
    assert status["status"] == "QUEUED"
    assert (status["sent_count"], status["failed_count"], status["total_count"]) == (0, 0, 1)

    response = client.post(f"/emails/jobs/{job_id}/cancel")
    assert response.status_code == 200
    assert response.json()["status"] == "CANCELLED"
    assert client.post(f"/emails/jobs/{job_id}/cancel").status_code == 409

    assert client.get("/emails/jobs/missing/status").status_code == 404
    assert client.get("/emails/jobs/missing").status_code == 404
    assert client.post("/emails/jobs/missing/cancel").status_code == 404


def test_list_jobs_and_analytics(client):
    client.post("/emails/send", json=_send_payload())
    scheduled = {**_send_payload(), "scheduledFor": "2999-01-01T00:00:00Z"}
    assert client.post("/emails/send", json=scheduled).json()["status"] == "SCHEDULED"

    jobs = client.get("/emails/jobs").json()["jobs"]
    assert len(jobs) == 2
    queued = client.get("/emails/jobs", params={"status": "QUEUED"}).json()["jobs"]
    assert [job["status"] for job in queued] == ["QUEUED"]
    assert client.get("/emails/jobs", params={"status": "DONE"}).status_code == 400

    analytics = client.get("/emails/analytics").json()
    assert analytics["total_jobs"] == 2
    assert analytics["success_rate"] == 0.0


def test_queue_overview_and_connection(client):
    client.post("/emails/send", json=_send_payload())

    overview = client.get("/emails/queue").json()
    assert overview["queue"]["total"] == 1
    assert overview["jobs"]["QUEUED"] == 1

    assert client.get("/emails/test-connection").json() == {"ok": True}


def test_metrics_endpoint(client):
    client.post("/emails/send", json=_send_payload())

    response = client.get("/metrics")

    assert response.status_code == 200
    assert 'bms_jobs_admitted_total{status="QUEUED"} 1.0' in response.text
