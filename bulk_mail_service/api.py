"""
FastAPI application factory and HTTP schemas for the bulk mail service.

The module exposes a `create_app` function that builds the REST API used to
submit email jobs and poll their progress. Authentication is enforced
through a configurable API token carried in the ``X-API-Token`` header;
the caller identity used for audit attribution travels in ``X-Actor-Id``.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncContextManager, Callable, Dict, List, Literal, Optional, Union

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .core import ROLE_SCHEDULER, ROLE_WORKERS, BulkMailCore
from .dispatcher import AdmissionError, CancelError, EnqueueError, JobNotFoundError

API_TOKEN_HEADER_NAME = "X-API-Token"
ACTOR_HEADER_NAME = "X-Actor-Id"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)

PriorityValue = Union[int, Literal["immediate", "high", "medium", "low"]]
RecipientTypeValue = Literal["INDIVIDUAL", "ROLE_BASED", "COHORT_BASED", "LEAGUE_BASED", "ALL_USERS", "CUSTOM_LIST"]


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token is configured through :func:`create_app` the dependency
    is effectively bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


def get_core(request: Request) -> BulkMailCore:
    core = getattr(request.app.state, "core", None)
    if core is None:
        raise HTTPException(500, "Service not initialized")
    return core


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


class RecipientPayload(_Payload):
    id: str
    email: str
    name: Optional[str] = None


class SelectorPayload(_Payload):
    """Filters resolved into recipients by the recipient-selection service."""
    role: Optional[str] = None
    status: Optional[str] = None
    cohort_id: Optional[str] = None
    league_id: Optional[str] = None
    all: Optional[bool] = None


class SendEmailPayload(_Payload):
    """Payload accepted by ``POST /emails/send``."""
    recipients: List[RecipientPayload]
    subject: Optional[str] = None
    html_content: Optional[str] = None
    text_content: Optional[str] = None
    template_id: Optional[str] = None
    template_data: Optional[Dict[str, Any]] = None
    priority: Optional[PriorityValue] = None
    scheduled_for: Optional[datetime] = None
    max_retries: Optional[int] = Field(default=None, ge=1)


class BulkEmailPayload(SendEmailPayload):
    """Payload accepted by ``POST /emails/bulk``: explicit recipients or a selector."""
    recipients: Optional[List[RecipientPayload]] = None
    selector: Optional[SelectorPayload] = None
    recipient_type: Optional[RecipientTypeValue] = None


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class JobAdmissionResponse(CommandStatus):
    job_id: str
    estimated_recipients: int
    status: str


class JobStatusResponse(CommandStatus):
    job_id: str
    status: str
    sent_count: int
    failed_count: int
    total_count: int
    cancel_requested: bool = False


class CancelResponse(CommandStatus):
    job_id: str
    status: str
    cancel_requested: bool


class JobsResponse(CommandStatus):
    jobs: List[Dict[str, Any]]


class JobResponse(CommandStatus):
    job: Dict[str, Any]


class AnalyticsResponse(CommandStatus):
    total_jobs: int
    completed_jobs: int
    failed_jobs: int
    success_rate: float


class QueueResponse(CommandStatus):
    queue: Dict[str, int]
    jobs: Dict[str, int]
    sent: Dict[str, int] = {}


def _admission_error(exc: AdmissionError) -> HTTPException:
    return HTTPException(status.HTTP_400_BAD_REQUEST, {"error": str(exc), "code": exc.code})


def create_app(
    core: BulkMailCore,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    core:
        The :class:`bulk_mail_service.core.BulkMailCore` serving the requests.
        It is stored on ``app.state``.
    api_token:
        Optional secret used to protect every endpoint.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    """
    api = FastAPI(title="Bulk Mail Service", lifespan=lifespan)
    api.state.core = core
    api.state.api_token = api_token
    router = APIRouter(prefix="/emails", tags=["emails"], dependencies=[auth_dependency])

    @api.get("/status", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def service_status():
        """Return a simple health status payload."""
        return BasicOkResponse(ok=True)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics(svc: BulkMailCore = Depends(get_core)):
        """Expose Prometheus metrics."""
        return Response(content=svc.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    @router.post("/send", response_model=JobAdmissionResponse, response_model_exclude_none=True, status_code=202)
    async def send_email(
        payload: SendEmailPayload,
        svc: BulkMailCore = Depends(get_core),
        actor_id: Optional[str] = Header(default=None, alias=ACTOR_HEADER_NAME),
    ):
        """Queue an email for explicit recipients."""
        try:
            result = await svc.dispatcher.send_email(payload.model_dump(exclude_none=True), actor_id)
        except AdmissionError as exc:
            raise _admission_error(exc) from exc
        except EnqueueError as exc:
            raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, {"error": str(exc), "job_id": exc.job_id}) from exc
        return JobAdmissionResponse(ok=True, **result)

    @router.post("/bulk", response_model=JobAdmissionResponse, response_model_exclude_none=True, status_code=202)
    async def send_bulk_email(
        payload: BulkEmailPayload,
        svc: BulkMailCore = Depends(get_core),
        actor_id: Optional[str] = Header(default=None, alias=ACTOR_HEADER_NAME),
    ):
        """Queue a bulk email for a recipient list or a selector."""
        try:
            result = await svc.dispatcher.send_bulk_email(payload.model_dump(exclude_none=True), actor_id)
        except AdmissionError as exc:
            raise _admission_error(exc) from exc
        except EnqueueError as exc:
            raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, {"error": str(exc), "job_id": exc.job_id}) from exc
        return JobAdmissionResponse(ok=True, **result)

    @router.get("/jobs", response_model=JobsResponse, response_model_exclude_none=True)
    async def list_jobs(
        svc: BulkMailCore = Depends(get_core),
        job_status: Optional[str] = Query(default=None, alias="status"),
        created_by: Optional[str] = None,
        template_id: Optional[str] = None,
        limit: int = Query(default=50, ge=1, le=500),
        offset: int = Query(default=0, ge=0),
    ):
        """List jobs, newest first."""
        try:
            jobs = await svc.dispatcher.list_jobs(
                status=job_status, created_by=created_by, template_id=template_id, limit=limit, offset=offset
            )
        except AdmissionError as exc:
            raise _admission_error(exc) from exc
        return JobsResponse(ok=True, jobs=jobs)

    @router.get("/jobs/{job_id}", response_model=JobResponse, response_model_exclude_none=True)
    async def get_job(job_id: str, include_logs: bool = True, svc: BulkMailCore = Depends(get_core)):
        """Return a job with its recipient logs."""
        try:
            job = await svc.dispatcher.get_job(job_id, include_logs=include_logs)
        except JobNotFoundError as exc:
            raise HTTPException(status.HTTP_404_NOT_FOUND, str(exc)) from exc
        return JobResponse(ok=True, job=job)

    @router.get("/jobs/{job_id}/status", response_model=JobStatusResponse, response_model_exclude_none=True)
    async def get_job_status(job_id: str, svc: BulkMailCore = Depends(get_core)):
        """Return the progress counters of a job."""
        try:
            result = await svc.dispatcher.get_job_status(job_id)
        except JobNotFoundError as exc:
            raise HTTPException(status.HTTP_404_NOT_FOUND, str(exc)) from exc
        return JobStatusResponse(ok=True, **result)

    @router.post("/jobs/{job_id}/cancel", response_model=CancelResponse, response_model_exclude_none=True)
    async def cancel_job(
        job_id: str,
        svc: BulkMailCore = Depends(get_core),
        actor_id: Optional[str] = Header(default=None, alias=ACTOR_HEADER_NAME),
    ):
        """Cancel a queued or scheduled job."""
        try:
            result = await svc.dispatcher.cancel_job(job_id, actor_id)
        except JobNotFoundError as exc:
            raise HTTPException(status.HTTP_404_NOT_FOUND, str(exc)) from exc
        except CancelError as exc:
            raise HTTPException(status.HTTP_409_CONFLICT, str(exc)) from exc
        return CancelResponse(ok=True, **result)

    @router.get("/analytics", response_model=AnalyticsResponse, response_model_exclude_none=True)
    async def analytics(
        svc: BulkMailCore = Depends(get_core),
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        template_id: Optional[str] = None,
        created_by: Optional[str] = None,
    ):
        """Return job totals and success rate."""
        result = await svc.dispatcher.get_analytics(
            start=start, end=end, template_id=template_id, created_by=created_by
        )
        return AnalyticsResponse(ok=True, **result)

    @router.get("/test-connection", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def test_connection(svc: BulkMailCore = Depends(get_core)):
        """Check that the mail provider is reachable."""
        result = await svc.dispatcher.test_connection()
        return BasicOkResponse(ok=bool(result.get("success")), error=result.get("error"))

    @router.get("/queue", response_model=QueueResponse, response_model_exclude_none=True)
    async def queue_overview(svc: BulkMailCore = Depends(get_core)):
        """Return queue entry counts and active job counts."""
        return QueueResponse(ok=True, **(await svc.queue_overview()))

    api.include_router(router)
    return api


def create_app_from_settings(settings: Dict[str, Any]) -> FastAPI:
    """Build the core described by ``settings`` and an app whose lifespan starts and stops it."""
    roles = []
    if settings.get("run_workers", True):
        roles.append(ROLE_WORKERS)
    if settings.get("run_scheduler", True):
        roles.append(ROLE_SCHEDULER)
    core = BulkMailCore.from_settings(settings, roles=roles)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await core.start()
        try:
            yield
        finally:
            await core.stop()

    return create_app(core, api_token=settings.get("api_token"), lifespan=lifespan)
