"""
FastAPI application factory and HTTP schemas for the mail spool.

The module exposes a `create_app` function that builds the ingestion API in
front of :class:`mail_spool.service.MailSpoolService`. Submissions are
validated, rate limited per client IP and durably queued before the response
is written. Authentication is optional and uses an API token carried in the
``X-API-Token`` header.
"""

import asyncio
from typing import Optional, List, Callable, AsyncContextManager

from fastapi import FastAPI, HTTPException, Depends, Request, status
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel

from .errors import MalformedJobError, SpoolFilesystemError
from .logger import get_logger
from .models import EmailRequest
from .service import MailSpoolService
from .spool import JobState

logger = get_logger("MailSpoolApi")

app = FastAPI(title="Mail Spool")
service: MailSpoolService | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
app.state.api_token = None


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")

auth_dependency = Depends(require_token)


class HealthResponse(BaseModel):
    ok: bool
    timeUtc: str
    queued: int
    sent: int
    failed: int


class StatsResponse(BaseModel):
    queued: int
    sent: int
    failed: int
    timeUtc: str


class EnqueueResponse(BaseModel):
    """Outcome of a submission: queued (202) or already delivered (200)."""
    requestId: str
    duplicate: Optional[bool] = None


class FailedJob(BaseModel):
    name: str
    requestId: Optional[str] = None
    receivedUtc: Optional[str] = None
    subject: Optional[str] = None
    toEmails: List[str] = []
    error: Optional[str] = None


class FailedJobsResponse(BaseModel):
    jobs: List[FailedJob]


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _require_service() -> MailSpoolService:
    if not service:
        raise HTTPException(500, "Service not initialized")
    return service


def _failed_listing(svc: MailSpoolService) -> List[FailedJob]:
    jobs: List[FailedJob] = []
    for handle in svc.list_jobs(JobState.FAILED):
        try:
            job = svc.store.load_job(handle)
        except (MalformedJobError, SpoolFilesystemError) as exc:
            jobs.append(FailedJob(name=handle.name, error=str(exc)))
            continue
        jobs.append(
            FailedJob(
                name=handle.name,
                requestId=job.request_id,
                receivedUtc=job.received_utc,
                subject=job.subject,
                toEmails=list(job.to_emails),
            )
        )
    return jobs


def create_app(
    svc: MailSpoolService,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        The :class:`MailSpoolService` that owns the spool.
    api_token:
        Optional secret protecting every endpoint but ``/health``.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    """
    global service
    service = svc

    if lifespan is not None:
        api = FastAPI(title="Mail Spool", lifespan=lifespan)
    else:
        api = app

    api.state.api_token = api_token

    @api.get("/health", response_model=HealthResponse)
    async def health():
        """Liveness probe with the current per-state counts."""
        stats = await asyncio.to_thread(_require_service().stats)
        return HealthResponse(ok=True, **stats)

    @api.get("/stats", response_model=StatsResponse, dependencies=[auth_dependency])
    async def stats():
        counts = await asyncio.to_thread(_require_service().stats)
        return StatsResponse(**counts)

    async def submit(payload: EmailRequest, request: Request):
        svc = _require_service()
        ip = _client_ip(request)
        if not svc.allow(ip):
            raise HTTPException(status.HTTP_429_TOO_MANY_REQUESTS, "Rate limit exceeded")
        normalized = payload.normalized()
        error = svc.validation_error(normalized)
        if error:
            raise HTTPException(status.HTTP_400_BAD_REQUEST, error)
        try:
            result = await svc.enqueue(normalized, ip)
        except SpoolFilesystemError as exc:
            logger.error("Enqueue failed ip=%s: %s", ip, exc)
            raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, "Cannot persist the request") from exc
        logger.info(
            "Enqueue result=%s requestId=%s ip=%s toCount=%d",
            result.status,
            result.request_id,
            ip,
            len(normalized.to_emails),
        )
        if result.duplicate:
            body = EnqueueResponse(requestId=result.request_id, duplicate=True)
            return JSONResponse(body.model_dump(), status_code=status.HTTP_200_OK)
        body = EnqueueResponse(requestId=result.request_id)
        return JSONResponse(body.model_dump(exclude_none=True), status_code=status.HTTP_202_ACCEPTED)

    api.add_api_route(
        "/email", submit, methods=["POST"], response_model=EnqueueResponse, dependencies=[auth_dependency]
    )
    # Older clients post to /api/email.
    api.add_api_route(
        "/api/email", submit, methods=["POST"], response_model=EnqueueResponse, dependencies=[auth_dependency]
    )

    @api.get("/failed", response_model=FailedJobsResponse, dependencies=[auth_dependency])
    async def failed_jobs():
        """List jobs parked in ``failed``; unreadable files are listed with an error."""
        svc = _require_service()
        try:
            jobs = await asyncio.to_thread(_failed_listing, svc)
        except SpoolFilesystemError as exc:
            raise HTTPException(500, str(exc)) from exc
        return FailedJobsResponse(jobs=jobs)

    @api.post("/failed/{name}/resubmit", response_model=EnqueueResponse, dependencies=[auth_dependency])
    async def resubmit(name: str, request: Request):
        """Queue a failed job again under the same request id."""
        svc = _require_service()
        try:
            result = await svc.resubmit(name, _client_ip(request))
        except FileNotFoundError as exc:
            raise HTTPException(status.HTTP_404_NOT_FOUND, f"Failed job not found: {name}") from exc
        except MalformedJobError as exc:
            raise HTTPException(status.HTTP_409_CONFLICT, str(exc)) from exc
        except SpoolFilesystemError as exc:
            raise HTTPException(500, str(exc)) from exc
        if result.duplicate:
            return EnqueueResponse(requestId=result.request_id, duplicate=True)
        body = EnqueueResponse(requestId=result.request_id)
        return JSONResponse(body.model_dump(exclude_none=True), status_code=status.HTTP_202_ACCEPTED)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the spool."""
        svc = _require_service()
        return Response(content=svc.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    return api
