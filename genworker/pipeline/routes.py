"""
FastAPI routes for the generation job pipeline.

Job Endpoints (X-Account-Id = authenticated account, set by the app gateway):
  POST /jobs                  — Submit a job (entitlement → price → debit → start)
  GET  /jobs                  — List the account's jobs, newest first
  GET  /jobs/{id}             — Get job state
  POST /jobs/{id}/cancel      — Request cancellation
  POST /jobs/{id}/retry       — Resubmit a failed job as a new job

Ops Endpoints (X-Worker-Secret):
  POST /ops/jobs/{id}/approve — Release a job held for review
  POST /ops/jobs/{id}/reject  — Reject a job held for review
  POST /ops/sweep             — Run the deadline sweep now

Provider Endpoints (X-Callback-Secret or ?token=):
  POST /callbacks/{provider}  — Async step completion notice
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel, TypeAdapter, ValidationError

from .. import metrics
from .callbacks import CallbackReceiver
from .errors import (
    EntitlementDenied,
    InsufficientCredits,
    InvalidJobState,
    JobNotFound,
    PipelineError,
    StoreConflict,
)
from .gateway import CapabilityGateway
from .job_service import JobService
from .ledger import Ledger
from .locks import get_job_locks
from .maintenance import sweep_expired
from .models import CallbackPayload, JobConfig, JobResponse, JobStatus
from .notifications import Notifier
from .orchestrator import GenerationPipeline
from .store import JobStore, get_store

logger = logging.getLogger(__name__)

_config_adapter = TypeAdapter(JobConfig)


# ═════════════════════════════════════════════════════════════════════════════
# Service wiring
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class PipelineServices:
    store: JobStore
    ledger: Ledger
    gateway: CapabilityGateway
    pipeline: GenerationPipeline
    jobs: JobService
    receiver: CallbackReceiver

    @classmethod
    def build(cls, store: JobStore, gateway: Optional[CapabilityGateway] = None, **pipeline_kwargs) -> "PipelineServices":
        ledger = Ledger(store)
        gateway = gateway or CapabilityGateway.default(store)
        pipeline_kwargs.setdefault("locks", get_job_locks())
        pipeline = GenerationPipeline(store, ledger, gateway, Notifier(store), **pipeline_kwargs)
        return cls(
            store=store,
            ledger=ledger,
            gateway=gateway,
            pipeline=pipeline,
            jobs=JobService(store, ledger, pipeline),
            receiver=CallbackReceiver(store, pipeline),
        )


# Singleton service instance
_services: Optional[PipelineServices] = None


def get_services() -> PipelineServices:
    global _services
    if _services is None:
        _services = PipelineServices.build(get_store())
    return _services


def get_job_service(services: PipelineServices = Depends(get_services)) -> JobService:
    return services.jobs


def _http_error(e: PipelineError) -> HTTPException:
    """Translate a pipeline error into the response the caller sees."""
    if isinstance(e, EntitlementDenied):
        return HTTPException(status_code=403, detail={
            "code": e.code,
            "rule": e.rule,
            "required_tier": e.required_tier,
            "message": e.message,
        })
    if isinstance(e, InsufficientCredits):
        return HTTPException(status_code=402, detail={
            "code": e.code,
            "required": e.required,
            "balance": e.balance,
            "message": e.message,
        })
    if isinstance(e, JobNotFound):
        return HTTPException(status_code=404, detail={"code": e.code, "message": e.message})
    if isinstance(e, (InvalidJobState, StoreConflict)):
        return HTTPException(status_code=409, detail={"code": e.code, "message": e.message})
    if e.code in ("identity_not_found", "identity_not_ready"):
        return HTTPException(status_code=422, detail={"code": e.code, "message": e.message})
    logger.error(f"Unhandled pipeline error: {e}")
    return HTTPException(status_code=500, detail={"code": e.code, "message": "Internal error"})


# ═════════════════════════════════════════════════════════════════════════════
# Jobs Router
# ═════════════════════════════════════════════════════════════════════════════

jobs_router = APIRouter(prefix="/jobs", tags=["jobs"])


@jobs_router.post("", response_model=JobResponse, status_code=201)
async def submit_job(
    body: dict = Body(...),
    account_id: str = Header(..., alias="X-Account-Id"),
    jobs: JobService = Depends(get_job_service),
):
    """
    Submit a generation or training job.

    Errors:
      - 403: Entitlement denied (rule + required tier)
      - 402: Insufficient credits
      - 422: Invalid configuration or unknown identity
    """
    try:
        config = _config_adapter.validate_python(body)
    except ValidationError as e:
        raise RequestValidationError(e.errors(include_url=False, include_context=False))

    try:
        job = await jobs.submit_job(account_id, config)
    except PipelineError as e:
        raise _http_error(e)
    return JobResponse.from_job(job)


@jobs_router.get("", response_model=list[JobResponse])
async def list_jobs(
    status: Optional[JobStatus] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    account_id: str = Header(..., alias="X-Account-Id"),
    jobs: JobService = Depends(get_job_service),
):
    """List the account's jobs, newest first."""
    return [JobResponse.from_job(j) for j in jobs.list_jobs(account_id, status, limit)]


@jobs_router.get("/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: str,
    account_id: str = Header(..., alias="X-Account-Id"),
    jobs: JobService = Depends(get_job_service),
):
    try:
        return JobResponse.from_job(jobs.get_job(account_id, job_id))
    except PipelineError as e:
        raise _http_error(e)


@jobs_router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(
    job_id: str,
    account_id: str = Header(..., alias="X-Account-Id"),
    jobs: JobService = Depends(get_job_service),
):
    """
    Cancel a job. Queued jobs fail immediately; otherwise the request is kept
    (cancel_requested) and applied when the in-flight step resolves.
    """
    try:
        return JobResponse.from_job(await jobs.cancel_job(account_id, job_id))
    except PipelineError as e:
        raise _http_error(e)


@jobs_router.post("/{job_id}/retry", response_model=JobResponse, status_code=201)
async def retry_job(
    job_id: str,
    account_id: str = Header(..., alias="X-Account-Id"),
    jobs: JobService = Depends(get_job_service),
):
    """Resubmit a failed job's configuration as a new, newly-charged job."""
    try:
        return JobResponse.from_job(await jobs.retry_job(account_id, job_id))
    except PipelineError as e:
        raise _http_error(e)


# ═════════════════════════════════════════════════════════════════════════════
# Ops Router
# ═════════════════════════════════════════════════════════════════════════════

ops_router = APIRouter(prefix="/ops", tags=["ops"])


class RejectRequest(BaseModel):
    reason: Optional[str] = None


@ops_router.post("/jobs/{job_id}/approve", response_model=JobResponse)
async def approve_job(job_id: str, jobs: JobService = Depends(get_job_service)):
    try:
        return JobResponse.from_job(await jobs.approve_review(job_id))
    except PipelineError as e:
        raise _http_error(e)


@ops_router.post("/jobs/{job_id}/reject", response_model=JobResponse)
async def reject_job(
    job_id: str,
    request: Optional[RejectRequest] = None,
    jobs: JobService = Depends(get_job_service),
):
    try:
        return JobResponse.from_job(await jobs.reject_review(job_id, request.reason if request else None))
    except PipelineError as e:
        raise _http_error(e)


@ops_router.post("/sweep")
async def run_sweep(services: PipelineServices = Depends(get_services)):
    """Run the deadline sweep immediately."""
    return await sweep_expired(services.store, services.pipeline, services.gateway, services.receiver)


# ═════════════════════════════════════════════════════════════════════════════
# Callbacks Router — provider-to-server, no account session
# ═════════════════════════════════════════════════════════════════════════════

callbacks_router = APIRouter(prefix="/callbacks", tags=["callbacks"])


@callbacks_router.post("/{provider}")
async def provider_callback(
    provider: str,
    payload: CallbackPayload,
    services: PipelineServices = Depends(get_services),
):
    """
    Always 200 for handled or ignored notices so providers stop retrying.
    Only an unexpected fault returns a (generic) 500.
    """
    try:
        outcome = await services.receiver.handle(provider, payload)
    except Exception as e:
        logger.error(f"Callback from {provider} failed: {e}", exc_info=True)
        metrics.record_error("callbacks", type(e).__name__, str(e))
        raise HTTPException(status_code=500, detail="Internal error")
    return {"status": "ok", "outcome": outcome.value}
