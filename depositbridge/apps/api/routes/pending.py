from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request

from depositbridge.apps.api.deps import get_runtime
from depositbridge.apps.api.response import success_response
from depositbridge.domain.job import Job, JobStatus
from depositbridge.services.runtime import Runtime


router = APIRouter(prefix="/pending", tags=["pending"])


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


def job_payload(job: Job, *, include_detail: bool = False) -> dict[str, Any]:
    # List views stay compact; the detail view adds error, result and step history.
    payload: dict[str, Any] = {
        "job_id": job.job_id,
        "external_record_id": job.external_record_id,
        "tenant_key": job.tenant_key.key,
        "status": job.status.value,
        "attempt_count": job.attempt_count,
        "max_attempts": job.max_attempts,
        "next_attempt_at": _iso(job.next_attempt_at),
        "pending_reason": job.pending_reason,
        "missing_fields": job.missing_fields,
        "test_mode": job.test_mode,
        "lease_started_at": _iso(job.lease_started_at),
        "cancel_requested_at": _iso(job.cancel_requested_at),
        "last_attempt_at": _iso(job.last_attempt_at),
        "created_at": _iso(job.created_at),
        "updated_at": _iso(job.updated_at),
    }
    if include_detail:
        payload["last_error"] = job.last_error
        payload["downstream_result"] = job.downstream_result
        payload["steps"] = [step.to_dict() for step in job.steps]
        payload["steps_dropped"] = job.steps_dropped
    return payload


@router.get("")
async def list_pending(
    request: Request,
    status: JobStatus | None = None,
    tenant_key: str | None = None,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    runtime: Runtime = Depends(get_runtime),
) -> dict:
    # Same limit+1 paging as the archive listing.
    jobs = await runtime.lease.list_jobs(
        status=status.value if status else None,
        tenant_key=tenant_key,
        limit=limit + 1,
        offset=offset,
    )
    next_offset = None
    if len(jobs) > limit:
        jobs = jobs[:limit]
        next_offset = offset + limit
    data = {"items": [job_payload(job) for job in jobs], "next_offset": next_offset}
    return success_response(request=request, data=data)


@router.get("/stats")
async def pending_stats(request: Request, runtime: Runtime = Depends(get_runtime)) -> dict:
    # Queue depth by status plus how many jobs the next tick could pick up.
    return success_response(request=request, data=await runtime.lease.stats())


@router.get("/{job_id}")
async def get_pending(job_id: str, request: Request, runtime: Runtime = Depends(get_runtime)) -> dict:
    job = await runtime.lease.get_job(job_id)
    return success_response(request=request, data=job_payload(job, include_detail=True))


@router.post("/{job_id}/cancel")
async def cancel_pending(job_id: str, request: Request, runtime: Runtime = Depends(get_runtime)) -> dict:
    # In-flight jobs are only flagged here; the worker honours the flag at release.
    result = await runtime.lease.cancel(job_id)
    return success_response(request=request, data={"job_id": result.job_id, "outcome": result.outcome})


@router.post("/{job_id}/retry")
async def retry_pending(job_id: str, request: Request, runtime: Runtime = Depends(get_runtime)) -> dict:
    # Moves the job to the front of the queue; the next tick picks it up.
    job = await runtime.lease.request_retry_now(job_id)
    return success_response(request=request, data=job_payload(job))
