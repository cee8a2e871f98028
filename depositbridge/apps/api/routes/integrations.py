from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from depositbridge.apps.api.deps import get_runtime
from depositbridge.apps.api.response import success_response
from depositbridge.domain.job import TenantKey
from depositbridge.services.runtime import Runtime
from depositbridge.services.saga import SagaResult


router = APIRouter(prefix="/integrations", tags=["integrations"])

_STATUS_BY_OUTCOME = {
    "success": 200,
    "deferred": 202,
    "fatal": 422,
    "failed": 503,
    "expired": 422,
    "cancelled": 409,
    "in_progress": 409,
}


class TriggerRequest(BaseModel):
    # Tenant identity comes from the caller; branch_id narrows to a sub-branch.
    external_record_id: str = Field(min_length=1)
    organization_id: str = Field(min_length=1)
    branch_id: str | None = None
    test_mode: bool = False


def _result_payload(result: SagaResult) -> dict[str, Any]:
    # Deferred and failed outcomes carry enough context for the caller to act on.
    job = result.job
    payload: dict[str, Any] = {"outcome": result.outcome, "job_id": job.job_id}
    if result.outcome == "success":
        payload["result"] = job.downstream_result
    elif result.outcome == "deferred":
        payload.update(
            {
                "pending_id": job.job_id,
                "status": job.status.value,
                "missing_fields": result.missing_fields,
                "next_attempt_at": job.next_attempt_at.isoformat(),
                "attempt_count": job.attempt_count,
                "reason": result.reason,
            }
        )
    else:
        payload.update(
            {
                "reason": result.reason,
                "failed_step": result.failed_step,
                "classification": result.classification,
                "missing_fields": result.missing_fields,
            }
        )
    return payload


@router.post("/trigger")
async def trigger_integration(
    body: TriggerRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
) -> JSONResponse:
    # The HTTP status follows the saga outcome; the body is always the data envelope.
    result = await runtime.saga.trigger(
        external_record_id=body.external_record_id,
        tenant_key=TenantKey(organization_id=body.organization_id, branch_id=body.branch_id),
        test_mode=body.test_mode,
    )
    return JSONResponse(
        content=success_response(request=request, data=_result_payload(result)),
        status_code=_STATUS_BY_OUTCOME.get(result.outcome, 500),
    )
