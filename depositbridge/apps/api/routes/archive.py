from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from depositbridge.apps.api.deps import get_runtime
from depositbridge.apps.api.response import success_response
from depositbridge.domain.job import FinalStatus
from depositbridge.services.runtime import Runtime


router = APIRouter(prefix="/archive", tags=["archive"])


@router.get("")
async def list_archive(
    request: Request,
    tenant_key: str | None = None,
    final_status: FinalStatus | None = None,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    runtime: Runtime = Depends(get_runtime),
) -> dict:
    # Fetch one extra row to decide whether another page exists.
    items = await runtime.archival.list_archived(
        tenant_key=tenant_key,
        final_status=final_status.value if final_status else None,
        limit=limit + 1,
        offset=offset,
    )
    next_offset = None
    if len(items) > limit:
        items = items[:limit]
        next_offset = offset + limit
    return success_response(request=request, data={"items": items, "next_offset": next_offset})


@router.get("/{job_id}")
async def get_archived(job_id: str, request: Request, runtime: Runtime = Depends(get_runtime)) -> dict:
    # Newest archive row wins when a job was archived more than once.
    return success_response(request=request, data=await runtime.archival.get_archived(job_id))
