from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from depositbridge.apps.api.deps import get_runtime
from depositbridge.apps.api.response import success_response
from depositbridge.services.polling_settings import PollingConfig
from depositbridge.services.runtime import Runtime


router = APIRouter(prefix="/polling", tags=["polling"])


class PollingSettingsUpdate(BaseModel):
    # Ranges mirror PollingConfig so bad input is a 422 before any write.
    pending_data_interval_minutes: float = Field(ge=1, le=60)
    pending_submit_interval_minutes: float = Field(ge=1, le=60)
    backoff_multiplier: float = Field(ge=1, le=3)
    backoff_cap_minutes: float = Field(default=60, ge=1, le=1440)
    max_attempts: int = Field(ge=5, le=100)
    updated_by: str | None = None


@router.post("/tick")
async def run_tick(request: Request, runtime: Runtime = Depends(get_runtime)) -> dict:
    # Manual tick for operators; shares the cron job's batch and lease rules.
    result = await runtime.polling.run_tick()
    return success_response(request=request, data=result.to_dict())


@router.get("/settings")
async def get_polling_settings(request: Request, runtime: Runtime = Depends(get_runtime)) -> dict:
    # Stored row when present, environment defaults otherwise.
    config = await runtime.polling_settings.current()
    return success_response(request=request, data=config.model_dump(mode="json"))


@router.put("/settings")
async def update_polling_settings(
    body: PollingSettingsUpdate,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
) -> dict:
    # New values apply to the next scheduling decision; existing due times are kept.
    config = PollingConfig(**body.model_dump(exclude={"updated_by"}))
    updated = await runtime.polling_settings.update(config, updated_by=body.updated_by, now=runtime.clock())
    return success_response(request=request, data=updated.model_dump(mode="json"))
