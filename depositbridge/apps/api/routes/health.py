from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from depositbridge.apps.api.deps import get_runtime
from depositbridge.apps.api.response import success_response
from depositbridge.persistence.db import pool_stats
from depositbridge.services.runtime import Runtime


router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request, runtime: Runtime = Depends(get_runtime)) -> dict:
    # Report a degraded database instead of failing so probes still get pool stats.
    database = "ok"
    try:
        async with runtime.sessionmaker() as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        database = "unavailable"
    data = {
        "status": "ok" if database == "ok" else "degraded",
        "database": database,
        "pool": pool_stats(runtime.engine),
    }
    return success_response(request=request, data=data)
