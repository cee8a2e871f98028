from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from depositbridge.domain.models import PollingSettingsRecord


DEFAULT_ROW_ID = "default"


async def get_settings_row(session: AsyncSession) -> PollingSettingsRecord | None:
    # Polling settings live in one well-known row.
    result = await session.execute(
        select(PollingSettingsRecord).where(PollingSettingsRecord.id == DEFAULT_ROW_ID)
    )
    return result.scalar_one_or_none()


async def upsert_settings_row(
    session: AsyncSession,
    *,
    pending_data_interval_minutes: float,
    pending_submit_interval_minutes: float,
    backoff_multiplier: float,
    backoff_cap_minutes: float,
    max_attempts: int,
    updated_by: str | None,
    updated_at: datetime,
) -> PollingSettingsRecord:
    # Caller commits; the row is created on first write.
    row = await get_settings_row(session)
    if row is None:
        row = PollingSettingsRecord(id=DEFAULT_ROW_ID)
        session.add(row)
    row.pending_data_interval_minutes = pending_data_interval_minutes
    row.pending_submit_interval_minutes = pending_submit_interval_minutes
    row.backoff_multiplier = backoff_multiplier
    row.backoff_cap_minutes = backoff_cap_minutes
    row.max_attempts = max_attempts
    row.updated_by = updated_by
    row.updated_at = updated_at
    await session.flush()
    return row
