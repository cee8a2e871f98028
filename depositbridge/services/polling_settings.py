from __future__ import annotations

import logging
from datetime import datetime

from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from depositbridge.core.config import Settings
from depositbridge.domain.job import JobStatus
from depositbridge.persistence.repos import polling_settings as settings_repo


logger = logging.getLogger(__name__)


class PollingConfig(BaseModel):
    # Operator-tunable ranges; values outside them are rejected at the API.
    pending_data_interval_minutes: float = Field(ge=1, le=60)
    pending_submit_interval_minutes: float = Field(ge=1, le=60)
    backoff_multiplier: float = Field(ge=1, le=3)
    backoff_cap_minutes: float = Field(ge=1, le=1440)
    max_attempts: int = Field(ge=5, le=100)
    source: str = "environment"
    updated_by: str | None = None
    updated_at: datetime | None = None

    def base_interval_for(self, status: JobStatus) -> float:
        # Submit retries wait on the downstream; data retries wait on people fixing records.
        if status == JobStatus.PENDING_SUBMIT:
            return self.pending_submit_interval_minutes
        return self.pending_data_interval_minutes


def defaults_from_settings(settings: Settings) -> PollingConfig:
    # model_construct skips range checks so env values stay authoritative.
    return PollingConfig.model_construct(
        pending_data_interval_minutes=float(settings.pending_data_interval_minutes),
        pending_submit_interval_minutes=float(settings.pending_submit_interval_minutes),
        backoff_multiplier=float(settings.backoff_multiplier),
        backoff_cap_minutes=float(settings.backoff_cap_minutes),
        max_attempts=int(settings.max_attempts),
        source="environment",
        updated_by=None,
        updated_at=None,
    )


class PollingSettingsProvider:
    """Reads the current polling configuration for every scheduling decision.

    The stored row wins over environment defaults; a read failure falls back
    to the defaults so a broken settings table never stops scheduling.
    """

    def __init__(self, settings: Settings, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._settings = settings
        self._sessionmaker = sessionmaker

    def defaults(self) -> PollingConfig:
        return defaults_from_settings(self._settings)

    async def current(self) -> PollingConfig:
        # Read per decision rather than cached so API edits apply on the next tick.
        try:
            async with self._sessionmaker() as session:
                row = await settings_repo.get_settings_row(session)
        except SQLAlchemyError as exc:
            logger.warning("polling_settings_read_failed falling_back=environment", exc_info=exc)
            return self.defaults()
        if row is None:
            return self.defaults()
        return PollingConfig.model_construct(
            pending_data_interval_minutes=float(row.pending_data_interval_minutes),
            pending_submit_interval_minutes=float(row.pending_submit_interval_minutes),
            backoff_multiplier=float(row.backoff_multiplier),
            backoff_cap_minutes=float(row.backoff_cap_minutes),
            max_attempts=int(row.max_attempts),
            source="database",
            updated_by=row.updated_by,
            updated_at=row.updated_at,
        )

    async def update(self, config: PollingConfig, *, updated_by: str | None, now: datetime) -> PollingConfig:
        # Single-row upsert; callers get back the stored view, not their input.
        async with self._sessionmaker() as session:
            row = await settings_repo.upsert_settings_row(
                session,
                pending_data_interval_minutes=config.pending_data_interval_minutes,
                pending_submit_interval_minutes=config.pending_submit_interval_minutes,
                backoff_multiplier=config.backoff_multiplier,
                backoff_cap_minutes=config.backoff_cap_minutes,
                max_attempts=config.max_attempts,
                updated_by=updated_by,
                updated_at=now,
            )
            await session.commit()
        logger.info(
            "polling_settings_updated updated_by=%s data_interval=%s submit_interval=%s multiplier=%s max_attempts=%s",
            updated_by,
            row.pending_data_interval_minutes,
            row.pending_submit_interval_minutes,
            row.backoff_multiplier,
            row.max_attempts,
        )
        return await self.current()
