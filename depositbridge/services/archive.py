from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from depositbridge.core.errors import JobNotFoundError
from depositbridge.domain.job import FinalStatus, Job, final_status_for
from depositbridge.domain.models import ArchivedJobRecord
from depositbridge.persistence.repos import archive as archive_repo
from depositbridge.persistence.repos import jobs as jobs_repo
from depositbridge.persistence.serialization import FieldCodec


logger = logging.getLogger(__name__)


def archived_to_dict(row: ArchivedJobRecord) -> dict[str, Any]:
    # JSON-ready view; truncated fields are returned with their flags intact.
    return {
        "archive_id": row.id,
        "job_id": row.job_id,
        "external_record_id": row.external_record_id,
        "tenant_key": row.tenant_key,
        "organization_id": row.organization_id,
        "branch_id": row.branch_id,
        "status": row.status,
        "final_status": row.final_status,
        "archive_reason": row.archive_reason,
        "attempt_count": row.attempt_count,
        "max_attempts": row.max_attempts,
        "test_mode": row.test_mode,
        "pending_reason": row.pending_reason,
        "payload_snapshot": row.payload_snapshot,
        "missing_fields": row.missing_fields,
        "last_error": row.last_error,
        "downstream_result": row.downstream_result,
        "steps": row.steps or [],
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "completed_at": row.completed_at.isoformat() if row.completed_at else None,
        "archived_at": row.archived_at.isoformat() if row.archived_at else None,
    }


class ArchivalService:
    """Sole writer of archive rows.

    The archive insert and the active-row delete share one transaction; the
    delete is the commit point that takes the job out of the active store.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        *,
        codec: FieldCodec,
        clock: Callable[[], datetime],
    ) -> None:
        self._sessionmaker = sessionmaker
        self._codec = codec
        self._clock = clock

    async def archive(
        self,
        job: Job,
        *,
        reason: str | None = None,
        final_status: FinalStatus | None = None,
        unchanged_from: Job | None = None,
    ) -> bool:
        """Copy ``job`` into the archive and delete its active row.

        With ``unchanged_from`` the archive is skipped (returns False) when the
        active row no longer has that snapshot's status and lease token.
        """

        resolved = final_status or final_status_for(job.status)
        now = self._clock()
        async with self._sessionmaker() as session:
            await archive_repo.insert_archive_row(
                session,
                job,
                final_status=resolved,
                reason=reason or job.pending_reason,
                archived_at=now,
                codec=self._codec,
            )
            if unchanged_from is not None:
                deleted = await jobs_repo.delete_job_if_unchanged(
                    session,
                    job.job_id,
                    status=unchanged_from.status.value,
                    lease_token=unchanged_from.lease_token,
                )
                if deleted == 0:
                    await session.rollback()
                    logger.info("archive_skipped_row_changed job_id=%s status=%s", job.job_id, job.status.value)
                    return False
            else:
                deleted = await jobs_repo.delete_job(session, job.job_id)
            await session.commit()

        if deleted == 0 and job.is_leased:
            # The lease was swept while this worker ran; the archive may now hold two rows.
            logger.warning("archive_active_row_missing job_id=%s status=%s", job.job_id, job.status.value)
        logger.info(
            "job_archived job_id=%s status=%s final_status=%s attempts=%s",
            job.job_id,
            job.status.value,
            resolved.value,
            job.attempt_count,
        )
        return True

    async def get_archived(self, job_id: str) -> dict[str, Any]:
        # The newest row for a job is authoritative.
        async with self._sessionmaker() as session:
            row = await archive_repo.get_latest_for_job(session, job_id)
        if row is None:
            raise JobNotFoundError(f"No archived job {job_id}")
        return archived_to_dict(row)

    async def list_archived(
        self,
        *,
        tenant_key: str | None = None,
        final_status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        async with self._sessionmaker() as session:
            rows = await archive_repo.list_archived(
                session, tenant_key=tenant_key, final_status=final_status, limit=limit, offset=offset
            )
        return [archived_to_dict(row) for row in rows]
