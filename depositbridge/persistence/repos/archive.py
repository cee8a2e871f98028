from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from depositbridge.domain.job import FinalStatus, Job
from depositbridge.domain.models import ArchivedJobRecord
from depositbridge.persistence.serialization import FieldCodec


async def insert_archive_row(
    session: AsyncSession,
    job: Job,
    *,
    final_status: FinalStatus,
    reason: str | None,
    archived_at: datetime,
    codec: FieldCodec,
) -> ArchivedJobRecord:
    # Archive rows are insert-only copies of the job at its terminal transition.
    encoded = codec.encode_many(
        {
            "payload_snapshot": job.payload_snapshot,
            "missing_fields": job.missing_fields or None,
            "last_error": job.last_error,
            "downstream_result": job.downstream_result,
        }
    )
    encoded["steps"] = codec.encode_list([step.to_dict() for step in job.steps], already_dropped=job.steps_dropped)
    row = ArchivedJobRecord(
        job_id=job.job_id,
        external_record_id=job.external_record_id,
        tenant_key=job.tenant_key.key,
        organization_id=job.tenant_key.organization_id,
        branch_id=job.tenant_key.branch_id,
        status=job.status.value,
        final_status=final_status.value,
        archive_reason=reason,
        attempt_count=job.attempt_count,
        max_attempts=job.max_attempts,
        test_mode=job.test_mode,
        pending_reason=job.pending_reason,
        created_at=job.created_at,
        completed_at=job.completed_at or archived_at,
        archived_at=archived_at,
        **encoded,
    )
    session.add(row)
    await session.flush()
    return row


async def get_latest_for_job(session: AsyncSession, job_id: str) -> ArchivedJobRecord | None:
    # Repeated archival may leave several rows; the newest one is authoritative.
    result = await session.execute(
        select(ArchivedJobRecord)
        .where(ArchivedJobRecord.job_id == job_id)
        .order_by(ArchivedJobRecord.archived_at.desc(), ArchivedJobRecord.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_archived(
    session: AsyncSession,
    *,
    tenant_key: str | None = None,
    final_status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[ArchivedJobRecord]:
    stmt = select(ArchivedJobRecord)
    if tenant_key:
        stmt = stmt.where(ArchivedJobRecord.tenant_key == tenant_key)
    if final_status:
        stmt = stmt.where(ArchivedJobRecord.final_status == final_status)
    stmt = stmt.order_by(ArchivedJobRecord.archived_at.desc(), ArchivedJobRecord.id.desc()).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
