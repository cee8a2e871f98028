from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from depositbridge.domain.job import PENDING_STATUSES, Job, JobStatus, StepRecord, TenantKey
from depositbridge.domain.models import IntegrationJobRecord
from depositbridge.persistence.serialization import FieldCodec, strip_list_marker


_PENDING_VALUES = [status.value for status in PENDING_STATUSES]


def job_from_row(row: IntegrationJobRecord) -> Job:
    steps, steps_dropped = strip_list_marker(row.steps)
    return Job(
        job_id=row.id,
        external_record_id=row.external_record_id,
        tenant_key=TenantKey(organization_id=row.organization_id, branch_id=row.branch_id),
        status=JobStatus(row.status),
        attempt_count=int(row.attempt_count or 0),
        max_attempts=int(row.max_attempts),
        next_attempt_at=row.next_attempt_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
        lease_started_at=row.lease_started_at,
        lease_token=row.lease_token,
        cancel_requested_at=row.cancel_requested_at,
        last_attempt_at=row.last_attempt_at,
        completed_at=row.completed_at,
        test_mode=bool(row.test_mode),
        pending_reason=row.pending_reason,
        payload_snapshot=row.payload_snapshot,
        missing_fields=dict(row.missing_fields or {}),
        last_error=row.last_error,
        downstream_result=row.downstream_result,
        steps=tuple(StepRecord.from_dict(item) for item in steps),
        steps_dropped=steps_dropped,
    )


def mutable_values(job: Job, codec: FieldCodec) -> dict[str, Any]:
    # Columns a state transition may change; JSON fields go through the size cap.
    values: dict[str, Any] = {
        "status": job.status.value,
        "attempt_count": job.attempt_count,
        "max_attempts": job.max_attempts,
        "next_attempt_at": job.next_attempt_at,
        "lease_started_at": job.lease_started_at,
        "lease_token": job.lease_token,
        "cancel_requested_at": job.cancel_requested_at,
        "last_attempt_at": job.last_attempt_at,
        "completed_at": job.completed_at,
        "test_mode": job.test_mode,
        "pending_reason": job.pending_reason,
        "updated_at": job.updated_at,
    }
    values.update(
        codec.encode_many(
            {
                "payload_snapshot": job.payload_snapshot,
                "missing_fields": job.missing_fields or None,
                "last_error": job.last_error,
                "downstream_result": job.downstream_result,
            }
        )
    )
    values["steps"] = codec.encode_list([step.to_dict() for step in job.steps], already_dropped=job.steps_dropped)
    return values


async def insert_job(session: AsyncSession, job: Job, codec: FieldCodec) -> IntegrationJobRecord:
    row = IntegrationJobRecord(
        id=job.job_id,
        external_record_id=job.external_record_id,
        tenant_key=job.tenant_key.key,
        organization_id=job.tenant_key.organization_id,
        branch_id=job.tenant_key.branch_id,
        created_at=job.created_at,
        **mutable_values(job, codec),
    )
    session.add(row)
    await session.flush()
    return row


async def get_job(session: AsyncSession, job_id: str) -> IntegrationJobRecord | None:
    result = await session.execute(select(IntegrationJobRecord).where(IntegrationJobRecord.id == job_id))
    return result.scalar_one_or_none()


async def get_job_for_record(
    session: AsyncSession, tenant_key: str, external_record_id: str
) -> IntegrationJobRecord | None:
    # At most one active job per tenant and record, enforced by a unique index.
    result = await session.execute(
        select(IntegrationJobRecord).where(
            IntegrationJobRecord.tenant_key == tenant_key,
            IntegrationJobRecord.external_record_id == external_record_id,
        )
    )
    return result.scalar_one_or_none()


async def claim_job(
    session: AsyncSession, job_id: str, *, token: str, now: datetime, respect_schedule: bool = True
) -> bool:
    # Single conditional write; concurrent claimers race on the status predicate.
    conditions = [IntegrationJobRecord.id == job_id, IntegrationJobRecord.status.in_(_PENDING_VALUES)]
    if respect_schedule:
        conditions.append(IntegrationJobRecord.next_attempt_at <= now)
    result = await session.execute(
        update(IntegrationJobRecord)
        .where(*conditions)
        .values(
            status=JobStatus.PROCESSING.value,
            lease_token=token,
            lease_started_at=now,
            last_attempt_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def update_leased_job(
    session: AsyncSession, job_id: str, *, lease_token: str, values: dict[str, Any]
) -> bool:
    # Writes from a lease holder only land while the token still matches.
    result = await session.execute(
        update(IntegrationJobRecord)
        .where(
            IntegrationJobRecord.id == job_id,
            IntegrationJobRecord.lease_token == lease_token,
            IntegrationJobRecord.status == JobStatus.PROCESSING.value,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def update_job(session: AsyncSession, job_id: str, values: dict[str, Any]) -> bool:
    # Unconditional write; callers check the row status first.
    result = await session.execute(
        update(IntegrationJobRecord)
        .where(IntegrationJobRecord.id == job_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def mark_cancelled(session: AsyncSession, job_id: str, *, now: datetime, reason: str) -> bool:
    # Only pending jobs flip straight to CANCELLED; in-flight ones are flagged instead.
    result = await session.execute(
        update(IntegrationJobRecord)
        .where(
            IntegrationJobRecord.id == job_id,
            IntegrationJobRecord.status.in_(_PENDING_VALUES),
        )
        .values(
            status=JobStatus.CANCELLED.value,
            pending_reason=reason,
            completed_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def request_cancel(session: AsyncSession, job_id: str, *, now: datetime) -> bool:
    # Flag an in-flight job; the holder archives it as cancelled instead of re-queueing.
    result = await session.execute(
        update(IntegrationJobRecord)
        .where(
            IntegrationJobRecord.id == job_id,
            IntegrationJobRecord.status == JobStatus.PROCESSING.value,
        )
        .values(cancel_requested_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def reschedule_now(session: AsyncSession, job_id: str, *, now: datetime) -> bool:
    # Manual retry: make a waiting job due on the next tick.
    result = await session.execute(
        update(IntegrationJobRecord)
        .where(
            IntegrationJobRecord.id == job_id,
            IntegrationJobRecord.status.in_(_PENDING_VALUES),
        )
        .values(next_attempt_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def delete_job(session: AsyncSession, job_id: str) -> int:
    result = await session.execute(
        delete(IntegrationJobRecord)
        .where(IntegrationJobRecord.id == job_id)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def delete_job_if_unchanged(
    session: AsyncSession, job_id: str, *, status: str, lease_token: str | None
) -> int:
    # Sweep-side delete: skip rows a worker released or re-leased since they were read.
    token_clause = (
        IntegrationJobRecord.lease_token.is_(None)
        if lease_token is None
        else IntegrationJobRecord.lease_token == lease_token
    )
    result = await session.execute(
        delete(IntegrationJobRecord)
        .where(IntegrationJobRecord.id == job_id, IntegrationJobRecord.status == status, token_clause)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def list_ready(session: AsyncSession, *, now: datetime, limit: int) -> list[IntegrationJobRecord]:
    # Oldest due job first so long waiters are not starved.
    result = await session.execute(
        select(IntegrationJobRecord)
        .where(
            IntegrationJobRecord.status.in_(_PENDING_VALUES),
            IntegrationJobRecord.next_attempt_at <= now,
        )
        .order_by(IntegrationJobRecord.next_attempt_at.asc(), IntegrationJobRecord.created_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_sweep_candidates(session: AsyncSession) -> list[IntegrationJobRecord]:
    # Terminal markers, leased jobs and exhausted jobs; callers decide per row.
    result = await session.execute(
        select(IntegrationJobRecord)
        .where(
            (IntegrationJobRecord.status.notin_(_PENDING_VALUES))
            | (IntegrationJobRecord.attempt_count >= IntegrationJobRecord.max_attempts)
        )
        .order_by(IntegrationJobRecord.created_at.asc())
    )
    return list(result.scalars().all())


async def list_jobs(
    session: AsyncSession,
    *,
    status: str | None = None,
    tenant_key: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[IntegrationJobRecord]:
    stmt = select(IntegrationJobRecord)
    if status:
        stmt = stmt.where(IntegrationJobRecord.status == status)
    if tenant_key:
        stmt = stmt.where(IntegrationJobRecord.tenant_key == tenant_key)
    stmt = stmt.order_by(IntegrationJobRecord.created_at.desc(), IntegrationJobRecord.id).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_by_status(session: AsyncSession) -> dict[str, int]:
    result = await session.execute(
        select(IntegrationJobRecord.status, func.count()).group_by(IntegrationJobRecord.status)
    )
    return {str(status): int(count) for status, count in result.all()}


async def count_ready(session: AsyncSession, *, now: datetime) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(IntegrationJobRecord)
        .where(
            IntegrationJobRecord.status.in_(_PENDING_VALUES),
            IntegrationJobRecord.next_attempt_at <= now,
        )
    )
    return int(result.scalar() or 0)


async def attempt_and_age_summary(session: AsyncSession) -> dict[str, Any]:
    result = await session.execute(
        select(
            func.avg(IntegrationJobRecord.attempt_count),
            func.min(IntegrationJobRecord.created_at),
            func.max(IntegrationJobRecord.created_at),
        )
    )
    average, oldest, newest = result.one()
    return {
        "average_attempts": float(average) if average is not None else 0.0,
        "oldest_created_at": oldest,
        "newest_created_at": newest,
    }
