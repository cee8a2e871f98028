from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from depositbridge.core.errors import JobNotFoundError, LeaseExpiredError
from depositbridge.domain.job import JobStatus
from depositbridge.domain.models import ArchivedJobRecord
from depositbridge.services.lease import ATTEMPTS_EXHAUSTED, PROCESSING_ABANDONED
from depositbridge.services.saga import ExecutionMode
from depositbridge.tests.utils.records import TENANT, complete_record, pending_job


def _scheduled_later(clock, minutes: int = 30):
    job = pending_job(clock)
    return job.deferred(
        status=JobStatus.PENDING_DATA,
        next_attempt_at=clock() + timedelta(minutes=minutes),
        now=clock(),
        reason="later",
    )


async def _archive_rows(runtime, job_id: str) -> list[ArchivedJobRecord]:
    async with runtime.sessionmaker() as session:
        result = await session.execute(select(ArchivedJobRecord).where(ArchivedJobRecord.job_id == job_id))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_claim_is_exclusive(runtime, clock) -> None:
    job = await runtime.lease.upsert_active(pending_job(clock))
    claimed = await runtime.lease.claim(job.job_id)
    assert claimed is not None
    assert claimed.status == JobStatus.PROCESSING
    assert claimed.lease_token
    assert claimed.lease_started_at == clock()
    assert await runtime.lease.claim(job.job_id) is None


@pytest.mark.asyncio
async def test_concurrent_claims_have_one_winner(runtime, clock) -> None:
    job = await runtime.lease.upsert_active(pending_job(clock))
    results = await asyncio.gather(*(runtime.lease.claim(job.job_id) for _ in range(5)))
    winners = [result for result in results if result is not None]
    assert len(winners) == 1


@pytest.mark.asyncio
async def test_claim_respects_schedule_unless_told_otherwise(runtime, clock) -> None:
    job = _scheduled_later(clock)
    await runtime.lease.upsert_active(job)
    assert await runtime.lease.get_ready_jobs(10) == []
    assert await runtime.lease.claim(job.job_id) is None
    assert await runtime.lease.claim(job.job_id, respect_schedule=False) is not None


@pytest.mark.asyncio
async def test_release_requires_current_token(runtime, clock) -> None:
    job = await runtime.lease.upsert_active(pending_job(clock))
    claimed = await runtime.lease.claim(job.job_id)
    released = claimed.deferred(status=JobStatus.PENDING_DATA, next_attempt_at=clock(), now=clock(), reason="again")
    with pytest.raises(LeaseExpiredError):
        await runtime.lease.release_to_pending(released, lease_token="not-the-token")
    assert await runtime.lease.release_to_pending(released, lease_token=claimed.lease_token)
    stored = await runtime.lease.get_job(job.job_id)
    assert stored.status == JobStatus.PENDING_DATA
    assert stored.lease_token is None
    assert stored.attempt_count == 2


@pytest.mark.asyncio
async def test_upsert_merges_into_existing_pending_row(runtime, clock) -> None:
    first = await runtime.lease.upsert_active(pending_job(clock))
    second = await runtime.lease.upsert_active(pending_job(clock))
    assert second.job_id == first.job_id
    jobs = await runtime.lease.list_jobs()
    assert [job.job_id for job in jobs] == [first.job_id]


@pytest.mark.asyncio
async def test_sweep_expires_abandoned_lease(runtime, clock) -> None:
    job = await runtime.lease.upsert_active(pending_job(clock))
    await runtime.lease.claim(job.job_id)

    clock.advance(minutes=10)
    assert (await runtime.lease.sweep()).archived == 0

    clock.advance(minutes=6)
    result = await runtime.lease.sweep()
    assert result.expired_leases == 1
    with pytest.raises(JobNotFoundError):
        await runtime.lease.get_job(job.job_id)
    rows = await _archive_rows(runtime, job.job_id)
    assert [(row.status, row.final_status, row.archive_reason) for row in rows] == [
        ("EXPIRED", "FAILED", PROCESSING_ABANDONED)
    ]


@pytest.mark.asyncio
async def test_swept_worker_cannot_write_back(runtime, clock, source) -> None:
    source.set_record("rec-1", complete_record(deposit=None))
    job = await runtime.lease.upsert_active(pending_job(clock))
    claimed = await runtime.lease.claim(job.job_id)
    clock.advance(minutes=20)
    await runtime.lease.sweep()

    result = await runtime.saga.execute(claimed, mode=ExecutionMode.RETRY)
    assert result.outcome == "failed"
    assert result.failed_step == "lease"
    assert len(await _archive_rows(runtime, job.job_id)) == 1


@pytest.mark.asyncio
async def test_sweep_archives_exhausted_jobs(runtime, clock) -> None:
    job = pending_job(clock, max_attempts=1)
    await runtime.lease.upsert_active(job)
    result = await runtime.lease.sweep()
    assert result.exhausted == 1
    rows = await _archive_rows(runtime, job.job_id)
    assert rows[0].status == "EXPIRED"
    assert rows[0].archive_reason == ATTEMPTS_EXHAUSTED


@pytest.mark.asyncio
async def test_cancel_pending_job_then_sweep(runtime, clock) -> None:
    job = await runtime.lease.upsert_active(pending_job(clock))
    result = await runtime.lease.cancel(job.job_id)
    assert result.outcome == "cancelled"
    assert (await runtime.lease.get_job(job.job_id)).status == JobStatus.CANCELLED
    assert (await runtime.lease.cancel(job.job_id)).outcome == "already_terminal"

    sweep = await runtime.lease.sweep()
    assert sweep.terminal_archived == 1
    rows = await _archive_rows(runtime, job.job_id)
    assert rows[0].status == "CANCELLED"
    assert rows[0].final_status == "FAILED"


@pytest.mark.asyncio
async def test_cancel_in_flight_job_is_honoured_at_release(runtime, clock, source) -> None:
    source.set_record("rec-1", complete_record(deposit=None))
    job = await runtime.lease.upsert_active(pending_job(clock))
    claimed = await runtime.lease.claim(job.job_id)
    assert (await runtime.lease.cancel(job.job_id)).outcome == "cancel_requested"
    assert (await runtime.lease.get_job(job.job_id)).cancel_requested_at == clock()

    result = await runtime.saga.execute(claimed, mode=ExecutionMode.RETRY)
    assert result.outcome == "cancelled"
    rows = await _archive_rows(runtime, job.job_id)
    assert rows[0].status == "CANCELLED"


@pytest.mark.asyncio
async def test_cancel_unknown_job_raises(runtime) -> None:
    with pytest.raises(JobNotFoundError):
        await runtime.lease.cancel("missing")


@pytest.mark.asyncio
async def test_retry_now_moves_schedule(runtime, clock) -> None:
    job = await runtime.lease.upsert_active(_scheduled_later(clock))
    assert await runtime.lease.get_ready_jobs(10) == []
    moved = await runtime.lease.request_retry_now(job.job_id)
    assert moved.next_attempt_at == clock()
    assert [ready.job_id for ready in await runtime.lease.get_ready_jobs(10)] == [job.job_id]


@pytest.mark.asyncio
async def test_stats_reports_counts(runtime, clock) -> None:
    await runtime.lease.upsert_active(pending_job(clock, "rec-1"))
    await runtime.lease.upsert_active(pending_job(clock, "rec-2", status=JobStatus.PENDING_SUBMIT))
    stats = await runtime.lease.stats()
    assert stats["total"] == 2
    assert stats["by_status"] == {"PENDING_DATA": 1, "PENDING_SUBMIT": 1}
    assert stats["ready_for_poll"] == 2
    assert stats["average_attempts"] == 1.0
    assert stats["oldest_created_at"] == clock().isoformat()
    assert TENANT.key in {job.tenant_key.key for job in await runtime.lease.list_jobs()}
