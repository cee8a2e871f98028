from __future__ import annotations

import pytest

from depositbridge.core.errors import JobNotFoundError
from depositbridge.domain.job import JobStatus, StepRecord
from depositbridge.persistence.serialization import is_truncated, strip_list_marker
from depositbridge.tests.utils.records import TENANT, complete_record, pending_job


@pytest.mark.asyncio
async def test_archive_moves_job_out_of_active_store(runtime, clock) -> None:
    job = await runtime.lease.upsert_active(pending_job(clock))
    failed = job.terminated(JobStatus.FAILED, now=clock(), reason="Rejected downstream")
    assert await runtime.archival.archive(failed)

    with pytest.raises(JobNotFoundError):
        await runtime.lease.get_job(job.job_id)
    archived = await runtime.archival.get_archived(job.job_id)
    assert archived["archive_reason"] == "Rejected downstream"
    assert archived["final_status"] == "FAILED"
    assert archived["created_at"] == clock().isoformat()


@pytest.mark.asyncio
async def test_repeated_archive_appends_rows(runtime, clock) -> None:
    job = await runtime.lease.upsert_active(pending_job(clock))
    done = job.terminated(JobStatus.COMPLETED, now=clock(), reason="Submitted downstream")
    assert await runtime.archival.archive(done)
    clock.advance(minutes=1)
    assert await runtime.archival.archive(done)

    rows = [row for row in await runtime.archival.list_archived() if row["job_id"] == job.job_id]
    assert len(rows) == 2
    latest = await runtime.archival.get_archived(job.job_id)
    assert latest["archived_at"] == clock().isoformat()


@pytest.mark.asyncio
async def test_guarded_archive_skips_changed_rows(runtime, clock) -> None:
    job = await runtime.lease.upsert_active(pending_job(clock))
    await runtime.lease.claim(job.job_id)
    # The stored row is now PROCESSING; a snapshot of the pending row is stale.
    expired = job.terminated(JobStatus.EXPIRED, now=clock(), reason="stale")
    assert not await runtime.archival.archive(expired, unchanged_from=job)
    assert (await runtime.lease.get_job(job.job_id)).status == JobStatus.PROCESSING
    with pytest.raises(JobNotFoundError):
        await runtime.archival.get_archived(job.job_id)


@pytest.mark.asyncio
async def test_oversized_fields_are_flagged_not_dropped(runtime, clock) -> None:
    job = pending_job(clock).with_snapshot({"notes": "n" * 100_000})
    failed = job.terminated(JobStatus.FAILED, now=clock(), reason="too big")
    await runtime.archival.archive(failed)
    archived = await runtime.archival.get_archived(job.job_id)
    assert is_truncated(archived["payload_snapshot"])
    assert archived["payload_snapshot"]["_original_bytes"] > 100_000


@pytest.mark.asyncio
async def test_list_archived_filters(runtime, clock) -> None:
    ok = pending_job(clock, "rec-ok").terminated(JobStatus.COMPLETED, now=clock(), reason="ok")
    bad = pending_job(clock, "rec-bad").terminated(JobStatus.CANCELLED, now=clock(), reason="stop")
    await runtime.archival.archive(ok)
    await runtime.archival.archive(bad)

    completed = await runtime.archival.list_archived(final_status="COMPLETED")
    assert [item["external_record_id"] for item in completed] == ["rec-ok"]
    failed = await runtime.archival.list_archived(final_status="FAILED", tenant_key="org-1:br-1")
    assert [item["status"] for item in failed] == ["CANCELLED"]
    assert await runtime.archival.list_archived(tenant_key="other:*") == []


def _failed_fetch(clock, attempt: int) -> StepRecord:
    return StepRecord(
        step_name="fetch_source",
        outcome="failed",
        started_at=clock(),
        finished_at=clock(),
        attempt=attempt,
        detail={"error": "Source system unavailable", "attempt_note": "x" * 40},
    )


@pytest.mark.asyncio
async def test_dropped_history_is_counted_across_writes(runtime, clock) -> None:
    job = pending_job(clock)
    for attempt in range(400):
        job = job.with_step(_failed_fetch(clock, attempt))
    await runtime.lease.upsert_active(job)

    claimed = await runtime.lease.claim(job.job_id)
    assert claimed.steps_dropped > 0
    assert claimed.steps_dropped + len(claimed.steps) == 400

    deferred = claimed.with_step(_failed_fetch(clock, 400)).deferred(
        status=JobStatus.PENDING_DATA, next_attempt_at=clock(), now=clock(), reason="Waiting for data"
    )
    assert await runtime.lease.release_to_pending(deferred, lease_token=claimed.lease_token)
    stored = await runtime.lease.get_job(job.job_id)
    assert stored.steps_dropped + len(stored.steps) == 401
    assert stored.steps[-1].attempt == 400

    failed = stored.terminated(JobStatus.FAILED, now=clock(), reason="Rejected downstream")
    await runtime.archival.archive(failed)
    archived = await runtime.archival.get_archived(job.job_id)
    kept, dropped = strip_list_marker(archived["steps"])
    assert dropped + len(kept) == 401


@pytest.mark.asyncio
async def test_deferred_job_history_survives_archival(runtime, source, clock) -> None:
    record = complete_record()
    record["landlords"][0].pop("email")
    source.set_record("rec-1", record)
    deferred = await runtime.saga.trigger(external_record_id="rec-1", tenant_key=TENANT)
    assert deferred.outcome == "deferred"

    active = await runtime.lease.get_job(deferred.job.job_id)
    await runtime.lease.cancel(active.job_id)
    await runtime.lease.sweep()

    archived = await runtime.archival.get_archived(active.job_id)
    assert archived["missing_fields"] == active.missing_fields
    assert archived["steps"] == [step.to_dict() for step in active.steps]
    assert [step["step_name"] for step in archived["steps"]] == ["fetch_source", "validate"]
