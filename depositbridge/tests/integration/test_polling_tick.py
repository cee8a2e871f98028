from __future__ import annotations

from dataclasses import replace

import pytest

from depositbridge.domain.job import JobStatus
from depositbridge.persistence.serialization import is_truncated
from depositbridge.tests.utils.records import TENANT, complete_record, pending_job


@pytest.mark.asyncio
async def test_tick_processes_at_most_one_batch(runtime, source, clock) -> None:
    for index in range(12):
        record_id = f"rec-{index}"
        source.set_record(record_id, complete_record(f"ten-{index}"))
        await runtime.lease.upsert_active(pending_job(clock, record_id))

    first = await runtime.polling.run_tick()
    assert first.processed == 10
    assert first.completed == 10
    second = await runtime.polling.run_tick()
    assert second.processed == 2
    assert await runtime.lease.list_jobs() == []


@pytest.mark.asyncio
async def test_tick_on_empty_queue_is_a_no_op(runtime) -> None:
    result = await runtime.polling.run_tick()
    assert result.to_dict() == {
        "processed": 0,
        "completed": 0,
        "failed": 0,
        "still_pending": 0,
        "swept": 0,
        "skipped": 0,
    }


@pytest.mark.asyncio
async def test_unexpected_error_returns_job_to_queue(runtime, source, clock, monkeypatch) -> None:
    job = await runtime.lease.upsert_active(pending_job(clock))

    async def explode(external_record_id, tenant_key):
        raise RuntimeError("unexpected parser failure")

    monkeypatch.setattr(source, "fetch_record", explode)
    result = await runtime.polling.run_tick()
    assert result.still_pending == 1

    stored = await runtime.lease.get_job(job.job_id)
    # Nothing recorded as missing, so it waits in the submit queue.
    assert stored.status == JobStatus.PENDING_SUBMIT
    assert stored.lease_token is None
    assert stored.attempt_count == 2
    assert stored.last_error["category"] == "system"


@pytest.mark.asyncio
async def test_unexpected_error_on_trigger_returns_claimed_job_to_queue(runtime, source, clock, monkeypatch) -> None:
    record = complete_record()
    record["landlords"][0].pop("email")
    source.set_record("rec-1", record)
    first = await runtime.saga.trigger(external_record_id="rec-1", tenant_key=TENANT)
    assert first.outcome == "deferred"

    async def explode(external_record_id, tenant_key):
        raise RuntimeError("unexpected parser failure")

    monkeypatch.setattr(source, "fetch_record", explode)
    with pytest.raises(RuntimeError):
        await runtime.saga.trigger(external_record_id="rec-1", tenant_key=TENANT)

    stored = await runtime.lease.get_job(first.job.job_id)
    assert stored.status == JobStatus.PENDING_DATA
    assert stored.lease_token is None
    assert stored.attempt_count == 2
    assert stored.last_error["category"] == "system"

    # The lease is released, so a later sweep leaves the job alone.
    clock.advance(minutes=16)
    assert (await runtime.lease.sweep()).archived == 0
    assert (await runtime.lease.get_job(first.job.job_id)).attempt_count == 2


@pytest.mark.asyncio
async def test_truncated_missing_fields_keep_job_waiting_for_data(runtime, clock, monkeypatch, source) -> None:
    gaps = {"contacts": [f"tenant contact (Person {index})" for index in range(2000)]}
    job = pending_job(clock, status=JobStatus.PENDING_SUBMIT)
    job = await runtime.lease.upsert_active(replace(job, missing_fields=gaps))
    assert is_truncated((await runtime.lease.get_job(job.job_id)).missing_fields)

    async def explode(external_record_id, tenant_key):
        raise RuntimeError("unexpected parser failure")

    monkeypatch.setattr(source, "fetch_record", explode)
    assert (await runtime.polling.run_tick()).still_pending == 1
    stored = await runtime.lease.get_job(job.job_id)
    assert stored.status == JobStatus.PENDING_DATA
    assert is_truncated(stored.missing_fields)


@pytest.mark.asyncio
async def test_sweep_failure_does_not_block_retries(runtime, source, clock, monkeypatch) -> None:
    source.set_record("rec-1", complete_record())
    await runtime.lease.upsert_active(pending_job(clock))

    async def broken_sweep():
        raise RuntimeError("sweep failed")

    monkeypatch.setattr(runtime.lease, "sweep", broken_sweep)
    result = await runtime.polling.run_tick()
    assert result.completed == 1
    assert result.swept == 0


@pytest.mark.asyncio
async def test_tick_counts_swept_jobs(runtime, source, clock) -> None:
    job = await runtime.lease.upsert_active(pending_job(clock))
    await runtime.lease.claim(job.job_id)
    clock.advance(minutes=30)
    result = await runtime.polling.run_tick()
    assert result.swept == 1
    assert result.processed == 0
    archived = await runtime.archival.get_archived(job.job_id)
    assert archived["status"] == "EXPIRED"
