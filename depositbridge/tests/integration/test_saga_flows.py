from __future__ import annotations

import asyncio
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import select

from depositbridge.core.errors import DownstreamPermanentError, DownstreamTransientError, JobNotFoundError
from depositbridge.domain.job import JobStatus
from depositbridge.domain.models import ArchivedJobRecord, AuditEvent
from depositbridge.providers.downstream.base import SubmitOutcome
from depositbridge.providers.source.http import HttpSourceClient
from depositbridge.services.polling_settings import PollingConfig
from depositbridge.services.runtime import build_runtime
from depositbridge.tests.utils.records import TENANT, complete_record, pending_job


async def _trigger(runtime, record_id: str = "rec-1", **kwargs):
    return await runtime.saga.trigger(external_record_id=record_id, tenant_key=TENANT, **kwargs)


async def _audit_events(runtime) -> list[AuditEvent]:
    async with runtime.sessionmaker() as session:
        result = await session.execute(select(AuditEvent).order_by(AuditEvent.id.asc()))
        return list(result.scalars().all())


async def _archived(runtime) -> list[ArchivedJobRecord]:
    async with runtime.sessionmaker() as session:
        result = await session.execute(select(ArchivedJobRecord).order_by(ArchivedJobRecord.id.asc()))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_complete_record_submits_and_archives(runtime, source, downstream) -> None:
    source.set_record("rec-1", complete_record())
    result = await _trigger(runtime)

    assert result.outcome == "success"
    assert result.is_terminal
    assert len(downstream.submissions) == 1
    assert downstream.submissions[0]["property"]["county"] == "Buckinghamshire"
    assert await runtime.lease.list_jobs() == []

    archived = await runtime.archival.get_archived(result.job.job_id)
    assert archived["status"] == "COMPLETED"
    assert archived["final_status"] == "COMPLETED"
    assert archived["downstream_result"]["correlation_ids"]["tenancy_id"] == "ten-1"
    assert [step["step_name"] for step in archived["steps"]] == [
        "fetch_source",
        "validate",
        "enrich",
        "build_payload",
        "submit",
    ]

    events = await _audit_events(runtime)
    assert [event.event_type for event in events] == ["integration.saga.completed"]
    assert events[0].metadata_json["completed_steps"] == 5
    assert events[0].metadata_json["source"] == "on_demand"


@pytest.mark.asyncio
async def test_deposit_gap_waits_for_submit_then_completes_on_tick(runtime, source, downstream, clock) -> None:
    source.set_record("rec-1", complete_record(deposit=None))
    result = await _trigger(runtime)

    assert result.outcome == "deferred"
    job = result.job
    assert job.status == JobStatus.PENDING_SUBMIT
    assert job.attempt_count == 1
    assert job.missing_fields == {"deposit": ["deposit amount"]}
    assert job.next_attempt_at == clock() + timedelta(minutes=5)
    assert downstream.submissions == []

    # Not due yet.
    assert (await runtime.polling.run_tick()).processed == 0

    source.set_record("rec-1", complete_record())
    clock.advance(minutes=6)
    tick = await runtime.polling.run_tick()
    assert tick.processed == 1
    assert tick.completed == 1
    assert await runtime.lease.list_jobs() == []
    archived = await runtime.archival.get_archived(job.job_id)
    assert archived["final_status"] == "COMPLETED"
    assert archived["attempt_count"] == 1


@pytest.mark.asyncio
async def test_contact_gap_waits_for_data(runtime, source, clock) -> None:
    record = complete_record()
    record["landlords"][0].pop("email")
    source.set_record("rec-1", record)
    result = await _trigger(runtime)
    assert result.outcome == "deferred"
    assert result.job.status == JobStatus.PENDING_DATA
    assert result.job.next_attempt_at == clock() + timedelta(minutes=15)
    assert "contacts" in result.missing_fields


@pytest.mark.asyncio
async def test_retrigger_runs_existing_pending_job_immediately(runtime, source) -> None:
    source.set_record("rec-1", complete_record(deposit=None))
    first = await _trigger(runtime)
    source.set_record("rec-1", complete_record())

    second = await _trigger(runtime)
    assert second.outcome == "success"
    assert second.job.job_id == first.job.job_id
    assert await runtime.lease.list_jobs() == []


@pytest.mark.asyncio
async def test_missing_identity_is_fatal(runtime, source, downstream) -> None:
    record = complete_record()
    record["tenancy"]["id"] = None
    source.set_record("rec-1", record)
    result = await _trigger(runtime)

    assert result.outcome == "fatal"
    assert result.failed_step == "validate"
    assert result.missing_fields["tenancy"] == ["id"]
    assert downstream.submissions == []
    archived = await _archived(runtime)
    assert [(row.status, row.final_status) for row in archived] == [("FAILED", "FAILED")]
    events = await _audit_events(runtime)
    assert events[0].error_code == "DATA_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_duplicate_rejection_fails_permanently(runtime, source, downstream) -> None:
    source.set_record("rec-1", complete_record())
    downstream.queue_failure("Validation: duplicate tenancy")
    result = await _trigger(runtime)

    assert result.outcome == "failed"
    assert result.failed_step == "submit"
    assert result.classification["classification"] == "permanent"
    assert await runtime.lease.list_jobs() == []
    archived = await runtime.archival.get_archived(result.job.job_id)
    assert archived["status"] == "FAILED"
    assert archived["last_error"]["category"] == "validation"
    events = await _audit_events(runtime)
    assert events[0].event_type == "integration.saga.failed"
    assert events[0].error_code == "DOWNSTREAM_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_transient_rejection_defers_then_succeeds(runtime, source, downstream, clock) -> None:
    source.set_record("rec-1", complete_record())
    downstream.queue_failure("HTTP 503: Service Unavailable", status_code=503)
    result = await _trigger(runtime)

    assert result.outcome == "deferred"
    assert result.job.status == JobStatus.PENDING_SUBMIT
    assert result.job.last_error["classification"] == "transient"

    clock.advance(minutes=5)
    tick = await runtime.polling.run_tick()
    assert tick.completed == 1
    assert len(downstream.submissions) == 2


@pytest.mark.asyncio
async def test_transport_error_is_transient(runtime, source, downstream) -> None:
    source.set_record("rec-1", complete_record())
    downstream.queue(DownstreamTransientError("connection reset", {"category": "network"}))
    result = await _trigger(runtime)
    assert result.outcome == "deferred"
    assert result.classification["category"] == "network"


@pytest.mark.asyncio
async def test_unrecognised_rejection_fails_closed(runtime, source, downstream) -> None:
    source.set_record("rec-1", complete_record())
    downstream.queue(SubmitOutcome(success=False, message="", status_code=400))
    result = await _trigger(runtime)
    assert result.outcome == "failed"
    assert result.classification["category"] == "unknown"


@pytest.mark.asyncio
async def test_fresh_source_failure_is_not_persisted(runtime, source) -> None:
    source.fail_next()
    result = await _trigger(runtime)

    assert result.outcome == "failed"
    assert result.failed_step == "fetch_source"
    assert await runtime.lease.list_jobs() == []
    assert await _archived(runtime) == []
    events = await _audit_events(runtime)
    assert events[0].error_code == "SOURCE_FETCH_ERROR"


@pytest.mark.asyncio
async def test_source_failure_on_retry_keeps_job_pending(runtime, source, clock) -> None:
    source.set_record("rec-1", complete_record(deposit=None))
    first = await _trigger(runtime)
    source.fail_next()
    clock.advance(minutes=5)
    tick = await runtime.polling.run_tick()
    assert tick.still_pending == 1
    job = await runtime.lease.get_job(first.job.job_id)
    assert job.attempt_count == 2
    assert job.last_error["category"] == "source"
    # Deposit-only gap kept; still waiting for submission data.
    assert job.status == JobStatus.PENDING_SUBMIT


@pytest.mark.asyncio
async def test_attempt_cap_expires_job(runtime, source, clock) -> None:
    await runtime.polling_settings.update(
        PollingConfig(
            pending_data_interval_minutes=1,
            pending_submit_interval_minutes=1,
            backoff_multiplier=1,
            backoff_cap_minutes=1,
            max_attempts=5,
        ),
        updated_by="tests",
        now=clock(),
    )
    source.set_record("rec-1", complete_record(deposit=None))
    first = await _trigger(runtime)
    assert first.job.max_attempts == 5

    outcomes = []
    for _ in range(4):
        clock.advance(minutes=2)
        outcomes.append(await runtime.polling.run_tick())
    assert [tick.still_pending for tick in outcomes] == [1, 1, 1, 0]
    assert outcomes[-1].failed == 1

    with pytest.raises(JobNotFoundError):
        await runtime.lease.get_job(first.job.job_id)
    archived = await runtime.archival.get_archived(first.job.job_id)
    assert archived["status"] == "EXPIRED"
    assert archived["final_status"] == "FAILED"
    assert archived["attempt_count"] == 5
    events = await _audit_events(runtime)
    assert events[-1].error_code == "ATTEMPTS_EXHAUSTED"


@pytest.mark.asyncio
async def test_in_flight_job_reports_in_progress(runtime, source, clock) -> None:
    source.set_record("rec-1", complete_record(deposit=None))
    first = await _trigger(runtime)
    clock.advance(minutes=5)
    assert await runtime.lease.claim(first.job.job_id) is not None

    result = await _trigger(runtime)
    assert result.outcome == "in_progress"
    assert not result.is_terminal


@pytest.mark.asyncio
async def test_terminal_marker_does_not_block_new_trigger(runtime, source) -> None:
    source.set_record("rec-1", complete_record(deposit=None))
    first = await _trigger(runtime)
    await runtime.lease.cancel(first.job.job_id)

    source.set_record("rec-1", complete_record())
    result = await _trigger(runtime)
    assert result.outcome == "success"
    assert result.job.job_id != first.job.job_id
    statuses = sorted(row.status for row in await _archived(runtime))
    assert statuses == ["CANCELLED", "COMPLETED"]


@pytest.mark.asyncio
async def test_audit_sink_failure_does_not_change_outcome(runtime, source) -> None:
    class BrokenSink:
        async def record(self, record) -> None:
            raise RuntimeError("audit store down")

    runtime.saga._audit_sink = BrokenSink()
    source.set_record("rec-1", complete_record())
    assert (await _trigger(runtime)).outcome == "success"


@pytest.mark.asyncio
async def test_slow_source_is_retried_within_the_fetch_step(settings, downstream, region_lookup, clock) -> None:
    calls: list[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            await asyncio.sleep(1)
        return httpx.Response(200, json=complete_record())

    slow_settings = settings.model_copy(
        update={
            "source_base_url": "http://source.test/api",
            "ext_call_timeout_ms": 200,
            "ext_retry_max_attempts": 2,
            "ext_retry_backoff_ms": 1,
        }
    )
    source = HttpSourceClient(slow_settings, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    runtime = await build_runtime(
        slow_settings,
        source=source,
        downstream=downstream,
        region_lookup=region_lookup,
        clock=clock,
        ensure_schema=True,
    )
    try:
        result = await _trigger(runtime)
    finally:
        await runtime.dispose()
    assert result.outcome == "success"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_rejected_credentials_fail_without_classification(runtime, source, downstream) -> None:
    source.set_record("rec-1", complete_record())
    downstream.queue(
        DownstreamPermanentError(
            "HTTP 401: invalid api key",
            classification={"classification": "permanent", "category": "authentication"},
        )
    )
    result = await _trigger(runtime)
    assert result.outcome == "failed"
    assert result.failed_step == "submit"
    assert result.classification["category"] == "authentication"
    assert await runtime.lease.list_jobs() == []


@pytest.mark.asyncio
async def test_deferral_losing_insert_race_reports_in_progress(runtime, source, clock, monkeypatch) -> None:
    holder = await runtime.lease.upsert_active(pending_job(clock))
    assert await runtime.lease.claim(holder.job_id) is not None

    async def not_found(tenant_key, external_record_id):
        # The competing trigger inserts its row after this one looked.
        return None

    monkeypatch.setattr(runtime.lease, "find_active", not_found)
    source.set_record("rec-1", complete_record(deposit=None))
    result = await _trigger(runtime)

    assert result.outcome == "in_progress"
    assert result.job.job_id == holder.job_id
    jobs = await runtime.lease.list_jobs()
    assert [job.status for job in jobs] == [JobStatus.PROCESSING]
