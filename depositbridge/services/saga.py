from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from depositbridge.core.errors import (
    DataIncompleteDeferrable,
    DataIncompleteFatal,
    DownstreamError,
    DownstreamPermanentError,
    DownstreamTransientError,
    LeaseExpiredError,
    PayloadBuildError,
    SourceFetchError,
)
from depositbridge.domain.job import PENDING_STATUSES, Job, JobStatus, StepRecord, TenantKey
from depositbridge.providers.downstream.base import DownstreamClient, SubmitOutcome
from depositbridge.providers.source.base import SourceClient
from depositbridge.services.archive import ArchivalService
from depositbridge.services.audit import AuditSink, emit, integration_record
from depositbridge.services.classifier import PERMANENT, TRANSIENT, Classification, ErrorClassifier
from depositbridge.services.completeness import CompletenessResult, validate_completeness, waits_for_submission
from depositbridge.services.enrichment import Enricher
from depositbridge.services.lease import LeaseManager
from depositbridge.services.payload import build_payload
from depositbridge.services.polling_settings import PollingSettingsProvider
from depositbridge.services.resilience import with_timeout
from depositbridge.services.scheduler import next_attempt_at


logger = logging.getLogger(__name__)


class ExecutionMode(str, Enum):
    ON_DEMAND = "on_demand"
    RETRY = "retry"


@dataclass(frozen=True)
class SagaResult:
    # success | deferred | fatal | failed | expired | cancelled | in_progress
    outcome: str
    job: Job
    failed_step: str | None = None
    reason: str | None = None
    classification: dict[str, Any] | None = None
    missing_fields: dict[str, list[str]] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.outcome in {"success", "fatal", "failed", "expired", "cancelled"}


def _pending_status_for(missing_fields: dict[str, list[str]] | None) -> JobStatus:
    # Deposit-only gaps wait for submission data; anything else waits for source data.
    if waits_for_submission(missing_fields):
        return JobStatus.PENDING_SUBMIT
    return JobStatus.PENDING_DATA


class SagaExecutor:
    """Runs the linear integration saga for one job.

    fetch_source -> validate -> enrich -> build_payload -> submit, with one
    deferral point: incomplete-but-deferrable data or a transient failure
    puts the job back in the pending queue. Every terminal outcome is archived.
    """

    def __init__(
        self,
        *,
        source: SourceClient,
        downstream: DownstreamClient,
        enricher: Enricher,
        classifier: ErrorClassifier,
        polling_settings: PollingSettingsProvider,
        lease: LeaseManager,
        archival: ArchivalService,
        audit_sink: AuditSink,
        clock: Callable[[], datetime],
        timeout_ms: int,
        fetch_timeout_ms: int | None = None,
    ) -> None:
        self._source = source
        self._downstream = downstream
        self._enricher = enricher
        self._classifier = classifier
        self._polling_settings = polling_settings
        self._lease = lease
        self._archival = archival
        self._audit_sink = audit_sink
        self._clock = clock
        self._timeout_ms = timeout_ms
        # Source reads retry in-call, so the step deadline spans the whole retry budget.
        self._fetch_timeout_ms = fetch_timeout_ms or timeout_ms

    async def trigger(
        self,
        *,
        external_record_id: str,
        tenant_key: TenantKey,
        test_mode: bool = False,
    ) -> SagaResult:
        """Inbound trigger: run the saga now for a tenant/record pair.

        An existing pending job for the pair is claimed and run immediately
        instead of creating a duplicate.
        """

        existing = await self._lease.find_active(tenant_key, external_record_id)
        job: Job | None = None
        if existing is not None:
            if existing.is_terminal:
                # A terminal marker awaiting the sweep must not block a new run.
                await self._archival.archive(existing, unchanged_from=existing)
            elif existing.status == JobStatus.PROCESSING:
                return SagaResult("in_progress", existing, reason="Job is already being processed")
            else:
                job = await self._lease.claim(existing.job_id, respect_schedule=False)
                if job is None:
                    return SagaResult("in_progress", existing, reason="Job is already being processed")
        if job is None:
            config = await self._polling_settings.current()
            job = Job.new(
                external_record_id=external_record_id,
                tenant_key=tenant_key,
                max_attempts=config.max_attempts,
                now=self._clock(),
                test_mode=test_mode,
            )
        logger.info(
            "saga_triggered job_id=%s record_id=%s tenant=%s existing=%s",
            job.job_id,
            external_record_id,
            tenant_key.key,
            job.is_leased,
        )
        if not job.is_leased:
            return await self.execute(job, mode=ExecutionMode.ON_DEMAND)
        try:
            return await self.execute(job, mode=ExecutionMode.ON_DEMAND)
        except Exception as exc:
            # A claimed job goes back to the queue before the error reaches the caller.
            logger.exception("saga_trigger_failed job_id=%s", job.job_id)
            try:
                await self.recover(job, exc, mode=ExecutionMode.ON_DEMAND)
            except Exception:  # noqa: BLE001 - the sweep reclaims the lease later
                logger.exception("saga_trigger_recover_failed job_id=%s", job.job_id)
            raise

    async def execute(self, job: Job, *, mode: ExecutionMode) -> SagaResult:
        # A lost lease ends this run quietly; the sweep already archived the job.
        try:
            return await self._run(job, mode)
        except LeaseExpiredError as exc:
            logger.warning("saga_lease_lost job_id=%s mode=%s", job.job_id, mode.value)
            return SagaResult("failed", job, failed_step="lease", reason=str(exc))

    async def recover(self, job: Job, exc: Exception, *, mode: ExecutionMode = ExecutionMode.RETRY) -> SagaResult:
        """Put a leased job back in the queue after an unexpected error."""

        error = {"classification": TRANSIENT, "category": "system", "description": f"{type(exc).__name__}: {exc}"}
        try:
            return await self._defer(
                job,
                _pending_status_for(job.missing_fields),
                reason="Unexpected error; will retry",
                mode=mode,
                last_error=error,
                failed_step="system",
            )
        except LeaseExpiredError as lease_exc:
            logger.warning("saga_recover_lease_lost job_id=%s", job.job_id)
            return SagaResult("failed", job, failed_step="lease", reason=str(lease_exc))

    def _step(self, job: Job, name: str, outcome: str, started_at: datetime, **detail: Any) -> Job:
        # Step records carry the attempt they belong to, so history reads per retry.
        return job.with_step(
            StepRecord(
                step_name=name,
                outcome=outcome,
                started_at=started_at,
                finished_at=self._clock(),
                attempt=job.next_attempt_number(),
                detail=detail,
            )
        )

    async def _run(self, job: Job, mode: ExecutionMode) -> SagaResult:
        # Each step returns a new Job value; only deferral and terminal paths touch storage.
        started = self._clock()
        try:
            record = await with_timeout(
                lambda: self._source.fetch_record(job.external_record_id, job.tenant_key),
                timeout_ms=self._fetch_timeout_ms,
            )
        except (SourceFetchError, TimeoutError) as exc:
            reason = str(exc) or "Source fetch timed out"
            job = self._step(job, "fetch_source", "failed", started, error=reason)
            error = {"classification": TRANSIENT, "category": "source", "description": reason}
            if job.is_leased:
                return await self._defer(
                    job,
                    _pending_status_for(job.missing_fields),
                    reason=f"Source unavailable: {reason}",
                    mode=mode,
                    last_error=error,
                    failed_step="fetch_source",
                )
            # A fresh job has nothing persisted to retry; the caller re-triggers.
            await self._audit_failure(job, mode, "fetch_source", "source", reason)
            return SagaResult("failed", job, failed_step="fetch_source", reason=reason, classification=error)
        job = self._step(job.with_snapshot(record), "fetch_source", "succeeded", started)

        started = self._clock()
        completeness = validate_completeness(record)
        try:
            self._raise_for_completeness(completeness)
        except DataIncompleteFatal as exc:
            job = self._step(job, "validate", "fatal", started, missing_fields=exc.missing_fields)
            job = replace(job, missing_fields=exc.missing_fields)
            return await self._finish_failed(
                job, mode, outcome="fatal", failed_step="validate", category="validation", reason=str(exc)
            )
        except DataIncompleteDeferrable as exc:
            job = self._step(job, "validate", "deferred", started, missing_fields=exc.missing_fields)
            return await self._defer(
                job,
                _pending_status_for(exc.missing_fields),
                reason=f"Waiting for: {exc.summary}",
                mode=mode,
                missing_fields=exc.missing_fields,
            )
        job = self._step(replace(job, missing_fields={}), "validate", "succeeded", started)

        started = self._clock()
        enrichment = await self._enricher.enrich(record, test_mode=job.test_mode)
        job = self._step(
            job,
            "enrich",
            "degraded" if enrichment.degraded else "succeeded",
            started,
            **enrichment.to_dict(),
        )

        started = self._clock()
        try:
            payload = build_payload(record, enrichment, job.tenant_key)
        except PayloadBuildError as exc:
            job = self._step(job, "build_payload", "fatal", started, error=str(exc))
            return await self._finish_failed(
                job, mode, outcome="fatal", failed_step="build_payload", category="payload", reason=str(exc)
            )
        job = self._step(job, "build_payload", "succeeded", started)

        started = self._clock()
        classification = await self._submit(payload)
        if isinstance(classification, SubmitOutcome):
            downstream_result = {
                "correlation_ids": dict(classification.correlation_ids),
                "status_code": classification.status_code,
            }
            job = self._step(job, "submit", "succeeded", started, **downstream_result)
            completed = job.terminated(
                JobStatus.COMPLETED,
                now=self._clock(),
                reason="Submitted downstream",
                downstream_result=downstream_result,
            )
            await self._archival.archive(completed, reason="Submitted downstream")
            await emit(
                self._audit_sink,
                integration_record(completed, outcome="success", occurred_at=self._clock(), source=mode.value),
            )
            logger.info("saga_completed job_id=%s attempts=%s", completed.job_id, completed.attempt_count)
            return SagaResult("success", completed)

        job = self._step(job, "submit", "failed", started, **classification.to_dict())
        if classification.is_permanent:
            return await self._finish_failed(
                job,
                mode,
                outcome="failed",
                failed_step="submit",
                category=classification.category,
                reason=classification.description,
                error=classification.to_dict(),
            )
        return await self._defer(
            job,
            JobStatus.PENDING_SUBMIT,
            reason=f"Downstream temporarily unavailable: {classification.description}",
            mode=mode,
            last_error=classification.to_dict(),
            failed_step="submit",
        )

    @staticmethod
    def _raise_for_completeness(result: CompletenessResult) -> None:
        # Fatal gaps (identity, structure) are checked before deferrable ones.
        if result.is_complete:
            return
        if not result.deferrable:
            raise DataIncompleteFatal(result.summary, result.missing_fields)
        raise DataIncompleteDeferrable(result.summary, result.missing_fields)

    async def _submit(self, payload: dict[str, Any]) -> SubmitOutcome | Classification:
        # Successful submissions return the outcome; everything else a classification.
        try:
            outcome = await with_timeout(lambda: self._downstream.submit(payload), timeout_ms=self._timeout_ms)
        except TimeoutError:
            return Classification(TRANSIENT, "timeout", "Downstream submission timed out")
        except DownstreamTransientError as exc:
            return Classification(TRANSIENT, exc.classification.get("category", "network"), str(exc))
        except DownstreamPermanentError as exc:
            return Classification(PERMANENT, exc.classification.get("category", "unknown"), str(exc))
        except DownstreamError as exc:
            return self._classifier.classify(str(exc))
        if outcome.success:
            return outcome
        return self._classifier.classify(outcome.message)

    async def _finish_failed(
        self,
        job: Job,
        mode: ExecutionMode,
        *,
        outcome: str,
        failed_step: str,
        category: str,
        reason: str,
        error: dict[str, Any] | None = None,
    ) -> SagaResult:
        # Archive first, then audit; an audit failure never changes the outcome.
        error = error or {"classification": PERMANENT, "category": category, "description": reason}
        failed = job.terminated(JobStatus.FAILED, now=self._clock(), reason=reason, last_error=error)
        await self._archival.archive(failed, reason=reason)
        await self._audit_failure(failed, mode, failed_step, category, reason)
        logger.info("saga_failed job_id=%s step=%s category=%s", failed.job_id, failed_step, category)
        return SagaResult(
            outcome,
            failed,
            failed_step=failed_step,
            reason=reason,
            classification=error,
            missing_fields=dict(failed.missing_fields),
        )

    async def _audit_failure(
        self, job: Job, mode: ExecutionMode, failed_step: str, category: str | None, reason: str
    ) -> None:
        await emit(
            self._audit_sink,
            integration_record(
                job,
                outcome="failure",
                occurred_at=self._clock(),
                source=mode.value,
                failed_step=failed_step,
                failure_category=category,
                description=reason,
            ),
        )

    async def _defer(
        self,
        job: Job,
        status: JobStatus,
        *,
        reason: str,
        mode: ExecutionMode,
        missing_fields: dict[str, list[str]] | None = None,
        last_error: dict[str, Any] | None = None,
        failed_step: str | None = None,
    ) -> SagaResult:
        # The single deferral point: re-pend with backoff, or expire once the cap is reached.
        now = self._clock()
        attempt = job.next_attempt_number()
        if attempt >= job.max_attempts:
            # The increment reaches the cap: terminal instead of another retry.
            exhausted = replace(job, attempt_count=attempt, missing_fields=missing_fields or job.missing_fields)
            expired = exhausted.terminated(
                JobStatus.EXPIRED,
                now=now,
                reason=f"Maximum attempts reached: {reason}",
                last_error=last_error,
            )
            await self._archival.archive(expired)
            await self._audit_failure(expired, mode, "attempts", (last_error or {}).get("category"), reason)
            logger.info("saga_expired job_id=%s attempts=%s", expired.job_id, expired.attempt_count)
            return SagaResult(
                "expired",
                expired,
                failed_step=failed_step or "attempts",
                reason=expired.pending_reason,
                classification=last_error,
                missing_fields=dict(expired.missing_fields),
            )

        config = await self._polling_settings.current()
        when = next_attempt_at(
            attempt,
            base_interval_minutes=config.base_interval_for(status),
            multiplier=config.backoff_multiplier,
            cap_minutes=config.backoff_cap_minutes,
            now=now,
        )
        deferred = job.deferred(
            status=status,
            next_attempt_at=when,
            now=now,
            reason=reason,
            missing_fields=missing_fields,
            last_error=last_error,
        )
        if job.is_leased:
            released = await self._lease.release_to_pending(deferred, lease_token=job.lease_token)
            if not released:
                cancelled = job.terminated(JobStatus.CANCELLED, now=now, reason="Cancelled by operator")
                await self._archival.archive(cancelled)
                logger.info("saga_cancelled job_id=%s", job.job_id)
                return SagaResult("cancelled", cancelled, reason=cancelled.pending_reason)
        else:
            persisted = await self._lease.upsert_active(deferred)
            if persisted.status not in PENDING_STATUSES:
                # A concurrent trigger holds the record; its run decides the outcome.
                logger.info("saga_defer_lost_race job_id=%s holder=%s", deferred.job_id, persisted.job_id)
                return SagaResult("in_progress", persisted, reason="Job is already being processed")
            deferred = persisted
        logger.info(
            "saga_deferred job_id=%s status=%s attempt=%s next_attempt_at=%s",
            deferred.job_id,
            deferred.status.value,
            deferred.attempt_count,
            deferred.next_attempt_at.isoformat(),
        )
        return SagaResult(
            "deferred",
            deferred,
            failed_step=failed_step,
            reason=reason,
            classification=last_error,
            missing_fields=dict(deferred.missing_fields),
        )
