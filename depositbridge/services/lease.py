from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from depositbridge.core.errors import JobNotFoundError, LeaseExpiredError
from depositbridge.domain.job import PENDING_STATUSES, TERMINAL_STATUSES, Job, JobStatus, TenantKey
from depositbridge.persistence.repos import jobs as jobs_repo
from depositbridge.persistence.serialization import FieldCodec
from depositbridge.services.archive import ArchivalService


logger = logging.getLogger(__name__)

PROCESSING_ABANDONED = "Processing abandoned"
ATTEMPTS_EXHAUSTED = "Maximum attempts reached"


@dataclass(frozen=True)
class SweepResult:
    expired_leases: int = 0
    exhausted: int = 0
    terminal_archived: int = 0

    @property
    def archived(self) -> int:
        return self.expired_leases + self.exhausted + self.terminal_archived


@dataclass(frozen=True)
class CancelResult:
    job_id: str
    # cancelled | cancel_requested | already_terminal
    outcome: str


class LeaseManager:
    """Owns the active job store and the claim/release lease primitive.

    A claim is one conditional write that flips a due pending row to
    PROCESSING and stamps a fresh lease token. Releases are conditional on
    that token, so a worker whose lease was swept cannot write stale state.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        *,
        codec: FieldCodec,
        archival: ArchivalService,
        clock: Callable[[], datetime],
        lease_timeout_minutes: float,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._codec = codec
        self._archival = archival
        self._clock = clock
        self._lease_timeout = timedelta(minutes=lease_timeout_minutes)

    async def get_job(self, job_id: str) -> Job:
        # Active store only; archived jobs are served by ArchivalService.
        async with self._sessionmaker() as session:
            row = await jobs_repo.get_job(session, job_id)
        if row is None:
            raise JobNotFoundError(f"No active job {job_id}")
        return jobs_repo.job_from_row(row)

    async def find_active(self, tenant_key: TenantKey, external_record_id: str) -> Job | None:
        # At most one active row per tenant/record pair (unique constraint).
        async with self._sessionmaker() as session:
            row = await jobs_repo.get_job_for_record(session, tenant_key.key, external_record_id)
        return jobs_repo.job_from_row(row) if row is not None else None

    async def list_jobs(
        self,
        *,
        status: str | None = None,
        tenant_key: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Job]:
        async with self._sessionmaker() as session:
            rows = await jobs_repo.list_jobs(session, status=status, tenant_key=tenant_key, limit=limit, offset=offset)
        return [jobs_repo.job_from_row(row) for row in rows]

    async def get_ready_jobs(self, batch_size: int) -> list[Job]:
        # A read-only snapshot; each job must still be claimed before it runs.
        async with self._sessionmaker() as session:
            rows = await jobs_repo.list_ready(session, now=self._clock(), limit=max(1, int(batch_size)))
        return [jobs_repo.job_from_row(row) for row in rows]

    async def claim(self, job_id: str, *, respect_schedule: bool = True) -> Job | None:
        """Lease a pending job; returns None when another worker won the race.

        Inbound triggers pass ``respect_schedule=False`` to run a pending job
        before its scheduled time.
        """

        now = self._clock()
        token = uuid4().hex
        async with self._sessionmaker() as session:
            won = await jobs_repo.claim_job(
                session, job_id, token=token, now=now, respect_schedule=respect_schedule
            )
            if not won:
                await session.rollback()
                return None
            await session.commit()
            row = await jobs_repo.get_job(session, job_id)
        if row is None or row.lease_token != token:
            return None
        logger.info("job_claimed job_id=%s attempt_count=%s", job_id, row.attempt_count)
        return jobs_repo.job_from_row(row)

    async def release_to_pending(self, job: Job, *, lease_token: str) -> bool:
        """Write a deferred job back to the queue under its lease.

        Returns False when an operator asked to cancel the job while it was in
        flight; the caller then archives it as CANCELLED. Raises
        LeaseExpiredError when the lease is no longer held.
        """

        if job.status not in PENDING_STATUSES:
            raise ValueError(f"Cannot release job {job.job_id} with status {job.status}")
        values = jobs_repo.mutable_values(job, self._codec)
        # The cancel flag is owned by the operator path; never overwrite it here.
        values.pop("cancel_requested_at", None)
        async with self._sessionmaker() as session:
            row = await jobs_repo.get_job(session, job.job_id)
            if row is None or row.lease_token != lease_token or row.status != JobStatus.PROCESSING.value:
                raise LeaseExpiredError(f"Lease on job {job.job_id} is no longer held")
            if row.cancel_requested_at is not None:
                return False
            updated = await jobs_repo.update_leased_job(session, job.job_id, lease_token=lease_token, values=values)
            if not updated:
                await session.rollback()
                raise LeaseExpiredError(f"Lease on job {job.job_id} is no longer held")
            await session.commit()
        logger.info(
            "job_released job_id=%s status=%s attempt_count=%s next_attempt_at=%s",
            job.job_id,
            job.status.value,
            job.attempt_count,
            job.next_attempt_at.isoformat(),
        )
        return True

    async def upsert_active(self, job: Job) -> Job:
        """Persist a deferred job that has no active row yet.

        A concurrent trigger may have inserted the same tenant/record pair
        first; the existing pending row is then updated instead of duplicated.
        """

        try:
            async with self._sessionmaker() as session:
                await jobs_repo.insert_job(session, job, self._codec)
                await session.commit()
            logger.info("job_persisted job_id=%s status=%s", job.job_id, job.status.value)
            return job
        except IntegrityError:
            logger.info(
                "job_persist_conflict tenant=%s record_id=%s merging_into_existing=true",
                job.tenant_key.key,
                job.external_record_id,
            )

        async with self._sessionmaker() as session:
            row = await jobs_repo.get_job_for_record(session, job.tenant_key.key, job.external_record_id)
            if row is None:
                # The competing row was archived in between; retry a plain insert.
                await jobs_repo.insert_job(session, job, self._codec)
                await session.commit()
                return job
            existing = jobs_repo.job_from_row(row)
            if existing.status not in PENDING_STATUSES:
                # Another holder owns the record right now; its outcome wins.
                return existing
            merged = replace(
                job,
                job_id=existing.job_id,
                created_at=existing.created_at,
                attempt_count=max(existing.attempt_count, job.attempt_count),
            )
            values = jobs_repo.mutable_values(merged, self._codec)
            values.pop("cancel_requested_at", None)
            await jobs_repo.update_job(session, existing.job_id, values)
            await session.commit()
        return merged

    async def sweep(self) -> SweepResult:
        """Archive terminal markers, abandoned leases and exhausted jobs."""

        # Every delete is guarded by the status and token read here, so live workers win races.
        now = self._clock()
        cutoff = now - self._lease_timeout
        expired_leases = exhausted = terminal_archived = 0
        async with self._sessionmaker() as session:
            rows = await jobs_repo.list_sweep_candidates(session)
        for row in rows:
            job = jobs_repo.job_from_row(row)
            if job.status == JobStatus.PROCESSING:
                if job.lease_started_at is not None and job.lease_started_at > cutoff:
                    continue
                expired = job.terminated(JobStatus.EXPIRED, now=now, reason=PROCESSING_ABANDONED)
                if await self._archival.archive(expired, reason=PROCESSING_ABANDONED, unchanged_from=job):
                    expired_leases += 1
                    logger.warning("lease_expired job_id=%s lease_started_at=%s", job.job_id, job.lease_started_at)
            elif job.status in TERMINAL_STATUSES:
                if await self._archival.archive(job, unchanged_from=job):
                    terminal_archived += 1
            elif job.attempts_exhausted:
                expired = job.terminated(JobStatus.EXPIRED, now=now, reason=ATTEMPTS_EXHAUSTED)
                if await self._archival.archive(expired, reason=ATTEMPTS_EXHAUSTED, unchanged_from=job):
                    exhausted += 1
        result = SweepResult(expired_leases=expired_leases, exhausted=exhausted, terminal_archived=terminal_archived)
        if result.archived:
            logger.info(
                "sweep_completed expired_leases=%s exhausted=%s terminal_archived=%s",
                expired_leases,
                exhausted,
                terminal_archived,
            )
        return result

    async def cancel(self, job_id: str, *, reason: str = "Cancelled by operator") -> CancelResult:
        # Pending jobs flip at once; in-flight jobs are flagged for the worker to honour.
        now = self._clock()
        async with self._sessionmaker() as session:
            if await jobs_repo.mark_cancelled(session, job_id, now=now, reason=reason):
                await session.commit()
                logger.info("job_cancelled job_id=%s", job_id)
                return CancelResult(job_id=job_id, outcome="cancelled")
            if await jobs_repo.request_cancel(session, job_id, now=now):
                await session.commit()
                logger.info("job_cancel_requested job_id=%s", job_id)
                return CancelResult(job_id=job_id, outcome="cancel_requested")
            row = await jobs_repo.get_job(session, job_id)
        if row is None:
            raise JobNotFoundError(f"No active job {job_id}")
        return CancelResult(job_id=job_id, outcome="already_terminal")

    async def request_retry_now(self, job_id: str) -> Job:
        # Only pending jobs move; in-flight and terminal rows are returned unchanged.
        now = self._clock()
        async with self._sessionmaker() as session:
            moved = await jobs_repo.reschedule_now(session, job_id, now=now)
            await session.commit()
            row = await jobs_repo.get_job(session, job_id)
        if row is None:
            raise JobNotFoundError(f"No active job {job_id}")
        if moved:
            logger.info("job_retry_requested job_id=%s", job_id)
        return jobs_repo.job_from_row(row)

    async def stats(self) -> dict[str, Any]:
        # Aggregates run in SQL so stats stay cheap on a large queue.
        now = self._clock()
        async with self._sessionmaker() as session:
            by_status = await jobs_repo.count_by_status(session)
            ready = await jobs_repo.count_ready(session, now=now)
            summary = await jobs_repo.attempt_and_age_summary(session)
        oldest = summary["oldest_created_at"]
        newest = summary["newest_created_at"]
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "ready_for_poll": ready,
            "average_attempts": round(summary["average_attempts"], 2),
            "oldest_created_at": oldest.isoformat() if oldest else None,
            "newest_created_at": newest.isoformat() if newest else None,
        }
