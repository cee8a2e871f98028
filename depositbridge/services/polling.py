from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass

from depositbridge.domain.job import Job
from depositbridge.services.lease import LeaseManager
from depositbridge.services.saga import ExecutionMode, SagaExecutor, SagaResult


logger = logging.getLogger(__name__)

_FAILED_OUTCOMES = {"fatal", "failed", "expired", "cancelled"}


@dataclass(frozen=True)
class TickResult:
    processed: int = 0
    completed: int = 0
    failed: int = 0
    still_pending: int = 0
    swept: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class PollingService:
    """One polling tick: a sweep, then one bounded batch of due retries."""

    def __init__(
        self,
        *,
        lease: LeaseManager,
        saga: SagaExecutor,
        batch_size: int,
        concurrency: int,
    ) -> None:
        self._lease = lease
        self._saga = saga
        self._batch_size = max(1, int(batch_size))
        self._concurrency = max(1, int(concurrency))

    async def _process(self, job: Job, semaphore: asyncio.Semaphore) -> SagaResult | None:
        # Claim inside the semaphore so a job is leased only when a slot is free to run it.
        async with semaphore:
            claimed = await self._lease.claim(job.job_id)
            if claimed is None:
                # Another worker or an inbound trigger took it first.
                return None
            try:
                return await self._saga.execute(claimed, mode=ExecutionMode.RETRY)
            except Exception as exc:  # noqa: BLE001 - tick errors must never escape the tick
                logger.exception("polling_job_failed job_id=%s", claimed.job_id)
                try:
                    return await self._saga.recover(claimed, exc)
                except Exception:  # noqa: BLE001 - the sweep reclaims the lease later
                    logger.exception("polling_job_recover_failed job_id=%s", claimed.job_id)
                    return SagaResult("failed", claimed, failed_step="system", reason=str(exc))

    async def run_tick(self) -> TickResult:
        # Sweep first so expired leases and terminal markers never count as ready work.
        try:
            sweep = await self._lease.sweep()
        except Exception:  # noqa: BLE001 - a failed sweep must not block retries
            logger.exception("polling_sweep_failed")
            swept = 0
        else:
            swept = sweep.archived

        jobs = await self._lease.get_ready_jobs(self._batch_size)
        semaphore = asyncio.Semaphore(self._concurrency)
        results = await asyncio.gather(*(self._process(job, semaphore) for job in jobs))

        processed = completed = failed = still_pending = skipped = 0
        for result in results:
            if result is None:
                skipped += 1
                continue
            processed += 1
            if result.outcome == "success":
                completed += 1
            elif result.outcome in _FAILED_OUTCOMES:
                failed += 1
            else:
                still_pending += 1
        tick = TickResult(
            processed=processed,
            completed=completed,
            failed=failed,
            still_pending=still_pending,
            swept=swept,
            skipped=skipped,
        )
        logger.info(
            "polling_tick_completed processed=%s completed=%s failed=%s still_pending=%s swept=%s skipped=%s",
            processed,
            completed,
            failed,
            still_pending,
            swept,
            skipped,
        )
        return tick
