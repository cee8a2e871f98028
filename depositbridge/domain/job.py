from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4


class JobStatus(str, Enum):
    PENDING_DATA = "PENDING_DATA"
    PENDING_SUBMIT = "PENDING_SUBMIT"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


PENDING_STATUSES = frozenset({JobStatus.PENDING_DATA, JobStatus.PENDING_SUBMIT})
TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.EXPIRED, JobStatus.CANCELLED}
)


class FinalStatus(str, Enum):
    # Archive classification: only a completed submission counts as success.
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


def final_status_for(status: JobStatus) -> FinalStatus:
    return FinalStatus.COMPLETED if status == JobStatus.COMPLETED else FinalStatus.FAILED


@dataclass(frozen=True)
class TenantKey:
    """Source organization plus optional sub-branch."""

    organization_id: str
    branch_id: str | None = None

    @property
    def key(self) -> str:
        return f"{self.organization_id}:{self.branch_id or '*'}"


@dataclass(frozen=True)
class StepRecord:
    step_name: str
    outcome: str
    started_at: datetime
    finished_at: datetime | None = None
    attempt: int = 0
    detail: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_name": self.step_name,
            "outcome": self.outcome,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "attempt": self.attempt,
            "detail": dict(self.detail),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "StepRecord":
        finished = raw.get("finished_at")
        return cls(
            step_name=str(raw.get("step_name") or "unknown"),
            outcome=str(raw.get("outcome") or "unknown"),
            started_at=datetime.fromisoformat(raw["started_at"]),
            finished_at=datetime.fromisoformat(finished) if finished else None,
            attempt=int(raw.get("attempt") or 0),
            detail=dict(raw.get("detail") or {}),
        )


@dataclass(frozen=True)
class Job:
    """Immutable snapshot of one integration job.

    Every state change produces a new value via one of the transition
    helpers below; persistence maps values to rows and back. A job whose
    ``lease_token`` is None has no active-store lease: either it is pending,
    or it is a fresh on-demand job that has not been persisted yet.
    """

    job_id: str
    external_record_id: str
    tenant_key: TenantKey
    status: JobStatus
    attempt_count: int
    max_attempts: int
    next_attempt_at: datetime
    created_at: datetime
    updated_at: datetime
    lease_started_at: datetime | None = None
    lease_token: str | None = None
    cancel_requested_at: datetime | None = None
    last_attempt_at: datetime | None = None
    completed_at: datetime | None = None
    test_mode: bool = False
    pending_reason: str | None = None
    payload_snapshot: dict[str, Any] | None = None
    missing_fields: dict[str, list[str]] = field(default_factory=dict)
    last_error: dict[str, Any] | None = None
    downstream_result: dict[str, Any] | None = None
    steps: tuple[StepRecord, ...] = ()
    # History entries lost to the field size cap on earlier writes.
    steps_dropped: int = 0

    @classmethod
    def new(
        cls,
        *,
        external_record_id: str,
        tenant_key: TenantKey,
        max_attempts: int,
        now: datetime,
        test_mode: bool = False,
    ) -> "Job":
        # Fresh on-demand jobs run in-process before any row exists.
        return cls(
            job_id=uuid4().hex,
            external_record_id=external_record_id,
            tenant_key=tenant_key,
            status=JobStatus.PROCESSING,
            attempt_count=0,
            max_attempts=max(1, int(max_attempts)),
            next_attempt_at=now,
            created_at=now,
            updated_at=now,
            lease_started_at=now,
            test_mode=test_mode,
        )

    @property
    def is_leased(self) -> bool:
        return self.lease_token is not None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempt_count >= self.max_attempts

    def next_attempt_number(self) -> int:
        return min(self.attempt_count + 1, self.max_attempts)

    def with_step(self, record: StepRecord) -> "Job":
        return replace(self, steps=self.steps + (record,))

    def with_snapshot(self, snapshot: dict[str, Any] | None) -> "Job":
        return replace(self, payload_snapshot=snapshot)

    def deferred(
        self,
        *,
        status: JobStatus,
        next_attempt_at: datetime,
        now: datetime,
        reason: str,
        missing_fields: dict[str, list[str]] | None = None,
        last_error: dict[str, Any] | None = None,
    ) -> "Job":
        if status not in PENDING_STATUSES:
            raise ValueError(f"{status} is not a pending status")
        return replace(
            self,
            status=status,
            attempt_count=self.next_attempt_number(),
            next_attempt_at=next_attempt_at,
            lease_started_at=None,
            lease_token=None,
            pending_reason=reason,
            missing_fields=missing_fields if missing_fields is not None else self.missing_fields,
            last_error=last_error if last_error is not None else self.last_error,
            updated_at=now,
        )

    def terminated(
        self,
        status: JobStatus,
        *,
        now: datetime,
        reason: str,
        last_error: dict[str, Any] | None = None,
        downstream_result: dict[str, Any] | None = None,
    ) -> "Job":
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status} is not a terminal status")
        return replace(
            self,
            status=status,
            pending_reason=reason,
            last_error=last_error if last_error is not None else self.last_error,
            downstream_result=downstream_result if downstream_result is not None else self.downstream_result,
            completed_at=now,
            updated_at=now,
        )
