from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from depositbridge.domain.job import Job
from depositbridge.domain.models import AuditEvent
from depositbridge.persistence.serialization import FieldCodec


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password"]
_REDACTED_VALUE = "[REDACTED]"

# Saga steps in execution order; audit records report progress against this list.
SAGA_STEPS = ("fetch_source", "validate", "enrich", "build_payload", "submit", "archive")


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def failure_reason_for(failed_step: str | None, category: str | None = None) -> str:
    """Map a failed step and classifier category to the audit failure taxonomy."""

    if failed_step == "submit":
        if category == "validation":
            return "DOWNSTREAM_VALIDATION_ERROR"
        if category == "authorization":
            return "DOWNSTREAM_AUTH_ERROR"
        if category in {"network", "timeout", "availability", "throttled"}:
            return "DOWNSTREAM_NETWORK_ERROR"
        return "DOWNSTREAM_PERMANENT_ERROR"
    if failed_step == "fetch_source":
        return "SOURCE_FETCH_ERROR"
    if failed_step == "validate":
        return "DATA_VALIDATION_ERROR"
    if failed_step == "build_payload":
        return "PAYLOAD_BUILD_ERROR"
    if failed_step == "attempts":
        return "ATTEMPTS_EXHAUSTED"
    if failed_step == "lease":
        return "LEASE_EXPIRED"
    if failed_step == "cancel":
        return "CANCELLED"
    return "SYSTEM_ERROR"


@dataclass(frozen=True)
class AuditRecord:
    event_type: str
    outcome: str
    occurred_at: datetime
    tenant_key: str | None = None
    resource_id: str | None = None
    actor_type: str = "system"
    actor_id: str | None = None
    resource_type: str = "integration_job"
    request_id: str | None = None
    error_code: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class AuditSink(Protocol):
    async def record(self, record: AuditRecord) -> None:
        ...


def integration_record(
    job: Job,
    *,
    outcome: str,
    occurred_at: datetime,
    source: str,
    failed_step: str | None = None,
    failure_category: str | None = None,
    description: str | None = None,
) -> AuditRecord:
    # One audit row per terminal saga outcome, carrying step progress counts.
    completed_steps = [step.step_name for step in job.steps if step.outcome == "succeeded"]
    metadata: dict[str, Any] = {
        "external_record_id": job.external_record_id,
        "source": source,
        "test_mode": job.test_mode,
        "attempt_count": job.attempt_count,
        "total_steps": len(SAGA_STEPS),
        "completed_steps": len(completed_steps),
        "steps": [step.to_dict() for step in job.steps],
    }
    error_code = None
    if outcome == "success":
        metadata["correlation_ids"] = dict((job.downstream_result or {}).get("correlation_ids") or {})
    else:
        error_code = failure_reason_for(failed_step, failure_category)
        metadata.update(
            {
                "failed_step": failed_step,
                "failure_reason": error_code,
                "failure_category": failure_category or "unknown",
                "failure_description": description or "No description provided",
            }
        )
    return AuditRecord(
        event_type=f"integration.saga.{'completed' if outcome == 'success' else 'failed'}",
        outcome=outcome,
        occurred_at=occurred_at,
        tenant_key=job.tenant_key.key,
        resource_id=job.job_id,
        error_code=error_code,
        metadata=metadata,
    )


class DatabaseAuditSink:
    """Writes audit rows in their own session so they never share a job transaction."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession], *, max_metadata_bytes: int | None = None) -> None:
        self._sessionmaker = sessionmaker
        self._codec = FieldCodec(max_metadata_bytes) if max_metadata_bytes else None

    async def record(self, record: AuditRecord) -> None:
        # Write audit rows in a best-effort manner to avoid breaking integration flows.
        metadata = sanitize_metadata(record.metadata or {})
        if self._codec is not None:
            metadata = self._codec.encode(metadata)
        event = AuditEvent(
            occurred_at=record.occurred_at,
            tenant_key=record.tenant_key,
            actor_type=record.actor_type,
            actor_id=record.actor_id,
            event_type=record.event_type,
            outcome=record.outcome,
            resource_type=record.resource_type,
            resource_id=record.resource_id,
            request_id=record.request_id,
            metadata_json=metadata,
            error_code=record.error_code,
        )
        try:
            async with self._sessionmaker() as session:
                session.add(event)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.warning(
                "audit_event_write_failed event_type=%s resource_id=%s",
                record.event_type,
                record.resource_id,
                exc_info=exc,
            )


async def emit(sink: AuditSink, record: AuditRecord) -> None:
    # Audit is side-channel; no sink failure may change a saga outcome.
    try:
        await sink.record(record)
    except Exception as exc:  # noqa: BLE001 - audit failures are absorbed locally
        logger.warning("audit_sink_failed event_type=%s resource_id=%s", record.event_type, record.resource_id, exc_info=exc)
