from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every dialect.

    SQLite drops tzinfo, so values are stored as naive UTC there and
    re-attached on load; Postgres keeps timestamptz semantics.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# JSONB on Postgres, plain JSON elsewhere (sqlite for local runs and tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
BigIntId = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class IntegrationJobRecord(Base):
    __tablename__ = "integration_jobs"
    __table_args__ = (
        # One active job per tenant/record pair; re-triggers update this row.
        UniqueConstraint("tenant_key", "external_record_id", name="uq_integration_jobs_tenant_record"),
        Index("ix_integration_jobs_status_next_attempt", "status", "next_attempt_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    external_record_id: Mapped[str] = mapped_column(String)
    tenant_key: Mapped[str] = mapped_column(String, index=True)
    organization_id: Mapped[str] = mapped_column(String)
    branch_id: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, index=True)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    next_attempt_at: Mapped[datetime] = mapped_column(UTCDateTime)
    # Lease columns are set together by the claim write and cleared on release.
    lease_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    lease_token: Mapped[str | None] = mapped_column(String, nullable=True)
    cancel_requested_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    test_mode: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    pending_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload_snapshot: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    missing_fields: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    last_error: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    downstream_result: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    steps: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class ArchivedJobRecord(Base):
    __tablename__ = "integration_job_archive"
    __table_args__ = (
        Index("ix_integration_job_archive_tenant_archived", "tenant_key", "archived_at"),
    )

    # Insert-only: a repeated archive call may add a second row for the same job_id.
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String, index=True)
    external_record_id: Mapped[str] = mapped_column(String)
    tenant_key: Mapped[str] = mapped_column(String)
    organization_id: Mapped[str] = mapped_column(String)
    branch_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Terminal marker (COMPLETED/FAILED/EXPIRED/CANCELLED) and its COMPLETED/FAILED classification.
    status: Mapped[str] = mapped_column(String)
    final_status: Mapped[str] = mapped_column(String, index=True)
    archive_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    test_mode: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    pending_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload_snapshot: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    missing_fields: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    last_error: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    downstream_result: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    steps: Mapped[list[dict[str, Any]] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    archived_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    tenant_key: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # Stable event taxonomy, e.g. integration.saga.completed.
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())


class PollingSettingsRecord(Base):
    __tablename__ = "polling_settings"

    # Single row keyed "default"; absent row means environment defaults apply.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    pending_data_interval_minutes: Mapped[float] = mapped_column(Float, nullable=False)
    pending_submit_interval_minutes: Mapped[float] = mapped_column(Float, nullable=False)
    backoff_multiplier: Mapped[float] = mapped_column(Float, nullable=False)
    backoff_cap_minutes: Mapped[float] = mapped_column(Float, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, server_default=func.now())
