"""create integration job, archive, audit and polling settings tables

Revision ID: 0001_init
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None

_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    # Active store: one row per tenant/record pair while the job is live.
    op.create_table(
        "integration_jobs",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("external_record_id", sa.String(), nullable=False),
        sa.Column("tenant_key", sa.String(), nullable=False),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("branch_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("lease_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lease_token", sa.String(), nullable=True),
        sa.Column("cancel_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("test_mode", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("pending_reason", sa.Text(), nullable=True),
        sa.Column("payload_snapshot", _JSON, nullable=True),
        sa.Column("missing_fields", _JSON, nullable=True),
        sa.Column("last_error", _JSON, nullable=True),
        sa.Column("downstream_result", _JSON, nullable=True),
        sa.Column("steps", _JSON, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("tenant_key", "external_record_id", name="uq_integration_jobs_tenant_record"),
    )
    op.create_index("ix_integration_jobs_tenant_key", "integration_jobs", ["tenant_key"], unique=False)
    op.create_index("ix_integration_jobs_status", "integration_jobs", ["status"], unique=False)
    op.create_index(
        "ix_integration_jobs_status_next_attempt",
        "integration_jobs",
        ["status", "next_attempt_at"],
        unique=False,
    )

    op.create_table(
        "integration_job_archive",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("external_record_id", sa.String(), nullable=False),
        sa.Column("tenant_key", sa.String(), nullable=False),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("branch_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("final_status", sa.String(), nullable=False),
        sa.Column("archive_reason", sa.Text(), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("test_mode", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("pending_reason", sa.Text(), nullable=True),
        sa.Column("payload_snapshot", _JSON, nullable=True),
        sa.Column("missing_fields", _JSON, nullable=True),
        sa.Column("last_error", _JSON, nullable=True),
        sa.Column("downstream_result", _JSON, nullable=True),
        sa.Column("steps", _JSON, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_integration_job_archive_job_id", "integration_job_archive", ["job_id"], unique=False)
    op.create_index(
        "ix_integration_job_archive_final_status", "integration_job_archive", ["final_status"], unique=False
    )
    op.create_index(
        "ix_integration_job_archive_archived_at", "integration_job_archive", ["archived_at"], unique=False
    )
    op.create_index(
        "ix_integration_job_archive_tenant_archived",
        "integration_job_archive",
        ["tenant_key", "archived_at"],
        unique=False,
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tenant_key", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("metadata_json", _JSON, nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"], unique=False)
    op.create_index("ix_audit_events_tenant_key", "audit_events", ["tenant_key"], unique=False)
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"], unique=False)
    op.create_index("ix_audit_events_resource_id", "audit_events", ["resource_id"], unique=False)

    op.create_table(
        "polling_settings",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("pending_data_interval_minutes", sa.Float(), nullable=False),
        sa.Column("pending_submit_interval_minutes", sa.Float(), nullable=False),
        sa.Column("backoff_multiplier", sa.Float(), nullable=False),
        sa.Column("backoff_cap_minutes", sa.Float(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("updated_by", sa.String(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("polling_settings")
    op.drop_index("ix_audit_events_resource_id", table_name="audit_events")
    op.drop_index("ix_audit_events_event_type", table_name="audit_events")
    op.drop_index("ix_audit_events_tenant_key", table_name="audit_events")
    op.drop_index("ix_audit_events_occurred_at", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("ix_integration_job_archive_tenant_archived", table_name="integration_job_archive")
    op.drop_index("ix_integration_job_archive_archived_at", table_name="integration_job_archive")
    op.drop_index("ix_integration_job_archive_final_status", table_name="integration_job_archive")
    op.drop_index("ix_integration_job_archive_job_id", table_name="integration_job_archive")
    op.drop_table("integration_job_archive")
    op.drop_index("ix_integration_jobs_status_next_attempt", table_name="integration_jobs")
    op.drop_index("ix_integration_jobs_status", table_name="integration_jobs")
    op.drop_index("ix_integration_jobs_tenant_key", table_name="integration_jobs")
    op.drop_table("integration_jobs")
