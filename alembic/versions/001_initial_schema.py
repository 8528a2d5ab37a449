"""Initial schema with tenants, jobs and dead_letters tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JOB_STATUSES = ("pending", "processing", "completed", "failed", "dead", "cancelled")
DEAD_LETTER_STATUSES = ("pending", "retrying", "resolved", "archived")
TENANT_STATUSES = ("active", "suspended", "deleted")


def _create_enum(name: str, values: Sequence[str]) -> None:
    labels = ", ".join(f"'{value}'" for value in values)
    op.execute(f"""
        DO $$ BEGIN
            CREATE TYPE {name} AS ENUM ({labels});
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)


def upgrade() -> None:
    _create_enum("job_status", JOB_STATUSES)
    _create_enum("dead_letter_status", DEAD_LETTER_STATUSES)
    _create_enum("tenant_status", TENANT_STATUSES)

    op.create_table(
        "tenants",
        sa.Column("id", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column(
            "status",
            postgresql.ENUM(*TENANT_STATUSES, name="tenant_status", create_type=False),
            nullable=False,
            server_default="active",
        ),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column("job_type", sa.String(100), nullable=False),
        sa.Column("priority", sa.Integer, nullable=False, server_default="100"),
        sa.Column("payload", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("result", postgresql.JSONB, nullable=True),
        sa.Column(
            "status",
            postgresql.ENUM(*JOB_STATUSES, name="job_status", create_type=False),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer, nullable=False, server_default="3"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("lease_token", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("worker_id", sa.String(255), nullable=True),
        sa.Column("started_at", sa.DateTime, nullable=True),
        sa.Column("scheduled_for", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("not_before", sa.DateTime, nullable=True),
        sa.Column("cancel_requested", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("forward_to_dead_letter", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("error_stack", sa.Text, nullable=True),
        sa.Column("last_error_at", sa.DateTime, nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("priority BETWEEN 1 AND 1000", name="ck_jobs_priority"),
        sa.CheckConstraint(
            "retry_count >= 0 AND retry_count <= max_retries",
            name="ck_jobs_retry_count",
        ),
        sa.CheckConstraint(
            "status <> 'processing' OR (started_at IS NOT NULL AND lease_token IS NOT NULL)",
            name="ck_jobs_processing_lease",
        ),
    )

    op.create_index("ix_jobs_tenant_id", "jobs", ["tenant_id"])
    op.create_index("ix_jobs_status", "jobs", ["status"])
    op.create_index("ix_jobs_type_status", "jobs", ["job_type", "status"])

    # Partial index for queue polling
    op.execute("""
        CREATE INDEX ix_jobs_pending_poll
        ON jobs (status, priority, scheduled_for)
        WHERE status = 'pending'
    """)

    # Partial index for lease expiry sweeps
    op.execute("""
        CREATE INDEX ix_jobs_processing_started
        ON jobs (started_at)
        WHERE status = 'processing'
    """)

    op.create_table(
        "dead_letters",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("tenant_id", sa.String(255), nullable=True),
        sa.Column("correlation_id", sa.String(255), nullable=True),
        sa.Column("channel", sa.String(50), nullable=True),
        sa.Column("stage", sa.String(50), nullable=True),
        sa.Column("job_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("payload", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("payload_hash", sa.String(64), nullable=False),
        sa.Column("headers", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("error_message", sa.Text, nullable=False),
        sa.Column("error_code", sa.String(100), nullable=True),
        sa.Column("error_stack", sa.Text, nullable=True),
        sa.Column("failure_count", sa.Integer, nullable=False, server_default="1"),
        sa.Column("last_attempt_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column(
            "status",
            postgresql.ENUM(*DEAD_LETTER_STATUSES, name="dead_letter_status", create_type=False),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("resolution_notes", sa.Text, nullable=True),
        sa.Column("resolved_at", sa.DateTime, nullable=True),
        sa.Column("resolved_by", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_index("ix_dead_letters_retry", "dead_letters", ["status", "last_attempt_at"])
    op.create_index("ix_dead_letters_tenant", "dead_letters", ["tenant_id", "status"])
    op.create_index("ix_dead_letters_created_at", "dead_letters", ["created_at"])

    # Partial index for dedup lookups
    op.execute("""
        CREATE INDEX ix_dead_letters_dedup
        ON dead_letters (tenant_id, correlation_id, payload_hash, created_at)
        WHERE status = 'pending'
    """)


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS ix_dead_letters_dedup")
    op.drop_index("ix_dead_letters_created_at")
    op.drop_index("ix_dead_letters_tenant")
    op.drop_index("ix_dead_letters_retry")
    op.drop_table("dead_letters")

    op.execute("DROP INDEX IF EXISTS ix_jobs_processing_started")
    op.execute("DROP INDEX IF EXISTS ix_jobs_pending_poll")
    op.drop_index("ix_jobs_type_status")
    op.drop_index("ix_jobs_status")
    op.drop_index("ix_jobs_tenant_id")
    op.drop_table("jobs")

    op.drop_table("tenants")

    op.execute("DROP TYPE IF EXISTS tenant_status")
    op.execute("DROP TYPE IF EXISTS dead_letter_status")
    op.execute("DROP TYPE IF EXISTS job_status")
