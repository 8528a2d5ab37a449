"""
SQLAlchemy database models.
Defines the tenants, jobs and dead_letters tables.
"""

from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from jobcore.constants import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_PRIORITY,
    TERMINAL_JOB_STATUSES,
    DeadLetterStatus,
    JobStatus,
    TenantStatus,
)
from jobcore.utils import utcnow

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _enum_values(enum_cls):
    return [e.value for e in enum_cls]


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Tenant(Base):
    """
    Tenant account as seen by the scheduling core.

    Only the status is consulted, by the claim query's tenant gate.
    Account management lives outside this package.
    """

    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[TenantStatus] = mapped_column(
        Enum(
            TenantStatus,
            name="tenant_status",
            create_constraint=True,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=TenantStatus.ACTIVE,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return f"Tenant(id={self.id}, status={self.status})"


class Job(Base):
    """
    Job model representing a unit of work in the queue.

    This is the authoritative source of truth for job state.
    All job lifecycle transitions are managed through this table.

    Key constraints:
    - status transitions follow the defined state machine
    - processing rows always carry started_at and lease_token
    - retry_count never exceeds max_retries once a transition commits
    """

    __tablename__ = "jobs"

    # Primary key
    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
        nullable=False,
    )

    # Identity
    tenant_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    job_type: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    priority: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=DEFAULT_PRIORITY,
    )

    # Payload and result
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
    )
    result: Mapped[dict[str, Any] | None] = mapped_column(
        JSONType,
        nullable=True,
    )

    # Status
    status: Mapped[JobStatus] = mapped_column(
        Enum(
            JobStatus,
            name="job_status",
            create_constraint=True,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=JobStatus.PENDING,
        index=True,
    )

    # Retry tracking
    retry_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    max_retries: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=DEFAULT_MAX_RETRIES,
    )
    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    # Lease management
    lease_token: Mapped[UUID | None] = mapped_column(
        Uuid,
        nullable=True,
    )
    worker_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )

    # Scheduling
    scheduled_for: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
    )
    not_before: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )

    # Cooperative cancellation and dead-job forwarding
    cancel_requested: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    forward_to_dead_letter: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )

    # Error tracking
    error_message: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    error_stack: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    last_error_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )

    # Table constraints and indexes
    __table_args__ = (
        CheckConstraint("priority BETWEEN 1 AND 1000", name="ck_jobs_priority"),
        CheckConstraint(
            "retry_count >= 0 AND retry_count <= max_retries",
            name="ck_jobs_retry_count",
        ),
        CheckConstraint(
            "status <> 'processing' OR (started_at IS NOT NULL AND lease_token IS NOT NULL)",
            name="ck_jobs_processing_lease",
        ),
        # Index for efficient queue polling
        Index(
            "ix_jobs_pending_poll",
            "status",
            "priority",
            "scheduled_for",
            postgresql_where=text("status = 'pending'"),
        ),
        # Index for lease expiry sweeps
        Index(
            "ix_jobs_processing_started",
            "started_at",
            postgresql_where=text("status = 'processing'"),
        ),
        Index("ix_jobs_type_status", "job_type", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        """Check if the job reached a terminal state."""
        return self.status in TERMINAL_JOB_STATUSES

    @property
    def is_retryable(self) -> bool:
        """Check if another failure would be retried."""
        return self.retry_count < self.max_retries

    def lease_deadline(self, lease_timeout: timedelta) -> datetime | None:
        """Deadline of the current lease, or None when not processing."""
        if self.status != JobStatus.PROCESSING or self.started_at is None:
            return None
        return self.started_at + lease_timeout

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, tenant={self.tenant_id}, type={self.job_type}, "
            f"status={self.status}, retries={self.retry_count}/{self.max_retries})"
        )


class DeadLetter(Base):
    """
    Dead letter entry for a terminally problematic unit of work.

    Entries may stand for a dead job or for inbound input that never
    became a job (a malformed webhook, for instance). Repeated failures of
    the same content inside the dedup window share one row.
    """

    __tablename__ = "dead_letters"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
        nullable=False,
    )

    # Identity
    tenant_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    channel: Mapped[str | None] = mapped_column(String(50), nullable=True)
    stage: Mapped[str | None] = mapped_column(String(50), nullable=True)
    job_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)

    # Content
    payload: Mapped[Any] = mapped_column(JSONType, nullable=False, default=dict)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    headers: Mapped[dict[str, Any]] = mapped_column(
        JSONType, nullable=False, default=dict
    )
    error_message: Mapped[str] = mapped_column(Text, nullable=False)
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_stack: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Failure tracking
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_attempt_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )

    status: Mapped[DeadLetterStatus] = mapped_column(
        Enum(
            DeadLetterStatus,
            name="dead_letter_status",
            create_constraint=True,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=DeadLetterStatus.PENDING,
    )

    # Resolution
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        # Dedup lookups
        Index(
            "ix_dead_letters_dedup",
            "tenant_id",
            "correlation_id",
            "payload_hash",
            "created_at",
            postgresql_where=text("status = 'pending'"),
        ),
        # Retry polling
        Index(
            "ix_dead_letters_retry",
            "status",
            "last_attempt_at",
        ),
        Index("ix_dead_letters_tenant", "tenant_id", "status"),
        Index("ix_dead_letters_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"DeadLetter(id={self.id}, tenant={self.tenant_id}, "
            f"status={self.status}, failures={self.failure_count})"
        )
