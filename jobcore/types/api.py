"""
API request and response type definitions.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from jobcore.constants import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_PRIORITY,
    MAX_PRIORITY,
    MIN_PRIORITY,
    DeadLetterStatus,
    JobStatus,
    JobType,
)


class EnqueueJobRequest(BaseModel):
    """Request body for enqueuing a new job."""

    tenant_id: str | None = Field(
        default=None,
        description="Target tenant. Operators only; defaults to the caller's tenant",
    )
    job_type: JobType = Field(..., description="Job type")
    payload: dict[str, Any] = Field(default_factory=dict, description="Job payload data")
    priority: int = Field(
        default=DEFAULT_PRIORITY,
        ge=MIN_PRIORITY,
        le=MAX_PRIORITY,
        description="Lower runs first",
    )
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0, le=20)
    scheduled_for: datetime | None = Field(
        default=None, description="Not eligible before this time (UTC)"
    )
    not_before: datetime | None = None
    forward_to_dead_letter: bool = Field(
        default=False, description="Copy the job to the dead letter store if it dies"
    )


class JobResponse(BaseModel):
    """Full job details response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    job_type: str
    priority: int
    payload: dict[str, Any]
    result: dict[str, Any] | None
    status: JobStatus
    retry_count: int
    max_retries: int
    attempts: int
    worker_id: str | None
    started_at: datetime | None
    scheduled_for: datetime
    not_before: datetime | None
    cancel_requested: bool
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None
    error_message: str | None
    last_error_at: datetime | None


class JobListResponse(BaseModel):
    """Paginated list of jobs."""

    jobs: list[JobResponse]
    total: int
    page: int
    page_size: int
    has_next: bool


class RetryJobRequest(BaseModel):
    """Request body for requeuing a dead job."""

    reset_retries: bool = Field(default=True, description="Reset retry counter to 0")


class JobStatsResponse(BaseModel):
    """Job counts by status."""

    tenant_id: str | None
    counts: dict[str, int]
    queue_depth: int


class SubmitDeadLetterRequest(BaseModel):
    """Request body for recording a dead letter."""

    tenant_id: str | None = None
    correlation_id: str | None = Field(default=None, max_length=255)
    channel: str | None = Field(default=None, max_length=50)
    stage: str | None = Field(default=None, max_length=50)
    payload: Any = Field(default_factory=dict)
    headers: dict[str, Any] | None = None
    error_message: str = Field(..., min_length=1)
    error_code: str | None = Field(default=None, max_length=100)
    error_stack: str | None = None


class DeadLetterResponse(BaseModel):
    """Dead letter entry details."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str | None
    correlation_id: str | None
    channel: str | None
    stage: str | None
    job_id: UUID | None
    payload: Any
    headers: dict[str, Any]
    error_message: str
    error_code: str | None
    failure_count: int
    last_attempt_at: datetime
    status: DeadLetterStatus
    resolution_notes: str | None
    resolved_at: datetime | None
    resolved_by: str | None
    created_at: datetime
    updated_at: datetime


class SubmitDeadLetterResponse(BaseModel):
    entry: DeadLetterResponse
    created: bool


class DeadLetterListResponse(BaseModel):
    """Paginated list of dead letters."""

    entries: list[DeadLetterResponse]
    total: int
    page: int
    page_size: int
    has_next: bool


class ResolveDeadLetterRequest(BaseModel):
    notes: str | None = None


class ArchiveDeadLettersRequest(BaseModel):
    """Bulk archive thresholds. Omitted values use the configured defaults."""

    older_than_days: int | None = Field(default=None, ge=0)
    max_failures: int | None = Field(default=None, ge=1)


class ArchiveDeadLettersResponse(BaseModel):
    archived: int


class AuthRequest(BaseModel):
    """Authentication request."""

    api_key: str = Field(..., description="API key for authentication")
    tenant_id: str = Field(..., description="Tenant identifier")


class TokenResponse(BaseModel):
    """JWT token response."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    operator: bool = False


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    timestamp: datetime
