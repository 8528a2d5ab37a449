"""
Job-related type definitions for internal use.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from pydantic import BaseModel

if TYPE_CHECKING:
    from jobcore.db.models import Job


class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by job handlers after processing.
    """

    success: bool
    output: dict[str, Any] | None = None
    error: str | None = None
    error_stack: str | None = None
    duration_ms: float | None = None


async def _never_cancelled() -> bool:
    return False


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.

    Handlers must be idempotent: the same job may run again after a
    worker crash or a lease expiry. Long handlers should await
    `cancel_requested()` between steps and stop early when it is true.
    """

    job_id: UUID
    tenant_id: str
    job_type: str
    payload: dict[str, Any]
    attempt: int
    retry_count: int
    max_retries: int
    lease_token: UUID
    worker_id: str
    started_at: datetime
    cancel_requested: Callable[[], Awaitable[bool]] = field(default=_never_cancelled)

    @property
    def is_last_attempt(self) -> bool:
        """Check if a failure now would kill the job."""
        return self.retry_count >= self.max_retries

    @property
    def remaining_retries(self) -> int:
        """Get remaining retries after this attempt."""
        return max(0, self.max_retries - self.retry_count)


@dataclass
class FailureOutcome:
    """What the retry accountant did with a failed job."""

    job: "Job"
    will_retry: bool
    next_attempt_at: datetime | None = None
    delay_seconds: float | None = None
