"""
Retry accounting for failed jobs.

Every failure report, whether it comes from a worker or from the reaper,
ends here. The accountant decides between putting the job back in the
claimable pool after a backoff delay and declaring it dead.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobcore.config import get_settings
from jobcore.constants import (
    DEAD_JOB_CHANNEL,
    DEAD_JOB_STAGE,
    RETRIES_EXHAUSTED_ERROR_CODE,
    SPAN_FAIL_JOB,
    JobStatus,
)
from jobcore.db.dead_letters import DeadLetterRepository
from jobcore.db.models import Job
from jobcore.observability.metrics import get_metrics
from jobcore.observability.tracing import get_tracer
from jobcore.types.job import FailureOutcome
from jobcore.utils import utcnow

logger = logging.getLogger(__name__)

DeadJobHook = Callable[[AsyncSession, Job], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff policy.

    delay = base_delay * multiplier ** retry_count, capped at max_delay,
    where retry_count is the number of retries already spent.
    """

    base_delay_seconds: float = 30.0
    multiplier: float = 5.0
    max_delay_seconds: float = 7200.0

    def __post_init__(self) -> None:
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        settings = get_settings()
        return cls(
            base_delay_seconds=settings.retry_base_delay_seconds,
            multiplier=settings.retry_backoff_multiplier,
            max_delay_seconds=settings.retry_max_delay_seconds,
        )

    def delay_for(self, retry_count: int) -> float:
        """Backoff in seconds before the retry that follows `retry_count` earlier retries."""
        if retry_count < 0:
            raise ValueError("retry_count must be >= 0")
        try:
            delay = self.base_delay_seconds * self.multiplier**retry_count
        except OverflowError:
            return self.max_delay_seconds
        return min(delay, self.max_delay_seconds)


async def forward_opted_in_jobs(session: AsyncSession, job: Job) -> None:
    """
    Default dead-job hook.

    Copies the dead job into the dead letter store when the producer opted
    in at enqueue time or the deployment forwards every dead job.
    """
    settings = get_settings()
    if not (job.forward_to_dead_letter or settings.forward_dead_jobs_to_dead_letter):
        return

    entry, _ = await DeadLetterRepository(session).submit(
        tenant_id=job.tenant_id,
        correlation_id=str(job.id),
        payload=job.payload,
        error_message=job.error_message or "Retries exhausted",
        error_code=RETRIES_EXHAUSTED_ERROR_CODE,
        error_stack=job.error_stack,
        stage=DEAD_JOB_STAGE,
        channel=DEAD_JOB_CHANNEL,
        job_id=job.id,
    )
    logger.info(
        "Dead job forwarded to dead letter store",
        extra={"job_id": str(job.id), "dead_letter_id": str(entry.id)},
    )


class RetryAccountant:
    """
    Decides what happens to a job after a failed attempt.

    - retries left: back to PENDING with scheduled_for pushed out by the
      backoff policy and retry_count incremented
    - retries exhausted: DEAD, with the final error recorded, then the
      dead-job hook runs

    All writes are guarded by (status=PROCESSING, lease_token) so a
    caller that no longer owns the lease changes nothing.
    """

    def __init__(
        self,
        session: AsyncSession,
        policy: RetryPolicy | None = None,
        dead_job_hook: DeadJobHook | None = forward_opted_in_jobs,
    ):
        """
        Initialize the accountant.

        Args:
            session: The async database session.
            policy: Backoff policy. Defaults to the configured policy.
            dead_job_hook: Called once for every job that becomes DEAD.
                Pass None to leave dead jobs silent.
        """
        self._session = session
        self._policy = policy or RetryPolicy.from_settings()
        self._dead_job_hook = dead_job_hook
        self._metrics = get_metrics()

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def fail(
        self,
        job_id: UUID,
        lease_token: UUID,
        error_message: str,
        error_stack: str | None = None,
    ) -> FailureOutcome | None:
        """
        Record a failed attempt and move the job to its next state.

        Args:
            job_id: The job UUID.
            lease_token: Token handed out when the job was claimed.
            error_message: Human readable error.
            error_stack: Optional traceback.

        Returns:
            The outcome, or None if the job is not processing under this token.
        """
        with get_tracer().start_as_current_span(SPAN_FAIL_JOB) as span:
            span.set_attribute("job_id", str(job_id))

            owned = (
                Job.id == job_id,
                Job.status == JobStatus.PROCESSING,
                Job.lease_token == lease_token,
            )
            result = await self._session.execute(
                select(Job)
                .where(*owned)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            job = result.scalar_one_or_none()
            if job is None:
                logger.warning(
                    "Failure report ignored: job not processing under this lease",
                    extra={"job_id": str(job_id), "lease_token": str(lease_token)},
                )
                return None

            now = utcnow()
            values = {
                "error_message": error_message,
                "error_stack": error_stack,
                "last_error_at": now,
                "updated_at": now,
                "lease_token": None,
                "worker_id": None,
            }

            cancelled = job.cancel_requested
            will_retry = job.is_retryable and not cancelled
            delay_seconds: float | None = None
            next_attempt_at = None
            if cancelled:
                values.update(
                    status=JobStatus.CANCELLED,
                    completed_at=now,
                )
            elif will_retry:
                delay_seconds = self._policy.delay_for(job.retry_count)
                next_attempt_at = now + timedelta(seconds=delay_seconds)
                values.update(
                    status=JobStatus.PENDING,
                    retry_count=job.retry_count + 1,
                    scheduled_for=next_attempt_at,
                    started_at=None,
                )
            else:
                values.update(
                    status=JobStatus.DEAD,
                    completed_at=now,
                )

            update_result = await self._session.execute(
                update(Job)
                .where(*owned)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if update_result.rowcount == 0:
                logger.warning(
                    "Failure report lost the race for the lease",
                    extra={"job_id": str(job_id)},
                )
                return None

            job = await self._reload(job_id)
            span.set_attribute("will_retry", will_retry)

            if cancelled:
                logger.info(
                    "Cancelled job failed, not retrying",
                    extra={"job_id": str(job_id), "error": error_message},
                )
            elif will_retry:
                logger.info(
                    "Job queued for retry",
                    extra={
                        "job_id": str(job_id),
                        "retry_count": job.retry_count,
                        "delay_seconds": delay_seconds,
                    },
                )
                self._metrics.record_retry(job.tenant_id, job.job_type)
            else:
                logger.warning(
                    "Job is dead after exhausting retries",
                    extra={
                        "job_id": str(job_id),
                        "retry_count": job.retry_count,
                        "error": error_message,
                    },
                )
                self._metrics.record_dead(job.tenant_id, job.job_type)
                if self._dead_job_hook is not None:
                    await self._dead_job_hook(self._session, job)

            return FailureOutcome(
                job=job,
                will_retry=will_retry,
                next_attempt_at=next_attempt_at,
                delay_seconds=delay_seconds,
            )

    async def _reload(self, job_id: UUID) -> Job:
        result = await self._session.execute(
            select(Job)
            .where(Job.id == job_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()
