"""
Job repository for database operations.
Implements the core data access patterns for job management.
"""

import logging
from datetime import datetime
from typing import Any, Sequence
from uuid import UUID, uuid4

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from jobcore.config import get_settings
from jobcore.constants import (
    MAX_PRIORITY,
    MIN_PRIORITY,
    SPAN_CLAIM_JOB,
    SPAN_COMPLETE_JOB,
    SPAN_ENQUEUE_JOB,
    JobStatus,
    JobType,
)
from jobcore.db.models import Job, Tenant
from jobcore.db.tenants import tenant_is_active, tenant_join_condition
from jobcore.observability.metrics import get_metrics
from jobcore.observability.tracing import get_tracer
from jobcore.retry import RetryAccountant
from jobcore.types.job import FailureOutcome
from jobcore.utils import to_naive_utc, utcnow

logger = logging.getLogger(__name__)


class JobRepository:
    """
    Repository for job database operations.

    Implements atomic operations for:
    - Job submission with syntactic validation
    - Lease acquisition with FOR UPDATE SKIP LOCKED behind the tenant gate
    - Lease-token guarded status transitions
    - Operator actions (cancel, manual retry of dead jobs)

    Transaction boundaries belong to the caller: methods flush but never commit.
    """

    def __init__(
        self,
        session: AsyncSession,
        accountant: RetryAccountant | None = None,
    ):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
            accountant: Retry accountant used by mark_failed. Defaults to
                one built from the configured retry policy.
        """
        self._session = session
        self._settings = get_settings()
        self._accountant = accountant
        self._metrics = get_metrics()

    @property
    def accountant(self) -> RetryAccountant:
        if self._accountant is None:
            self._accountant = RetryAccountant(self._session)
        return self._accountant

    async def enqueue(
        self,
        tenant_id: str,
        job_type: JobType | str,
        payload: dict[str, Any] | None = None,
        priority: int | None = None,
        scheduled_for: datetime | None = None,
        max_retries: int | None = None,
        not_before: datetime | None = None,
        forward_to_dead_letter: bool = False,
    ) -> Job:
        """
        Create a new pending job.

        Only the shape of the request is checked. Tenant liveness is not:
        jobs for a suspended tenant are stored and wait behind the gate.

        Args:
            tenant_id: The tenant identifier.
            job_type: One of the known job types.
            payload: The job payload.
            priority: 1..1000, lower runs first.
            scheduled_for: Not eligible before this time. Defaults to now.
            max_retries: Retries allowed after the first attempt.
            not_before: Optional additional delay.
            forward_to_dead_letter: Copy the job to the dead letter store if it dies.

        Returns:
            The created Job.

        Raises:
            ValueError: If any argument is malformed.
        """
        if not tenant_id or not tenant_id.strip():
            raise ValueError("tenant_id must not be empty")
        try:
            job_type = JobType(job_type)
        except ValueError:
            raise ValueError(f"Unknown job type: {job_type}") from None

        if priority is None:
            priority = self._settings.default_priority
        if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
            raise ValueError(
                f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}"
            )
        if max_retries is None:
            max_retries = self._settings.default_max_retries
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")

        with get_tracer().start_as_current_span(SPAN_ENQUEUE_JOB) as span:
            now = utcnow()
            job = Job(
                tenant_id=tenant_id,
                job_type=job_type.value,
                payload=payload or {},
                priority=priority,
                status=JobStatus.PENDING,
                scheduled_for=to_naive_utc(scheduled_for) or now,
                not_before=to_naive_utc(not_before),
                retry_count=0,
                max_retries=max_retries,
                attempts=0,
                forward_to_dead_letter=forward_to_dead_letter,
                created_at=now,
                updated_at=now,
            )
            self._session.add(job)
            await self._session.flush()

            span.set_attribute("job_id", str(job.id))
            span.set_attribute("job_type", job.job_type)
            logger.info(
                "Enqueued job",
                extra={
                    "job_id": str(job.id),
                    "tenant_id": tenant_id,
                    "job_type": job.job_type,
                    "priority": priority,
                },
            )
            self._metrics.record_enqueued(tenant_id, job.job_type)
            return job

    async def get(self, job_id: UUID) -> Job | None:
        """
        Get a job by ID, always re-reading the row.

        Args:
            job_id: The job UUID.

        Returns:
            The Job or None if not found.
        """
        stmt = (
            select(Job)
            .where(Job.id == job_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_jobs(
        self,
        tenant_id: str | None = None,
        status: JobStatus | None = None,
        job_type: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        """
        List jobs with optional filtering.

        Args:
            tenant_id: Optional tenant filter.
            status: Optional status filter.
            job_type: Optional job type filter.
            limit: Maximum number of jobs to return.
            offset: Offset for pagination.

        Returns:
            Tuple of (jobs, total_count).
        """
        filters = []
        if tenant_id is not None:
            filters.append(Job.tenant_id == tenant_id)
        if status is not None:
            filters.append(Job.status == status)
        if job_type is not None:
            filters.append(Job.job_type == job_type)

        count_stmt = select(func.count()).select_from(Job).where(*filters)
        total = (await self._session.scalar(count_stmt)) or 0

        stmt = (
            select(Job)
            .where(*filters)
            .order_by(Job.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all(), total

    async def claim_next(
        self,
        worker_id: str,
        job_types: Sequence[str] | None = None,
        tenant_id: str | None = None,
    ) -> Job | None:
        """
        Atomically claim the most urgent eligible job.

        This is the critical path for job distribution. A single UPDATE
        whose target is chosen by a FOR UPDATE SKIP LOCKED subquery joined
        to the tenant gate: concurrent claimers skip each other's rows
        instead of blocking, and a job of a non-active tenant is never
        selected. The outer status guard keeps the statement correct on
        backends that ignore row locks.

        Args:
            worker_id: The claiming worker's identity.
            job_types: Optional job type filter.
            tenant_id: Optional tenant filter.

        Returns:
            The claimed Job, or None if nothing is eligible.
        """
        with get_tracer().start_as_current_span(SPAN_CLAIM_JOB) as span:
            span.set_attribute("worker_id", worker_id)
            now = utcnow()

            candidate = aliased(Job)
            filters = [
                candidate.status == JobStatus.PENDING,
                candidate.cancel_requested.is_(False),
                candidate.scheduled_for <= now,
                or_(candidate.not_before.is_(None), candidate.not_before <= now),
                tenant_is_active(),
            ]
            if job_types:
                filters.append(candidate.job_type.in_(list(job_types)))
            if tenant_id is not None:
                filters.append(candidate.tenant_id == tenant_id)

            next_id = (
                select(candidate.id)
                .join(Tenant, tenant_join_condition(candidate))
                .where(and_(*filters))
                .order_by(candidate.priority.asc(), candidate.scheduled_for.asc())
                .limit(1)
                .with_for_update(skip_locked=True, of=candidate)
                .scalar_subquery()
            )

            lease_token = uuid4()
            stmt = (
                update(Job)
                .where(Job.id == next_id, Job.status == JobStatus.PENDING)
                .values(
                    status=JobStatus.PROCESSING,
                    started_at=now,
                    lease_token=lease_token,
                    worker_id=worker_id,
                    attempts=Job.attempts + 1,
                    updated_at=now,
                )
                .returning(Job.id)
                .execution_options(synchronize_session=False)
            )
            claimed_id = (await self._session.execute(stmt)).scalar_one_or_none()
            if claimed_id is None:
                return None

            job = await self._session.scalar(
                select(Job)
                .where(Job.id == claimed_id)
                .execution_options(populate_existing=True)
            )
            span.set_attribute("job_id", str(job.id))
            logger.info(
                "Claimed job",
                extra={
                    "job_id": str(job.id),
                    "tenant_id": job.tenant_id,
                    "worker_id": worker_id,
                    "attempt": job.attempts,
                },
            )
            self._metrics.record_claimed(worker_id)
            return job

    async def claim_batch(
        self,
        worker_id: str,
        limit: int,
        job_types: Sequence[str] | None = None,
        tenant_id: str | None = None,
    ) -> list[Job]:
        """
        Claim up to `limit` jobs, one atomic claim at a time.

        Returns:
            Claimed jobs in claim order. May be shorter than `limit`.
        """
        jobs: list[Job] = []
        for _ in range(limit):
            job = await self.claim_next(worker_id, job_types, tenant_id)
            if job is None:
                break
            jobs.append(job)
        return jobs

    async def mark_completed(
        self,
        job_id: UUID,
        lease_token: UUID,
        result: dict[str, Any] | None = None,
    ) -> Job | None:
        """
        Mark job as successfully completed.

        Args:
            job_id: The job UUID.
            lease_token: Token handed out by the claim.
            result: Optional job result data.

        Returns:
            Updated Job or None if the caller no longer owns the lease.
        """
        with get_tracer().start_as_current_span(SPAN_COMPLETE_JOB) as span:
            span.set_attribute("job_id", str(job_id))
            now = utcnow()
            stmt = (
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.status == JobStatus.PROCESSING,
                    Job.lease_token == lease_token,
                )
                .values(
                    status=JobStatus.COMPLETED,
                    completed_at=now,
                    updated_at=now,
                    lease_token=None,
                    worker_id=None,
                    result=result,
                )
                .execution_options(synchronize_session=False)
            )
            update_result = await self._session.execute(stmt)
            if update_result.rowcount == 0:
                logger.warning(
                    "Completion ignored: job not processing under this lease",
                    extra={"job_id": str(job_id), "lease_token": str(lease_token)},
                )
                return None

            job = await self.get(job_id)
            duration = (now - job.started_at).total_seconds() if job.started_at else 0.0
            logger.info(
                "Job completed successfully",
                extra={"job_id": str(job_id), "duration_seconds": duration},
            )
            self._metrics.record_job_completed(
                job.tenant_id, JobStatus.COMPLETED.value, duration
            )
            return job

    async def mark_failed(
        self,
        job_id: UUID,
        lease_token: UUID,
        error_message: str,
        error_stack: str | None = None,
    ) -> FailureOutcome | None:
        """
        Report a failed attempt. The retry accountant decides what happens next.

        Returns:
            The outcome, or None if the caller no longer owns the lease.
        """
        return await self.accountant.fail(
            job_id, lease_token, error_message, error_stack
        )

    async def cancel(self, job_id: UUID) -> Job | None:
        """
        Cancel a job.

        Pending jobs are cancelled immediately. Processing jobs are flagged
        and finalised by their worker at its next cancellation check.

        Returns:
            Updated Job or None if the job is missing or already terminal.
        """
        now = utcnow()
        result = await self._session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == JobStatus.PENDING)
            .values(
                status=JobStatus.CANCELLED,
                cancel_requested=True,
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            result = await self._session.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.PROCESSING)
                .values(cancel_requested=True, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return None
            logger.info("Cancellation requested", extra={"job_id": str(job_id)})
        else:
            logger.info("Job cancelled", extra={"job_id": str(job_id)})

        return await self.get(job_id)

    async def is_cancel_requested(self, job_id: UUID) -> bool:
        flag = await self._session.scalar(
            select(Job.cancel_requested).where(Job.id == job_id)
        )
        return bool(flag)

    async def finalize_cancelled(self, job_id: UUID, lease_token: UUID) -> Job | None:
        """
        Move a flagged in-flight job to CANCELLED. Called by the lease holder.

        Returns:
            Updated Job or None if the caller no longer owns the lease.
        """
        now = utcnow()
        result = await self._session.execute(
            update(Job)
            .where(
                Job.id == job_id,
                Job.status == JobStatus.PROCESSING,
                Job.lease_token == lease_token,
                Job.cancel_requested.is_(True),
            )
            .values(
                status=JobStatus.CANCELLED,
                completed_at=now,
                updated_at=now,
                lease_token=None,
                worker_id=None,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None
        logger.info("In-flight job cancelled", extra={"job_id": str(job_id)})
        return await self.get(job_id)

    async def requeue_dead(
        self,
        job_id: UUID,
        reset_retries: bool = True,
    ) -> Job | None:
        """
        Put a dead job back in the queue (operator manual retry).

        Args:
            job_id: The job UUID.
            reset_retries: Whether to reset the retry counter.

        Returns:
            Updated Job or None if not found or not dead.
        """
        now = utcnow()
        values: dict[str, Any] = {
            "status": JobStatus.PENDING,
            "scheduled_for": now,
            "updated_at": now,
            "completed_at": None,
            "started_at": None,
            "cancel_requested": False,
        }
        if reset_retries:
            values["retry_count"] = 0

        result = await self._session.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == JobStatus.DEAD)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None

        logger.info(
            "Dead job requeued",
            extra={"job_id": str(job_id), "reset_retries": reset_retries},
        )
        return await self.get(job_id)

    async def get_queue_depth(self, tenant_id: str | None = None) -> int:
        """
        Get the number of pending jobs.

        Args:
            tenant_id: Optional tenant filter.

        Returns:
            Number of pending jobs.
        """
        filters = [Job.status == JobStatus.PENDING]
        if tenant_id is not None:
            filters.append(Job.tenant_id == tenant_id)

        stmt = select(func.count()).select_from(Job).where(*filters)
        depth = (await self._session.scalar(stmt)) or 0
        self._metrics.update_queue_depth(tenant_id or "all", depth)
        return depth

    async def get_job_stats(
        self,
        tenant_id: str | None = None,
    ) -> dict[str, int]:
        """
        Get job statistics by status.

        Args:
            tenant_id: Optional tenant filter.

        Returns:
            Dictionary of status -> count, every status present.
        """
        stmt = select(Job.status, func.count()).group_by(Job.status)
        if tenant_id is not None:
            stmt = stmt.where(Job.tenant_id == tenant_id)

        result = await self._session.execute(stmt)
        stats = {status.value: 0 for status in JobStatus}
        for status, count in result.all():
            stats[JobStatus(status).value] = count
        return stats
