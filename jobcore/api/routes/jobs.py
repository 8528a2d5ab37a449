"""
Job management routes.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from jobcore.api.auth import CurrentUser, ensure_tenant_access
from jobcore.constants import API_V1_PREFIX, JobStatus, JobType
from jobcore.db import get_async_session
from jobcore.db.models import Job
from jobcore.db.repository import JobRepository
from jobcore.types.api import (
    EnqueueJobRequest,
    JobListResponse,
    JobResponse,
    JobStatsResponse,
    RetryJobRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/jobs", tags=["Jobs"])


async def _get_owned_job(
    repo: JobRepository,
    job_id: UUID,
    current_user: CurrentUser,
) -> Job:
    job = await repo.get(job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )
    ensure_tenant_access(current_user, job.tenant_id)
    return job


@router.post(
    "",
    response_model=JobResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Enqueue a job",
    description="Add a job to the queue. Tenant liveness is checked at claim time, not here.",
)
async def enqueue_job(
    request: EnqueueJobRequest,
    current_user: CurrentUser,
    session: AsyncSession = Depends(get_async_session),
) -> JobResponse:
    """
    Enqueue a new job.

    Producers enqueue for their own tenant. Operators may name any tenant.

    Raises:
        HTTPException: If the caller may not enqueue for the tenant or the
            request is malformed.
    """
    tenant_id = request.tenant_id or current_user.tenant_id
    ensure_tenant_access(current_user, tenant_id)

    repo = JobRepository(session)
    try:
        job = await repo.enqueue(
            tenant_id=tenant_id,
            job_type=request.job_type,
            payload=request.payload,
            priority=request.priority,
            scheduled_for=request.scheduled_for,
            max_retries=request.max_retries,
            not_before=request.not_before,
            forward_to_dead_letter=request.forward_to_dead_letter,
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        )

    await session.commit()
    return JobResponse.model_validate(job)


@router.get(
    "/stats",
    response_model=JobStatsResponse,
    summary="Get job statistics",
    description="Get job counts by status and the pending queue depth.",
)
async def get_job_stats(
    current_user: CurrentUser,
    tenant_id: str | None = Query(default=None),
    session: AsyncSession = Depends(get_async_session),
) -> JobStatsResponse:
    """
    Get job statistics.

    Producers always get their own tenant. Operators get the requested
    tenant, or every tenant when none is given.
    """
    if not current_user.operator:
        tenant_id = current_user.tenant_id

    repo = JobRepository(session)
    counts = await repo.get_job_stats(tenant_id=tenant_id)
    queue_depth = await repo.get_queue_depth(tenant_id=tenant_id)

    return JobStatsResponse(
        tenant_id=tenant_id,
        counts=counts,
        queue_depth=queue_depth,
    )


@router.get(
    "/{job_id}",
    response_model=JobResponse,
    summary="Get job details",
    description="Get detailed information about a specific job.",
)
async def get_job(
    job_id: UUID,
    current_user: CurrentUser,
    session: AsyncSession = Depends(get_async_session),
) -> JobResponse:
    """
    Get job details by ID.

    Raises:
        HTTPException: If job not found or not owned by tenant.
    """
    repo = JobRepository(session)
    job = await _get_owned_job(repo, job_id, current_user)
    return JobResponse.model_validate(job)


@router.get(
    "",
    response_model=JobListResponse,
    summary="List jobs",
    description="List jobs with optional filtering.",
)
async def list_jobs(
    current_user: CurrentUser,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    status: JobStatus | None = Query(default=None),
    job_type: JobType | None = Query(default=None),
    tenant_id: str | None = Query(default=None),
    session: AsyncSession = Depends(get_async_session),
) -> JobListResponse:
    """
    List jobs, newest first.

    Args:
        current_user: Authenticated caller.
        page: Page number (1-indexed).
        page_size: Number of items per page.
        status: Optional status filter.
        job_type: Optional job type filter.
        tenant_id: Tenant filter, honoured for operators only.
        session: Database session.
    """
    if not current_user.operator:
        tenant_id = current_user.tenant_id

    repo = JobRepository(session)
    offset = (page - 1) * page_size

    jobs, total = await repo.list_jobs(
        tenant_id=tenant_id,
        status=status,
        job_type=job_type.value if job_type else None,
        limit=page_size,
        offset=offset,
    )

    return JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        total=total,
        page=page,
        page_size=page_size,
        has_next=(page * page_size) < total,
    )


@router.post(
    "/{job_id}/cancel",
    response_model=JobResponse,
    summary="Cancel a job",
    description=(
        "Cancel a pending job immediately, or flag a running job so its "
        "worker stops at the next cancellation check."
    ),
)
async def cancel_job(
    job_id: UUID,
    current_user: CurrentUser,
    session: AsyncSession = Depends(get_async_session),
) -> JobResponse:
    """
    Cancel a job.

    Raises:
        HTTPException: If job not found, not owned, or already finished.
    """
    repo = JobRepository(session)
    job = await _get_owned_job(repo, job_id, current_user)

    updated = None if job.is_terminal else await repo.cancel(job_id)
    if updated is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Job cannot be cancelled (current status: {job.status.value})",
        )

    await session.commit()
    return JobResponse.model_validate(updated)


@router.post(
    "/{job_id}/retry",
    response_model=JobResponse,
    summary="Retry a dead job",
    description="Put a job that exhausted its retries back in the queue.",
)
async def retry_job(
    job_id: UUID,
    current_user: CurrentUser,
    request: RetryJobRequest | None = None,
    session: AsyncSession = Depends(get_async_session),
) -> JobResponse:
    """
    Requeue a dead job.

    Raises:
        HTTPException: If job not found, not owned, or not dead.
    """
    request = request or RetryJobRequest()
    repo = JobRepository(session)
    job = await _get_owned_job(repo, job_id, current_user)

    if job.status != JobStatus.DEAD:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Job is not dead (current status: {job.status.value})",
        )

    updated = await repo.requeue_dead(job_id, reset_retries=request.reset_retries)
    if updated is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Job changed state before it could be requeued",
        )

    await session.commit()

    logger.info(
        "Dead job requeued via API",
        extra={"job_id": str(job_id), "tenant_id": current_user.tenant_id},
    )
    return JobResponse.model_validate(updated)
