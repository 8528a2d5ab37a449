"""
Dead letter routes.

Producers record failures for their own tenant and read their own
entries. Triage (resolve, dismiss, bulk archive) is operator work.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from jobcore.api.auth import CurrentUser, OperatorUser, ensure_tenant_access
from jobcore.constants import API_V1_PREFIX, DeadLetterStatus
from jobcore.db import get_async_session
from jobcore.db.dead_letters import DeadLetterRepository
from jobcore.types.api import (
    ArchiveDeadLettersRequest,
    ArchiveDeadLettersResponse,
    DeadLetterListResponse,
    DeadLetterResponse,
    ResolveDeadLetterRequest,
    SubmitDeadLetterRequest,
    SubmitDeadLetterResponse,
)
from jobcore.types.dead_letter import DeadLetterStats

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/dead-letters", tags=["Dead Letters"])


@router.post(
    "",
    response_model=SubmitDeadLetterResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record a failure",
    description=(
        "Record a terminally failed unit of work. Identical submissions "
        "inside the dedup window bump the existing entry's failure count."
    ),
)
async def submit_dead_letter(
    request: SubmitDeadLetterRequest,
    current_user: CurrentUser,
    session: AsyncSession = Depends(get_async_session),
) -> SubmitDeadLetterResponse:
    # Operators may record global (tenant-less) failures
    tenant_id = request.tenant_id
    if not current_user.operator:
        tenant_id = tenant_id or current_user.tenant_id
        ensure_tenant_access(current_user, tenant_id)

    repo = DeadLetterRepository(session)
    entry, created = await repo.submit(
        tenant_id=tenant_id,
        correlation_id=request.correlation_id,
        payload=request.payload,
        error_message=request.error_message,
        error_code=request.error_code,
        error_stack=request.error_stack,
        stage=request.stage,
        channel=request.channel,
        headers=request.headers,
    )
    await session.commit()

    return SubmitDeadLetterResponse(
        entry=DeadLetterResponse.model_validate(entry),
        created=created,
    )


@router.get(
    "/stats",
    response_model=DeadLetterStats,
    summary="Dead letter statistics",
    description="Counts per status, average failure count and age range.",
)
async def dead_letter_stats(
    current_user: CurrentUser,
    tenant_id: str | None = Query(default=None),
    session: AsyncSession = Depends(get_async_session),
) -> DeadLetterStats:
    if not current_user.operator:
        tenant_id = current_user.tenant_id
    return await DeadLetterRepository(session).stats(tenant_id=tenant_id)


@router.post(
    "/archive",
    response_model=ArchiveDeadLettersResponse,
    summary="Archive stale dead letters",
    description="Bulk-archive pending entries that aged out or hit the failure cap.",
)
async def archive_dead_letters(
    current_user: OperatorUser,
    request: ArchiveDeadLettersRequest | None = None,
    session: AsyncSession = Depends(get_async_session),
) -> ArchiveDeadLettersResponse:
    request = request or ArchiveDeadLettersRequest()
    archived = await DeadLetterRepository(session).archive(
        older_than_days=request.older_than_days,
        max_failures=request.max_failures,
    )
    await session.commit()

    logger.info(
        "Dead letters archived via API",
        extra={"archived": archived, "operator_tenant": current_user.tenant_id},
    )
    return ArchiveDeadLettersResponse(archived=archived)


@router.get(
    "",
    response_model=DeadLetterListResponse,
    summary="List dead letters",
)
async def list_dead_letters(
    current_user: CurrentUser,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    status: DeadLetterStatus | None = Query(default=None),
    tenant_id: str | None = Query(default=None),
    session: AsyncSession = Depends(get_async_session),
) -> DeadLetterListResponse:
    """
    List dead letters, newest first.

    Producers see their own tenant only.
    """
    if not current_user.operator:
        tenant_id = current_user.tenant_id

    entries, total = await DeadLetterRepository(session).list_entries(
        tenant_id=tenant_id,
        status=status,
        limit=page_size,
        offset=(page - 1) * page_size,
    )

    return DeadLetterListResponse(
        entries=[DeadLetterResponse.model_validate(entry) for entry in entries],
        total=total,
        page=page,
        page_size=page_size,
        has_next=(page * page_size) < total,
    )


@router.get(
    "/{entry_id}",
    response_model=DeadLetterResponse,
    summary="Get a dead letter",
)
async def get_dead_letter(
    entry_id: UUID,
    current_user: CurrentUser,
    session: AsyncSession = Depends(get_async_session),
) -> DeadLetterResponse:
    entry = await DeadLetterRepository(session).get(entry_id)
    if entry is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Dead letter not found",
        )
    ensure_tenant_access(current_user, entry.tenant_id)
    return DeadLetterResponse.model_validate(entry)


@router.post(
    "/{entry_id}/resolve",
    response_model=DeadLetterResponse,
    summary="Resolve a dead letter",
)
async def resolve_dead_letter(
    entry_id: UUID,
    current_user: OperatorUser,
    request: ResolveDeadLetterRequest | None = None,
    session: AsyncSession = Depends(get_async_session),
) -> DeadLetterResponse:
    """
    Mark a dead letter as resolved.

    Raises:
        HTTPException: If the entry is missing or already closed.
    """
    request = request or ResolveDeadLetterRequest()
    entry = await DeadLetterRepository(session).resolve(
        entry_id,
        notes=request.notes,
        resolved_by=current_user.tenant_id,
    )
    if entry is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Dead letter not found or already closed",
        )
    await session.commit()
    return DeadLetterResponse.model_validate(entry)


@router.post(
    "/{entry_id}/dismiss",
    response_model=DeadLetterResponse,
    summary="Dismiss a dead letter",
)
async def dismiss_dead_letter(
    entry_id: UUID,
    current_user: OperatorUser,
    request: ResolveDeadLetterRequest | None = None,
    session: AsyncSession = Depends(get_async_session),
) -> DeadLetterResponse:
    """
    Archive a single dead letter without fixing it.

    Raises:
        HTTPException: If the entry is missing or already closed.
    """
    request = request or ResolveDeadLetterRequest()
    entry = await DeadLetterRepository(session).dismiss(
        entry_id,
        notes=request.notes,
        resolved_by=current_user.tenant_id,
    )
    if entry is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Dead letter not found or already closed",
        )
    await session.commit()
    return DeadLetterResponse.model_validate(entry)
