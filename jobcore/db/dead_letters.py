"""
Dead letter repository.

Holds irrecoverable or pre-job failures for triage, separate from the job
retry ladder. Implements deduplication inside a time window, a cooldown
gate for automated retries, resolution, and archival.
"""

import logging
from collections.abc import Sequence
from datetime import timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import ColumnElement, and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobcore.config import get_settings
from jobcore.constants import SPAN_DEAD_LETTER_SUBMIT, DeadLetterStatus
from jobcore.db.models import DeadLetter
from jobcore.observability.metrics import get_metrics
from jobcore.observability.tracing import get_tracer
from jobcore.types.dead_letter import DeadLetterStats
from jobcore.utils import payload_fingerprint, utcnow

logger = logging.getLogger(__name__)

_OPEN_STATUSES = (DeadLetterStatus.PENDING, DeadLetterStatus.RETRYING)


def _same(column, value) -> ColumnElement[bool]:
    # NULL identities match each other for dedup purposes
    if value is None:
        return column.is_(None)
    return column == value


class DeadLetterRepository:
    """
    Repository for dead letter entries.

    Implements atomic operations for:
    - Submission with windowed deduplication
    - Exclusive claiming of entries due for an automated retry
    - Resolution, dismissal, archival and purge
    - Per-tenant statistics
    """

    def __init__(
        self,
        session: AsyncSession,
        dedup_window: timedelta | None = None,
        retry_cooldown: timedelta | None = None,
        max_failures: int | None = None,
    ):
        """
        Initialize the repository.

        Args:
            session: The async database session.
            dedup_window: Window in which identical submissions collapse.
            retry_cooldown: Minimum time since the last attempt before retrying.
            max_failures: Entries at or above this count are never retried.
        """
        settings = get_settings()
        self._session = session
        if dedup_window is None:
            dedup_window = timedelta(seconds=settings.dead_letter_dedup_window_seconds)
        if retry_cooldown is None:
            retry_cooldown = timedelta(
                seconds=settings.dead_letter_retry_cooldown_seconds
            )
        if max_failures is None:
            max_failures = settings.dead_letter_max_failures
        self._dedup_window = dedup_window
        self._retry_cooldown = retry_cooldown
        self._max_failures = max_failures
        self._metrics = get_metrics()

    async def submit(
        self,
        tenant_id: str | None,
        correlation_id: str | None,
        payload: Any,
        error_message: str,
        error_code: str | None = None,
        error_stack: str | None = None,
        stage: str | None = None,
        channel: str | None = None,
        headers: dict[str, Any] | None = None,
        job_id: UUID | None = None,
    ) -> tuple[DeadLetter, bool]:
        """
        Record a failure, collapsing repeats inside the dedup window.

        An entry with the same (tenant, correlation id, payload) that is
        still pending and was created inside the window gets its
        failure_count bumped instead of a new row being inserted.

        Returns:
            Tuple of (entry, created) where created is False for a dedup hit.
        """
        with get_tracer().start_as_current_span(SPAN_DEAD_LETTER_SUBMIT):
            now = utcnow()
            payload_hash = payload_fingerprint(payload)

            stmt = (
                select(DeadLetter)
                .where(
                    _same(DeadLetter.tenant_id, tenant_id),
                    _same(DeadLetter.correlation_id, correlation_id),
                    DeadLetter.payload_hash == payload_hash,
                    DeadLetter.status == DeadLetterStatus.PENDING,
                    DeadLetter.created_at >= now - self._dedup_window,
                )
                .order_by(DeadLetter.created_at.desc())
                .limit(1)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            result = await self._session.execute(stmt)
            existing = result.scalar_one_or_none()

            if existing is not None:
                bumped = await self._session.execute(
                    update(DeadLetter)
                    .where(
                        DeadLetter.id == existing.id,
                        DeadLetter.status == DeadLetterStatus.PENDING,
                    )
                    .values(
                        failure_count=DeadLetter.failure_count + 1,
                        last_attempt_at=now,
                        error_message=error_message,
                        error_code=error_code,
                        error_stack=error_stack,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if bumped.rowcount:
                    entry = await self._reload(existing.id)
                    logger.info(
                        "Dead letter deduplicated",
                        extra={
                            "dead_letter_id": str(entry.id),
                            "tenant_id": tenant_id,
                            "failure_count": entry.failure_count,
                        },
                    )
                    self._metrics.record_dead_letter_submitted(
                        tenant_id, deduplicated=True
                    )
                    return entry, False

            entry = DeadLetter(
                tenant_id=tenant_id,
                correlation_id=correlation_id,
                channel=channel,
                stage=stage,
                job_id=job_id,
                payload=payload,
                payload_hash=payload_hash,
                headers=headers or {},
                error_message=error_message,
                error_code=error_code,
                error_stack=error_stack,
                failure_count=1,
                last_attempt_at=now,
                status=DeadLetterStatus.PENDING,
                created_at=now,
                updated_at=now,
            )
            self._session.add(entry)
            await self._session.flush()

            logger.warning(
                "Dead letter recorded",
                extra={
                    "dead_letter_id": str(entry.id),
                    "tenant_id": tenant_id,
                    "stage": stage,
                    "error_code": error_code,
                },
            )
            self._metrics.record_dead_letter_submitted(tenant_id, deduplicated=False)
            return entry, True

    async def get(self, entry_id: UUID) -> DeadLetter | None:
        return await self._session.scalar(
            select(DeadLetter)
            .where(DeadLetter.id == entry_id)
            .execution_options(populate_existing=True)
        )

    async def list_entries(
        self,
        tenant_id: str | None = None,
        status: DeadLetterStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[DeadLetter], int]:
        """
        List entries, newest first.

        Returns:
            Tuple of (entries, total_count).
        """
        filters = []
        if tenant_id is not None:
            filters.append(DeadLetter.tenant_id == tenant_id)
        if status is not None:
            filters.append(DeadLetter.status == status)

        count_stmt = select(func.count()).select_from(DeadLetter).where(*filters)
        total = (await self._session.scalar(count_stmt)) or 0

        stmt = (
            select(DeadLetter)
            .where(*filters)
            .order_by(DeadLetter.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all(), total

    async def next_for_retry(
        self,
        tenant_id: str | None = None,
        limit: int = 10,
    ) -> list[DeadLetter]:
        """
        Claim pending entries that are due for an automated retry.

        Eligible entries are pending, below the failure cap, and had their
        last attempt longer ago than the cooldown. Each one moves to
        RETRYING under a guarded update, so two retry workers never get the
        same entry.
        """
        now = utcnow()
        filters = [
            DeadLetter.status == DeadLetterStatus.PENDING,
            DeadLetter.failure_count < self._max_failures,
            DeadLetter.last_attempt_at <= now - self._retry_cooldown,
        ]
        if tenant_id is not None:
            filters.append(DeadLetter.tenant_id == tenant_id)

        candidates = await self._session.execute(
            select(DeadLetter.id)
            .where(*filters)
            .order_by(DeadLetter.last_attempt_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )

        claimed_ids: list[UUID] = []
        for entry_id in candidates.scalars().all():
            result = await self._session.execute(
                update(DeadLetter)
                .where(
                    DeadLetter.id == entry_id,
                    DeadLetter.status == DeadLetterStatus.PENDING,
                )
                .values(status=DeadLetterStatus.RETRYING, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                claimed_ids.append(entry_id)

        if not claimed_ids:
            return []

        logger.info(
            f"Claimed {len(claimed_ids)} dead letters for retry",
            extra={"tenant_id": tenant_id},
        )
        result = await self._session.execute(
            select(DeadLetter)
            .where(DeadLetter.id.in_(claimed_ids))
            .order_by(DeadLetter.last_attempt_at.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def record_retry_failure(
        self,
        entry_id: UUID,
        error_message: str,
        error_code: str | None = None,
        error_stack: str | None = None,
    ) -> DeadLetter | None:
        """
        Return a RETRYING entry to PENDING after another failed attempt.

        Returns:
            Updated entry or None if the entry was not being retried.
        """
        now = utcnow()
        result = await self._session.execute(
            update(DeadLetter)
            .where(
                DeadLetter.id == entry_id,
                DeadLetter.status == DeadLetterStatus.RETRYING,
            )
            .values(
                status=DeadLetterStatus.PENDING,
                failure_count=DeadLetter.failure_count + 1,
                last_attempt_at=now,
                error_message=error_message,
                error_code=error_code,
                error_stack=error_stack,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            return None
        return await self._reload(entry_id)

    async def recover_stale_retries(self, older_than: timedelta) -> int:
        """
        Return entries stuck in RETRYING (crashed retry worker) to PENDING.

        Returns:
            Number of entries released.
        """
        now = utcnow()
        result = await self._session.execute(
            update(DeadLetter)
            .where(
                DeadLetter.status == DeadLetterStatus.RETRYING,
                DeadLetter.updated_at < now - older_than,
            )
            .values(status=DeadLetterStatus.PENDING, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(f"Released {result.rowcount} stale dead letter retries")
        return result.rowcount

    async def resolve(
        self,
        entry_id: UUID,
        notes: str | None = None,
        resolved_by: str | None = None,
    ) -> DeadLetter | None:
        """
        Mark an entry as resolved.

        Returns:
            Updated entry or None if not found or already closed.
        """
        return await self._close(entry_id, DeadLetterStatus.RESOLVED, notes, resolved_by)

    async def dismiss(
        self,
        entry_id: UUID,
        notes: str | None = None,
        resolved_by: str | None = None,
    ) -> DeadLetter | None:
        """Archive a single entry by hand, without fixing it."""
        return await self._close(entry_id, DeadLetterStatus.ARCHIVED, notes, resolved_by)

    async def _close(
        self,
        entry_id: UUID,
        status: DeadLetterStatus,
        notes: str | None,
        resolved_by: str | None,
    ) -> DeadLetter | None:
        now = utcnow()
        result = await self._session.execute(
            update(DeadLetter)
            .where(
                DeadLetter.id == entry_id,
                DeadLetter.status.in_(_OPEN_STATUSES),
            )
            .values(
                status=status,
                resolution_notes=notes,
                resolved_at=now,
                resolved_by=resolved_by,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            return None

        logger.info(
            "Dead letter closed",
            extra={"dead_letter_id": str(entry_id), "status": status.value},
        )
        return await self._reload(entry_id)

    async def archive(
        self,
        older_than_days: int | None = None,
        max_failures: int | None = None,
    ) -> int:
        """
        Bulk-archive pending entries that aged out or hit the failure cap.

        Args:
            older_than_days: Retention window. Defaults to the configured value.
            max_failures: Failure cap. Defaults to the configured value.

        Returns:
            Number of archived entries.
        """
        settings = get_settings()
        if older_than_days is None:
            older_than_days = settings.dead_letter_archive_after_days
        if max_failures is None:
            max_failures = settings.dead_letter_max_failures

        now = utcnow()
        result = await self._session.execute(
            update(DeadLetter)
            .where(
                and_(
                    DeadLetter.status == DeadLetterStatus.PENDING,
                    or_(
                        DeadLetter.created_at < now - timedelta(days=older_than_days),
                        DeadLetter.failure_count >= max_failures,
                    ),
                )
            )
            .values(
                status=DeadLetterStatus.ARCHIVED,
                resolution_notes="Archived automatically",
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount
        if count > 0:
            logger.info(f"Archived {count} dead letters")
            self._metrics.record_dead_letters_archived(count)
        return count

    async def purge(self, older_than_days: int) -> int:
        """
        Delete closed (resolved or archived) entries past the retention window.

        Returns:
            Number of deleted entries.
        """
        now = utcnow()
        result = await self._session.execute(
            delete(DeadLetter)
            .where(
                DeadLetter.status.in_(
                    [DeadLetterStatus.RESOLVED, DeadLetterStatus.ARCHIVED]
                ),
                DeadLetter.created_at < now - timedelta(days=older_than_days),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(f"Purged {result.rowcount} closed dead letters")
        return result.rowcount

    async def stats(self, tenant_id: str | None = None) -> DeadLetterStats:
        """
        Get counts per status, average failure count and age range.

        Args:
            tenant_id: Optional tenant filter.
        """
        filters = []
        if tenant_id is not None:
            filters.append(DeadLetter.tenant_id == tenant_id)

        counts = {status: 0 for status in DeadLetterStatus}
        by_status = await self._session.execute(
            select(DeadLetter.status, func.count())
            .where(*filters)
            .group_by(DeadLetter.status)
        )
        for status, count in by_status.all():
            counts[DeadLetterStatus(status)] = count

        summary = await self._session.execute(
            select(
                func.count(),
                func.avg(DeadLetter.failure_count),
                func.min(DeadLetter.created_at),
                func.max(DeadLetter.created_at),
            )
            .select_from(DeadLetter)
            .where(*filters)
        )
        total, avg_failures, oldest, newest = summary.one()

        return DeadLetterStats(
            tenant_id=tenant_id,
            counts=counts,
            total=total or 0,
            avg_failure_count=float(avg_failures or 0.0),
            oldest_created_at=oldest,
            newest_created_at=newest,
        )

    async def _reload(self, entry_id: UUID) -> DeadLetter:
        result = await self._session.execute(
            select(DeadLetter)
            .where(DeadLetter.id == entry_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()
