"""
Integration tests for the stuck-job reaper.
"""

from datetime import timedelta

import pytest
import pytest_asyncio
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobcore.constants import DeadLetterStatus, JobStatus, JobType
from jobcore.db.dead_letters import DeadLetterRepository
from jobcore.db.models import DeadLetter
from jobcore.db.repository import JobRepository
from jobcore.reaper.main import Reaper
from jobcore.retry import RetryPolicy
from jobcore.utils import utcnow


class TestReaper:
    """Tests for lease expiry handling."""

    @pytest_asyncio.fixture
    async def repo(self, db_session: AsyncSession) -> JobRepository:
        return JobRepository(db_session)

    @pytest.fixture
    def reaper(self, session_factory: async_sessionmaker[AsyncSession]) -> Reaper:
        return Reaper(
            interval_seconds=1,
            lease_timeout=timedelta(minutes=5),
            policy=RetryPolicy(base_delay_seconds=1, multiplier=5, max_delay_seconds=7200),
            session_factory=session_factory,
        )

    async def _claim_stuck_job(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
        tenant_id: str,
        backdate_lease,
        max_retries: int = 3,
    ):
        await repo.enqueue(tenant_id, JobType.AI_RESPONSE, {}, max_retries=max_retries)
        await db_session.commit()
        claimed = await repo.claim_next("crashed-worker")
        await db_session.commit()
        await backdate_lease(db_session, claimed.id, timedelta(minutes=6))
        return claimed

    async def test_sweep_reclaims_stuck_job(
        self,
        reaper: Reaper,
        repo: JobRepository,
        db_session: AsyncSession,
        active_tenant: str,
        backdate_lease,
    ):
        """Test an expired lease costs one retry and returns the job to the queue."""
        claimed = await self._claim_stuck_job(repo, db_session, active_tenant, backdate_lease)

        assert await reaper.sweep() == 1

        job = await repo.get(claimed.id)
        assert job.status == JobStatus.PENDING
        assert job.retry_count == 1
        assert job.lease_token is None
        assert job.worker_id is None
        assert "Lease expired after 300s" in job.error_message
        assert "crashed-worker" in job.error_message

    async def test_sweep_is_idempotent(
        self,
        reaper: Reaper,
        repo: JobRepository,
        db_session: AsyncSession,
        active_tenant: str,
        backdate_lease,
    ):
        await self._claim_stuck_job(repo, db_session, active_tenant, backdate_lease)

        assert await reaper.sweep() == 1
        assert await reaper.sweep() == 0

    async def test_fresh_leases_are_left_alone(
        self,
        reaper: Reaper,
        repo: JobRepository,
        db_session: AsyncSession,
        active_tenant: str,
    ):
        await repo.enqueue(active_tenant, JobType.AI_RESPONSE, {})
        await db_session.commit()
        claimed = await repo.claim_next("busy-worker")
        await db_session.commit()

        assert await reaper.sweep() == 0
        assert (await repo.get(claimed.id)).status == JobStatus.PROCESSING

    async def test_late_worker_report_is_ignored(
        self,
        reaper: Reaper,
        repo: JobRepository,
        db_session: AsyncSession,
        active_tenant: str,
        backdate_lease,
        make_due,
    ):
        """Test the original worker cannot complete a job after it was reclaimed."""
        claimed = await self._claim_stuck_job(repo, db_session, active_tenant, backdate_lease)
        await reaper.sweep()
        await make_due(db_session, claimed.id)

        reclaimed = await repo.claim_next("healthy-worker")
        await db_session.commit()
        assert reclaimed.id == claimed.id
        assert reclaimed.lease_token != claimed.lease_token

        assert await repo.mark_completed(claimed.id, claimed.lease_token) is None
        done = await repo.mark_completed(reclaimed.id, reclaimed.lease_token)
        assert done.status == JobStatus.COMPLETED

    async def test_stuck_job_dies_when_retries_exhausted(
        self,
        reaper: Reaper,
        repo: JobRepository,
        db_session: AsyncSession,
        active_tenant: str,
        backdate_lease,
    ):
        claimed = await self._claim_stuck_job(
            repo, db_session, active_tenant, backdate_lease, max_retries=0
        )

        assert await reaper.sweep() == 1

        job = await repo.get(claimed.id)
        assert job.status == JobStatus.DEAD
        assert job.completed_at is not None

    async def test_cancel_request_survives_expired_lease(
        self,
        reaper: Reaper,
        repo: JobRepository,
        db_session: AsyncSession,
        active_tenant: str,
        backdate_lease,
    ):
        """Test a job flagged for cancellation is cancelled, not retried, when its lease expires."""
        claimed = await self._claim_stuck_job(repo, db_session, active_tenant, backdate_lease)
        flagged = await repo.cancel(claimed.id)
        await db_session.commit()
        assert flagged.status == JobStatus.PROCESSING
        assert flagged.cancel_requested is True

        assert await reaper.sweep() == 1

        job = await repo.get(claimed.id)
        assert job.status == JobStatus.CANCELLED
        assert job.completed_at is not None
        assert job.retry_count == 0
        assert job.lease_token is None
        assert "Lease expired" in job.error_message

        assert await repo.claim_next("healthy-worker") is None

    async def test_run_once_archives_dead_letters(
        self,
        reaper: Reaper,
        db_session: AsyncSession,
    ):
        dead_letters = DeadLetterRepository(db_session)
        entry, _ = await dead_letters.submit("acme", "c-1", {}, "boom")
        await db_session.commit()
        await db_session.execute(
            sa.update(DeadLetter)
            .where(DeadLetter.id == entry.id)
            .values(created_at=utcnow() - timedelta(days=365))
        )
        await db_session.commit()

        assert await reaper.run_once() == 0

        archived = await dead_letters.get(entry.id)
        assert archived.status == DeadLetterStatus.ARCHIVED
