"""
Integration tests for worker functionality.
"""

import asyncio

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobcore.constants import JobStatus, JobType
from jobcore.db.repository import JobRepository
from jobcore.types.job import JobContext, JobResult
from jobcore.worker.handlers import register_handler, unregister_handler
from jobcore.worker.main import Worker


@pytest.fixture(autouse=True)
def clean_registry():
    yield
    for job_type in JobType:
        unregister_handler(job_type.value)


class TestWorkerIntegration:
    """Integration tests for worker job processing."""

    @pytest_asyncio.fixture
    async def repo(self, db_session: AsyncSession) -> JobRepository:
        """Create a repository instance."""
        return JobRepository(db_session)

    @pytest.fixture
    def worker(self, session_factory: async_sessionmaker[AsyncSession]) -> Worker:
        return Worker(
            worker_id="test-worker",
            batch_size=5,
            poll_interval=0.05,
            job_types=[JobType.SYNC_CONTACT.value],
            session_factory=session_factory,
        )

    async def test_successful_job_completes(
        self,
        worker: Worker,
        repo: JobRepository,
        db_session: AsyncSession,
        active_tenant: str,
    ):
        """Test complete job lifecycle: enqueue -> claim -> run -> complete."""

        @register_handler(JobType.SYNC_CONTACT)
        async def handle(context: JobContext) -> JobResult:
            return JobResult(success=True, output={"synced": context.payload["contact_id"]})

        job = await repo.enqueue(active_tenant, JobType.SYNC_CONTACT, {"contact_id": "42"})
        await db_session.commit()

        processed = await worker.process_one()

        assert processed.id == job.id
        done = await repo.get(job.id)
        assert done.status == JobStatus.COMPLETED
        assert done.result == {"synced": "42"}
        assert done.attempts == 1
        assert done.lease_token is None

    async def test_empty_queue(self, worker: Worker):
        assert await worker.process_one() is None

    async def test_failed_job_is_scheduled_for_retry(
        self,
        worker: Worker,
        repo: JobRepository,
        db_session: AsyncSession,
        active_tenant: str,
    ):
        """Test a handler exception becomes a retry with the traceback kept."""

        @register_handler(JobType.SYNC_CONTACT)
        async def handle(context: JobContext) -> JobResult:
            raise RuntimeError("crm unavailable")

        job = await repo.enqueue(active_tenant, JobType.SYNC_CONTACT, {})
        await db_session.commit()

        await worker.process_one()

        retried = await repo.get(job.id)
        assert retried.status == JobStatus.PENDING
        assert retried.retry_count == 1
        assert retried.error_message == "RuntimeError: crm unavailable"
        assert "Traceback" in retried.error_stack
        # Backoff keeps it out of the queue for now
        assert await worker.process_one() is None

    async def test_last_failure_kills_job(
        self,
        worker: Worker,
        repo: JobRepository,
        db_session: AsyncSession,
        active_tenant: str,
    ):
        @register_handler(JobType.SYNC_CONTACT)
        async def handle(context: JobContext) -> JobResult:
            assert context.is_last_attempt
            return JobResult(success=False, error="contact deleted upstream")

        job = await repo.enqueue(active_tenant, JobType.SYNC_CONTACT, {}, max_retries=0)
        await db_session.commit()

        await worker.process_one()

        dead = await repo.get(job.id)
        assert dead.status == JobStatus.DEAD
        assert dead.error_message == "contact deleted upstream"

    async def test_in_flight_cancellation(
        self,
        worker: Worker,
        repo: JobRepository,
        db_session: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession],
        active_tenant: str,
    ):
        """Test a handler that sees the cancel flag leaves the job cancelled."""

        @register_handler(JobType.SYNC_CONTACT)
        async def handle(context: JobContext) -> JobResult:
            async with session_factory() as session:
                await JobRepository(session).cancel(context.job_id)
                await session.commit()

            if await context.cancel_requested():
                return JobResult(success=False, error="cancelled")
            return JobResult(success=True)

        job = await repo.enqueue(active_tenant, JobType.SYNC_CONTACT, {})
        await db_session.commit()

        await worker.process_one()

        cancelled = await repo.get(job.id)
        assert cancelled.status == JobStatus.CANCELLED
        assert cancelled.retry_count == 0

    async def test_only_configured_job_types_claimed(
        self,
        worker: Worker,
        repo: JobRepository,
        db_session: AsyncSession,
        active_tenant: str,
    ):
        await repo.enqueue(active_tenant, JobType.DAILY_REPORT, {})
        await db_session.commit()

        assert await worker.process_one() is None

    async def test_job_types_default_to_registered_handlers(
        self,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        @register_handler(JobType.PROCESS_MEDIA)
        async def handle(context: JobContext) -> JobResult:
            return JobResult(success=True)

        worker = Worker(session_factory=session_factory)

        assert worker.job_types == [JobType.PROCESS_MEDIA.value]

    async def test_worker_loop_drains_queue(
        self,
        worker: Worker,
        repo: JobRepository,
        db_session: AsyncSession,
        active_tenant: str,
    ):
        """Test the polling loop processes everything and stops cleanly."""

        @register_handler(JobType.SYNC_CONTACT)
        async def handle(context: JobContext) -> JobResult:
            return JobResult(success=True)

        jobs = [
            await repo.enqueue(active_tenant, JobType.SYNC_CONTACT, {"n": n})
            for n in range(3)
        ]
        await db_session.commit()

        task = asyncio.create_task(worker.start())
        try:
            for _ in range(100):
                stats = await repo.get_job_stats(tenant_id=active_tenant)
                if stats["completed"] == len(jobs):
                    break
                await asyncio.sleep(0.05)
        finally:
            await worker.stop()
            await asyncio.wait_for(task, timeout=5)

        assert stats["completed"] == 3
        assert worker.is_running is False
