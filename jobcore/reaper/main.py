"""
Stuck-job reaper.

The reaper runs periodically to find jobs whose worker stopped reporting
(lease older than the configured timeout) and hands them to the retry
accountant as failures. A crashed worker therefore costs one retry, never
the job.
"""

import asyncio
import logging
import signal
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from jobcore.config import get_settings
from jobcore.constants import SPAN_REAPER_SWEEP, JobStatus
from jobcore.db import close_db, get_session_context, init_db
from jobcore.db.dead_letters import DeadLetterRepository
from jobcore.db.models import Job
from jobcore.observability.logging import setup_logging
from jobcore.observability.metrics import setup_metrics
from jobcore.observability.tracing import get_tracer, setup_tracing
from jobcore.retry import RetryAccountant, RetryPolicy
from jobcore.utils import utcnow

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


class Reaper:
    """
    Reaper that reclaims jobs with expired leases.

    Runs periodically to:
    1. Find PROCESSING jobs whose started_at is older than the lease timeout
    2. Report each as a failed attempt under its current lease token
    3. Archive stale dead letters and release stuck dead letter retries
    """

    def __init__(
        self,
        interval_seconds: int | None = None,
        lease_timeout: timedelta | None = None,
        policy: RetryPolicy | None = None,
        session_factory: SessionFactory | None = None,
    ):
        """
        Initialize the reaper.

        Args:
            interval_seconds: Seconds between reaper runs.
            lease_timeout: Age after which a processing job counts as stuck.
            policy: Backoff policy used for reclaimed jobs.
            session_factory: Async context manager factory yielding sessions.
        """
        settings = get_settings()
        self.interval = interval_seconds or settings.reaper_interval_seconds
        self.lease_timeout = lease_timeout or timedelta(
            seconds=settings.lease_timeout_seconds
        )
        self.auto_archive = settings.dead_letter_auto_archive
        self._policy = policy
        self._session_factory = session_factory or get_session_context
        self._running = False
        self._metrics = setup_metrics()

    async def start(self) -> None:
        """Start the reaper loop."""
        logger.info(
            f"Reaper starting with interval {self.interval}s",
            extra={"lease_timeout_seconds": self.lease_timeout.total_seconds()},
        )
        self._running = True

        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.exception(f"Error in reaper loop: {e}")

            await asyncio.sleep(self.interval)

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._running = False

    async def sweep(self, lease_timeout: timedelta | None = None) -> int:
        """
        Reclaim every job whose lease is older than `lease_timeout`.

        Each stuck job goes through the retry accountant with the lease
        token it currently holds, so a worker that reports late finds its
        token stale and changes nothing. Running the sweep twice reclaims
        nothing the second time.

        Returns:
            Number of jobs reclaimed.
        """
        lease_timeout = lease_timeout or self.lease_timeout
        timeout_seconds = int(lease_timeout.total_seconds())

        with get_tracer().start_as_current_span(SPAN_REAPER_SWEEP) as span:
            async with self._session_factory() as session:
                cutoff = utcnow() - lease_timeout
                result = await session.execute(
                    select(Job)
                    .where(
                        Job.status == JobStatus.PROCESSING,
                        Job.started_at < cutoff,
                    )
                    .order_by(Job.started_at.asc())
                    .with_for_update(skip_locked=True)
                    .execution_options(populate_existing=True)
                )
                stuck = result.scalars().all()

                accountant = RetryAccountant(session, policy=self._policy)
                reclaimed = 0
                for job in stuck:
                    worker_id = job.worker_id
                    deadline = job.lease_deadline(lease_timeout)
                    outcome = await accountant.fail(
                        job.id,
                        job.lease_token,
                        error_message=(
                            f"Lease expired after {timeout_seconds}s "
                            f"(worker {worker_id} did not report)"
                        ),
                    )
                    if outcome is None:
                        continue
                    reclaimed += 1
                    self._metrics.record_lease_expired(outcome.job.tenant_id)
                    logger.warning(
                        "Reclaimed stuck job",
                        extra={
                            "job_id": str(job.id),
                            "worker_id": worker_id,
                            "lease_deadline": deadline.isoformat(),
                            "will_retry": outcome.will_retry,
                        },
                    )

                await session.commit()

            span.set_attribute("reclaimed", reclaimed)

        if reclaimed > 0:
            logger.info(f"Reclaimed {reclaimed} jobs with expired leases")
        return reclaimed

    async def maintain_dead_letters(self) -> int:
        """
        Archive aged-out dead letters and release abandoned retries.

        Returns:
            Number of archived entries.
        """
        async with self._session_factory() as session:
            repo = DeadLetterRepository(session)
            await repo.recover_stale_retries(self.lease_timeout)
            archived = await repo.archive()
            await session.commit()
        return archived

    async def run_once(self) -> int:
        """
        Run one reaper cycle (for testing or cron-style execution).

        Returns:
            Number of jobs reclaimed.
        """
        reclaimed = await self.sweep()
        if self.auto_archive:
            await self.maintain_dead_letters()
        return reclaimed


async def run_async() -> None:
    """Run the reaper asynchronously."""
    setup_logging("reaper")
    setup_tracing()
    await init_db()

    reaper = Reaper()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(reaper.stop()))

    try:
        await reaper.start()
    finally:
        await close_db()


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
