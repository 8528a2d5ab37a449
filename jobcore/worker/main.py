"""
Worker process for executing jobs.

The worker claims jobs from the queue, executes them through the handler
registry, and reports the outcome back to the job store. It holds no
state the reaper cannot reconstruct: a worker that dies mid-job simply
lets its lease expire.
"""

import asyncio
import logging
import os
import signal
import time
from collections.abc import Callable, Sequence
from contextlib import AbstractAsyncContextManager
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from jobcore.config import get_settings
from jobcore.constants import SPAN_EXECUTE_JOB
from jobcore.db import close_db, get_session_context, init_db
from jobcore.db.models import Job
from jobcore.db.repository import JobRepository
from jobcore.observability.logging import bind_context, setup_logging
from jobcore.observability.metrics import setup_metrics
from jobcore.observability.tracing import get_tracer, setup_tracing
from jobcore.types.job import JobContext, JobResult
from jobcore.utils import format_exception
from jobcore.worker.handlers import execute_job, list_handlers

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


class Worker:
    """
    Job worker that polls for and executes jobs.

    Features:
    - Atomic claims using FOR UPDATE SKIP LOCKED behind the tenant gate
    - Lease-token guarded completion and failure reports
    - Cooperative cancellation of in-flight jobs
    - Graceful shutdown on SIGTERM/SIGINT
    """

    def __init__(
        self,
        worker_id: str | None = None,
        batch_size: int | None = None,
        poll_interval: float | None = None,
        job_types: Sequence[str] | None = None,
        session_factory: SessionFactory | None = None,
    ):
        """
        Initialize the worker.

        Args:
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            batch_size: Number of jobs to claim per poll.
            poll_interval: Seconds between polls when queue is empty.
            job_types: Job types to claim. Defaults to the configured list,
                then to the types with a registered handler.
            session_factory: Async context manager factory yielding sessions.
        """
        settings = get_settings()

        self.worker_id = (
            worker_id
            or settings.worker_id
            or f"{os.uname().nodename}-{os.getpid()}"
        )
        self.batch_size = batch_size or settings.worker_batch_size
        self.poll_interval = poll_interval or settings.worker_poll_interval_seconds
        self._job_types = job_types or settings.worker_job_types
        self._session_factory = session_factory or get_session_context

        self._running = False
        self._current_jobs: dict[UUID, asyncio.Task] = {}
        self._metrics = setup_metrics()

    @property
    def job_types(self) -> list[str] | None:
        if self._job_types:
            return list(self._job_types)
        return list_handlers() or None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the worker."""
        logger.info(
            "Worker starting",
            extra={
                "worker_id": self.worker_id,
                "batch_size": self.batch_size,
                "job_types": self.job_types,
            },
        )

        self._running = True

        while self._running:
            try:
                jobs_processed = await self._poll_and_execute()

                if jobs_processed == 0:
                    await asyncio.sleep(self.poll_interval)

            except Exception as e:
                logger.exception(
                    f"Error in worker loop: {e}",
                    extra={"worker_id": self.worker_id},
                )
                await asyncio.sleep(self.poll_interval)

        if self._current_jobs:
            logger.info(f"Waiting for {len(self._current_jobs)} jobs to complete")
            await asyncio.gather(*self._current_jobs.values(), return_exceptions=True)

        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._running = False

    async def process_one(self) -> Job | None:
        """
        Claim and execute a single job, if one is eligible.

        Returns:
            The job as it was claimed, or None when the queue had nothing.
        """
        async with self._session_factory() as session:
            job = await JobRepository(session).claim_next(
                self.worker_id, job_types=self.job_types
            )
            await session.commit()

        if job is None:
            return None

        await self._execute_job(job)
        return job

    async def _poll_and_execute(self) -> int:
        """
        Poll for jobs and execute them.

        Returns:
            Number of jobs processed.
        """
        async with self._session_factory() as session:
            jobs = await JobRepository(session).claim_batch(
                self.worker_id,
                limit=self.batch_size,
                job_types=self.job_types,
            )
            await session.commit()

        if not jobs:
            return 0

        logger.info(f"Claimed {len(jobs)} jobs", extra={"worker_id": self.worker_id})

        tasks = []
        for job in jobs:
            task = asyncio.create_task(self._execute_job(job))
            self._current_jobs[job.id] = task
            tasks.append(task)

        await asyncio.gather(*tasks, return_exceptions=True)
        return len(jobs)

    def _cancel_check(self, job_id: UUID):
        async def cancel_requested() -> bool:
            async with self._session_factory() as session:
                return await JobRepository(session).is_cancel_requested(job_id)

        return cancel_requested

    async def _execute_job(self, job: Job) -> None:
        """
        Execute a single claimed job and report the outcome.

        Args:
            job: The job as returned by the claim.
        """
        job_id = job.id
        lease_token = job.lease_token
        start_time = time.time()

        try:
            context = JobContext(
                job_id=job_id,
                tenant_id=job.tenant_id,
                job_type=job.job_type,
                payload=job.payload,
                attempt=job.attempts,
                retry_count=job.retry_count,
                max_retries=job.max_retries,
                lease_token=lease_token,
                worker_id=self.worker_id,
                started_at=job.started_at,
                cancel_requested=self._cancel_check(job_id),
            )

            logger.info(
                "Executing job",
                extra={
                    "job_id": str(job_id),
                    "tenant_id": job.tenant_id,
                    "job_type": job.job_type,
                    "attempt": context.attempt,
                },
            )

            with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
                span.set_attribute("job_id", str(job_id))
                span.set_attribute("tenant_id", job.tenant_id)
                span.set_attribute("job_type", job.job_type)
                span.set_attribute("attempt", context.attempt)

                result = await execute_job(context)
                span.set_attribute("success", result.success)

            await self._report(job, result, time.time() - start_time)

        except Exception as e:
            logger.exception(
                "Exception executing job",
                extra={"job_id": str(job_id), "error": str(e)},
            )
            try:
                async with self._session_factory() as session:
                    await JobRepository(session).mark_failed(
                        job_id,
                        lease_token,
                        error_message=f"Worker exception: {e}",
                        error_stack=format_exception(e),
                    )
                    await session.commit()
            except Exception:
                logger.exception("Failed to mark job as failed")

        finally:
            self._current_jobs.pop(job_id, None)

    async def _report(self, job: Job, result: JobResult, duration: float) -> None:
        async with self._session_factory() as session:
            repo = JobRepository(session)

            if result.success:
                await repo.mark_completed(job.id, job.lease_token, result=result.output)
            elif await repo.is_cancel_requested(job.id):
                await repo.finalize_cancelled(job.id, job.lease_token)
                self._metrics.record_job_completed(job.tenant_id, "cancelled", duration)
            else:
                outcome = await repo.mark_failed(
                    job.id,
                    job.lease_token,
                    error_message=result.error or "Unknown error",
                    error_stack=result.error_stack,
                )
                logger.warning(
                    "Job attempt failed",
                    extra={
                        "job_id": str(job.id),
                        "error": result.error,
                        "attempt": job.attempts,
                        "will_retry": outcome.will_retry if outcome else None,
                    },
                )
                if outcome is not None:
                    self._metrics.record_job_completed(
                        job.tenant_id, outcome.job.status.value, duration
                    )

            await session.commit()


async def run_async() -> None:
    """Run the worker asynchronously."""
    setup_logging("worker")
    setup_tracing()
    await init_db()

    worker = Worker()
    bind_context(worker_id=worker.worker_id)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(worker.stop()))

    try:
        await worker.start()
    finally:
        await close_db()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
