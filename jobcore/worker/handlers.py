"""
Job handlers registry.

The core ships no business handlers. Applications register one handler
per job type at import time:

    @register_handler(JobType.SEND_REMINDER)
    async def send_reminder(context: JobContext) -> JobResult:
        ...

Job handlers must be idempotent - they may be executed multiple times
for the same job in case of worker crashes or lease expiry.
"""

import logging
import time
from typing import Awaitable, Callable

from jobcore.types.job import JobContext, JobResult
from jobcore.utils import format_exception

logger = logging.getLogger(__name__)

# Type alias for job handler functions
JobHandler = Callable[[JobContext], Awaitable[JobResult]]

# Handler registry
_handlers: dict[str, JobHandler] = {}


def register_handler(job_type: str) -> Callable[[JobHandler], JobHandler]:
    """
    Decorator to register a job handler.

    Registering a second handler for the same type replaces the first.

    Args:
        job_type: The job type this handler processes.

    Returns:
        Decorator function.
    """

    def decorator(handler: JobHandler) -> JobHandler:
        if job_type in _handlers:
            logger.warning(f"Replacing handler for job type: {job_type}")
        _handlers[str(job_type)] = handler
        logger.info(f"Registered handler for job type: {job_type}")
        return handler

    return decorator


def unregister_handler(job_type: str) -> bool:
    """Remove the handler for a job type. Returns True if one was registered."""
    return _handlers.pop(str(job_type), None) is not None


def get_handler(job_type: str) -> JobHandler | None:
    """
    Get the handler for a job type.

    Args:
        job_type: The job type.

    Returns:
        The handler function or None if not found.
    """
    return _handlers.get(str(job_type))


def list_handlers() -> list[str]:
    """List all registered job types."""
    return list(_handlers.keys())


async def execute_job(context: JobContext) -> JobResult:
    """
    Execute a job using the handler registered for its type.

    Exceptions raised by the handler are turned into a failed result that
    carries both the message and the traceback, so nothing is lost when
    the failure is persisted.

    Args:
        context: The job context.

    Returns:
        JobResult from the handler, with duration_ms filled in.
    """
    handler = get_handler(context.job_type)

    if handler is None:
        logger.error(
            f"No handler for job type: {context.job_type}",
            extra={"job_id": str(context.job_id)},
        )
        return JobResult(
            success=False,
            error=f"No handler registered for job type: {context.job_type}",
        )

    started = time.perf_counter()
    try:
        result = await handler(context)
    except Exception as e:
        logger.exception(
            "Handler raised exception",
            extra={"job_id": str(context.job_id), "error": str(e)},
        )
        result = JobResult(
            success=False,
            error=f"{type(e).__name__}: {e}",
            error_stack=format_exception(e),
        )

    if result.duration_ms is None:
        result.duration_ms = (time.perf_counter() - started) * 1000
    return result
