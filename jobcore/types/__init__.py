"""
Type definitions for the task execution core.
Contains input/output type definitions for all functions, grouped by module.
"""

from jobcore.types.api import (
    ArchiveDeadLettersRequest,
    ArchiveDeadLettersResponse,
    AuthRequest,
    DeadLetterListResponse,
    DeadLetterResponse,
    EnqueueJobRequest,
    HealthResponse,
    JobListResponse,
    JobResponse,
    JobStatsResponse,
    ResolveDeadLetterRequest,
    RetryJobRequest,
    SubmitDeadLetterRequest,
    SubmitDeadLetterResponse,
    TokenResponse,
)
from jobcore.types.dead_letter import DeadLetterStats
from jobcore.types.job import FailureOutcome, JobContext, JobResult

__all__ = [
    # API types
    "EnqueueJobRequest",
    "JobResponse",
    "JobListResponse",
    "JobStatsResponse",
    "RetryJobRequest",
    "SubmitDeadLetterRequest",
    "SubmitDeadLetterResponse",
    "DeadLetterResponse",
    "DeadLetterListResponse",
    "ResolveDeadLetterRequest",
    "ArchiveDeadLettersRequest",
    "ArchiveDeadLettersResponse",
    "TokenResponse",
    "AuthRequest",
    "HealthResponse",
    # Job types
    "JobResult",
    "JobContext",
    "FailureOutcome",
    # Dead letter types
    "DeadLetterStats",
]
