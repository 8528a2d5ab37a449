"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - PENDING -> PROCESSING (claimed by a worker)
    - PROCESSING -> COMPLETED (success)
    - PROCESSING -> PENDING (failure with retries left, or lease expired)
    - PROCESSING -> DEAD (retries exhausted)
    - PENDING/PROCESSING -> CANCELLED (operator cancellation)

    FAILED is never persisted by the retry accountant; it exists so rows
    written by older producers still load.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD = "dead"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.DEAD, JobStatus.CANCELLED}
)


class JobType(StrEnum):
    """Job types understood by the platform's handlers."""

    AI_RESPONSE = "ai_response"
    SEND_MESSAGE = "send_message"
    SEND_WHATSAPP = "send_whatsapp"
    SEND_INSTAGRAM = "send_instagram"
    SEND_FACEBOOK = "send_facebook"
    SEND_TIKTOK = "send_tiktok"
    UPDATE_LEAD_SCORE = "update_lead_score"
    ESCALATE_CONVERSATION = "escalate_conversation"
    SEND_REMINDER = "send_reminder"
    DAILY_REPORT = "daily_report"
    SYNC_CONTACT = "sync_contact"
    PROCESS_MEDIA = "process_media"


class DeadLetterStatus(StrEnum):
    """
    Dead letter entry lifecycle states.

    State transitions:
    - PENDING -> RETRYING (claimed by a retry worker)
    - RETRYING -> PENDING (retry attempt failed)
    - PENDING/RETRYING -> RESOLVED (fixed, manually or by retry)
    - PENDING/RETRYING -> ARCHIVED (aged out, over failure cap, or dismissed)
    """

    PENDING = "pending"
    RETRYING = "retrying"
    RESOLVED = "resolved"
    ARCHIVED = "archived"


class TenantStatus(StrEnum):
    """Tenant account states. Only ACTIVE tenants have work dispatched."""

    ACTIVE = "active"
    SUSPENDED = "suspended"
    DELETED = "deleted"


# Priority bounds (lower = more urgent)
MIN_PRIORITY = 1
MAX_PRIORITY = 1000
DEFAULT_PRIORITY = 100

# Default values
DEFAULT_MAX_RETRIES = 3
RETRIES_EXHAUSTED_ERROR_CODE = "retries_exhausted"
DEAD_JOB_STAGE = "job"
DEAD_JOB_CHANNEL = "job_queue"

# API constants
API_V1_PREFIX = "/v1"

# Metrics names
METRIC_QUEUE_DEPTH = "job_queue_depth"
METRIC_JOBS_ENQUEUED = "jobs_enqueued_total"
METRIC_JOBS_CLAIMED = "jobs_claimed_total"
METRIC_JOBS_COMPLETED = "jobs_completed_total"
METRIC_JOB_RETRIES = "job_retries_total"
METRIC_JOBS_DEAD = "jobs_dead_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_LEASE_EXPIRED = "lease_expired_total"
METRIC_DEAD_LETTERS_SUBMITTED = "dead_letters_submitted_total"
METRIC_DEAD_LETTERS_DEDUPLICATED = "dead_letters_deduplicated_total"
METRIC_DEAD_LETTERS_ARCHIVED = "dead_letters_archived_total"

# Trace span names
SPAN_ENQUEUE_JOB = "enqueue_job"
SPAN_CLAIM_JOB = "claim_job"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_COMPLETE_JOB = "complete_job"
SPAN_FAIL_JOB = "fail_job"
SPAN_REAPER_SWEEP = "reaper_sweep"
SPAN_DEAD_LETTER_SUBMIT = "dead_letter_submit"
