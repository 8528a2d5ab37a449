"""
Dead letter type definitions.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from jobcore.constants import DeadLetterStatus


class DeadLetterStats(BaseModel):
    """Observability snapshot of the dead letter store."""

    tenant_id: str | None = None
    counts: dict[DeadLetterStatus, int] = Field(default_factory=dict)
    total: int = 0
    avg_failure_count: float = 0.0
    oldest_created_at: datetime | None = None
    newest_created_at: datetime | None = None
