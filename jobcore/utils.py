"""Small helpers shared by the repositories."""

import hashlib
import json
import traceback
from datetime import UTC, datetime
from typing import Any


def utcnow() -> datetime:
    """
    Current UTC time as a naive datetime.

    All timestamp columns store naive UTC so comparisons behave the same
    on PostgreSQL and SQLite.
    """
    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    """
    Convert a caller-supplied datetime to the naive UTC form the columns store.

    Aware values are shifted to UTC first. Naive values are taken as UTC
    already and returned unchanged.
    """
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def payload_fingerprint(payload: Any) -> str:
    """
    Stable sha256 hex digest of a JSON-serializable payload.

    Keys are sorted so logically equal payloads hash the same regardless
    of insertion order.
    """
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def format_exception(exc: BaseException) -> str:
    """Render an exception with its traceback for the error_stack column."""
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
