"""Typed failures raised by the sourcing pipeline.

``RateLimitError`` is the only failure the orchestrator treats as expected: it
pauses a job instead of failing it, and carries the moment the throttled
capability becomes available again.
"""

from __future__ import annotations

import math
from datetime import UTC, datetime, timedelta
from email.utils import parsedate_to_datetime
from typing import Any, Literal

RateLimitType = Literal["directory_search", "directory_enrich", "llm"]


class HarrierError(Exception):
    """Base class for pipeline errors."""


class RateLimitError(HarrierError):
    def __init__(self, message: str, *, limit_type: RateLimitType, reset_at: datetime):
        super().__init__(message)
        self.limit_type = limit_type
        if reset_at.tzinfo is None:
            reset_at = reset_at.replace(tzinfo=UTC)
        self.reset_at = reset_at

    @classmethod
    def after(cls, message: str, *, limit_type: RateLimitType, seconds: float) -> RateLimitError:
        reset_at = datetime.now(UTC) + timedelta(seconds=max(0.0, seconds))
        return cls(message, limit_type=limit_type, reset_at=reset_at)

    @property
    def retry_after(self) -> int:
        """Seconds until the reset time, never negative."""
        remaining = (self.reset_at - datetime.now(UTC)).total_seconds()
        return max(0, math.ceil(remaining))

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": type(self).__name__,
            "message": str(self),
            "type": self.limit_type,
            "reset_at": self.reset_at.isoformat(),
            "retry_after": self.retry_after,
        }


class ExternalServiceError(HarrierError):
    """A collaborator call failed in a way worth retrying later (timeouts, 5xx)."""

    def __init__(self, message: str, *, service: str, status_code: int | None = None):
        super().__init__(message)
        self.service = service
        self.status_code = status_code


class JobNotFoundError(HarrierError):
    def __init__(self, job_id: int):
        super().__init__(f"sourcing job {job_id} not found")
        self.job_id = job_id


class CheckpointConflictError(HarrierError):
    """A cursor update would repeat or skip a batch."""


def parse_retry_after(value: str | None, *, default_seconds: int) -> float:
    """Interpret an HTTP ``Retry-After`` header given in seconds or as an HTTP date."""
    if not value:
        return float(default_seconds)
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return float(default_seconds)
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - datetime.now(UTC)).total_seconds())
