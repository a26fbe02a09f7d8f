"""Retry gating and the stuck-job sweep.

Denials are returned as ``RetryDecision`` values so callers can render the
reason, the wait time and whether the job is permanently exhausted.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Literal

from harrier.config import Settings, get_settings
from harrier.core.checkpoint import Checkpoint, CheckpointStore
from harrier.core.runtime import get_event_bus, get_supervisor
from harrier.core.states import RUNNABLE_STATUSES, resume_status
from harrier.core.supervisor import JobSupervisor
from harrier.db.base import ensure_utc, utcnow
from harrier.db.repositories import Repository

logger = logging.getLogger(__name__)

RetryReason = Literal[
    "allowed",
    "already_completed",
    "not_retriable",
    "in_progress",
    "rate_limited",
    "cooling_down",
    "exhausted",
]

RETRIABLE_STATUSES = RUNNABLE_STATUSES | {"FAILED", "RATE_LIMITED"}


@dataclass(frozen=True, slots=True)
class RetryDecision:
    allowed: bool
    reason: RetryReason
    wait_seconds: int = 0
    exhausted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _seconds_until(moment: datetime, now: datetime) -> int:
    return max(0, math.ceil((moment - now).total_seconds()))


class RetryController:
    def __init__(
        self,
        checkpoints: CheckpointStore | None = None,
        *,
        settings: Settings | None = None,
        supervisor: JobSupervisor | None = None,
    ):
        self.settings = settings or get_settings()
        self.checkpoints = checkpoints or CheckpointStore(settings=self.settings, event_bus=get_event_bus())
        self.supervisor = supervisor or get_supervisor()

    def is_stale(self, job: Checkpoint, now: datetime) -> bool:
        last_activity = ensure_utc(job.last_activity_at)
        if last_activity is None:
            return True
        return now - last_activity >= timedelta(seconds=self.settings.stuck_job_after_sec)

    def can_retry(self, job: Checkpoint, now: datetime | None = None) -> RetryDecision:
        now = ensure_utc(now) or utcnow()
        status = job.status

        if status == "COMPLETED":
            return RetryDecision(allowed=False, reason="already_completed")
        if status not in RETRIABLE_STATUSES:
            return RetryDecision(allowed=False, reason="not_retriable")
        # A worker here may still be unwinding after it recorded FAILED or RATE_LIMITED.
        if self.supervisor.is_running(job.job_id):
            return RetryDecision(allowed=False, reason="in_progress")
        if status in RUNNABLE_STATUSES and not self.is_stale(job, now):
            return RetryDecision(allowed=False, reason="in_progress")

        reset_at = ensure_utc(job.rate_limit_reset_at)
        if status == "RATE_LIMITED" and reset_at is not None and now < reset_at:
            return RetryDecision(allowed=False, reason="rate_limited", wait_seconds=_seconds_until(reset_at, now))

        retry_after = ensure_utc(job.retry_after)
        if retry_after is not None and now < retry_after:
            return RetryDecision(allowed=False, reason="cooling_down", wait_seconds=_seconds_until(retry_after, now))

        if job.retry_count >= job.max_retries:
            return RetryDecision(allowed=False, reason="exhausted", exhausted=True)

        return RetryDecision(allowed=True, reason="allowed")

    def retry(self, job_id: int, now: datetime | None = None) -> RetryDecision:
        checkpoint = self.checkpoints.read(job_id)
        decision = self.can_retry(checkpoint, now)
        if not decision.allowed:
            logger.info(
                "Retry denied job_id=%s status=%s reason=%s wait=%ss",
                job_id,
                checkpoint.status,
                decision.reason,
                decision.wait_seconds,
            )
            return decision

        values: dict[str, Any] = {
            "status": resume_status(checkpoint.status, checkpoint.current_stage),
            "error_message": None,
            "failed_at": None,
            "retry_after": None,
            "rate_limit_type": None,
            "rate_limit_reset_at": None,
        }
        # A rate-limit pause is not the job's fault and never uses up a retry.
        if checkpoint.status != "RATE_LIMITED":
            values["retry_count"] = checkpoint.retry_count + 1

        claimed = self.checkpoints.claim(
            job_id,
            from_statuses=[checkpoint.status],
            match={"retry_count": checkpoint.retry_count},
            **values,
        )
        if claimed is None:
            logger.info("Retry lost claim race job_id=%s", job_id)
            return RetryDecision(allowed=False, reason="in_progress")

        if self.supervisor.submit(job_id):
            logger.info(
                "Retry granted job_id=%s resuming=%s retry_count=%s",
                job_id,
                claimed.status,
                claimed.retry_count,
            )
            return decision

        # The claim went through but nothing will run it; hand the job back as it was.
        restored = self.checkpoints.claim(
            job_id,
            from_statuses=[claimed.status],
            match={"retry_count": claimed.retry_count},
            status=checkpoint.status,
            retry_count=checkpoint.retry_count,
            error_message=checkpoint.error_message,
            failed_at=checkpoint.failed_at,
            retry_after=checkpoint.retry_after,
            rate_limit_type=checkpoint.rate_limit_type,
            rate_limit_reset_at=checkpoint.rate_limit_reset_at,
        )
        logger.warning("Retry could not be scheduled job_id=%s restored=%s", job_id, restored is not None)
        return RetryDecision(allowed=False, reason="in_progress")

    def recover_stuck_jobs(self, now: datetime | None = None) -> dict[str, Any]:
        """Resume stale active jobs and rate-limited jobs whose reset time has passed."""
        now = ensure_utc(now) or utcnow()
        with self.checkpoints.session_factory() as session:
            jobs = Repository(session).list_jobs_by_status(RUNNABLE_STATUSES | {"RATE_LIMITED"})
            checkpoints = [Checkpoint.from_job(job) for job in jobs]

        resumed: list[int] = []
        skipped: dict[int, str] = {}
        for checkpoint in checkpoints:
            decision = self.retry(checkpoint.job_id, now)
            if decision.allowed:
                resumed.append(checkpoint.job_id)
            else:
                skipped[checkpoint.job_id] = decision.reason

        if resumed:
            logger.info("Recovered %s stuck job(s): %s", len(resumed), resumed)
        return {"checked": len(checkpoints), "resumed": resumed, "skipped": skipped}
