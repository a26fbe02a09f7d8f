"""Durable per-job checkpoint: stage, batch cursors, retry and cooldown state.

All writes go through ``CheckpointStore``, which serialises them per job with a
process-local lock and performs each one as a single transaction. Status changes
that must not race (claims) are conditional ``UPDATE ... WHERE status IN``.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import update
from sqlalchemy.orm import Session, sessionmaker

from harrier.config import Settings, get_settings
from harrier.core.events import EventBus
from harrier.core.runtime import get_event_bus
from harrier.core.states import BATCH_STAGES, next_status
from harrier.db.base import utcnow
from harrier.db.models import SourcingJob
from harrier.db.session import SessionLocal
from harrier.errors import CheckpointConflictError, JobNotFoundError, RateLimitError

logger = logging.getLogger(__name__)

_JOB_LOCKS: dict[int, threading.RLock] = {}
_JOB_LOCKS_GUARD = threading.Lock()


def job_lock(job_id: int) -> threading.RLock:
    with _JOB_LOCKS_GUARD:
        lock = _JOB_LOCKS.get(job_id)
        if lock is None:
            lock = _JOB_LOCKS[job_id] = threading.RLock()
        return lock


@dataclass(frozen=True, slots=True)
class Checkpoint:
    job_id: int
    status: str
    current_stage: str
    total_batches: int
    last_scraped_batch: int
    last_parsed_batch: int
    last_saved_batch: int
    last_scored_batch: int
    retry_count: int
    max_retries: int
    retry_after: datetime | None
    rate_limit_type: str | None
    rate_limit_reset_at: datetime | None
    last_activity_at: datetime | None
    error_message: str | None = None
    failed_at: datetime | None = None

    @classmethod
    def from_job(cls, job: SourcingJob) -> Checkpoint:
        return cls(
            job_id=job.id,
            status=job.status,
            current_stage=job.current_stage,
            total_batches=job.total_batches,
            last_scraped_batch=job.last_scraped_batch,
            last_parsed_batch=job.last_parsed_batch,
            last_saved_batch=job.last_saved_batch,
            last_scored_batch=job.last_scored_batch,
            retry_count=job.retry_count,
            max_retries=job.max_retries,
            retry_after=job.retry_after,
            rate_limit_type=job.rate_limit_type,
            rate_limit_reset_at=job.rate_limit_reset_at,
            last_activity_at=job.last_activity_at,
            error_message=job.error_message,
            failed_at=job.failed_at,
        )

    def cursor(self, stage: str) -> int:
        return getattr(self, BATCH_STAGES[stage].cursor_field)


class CheckpointStore:
    def __init__(
        self,
        session_factory: sessionmaker[Session] | Callable[[], Session] = SessionLocal,
        *,
        settings: Settings | None = None,
        event_bus: EventBus | None = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.event_bus = event_bus or get_event_bus()

    def read(self, job_id: int) -> Checkpoint:
        with self.session_factory() as session:
            job = session.get(SourcingJob, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return Checkpoint.from_job(job)

    @contextmanager
    def transaction(self, job_id: int) -> Iterator[tuple[Session, SourcingJob]]:
        """Locked read-modify-write of one job row, committed on clean exit."""
        with job_lock(job_id), self.session_factory() as session:
            job = session.get(SourcingJob, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            yield session, job
            job.last_activity_at = utcnow()
            session.commit()

    def update(self, job_id: int, **values: Any) -> Checkpoint:
        with self.transaction(job_id) as (_, job):
            for key, value in values.items():
                setattr(job, key, value)
        snapshot = self.read(job_id)
        self._publish(snapshot)
        return snapshot

    def claim(
        self,
        job_id: int,
        *,
        from_statuses: Iterable[str],
        match: dict[str, Any] | None = None,
        **values: Any,
    ) -> Checkpoint | None:
        """Conditionally update a job whose status is still one of ``from_statuses``.

        ``match`` adds equality guards on other columns. Returns ``None`` when
        another writer changed the row first.
        """
        conditions = [SourcingJob.id == job_id, SourcingJob.status.in_(list(from_statuses))]
        for column, expected in (match or {}).items():
            conditions.append(getattr(SourcingJob, column) == expected)
        with job_lock(job_id), self.session_factory() as session:
            result = session.execute(
                update(SourcingJob)
                .where(*conditions)
                .values(last_activity_at=utcnow(), **values)
            )
            session.commit()
            if result.rowcount == 0:
                return None
        snapshot = self.read(job_id)
        self._publish(snapshot)
        return snapshot

    def touch(self, job_id: int, *, status: str, retry_count: int) -> bool:
        """Refresh ``last_activity_at`` while a run still owns the job. Publishes nothing."""
        with job_lock(job_id), self.session_factory() as session:
            result = session.execute(
                update(SourcingJob)
                .where(
                    SourcingJob.id == job_id,
                    SourcingJob.status == status,
                    SourcingJob.retry_count == retry_count,
                )
                .values(last_activity_at=utcnow())
            )
            session.commit()
            return result.rowcount > 0

    def advance(
        self,
        job_id: int,
        *,
        from_status: str,
        to_status: str,
        retry_count: int | None = None,
        **values: Any,
    ) -> Checkpoint:
        values.update(self._stage_values(to_status))
        match = {"retry_count": retry_count} if retry_count is not None else None
        snapshot = self.claim(job_id, from_statuses=[from_status], match=match, status=to_status, **values)
        if snapshot is None:
            raise CheckpointConflictError(f"job {job_id} left {from_status} before it could advance")
        logger.info("Stage advanced job_id=%s %s -> %s", job_id, from_status, to_status)
        return snapshot

    def record_batch(
        self,
        job_id: int,
        stage: str,
        batch_number: int,
        apply: Callable[[Session, SourcingJob], int],
        *,
        retry_count: int | None = None,
    ) -> tuple[Checkpoint, int]:
        """Commit one batch's output together with its cursor and counter.

        ``apply`` writes the stage's rows inside the same transaction and returns
        the number of items produced. Single-shot stages have no cursor and always
        finish on their only batch. When ``retry_count`` is given the write only
        lands if no retry has claimed the job since the caller read it.
        """
        with self.transaction(job_id) as (session, job):
            self._check_owner(job, stage, retry_count)

            batch_stage = BATCH_STAGES.get(stage)
            if batch_stage is not None:
                cursor = getattr(job, batch_stage.cursor_field)
                if batch_number != cursor + 1 or batch_number > job.total_batches:
                    raise CheckpointConflictError(
                        f"job {job_id} {stage}: batch {batch_number} does not follow cursor {cursor}"
                        f" of {job.total_batches}"
                    )

            items = apply(session, job)

            if batch_stage is not None:
                setattr(job, batch_stage.cursor_field, batch_number)
                counter = getattr(job, batch_stage.counter_field)
                setattr(job, batch_stage.counter_field, counter + items)
                done = batch_number >= job.total_batches
            else:
                done = True

            if done:
                target = next_status(stage)
                job.status = target
                for key, value in self._stage_values(target).items():
                    setattr(job, key, value)

        snapshot = self.read(job_id)
        self._publish(snapshot)
        return snapshot, items

    def mark_rate_limited(
        self,
        job_id: int,
        error: RateLimitError,
        *,
        stage: str | None = None,
        retry_count: int | None = None,
    ) -> Checkpoint:
        with self.transaction(job_id) as (_, job):
            self._check_owner(job, stage, retry_count)
            job.status = "RATE_LIMITED"
            job.rate_limit_type = error.limit_type
            job.rate_limit_reset_at = error.reset_at
            job.error_message = str(error)
        snapshot = self.read(job_id)
        self._publish(snapshot)
        return snapshot

    def mark_failed(
        self,
        job_id: int,
        message: str,
        *,
        stage: str | None = None,
        retry_count: int | None = None,
    ) -> Checkpoint:
        with self.transaction(job_id) as (_, job):
            self._check_owner(job, stage, retry_count)
            now = utcnow()
            job.status = "FAILED"
            job.error_message = message
            job.failed_at = now
            job.completed_at = None
            job.retry_after = now + timedelta(seconds=self.cooldown_seconds(job.retry_count))
        snapshot = self.read(job_id)
        self._publish(snapshot)
        return snapshot

    def cooldown_seconds(self, retry_count: int) -> int:
        delay = self.settings.retry_base_delay_sec * (2 ** max(0, retry_count))
        return min(delay, self.settings.retry_max_delay_sec)

    @staticmethod
    def _check_owner(job: SourcingJob, stage: str | None, retry_count: int | None) -> None:
        if stage is not None and job.status != stage:
            raise CheckpointConflictError(f"job {job.id} is {job.status}, expected {stage}")
        if retry_count is not None and job.retry_count != retry_count:
            raise CheckpointConflictError(
                f"job {job.id} was claimed by retry {job.retry_count} while retry {retry_count} was running"
            )

    @staticmethod
    def _stage_values(status: str) -> dict[str, Any]:
        values: dict[str, Any] = {"current_stage": status}
        if status == "COMPLETED":
            values.update(completed_at=utcnow(), failed_at=None, error_message=None)
        return values

    def _publish(self, snapshot: Checkpoint) -> None:
        self.event_bus.publish(
            snapshot.job_id,
            {
                "type": "checkpoint",
                "status": snapshot.status,
                "current_stage": snapshot.current_stage,
            },
        )