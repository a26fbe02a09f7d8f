from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from harrier.config import Settings, get_settings
from harrier.core.checkpoint import Checkpoint, CheckpointStore
from harrier.core.runtime import get_event_bus, get_supervisor
from harrier.core.stages import (
    BatchResult,
    CandidateDirectory,
    ProfileScorer,
    RequirementFormatter,
    StageExecutor,
    build_executors,
)
from harrier.core.states import BATCH_STAGES, RUNNABLE_STATUSES, TRANSIT_STATUSES, next_status
from harrier.directory.apify import ApifyDirectory
from harrier.errors import CheckpointConflictError, JobNotFoundError, RateLimitError
from harrier.llm.router import LLMRouter

logger = logging.getLogger(__name__)


class SourcingOrchestrator:
    """Drives a sourcing job through its stages from the persisted checkpoint.

    ``resume`` is the only way work happens: start, retry, the stuck-job sweep
    and restart recovery all call it, and it always continues from
    ``last_*_batch + 1`` of the recorded stage.
    """

    def __init__(
        self,
        *,
        directory: CandidateDirectory,
        formatter: RequirementFormatter,
        scorer: ProfileScorer,
        checkpoints: CheckpointStore | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.checkpoints = checkpoints or CheckpointStore(settings=self.settings, event_bus=get_event_bus())
        self.executors: dict[str, StageExecutor] = build_executors(
            self.checkpoints,
            directory=directory,
            formatter=formatter,
            scorer=scorer,
            settings=self.settings,
        )

    def start_job(self, job_id: int) -> bool:
        """Hand the job to the supervisor and return immediately."""
        return get_supervisor().submit(job_id)

    def resume(self, job_id: int) -> Checkpoint | None:
        logger.info("Resuming job_id=%s", job_id)
        owner: int | None = None
        while True:
            try:
                checkpoint = self.checkpoints.read(job_id)
            except JobNotFoundError:
                logger.warning("Job disappeared while running job_id=%s", job_id)
                return None

            if checkpoint.status not in RUNNABLE_STATUSES:
                logger.info("Job stopped job_id=%s status=%s", job_id, checkpoint.status)
                return checkpoint

            # Taking over an active job bumps retry_count, so a different value means another run owns it.
            if owner is None:
                owner = checkpoint.retry_count
            elif checkpoint.retry_count != owner:
                logger.warning(
                    "Job taken over job_id=%s by retry %s, stopping retry %s", job_id, checkpoint.retry_count, owner
                )
                return checkpoint

            try:
                with Heartbeat(self.checkpoints, checkpoint, self.settings.heartbeat_interval_sec):
                    self._advance_once(checkpoint)
            except CheckpointConflictError as exc:
                logger.warning("Lost ownership job_id=%s stage=%s: %s", job_id, checkpoint.status, exc)
                return self._current(job_id)
            except RateLimitError as exc:
                logger.warning(
                    "Rate limited job_id=%s stage=%s type=%s retry_after=%ss",
                    job_id,
                    checkpoint.status,
                    exc.limit_type,
                    exc.retry_after,
                )
                return self._halt(
                    job_id,
                    lambda: self.checkpoints.mark_rate_limited(
                        job_id, exc, stage=checkpoint.status, retry_count=owner
                    ),
                )
            except JobNotFoundError:
                logger.warning("Job deleted mid-stage job_id=%s", job_id)
                return None
            except Exception as exc:
                logger.exception("Stage failed job_id=%s stage=%s", job_id, checkpoint.status)
                return self._halt(
                    job_id,
                    lambda: self.checkpoints.mark_failed(
                        job_id, str(exc) or type(exc).__name__, stage=checkpoint.status, retry_count=owner
                    ),
                )

    def _advance_once(self, checkpoint: Checkpoint) -> list[BatchResult]:
        job_id = checkpoint.job_id
        status = checkpoint.status
        owner = checkpoint.retry_count
        if status in TRANSIT_STATUSES:
            self.checkpoints.advance(job_id, from_status=status, to_status=next_status(status), retry_count=owner)
            return []

        executor = self.executors[status]
        if status not in BATCH_STAGES:
            logger.info("Stage started job_id=%s stage=%s", job_id, status)
            return [executor.run_batch(job_id, 1, retry_count=owner)]

        cursor = checkpoint.cursor(status)
        total = checkpoint.total_batches
        if cursor >= total:
            # Nothing left in this stage (also the case when discovery found nobody).
            self.checkpoints.advance(job_id, from_status=status, to_status=next_status(status), retry_count=owner)
            return []

        if cursor == 0:
            logger.info("Stage started job_id=%s stage=%s batches=%s", job_id, status, total)
        last = min(total, cursor + executor.group_size)
        return executor.run_group(job_id, list(range(cursor + 1, last + 1)), retry_count=owner)

    def _current(self, job_id: int) -> Checkpoint | None:
        try:
            return self.checkpoints.read(job_id)
        except JobNotFoundError:
            return None

    def _halt(self, job_id: int, write: Callable[[], Checkpoint]) -> Checkpoint | None:
        try:
            return write()
        except JobNotFoundError:
            logger.warning("Job deleted before its failure could be recorded job_id=%s", job_id)
            return None
        except CheckpointConflictError as exc:
            logger.warning("Not recording halt job_id=%s, another run owns it: %s", job_id, exc)
            return self._current(job_id)


class Heartbeat:
    """Refreshes the job's ``last_activity_at`` from a side thread while a stage runs.

    Slow directory and LLM calls can outlast the stuck-job threshold; without the
    heartbeat the sweep would hand a healthy job to a second runner. The beat
    stops on exit or as soon as the job is no longer owned by this run.
    """

    def __init__(self, checkpoints: CheckpointStore, checkpoint: Checkpoint, interval: float):
        self.checkpoints = checkpoints
        self.checkpoint = checkpoint
        self.interval = interval
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._beat, name=f"harrier-heartbeat-{checkpoint.job_id}", daemon=True
        )

    def __enter__(self) -> Heartbeat:
        self._thread.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._stop.set()
        self._thread.join()

    def _beat(self) -> None:
        job_id = self.checkpoint.job_id
        while not self._stop.wait(self.interval):
            try:
                owned = self.checkpoints.touch(
                    job_id, status=self.checkpoint.status, retry_count=self.checkpoint.retry_count
                )
            except Exception:
                logger.exception("Heartbeat write failed job_id=%s", job_id)
                return
            if not owned:
                return


def build_orchestrator(settings: Settings | None = None) -> SourcingOrchestrator:
    settings = settings or get_settings()
    router = LLMRouter(settings)
    return SourcingOrchestrator(
        directory=ApifyDirectory(settings),
        formatter=router,
        scorer=router,
        settings=settings,
    )
