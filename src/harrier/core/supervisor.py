from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

logger = logging.getLogger(__name__)


class JobSupervisor:
    """Thread pool running one pipeline task per job id.

    A job id that is queued or running cannot be submitted again, which keeps a
    single writer on each job's checkpoint inside this process.
    """

    def __init__(self, runner: Callable[[int], Any], *, max_workers: int):
        self._runner = runner
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="harrier-job")
        self._futures: dict[int, Future[Any]] = {}
        self._lock = threading.Lock()

    def submit(self, job_id: int) -> bool:
        with self._lock:
            existing = self._futures.get(job_id)
            if existing is not None and not existing.done():
                logger.info("Job already scheduled job_id=%s", job_id)
                return False
            future = self._executor.submit(self._run, job_id)
            self._futures[job_id] = future

        future.add_done_callback(lambda done, job_id=job_id: self._forget(job_id, done))
        logger.info("Job scheduled job_id=%s", job_id)
        return True

    def is_running(self, job_id: int) -> bool:
        with self._lock:
            future = self._futures.get(job_id)
            return future is not None and not future.done()

    def wait(self, job_id: int, timeout: float | None = None) -> None:
        with self._lock:
            future = self._futures.get(job_id)
        if future is not None:
            future.result(timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=not wait)

    def _run(self, job_id: int) -> Any:
        try:
            return self._runner(job_id)
        except Exception:
            logger.exception("Job task crashed job_id=%s", job_id)
            raise

    def _forget(self, job_id: int, future: Future[Any]) -> None:
        with self._lock:
            if self._futures.get(job_id) is future:
                del self._futures[job_id]
