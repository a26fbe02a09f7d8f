from __future__ import annotations

import asyncio
import logging
import threading
from collections import defaultdict
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

logger = logging.getLogger(__name__)


class EventBus:
    """Change notifications keyed by job id.

    Publishers are worker threads; subscribers are coroutines on an event loop,
    so delivery goes through ``loop.call_soon_threadsafe``.
    """

    def __init__(self) -> None:
        self._queues: dict[int, list[tuple[asyncio.AbstractEventLoop, asyncio.Queue[dict[str, Any]]]]] = (
            defaultdict(list)
        )
        self._lock = threading.Lock()

    def publish(self, job_id: int, event: dict[str, Any]) -> int:
        with self._lock:
            targets = list(self._queues.get(job_id, []))

        delivered = 0
        for loop, queue in targets:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, event)
            except RuntimeError:
                logger.debug("Dropped notification for closed loop job_id=%s", job_id)
                continue
            delivered += 1
        return delivered

    @contextmanager
    def subscription(self, job_id: int) -> Iterator[asyncio.Queue[dict[str, Any]]]:
        """Register a queue on the running loop for the duration of the block."""
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        entry = (loop, queue)
        with self._lock:
            self._queues[job_id].append(entry)
        try:
            yield queue
        finally:
            with self._lock:
                subscribers = self._queues.get(job_id, [])
                if entry in subscribers:
                    subscribers.remove(entry)
                if not subscribers:
                    self._queues.pop(job_id, None)

    def subscriber_count(self, job_id: int) -> int:
        with self._lock:
            return len(self._queues.get(job_id, []))
