from __future__ import annotations

from harrier.config import get_settings
from harrier.core.events import EventBus
from harrier.core.supervisor import JobSupervisor

_EVENT_BUS: EventBus | None = None
_SUPERVISOR: JobSupervisor | None = None


def get_event_bus() -> EventBus:
    global _EVENT_BUS
    if _EVENT_BUS is None:
        _EVENT_BUS = EventBus()
    return _EVENT_BUS


def run_job(job_id: int) -> None:
    from harrier.core.orchestrator import build_orchestrator

    build_orchestrator().resume(job_id)


def get_supervisor() -> JobSupervisor:
    global _SUPERVISOR
    if _SUPERVISOR is None:
        _SUPERVISOR = JobSupervisor(run_job, max_workers=get_settings().max_concurrent_jobs)
    return _SUPERVISOR


def shutdown_runtime(wait: bool = True) -> None:
    global _SUPERVISOR
    if _SUPERVISOR is not None:
        _SUPERVISOR.shutdown(wait=wait)
        _SUPERVISOR = None
