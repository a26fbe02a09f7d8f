from __future__ import annotations

from collections.abc import Generator

from fastapi import Depends
from sqlalchemy.orm import Session

from harrier.core.retry import RetryController
from harrier.core.runtime import get_supervisor
from harrier.core.supervisor import JobSupervisor
from harrier.db.session import get_db_session


def get_db() -> Generator[Session, None, None]:
    yield from get_db_session()


def get_job_supervisor() -> JobSupervisor:
    return get_supervisor()


def get_retry_controller(supervisor: JobSupervisor = Depends(get_job_supervisor)) -> RetryController:
    return RetryController(supervisor=supervisor)
