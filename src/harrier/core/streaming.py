"""Per-job progress stream.

``stream_job_events`` re-reads the job and its best candidates whenever the
checkpoint store announces a write (or the poll interval passes) and yields a
``snapshot`` only when something visible changed. The generator never raises:
a missing job or a failed read ends the stream with an ``error`` event.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from collections.abc import AsyncIterator, Callable
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from harrier.config import Settings, get_settings
from harrier.core.checkpoint import Checkpoint
from harrier.core.events import EventBus
from harrier.core.progress import progress, stage_progress
from harrier.core.retry import RetryController
from harrier.core.runtime import get_event_bus
from harrier.core.states import TERMINAL_STATUSES
from harrier.db.base import ensure_utc, utcnow
from harrier.db.models import Candidate
from harrier.db.repositories import Repository
from harrier.db.session import SessionLocal
from harrier.errors import JobNotFoundError

logger = logging.getLogger(__name__)

# Countdowns tick every second; they must not make an otherwise identical snapshot look new.
_VOLATILE_KEYS = {"retry_in", "wait_seconds"}


def candidate_summary(candidate: Candidate) -> dict[str, Any]:
    return {
        "id": candidate.id,
        "full_name": candidate.full_name,
        "headline": candidate.headline,
        "location": candidate.location,
        "profile_url": candidate.profile_url,
        "photo_url": candidate.photo_url,
        "current_position": candidate.current_position,
        "current_company": candidate.current_company,
        "match_score": candidate.match_score,
        "skills_score": candidate.skills_score,
        "experience_score": candidate.experience_score,
        "seniority_level": candidate.seniority_level,
        "has_contact_info": candidate.has_contact_info,
        "matched_skills": candidate.matched_skills or [],
        "bonus_skills": candidate.bonus_skills or [],
    }


def _isoformat(value: datetime | None) -> str | None:
    value = ensure_utc(value)
    return value.isoformat() if value else None


def build_snapshot(
    session: Session,
    job_id: int,
    *,
    candidate_limit: int,
    retry_controller: RetryController | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or utcnow()
    repo = Repository(session)
    job = repo.require_job(job_id)
    candidates = repo.ranked_candidates(job_id, limit=candidate_limit, scored_only=True)

    rate_limit = None
    reset_at = ensure_utc(job.rate_limit_reset_at)
    if job.status == "RATE_LIMITED" and reset_at is not None:
        rate_limit = {
            "type": job.rate_limit_type,
            "reset_at": reset_at.isoformat(),
            "retry_in": max(0, int((reset_at - now).total_seconds())),
        }

    retry = None
    if retry_controller is not None and job.status in {"FAILED", "RATE_LIMITED"}:
        retry = retry_controller.can_retry(Checkpoint.from_job(job), now).to_dict()

    return {
        "job_id": job.id,
        "status": job.status,
        "current_stage": job.current_stage,
        "progress": progress(job),
        "stage_progress": round(stage_progress(job), 4),
        "total_batches": job.total_batches,
        "total_profiles_found": job.total_profiles_found,
        "profiles_scraped": job.profiles_scraped,
        "profiles_parsed": job.profiles_parsed,
        "profiles_saved": job.profiles_saved,
        "profiles_scored": job.profiles_scored,
        "duplicates_found": job.duplicates_found,
        "retry_count": job.retry_count,
        "max_retries": job.max_retries,
        "error_message": job.error_message,
        "rate_limit": rate_limit,
        "retry": retry,
        "completed_at": _isoformat(job.completed_at),
        "failed_at": _isoformat(job.failed_at),
        "candidates": [candidate_summary(candidate) for candidate in candidates],
    }


def snapshot_digest(snapshot: dict[str, Any]) -> str:
    def strip(value: Any) -> Any:
        if isinstance(value, dict):
            return {key: strip(item) for key, item in value.items() if key not in _VOLATILE_KEYS}
        if isinstance(value, list):
            return [strip(item) for item in value]
        return value

    encoded = json.dumps(strip(snapshot), sort_keys=True, default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def format_sse(event: dict[str, Any]) -> str:
    return f"event: {event['type']}\ndata: {json.dumps(event, default=str)}\n\n"


async def stream_job_events(
    job_id: int,
    *,
    session_factory: Callable[[], Session] = SessionLocal,
    event_bus: EventBus | None = None,
    settings: Settings | None = None,
    retry_controller: RetryController | None = None,
) -> AsyncIterator[dict[str, Any]]:
    settings = settings or get_settings()
    event_bus = event_bus or get_event_bus()

    def read() -> dict[str, Any]:
        with session_factory() as session:
            return build_snapshot(
                session,
                job_id,
                candidate_limit=settings.stream_candidate_limit,
                retry_controller=retry_controller,
            )

    yield {"type": "connected", "job_id": job_id}

    last_digest: str | None = None
    with event_bus.subscription(job_id) as notifications:
        while True:
            try:
                snapshot = await asyncio.to_thread(read)
            except JobNotFoundError:
                yield {"type": "error", "job_id": job_id, "message": "Job not found"}
                return
            except Exception as exc:
                logger.exception("Stream read failed job_id=%s", job_id)
                yield {"type": "error", "job_id": job_id, "message": str(exc) or type(exc).__name__}
                return

            digest = snapshot_digest(snapshot)
            if digest != last_digest:
                last_digest = digest
                yield {"type": "snapshot", **snapshot}

            if snapshot["status"] in TERMINAL_STATUSES:
                yield {"type": "complete", **snapshot}
                return

            try:
                await asyncio.wait_for(notifications.get(), timeout=settings.stream_poll_interval_sec)
            except TimeoutError:
                pass
            while not notifications.empty():
                notifications.get_nowait()
