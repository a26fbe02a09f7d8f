from __future__ import annotations

from contextlib import aclosing
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session

from harrier.api.deps import get_db, get_job_supervisor, get_retry_controller
from harrier.api.schemas import (
    CandidateDetailResponse,
    CandidateResponse,
    JobCreatedResponse,
    RateLimitResponse,
    RetryDecisionResponse,
    SourcingJobResponse,
    SourcingJobSummary,
)
from harrier.config import get_settings
from harrier.core.checkpoint import Checkpoint
from harrier.core.progress import progress, stage_progress
from harrier.core.retry import RetryController
from harrier.core.streaming import format_sse, stream_job_events
from harrier.core.supervisor import JobSupervisor
from harrier.db.base import ensure_utc, utcnow
from harrier.db.models import Candidate, SourcingJob
from harrier.db.repositories import Repository
from harrier.errors import JobNotFoundError
from harrier.types import SourcingJobCreate

router = APIRouter(prefix="/api", tags=["api"])


def _iso(value: datetime | None) -> str | None:
    value = ensure_utc(value)
    return value.isoformat() if value else None


def _require_job(repo: Repository, job_id: int) -> SourcingJob:
    try:
        return repo.require_job(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


def _job_summary(job: SourcingJob) -> SourcingJobSummary:
    return SourcingJobSummary(
        id=job.id,
        title=job.title,
        status=job.status,
        current_stage=job.current_stage,
        progress=progress(job),
        max_candidates=job.max_candidates,
        total_profiles_found=job.total_profiles_found,
        profiles_scored=job.profiles_scored,
        created_at=_iso(job.created_at),
    )


def _job_response(job: SourcingJob, retry_controller: RetryController) -> SourcingJobResponse:
    now = utcnow()
    rate_limit = None
    reset_at = ensure_utc(job.rate_limit_reset_at)
    if job.status == "RATE_LIMITED":
        rate_limit = RateLimitResponse(
            type=job.rate_limit_type,
            reset_at=_iso(reset_at),
            retry_in=max(0, int((reset_at - now).total_seconds())) if reset_at else 0,
        )

    retry = None
    if job.status in {"FAILED", "RATE_LIMITED"}:
        decision = retry_controller.can_retry(Checkpoint.from_job(job), now)
        retry = RetryDecisionResponse(job_id=job.id, **decision.to_dict())

    return SourcingJobResponse(
        **_job_summary(job).model_dump(),
        owner_id=job.owner_id,
        stage_progress=round(stage_progress(job), 4),
        job_requirements=job.job_requirements or {},
        search_filters=job.search_filters,
        batch_size=job.batch_size,
        total_batches=job.total_batches,
        last_scraped_batch=job.last_scraped_batch,
        last_parsed_batch=job.last_parsed_batch,
        last_saved_batch=job.last_saved_batch,
        last_scored_batch=job.last_scored_batch,
        profiles_scraped=job.profiles_scraped,
        profiles_parsed=job.profiles_parsed,
        profiles_saved=job.profiles_saved,
        duplicates_found=job.duplicates_found,
        retry_count=job.retry_count,
        max_retries=job.max_retries,
        error_message=job.error_message,
        rate_limit=rate_limit,
        retry=retry,
        last_activity_at=_iso(job.last_activity_at),
        completed_at=_iso(job.completed_at),
        failed_at=_iso(job.failed_at),
    )


def _candidate_fields(candidate: Candidate) -> dict[str, Any]:
    return {
        "id": candidate.id,
        "job_id": candidate.job_id,
        "batch_number": candidate.batch_number,
        "profile_url": candidate.profile_url,
        "full_name": candidate.full_name,
        "headline": candidate.headline,
        "location": candidate.location,
        "photo_url": candidate.photo_url,
        "current_position": candidate.current_position,
        "current_company": candidate.current_company,
        "email": candidate.email,
        "phone": candidate.phone,
        "has_contact_info": candidate.has_contact_info,
        "experience_years": candidate.experience_years,
        "skills": candidate.skills or [],
        "match_score": candidate.match_score,
        "skills_score": candidate.skills_score,
        "experience_score": candidate.experience_score,
        "industry_score": candidate.industry_score,
        "title_score": candidate.title_score,
        "nice_to_have_score": candidate.nice_to_have_score,
        "matched_skills": candidate.matched_skills or [],
        "missing_skills": candidate.missing_skills or [],
        "bonus_skills": candidate.bonus_skills or [],
        "seniority_level": candidate.seniority_level,
        "is_duplicate": candidate.is_duplicate,
        "is_scored": candidate.is_scored,
        "first_seen_job_id": candidate.first_seen_job_id,
    }


@router.post("/sourcing", response_model=JobCreatedResponse, status_code=status.HTTP_201_CREATED)
def create_sourcing_job(
    payload: SourcingJobCreate,
    db: Session = Depends(get_db),
    supervisor: JobSupervisor = Depends(get_job_supervisor),
) -> JobCreatedResponse:
    settings = get_settings()
    job = Repository(db).create_job(
        payload,
        batch_size=settings.sourcing_batch_size,
        max_retries=settings.default_max_retries,
    )
    scheduled = supervisor.submit(job.id)
    return JobCreatedResponse(id=job.id, status=job.status, scheduled=scheduled)


@router.get("/sourcing", response_model=list[SourcingJobSummary])
def list_sourcing_jobs(
    owner_id: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
) -> list[SourcingJobSummary]:
    return [_job_summary(job) for job in Repository(db).list_jobs(owner_id=owner_id, limit=limit)]


@router.get("/sourcing/{job_id}", response_model=SourcingJobResponse)
def get_sourcing_job(
    job_id: int,
    db: Session = Depends(get_db),
    retry_controller: RetryController = Depends(get_retry_controller),
) -> SourcingJobResponse:
    return _job_response(_require_job(Repository(db), job_id), retry_controller)


@router.delete("/sourcing/{job_id}")
def delete_sourcing_job(job_id: int, db: Session = Depends(get_db)) -> dict[str, Any]:
    if not Repository(db).delete_job(job_id):
        raise HTTPException(status_code=404, detail=f"sourcing job {job_id} not found")
    return {"id": job_id, "deleted": True}


@router.post("/sourcing/{job_id}/retry", response_model=RetryDecisionResponse, status_code=status.HTTP_202_ACCEPTED)
def retry_sourcing_job(
    job_id: int,
    retry_controller: RetryController = Depends(get_retry_controller),
) -> Any:
    try:
        decision = retry_controller.retry(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    body = RetryDecisionResponse(job_id=job_id, **decision.to_dict())
    if not decision.allowed:
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=body.model_dump())
    return body


@router.get("/sourcing/{job_id}/candidates", response_model=list[CandidateResponse])
def list_candidates(
    job_id: int,
    include_duplicates: bool = False,
    scored_only: bool = False,
    limit: int | None = Query(default=None, ge=1, le=500),
    db: Session = Depends(get_db),
) -> list[CandidateResponse]:
    repo = Repository(db)
    _require_job(repo, job_id)
    rows = repo.ranked_candidates(
        job_id,
        limit=limit,
        include_duplicates=include_duplicates,
        scored_only=scored_only,
    )
    return [CandidateResponse(**_candidate_fields(row)) for row in rows]


@router.get("/sourcing/{job_id}/candidates/{candidate_id}", response_model=CandidateDetailResponse)
def get_candidate(job_id: int, candidate_id: int, db: Session = Depends(get_db)) -> CandidateDetailResponse:
    candidate = Repository(db).get_candidate(job_id, candidate_id)
    if candidate is None:
        raise HTTPException(status_code=404, detail=f"candidate {candidate_id} not found in job {job_id}")
    return CandidateDetailResponse(
        **_candidate_fields(candidate),
        match_reason=candidate.match_reason,
        relevant_years=candidate.relevant_years,
        industry_match=candidate.industry_match,
        experience=candidate.experience or [],
        education=candidate.education or [],
    )


@router.get("/sourcing/{job_id}/stream")
async def stream_sourcing_job(
    job_id: int,
    retry_controller: RetryController = Depends(get_retry_controller),
) -> StreamingResponse:
    async def body():
        async with aclosing(stream_job_events(job_id, retry_controller=retry_controller)) as events:
            async for event in events:
                yield format_sse(event)

    return StreamingResponse(
        body(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.websocket("/sourcing/{job_id}/ws")
async def stream_sourcing_job_ws(websocket: WebSocket, job_id: int) -> None:
    await websocket.accept()
    events = stream_job_events(job_id, retry_controller=get_retry_controller(get_job_supervisor()))
    try:
        async for event in events:
            await websocket.send_json(event)
    except WebSocketDisconnect:
        return
    finally:
        await events.aclose()
    await websocket.close()
