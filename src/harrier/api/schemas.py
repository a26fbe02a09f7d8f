from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class JobCreatedResponse(BaseModel):
    id: int
    status: str
    scheduled: bool


class RetryDecisionResponse(BaseModel):
    job_id: int
    allowed: bool
    reason: str
    wait_seconds: int = 0
    exhausted: bool = False


class RateLimitResponse(BaseModel):
    type: str | None
    reset_at: str | None
    retry_in: int


class SourcingJobSummary(BaseModel):
    id: int
    title: str
    status: str
    current_stage: str
    progress: float
    max_candidates: int
    total_profiles_found: int
    profiles_scored: int
    created_at: str | None


class SourcingJobResponse(SourcingJobSummary):
    owner_id: str
    stage_progress: float
    job_requirements: dict[str, Any]
    search_filters: dict[str, Any] | None
    batch_size: int
    total_batches: int
    last_scraped_batch: int
    last_parsed_batch: int
    last_saved_batch: int
    last_scored_batch: int
    profiles_scraped: int
    profiles_parsed: int
    profiles_saved: int
    duplicates_found: int
    retry_count: int
    max_retries: int
    error_message: str | None
    rate_limit: RateLimitResponse | None = None
    retry: RetryDecisionResponse | None = None
    last_activity_at: str | None
    completed_at: str | None
    failed_at: str | None


class CandidateResponse(BaseModel):
    id: int
    job_id: int
    batch_number: int
    profile_url: str
    full_name: str
    headline: str
    location: str
    photo_url: str
    current_position: str
    current_company: str
    email: str
    phone: str
    has_contact_info: bool
    experience_years: int | None
    skills: list[str] = Field(default_factory=list)
    match_score: float | None
    skills_score: float | None
    experience_score: float | None
    industry_score: float | None
    title_score: float | None
    nice_to_have_score: float | None
    matched_skills: list[str] = Field(default_factory=list)
    missing_skills: list[str] = Field(default_factory=list)
    bonus_skills: list[str] = Field(default_factory=list)
    seniority_level: str
    is_duplicate: bool
    is_scored: bool
    first_seen_job_id: int | None


class CandidateDetailResponse(CandidateResponse):
    match_reason: str
    relevant_years: float | None
    industry_match: str
    experience: list[dict[str, Any]] = Field(default_factory=list)
    education: list[dict[str, Any]] = Field(default_factory=list)
