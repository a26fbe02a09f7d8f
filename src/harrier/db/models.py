from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from harrier.db.base import Base, TimestampMixin, UTCDateTime


class SourcingJob(TimestampMixin, Base):
    __tablename__ = "sourcing_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(120), default="local", nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    raw_job_description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    job_requirements: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    search_filters: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    max_candidates: Mapped[int] = mapped_column(Integer, default=50, nullable=False)
    batch_size: Mapped[int] = mapped_column(Integer, default=10, nullable=False)

    status: Mapped[str] = mapped_column(String(40), default="CREATED", nullable=False, index=True)
    current_stage: Mapped[str] = mapped_column(String(40), default="CREATED", nullable=False)

    total_batches: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_scraped_batch: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_parsed_batch: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_saved_batch: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_scored_batch: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    total_profiles_found: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    profiles_scraped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    profiles_parsed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    profiles_saved: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    profiles_scored: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    duplicates_found: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    retry_after: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    rate_limit_type: Mapped[str | None] = mapped_column(String(40), nullable=True)
    rate_limit_reset_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    last_activity_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    discovered_profiles: Mapped[list[DiscoveredProfile]] = relationship(
        back_populates="job", cascade="all, delete-orphan", passive_deletes=True
    )
    candidates: Mapped[list[Candidate]] = relationship(
        back_populates="job", cascade="all, delete-orphan", passive_deletes=True
    )


class DiscoveredProfile(TimestampMixin, Base):
    __tablename__ = "discovered_profiles"
    __table_args__ = (UniqueConstraint("job_id", "position", name="uq_discovered_profiles_job_position"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    job_id: Mapped[int] = mapped_column(ForeignKey("sourcing_jobs.id", ondelete="CASCADE"), index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    batch_number: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    profile_url: Mapped[str] = mapped_column(String(800), nullable=False)
    full_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    headline: Mapped[str] = mapped_column(String(500), default="", nullable=False)
    location: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    raw_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    parsed_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    is_valid: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    scraped_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    parsed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    job: Mapped[SourcingJob] = relationship(back_populates="discovered_profiles")


class Candidate(TimestampMixin, Base):
    __tablename__ = "candidates"
    __table_args__ = (
        UniqueConstraint("job_id", "discovered_profile_id", name="uq_candidates_job_discovered"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    job_id: Mapped[int] = mapped_column(ForeignKey("sourcing_jobs.id", ondelete="CASCADE"), index=True)
    discovered_profile_id: Mapped[int] = mapped_column(
        ForeignKey("discovered_profiles.id", ondelete="CASCADE"), nullable=False
    )
    batch_number: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    profile_url: Mapped[str] = mapped_column(String(800), nullable=False)
    profile_key: Mapped[str] = mapped_column(String(800), nullable=False, index=True)

    full_name: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    headline: Mapped[str] = mapped_column(String(500), default="", nullable=False)
    location: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    photo_url: Mapped[str] = mapped_column(String(800), default="", nullable=False)
    current_position: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    current_company: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    email: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    phone: Mapped[str] = mapped_column(String(60), default="", nullable=False)
    has_contact_info: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    experience_years: Mapped[int | None] = mapped_column(Integer, nullable=True)
    skills: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    experience: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    education: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)

    skills_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    experience_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    industry_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    title_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    nice_to_have_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    match_score: Mapped[float | None] = mapped_column(Float, nullable=True, index=True)
    match_reason: Mapped[str] = mapped_column(Text, default="", nullable=False)
    matched_skills: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    missing_skills: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    bonus_skills: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    relevant_years: Mapped[float | None] = mapped_column(Float, nullable=True)
    seniority_level: Mapped[str] = mapped_column(String(40), default="", nullable=False)
    industry_match: Mapped[str] = mapped_column(String(255), default="", nullable=False)

    is_duplicate: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    first_seen_job_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_scored: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    scored_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    scraped_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    job: Mapped[SourcingJob] = relationship(back_populates="candidates")
