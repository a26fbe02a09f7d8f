from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from harrier.db.base import utcnow
from harrier.db.models import Candidate, DiscoveredProfile, SourcingJob
from harrier.errors import JobNotFoundError
from harrier.types import CandidateIdentity, SourcingJobCreate


class Repository:
    """Queries over jobs, staging rows and candidates.

    Intake and administrative methods commit. The staging and candidate writers
    used by the stage executors only add to the session; the checkpoint store
    commits them together with the batch cursor.
    """

    def __init__(self, session: Session):
        self.session = session

    def create_job(self, payload: SourcingJobCreate, *, batch_size: int, max_retries: int) -> SourcingJob:
        job = SourcingJob(
            owner_id=payload.owner_id,
            title=payload.title,
            raw_job_description=payload.job_description,
            job_requirements=payload.job_requirements.model_dump(),
            max_candidates=payload.max_candidates,
            batch_size=batch_size,
            max_retries=max_retries,
            status="CREATED",
            current_stage="CREATED",
            last_activity_at=utcnow(),
        )
        self.session.add(job)
        self.session.commit()
        self.session.refresh(job)
        return job

    def get_job(self, job_id: int) -> SourcingJob | None:
        return self.session.get(SourcingJob, job_id)

    def require_job(self, job_id: int) -> SourcingJob:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_jobs(self, owner_id: str | None = None, limit: int = 50) -> list[SourcingJob]:
        statement = select(SourcingJob).order_by(SourcingJob.id.desc()).limit(limit)
        if owner_id:
            statement = statement.where(SourcingJob.owner_id == owner_id)
        return list(self.session.scalars(statement).all())

    def list_jobs_by_status(self, statuses: Iterable[str]) -> list[SourcingJob]:
        statement = (
            select(SourcingJob)
            .where(SourcingJob.status.in_(list(statuses)))
            .order_by(SourcingJob.id.asc())
        )
        return list(self.session.scalars(statement).all())

    def delete_job(self, job_id: int) -> bool:
        result = self.session.execute(delete(SourcingJob).where(SourcingJob.id == job_id))
        self.session.commit()
        return result.rowcount > 0

    def add_discovered_profiles(
        self, job_id: int, identities: list[CandidateIdentity], batch_size: int
    ) -> list[DiscoveredProfile]:
        rows = [
            DiscoveredProfile(
                job_id=job_id,
                position=position,
                batch_number=position // batch_size + 1,
                profile_url=identity.profile_url,
                full_name=identity.full_name,
                headline=identity.headline,
                location=identity.location,
            )
            for position, identity in enumerate(identities)
        ]
        self.session.add_all(rows)
        return rows

    def discovered_for_batch(self, job_id: int, batch_number: int) -> list[DiscoveredProfile]:
        statement = (
            select(DiscoveredProfile)
            .where(DiscoveredProfile.job_id == job_id, DiscoveredProfile.batch_number == batch_number)
            .order_by(DiscoveredProfile.position.asc())
        )
        return list(self.session.scalars(statement).all())

    def candidates_for_batch(self, job_id: int, batch_number: int) -> list[Candidate]:
        statement = (
            select(Candidate)
            .where(Candidate.job_id == job_id, Candidate.batch_number == batch_number)
            .order_by(Candidate.id.asc())
        )
        return list(self.session.scalars(statement).all())

    def candidate_for_discovered(self, job_id: int, discovered_profile_id: int) -> Candidate | None:
        return self.session.scalar(
            select(Candidate).where(
                Candidate.job_id == job_id,
                Candidate.discovered_profile_id == discovered_profile_id,
            )
        )

    def canonical_candidate(self, job_id: int, profile_key: str) -> Candidate | None:
        return self.session.scalar(
            select(Candidate)
            .where(
                Candidate.job_id == job_id,
                Candidate.profile_key == profile_key,
                Candidate.is_duplicate.is_(False),
            )
            .limit(1)
        )

    def first_seen_job_id(self, owner_id: str, profile_key: str, job_id: int) -> int | None:
        statement = (
            select(func.min(Candidate.job_id))
            .join(SourcingJob, SourcingJob.id == Candidate.job_id)
            .where(
                SourcingJob.owner_id == owner_id,
                Candidate.profile_key == profile_key,
                Candidate.job_id != job_id,
            )
        )
        return self.session.scalar(statement)

    def ranked_candidates(
        self,
        job_id: int,
        *,
        limit: int | None = None,
        include_duplicates: bool = False,
        scored_only: bool = False,
    ) -> list[Candidate]:
        statement = select(Candidate).where(Candidate.job_id == job_id)
        if not include_duplicates:
            statement = statement.where(Candidate.is_duplicate.is_(False))
        if scored_only:
            statement = statement.where(Candidate.is_scored.is_(True))
        statement = statement.order_by(
            Candidate.match_score.is_(None),
            Candidate.match_score.desc(),
            Candidate.id.asc(),
        )
        if limit is not None:
            statement = statement.limit(limit)
        return list(self.session.scalars(statement).all())

    def get_candidate(self, job_id: int, candidate_id: int) -> Candidate | None:
        candidate = self.session.get(Candidate, candidate_id)
        if candidate is None or candidate.job_id != job_id:
            return None
        return candidate
