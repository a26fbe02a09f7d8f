"""Stage executors: one transformation per pipeline stage, resumable by batch.

Every executor splits a batch into ``load`` (database read), ``process``
(collaborator I/O, no database access) and ``store`` (database write). ``store``
runs inside the checkpoint transaction that also moves the stage cursor, so a
batch's rows and its cursor are committed together or not at all.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Any, ClassVar, Protocol

from sqlalchemy.orm import Session

from harrier.config import Settings
from harrier.core.checkpoint import CheckpointStore
from harrier.core.profiles import (
    canonicalize_profile_url,
    clean_profile,
    is_valid_profile,
    raw_profile_keys,
)
from harrier.db.base import utcnow
from harrier.db.models import Candidate, SourcingJob
from harrier.db.repositories import Repository
from harrier.errors import JobNotFoundError
from harrier.types import (
    CandidateIdentity,
    JobRequirements,
    ParsedProfile,
    ProfileScore,
    SearchFilters,
)

logger = logging.getLogger(__name__)


class CandidateDirectory(Protocol):
    def discover_candidates(self, filters: SearchFilters, max_results: int) -> list[CandidateIdentity]: ...

    def enrich_profiles(self, identities: list[CandidateIdentity]) -> list[dict[str, Any]]: ...


class RequirementFormatter(Protocol):
    def format_requirements(
        self, *, title: str, description: str, requirements: JobRequirements
    ) -> SearchFilters: ...


class ProfileScorer(Protocol):
    def score_profile(
        self, profile: ParsedProfile, filters: SearchFilters, requirements: JobRequirements
    ) -> ProfileScore: ...


@dataclass(slots=True)
class BatchResult:
    batch_number: int
    items_produced: int
    done: bool


@dataclass(frozen=True, slots=True)
class StageContext:
    """Job fields the process phase may read once the session is closed."""

    job_id: int
    owner_id: str
    title: str
    description: str
    requirements: JobRequirements
    filters: SearchFilters | None
    max_candidates: int
    batch_size: int

    @classmethod
    def from_job(cls, job: SourcingJob) -> StageContext:
        return cls(
            job_id=job.id,
            owner_id=job.owner_id,
            title=job.title,
            description=job.raw_job_description,
            requirements=JobRequirements.model_validate(job.job_requirements),
            filters=SearchFilters.model_validate(job.search_filters) if job.search_filters else None,
            max_candidates=job.max_candidates,
            batch_size=job.batch_size,
        )

    def require_filters(self) -> SearchFilters:
        if self.filters is None:
            raise ValueError(f"job {self.job_id} has no search filters")
        return self.filters


class StageExecutor:
    stage: ClassVar[str]

    def __init__(self, checkpoints: CheckpointStore):
        self.checkpoints = checkpoints

    @property
    def group_size(self) -> int:
        return 1

    def load(self, session: Session, job: SourcingJob, batch_number: int) -> Any:
        return None

    def process(self, context: StageContext, work: Any) -> Any:
        raise NotImplementedError

    def store(self, session: Session, job: SourcingJob, batch_number: int, result: Any) -> int:
        raise NotImplementedError

    def stash(self, session: Session, job: SourcingJob, batch_number: int, result: Any) -> None:
        """Keep a processed batch that cannot be committed yet because an earlier one failed."""

    def run_batch(self, job_id: int, batch_number: int, *, retry_count: int | None = None) -> BatchResult:
        return self.run_group(job_id, [batch_number], retry_count=retry_count)[0]

    def run_group(
        self, job_id: int, batch_numbers: list[int], *, retry_count: int | None = None
    ) -> list[BatchResult]:
        """Process a group of batches and commit them in order up to the first failure.

        ``retry_count`` is the claim the caller runs under; commits are refused
        once a later retry has taken the job over.
        """
        context, works = self._load(job_id, batch_numbers)
        outcomes = self._process_group(context, works)

        results: list[BatchResult] = []
        failure: Exception | None = None
        for batch_number, outcome in outcomes:
            if failure is not None:
                if not isinstance(outcome, Exception):
                    self._stash(job_id, batch_number, outcome)
                continue
            if isinstance(outcome, Exception):
                failure = outcome
                continue

            snapshot, items = self.checkpoints.record_batch(
                job_id,
                self.stage,
                batch_number,
                lambda session, job, number=batch_number, result=outcome: self.store(session, job, number, result),
                retry_count=retry_count,
            )
            done = snapshot.status != self.stage
            logger.info(
                "Batch committed job_id=%s stage=%s batch=%s items=%s done=%s",
                job_id,
                self.stage,
                batch_number,
                items,
                done,
            )
            results.append(BatchResult(batch_number=batch_number, items_produced=items, done=done))

        if failure is not None:
            raise failure
        return results

    def _load(self, job_id: int, batch_numbers: list[int]) -> tuple[StageContext, list[tuple[int, Any]]]:
        with self.checkpoints.session_factory() as session:
            job = session.get(SourcingJob, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            context = StageContext.from_job(job)
            works = [(number, self.load(session, job, number)) for number in batch_numbers]
        return context, works

    def _process_group(self, context: StageContext, works: list[tuple[int, Any]]) -> list[tuple[int, Any]]:
        outcomes: list[tuple[int, Any]] = []
        for batch_number, work in works:
            try:
                outcomes.append((batch_number, self.process(context, work)))
            except Exception as exc:
                outcomes.append((batch_number, exc))
                break
        return outcomes

    def _stash(self, job_id: int, batch_number: int, result: Any) -> None:
        with self.checkpoints.transaction(job_id) as (session, job):
            self.stash(session, job, batch_number, result)


class FormatRequirementsExecutor(StageExecutor):
    stage = "FORMATTING_JD"

    def __init__(self, checkpoints: CheckpointStore, formatter: RequirementFormatter):
        super().__init__(checkpoints)
        self.formatter = formatter

    def process(self, context: StageContext, work: Any) -> SearchFilters:
        return self.formatter.format_requirements(
            title=context.title,
            description=context.description,
            requirements=context.requirements,
        )

    def store(self, session: Session, job: SourcingJob, batch_number: int, result: SearchFilters) -> int:
        job.search_filters = result.model_dump()
        return 1


class DiscoverProfilesExecutor(StageExecutor):
    stage = "SEARCHING_PROFILES"

    def __init__(self, checkpoints: CheckpointStore, directory: CandidateDirectory):
        super().__init__(checkpoints)
        self.directory = directory

    def process(self, context: StageContext, work: Any) -> list[CandidateIdentity]:
        identities = self.directory.discover_candidates(context.require_filters(), context.max_candidates)
        return identities[: context.max_candidates]

    def store(self, session: Session, job: SourcingJob, batch_number: int, result: list[CandidateIdentity]) -> int:
        Repository(session).add_discovered_profiles(job.id, result, job.batch_size)
        job.total_profiles_found = len(result)
        job.total_batches = math.ceil(len(result) / job.batch_size) if result else 0
        logger.info(
            "Discovery finished job_id=%s found=%s batches=%s", job.id, len(result), job.total_batches
        )
        return len(result)


class EnrichProfilesExecutor(StageExecutor):
    """Fetches profile detail for a batch; batch groups run in parallel.

    Rows that already carry ``raw_json`` are never fetched again, so a resumed
    batch only pays for the identities it did not get the first time.
    """

    stage = "SCRAPING_PROFILES"

    def __init__(self, checkpoints: CheckpointStore, directory: CandidateDirectory, *, parallelism: int = 1):
        super().__init__(checkpoints)
        self.directory = directory
        self.parallelism = max(1, parallelism)

    @property
    def group_size(self) -> int:
        return self.parallelism

    def load(self, session: Session, job: SourcingJob, batch_number: int) -> list[tuple[int, CandidateIdentity]]:
        rows = Repository(session).discovered_for_batch(job.id, batch_number)
        return [
            (
                row.id,
                CandidateIdentity(
                    profile_url=row.profile_url,
                    full_name=row.full_name,
                    headline=row.headline,
                    location=row.location,
                ),
            )
            for row in rows
            if row.raw_json is None
        ]

    def process(self, context: StageContext, work: list[tuple[int, CandidateIdentity]]) -> dict[int, dict[str, Any]]:
        if not work:
            return {}
        raws = self.directory.enrich_profiles([identity for _, identity in work])

        by_key: dict[str, dict[str, Any]] = {}
        for raw in raws:
            for key in raw_profile_keys(raw):
                by_key.setdefault(key, raw)

        matched: dict[int, dict[str, Any]] = {}
        for row_id, identity in work:
            raw = by_key.get(canonicalize_profile_url(identity.profile_url))
            if raw is not None:
                matched[row_id] = raw
        if len(matched) < len(work):
            logger.warning(
                "Enrichment returned no detail for %s of %s profiles job_id=%s",
                len(work) - len(matched),
                len(work),
                context.job_id,
            )
        return matched

    def store(self, session: Session, job: SourcingJob, batch_number: int, result: dict[int, dict[str, Any]]) -> int:
        self.stash(session, job, batch_number, result)
        rows = Repository(session).discovered_for_batch(job.id, batch_number)
        return sum(1 for row in rows if row.raw_json is not None)

    def stash(self, session: Session, job: SourcingJob, batch_number: int, result: dict[int, dict[str, Any]]) -> None:
        now = utcnow()
        for row in Repository(session).discovered_for_batch(job.id, batch_number):
            raw = result.get(row.id)
            if raw is not None and row.raw_json is None:
                row.raw_json = raw
                row.scraped_at = now
        session.flush()

    def _process_group(self, context: StageContext, works: list[tuple[int, Any]]) -> list[tuple[int, Any]]:
        if len(works) <= 1:
            return super()._process_group(context, works)

        with ThreadPoolExecutor(max_workers=len(works), thread_name_prefix=f"harrier-enrich-{context.job_id}") as pool:
            futures = [(number, pool.submit(self.process, context, work)) for number, work in works]
            outcomes: list[tuple[int, Any]] = []
            for number, future in futures:
                try:
                    outcomes.append((number, future.result()))
                except Exception as exc:
                    outcomes.append((number, exc))
        return outcomes


class ParseProfilesExecutor(StageExecutor):
    stage = "PARSING_PROFILES"

    def load(self, session: Session, job: SourcingJob, batch_number: int) -> list[tuple[int, dict[str, Any], CandidateIdentity]]:
        rows = Repository(session).discovered_for_batch(job.id, batch_number)
        return [
            (
                row.id,
                row.raw_json,
                CandidateIdentity(
                    profile_url=row.profile_url,
                    full_name=row.full_name,
                    headline=row.headline,
                    location=row.location,
                ),
            )
            for row in rows
            if row.raw_json is not None
        ]

    def process(self, context: StageContext, work: list[tuple[int, dict[str, Any], CandidateIdentity]]) -> list[tuple[int, ParsedProfile, bool]]:
        current_year = datetime.now().year
        parsed = []
        for row_id, raw, identity in work:
            profile = clean_profile(raw, fallback=identity, current_year=current_year)
            parsed.append((row_id, profile, is_valid_profile(profile)))
        return parsed

    def store(self, session: Session, job: SourcingJob, batch_number: int, result: list[tuple[int, ParsedProfile, bool]]) -> int:
        now = utcnow()
        rows = {row.id: row for row in Repository(session).discovered_for_batch(job.id, batch_number)}
        valid = 0
        for row_id, profile, is_valid in result:
            row = rows.get(row_id)
            if row is None:
                continue
            row.parsed_json = profile.model_dump()
            row.is_valid = is_valid
            row.parsed_at = now
            valid += int(is_valid)
        return valid


class PersistProfilesExecutor(StageExecutor):
    """Writes one candidate per valid parsed profile, flagging repeat URLs as duplicates."""

    stage = "SAVING_PROFILES"

    def load(self, session: Session, job: SourcingJob, batch_number: int) -> list[int]:
        rows = Repository(session).discovered_for_batch(job.id, batch_number)
        return [row.id for row in rows if row.is_valid and row.parsed_json]

    def process(self, context: StageContext, work: list[int]) -> list[int]:
        return work

    def store(self, session: Session, job: SourcingJob, batch_number: int, result: list[int]) -> int:
        repo = Repository(session)
        wanted = set(result)
        created = 0
        duplicates = 0
        for row in repo.discovered_for_batch(job.id, batch_number):
            if row.id not in wanted or repo.candidate_for_discovered(job.id, row.id) is not None:
                continue

            profile = ParsedProfile.model_validate(row.parsed_json)
            profile_url = profile.profile_url or row.profile_url
            profile_key = canonicalize_profile_url(profile_url)
            is_duplicate = repo.canonical_candidate(job.id, profile_key) is not None
            candidate = Candidate(
                job_id=job.id,
                discovered_profile_id=row.id,
                batch_number=batch_number,
                profile_url=profile_url,
                profile_key=profile_key,
                full_name=profile.full_name,
                headline=profile.headline,
                location=profile.location,
                photo_url=profile.photo_url,
                current_position=profile.current_position,
                current_company=profile.current_company,
                email=profile.email,
                phone=profile.phone,
                has_contact_info=profile.has_contact_info,
                experience_years=profile.experience_years,
                skills=profile.skills,
                experience=[entry.model_dump() for entry in profile.experience],
                education=[entry.model_dump() for entry in profile.education],
                is_duplicate=is_duplicate,
                first_seen_job_id=repo.first_seen_job_id(job.owner_id, profile_key, job.id),
                scraped_at=row.scraped_at,
            )
            session.add(candidate)
            session.flush()
            created += 1
            duplicates += int(is_duplicate)

        job.duplicates_found += duplicates
        return created


class ScoreProfilesExecutor(StageExecutor):
    stage = "SCORING_PROFILES"

    def __init__(self, checkpoints: CheckpointStore, scorer: ProfileScorer):
        super().__init__(checkpoints)
        self.scorer = scorer

    def load(self, session: Session, job: SourcingJob, batch_number: int) -> list[tuple[int, ParsedProfile]]:
        return [
            (candidate.id, profile_from_candidate(candidate))
            for candidate in Repository(session).candidates_for_batch(job.id, batch_number)
            if not candidate.is_duplicate and not candidate.is_scored
        ]

    def process(self, context: StageContext, work: list[tuple[int, ParsedProfile]]) -> list[tuple[int, ProfileScore]]:
        filters = context.require_filters()
        return [
            (candidate_id, self.scorer.score_profile(profile, filters, context.requirements))
            for candidate_id, profile in work
        ]

    def store(self, session: Session, job: SourcingJob, batch_number: int, result: list[tuple[int, ProfileScore]]) -> int:
        now = utcnow()
        scored = 0
        for candidate_id, score in result:
            candidate = session.get(Candidate, candidate_id)
            if candidate is None or candidate.job_id != job.id or candidate.is_scored:
                continue
            candidate.skills_score = score.skills_score
            candidate.experience_score = score.experience_score
            candidate.industry_score = score.industry_score
            candidate.title_score = score.title_score
            candidate.nice_to_have_score = score.nice_to_have_score
            candidate.match_score = score.total_score
            candidate.match_reason = score.reasoning
            candidate.matched_skills = score.matched_skills
            candidate.missing_skills = score.missing_skills
            candidate.bonus_skills = score.bonus_skills
            candidate.relevant_years = score.relevant_years
            candidate.seniority_level = score.seniority_level
            candidate.industry_match = score.industry_match or ""
            candidate.is_scored = True
            candidate.scored_at = now
            scored += 1
        return scored


def profile_from_candidate(candidate: Candidate) -> ParsedProfile:
    return ParsedProfile.model_validate(
        {
            "full_name": candidate.full_name,
            "headline": candidate.headline,
            "location": candidate.location,
            "profile_url": candidate.profile_url,
            "photo_url": candidate.photo_url,
            "current_position": candidate.current_position,
            "current_company": candidate.current_company,
            "experience_years": candidate.experience_years,
            "skills": candidate.skills or [],
            "experience": candidate.experience or [],
            "education": candidate.education or [],
            "email": candidate.email,
            "phone": candidate.phone,
        }
    )


def build_executors(
    checkpoints: CheckpointStore,
    *,
    directory: CandidateDirectory,
    formatter: RequirementFormatter,
    scorer: ProfileScorer,
    settings: Settings,
) -> dict[str, StageExecutor]:
    executors: list[StageExecutor] = [
        FormatRequirementsExecutor(checkpoints, formatter),
        DiscoverProfilesExecutor(checkpoints, directory),
        EnrichProfilesExecutor(checkpoints, directory, parallelism=settings.enrich_parallelism),
        ParseProfilesExecutor(checkpoints),
        PersistProfilesExecutor(checkpoints),
        ScoreProfilesExecutor(checkpoints, scorer),
    ]
    return {executor.stage: executor for executor in executors}
