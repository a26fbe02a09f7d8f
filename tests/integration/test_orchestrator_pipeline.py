import time
from datetime import timedelta

import pytest
from pydantic import ValidationError
from sqlalchemy import select

from conftest import FakeDirectory, FakeFormatter, FakeScorer, FakeSupervisor, make_job_payload
from harrier.config import Settings
from harrier.core.checkpoint import CheckpointStore
from harrier.core.events import EventBus
from harrier.core.orchestrator import SourcingOrchestrator
from harrier.core.progress import progress
from harrier.core.retry import RetryController
from harrier.core.stages import PersistProfilesExecutor
from harrier.db.base import ensure_utc, utcnow
from harrier.db.models import Candidate
from harrier.db.repositories import Repository
from harrier.db.session import SessionLocal
from harrier.errors import RateLimitError


def _settings(**overrides) -> Settings:
    values = {"sourcing_batch_size": 10, "enrich_parallelism": 1, "retry_base_delay_sec": 30}
    values.update(overrides)
    return Settings(**values)


def _orchestrator(directory, *, scorer=None, formatter=None, settings=None) -> SourcingOrchestrator:
    settings = settings or _settings()
    return SourcingOrchestrator(
        directory=directory,
        formatter=formatter or FakeFormatter(),
        scorer=scorer or FakeScorer(),
        checkpoints=CheckpointStore(settings=settings, event_bus=EventBus()),
        settings=settings,
    )


def _create_job(**overrides) -> int:
    with SessionLocal() as db:
        job = Repository(db).create_job(make_job_payload(**overrides), batch_size=10, max_retries=3)
        return job.id


def _job(job_id: int):
    with SessionLocal() as db:
        job = Repository(db).require_job(job_id)
        db.expunge(job)
        return job


def _batch_urls(directory: FakeDirectory, batch_number: int) -> list[str]:
    start = (batch_number - 1) * 10
    return [identity.profile_url for identity in directory.identities[start : start + 10]]


def test_fifty_candidates_flow_through_every_stage() -> None:
    directory = FakeDirectory(50, aliases={15: 14, 33: 2, 47: 46})
    scorer = FakeScorer()
    job_id = _create_job(max_candidates=50)

    checkpoint = _orchestrator(directory, scorer=scorer, settings=_settings(enrich_parallelism=3)).resume(job_id)

    assert checkpoint.status == "COMPLETED"
    job = _job(job_id)
    assert job.total_profiles_found == 50
    assert job.total_batches == 5
    assert (job.last_scraped_batch, job.last_parsed_batch, job.last_saved_batch, job.last_scored_batch) == (5, 5, 5, 5)
    assert job.profiles_saved == 50
    assert job.duplicates_found == 3
    assert job.profiles_scored == job.total_profiles_found - job.duplicates_found
    assert progress(job) == 100
    assert len(scorer.scored) == 47
    assert sorted(len(call) for call in directory.enrich_calls) == [10, 10, 10, 10, 10]

    with SessionLocal() as db:
        ranked = Repository(db).ranked_candidates(job_id, limit=None)
        assert len(ranked) == 47
        assert all(candidate.is_scored and candidate.match_score is not None for candidate in ranked)
        scores = [candidate.match_score for candidate in ranked]
        assert scores == sorted(scores, reverse=True)
        duplicates = db.scalars(select(Candidate).where(Candidate.job_id == job_id, Candidate.is_duplicate)).all()
        assert {candidate.batch_number for candidate in duplicates} == {2, 4, 5}
        assert not any(candidate.is_scored for candidate in duplicates)


def test_resume_continues_after_last_committed_batch() -> None:
    directory = FakeDirectory(50)
    job_id = _create_job()
    orchestrator = _orchestrator(directory)

    # Run until two enrich batches are committed, then stop as if the process died.
    for _ in range(20):
        checkpoint = orchestrator.checkpoints.read(job_id)
        if checkpoint.status == "SCRAPING_PROFILES" and checkpoint.last_scraped_batch == 2:
            break
        orchestrator._advance_once(checkpoint)
    assert orchestrator.checkpoints.read(job_id).last_scraped_batch == 2
    assert directory.enrich_calls == [_batch_urls(directory, 1), _batch_urls(directory, 2)]

    restarted = _orchestrator(directory)
    checkpoint = restarted.resume(job_id)

    assert checkpoint.status == "COMPLETED"
    assert directory.enrich_calls[2] == _batch_urls(directory, 3)
    assert directory.enrich_calls[2:] == [_batch_urls(directory, number) for number in range(3, 6)]
    assert directory.discover_calls == 1


def test_rate_limit_on_third_batch_pauses_and_resumes_there(fake_supervisor: FakeSupervisor) -> None:
    directory = FakeDirectory(50, rate_limit_on_call=3)
    settings = _settings()
    job_id = _create_job()

    checkpoint = _orchestrator(directory, settings=settings).resume(job_id)

    assert checkpoint.status == "RATE_LIMITED"
    assert checkpoint.current_stage == "SCRAPING_PROFILES"
    assert checkpoint.last_scraped_batch == 2
    assert checkpoint.rate_limit_type == "directory_enrich"
    reset_at = ensure_utc(checkpoint.rate_limit_reset_at)

    controller = RetryController(
        CheckpointStore(settings=settings, event_bus=EventBus()),
        settings=settings,
        supervisor=fake_supervisor,
    )
    early = controller.retry(job_id, now=reset_at - timedelta(seconds=30))
    assert (early.allowed, early.reason) == (False, "rate_limited")
    assert 29 <= early.wait_seconds <= 30
    assert fake_supervisor.submitted == []

    granted = controller.retry(job_id, now=reset_at + timedelta(seconds=1))
    assert granted.allowed
    assert fake_supervisor.submitted == [job_id]

    resumed = controller.checkpoints.read(job_id)
    assert resumed.status == "SCRAPING_PROFILES"
    assert resumed.retry_count == 0
    assert resumed.rate_limit_reset_at is None

    final = _orchestrator(directory, settings=settings).resume(job_id)
    assert final.status == "COMPLETED"
    assert directory.enrich_calls[3] == _batch_urls(directory, 3)
    assert len(directory.enrich_calls) == 6


def test_parallel_enrich_keeps_work_done_after_a_failed_batch() -> None:
    class FlakyDirectory(FakeDirectory):
        def __init__(self):
            super().__init__(30)
            self.failed = False

        def enrich_profiles(self, identities):
            if identities[0].profile_url.endswith("person-10") and not self.failed:
                self.failed = True
                self.enrich_calls.append([identity.profile_url for identity in identities])
                raise RateLimitError.after("quota", limit_type="directory_enrich", seconds=0)
            return super().enrich_profiles(identities)

    directory = FlakyDirectory()
    job_id = _create_job()
    orchestrator = _orchestrator(directory, settings=_settings(enrich_parallelism=3))

    assert orchestrator.resume(job_id).last_scraped_batch == 1
    with SessionLocal() as db:
        stashed = Repository(db).discovered_for_batch(job_id, 3)
        assert all(row.raw_json is not None for row in stashed)

    orchestrator.checkpoints.update(job_id, status="SCRAPING_PROFILES", rate_limit_reset_at=None)
    assert orchestrator.resume(job_id).status == "COMPLETED"

    calls_for_batch_3 = [call for call in directory.enrich_calls if call == _batch_urls(directory, 3)]
    assert len(calls_for_batch_3) == 1
    assert _job(job_id).profiles_scraped == 30


def test_persist_is_idempotent_for_a_saved_batch() -> None:
    directory = FakeDirectory(10, aliases={5: 4})
    job_id = _create_job(max_candidates=10)
    orchestrator = _orchestrator(directory)
    assert orchestrator.resume(job_id).status == "COMPLETED"

    executor = orchestrator.executors["SAVING_PROFILES"]
    assert isinstance(executor, PersistProfilesExecutor)
    with SessionLocal() as db:
        job = Repository(db).require_job(job_id)
        work = executor.load(db, job, 1)
        created = executor.store(db, job, 1, work)
        db.commit()
        assert created == 0

        rows = db.scalars(select(Candidate).where(Candidate.job_id == job_id)).all()
        keyed = [row for row in rows if row.profile_key == "linkedin.com/in/person-4"]
        assert len(rows) == 10
        assert sorted(row.is_duplicate for row in keyed) == [False, True]
        assert Repository(db).require_job(job_id).duplicates_found == 1


def test_discovery_with_no_results_completes_empty() -> None:
    directory = FakeDirectory(0)
    job_id = _create_job()

    checkpoint = _orchestrator(directory).resume(job_id)

    assert checkpoint.status == "COMPLETED"
    job = _job(job_id)
    assert (job.total_profiles_found, job.total_batches, job.profiles_scored) == (0, 0, 0)
    assert directory.enrich_calls == []


def test_unexpected_error_fails_job_with_cooldown() -> None:
    class BrokenFormatter(FakeFormatter):
        def format_requirements(self, **kwargs):
            raise ValueError("formatter exploded")

    job_id = _create_job()

    checkpoint = _orchestrator(FakeDirectory(10), formatter=BrokenFormatter()).resume(job_id)

    assert checkpoint.status == "FAILED"
    assert checkpoint.current_stage == "FORMATTING_JD"
    assert checkpoint.retry_after is not None
    job = _job(job_id)
    assert job.error_message == "formatter exploded"
    assert progress(job) == 10.0


def test_scoring_rate_limit_keeps_scored_batches() -> None:
    directory = FakeDirectory(30)
    job_id = _create_job()

    checkpoint = _orchestrator(directory, scorer=FakeScorer(rate_limit_after=15)).resume(job_id)

    assert checkpoint.status == "RATE_LIMITED"
    assert checkpoint.current_stage == "SCORING_PROFILES"
    assert checkpoint.last_scored_batch == 1
    assert checkpoint.rate_limit_type == "llm"
    assert _job(job_id).profiles_scored == 10


def test_start_job_hands_off_to_supervisor(monkeypatch, fake_supervisor: FakeSupervisor) -> None:
    monkeypatch.setattr("harrier.core.orchestrator.get_supervisor", lambda: fake_supervisor)
    job_id = _create_job()

    assert _orchestrator(FakeDirectory(10)).start_job(job_id) is True
    assert fake_supervisor.submitted == [job_id]
    assert _job(job_id).status == "CREATED"


class TakeoverDirectory(FakeDirectory):
    """Runs ``takeover`` inside the first enrich call, as a second process would."""

    def __init__(self, count: int, takeover, *, fail_after_takeover: bool = False):
        super().__init__(count)
        self.takeover = takeover
        self.fail_after_takeover = fail_after_takeover

    def enrich_profiles(self, identities):
        if self.takeover is not None:
            takeover, self.takeover = self.takeover, None
            takeover()
            if self.fail_after_takeover:
                raise RuntimeError("directory timed out")
        return super().enrich_profiles(identities)


def _claim_as_stale(job_id: int, settings: Settings) -> None:
    controller = RetryController(
        CheckpointStore(settings=settings, event_bus=EventBus()),
        settings=settings,
        supervisor=FakeSupervisor(),
    )
    decision = controller.retry(job_id, now=utcnow() + timedelta(seconds=settings.stuck_job_after_sec + 100))
    assert decision.allowed


def test_run_that_lost_the_job_leaves_the_new_result_alone() -> None:
    settings = _settings()
    job_id = _create_job()

    def take_over_and_finish() -> None:
        _claim_as_stale(job_id, settings)
        assert _orchestrator(FakeDirectory(50), settings=settings).resume(job_id).status == "COMPLETED"

    directory = TakeoverDirectory(50, take_over_and_finish)
    checkpoint = _orchestrator(directory, settings=settings).resume(job_id)

    assert checkpoint.status == "COMPLETED"
    job = _job(job_id)
    assert job.status == "COMPLETED"
    assert job.completed_at is not None
    assert job.error_message is None
    assert job.retry_count == 1
    assert job.last_scraped_batch == 5
    assert len(directory.enrich_calls) == 1


def test_failure_after_takeover_is_not_recorded() -> None:
    settings = _settings()
    job_id = _create_job()

    directory = TakeoverDirectory(50, lambda: _claim_as_stale(job_id, settings), fail_after_takeover=True)
    checkpoint = _orchestrator(directory, settings=settings).resume(job_id)

    assert checkpoint.status == "SCRAPING_PROFILES"
    job = _job(job_id)
    assert job.status == "SCRAPING_PROFILES"
    assert job.retry_count == 1
    assert job.error_message is None
    assert job.failed_at is None
    assert job.retry_after is None


def test_slow_stage_keeps_job_fresh_with_heartbeat() -> None:
    settings = _settings(heartbeat_interval_sec=0.05)
    job_id = _create_job()
    store = CheckpointStore(settings=settings, event_bus=EventBus())
    seen: list = []

    class SlowDirectory(FakeDirectory):
        def enrich_profiles(self, identities):
            if not seen:
                seen.append(store.read(job_id).last_activity_at)
                time.sleep(0.4)
                seen.append(store.read(job_id).last_activity_at)
            return super().enrich_profiles(identities)

    checkpoint = _orchestrator(SlowDirectory(20), settings=settings).resume(job_id)

    assert checkpoint.status == "COMPLETED"
    before, after = seen
    assert after > before


def test_heartbeat_must_beat_faster_than_stuck_threshold() -> None:
    with pytest.raises(ValidationError):
        Settings(stuck_job_after_sec=60, heartbeat_interval_sec=60)


def test_sweep_resumes_stale_and_reset_jobs_only(fake_supervisor: FakeSupervisor) -> None:
    settings = _settings(stuck_job_after_sec=300)
    now = utcnow()
    stale = _create_job()
    fresh = _create_job()
    reset_passed = _create_job()
    reset_pending = _create_job()
    failed = _create_job()
    with SessionLocal() as db:
        repo = Repository(db)
        for job_id, status, fields in [
            (stale, "SCRAPING_PROFILES", {"last_activity_at": now - timedelta(minutes=10)}),
            (fresh, "PARSING_PROFILES", {"last_activity_at": now - timedelta(seconds=20)}),
            (reset_passed, "RATE_LIMITED", {"rate_limit_reset_at": now - timedelta(seconds=5)}),
            (reset_pending, "RATE_LIMITED", {"rate_limit_reset_at": now + timedelta(seconds=45)}),
            (failed, "FAILED", {}),
        ]:
            job = repo.require_job(job_id)
            job.status = status
            job.current_stage = "SCRAPING_PROFILES" if status in {"RATE_LIMITED", "FAILED"} else status
            for key, value in fields.items():
                setattr(job, key, value)
        db.commit()

    controller = RetryController(
        CheckpointStore(settings=settings, event_bus=EventBus()),
        settings=settings,
        supervisor=fake_supervisor,
    )
    summary = controller.recover_stuck_jobs(now=now)

    assert summary["checked"] == 4
    assert sorted(summary["resumed"]) == sorted([stale, reset_passed])
    assert summary["skipped"] == {fresh: "in_progress", reset_pending: "rate_limited"}
    assert sorted(fake_supervisor.submitted) == sorted([stale, reset_passed])
    assert (_job(stale).status, _job(stale).retry_count) == ("SCRAPING_PROFILES", 1)
    assert (_job(reset_passed).status, _job(reset_passed).retry_count) == ("SCRAPING_PROFILES", 0)
    assert _job(failed).status == "FAILED"
