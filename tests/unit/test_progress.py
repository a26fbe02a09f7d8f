from types import SimpleNamespace

from harrier.core.progress import progress, stage_progress
from harrier.core.states import PIPELINE, next_status, resume_status


def _job(status: str, **fields) -> SimpleNamespace:
    values = {
        "status": status,
        "current_stage": status,
        "total_batches": 5,
        "last_scraped_batch": 0,
        "last_parsed_batch": 0,
        "last_saved_batch": 0,
        "last_scored_batch": 0,
    }
    values.update(fields)
    return SimpleNamespace(**values)


def _walk() -> list[SimpleNamespace]:
    """Every checkpoint a five-batch job passes through, in order."""
    cursors = {
        "SCRAPING_PROFILES": "last_scraped_batch",
        "PARSING_PROFILES": "last_parsed_batch",
        "SAVING_PROFILES": "last_saved_batch",
        "SCORING_PROFILES": "last_scored_batch",
    }
    done: dict[str, int] = {}
    states = []
    for status in PIPELINE:
        if status in cursors:
            for batch in range(6):
                states.append(_job(status, **done, **{cursors[status]: batch}))
            done[cursors[status]] = 5
        else:
            states.append(_job(status, **done))
    return states


def test_progress_never_decreases_along_the_pipeline() -> None:
    values = [progress(job) for job in _walk()]
    assert values == sorted(values)
    assert values[0] == 5.0
    assert values[-1] == 100.0


def test_batch_stage_progress_interpolates_band() -> None:
    job = _job("SAVING_PROFILES", last_saved_batch=2)
    assert stage_progress(job) == 0.4
    assert progress(job) == 61.0


def test_paused_job_reports_the_stage_it_stopped_in() -> None:
    running = _job("SCRAPING_PROFILES", last_scraped_batch=3)
    paused = _job("RATE_LIMITED", current_stage="SCRAPING_PROFILES", last_scraped_batch=3)
    failed = _job("FAILED", current_stage="SCRAPING_PROFILES", last_scraped_batch=3)

    assert progress(paused) == progress(running) == 34.0
    assert progress(failed) == progress(running)


def test_empty_batch_stage_counts_as_finished() -> None:
    job = _job("PARSING_PROFILES", total_batches=0)
    assert stage_progress(job) == 1.0
    assert progress(job) == 55.0


def test_state_helpers() -> None:
    assert next_status("CREATED") == "FORMATTING_JD"
    assert next_status("SCORING_PROFILES") == "COMPLETED"
    assert resume_status("RATE_LIMITED", "PARSING_PROFILES") == "PARSING_PROFILES"
    assert resume_status("SAVING_PROFILES", "SAVING_PROFILES") == "SAVING_PROFILES"


def test_each_scored_batch_moves_progress_forward() -> None:
    values = [progress(_job("SCORING_PROFILES", total_batches=4, last_scored_batch=batch)) for batch in range(5)]
    assert values == [70.0, 73.75, 77.5, 81.25, 85.0]
    assert all(earlier < later for earlier, later in zip(values, values[1:]))
