from __future__ import annotations

from typing import Any

from harrier.core.states import BATCH_STAGES, PAUSED_STATUSES

FIXED_PROGRESS: dict[str, float] = {
    "CREATED": 5.0,
    "FORMATTING_JD": 10.0,
    "JD_FORMATTED": 15.0,
    "SEARCHING_PROFILES": 20.0,
    "PROFILES_FOUND": 25.0,
    "COMPLETED": 100.0,
}

BATCH_BANDS: dict[str, tuple[float, float]] = {
    "SCRAPING_PROFILES": (25.0, 40.0),
    "PARSING_PROFILES": (40.0, 55.0),
    "SAVING_PROFILES": (55.0, 70.0),
    "SCORING_PROFILES": (70.0, 85.0),
}

# Stages whose work is finished once they are the recorded state.
_FINISHED_MARKERS = {"JD_FORMATTED", "PROFILES_FOUND", "COMPLETED"}


def effective_stage(job: Any) -> str:
    """Stage a job's progress is measured against; paused jobs keep their last stage."""
    if job.status in PAUSED_STATUSES:
        return job.current_stage
    return job.status


def stage_progress(job: Any) -> float:
    stage = effective_stage(job)
    if stage in BATCH_STAGES:
        total = job.total_batches or 0
        if total <= 0:
            return 1.0
        cursor = getattr(job, BATCH_STAGES[stage].cursor_field) or 0
        return max(0.0, min(1.0, cursor / total))
    if stage in _FINISHED_MARKERS:
        return 1.0
    return 0.0


def progress(job: Any) -> float:
    """Overall completion in [0, 100] derived from the checkpoint fields.

    Works on a ``SourcingJob`` row or a ``Checkpoint`` snapshot. ``FAILED`` and
    ``RATE_LIMITED`` jobs report the value of the stage they stopped in, so the
    figure never drops when a job pauses or fails.
    """
    stage = effective_stage(job)
    if stage in FIXED_PROGRESS:
        return FIXED_PROGRESS[stage]
    band = BATCH_BANDS.get(stage)
    if band is None:
        return 0.0
    low, high = band
    return round(low + (high - low) * stage_progress(job), 2)
