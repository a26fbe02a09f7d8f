from __future__ import annotations

from dataclasses import dataclass

PIPELINE: tuple[str, ...] = (
    "CREATED",
    "FORMATTING_JD",
    "JD_FORMATTED",
    "SEARCHING_PROFILES",
    "PROFILES_FOUND",
    "SCRAPING_PROFILES",
    "PARSING_PROFILES",
    "SAVING_PROFILES",
    "SCORING_PROFILES",
    "COMPLETED",
)

ACTIVE_STATUSES = frozenset(PIPELINE[1:-1])
PAUSED_STATUSES = frozenset({"RATE_LIMITED", "FAILED"})
TERMINAL_STATUSES = frozenset({"COMPLETED", "FAILED"})
RUNNABLE_STATUSES = ACTIVE_STATUSES | {"CREATED"}


@dataclass(frozen=True, slots=True)
class BatchStage:
    status: str
    cursor_field: str
    counter_field: str


BATCH_STAGES: dict[str, BatchStage] = {
    stage.status: stage
    for stage in (
        BatchStage("SCRAPING_PROFILES", "last_scraped_batch", "profiles_scraped"),
        BatchStage("PARSING_PROFILES", "last_parsed_batch", "profiles_parsed"),
        BatchStage("SAVING_PROFILES", "last_saved_batch", "profiles_saved"),
        BatchStage("SCORING_PROFILES", "last_scored_batch", "profiles_scored"),
    )
}

# States that only mark a finished step; the orchestrator moves past them without work.
TRANSIT_STATUSES = frozenset({"CREATED", "JD_FORMATTED", "PROFILES_FOUND"})


def next_status(status: str) -> str:
    try:
        index = PIPELINE.index(status)
    except ValueError as exc:
        raise ValueError(f"'{status}' is not a pipeline stage") from exc
    if index == len(PIPELINE) - 1:
        raise ValueError("COMPLETED has no successor")
    return PIPELINE[index + 1]


def resume_status(status: str, current_stage: str) -> str:
    """Status a job should hold when it is picked up again."""
    if status in PAUSED_STATUSES:
        return current_stage
    return status
