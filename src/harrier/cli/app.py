from __future__ import annotations

import json
from pathlib import Path

import typer
import uvicorn
from pydantic import ValidationError

from harrier.api.app import create_app
from harrier.config import get_settings
from harrier.core.orchestrator import build_orchestrator
from harrier.core.progress import progress
from harrier.core.retry import RetryController
from harrier.core.runtime import get_supervisor, shutdown_runtime
from harrier.core.streaming import build_snapshot
from harrier.db.init import init_database
from harrier.db.repositories import Repository
from harrier.db.session import SessionLocal
from harrier.errors import JobNotFoundError
from harrier.logging_config import configure_logging
from harrier.types import SourcingJobCreate

app = typer.Typer(help="Harrier candidate sourcing CLI")
jobs_app = typer.Typer(help="Sourcing job commands")

app.add_typer(jobs_app, name="jobs")

_INITIALIZED = False


def ensure_initialized() -> None:
    global _INITIALIZED
    if _INITIALIZED:
        return
    init_database()
    _INITIALIZED = True


def _echo(payload: object) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


@app.command("init")
def init_cmd() -> None:
    """Initialize the database and data directory."""
    configure_logging()
    result = init_database()
    _echo({"ok": True, **result})


@app.command("serve")
def serve(
    host: str | None = typer.Option(None, "--host"),
    port: int | None = typer.Option(None, "--port"),
) -> None:
    configure_logging()
    ensure_initialized()
    settings = get_settings()
    app_instance = create_app()
    uvicorn.run(app_instance, host=host or settings.app_host, port=port or settings.app_port)


@jobs_app.command("create")
def jobs_create(
    file: Path = typer.Option(..., "--file", exists=True, readable=True, help="JSON job intake"),
    wait: bool = typer.Option(False, "--wait", help="Run the pipeline in this process until it stops"),
) -> None:
    """Create a sourcing job from a JSON intake file."""
    configure_logging()
    ensure_initialized()
    settings = get_settings()
    try:
        payload = SourcingJobCreate.model_validate_json(file.read_text(encoding="utf-8"))
    except ValidationError as exc:
        raise typer.BadParameter(str(exc)) from exc

    with SessionLocal() as db:
        job = Repository(db).create_job(
            payload,
            batch_size=settings.sourcing_batch_size,
            max_retries=settings.default_max_retries,
        )
        job_id = job.id

    if not wait:
        # Nothing runs it yet. Once idle for stuck_job_after_sec it is resumed by
        # a running server's recovery sweep or by `jobs recover`.
        _echo(
            {
                "id": job_id,
                "status": "CREATED",
                "scheduled": False,
                "resumable_after_sec": settings.stuck_job_after_sec,
            }
        )
        return

    orchestrator = build_orchestrator(settings)
    orchestrator.start_job(job_id)
    get_supervisor().wait(job_id)
    shutdown_runtime()
    checkpoint = orchestrator.checkpoints.read(job_id)
    _echo({"id": job_id, "status": checkpoint.status, "progress": progress(checkpoint)})


@jobs_app.command("list")
def jobs_list(
    owner_id: str | None = typer.Option(None, "--owner"),
    limit: int = typer.Option(50, "--limit"),
) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        jobs = Repository(db).list_jobs(owner_id=owner_id, limit=limit)
        _echo(
            [
                {
                    "id": job.id,
                    "title": job.title,
                    "status": job.status,
                    "progress": progress(job),
                    "profiles_scored": job.profiles_scored,
                }
                for job in jobs
            ]
        )


@jobs_app.command("status")
def jobs_status(job_id: int = typer.Option(..., "--job-id")) -> None:
    configure_logging()
    ensure_initialized()
    controller = RetryController()
    with SessionLocal() as db:
        try:
            snapshot = build_snapshot(
                db,
                job_id,
                candidate_limit=get_settings().stream_candidate_limit,
                retry_controller=controller,
            )
        except JobNotFoundError as exc:
            raise typer.BadParameter(str(exc)) from exc
    _echo(snapshot)


@jobs_app.command("retry")
def jobs_retry(job_id: int = typer.Option(..., "--job-id")) -> None:
    """Resume a paused or failed job when the retry rules allow it."""
    configure_logging()
    ensure_initialized()
    try:
        decision = RetryController().retry(job_id)
    except JobNotFoundError as exc:
        raise typer.BadParameter(str(exc)) from exc
    _echo({"job_id": job_id, **decision.to_dict()})
    if decision.allowed:
        get_supervisor().wait(job_id)
        shutdown_runtime()
    else:
        raise typer.Exit(code=1)


@jobs_app.command("recover")
def jobs_recover() -> None:
    """Resume stale jobs and rate-limited jobs whose reset time has passed."""
    configure_logging()
    ensure_initialized()
    summary = RetryController().recover_stuck_jobs()
    _echo(summary)
    for job_id in summary["resumed"]:
        get_supervisor().wait(job_id)
    shutdown_runtime()


@jobs_app.command("candidates")
def jobs_candidates(
    job_id: int = typer.Option(..., "--job-id"),
    limit: int = typer.Option(20, "--limit"),
    include_duplicates: bool = typer.Option(False, "--include-duplicates"),
) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        repo = Repository(db)
        try:
            repo.require_job(job_id)
        except JobNotFoundError as exc:
            raise typer.BadParameter(str(exc)) from exc
        rows = repo.ranked_candidates(job_id, limit=limit, include_duplicates=include_duplicates)
        _echo(
            [
                {
                    "id": row.id,
                    "full_name": row.full_name,
                    "profile_url": row.profile_url,
                    "current_position": row.current_position,
                    "match_score": row.match_score,
                    "seniority_level": row.seniority_level,
                    "is_duplicate": row.is_duplicate,
                }
                for row in rows
            ]
        )


@jobs_app.command("delete")
def jobs_delete(job_id: int = typer.Option(..., "--job-id")) -> None:
    configure_logging()
    ensure_initialized()
    with SessionLocal() as db:
        deleted = Repository(db).delete_job(job_id)
    _echo({"id": job_id, "deleted": deleted})
    if not deleted:
        raise typer.Exit(code=1)
