from __future__ import annotations

import asyncio
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from harrier.api.routes import router as api_router
from harrier.config import get_settings
from harrier.core.retry import RetryController
from harrier.core.runtime import get_supervisor, shutdown_runtime
from harrier.db.init import init_database
from harrier.logging_config import configure_logging

logger = logging.getLogger(__name__)


async def run_recovery_sweeps(controller: RetryController, interval: float) -> None:
    """Sweep for stale and rate-limit-expired jobs every ``interval`` seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(controller.recover_stuck_jobs)
        except Exception:
            logger.exception("Recovery sweep failed")


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(title=settings.app_name)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.recovery_task = None

    @app.on_event("startup")
    async def _startup() -> None:
        configure_logging()
        init_database()
        if not settings.resume_on_startup:
            return
        controller = RetryController(supervisor=get_supervisor())
        summary = await asyncio.to_thread(controller.recover_stuck_jobs)
        logger.info("Startup recovery %s", summary)
        # Jobs interrupted less than stuck_job_after_sec ago are not stale yet; later sweeps pick them up.
        if settings.recovery_interval_sec > 0:
            app.state.recovery_task = asyncio.create_task(
                run_recovery_sweeps(controller, settings.recovery_interval_sec)
            )

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        task = app.state.recovery_task
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            app.state.recovery_task = None
        shutdown_runtime(wait=False)

    @app.get("/health")
    def health() -> JSONResponse:
        return JSONResponse({"status": "ok"})

    app.include_router(api_router)
    return app
