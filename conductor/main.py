from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from .api.routes import router as api_router
from .core.config import get_settings
from .core.logging import configure_logging, get_logger
from .dependencies import ConductorRuntime, build_runtime
from .orchestration.scheduler import TaskScheduler

settings = get_settings()
configure_logging(settings.observability.log_level, json_logs=settings.environment != "local")
logger = get_logger(name=__name__)


async def _scheduler_loop(scheduler: TaskScheduler) -> None:
    interval = max(1.0, scheduler.poll_interval_seconds)
    while True:
        await asyncio.sleep(interval)
        try:
            await scheduler.tick()
        except Exception as exc:  # pragma: no cover - background error logging
            logger.exception("scheduler_tick_failed", error=str(exc))


def create_app(runtime: ConductorRuntime | None = None) -> FastAPI:
    """Build the API. A prebuilt runtime is used as is; otherwise one is wired at startup."""

    @asynccontextmanager
    async def app_lifespan(app: FastAPI):
        active = runtime or build_runtime(settings)
        app.state.runtime = active
        task: asyncio.Task[None] | None = None
        if active.orchestrator is not None:
            await active.orchestrator.recover_incomplete_runs()
        if active.scheduler is not None and active.settings.scheduler.enabled:
            task = asyncio.create_task(_scheduler_loop(active.scheduler))
            app.state.scheduler_task = task
        try:
            yield
        finally:
            task = getattr(app.state, "scheduler_task", None)
            if task is not None:
                task.cancel()
                with suppress(asyncio.CancelledError):  # pragma: no cover - managed shutdown
                    await task
                app.state.scheduler_task = None
            await active.close()
            app.state.runtime = None

    application = FastAPI(title="Conductor", version="0.1.0", lifespan=app_lifespan)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.frontend_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.include_router(api_router, prefix=settings.api_v1_prefix)

    @application.get("/", tags=["health"])
    async def root() -> dict[str, str]:
        return {"message": "Conductor orchestration service running"}

    if settings.observability.prometheus_enabled:

        @application.get("/metrics", tags=["observability"])
        async def metrics() -> Response:
            return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return application


app = create_app()
