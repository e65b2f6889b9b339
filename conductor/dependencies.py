from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status

from .core.config import Settings
from .core.logging import get_logger
from .orchestration.agents import AgentRegistry, InMemoryAgentRegistry
from .orchestration.events import EventBus, log_event
from .orchestration.orchestrator import Orchestrator
from .orchestration.planning import PlanProvider
from .orchestration.scheduler import TaskScheduler
from .orchestration.store import TaskRunStore, build_task_run_store
from .orchestration.transport import AgentTransport, HttpAgentTransport
from .workspace.session_cache import WorkspaceSessionCache

logger = get_logger(name=__name__)


@dataclass(slots=True)
class ConductorRuntime:
    settings: Settings
    store: TaskRunStore
    registry: AgentRegistry
    events: EventBus
    session_cache: WorkspaceSessionCache
    transport: AgentTransport | None = None
    orchestrator: Orchestrator | None = None
    scheduler: TaskScheduler | None = None

    async def close(self) -> None:
        if self.orchestrator is not None:
            await self.orchestrator.shutdown()
        close_transport = getattr(self.transport, "close", None)
        if close_transport is not None:
            await close_transport()
        await self.store.close()


def build_runtime(
    settings: Settings,
    *,
    store: TaskRunStore | None = None,
    registry: AgentRegistry | None = None,
    transport: AgentTransport | None = None,
    planner: PlanProvider | None = None,
    events: EventBus | None = None,
) -> ConductorRuntime:
    """Wire the service graph. Without a transport the orchestrator stays unavailable."""
    store = store or build_task_run_store(settings)
    registry = registry or InMemoryAgentRegistry.from_settings(settings)
    if events is None:
        events = EventBus(settings.observability)
        events.subscribe(log_event)
    if transport is None and settings.gateway.base_url:
        transport = HttpAgentTransport(settings.gateway)

    runtime = ConductorRuntime(
        settings=settings,
        store=store,
        registry=registry,
        events=events,
        session_cache=WorkspaceSessionCache(settings.session_cache),
        transport=transport,
    )
    if transport is None:
        logger.warning("agent_transport_unconfigured")
        return runtime
    runtime.orchestrator = Orchestrator(
        store=store,
        registry=registry,
        transport=transport,
        planner=planner,
        events=events,
        settings=settings.orchestration,
    )
    runtime.scheduler = TaskScheduler(
        orchestrator=runtime.orchestrator,
        store=store,
        settings=settings.scheduler,
    )
    return runtime


async def get_runtime(request: Request) -> AsyncIterator[ConductorRuntime]:
    runtime: ConductorRuntime | None = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service is starting up")
    yield runtime


async def get_orchestrator(runtime: ConductorRuntime = Depends(get_runtime)) -> AsyncIterator[Orchestrator]:
    if runtime.orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="No agent transport configured",
        )
    yield runtime.orchestrator


async def get_scheduler(runtime: ConductorRuntime = Depends(get_runtime)) -> AsyncIterator[TaskScheduler]:
    if runtime.scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="No agent transport configured",
        )
    yield runtime.scheduler


async def get_event_bus(runtime: ConductorRuntime = Depends(get_runtime)) -> AsyncIterator[EventBus]:
    yield runtime.events


async def get_session_cache(runtime: ConductorRuntime = Depends(get_runtime)) -> AsyncIterator[WorkspaceSessionCache]:
    yield runtime.session_cache
