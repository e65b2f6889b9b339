from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import Response, StreamingResponse

from ..core.errors import (
    AssignmentNotFoundError,
    ConductorError,
    ConfigurationError,
    InvalidTransitionError,
    OrchestrationInProgressError,
    ScheduleError,
    TaskRunNotFoundError,
)
from ..core.logging import get_logger
from ..dependencies import get_event_bus, get_orchestrator, get_scheduler, get_session_cache
from ..orchestration.events import EventBus
from ..orchestration.orchestrator import Orchestrator
from ..orchestration.scheduler import TaskScheduler, preview_occurrences
from ..orchestration.state import utcnow
from ..schemas.task_runs import (
    ActionResponse,
    PermissionResponseRequest,
    RatingRequest,
    SchedulePreviewRequest,
    SchedulePreviewResponse,
    ScheduleRequest,
    TaskAssignmentModel,
    TaskRunCreate,
    TaskRunDetail,
    TaskRunModel,
    TaskRunSnapshotModel,
)
from ..schemas.workspaces import WorkspaceSessionList, WorkspaceSwitchRequest
from ..workspace.session_cache import SessionState, WorkspaceSessionCache

router = APIRouter()
logger = get_logger(name=__name__)

_STREAM_END_KINDS = frozenset({"completed", "cancelled", "error"})


def _format_sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def _to_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, (TaskRunNotFoundError, AssignmentNotFoundError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, (OrchestrationInProgressError, InvalidTransitionError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, (ScheduleError, ValueError)):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    logger.warning("unmapped_conductor_error", error=str(exc), error_type=type(exc).__name__)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


@router.get("/health", tags=["health"])
async def health() -> dict[str, str]:
    return {"status": "ok"}


@router.post(
    "/task-runs",
    response_model=TaskRunModel,
    status_code=status.HTTP_201_CREATED,
    tags=["task-runs"],
)
async def start_task_run(
    payload: TaskRunCreate,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> TaskRunModel:
    try:
        run = await orchestrator.start(
            payload.prompt,
            title=payload.title,
            workspace_id=payload.workspace_id,
            require_confirmation=payload.require_confirmation,
        )
    except (ConductorError, ValueError) as exc:
        raise _to_http_error(exc) from exc
    return TaskRunModel.from_domain(run, is_active=orchestrator.is_active(run.id))


@router.get("/task-runs", response_model=list[TaskRunModel], tags=["task-runs"])
async def list_task_runs(
    workspace_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> list[TaskRunModel]:
    runs = await orchestrator.store.list_task_runs(workspace_id=workspace_id, limit=limit)
    return [TaskRunModel.from_domain(run, is_active=orchestrator.is_active(run.id)) for run in runs]


@router.get("/task-runs/{task_run_id}", response_model=TaskRunDetail, tags=["task-runs"])
async def get_task_run(
    task_run_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> TaskRunDetail:
    try:
        run = await orchestrator.get_task_run(task_run_id)
        assignments = await orchestrator.list_assignments(task_run_id)
    except ConductorError as exc:
        raise _to_http_error(exc) from exc
    summary = TaskRunModel.from_domain(run, is_active=orchestrator.is_active(task_run_id))
    return TaskRunDetail(
        **summary.model_dump(),
        task_plan=run.task_plan,
        assignments=[TaskAssignmentModel.from_domain(item) for item in assignments],
    )


@router.get("/task-runs/{task_run_id}/snapshot", response_model=TaskRunSnapshotModel, tags=["task-runs"])
async def get_task_run_snapshot(
    task_run_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> TaskRunSnapshotModel:
    try:
        snapshot = await orchestrator.snapshot(task_run_id)
    except ConductorError as exc:
        raise _to_http_error(exc) from exc
    return TaskRunSnapshotModel.from_domain(snapshot)


@router.post("/task-runs/{task_run_id}/cancel", response_model=TaskRunModel, tags=["task-runs"])
async def cancel_task_run(
    task_run_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> TaskRunModel:
    try:
        run = await orchestrator.cancel(task_run_id)
    except ConductorError as exc:
        raise _to_http_error(exc) from exc
    return TaskRunModel.from_domain(run, is_active=orchestrator.is_active(task_run_id))


@router.post(
    "/task-runs/{task_run_id}/agents/{agent_id}/cancel",
    response_model=TaskRunModel,
    tags=["task-runs"],
)
async def cancel_agent(
    task_run_id: str,
    agent_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> TaskRunModel:
    try:
        run = await orchestrator.cancel_agent(task_run_id, agent_id)
    except ConductorError as exc:
        raise _to_http_error(exc) from exc
    return TaskRunModel.from_domain(run, is_active=orchestrator.is_active(task_run_id))


@router.post("/task-runs/{task_run_id}/confirm", response_model=TaskRunModel, tags=["task-runs"])
async def confirm_task_run(
    task_run_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> TaskRunModel:
    try:
        run = await orchestrator.confirm_results(task_run_id)
    except ConductorError as exc:
        raise _to_http_error(exc) from exc
    return TaskRunModel.from_domain(run, is_active=orchestrator.is_active(task_run_id))


@router.post(
    "/task-runs/{task_run_id}/agents/{agent_id}/regenerate",
    response_model=TaskRunModel,
    tags=["task-runs"],
)
async def regenerate_agent(
    task_run_id: str,
    agent_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> TaskRunModel:
    try:
        run = await orchestrator.regenerate(task_run_id, agent_id)
    except ConductorError as exc:
        raise _to_http_error(exc) from exc
    return TaskRunModel.from_domain(run, is_active=orchestrator.is_active(task_run_id))


@router.post(
    "/task-runs/{task_run_id}/agents/{agent_id}/permissions",
    response_model=ActionResponse,
    tags=["task-runs"],
)
async def respond_to_permission(
    task_run_id: str,
    agent_id: str,
    payload: PermissionResponseRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ActionResponse:
    try:
        await orchestrator.respond_to_permission(task_run_id, agent_id, payload.request_id, payload.option_id)
    except ConductorError as exc:
        raise _to_http_error(exc) from exc
    return ActionResponse(detail=f"Forwarded option '{payload.option_id}'")


@router.put("/task-runs/{task_run_id}/rating", response_model=TaskRunModel, tags=["task-runs"])
async def rate_task_run(
    task_run_id: str,
    payload: RatingRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> TaskRunModel:
    try:
        run = await orchestrator.rate_task_run(task_run_id, payload.rating)
    except (ConductorError, ValueError) as exc:
        raise _to_http_error(exc) from exc
    return TaskRunModel.from_domain(run)


@router.delete("/task-runs/{task_run_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["task-runs"])
async def delete_task_run(
    task_run_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> Response:
    try:
        await orchestrator.delete_task_run(task_run_id)
    except ConductorError as exc:
        raise _to_http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put("/task-runs/{task_run_id}/schedule", response_model=TaskRunModel, tags=["schedules"])
async def set_schedule(
    task_run_id: str,
    payload: ScheduleRequest,
    scheduler: TaskScheduler = Depends(get_scheduler),
) -> TaskRunModel:
    try:
        run = await scheduler.schedule_task(
            task_run_id,
            schedule_type=payload.schedule_type,
            scheduled_time=payload.scheduled_time,
            recurrence_pattern=payload.recurrence_pattern,
        )
    except ConductorError as exc:
        raise _to_http_error(exc) from exc
    return TaskRunModel.from_domain(run)


@router.delete("/task-runs/{task_run_id}/schedule", response_model=TaskRunModel, tags=["schedules"])
async def clear_schedule(
    task_run_id: str,
    scheduler: TaskScheduler = Depends(get_scheduler),
) -> TaskRunModel:
    try:
        run = await scheduler.clear_schedule(task_run_id)
    except ConductorError as exc:
        raise _to_http_error(exc) from exc
    return TaskRunModel.from_domain(run)


@router.post("/task-runs/{task_run_id}/schedule/pause", response_model=TaskRunModel, tags=["schedules"])
async def pause_schedule(
    task_run_id: str,
    scheduler: TaskScheduler = Depends(get_scheduler),
) -> TaskRunModel:
    try:
        run = await scheduler.pause(task_run_id)
    except ConductorError as exc:
        raise _to_http_error(exc) from exc
    return TaskRunModel.from_domain(run)


@router.post("/task-runs/{task_run_id}/schedule/resume", response_model=TaskRunModel, tags=["schedules"])
async def resume_schedule(
    task_run_id: str,
    scheduler: TaskScheduler = Depends(get_scheduler),
) -> TaskRunModel:
    try:
        run = await scheduler.resume(task_run_id)
    except ConductorError as exc:
        raise _to_http_error(exc) from exc
    return TaskRunModel.from_domain(run)


@router.post("/schedules/preview", response_model=SchedulePreviewResponse, tags=["schedules"])
async def preview_schedule(payload: SchedulePreviewRequest) -> SchedulePreviewResponse:
    try:
        occurrences = preview_occurrences(
            payload.recurrence_pattern,
            after=payload.after or utcnow(),
            count=payload.count,
        )
    except ConductorError as exc:
        raise _to_http_error(exc) from exc
    return SchedulePreviewResponse(occurrences=occurrences)


@router.get("/task-runs/{task_run_id}/events", tags=["task-runs"])
async def stream_task_run_events(
    task_run_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    events: EventBus = Depends(get_event_bus),
) -> StreamingResponse:
    try:
        await orchestrator.get_task_run(task_run_id)
    except ConductorError as exc:
        raise _to_http_error(exc) from exc

    async def event_stream():
        async with events.listen(task_run_id) as stream:
            snapshot = await orchestrator.snapshot(task_run_id)
            yield _format_sse("snapshot", TaskRunSnapshotModel.from_domain(snapshot).model_dump(mode="json"))
            if not snapshot.is_active:
                yield _format_sse("end", {"task_run_id": task_run_id})
                return
            async for event in stream:
                yield _format_sse(event.kind, event.to_payload())
                if event.kind in _STREAM_END_KINDS:
                    break
        yield _format_sse("end", {"task_run_id": task_run_id})

    headers = {
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",
    }
    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=headers)


@router.get("/workspaces/sessions", response_model=WorkspaceSessionList, tags=["workspaces"])
async def list_workspace_sessions(
    cache: WorkspaceSessionCache = Depends(get_session_cache),
) -> WorkspaceSessionList:
    return WorkspaceSessionList(workspace_ids=cache.workspace_ids(), max_workspaces=cache.max_workspaces)


@router.put("/workspaces/{workspace_id}/session", response_model=ActionResponse, tags=["workspaces"])
async def capture_workspace_session(
    workspace_id: str,
    payload: SessionState,
    cache: WorkspaceSessionCache = Depends(get_session_cache),
) -> ActionResponse:
    if payload.workspace_id != workspace_id:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Session workspace_id does not match the path",
        )
    cache.capture(payload)
    return ActionResponse(detail=f"Captured session for workspace '{workspace_id}'")


@router.get("/workspaces/{workspace_id}/session", response_model=SessionState, tags=["workspaces"])
async def restore_workspace_session(
    workspace_id: str,
    cache: WorkspaceSessionCache = Depends(get_session_cache),
) -> SessionState:
    state = cache.restore(workspace_id)
    if state is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No cached session for workspace")
    return state


@router.delete(
    "/workspaces/{workspace_id}/session",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["workspaces"],
)
async def evict_workspace_session(
    workspace_id: str,
    cache: WorkspaceSessionCache = Depends(get_session_cache),
) -> Response:
    cache.evict(workspace_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/workspaces/switch", response_model=SessionState, tags=["workspaces"])
async def switch_workspace(
    payload: WorkspaceSwitchRequest,
    cache: WorkspaceSessionCache = Depends(get_session_cache),
) -> SessionState:
    return cache.switch(payload.current, payload.target_workspace_id)
