from __future__ import annotations

import asyncio
import time
from collections import deque
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Coroutine, Iterable, Sequence

from pydantic import BaseModel, ValidationError

from ..core.config import OrchestrationSettings
from ..core.errors import (
    AssignmentNotFoundError,
    ConfigurationError,
    InvalidTransitionError,
    OrchestrationInProgressError,
    PlanCycleError,
    TaskRunNotFoundError,
)
from ..core.logging import bind_task_run, get_logger
from ..core.metrics import (
    increment_assignment_event,
    mark_task_run_finished,
    mark_task_run_started,
    observe_agent_execution,
)
from .agents import AgentProfile, AgentRegistry
from .enums import AssignmentStatus, TaskRunStatus, can_transition
from .events import (
    TERMINAL_TRANSPORT_KINDS,
    A2ACallEvent,
    A2ACallRecord,
    ChunkEvent,
    CompletedEvent,
    EventBus,
    FailedEvent,
    OrchestrationEvent,
    PermissionRequestEvent,
    ToolCallEvent,
    ToolCallRecord,
    ToolCallUpdateEvent,
    TransportEvent,
    parse_transport_event,
)
from .plan import TaskPlan
from .planning import ControlHubPlanner, PlanProvider
from .state import TaskAssignment, TaskRun, new_task_run, utcnow
from .store import TaskRunStore
from .summary import compose_result_summary, local_digest, write_summary_file
from .tracker import AgentExecutionTracker, AgentTrackingInfo
from .transport import AgentTransport
from .validator import TaskPlanValidator, auto_correct_plan_skills

logger = get_logger(name=__name__)

REGENERATE_ALL = "__all__"

_SETTLED_STATUSES = frozenset(
    {
        TaskRunStatus.AWAITING_CONFIRMATION,
        TaskRunStatus.COMPLETED,
        TaskRunStatus.FAILED,
        TaskRunStatus.CANCELLED,
    }
)
_BLOCKING_DEPENDENCY_STATUSES = frozenset(
    {AssignmentStatus.FAILED, AssignmentStatus.CANCELLED, AssignmentStatus.SKIPPED}
)


class RunSnapshot(BaseModel):
    task_run: TaskRun
    assignments: list[TaskAssignment]
    trackers: list[AgentTrackingInfo]
    is_active: bool


@dataclass(slots=True)
class _RunContext:
    run: TaskRun
    control_hub: AgentProfile | None
    requires_confirmation: bool
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    settled: asyncio.Event = field(default_factory=asyncio.Event)
    agents: dict[str, AgentProfile] = field(default_factory=dict)
    assignments: dict[str, TaskAssignment] = field(default_factory=dict)
    trackers: dict[str, AgentExecutionTracker] = field(default_factory=dict)
    dependencies: dict[str, list[str]] = field(default_factory=dict)
    agent_tasks: dict[str, asyncio.Task[None]] = field(default_factory=dict)
    background: set[asyncio.Task[Any]] = field(default_factory=set)
    confirmation_timer: asyncio.Task[None] | None = None
    outbox: deque[OrchestrationEvent] = field(default_factory=deque)
    sequence: int = 0
    publisher: asyncio.Task[None] | None = None
    finalizing: bool = False
    finalizer: asyncio.Task[None] | None = None
    started_monotonic: float = field(default_factory=time.monotonic)

    def ordered(self) -> list[TaskAssignment]:
        return sorted(self.assignments.values(), key=lambda item: (item.sequence_order, item.created_at))


def resolve_dependencies(assignments: Sequence[TaskAssignment]) -> dict[str, list[str]]:
    """Map each assignment id to the ids of the assignments it waits on.

    ``depends_on`` holds agent ids; an entry covers every other assignment of
    that agent. Entries matching nothing are ignored.
    """
    resolved: dict[str, list[str]] = {}
    for assignment in assignments:
        targets: list[str] = []
        for dependency in assignment.depends_on:
            for other in assignments:
                if other.id != assignment.id and other.agent_id == dependency and other.id not in targets:
                    targets.append(other.id)
        resolved[assignment.id] = targets
    return resolved


class Orchestrator:
    """Owns the lifecycle of task runs and drives their assignments.

    Every mutation of a run happens under that run's lock. Events are queued
    while the lock is held and handed to a per-run publisher task, so agent
    event ingestion never waits on observers.
    """

    def __init__(
        self,
        *,
        store: TaskRunStore,
        registry: AgentRegistry,
        transport: AgentTransport,
        planner: PlanProvider | None = None,
        events: EventBus | None = None,
        validator: TaskPlanValidator | None = None,
        settings: OrchestrationSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings or OrchestrationSettings()
        self._store = store
        self._registry = registry
        self._transport = transport
        self._planner = planner or ControlHubPlanner(transport, self._settings)
        self._events = events or EventBus()
        self._validator = validator or TaskPlanValidator()
        self._clock = clock or utcnow
        self._runs: dict[str, _RunContext] = {}
        self._workspace_runs: dict[str | None, str] = {}
        self._publishers: dict[str, asyncio.Task[None]] = {}
        self._start_lock = asyncio.Lock()

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def store(self) -> TaskRunStore:
        return self._store

    # Lifecycle operations -------------------------------------------------------------

    async def start(
        self,
        user_prompt: str,
        *,
        title: str | None = None,
        workspace_id: str | None = None,
        require_confirmation: bool | None = None,
        source_task_run_id: str | None = None,
    ) -> TaskRun:
        if not user_prompt or not user_prompt.strip():
            raise ValueError("user_prompt must not be empty")
        control_hub = await self._registry.get_control_hub()
        if control_hub is None:
            raise ConfigurationError("No control hub agent configured. Set an agent as control hub first.")

        async with self._start_lock:
            active_id = self._workspace_runs.get(workspace_id)
            if active_id is not None:
                raise OrchestrationInProgressError(workspace_id, active_id)
            run = new_task_run(
                user_prompt,
                title=title,
                control_hub_agent_id=control_hub.id,
                workspace_id=workspace_id,
                source_task_run_id=source_task_run_id,
                title_max_length=self._settings.title_max_length,
            )
            await self._store.create_task_run(run)
            ctx = _RunContext(
                run=run,
                control_hub=control_hub,
                requires_confirmation=(
                    self._settings.require_confirmation if require_confirmation is None else require_confirmation
                ),
            )
            self._register(ctx)

        logger.info("task_run_started", task_run_id=run.id, workspace_id=workspace_id, control_hub=control_hub.id)
        async with ctx.lock:
            self._queue_event(
                ctx,
                "started",
                title=run.title,
                user_prompt=run.user_prompt,
                workspace_id=workspace_id,
                source_task_run_id=source_task_run_id,
            )
            await self._transition(ctx, TaskRunStatus.ANALYZING)
            self._spawn(ctx, self._acquire_plan(ctx))
        await self._flush(ctx)
        return ctx.run.model_copy(deep=True)

    async def on_plan_ready(self, task_run_id: str, plan: TaskPlan) -> TaskRun:
        ctx = self._require_context(task_run_id)
        agents = await self._registry.list_agents()
        await self._accept_plan(ctx, plan, agents)
        return ctx.run.model_copy(deep=True)

    async def cancel(self, task_run_id: str) -> TaskRun:
        ctx = self._runs.get(task_run_id)
        if ctx is None:
            return await self._cancel_detached(task_run_id)

        signals: list[tuple[str | None, asyncio.Task[None] | None]] = []
        async with ctx.lock:
            if ctx.run.status.is_terminal:
                return ctx.run.model_copy(deep=True)
            for assignment in ctx.ordered():
                if assignment.status is AssignmentStatus.RUNNING:
                    signals.append(
                        (ctx.trackers[assignment.id].correlation_id, ctx.agent_tasks.get(assignment.id))
                    )
                    await self._finish_assignment(
                        ctx, assignment, AssignmentStatus.CANCELLED, error_message="Cancelled by user", reschedule=False
                    )
                elif assignment.status is AssignmentStatus.PENDING:
                    await self._finish_assignment(
                        ctx,
                        assignment,
                        AssignmentStatus.CANCELLED,
                        error_message="Cancelled before it started",
                        reschedule=False,
                    )
            self._aggregate_totals(ctx)
            ctx.run.result_summary = compose_result_summary("Task cancelled by user.", ctx.ordered())
            await self._transition(ctx, TaskRunStatus.CANCELLED)
            self._queue_event(ctx, "cancelled", result_summary=ctx.run.result_summary)
            self._finish_run(ctx)

        logger.info("task_run_cancelled", task_run_id=task_run_id, interrupted=len(signals))
        for correlation_id, task in signals:
            await self._signal_transport_cancel(correlation_id)
            if task is not None:
                task.cancel()
        await self._flush(ctx)
        return ctx.run.model_copy(deep=True)

    async def cancel_agent(self, task_run_id: str, agent_id: str) -> TaskRun:
        ctx = self._runs.get(task_run_id)
        if ctx is None:
            run = await self._load_run(task_run_id)
            if run.is_terminal:
                return run
            raise InvalidTransitionError(task_run_id, run.status.value, AssignmentStatus.CANCELLED.value)

        correlation_id: str | None = None
        task: asyncio.Task[None] | None = None
        async with ctx.lock:
            candidates = [item for item in ctx.ordered() if item.agent_id == agent_id]
            if not candidates:
                raise AssignmentNotFoundError(task_run_id, agent_id)
            target = next((item for item in candidates if item.status is AssignmentStatus.RUNNING), None)
            if target is None:
                target = next((item for item in candidates if item.status is AssignmentStatus.PENDING), None)
            if target is None or ctx.run.status is not TaskRunStatus.RUNNING:
                return ctx.run.model_copy(deep=True)
            if target.status is AssignmentStatus.RUNNING:
                correlation_id = ctx.trackers[target.id].correlation_id
                task = ctx.agent_tasks.get(target.id)
            await self._finish_assignment(
                ctx, target, AssignmentStatus.CANCELLED, error_message="Cancelled by user", reschedule=True
            )

        logger.info("assignment_cancelled", task_run_id=task_run_id, agent_id=agent_id)
        await self._signal_transport_cancel(correlation_id)
        if task is not None:
            task.cancel()
        await self._flush(ctx)
        return ctx.run.model_copy(deep=True)

    async def confirm_results(self, task_run_id: str) -> TaskRun:
        ctx = self._runs.get(task_run_id)
        if ctx is None:
            run = await self._load_run(task_run_id)
            if run.status is TaskRunStatus.COMPLETED:
                return run
            raise InvalidTransitionError(task_run_id, run.status.value, TaskRunStatus.COMPLETED.value)

        async with ctx.lock:
            finalizer = ctx.finalizer if ctx.finalizing else None
            if finalizer is None:
                if ctx.run.status is TaskRunStatus.COMPLETED:
                    return ctx.run.model_copy(deep=True)
                if ctx.run.status is not TaskRunStatus.AWAITING_CONFIRMATION:
                    raise InvalidTransitionError(task_run_id, ctx.run.status.value, TaskRunStatus.COMPLETED.value)
                self._cancel_confirmation_timer(ctx)
                finalizer = self._start_finalizer(ctx)
        # The finalizer belongs to the run; a cancelled caller leaves it running.
        try:
            await asyncio.shield(finalizer)
        except asyncio.CancelledError:
            if not finalizer.cancelled():
                raise
        return ctx.run.model_copy(deep=True)

    async def regenerate(self, task_run_id: str, agent_id: str) -> TaskRun:
        ctx = self._runs.get(task_run_id)
        if ctx is None:
            run = await self._load_run(task_run_id)
            raise InvalidTransitionError(task_run_id, run.status.value, TaskRunStatus.RUNNING.value)

        agents = await self._registry.list_agents()
        async with ctx.lock:
            if ctx.run.status is not TaskRunStatus.AWAITING_CONFIRMATION or ctx.finalizing:
                raise InvalidTransitionError(task_run_id, ctx.run.status.value, TaskRunStatus.RUNNING.value)
            if agent_id == REGENERATE_ALL:
                targets = ctx.ordered()
            else:
                targets = [item for item in ctx.ordered() if item.agent_id == agent_id]
            if not targets:
                raise AssignmentNotFoundError(task_run_id, agent_id)

            self._cancel_confirmation_timer(ctx)
            ctx.agents = {agent.id: agent for agent in agents}
            for assignment in targets:
                assignment.reset()
                ctx.trackers[assignment.id].reset()
                await self._store.save_assignment(assignment)
            ctx.settled.clear()
            await self._transition(ctx, TaskRunStatus.RUNNING)
            logger.info(
                "task_run_regenerating",
                task_run_id=task_run_id,
                target=agent_id,
                assignments=len(targets),
            )
            for assignment in targets:
                reason = self._unusable_reason(ctx, assignment.agent_id)
                if reason is not None:
                    await self._finish_assignment(
                        ctx, assignment, AssignmentStatus.SKIPPED, error_message=reason, reschedule=False
                    )
            await self._schedule_eligible(ctx)
        await self._flush(ctx)
        return ctx.run.model_copy(deep=True)

    async def respond_to_permission(self, task_run_id: str, agent_id: str, request_id: str, option_id: str) -> None:
        ctx = self._require_context(task_run_id)
        async with ctx.lock:
            assignment = self._running_assignment(ctx, agent_id)
            tracker = ctx.trackers[assignment.id]
            correlation_id = tracker.correlation_id
            if tracker.resolve_permission(request_id) is None:
                logger.warning(
                    "permission_request_unknown",
                    task_run_id=task_run_id,
                    agent_id=agent_id,
                    request_id=request_id,
                )
        await self._transport.respond_permission(correlation_id or "", request_id, option_id)
        logger.info("permission_response_forwarded", task_run_id=task_run_id, agent_id=agent_id, option_id=option_id)

    # Push-style ingestion for transports that report progress out of band ---------------

    async def on_agent_chunk(self, task_run_id: str, agent_id: str, text: str) -> None:
        await self._ingest_for_agent(task_run_id, agent_id, ChunkEvent(text=text))

    async def on_agent_tool_call(self, task_run_id: str, agent_id: str, record: ToolCallRecord) -> None:
        await self._ingest_for_agent(task_run_id, agent_id, ToolCallEvent(record=record))

    async def on_agent_tool_call_update(self, task_run_id: str, agent_id: str, record: ToolCallRecord) -> None:
        await self._ingest_for_agent(task_run_id, agent_id, ToolCallUpdateEvent(record=record))

    async def on_agent_a2a_call(self, task_run_id: str, agent_id: str, record: A2ACallRecord) -> None:
        await self._ingest_for_agent(task_run_id, agent_id, A2ACallEvent(record=record))

    async def on_agent_completed(
        self,
        task_run_id: str,
        agent_id: str,
        *,
        status: AssignmentStatus,
        output: str = "",
        error: str | None = None,
        tokens_in: int = 0,
        tokens_out: int = 0,
        cache_creation_tokens: int = 0,
        cache_read_tokens: int = 0,
        duration_ms: int | None = None,
    ) -> None:
        event: TransportEvent
        if status is AssignmentStatus.COMPLETED:
            event = CompletedEvent(
                output=output,
                tokens_in=tokens_in,
                tokens_out=tokens_out,
                cache_creation_tokens=cache_creation_tokens,
                cache_read_tokens=cache_read_tokens,
                duration_ms=duration_ms,
            )
        elif status is AssignmentStatus.FAILED:
            event = FailedEvent(error=error or "Agent reported failure")
        else:
            raise ValueError(f"on_agent_completed expects completed or failed, got {status.value}")
        await self._ingest_for_agent(task_run_id, agent_id, event)

    # Reads ----------------------------------------------------------------------------

    def is_active(self, task_run_id: str) -> bool:
        return task_run_id in self._runs

    def active_run_for_workspace(self, workspace_id: str | None) -> str | None:
        return self._workspace_runs.get(workspace_id)

    async def get_task_run(self, task_run_id: str) -> TaskRun:
        ctx = self._runs.get(task_run_id)
        if ctx is not None:
            return ctx.run.model_copy(deep=True)
        return await self._load_run(task_run_id)

    async def list_assignments(self, task_run_id: str) -> list[TaskAssignment]:
        ctx = self._runs.get(task_run_id)
        if ctx is not None:
            return [assignment.model_copy(deep=True) for assignment in ctx.ordered()]
        await self._load_run(task_run_id)
        return await self._store.list_assignments(task_run_id)

    async def snapshot(self, task_run_id: str) -> RunSnapshot:
        """Read-only view of a run for display. Never takes the run lock."""
        ctx = self._runs.get(task_run_id)
        if ctx is not None:
            ordered = ctx.ordered()
            return RunSnapshot(
                task_run=ctx.run.model_copy(deep=True),
                assignments=[assignment.model_copy(deep=True) for assignment in ordered],
                trackers=[ctx.trackers[assignment.id].snapshot() for assignment in ordered],
                is_active=True,
            )
        run = await self._load_run(task_run_id)
        assignments = await self._store.list_assignments(task_run_id)
        return RunSnapshot(
            task_run=run,
            assignments=assignments,
            trackers=[AgentExecutionTracker.for_assignment(assignment).snapshot() for assignment in assignments],
            is_active=False,
        )

    async def wait_until_settled(self, task_run_id: str, *, timeout: float | None = None) -> TaskRun:
        """Wait until the run is terminal or awaiting confirmation and its events are published."""
        ctx = self._runs.get(task_run_id)
        if ctx is not None:
            await asyncio.wait_for(ctx.settled.wait(), timeout)
        publisher = self._publishers.get(task_run_id)
        if publisher is not None:
            await asyncio.wait_for(asyncio.shield(publisher), timeout)
        return await self.get_task_run(task_run_id)

    # Housekeeping ---------------------------------------------------------------------

    async def rate_task_run(self, task_run_id: str, rating: int | None) -> TaskRun:
        if rating is not None and not 1 <= rating <= 5:
            raise ValueError("rating must be between 1 and 5")
        run = await self.get_task_run(task_run_id)
        if not run.is_terminal:
            raise InvalidTransitionError(task_run_id, run.status.value, "rated")
        return await self._store.set_rating(task_run_id, rating)

    async def delete_task_run(self, task_run_id: str) -> None:
        if task_run_id in self._runs:
            run = self._runs[task_run_id].run
            raise InvalidTransitionError(task_run_id, run.status.value, "deleted")
        if not await self._store.delete_task_run(task_run_id):
            raise TaskRunNotFoundError(task_run_id)
        logger.info("task_run_deleted", task_run_id=task_run_id)

    async def recover_incomplete_runs(self) -> list[str]:
        """Reload runs left non-terminal by a previous process and continue them."""
        runs = await self._store.list_incomplete_task_runs()
        if not runs:
            return []
        agents = await self._registry.list_agents()
        control_hub = await self._registry.get_control_hub()
        recovered: list[str] = []
        for run in runs:
            if run.id in self._runs:
                continue
            try:
                await self._recover_run(run, agents, control_hub)
            except Exception as exc:  # pragma: no cover - recovery error logging
                logger.exception("task_run_recovery_failed", task_run_id=run.id, error=str(exc))
                continue
            recovered.append(run.id)
        logger.info("task_runs_recovered", count=len(recovered))
        return recovered

    async def shutdown(self) -> None:
        """Stop in-flight work without changing persisted status, so runs can be recovered later."""
        tasks: list[asyncio.Task[Any]] = []
        for ctx in list(self._runs.values()):
            tasks.extend(ctx.agent_tasks.values())
            tasks.extend(ctx.background)
            if ctx.confirmation_timer is not None:
                tasks.append(ctx.confirmation_timer)
        tasks.extend(self._publishers.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError, Exception):
                await task
        self._runs.clear()
        self._workspace_runs.clear()

    # Plan acceptance ------------------------------------------------------------------

    async def _acquire_plan(self, ctx: _RunContext) -> None:
        try:
            agents = await self._registry.list_agents()
            if ctx.control_hub is None:
                raise ConfigurationError("No control hub agent configured. Set an agent as control hub first.")
            plan = await self._planner.create_plan(
                user_prompt=ctx.run.user_prompt,
                control_hub=ctx.control_hub,
                agents=agents,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("plan_acquisition_failed", task_run_id=ctx.run.id, error=str(exc))
            await self._fail_run(ctx, f"Failed to obtain a plan from the control hub: {exc}", error_type="plan")
            return
        await self._accept_plan(ctx, plan, agents)

    async def _accept_plan(self, ctx: _RunContext, plan: TaskPlan, agents: Sequence[AgentProfile]) -> None:
        async with ctx.lock:
            if ctx.run.status is not TaskRunStatus.ANALYZING:
                logger.info("plan_ignored", task_run_id=ctx.run.id, status=ctx.run.status.value)
                return
            plan, corrections = auto_correct_plan_skills(plan, agents)
            validation = self._validator.validate(plan, agents)
            ctx.agents = {agent.id: agent for agent in agents}
            validation_payload = validation.to_dict(plan)
            ctx.run.task_plan = {
                **plan.model_dump(mode="json"),
                "validation": validation_payload,
                "skill_corrections": corrections,
            }
            if plan.requires_confirmation:
                ctx.requires_confirmation = True
            self._queue_event(ctx, "plan_validated", validation=validation_payload, skill_corrections=corrections)

            if not validation.is_valid:
                error = PlanCycleError(validation.cycle_description or "Dependency cycle detected")
                await self._fail_locked(ctx, str(error), error_type="plan_cycle")
            elif not any(self._unusable_reason(ctx, item.agent_id) is None for item in plan.assignments):
                error = ConfigurationError("Plan does not reference any registered, enabled agent")
                await self._fail_locked(ctx, str(error), error_type="configuration")
            else:
                await self._materialize_assignments(ctx, plan)
                await self._transition(ctx, TaskRunStatus.RUNNING)
                self._queue_event(
                    ctx,
                    "plan_ready",
                    analysis=plan.analysis,
                    assignments=[assignment.model_dump(mode="json") for assignment in ctx.ordered()],
                )
                logger.info("plan_accepted", task_run_id=ctx.run.id, assignments=len(ctx.assignments))
                await self._schedule_eligible(ctx)
        await self._flush(ctx)

    async def _materialize_assignments(self, ctx: _RunContext, plan: TaskPlan) -> None:
        ordered = plan.ordered()
        explicit_terminal = [item for item in ordered if item.is_terminal]
        terminal_index: int | None = None
        if explicit_terminal:
            terminal_index = ordered.index(explicit_terminal[-1])
        elif ordered:
            highest = ordered[-1].sequence_order
            if sum(1 for item in ordered if item.sequence_order == highest) == 1:
                terminal_index = len(ordered) - 1

        now = self._clock()
        assignments: list[TaskAssignment] = []
        for index, planned in enumerate(ordered):
            agent = ctx.agents.get(planned.agent_id)
            assignment = TaskAssignment(
                task_run_id=ctx.run.id,
                agent_id=planned.agent_id,
                agent_name=agent.name if agent is not None else planned.agent_id,
                sequence_order=planned.sequence_order,
                depends_on=list(planned.depends_on),
                matched_skills=list(planned.matched_skills),
                selection_reason=planned.selection_reason,
                is_terminal_step=index == terminal_index,
                task_description=planned.task_description,
                created_at=now,
            )
            reason = self._unusable_reason(ctx, planned.agent_id)
            if reason is not None:
                assignment.status = AssignmentStatus.SKIPPED
                assignment.error_message = reason
                assignment.completed_at = now
            assignments.append(assignment)

        await self._store.create_assignments(assignments)
        self._install_assignments(ctx, assignments)

    def _install_assignments(self, ctx: _RunContext, assignments: Iterable[TaskAssignment]) -> None:
        ctx.assignments = {assignment.id: assignment for assignment in assignments}
        ctx.trackers = {
            assignment.id: AgentExecutionTracker.for_assignment(assignment) for assignment in ctx.assignments.values()
        }
        ctx.dependencies = resolve_dependencies(list(ctx.assignments.values()))

    # Execution ------------------------------------------------------------------------

    async def _schedule_eligible(self, ctx: _RunContext) -> None:
        """Start or skip pending assignments until nothing changes. Caller holds the run lock."""
        if ctx.run.status is not TaskRunStatus.RUNNING:
            return
        changed = True
        while changed:
            changed = False
            for assignment in ctx.ordered():
                if assignment.status is not AssignmentStatus.PENDING:
                    continue
                dependencies = [ctx.assignments[item] for item in ctx.dependencies.get(assignment.id, [])]
                blocker = next(
                    (item for item in dependencies if item.status in _BLOCKING_DEPENDENCY_STATUSES),
                    None,
                )
                if blocker is not None:
                    await self._finish_assignment(
                        ctx,
                        assignment,
                        AssignmentStatus.SKIPPED,
                        error_message=f"Dependency {blocker.agent_name} was {blocker.status.value}",
                        reschedule=False,
                    )
                    changed = True
                    continue
                if any(item.status is not AssignmentStatus.COMPLETED for item in dependencies):
                    continue
                if self._running_count(ctx, assignment.agent_id) >= self._concurrency_limit(ctx, assignment.agent_id):
                    continue
                await self._start_assignment(ctx, assignment)
                changed = True

        if not ctx.finalizing and all(item.status.is_terminal for item in ctx.assignments.values()):
            await self._on_all_terminal(ctx)

    async def _start_assignment(self, ctx: _RunContext, assignment: TaskAssignment) -> None:
        agent = ctx.agents.get(assignment.agent_id) or AgentProfile(id=assignment.agent_id, name=assignment.agent_name)
        now = self._clock()
        correlation_id = f"{ctx.run.id}:{assignment.id}:{ctx.sequence + 1}"
        assignment.input_text = self._compose_input(ctx, assignment)
        assignment.status = AssignmentStatus.RUNNING
        assignment.started_at = now
        assignment.model_used = agent.model
        ctx.trackers[assignment.id].start(correlation_id=correlation_id, model=agent.model, started_at=now)
        await self._store.save_assignment(assignment)
        increment_assignment_event(agent=assignment.agent_id, event="started")
        self._queue_event(
            ctx,
            "agent_started",
            agent_id=assignment.agent_id,
            assignment_id=assignment.id,
            sequence_order=assignment.sequence_order,
            model=agent.model,
        )
        ctx.agent_tasks[assignment.id] = asyncio.create_task(
            self._drive_assignment(ctx, assignment.id, correlation_id, agent, assignment.input_text),
            name=f"assignment:{assignment.id}",
        )

    def _compose_input(self, ctx: _RunContext, assignment: TaskAssignment) -> str:
        parts = [assignment.task_description]
        for dependency_id in ctx.dependencies.get(assignment.id, []):
            dependency = ctx.assignments[dependency_id]
            if dependency.status is AssignmentStatus.COMPLETED and dependency.output_text:
                parts.append(f"\n--- Output from {dependency.agent_name} ---\n{dependency.output_text}")
        return "\n".join(parts)

    async def _drive_assignment(
        self,
        ctx: _RunContext,
        assignment_id: str,
        correlation_id: str,
        agent: AgentProfile,
        input_text: str,
    ) -> None:
        terminal_seen = False
        try:
            async for raw in self._transport.invoke(agent, input_text, correlation_id=correlation_id):
                try:
                    event = parse_transport_event(raw)
                except ValidationError as exc:
                    logger.warning(
                        "transport_event_rejected",
                        task_run_id=ctx.run.id,
                        agent_id=agent.id,
                        error=str(exc),
                    )
                    continue
                await self._ingest(ctx, assignment_id, correlation_id, event)
                if event.kind in TERMINAL_TRANSPORT_KINDS:
                    terminal_seen = True
                    break
            if not terminal_seen:
                await self._ingest(
                    ctx,
                    assignment_id,
                    correlation_id,
                    FailedEvent(error="Agent stream ended without a completion event"),
                )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("assignment_transport_error", task_run_id=ctx.run.id, agent_id=agent.id)
            await self._ingest(ctx, assignment_id, correlation_id, FailedEvent(error=str(exc) or type(exc).__name__))
        finally:
            if ctx.agent_tasks.get(assignment_id) is asyncio.current_task():
                ctx.agent_tasks.pop(assignment_id, None)

    async def _ingest_for_agent(self, task_run_id: str, agent_id: str, event: TransportEvent) -> None:
        ctx = self._require_context(task_run_id)
        assignment = self._running_assignment(ctx, agent_id)
        correlation_id = ctx.trackers[assignment.id].correlation_id or ""
        await self._ingest(ctx, assignment.id, correlation_id, event)

    async def _ingest(self, ctx: _RunContext, assignment_id: str, correlation_id: str, event: TransportEvent) -> None:
        async with ctx.lock:
            assignment = ctx.assignments.get(assignment_id)
            tracker = ctx.trackers.get(assignment_id)
            if (
                assignment is None
                or tracker is None
                or assignment.status is not AssignmentStatus.RUNNING
                or tracker.correlation_id != correlation_id
            ):
                logger.debug("transport_event_dropped", task_run_id=ctx.run.id, kind=event.kind)
                return
            if isinstance(event, ChunkEvent):
                tracker.append_chunk(event.text)
                self._queue_event(
                    ctx, "agent_chunk", agent_id=assignment.agent_id, assignment_id=assignment.id, text=event.text
                )
            elif isinstance(event, (ToolCallEvent, ToolCallUpdateEvent)):
                record = tracker.upsert_tool_call(event.record)
                self._queue_event(
                    ctx,
                    "agent_tool_call",
                    agent_id=assignment.agent_id,
                    assignment_id=assignment.id,
                    tool_call=record.model_dump(mode="json"),
                    update=isinstance(event, ToolCallUpdateEvent),
                )
            elif isinstance(event, A2ACallEvent):
                a2a_record = tracker.upsert_a2a_call(event.record)
                self._queue_event(
                    ctx,
                    "agent_tool_call",
                    agent_id=assignment.agent_id,
                    assignment_id=assignment.id,
                    a2a_call=a2a_record.model_dump(mode="json"),
                )
            elif isinstance(event, PermissionRequestEvent):
                tracker.add_permission_request(event.request)
                self._queue_event(
                    ctx,
                    "permission_request",
                    agent_id=assignment.agent_id,
                    assignment_id=assignment.id,
                    request=event.request.model_dump(mode="json"),
                )
            elif isinstance(event, CompletedEvent):
                await self._finish_assignment(
                    ctx,
                    assignment,
                    AssignmentStatus.COMPLETED,
                    output=event.output or tracker.streamed_output,
                    tokens_in=event.tokens_in,
                    tokens_out=event.tokens_out,
                    cache_creation_tokens=event.cache_creation_tokens,
                    cache_read_tokens=event.cache_read_tokens,
                    duration_ms=event.duration_ms,
                    model=event.model,
                )
            elif isinstance(event, FailedEvent):
                logger.warning(
                    "assignment_failed",
                    task_run_id=ctx.run.id,
                    agent_id=assignment.agent_id,
                    error=event.error,
                )
                await self._finish_assignment(ctx, assignment, AssignmentStatus.FAILED, error_message=event.error)
        await self._flush(ctx)

    async def _finish_assignment(
        self,
        ctx: _RunContext,
        assignment: TaskAssignment,
        status: AssignmentStatus,
        *,
        output: str | None = None,
        error_message: str | None = None,
        tokens_in: int = 0,
        tokens_out: int = 0,
        cache_creation_tokens: int = 0,
        cache_read_tokens: int = 0,
        duration_ms: int | None = None,
        model: str | None = None,
        reschedule: bool = True,
    ) -> bool:
        if assignment.status.is_terminal:
            return False
        now = self._clock()
        if duration_ms is None:
            duration_ms = (
                max(0, int((now - assignment.started_at).total_seconds() * 1000)) if assignment.started_at else 0
            )
        assignment.status = status
        assignment.completed_at = now
        assignment.duration_ms = duration_ms
        assignment.output_text = output
        assignment.error_message = error_message
        assignment.tokens_in = tokens_in
        assignment.tokens_out = tokens_out
        assignment.cache_creation_tokens = cache_creation_tokens
        assignment.cache_read_tokens = cache_read_tokens
        if model:
            assignment.model_used = model
        ctx.trackers[assignment.id].finish(
            status,
            completed_at=now,
            output=output,
            error_message=error_message,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cache_creation_tokens=cache_creation_tokens,
            cache_read_tokens=cache_read_tokens,
            duration_ms=duration_ms,
        )
        await self._store.save_assignment(assignment)
        increment_assignment_event(agent=assignment.agent_id, event=status.value)
        if status in {AssignmentStatus.COMPLETED, AssignmentStatus.FAILED}:
            observe_agent_execution(
                agent=assignment.agent_id,
                duration_ms=duration_ms,
                tokens_in=tokens_in,
                tokens_out=tokens_out,
            )
        self._queue_event(
            ctx,
            "agent_completed",
            agent_id=assignment.agent_id,
            assignment_id=assignment.id,
            status=status.value,
            output=output,
            error_message=error_message,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cache_creation_tokens=cache_creation_tokens,
            cache_read_tokens=cache_read_tokens,
            duration_ms=duration_ms,
        )
        if reschedule:
            await self._schedule_eligible(ctx)
        return True

    async def _on_all_terminal(self, ctx: _RunContext) -> None:
        self._aggregate_totals(ctx)
        ordered = ctx.ordered()
        terminal = next((item for item in ordered if item.is_terminal_step), None)
        if terminal is not None and terminal.status is AssignmentStatus.FAILED:
            message = f"Final step {terminal.agent_name} failed: {terminal.error_message or 'unknown error'}"
            await self._fail_locked(ctx, compose_result_summary(message, ordered), error_type="terminal_step")
            return
        if ctx.requires_confirmation:
            await self._transition(ctx, TaskRunStatus.AWAITING_CONFIRMATION)
            self._queue_event(
                ctx,
                "awaiting_confirmation",
                assignments=[
                    {
                        "assignment_id": item.id,
                        "agent_id": item.agent_id,
                        "status": item.status.value,
                        "output": item.output_text,
                        "error_message": item.error_message,
                    }
                    for item in ordered
                ],
            )
            self._arm_confirmation_timer(ctx)
            return
        self._start_finalizer(ctx)

    def _start_finalizer(self, ctx: _RunContext) -> asyncio.Task[None]:
        ctx.finalizing = True
        ctx.finalizer = self._spawn(ctx, self._finalize(ctx))
        return ctx.finalizer

    async def _finalize(self, ctx: _RunContext) -> None:
        assignments = [assignment.model_copy(deep=True) for assignment in ctx.ordered()]
        try:
            summary = await self._summarize(ctx, assignments)
        except asyncio.CancelledError:
            ctx.finalizing = False
            ctx.finalizer = None
            raise
        async with ctx.lock:
            ctx.finalizer = None
            ctx.finalizing = False
            if ctx.run.status not in {TaskRunStatus.RUNNING, TaskRunStatus.AWAITING_CONFIRMATION}:
                return
            self._aggregate_totals(ctx)
            ctx.run.result_summary = compose_result_summary(summary, ctx.ordered())
            await self._transition(ctx, TaskRunStatus.COMPLETED)
            self._queue_event(
                ctx,
                "completed",
                result_summary=ctx.run.result_summary,
                total_tokens_in=ctx.run.total_tokens_in,
                total_tokens_out=ctx.run.total_tokens_out,
                total_duration_ms=ctx.run.total_duration_ms,
            )
            self._finish_run(ctx)
        await self._write_summary_file(ctx)
        await self._flush(ctx)

    async def _summarize(self, ctx: _RunContext, assignments: Sequence[TaskAssignment]) -> str:
        if self._settings.summarize_with_control_hub and ctx.control_hub is not None:
            try:
                return await self._planner.summarize(
                    user_prompt=ctx.run.user_prompt,
                    control_hub=ctx.control_hub,
                    assignments=assignments,
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("summary_generation_failed", task_run_id=ctx.run.id, error=str(exc))
        return local_digest(assignments)

    async def _write_summary_file(self, ctx: _RunContext) -> None:
        output_dir = self._settings.summary_output_dir
        if not output_dir:
            return
        try:
            path = await asyncio.to_thread(write_summary_file, output_dir, ctx.run, ctx.ordered())
        except OSError as exc:
            logger.warning("summary_file_write_failed", task_run_id=ctx.run.id, error=str(exc))
            return
        logger.info("summary_file_written", task_run_id=ctx.run.id, path=str(path))

    def _aggregate_totals(self, ctx: _RunContext) -> None:
        assignments = list(ctx.assignments.values())
        ctx.run.total_tokens_in = sum(item.tokens_in for item in assignments)
        ctx.run.total_tokens_out = sum(item.tokens_out for item in assignments)
        ctx.run.total_cache_creation_tokens = sum(item.cache_creation_tokens for item in assignments)
        ctx.run.total_cache_read_tokens = sum(item.cache_read_tokens for item in assignments)
        started = [item.started_at for item in assignments if item.started_at is not None]
        completed = [item.completed_at for item in assignments if item.completed_at is not None and item.started_at]
        if started and completed:
            ctx.run.total_duration_ms = max(0, int((max(completed) - min(started)).total_seconds() * 1000))
        else:
            ctx.run.total_duration_ms = 0

    # Failure and completion helpers ----------------------------------------------------

    async def _fail_run(self, ctx: _RunContext, message: str, *, error_type: str) -> None:
        async with ctx.lock:
            if ctx.run.status.is_terminal:
                return
            await self._fail_locked(ctx, message, error_type=error_type)
        await self._flush(ctx)

    async def _fail_locked(self, ctx: _RunContext, message: str, *, error_type: str) -> None:
        ctx.run.result_summary = message
        await self._transition(ctx, TaskRunStatus.FAILED)
        self._queue_event(ctx, "error", error=message, error_type=error_type)
        logger.warning("task_run_failed", task_run_id=ctx.run.id, error_type=error_type, error=message)
        self._finish_run(ctx)

    def _finish_run(self, ctx: _RunContext) -> None:
        ctx.finalizing = False
        ctx.finalizer = None
        self._cancel_confirmation_timer(ctx)
        current = asyncio.current_task()
        for task in list(ctx.background):
            if task is not current:
                task.cancel()
        if self._workspace_runs.get(ctx.run.workspace_id) == ctx.run.id:
            del self._workspace_runs[ctx.run.workspace_id]
        self._runs.pop(ctx.run.id, None)
        mark_task_run_finished(status=ctx.run.status.value, latency=time.monotonic() - ctx.started_monotonic)

    async def _cancel_detached(self, task_run_id: str) -> TaskRun:
        run = await self._load_run(task_run_id)
        if run.is_terminal:
            return run
        now = self._clock()
        assignments = await self._store.list_assignments(task_run_id)
        for assignment in assignments:
            if not assignment.status.is_terminal:
                assignment.status = AssignmentStatus.CANCELLED
                assignment.error_message = "Cancelled by user"
                assignment.completed_at = now
                await self._store.save_assignment(assignment)
        run.status = TaskRunStatus.CANCELLED
        run.result_summary = compose_result_summary("Task cancelled by user.", assignments)
        await self._store.save_task_run_state(run)
        logger.info("detached_task_run_cancelled", task_run_id=task_run_id)
        return run

    # Confirmation timer ---------------------------------------------------------------

    def _arm_confirmation_timer(self, ctx: _RunContext) -> None:
        timeout = self._settings.confirmation_timeout_seconds
        if timeout <= 0:
            return
        self._cancel_confirmation_timer(ctx)
        ctx.confirmation_timer = asyncio.create_task(self._confirm_after(ctx.run.id, timeout))

    def _cancel_confirmation_timer(self, ctx: _RunContext) -> None:
        timer = ctx.confirmation_timer
        ctx.confirmation_timer = None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def _confirm_after(self, task_run_id: str, timeout: float) -> None:
        await asyncio.sleep(timeout)
        logger.info("confirmation_timeout_elapsed", task_run_id=task_run_id, timeout=timeout)
        try:
            await self.confirm_results(task_run_id)
        except (InvalidTransitionError, TaskRunNotFoundError) as exc:
            logger.info("confirmation_timeout_ignored", task_run_id=task_run_id, reason=str(exc))

    # Recovery -------------------------------------------------------------------------

    async def _recover_run(
        self,
        run: TaskRun,
        agents: Sequence[AgentProfile],
        control_hub: AgentProfile | None,
    ) -> None:
        plan_flag = bool((run.task_plan or {}).get("requires_confirmation"))
        ctx = _RunContext(
            run=run,
            control_hub=control_hub,
            requires_confirmation=self._settings.require_confirmation or plan_flag,
        )
        ctx.agents = {agent.id: agent for agent in agents}
        async with self._start_lock:
            if run.workspace_id in self._workspace_runs:
                self._runs[run.id] = ctx
                mark_task_run_started()
                async with ctx.lock:
                    ctx.run.result_summary = "Interrupted by a restart while another run in the same workspace was active"
                    await self._transition(ctx, TaskRunStatus.CANCELLED)
                    self._queue_event(ctx, "cancelled", result_summary=ctx.run.result_summary)
                    self._finish_run(ctx)
                await self._flush(ctx)
                return
            self._register(ctx)

        assignments = await self._store.list_assignments(run.id)
        async with ctx.lock:
            self._install_assignments(ctx, assignments)
            logger.info("task_run_recovering", task_run_id=run.id, status=run.status.value)
            if run.status in {TaskRunStatus.PENDING, TaskRunStatus.ANALYZING} and not assignments:
                if run.status is TaskRunStatus.PENDING:
                    await self._transition(ctx, TaskRunStatus.ANALYZING)
                self._spawn(ctx, self._acquire_plan(ctx))
            elif run.status is TaskRunStatus.AWAITING_CONFIRMATION:
                self._arm_confirmation_timer(ctx)
            else:
                if run.status is TaskRunStatus.PENDING:
                    await self._transition(ctx, TaskRunStatus.ANALYZING)
                if ctx.run.status is TaskRunStatus.ANALYZING:
                    await self._transition(ctx, TaskRunStatus.RUNNING)
                for assignment in ctx.ordered():
                    if assignment.status is AssignmentStatus.RUNNING:
                        assignment.reset()
                        ctx.trackers[assignment.id].reset()
                        await self._store.save_assignment(assignment)
                await self._schedule_eligible(ctx)
        await self._flush(ctx)

    # Internals ------------------------------------------------------------------------

    def _register(self, ctx: _RunContext) -> None:
        self._runs[ctx.run.id] = ctx
        self._workspace_runs[ctx.run.workspace_id] = ctx.run.id
        mark_task_run_started()

    def _spawn(self, ctx: _RunContext, coroutine: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        with bind_task_run(ctx.run.id):
            task = asyncio.create_task(coroutine)
        ctx.background.add(task)
        task.add_done_callback(ctx.background.discard)
        return task

    async def _transition(self, ctx: _RunContext, target: TaskRunStatus) -> None:
        current = ctx.run.status
        if not can_transition(current, target):
            raise InvalidTransitionError(ctx.run.id, current.value, target.value)
        ctx.run.status = target
        ctx.run.updated_at = self._clock()
        await self._store.save_task_run_state(ctx.run)
        if target in _SETTLED_STATUSES:
            logger.info("task_run_status_changed", task_run_id=ctx.run.id, previous=current.value, status=target.value)
        else:
            logger.debug("task_run_status_changed", task_run_id=ctx.run.id, previous=current.value, status=target.value)

    def _queue_event(
        self,
        ctx: _RunContext,
        kind: str,
        *,
        agent_id: str | None = None,
        assignment_id: str | None = None,
        **payload: Any,
    ) -> None:
        ctx.sequence += 1
        ctx.outbox.append(
            OrchestrationEvent(
                kind=kind,  # type: ignore[arg-type]
                task_run_id=ctx.run.id,
                sequence=ctx.sequence,
                agent_id=agent_id,
                assignment_id=assignment_id,
                payload=payload,
                created_at=self._clock(),
            )
        )

    async def _flush(self, ctx: _RunContext) -> None:
        """Hand queued events to the run's publisher without waiting for delivery."""
        if ctx.publisher is not None:
            return
        if not ctx.outbox:
            self._mark_settled(ctx)
            return
        publisher = asyncio.create_task(self._publish_outbox(ctx))
        ctx.publisher = publisher
        self._publishers[ctx.run.id] = publisher
        publisher.add_done_callback(lambda task, run_id=ctx.run.id: self._forget_publisher(run_id, task))

    async def _publish_outbox(self, ctx: _RunContext) -> None:
        try:
            while ctx.outbox:
                await self._events.publish(ctx.outbox.popleft())
        finally:
            ctx.publisher = None
        self._mark_settled(ctx)

    def _forget_publisher(self, task_run_id: str, task: asyncio.Task[None]) -> None:
        if self._publishers.get(task_run_id) is task:
            del self._publishers[task_run_id]

    def _mark_settled(self, ctx: _RunContext) -> None:
        if ctx.run.status in _SETTLED_STATUSES and not ctx.finalizing:
            ctx.settled.set()

    async def _signal_transport_cancel(self, correlation_id: str | None) -> None:
        if not correlation_id:
            return
        try:
            await self._transport.cancel(correlation_id)
        except Exception as exc:
            logger.warning("transport_cancel_failed", correlation_id=correlation_id, error=str(exc))

    def _require_context(self, task_run_id: str) -> _RunContext:
        ctx = self._runs.get(task_run_id)
        if ctx is None:
            raise TaskRunNotFoundError(task_run_id)
        return ctx

    async def _load_run(self, task_run_id: str) -> TaskRun:
        run = await self._store.get_task_run(task_run_id)
        if run is None:
            raise TaskRunNotFoundError(task_run_id)
        return run

    def _running_assignment(self, ctx: _RunContext, agent_id: str) -> TaskAssignment:
        for assignment in ctx.ordered():
            if assignment.agent_id == agent_id and assignment.status is AssignmentStatus.RUNNING:
                return assignment
        raise AssignmentNotFoundError(ctx.run.id, agent_id)

    def _running_count(self, ctx: _RunContext, agent_id: str) -> int:
        return sum(
            1
            for assignment in ctx.assignments.values()
            if assignment.agent_id == agent_id and assignment.status is AssignmentStatus.RUNNING
        )

    def _concurrency_limit(self, ctx: _RunContext, agent_id: str) -> int:
        agent = ctx.agents.get(agent_id)
        return agent.max_concurrency if agent is not None else 1

    def _unusable_reason(self, ctx: _RunContext, agent_id: str) -> str | None:
        agent = ctx.agents.get(agent_id)
        if agent is None:
            return f"Agent ID '{agent_id}' not found in registered agents"
        if not agent.is_enabled:
            return f"Agent '{agent.name}' is disabled"
        return None


__all__ = ["Orchestrator", "REGENERATE_ALL", "RunSnapshot", "resolve_dependencies"]
