from __future__ import annotations


class ConductorError(RuntimeError):
    """Base class for orchestration failures surfaced to callers."""


class ConfigurationError(ConductorError):
    """Raised when the agent setup cannot support a task run."""


class PlanCycleError(ConductorError):
    def __init__(self, description: str, *, agent_ids: list[str] | None = None) -> None:
        super().__init__(description)
        self.description = description
        self.agent_ids = list(agent_ids or [])


class PlanParseError(ConductorError):
    """Raised when the control hub response does not contain a usable plan."""


class AgentCallFailure(ConductorError):
    """Raised when a delegated agent call ends in a failure event or raises."""


class InvalidTransitionError(ConductorError):
    def __init__(self, task_run_id: str, current: str, target: str) -> None:
        super().__init__(f"Task run {task_run_id} cannot move from '{current}' to '{target}'")
        self.task_run_id = task_run_id
        self.current = current
        self.target = target


class TaskRunNotFoundError(ConductorError):
    def __init__(self, task_run_id: str) -> None:
        super().__init__(f"Task run '{task_run_id}' not found")
        self.task_run_id = task_run_id


class AssignmentNotFoundError(ConductorError):
    def __init__(self, task_run_id: str, agent_id: str) -> None:
        super().__init__(f"No assignment for agent '{agent_id}' in task run '{task_run_id}'")
        self.task_run_id = task_run_id
        self.agent_id = agent_id


class OrchestrationInProgressError(ConductorError):
    def __init__(self, workspace_id: str | None, active_task_run_id: str) -> None:
        scope = workspace_id or "default"
        super().__init__(f"Workspace '{scope}' already has task run {active_task_run_id} in flight")
        self.workspace_id = workspace_id
        self.active_task_run_id = active_task_run_id


class ScheduleError(ConductorError):
    """Raised for schedule requests that cannot be applied."""


__all__ = [
    "AgentCallFailure",
    "AssignmentNotFoundError",
    "ConductorError",
    "ConfigurationError",
    "InvalidTransitionError",
    "OrchestrationInProgressError",
    "PlanCycleError",
    "PlanParseError",
    "ScheduleError",
    "TaskRunNotFoundError",
]
