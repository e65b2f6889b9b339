from __future__ import annotations

from enum import Enum


class TaskRunStatus(str, Enum):
    PENDING = "pending"
    ANALYZING = "analyzing"
    RUNNING = "running"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_STATUSES


class AssignmentStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in {AssignmentStatus.PENDING, AssignmentStatus.RUNNING}


class ScheduleType(str, Enum):
    NONE = "none"
    ONCE = "once"
    RECURRING = "recurring"


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


TERMINAL_RUN_STATUSES = frozenset(
    {TaskRunStatus.COMPLETED, TaskRunStatus.FAILED, TaskRunStatus.CANCELLED}
)

ALLOWED_RUN_TRANSITIONS: dict[TaskRunStatus, frozenset[TaskRunStatus]] = {
    TaskRunStatus.PENDING: frozenset({TaskRunStatus.ANALYZING, TaskRunStatus.FAILED, TaskRunStatus.CANCELLED}),
    TaskRunStatus.ANALYZING: frozenset({TaskRunStatus.RUNNING, TaskRunStatus.FAILED, TaskRunStatus.CANCELLED}),
    TaskRunStatus.RUNNING: frozenset(
        {
            TaskRunStatus.AWAITING_CONFIRMATION,
            TaskRunStatus.COMPLETED,
            TaskRunStatus.FAILED,
            TaskRunStatus.CANCELLED,
        }
    ),
    TaskRunStatus.AWAITING_CONFIRMATION: frozenset(
        {TaskRunStatus.RUNNING, TaskRunStatus.COMPLETED, TaskRunStatus.CANCELLED}
    ),
    TaskRunStatus.COMPLETED: frozenset(),
    TaskRunStatus.FAILED: frozenset(),
    TaskRunStatus.CANCELLED: frozenset(),
}


def can_transition(current: TaskRunStatus, target: TaskRunStatus) -> bool:
    return target in ALLOWED_RUN_TRANSITIONS[current]


__all__ = [
    "ALLOWED_RUN_TRANSITIONS",
    "AssignmentStatus",
    "Frequency",
    "ScheduleType",
    "TERMINAL_RUN_STATUSES",
    "TaskRunStatus",
    "can_transition",
]
