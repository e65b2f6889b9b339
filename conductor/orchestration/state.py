from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .enums import AssignmentStatus, Frequency, ScheduleType, TaskRunStatus

_TIME_PATTERN = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class RecurrencePattern(BaseModel):
    """Calendar rule for recurring task runs.

    ``days_of_week`` uses 0 for Sunday through 6 for Saturday.
    """

    model_config = ConfigDict(frozen=True)

    frequency: Frequency
    time: str = Field("09:00", description="Time of day in 24h HH:MM, interpreted in UTC.")
    interval: int = Field(1, ge=1)
    days_of_week: tuple[int, ...] = Field(default_factory=tuple)
    day_of_month: int | None = Field(None, ge=1, le=31)
    month: int | None = Field(None, ge=1, le=12)

    @field_validator("time")
    @classmethod
    def _validate_time(cls, value: str) -> str:
        match = _TIME_PATTERN.match(value.strip())
        if match is None:
            raise ValueError("time must use HH:MM")
        return f"{int(match.group(1)):02d}:{match.group(2)}"

    @field_validator("days_of_week")
    @classmethod
    def _validate_days(cls, value: tuple[int, ...]) -> tuple[int, ...]:
        for day in value:
            if day < 0 or day > 6:
                raise ValueError("days_of_week entries must be between 0 (Sunday) and 6 (Saturday)")
        return tuple(sorted(set(value)))

    @model_validator(mode="after")
    def _validate_frequency_fields(self) -> "RecurrencePattern":
        if self.frequency is Frequency.WEEKLY and not self.days_of_week:
            raise ValueError("weekly recurrence requires at least one day in days_of_week")
        return self

    @property
    def hour(self) -> int:
        return int(self.time.split(":", 1)[0])

    @property
    def minute(self) -> int:
        return int(self.time.split(":", 1)[1])


class TaskRun(BaseModel):
    id: str = Field(default_factory=new_id)
    title: str
    user_prompt: str
    control_hub_agent_id: str | None = None
    workspace_id: str | None = None
    source_task_run_id: str | None = None
    status: TaskRunStatus = TaskRunStatus.PENDING
    task_plan: dict[str, Any] | None = None
    result_summary: str | None = None
    total_tokens_in: int = 0
    total_tokens_out: int = 0
    total_cache_creation_tokens: int = 0
    total_cache_read_tokens: int = 0
    total_duration_ms: int = 0
    rating: int | None = Field(None, ge=1, le=5)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    schedule_type: ScheduleType = ScheduleType.NONE
    scheduled_time: datetime | None = None
    recurrence_pattern: RecurrencePattern | None = None
    next_run_at: datetime | None = None
    is_paused: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class TaskAssignment(BaseModel):
    id: str = Field(default_factory=new_id)
    task_run_id: str
    agent_id: str
    agent_name: str
    sequence_order: int
    depends_on: list[str] = Field(default_factory=list)
    matched_skills: list[str] = Field(default_factory=list)
    selection_reason: str | None = None
    is_terminal_step: bool = False
    task_description: str = ""
    input_text: str = ""
    output_text: str | None = None
    status: AssignmentStatus = AssignmentStatus.PENDING
    model_used: str | None = None
    tokens_in: int = 0
    tokens_out: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int = 0
    error_message: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    def reset(self) -> None:
        self.status = AssignmentStatus.PENDING
        self.input_text = ""
        self.output_text = None
        self.model_used = None
        self.tokens_in = 0
        self.tokens_out = 0
        self.cache_creation_tokens = 0
        self.cache_read_tokens = 0
        self.started_at = None
        self.completed_at = None
        self.duration_ms = 0
        self.error_message = None


def new_task_run(
    user_prompt: str,
    *,
    title: str | None = None,
    control_hub_agent_id: str | None = None,
    workspace_id: str | None = None,
    source_task_run_id: str | None = None,
    title_max_length: int = 100,
) -> TaskRun:
    prompt = user_prompt.strip()
    resolved_title = (title or "").strip() or _derive_title(prompt, title_max_length)
    return TaskRun(
        title=resolved_title,
        user_prompt=prompt,
        control_hub_agent_id=control_hub_agent_id,
        workspace_id=workspace_id,
        source_task_run_id=source_task_run_id,
    )


def _derive_title(prompt: str, limit: int) -> str:
    first_line = prompt.splitlines()[0] if prompt else ""
    if len(first_line) <= limit:
        return first_line
    return first_line[: limit - 3].rstrip() + "..."


__all__ = [
    "RecurrencePattern",
    "TaskAssignment",
    "TaskRun",
    "new_id",
    "new_task_run",
    "utcnow",
]
