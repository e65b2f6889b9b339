from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from ..orchestration.enums import ScheduleType
from ..orchestration.orchestrator import RunSnapshot
from ..orchestration.state import RecurrencePattern, TaskAssignment, TaskRun
from ..orchestration.tracker import AgentTrackingInfo


class TaskRunCreate(BaseModel):
    prompt: str = Field(min_length=1)
    title: str | None = Field(default=None, max_length=255)
    workspace_id: str | None = Field(default=None, min_length=1)
    require_confirmation: bool | None = None


class TaskRunModel(BaseModel):
    id: str
    title: str
    user_prompt: str
    control_hub_agent_id: str | None
    workspace_id: str | None
    source_task_run_id: str | None
    status: str
    result_summary: str | None
    total_tokens_in: int
    total_tokens_out: int
    total_cache_creation_tokens: int
    total_cache_read_tokens: int
    total_duration_ms: int
    rating: int | None
    created_at: datetime
    updated_at: datetime
    schedule_type: str
    scheduled_time: datetime | None
    recurrence_pattern: RecurrencePattern | None
    next_run_at: datetime | None
    is_paused: bool
    is_active: bool = False

    @classmethod
    def from_domain(cls, run: TaskRun, *, is_active: bool = False) -> "TaskRunModel":
        return cls(
            id=run.id,
            title=run.title,
            user_prompt=run.user_prompt,
            control_hub_agent_id=run.control_hub_agent_id,
            workspace_id=run.workspace_id,
            source_task_run_id=run.source_task_run_id,
            status=run.status.value,
            result_summary=run.result_summary,
            total_tokens_in=run.total_tokens_in,
            total_tokens_out=run.total_tokens_out,
            total_cache_creation_tokens=run.total_cache_creation_tokens,
            total_cache_read_tokens=run.total_cache_read_tokens,
            total_duration_ms=run.total_duration_ms,
            rating=run.rating,
            created_at=run.created_at,
            updated_at=run.updated_at,
            schedule_type=run.schedule_type.value,
            scheduled_time=run.scheduled_time,
            recurrence_pattern=run.recurrence_pattern,
            next_run_at=run.next_run_at,
            is_paused=run.is_paused,
            is_active=is_active,
        )


class TaskAssignmentModel(BaseModel):
    id: str
    agent_id: str
    agent_name: str
    sequence_order: int
    depends_on: list[str]
    matched_skills: list[str]
    selection_reason: str | None
    is_terminal_step: bool
    task_description: str
    output_text: str | None
    status: str
    model_used: str | None
    tokens_in: int
    tokens_out: int
    cache_creation_tokens: int
    cache_read_tokens: int
    started_at: datetime | None
    completed_at: datetime | None
    duration_ms: int
    error_message: str | None

    @classmethod
    def from_domain(cls, assignment: TaskAssignment) -> "TaskAssignmentModel":
        return cls(
            id=assignment.id,
            agent_id=assignment.agent_id,
            agent_name=assignment.agent_name,
            sequence_order=assignment.sequence_order,
            depends_on=list(assignment.depends_on),
            matched_skills=list(assignment.matched_skills),
            selection_reason=assignment.selection_reason,
            is_terminal_step=assignment.is_terminal_step,
            task_description=assignment.task_description,
            output_text=assignment.output_text,
            status=assignment.status.value,
            model_used=assignment.model_used,
            tokens_in=assignment.tokens_in,
            tokens_out=assignment.tokens_out,
            cache_creation_tokens=assignment.cache_creation_tokens,
            cache_read_tokens=assignment.cache_read_tokens,
            started_at=assignment.started_at,
            completed_at=assignment.completed_at,
            duration_ms=assignment.duration_ms,
            error_message=assignment.error_message,
        )


class TaskRunDetail(TaskRunModel):
    task_plan: dict[str, Any] | None = None
    assignments: list[TaskAssignmentModel] = Field(default_factory=list)


class TaskRunSnapshotModel(BaseModel):
    task_run: TaskRunModel
    assignments: list[TaskAssignmentModel]
    trackers: list[AgentTrackingInfo]

    @classmethod
    def from_domain(cls, snapshot: RunSnapshot) -> "TaskRunSnapshotModel":
        return cls(
            task_run=TaskRunModel.from_domain(snapshot.task_run, is_active=snapshot.is_active),
            assignments=[TaskAssignmentModel.from_domain(item) for item in snapshot.assignments],
            trackers=list(snapshot.trackers),
        )


class PermissionResponseRequest(BaseModel):
    request_id: str = Field(min_length=1)
    option_id: str = Field(min_length=1)


class RatingRequest(BaseModel):
    rating: int | None = Field(default=None, ge=1, le=5)


class ScheduleRequest(BaseModel):
    schedule_type: ScheduleType
    scheduled_time: datetime | None = None
    recurrence_pattern: dict[str, Any] | None = None


class SchedulePreviewRequest(BaseModel):
    recurrence_pattern: dict[str, Any]
    count: int = Field(default=1, ge=1, le=50)
    after: datetime | None = None


class SchedulePreviewResponse(BaseModel):
    occurrences: list[datetime]


class ActionResponse(BaseModel):
    status: Literal["ok"] = "ok"
    detail: str | None = None
