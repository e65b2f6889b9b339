from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from .enums import AssignmentStatus
from .events import A2ACallRecord, PermissionRequest, ToolCallRecord
from .state import TaskAssignment


class AgentTrackingInfo(BaseModel):
    """Read-only view of one assignment's live execution state."""

    model_config = ConfigDict(frozen=True)

    assignment_id: str
    agent_id: str
    agent_name: str
    sequence_order: int
    status: AssignmentStatus
    model: str | None = None
    correlation_id: str | None = None
    streamed_output: str = ""
    output: str | None = None
    error_message: str | None = None
    tokens_in: int = 0
    tokens_out: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    duration_ms: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    tool_calls: list[ToolCallRecord] = Field(default_factory=list)
    a2a_calls: list[A2ACallRecord] = Field(default_factory=list)
    pending_permissions: list[PermissionRequest] = Field(default_factory=list)


@dataclass(slots=True)
class AgentExecutionTracker:
    """Bookkeeping for one assignment while its task run is live."""

    assignment_id: str
    agent_id: str
    agent_name: str
    sequence_order: int
    status: AssignmentStatus = AssignmentStatus.PENDING
    model: str | None = None
    correlation_id: str | None = None
    chunks: list[str] = field(default_factory=list)
    output: str | None = None
    error_message: str | None = None
    tokens_in: int = 0
    tokens_out: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    duration_ms: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    tool_calls: dict[str, ToolCallRecord] = field(default_factory=dict)
    a2a_calls: dict[str, A2ACallRecord] = field(default_factory=dict)
    permissions: dict[str, PermissionRequest] = field(default_factory=dict)

    @classmethod
    def for_assignment(cls, assignment: TaskAssignment) -> "AgentExecutionTracker":
        tracker = cls(
            assignment_id=assignment.id,
            agent_id=assignment.agent_id,
            agent_name=assignment.agent_name,
            sequence_order=assignment.sequence_order,
        )
        tracker.sync(assignment)
        return tracker

    def sync(self, assignment: TaskAssignment) -> None:
        """Mirror persisted fields, used when a run is reloaded."""
        self.status = assignment.status
        self.model = assignment.model_used
        self.started_at = assignment.started_at
        self.completed_at = assignment.completed_at
        if assignment.status.is_terminal:
            self.output = assignment.output_text
            self.error_message = assignment.error_message
            self.tokens_in = assignment.tokens_in
            self.tokens_out = assignment.tokens_out
            self.cache_creation_tokens = assignment.cache_creation_tokens
            self.cache_read_tokens = assignment.cache_read_tokens
            self.duration_ms = assignment.duration_ms

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def streamed_output(self) -> str:
        return "".join(self.chunks)

    def start(self, *, correlation_id: str, model: str | None, started_at: datetime) -> None:
        self.status = AssignmentStatus.RUNNING
        self.correlation_id = correlation_id
        self.model = model
        self.started_at = started_at

    def append_chunk(self, text: str) -> None:
        if text:
            self.chunks.append(text)

    def upsert_tool_call(self, record: ToolCallRecord) -> ToolCallRecord:
        existing = self.tool_calls.get(record.id)
        if existing is None:
            self.tool_calls[record.id] = record
            return record
        updates = {key: value for key, value in record.model_dump(exclude_unset=True).items() if value is not None}
        merged = existing.model_copy(update=updates)
        self.tool_calls[record.id] = merged
        return merged

    def upsert_a2a_call(self, record: A2ACallRecord) -> A2ACallRecord:
        existing = self.a2a_calls.get(record.id)
        if existing is None:
            self.a2a_calls[record.id] = record
            return record
        updates = {key: value for key, value in record.model_dump(exclude_unset=True).items() if value is not None}
        merged = existing.model_copy(update=updates)
        self.a2a_calls[record.id] = merged
        return merged

    def add_permission_request(self, request: PermissionRequest) -> None:
        self.permissions[request.request_id] = request

    def resolve_permission(self, request_id: str) -> PermissionRequest | None:
        return self.permissions.pop(request_id, None)

    def finish(
        self,
        status: AssignmentStatus,
        *,
        completed_at: datetime,
        output: str | None = None,
        error_message: str | None = None,
        tokens_in: int = 0,
        tokens_out: int = 0,
        cache_creation_tokens: int = 0,
        cache_read_tokens: int = 0,
        duration_ms: int = 0,
    ) -> bool:
        """Record terminal metrics once. Returns False when already terminal."""
        if self.is_terminal:
            return False
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal assignment status")
        self.status = status
        self.completed_at = completed_at
        self.output = output
        self.error_message = error_message
        self.tokens_in = tokens_in
        self.tokens_out = tokens_out
        self.cache_creation_tokens = cache_creation_tokens
        self.cache_read_tokens = cache_read_tokens
        self.duration_ms = duration_ms
        self.permissions.clear()
        return True

    def reset(self) -> None:
        self.status = AssignmentStatus.PENDING
        self.correlation_id = None
        self.chunks.clear()
        self.output = None
        self.error_message = None
        self.tokens_in = self.tokens_out = 0
        self.cache_creation_tokens = self.cache_read_tokens = 0
        self.duration_ms = 0
        self.started_at = None
        self.completed_at = None
        self.tool_calls.clear()
        self.a2a_calls.clear()
        self.permissions.clear()

    def snapshot(self) -> AgentTrackingInfo:
        return AgentTrackingInfo(
            assignment_id=self.assignment_id,
            agent_id=self.agent_id,
            agent_name=self.agent_name,
            sequence_order=self.sequence_order,
            status=self.status,
            model=self.model,
            correlation_id=self.correlation_id,
            streamed_output=self.streamed_output,
            output=self.output,
            error_message=self.error_message,
            tokens_in=self.tokens_in,
            tokens_out=self.tokens_out,
            cache_creation_tokens=self.cache_creation_tokens,
            cache_read_tokens=self.cache_read_tokens,
            duration_ms=self.duration_ms,
            started_at=self.started_at,
            completed_at=self.completed_at,
            tool_calls=list(self.tool_calls.values()),
            a2a_calls=list(self.a2a_calls.values()),
            pending_permissions=list(self.permissions.values()),
        )


__all__ = ["AgentExecutionTracker", "AgentTrackingInfo"]
