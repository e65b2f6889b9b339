"""Typed events crossing the orchestration boundaries.

Inbound events arrive from the agent-call transport and are validated into
a closed union keyed by ``kind``. Outbound events describe task run
transitions for observers. Observers may see duplicates and should
reconcile on ``(task_run_id, sequence)``.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated, Any, Awaitable, Callable, Literal, Mapping, Union

import httpx
from pydantic import BaseModel, Field, TypeAdapter

from ..core.config import ObservabilitySettings
from ..core.logging import get_logger
from ..core.metrics import increment_event_delivery_failure
from .state import utcnow

logger = get_logger(name=__name__)


class ToolCallRecord(BaseModel):
    id: str = Field(min_length=1)
    name: str | None = None
    status: str | None = None
    raw_input: Any = None
    raw_output: Any = None


class A2ACallRecord(BaseModel):
    id: str = Field(min_length=1)
    target_agent_id: str
    prompt: str = ""
    status: str = "pending"
    result: str | None = None


class PermissionOption(BaseModel):
    id: str = Field(min_length=1)
    label: str = ""
    kind: str | None = None


class PermissionRequest(BaseModel):
    request_id: str = Field(min_length=1)
    title: str = ""
    description: str | None = None
    tool_call_id: str | None = None
    options: list[PermissionOption] = Field(default_factory=list)


class ChunkEvent(BaseModel):
    kind: Literal["chunk"] = "chunk"
    text: str


class ToolCallEvent(BaseModel):
    kind: Literal["tool_call"] = "tool_call"
    record: ToolCallRecord


class ToolCallUpdateEvent(BaseModel):
    kind: Literal["tool_call_update"] = "tool_call_update"
    record: ToolCallRecord


class A2ACallEvent(BaseModel):
    kind: Literal["a2a_call"] = "a2a_call"
    record: A2ACallRecord


class PermissionRequestEvent(BaseModel):
    kind: Literal["permission_request"] = "permission_request"
    request: PermissionRequest


class CompletedEvent(BaseModel):
    kind: Literal["completed"] = "completed"
    output: str = ""
    tokens_in: int = Field(0, ge=0)
    tokens_out: int = Field(0, ge=0)
    cache_creation_tokens: int = Field(0, ge=0)
    cache_read_tokens: int = Field(0, ge=0)
    duration_ms: int | None = Field(None, ge=0)
    model: str | None = None


class FailedEvent(BaseModel):
    kind: Literal["failed"] = "failed"
    error: str = Field(min_length=1)


TransportEvent = Annotated[
    Union[
        ChunkEvent,
        ToolCallEvent,
        ToolCallUpdateEvent,
        A2ACallEvent,
        PermissionRequestEvent,
        CompletedEvent,
        FailedEvent,
    ],
    Field(discriminator="kind"),
]

TERMINAL_TRANSPORT_KINDS = frozenset({"completed", "failed"})

_transport_adapter: TypeAdapter[TransportEvent] = TypeAdapter(TransportEvent)


def parse_transport_event(payload: Mapping[str, Any] | BaseModel) -> TransportEvent:
    """Validate a raw transport payload into its typed event.

    Raises ``pydantic.ValidationError`` for unknown kinds or missing fields.
    """
    if isinstance(
        payload,
        (ChunkEvent, ToolCallEvent, ToolCallUpdateEvent, A2ACallEvent, PermissionRequestEvent, CompletedEvent, FailedEvent),
    ):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump()
    return _transport_adapter.validate_python(dict(payload))


OrchestrationEventKind = Literal[
    "started",
    "plan_ready",
    "plan_validated",
    "agent_started",
    "agent_chunk",
    "agent_tool_call",
    "agent_completed",
    "awaiting_confirmation",
    "permission_request",
    "completed",
    "cancelled",
    "error",
]


class OrchestrationEvent(BaseModel):
    kind: OrchestrationEventKind
    task_run_id: str
    sequence: int = Field(ge=0)
    agent_id: str | None = None
    assignment_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


Subscriber = Callable[[OrchestrationEvent], Awaitable[None]]


class EventBus:
    """Fan-out of orchestration events to in-process subscribers and an optional webhook."""

    def __init__(self, settings: ObservabilitySettings | None = None) -> None:
        self._subscribers: set[Subscriber] = set()
        self._webhook_url = settings.event_webhook_url if settings else None
        self._http_timeout = settings.event_webhook_timeout_seconds if settings else 5.0
        self._listener_queue_size = settings.event_listener_queue_size if settings else 1000

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.add(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.discard(subscriber)

    async def publish(self, event: OrchestrationEvent) -> None:
        tasks: list[Awaitable[object]] = [self._safe_invoke(subscriber, event) for subscriber in list(self._subscribers)]
        if self._webhook_url:
            tasks.append(self._post_webhook(event.to_payload()))
        if not tasks:
            return
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.warning("event_delivery_error", kind=event.kind, error=str(result))

    @asynccontextmanager
    async def listen(self, task_run_id: str | None = None) -> AsyncIterator[AsyncIterator[OrchestrationEvent]]:
        """Yield an async iterator over events, optionally filtered to one task run.

        The buffer is bounded. A listener that falls behind is unsubscribed and its
        iterator ends once the buffered events are drained.
        """
        queue: asyncio.Queue[OrchestrationEvent] = asyncio.Queue(maxsize=self._listener_queue_size)
        overflowed = False

        async def _enqueue(event: OrchestrationEvent) -> None:
            nonlocal overflowed
            if overflowed or (task_run_id is not None and event.task_run_id != task_run_id):
                return
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                overflowed = True
                self.unsubscribe(_enqueue)
                increment_event_delivery_failure(target="listener")
                logger.warning(
                    "event_listener_overflow",
                    task_run_id=task_run_id,
                    buffered=queue.qsize(),
                    dropped_sequence=event.sequence,
                )

        async def _iterate() -> AsyncIterator[OrchestrationEvent]:
            while not (overflowed and queue.empty()):
                yield await queue.get()

        self.subscribe(_enqueue)
        try:
            yield _iterate()
        finally:
            self.unsubscribe(_enqueue)

    async def _safe_invoke(self, subscriber: Subscriber, event: OrchestrationEvent) -> None:
        try:
            await subscriber(event)
        except Exception as exc:  # pragma: no cover - subscriber error logging
            increment_event_delivery_failure(target="subscriber")
            logger.warning(
                "event_subscriber_failed",
                subscriber=getattr(subscriber, "__qualname__", repr(subscriber)),
                error=str(exc),
            )

    async def _post_webhook(self, payload: dict[str, Any]) -> None:
        try:
            async with httpx.AsyncClient(timeout=self._http_timeout) as client:
                response = await client.post(
                    self._webhook_url,
                    content=json.dumps(payload),
                    headers={"Content-Type": "application/json"},
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            increment_event_delivery_failure(target="webhook")
            logger.warning("event_webhook_failed", url=self._webhook_url, error=str(exc))


async def log_event(event: OrchestrationEvent) -> None:
    if event.kind == "agent_chunk":
        return
    logger.info(
        "orchestration_event",
        kind=event.kind,
        task_run_id=event.task_run_id,
        sequence=event.sequence,
        agent_id=event.agent_id,
    )


__all__ = [
    "A2ACallEvent",
    "A2ACallRecord",
    "ChunkEvent",
    "CompletedEvent",
    "EventBus",
    "FailedEvent",
    "OrchestrationEvent",
    "OrchestrationEventKind",
    "PermissionOption",
    "PermissionRequest",
    "PermissionRequestEvent",
    "TERMINAL_TRANSPORT_KINDS",
    "ToolCallEvent",
    "ToolCallRecord",
    "ToolCallUpdateEvent",
    "TransportEvent",
    "log_event",
    "parse_transport_event",
]
