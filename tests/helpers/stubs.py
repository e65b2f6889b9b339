from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Sequence

from conductor.orchestration.agents import AgentProfile, AgentSkill, InMemoryAgentRegistry
from conductor.orchestration.events import OrchestrationEvent
from conductor.orchestration.plan import PlannedAssignment, TaskPlan
from conductor.orchestration.state import TaskAssignment


@dataclass
class AgentScript:
    """Canned behaviour for one agent: events, an optional gate, then completion or failure."""

    chunks: list[str] = field(default_factory=list)
    events: list[dict[str, Any]] = field(default_factory=list)
    output: str = "done"
    error: str | None = None
    tokens_in: int = 10
    tokens_out: int = 20
    gate: asyncio.Event | None = None
    raise_error: Exception | None = None


class ScriptedTransport:
    """Agent transport replaying scripts keyed by agent id."""

    def __init__(
        self,
        scripts: Mapping[str, AgentScript] | None = None,
        *,
        hub_responses: Sequence[str | dict[str, Any] | Exception] = (),
    ) -> None:
        self.scripts: dict[str, AgentScript] = dict(scripts or {})
        self.hub_responses = list(hub_responses)
        self.invocations: list[tuple[str, str, str]] = []
        self.cancelled: list[str] = []
        self.permission_responses: list[tuple[str, str, str]] = []
        self.started: dict[str, asyncio.Event] = defaultdict(asyncio.Event)

    def inputs_for(self, agent_id: str) -> list[str]:
        return [text for agent, text, _ in self.invocations if agent == agent_id]

    async def invoke(
        self,
        agent: AgentProfile,
        input_text: str,
        *,
        correlation_id: str,
    ) -> AsyncIterator[dict[str, Any]]:
        self.invocations.append((agent.id, input_text, correlation_id))
        self.started[agent.id].set()
        if agent.is_control_hub and self.hub_responses:
            response = self.hub_responses.pop(0)
            if isinstance(response, Exception):
                raise response
            yield response if isinstance(response, dict) else {"kind": "completed", "output": response}
            return
        script = self.scripts.get(agent.id, AgentScript())
        for text in script.chunks:
            yield {"kind": "chunk", "text": text}
        for event in script.events:
            yield dict(event)
        if script.gate is not None:
            await script.gate.wait()
        if script.raise_error is not None:
            raise script.raise_error
        if script.error is not None:
            yield {"kind": "failed", "error": script.error}
            return
        yield {
            "kind": "completed",
            "output": script.output,
            "tokens_in": script.tokens_in,
            "tokens_out": script.tokens_out,
            "model": agent.model,
        }

    async def cancel(self, correlation_id: str) -> None:
        self.cancelled.append(correlation_id)

    async def respond_permission(self, correlation_id: str, request_id: str, option_id: str) -> None:
        self.permission_responses.append((correlation_id, request_id, option_id))


class StaticPlanProvider:
    """Plan provider returning a fixed plan and summary."""

    def __init__(
        self,
        plan: TaskPlan | None = None,
        *,
        summary: str = "All agents finished.",
        plan_error: Exception | None = None,
        summary_error: Exception | None = None,
        gate: asyncio.Event | None = None,
        summary_gate: asyncio.Event | None = None,
    ) -> None:
        self.plan = plan or TaskPlan(analysis="empty")
        self.summary = summary
        self.plan_error = plan_error
        self.summary_error = summary_error
        self.gate = gate
        self.summary_gate = summary_gate
        self.plan_calls = 0
        self.summary_calls = 0

    async def create_plan(self, *, user_prompt: str, control_hub: AgentProfile, agents) -> TaskPlan:  # noqa: ARG002
        self.plan_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.plan_error is not None:
            raise self.plan_error
        return self.plan.model_copy(deep=True)

    async def summarize(
        self,
        *,
        user_prompt: str,  # noqa: ARG002
        control_hub: AgentProfile,  # noqa: ARG002
        assignments: Sequence[TaskAssignment],  # noqa: ARG002
    ) -> str:
        self.summary_calls += 1
        if self.summary_gate is not None:
            await self.summary_gate.wait()
        if self.summary_error is not None:
            raise self.summary_error
        return self.summary


class EventRecorder:
    def __init__(self) -> None:
        self.events: list[OrchestrationEvent] = []

    async def __call__(self, event: OrchestrationEvent) -> None:
        self.events.append(event)

    def kinds(self, task_run_id: str | None = None) -> list[str]:
        return [event.kind for event in self.events if task_run_id is None or event.task_run_id == task_run_id]

    def of_kind(self, kind: str) -> list[OrchestrationEvent]:
        return [event for event in self.events if event.kind == kind]


def build_registry(*extra: AgentProfile, include_hub: bool = True) -> InMemoryAgentRegistry:
    agents = [
        AgentProfile(
            id="researcher",
            name="Researcher",
            model="model-a",
            skills=[AgentSkill(id="web_research", name="Web research", keywords=["research", "search"])],
        ),
        AgentProfile(
            id="writer",
            name="Writer",
            model="model-b",
            skills=[AgentSkill(id="copywriting", name="Copywriting", keywords=["write", "draft"])],
        ),
        AgentProfile(id="reviewer", name="Reviewer", model="model-c"),
    ]
    if include_hub:
        agents.insert(0, AgentProfile(id="hub", name="Control Hub", model="model-hub", is_control_hub=True))
    agents.extend(extra)
    return InMemoryAgentRegistry(agents)


def make_plan(*assignments: dict[str, Any], requires_confirmation: bool | None = None) -> TaskPlan:
    planned = []
    for index, spec in enumerate(assignments, start=1):
        payload = {"task_description": f"Step {index}", "sequence_order": index, **spec}
        planned.append(PlannedAssignment(**payload))
    return TaskPlan(analysis="test plan", assignments=planned, requires_confirmation=requires_confirmation)


async def wait_for(predicate: Callable[[], bool | Awaitable[bool]], *, timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while True:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)
