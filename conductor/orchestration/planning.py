from __future__ import annotations

import json
from typing import Protocol, Sequence, runtime_checkable

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_none, wait_random_exponential

from ..core.config import OrchestrationSettings
from ..core.errors import AgentCallFailure, PlanParseError
from ..core.logging import get_logger
from .agents import AgentProfile
from .events import ChunkEvent, CompletedEvent, FailedEvent, parse_transport_event
from .plan import TaskPlan, parse_task_plan
from .state import TaskAssignment, new_id
from .transport import AgentTransport

logger = get_logger(name=__name__)

_MAX_OUTPUT_CHARS_IN_SUMMARY = 4000

# Parse errors get a correction prompt; hub and network failures resend the same prompt.
_RETRYABLE_PLAN_ERRORS = (PlanParseError, AgentCallFailure, httpx.HTTPError)

_PLAN_INSTRUCTIONS = """You are the control hub coordinating a team of agents.
Break the user's task into assignments for the agents listed below.

Respond with a single JSON object and nothing else:
{
  "analysis": "short reasoning about the task",
  "assignments": [
    {
      "agent_id": "<id from the catalog>",
      "task_description": "what this agent must do",
      "sequence_order": 1,
      "depends_on": ["<agent_id whose output this step needs>"],
      "matched_skills": ["<skill id>"],
      "selection_reason": "why this agent fits"
    }
  ]
}

Rules:
- Only use agent ids from the catalog.
- Use depends_on only when a step needs another agent's output; independent steps run in parallel.
- Never create circular dependencies.
- Respect each skill's constraints.
"""


@runtime_checkable
class PlanProvider(Protocol):
    async def create_plan(
        self,
        *,
        user_prompt: str,
        control_hub: AgentProfile,
        agents: Sequence[AgentProfile],
    ) -> TaskPlan:
        ...

    async def summarize(
        self,
        *,
        user_prompt: str,
        control_hub: AgentProfile,
        assignments: Sequence[TaskAssignment],
    ) -> str:
        ...


class ControlHubPlanner:
    """Asks the control hub agent for a plan and for the final summary."""

    def __init__(self, transport: AgentTransport, settings: OrchestrationSettings | None = None) -> None:
        self._transport = transport
        self._settings = settings or OrchestrationSettings()

    async def create_plan(
        self,
        *,
        user_prompt: str,
        control_hub: AgentProfile,
        agents: Sequence[AgentProfile],
    ) -> TaskPlan:
        base_prompt = self.build_plan_prompt(user_prompt, agents)
        last_error: str | None = None
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._settings.plan_retry_attempts),
            wait=self._wait_strategy(),
            retry=retry_if_exception_type(_RETRYABLE_PLAN_ERRORS),
            reraise=True,
        ):
            with attempt:
                prompt = base_prompt if last_error is None else self._correction_prompt(base_prompt, last_error)
                try:
                    response = await self._ask(control_hub, prompt)
                except (AgentCallFailure, httpx.HTTPError) as exc:
                    logger.warning(
                        "plan_request_failed",
                        attempt=attempt.retry_state.attempt_number,
                        error=str(exc),
                    )
                    raise
                try:
                    plan = parse_task_plan(response)
                except PlanParseError as exc:
                    last_error = str(exc)
                    logger.warning(
                        "plan_parse_failed",
                        attempt=attempt.retry_state.attempt_number,
                        error=last_error,
                    )
                    raise
                logger.info("plan_received", assignments=len(plan.assignments), control_hub=control_hub.id)
                return plan
        raise PlanParseError("Control hub did not return a plan")  # pragma: no cover

    async def summarize(
        self,
        *,
        user_prompt: str,
        control_hub: AgentProfile,
        assignments: Sequence[TaskAssignment],
    ) -> str:
        sections = []
        for assignment in sorted(assignments, key=lambda item: item.sequence_order):
            body = assignment.output_text or assignment.error_message or "(no output)"
            sections.append(
                f"### {assignment.agent_name} ({assignment.status.value})\n{body[:_MAX_OUTPUT_CHARS_IN_SUMMARY]}"
            )
        prompt = (
            "Summarize the results of the following task for the user.\n\n"
            f"Original task:\n{user_prompt}\n\n"
            "Agent results:\n\n" + "\n\n".join(sections) + "\n\nWrite a concise summary of the combined results."
        )
        summary = (await self._ask(control_hub, prompt)).strip()
        if not summary:
            raise AgentCallFailure("Control hub returned an empty summary")
        return summary

    @staticmethod
    def build_plan_prompt(user_prompt: str, agents: Sequence[AgentProfile]) -> str:
        catalog = [
            {
                "agent_id": agent.id,
                "name": agent.name,
                "description": agent.description,
                "skills": [
                    {
                        "id": skill.id,
                        "name": skill.name,
                        "description": skill.description,
                        "constraints": skill.constraints,
                    }
                    for skill in agent.skills
                ],
            }
            for agent in agents
            if agent.is_enabled and not agent.is_control_hub
        ]
        return (
            f"{_PLAN_INSTRUCTIONS}\nAgent catalog:\n{json.dumps(catalog, indent=2)}\n\nUser task:\n{user_prompt}\n"
        )

    @staticmethod
    def _correction_prompt(base_prompt: str, error: str) -> str:
        return (
            f"{base_prompt}\nYour previous answer could not be used: {error}\n"
            "Reply again with only the JSON object, without commentary or markdown."
        )

    def _wait_strategy(self):
        max_backoff = self._settings.plan_retry_max_backoff_seconds
        if max_backoff <= 0:
            return wait_none()
        return wait_random_exponential(multiplier=0.5, max=max_backoff)

    async def _ask(self, control_hub: AgentProfile, prompt: str) -> str:
        chunks: list[str] = []
        correlation_id = f"hub-{new_id()}"
        async for raw in self._transport.invoke(control_hub, prompt, correlation_id=correlation_id):
            event = parse_transport_event(raw)
            if isinstance(event, ChunkEvent):
                chunks.append(event.text)
            elif isinstance(event, CompletedEvent):
                return event.output or "".join(chunks)
            elif isinstance(event, FailedEvent):
                raise AgentCallFailure(f"Control hub call failed: {event.error}")
        if chunks:
            return "".join(chunks)
        raise AgentCallFailure("Control hub stream ended without a result")


__all__ = ["ControlHubPlanner", "PlanProvider"]
