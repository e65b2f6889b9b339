from __future__ import annotations

import json

import httpx
import pytest

from conductor.core.config import OrchestrationSettings
from conductor.core.errors import AgentCallFailure, PlanParseError
from conductor.orchestration.agents import AgentProfile
from conductor.orchestration.enums import AssignmentStatus
from conductor.orchestration.plan import extract_json_object, parse_task_plan, sanitize_json
from conductor.orchestration.planning import ControlHubPlanner
from conductor.orchestration.state import TaskAssignment
from tests.helpers.stubs import AgentScript, ScriptedTransport, build_registry

_PLAN = {
    "analysis": "Research first, then write.",
    "assignments": [
        {"agent_id": "researcher", "task_description": "Find sources", "sequence_order": 1},
        {
            "agent_id": "writer",
            "task_description": "Write it up",
            "sequence_order": 2,
            "depends_on": "researcher",
        },
    ],
}


def _hub() -> AgentProfile:
    return AgentProfile(id="hub", name="Control Hub", is_control_hub=True)


def _settings(attempts: int = 2) -> OrchestrationSettings:
    return OrchestrationSettings(plan_retry_attempts=attempts, plan_retry_max_backoff_seconds=0)


def test_parse_plain_json() -> None:
    plan = parse_task_plan(json.dumps(_PLAN))

    assert plan.analysis == "Research first, then write."
    assert [item.agent_id for item in plan.assignments] == ["researcher", "writer"]
    assert plan.assignments[1].depends_on == ["researcher"]
    assert plan.requires_confirmation is None


def test_parse_fenced_json_with_commentary() -> None:
    text = "Here is the plan:\n```json\n" + json.dumps(_PLAN, indent=2) + "\n```\nLet me know."

    plan = parse_task_plan(text)

    assert len(plan.assignments) == 2


def test_parse_repairs_trailing_commas_and_raw_newlines() -> None:
    text = '{"analysis": "line one\nline two", "assignments": [{"agent_id": "writer", "task_description": "Go",},],}'

    plan = parse_task_plan(text)

    assert plan.analysis == "line one\nline two"
    assert plan.assignments[0].sequence_order == 1


def test_parse_coerces_numeric_agent_ids() -> None:
    plan = parse_task_plan('{"assignments": [{"agent_id": 7, "task_description": "x", "depends_on": [3, null]}]}')

    assert plan.assignments[0].agent_id == "7"
    assert plan.assignments[0].depends_on == ["3"]


def test_extract_without_object_raises() -> None:
    with pytest.raises(PlanParseError):
        extract_json_object("I could not come up with a plan.")


@pytest.mark.parametrize(
    "text",
    [
        '{"assignments": [ {"agent_id": "a" "task_description": "b"} ]}',
        '{"assignments": [{"agent_id": "", "task_description": "b"}]}',
        '{"assignments": "nope"}',
    ],
)
def test_parse_rejects_unusable_plans(text: str) -> None:
    with pytest.raises(PlanParseError):
        parse_task_plan(text)


def test_sanitize_json_keeps_escaped_quotes() -> None:
    assert sanitize_json('{"a": "say \\"hi\\"",}') == '{"a": "say \\"hi\\""}'


@pytest.mark.asyncio
async def test_planner_retries_after_unparseable_response() -> None:
    transport = ScriptedTransport(hub_responses=["not json at all", json.dumps(_PLAN)])
    planner = ControlHubPlanner(transport, _settings())
    registry = build_registry()

    plan = await planner.create_plan(
        user_prompt="Write about tides",
        control_hub=_hub(),
        agents=await registry.list_agents(),
    )

    assert len(plan.assignments) == 2
    assert len(transport.invocations) == 2
    retry_prompt = transport.invocations[1][1]
    assert "Your previous answer could not be used" in retry_prompt
    assert "Write about tides" in retry_prompt


@pytest.mark.asyncio
async def test_planner_gives_up_after_configured_attempts() -> None:
    transport = ScriptedTransport(hub_responses=["nope", "still nope"])
    planner = ControlHubPlanner(transport, _settings(attempts=2))

    with pytest.raises(PlanParseError):
        await planner.create_plan(user_prompt="Task", control_hub=_hub(), agents=[])

    assert len(transport.invocations) == 2


@pytest.mark.asyncio
async def test_planner_retries_transient_hub_failures_with_the_same_prompt() -> None:
    transport = ScriptedTransport(
        hub_responses=[
            {"kind": "failed", "error": "model overloaded"},
            httpx.ConnectError("connection refused"),
            json.dumps(_PLAN),
        ]
    )
    planner = ControlHubPlanner(transport, _settings(attempts=3))

    plan = await planner.create_plan(user_prompt="Write about tides", control_hub=_hub(), agents=[])

    assert len(plan.assignments) == 2
    prompts = transport.inputs_for("hub")
    assert len(prompts) == 3
    assert len(set(prompts)) == 1
    assert "Your previous answer could not be used" not in prompts[-1]


@pytest.mark.asyncio
async def test_planner_reraises_hub_failure_once_attempts_run_out() -> None:
    transport = ScriptedTransport(hub_responses=[httpx.ReadTimeout("slow"), {"kind": "failed", "error": "down"}])
    planner = ControlHubPlanner(transport, _settings(attempts=2))

    with pytest.raises(AgentCallFailure, match="down"):
        await planner.create_plan(user_prompt="Task", control_hub=_hub(), agents=[])

    assert len(transport.invocations) == 2


@pytest.mark.asyncio
async def test_plan_prompt_lists_only_enabled_worker_agents() -> None:
    agents = await build_registry(AgentProfile(id="retired", name="Retired", is_enabled=False)).list_agents()

    prompt = ControlHubPlanner.build_plan_prompt("Do the thing", agents)

    assert '"agent_id": "researcher"' in prompt
    assert '"agent_id": "hub"' not in prompt
    assert '"agent_id": "retired"' not in prompt
    assert prompt.rstrip().endswith("Do the thing")


@pytest.mark.asyncio
async def test_summarize_includes_each_assignment() -> None:
    transport = ScriptedTransport(hub_responses=["  Tides explained.  "])
    planner = ControlHubPlanner(transport, _settings())
    assignments = [
        TaskAssignment(
            task_run_id="run-1",
            agent_id="writer",
            agent_name="Writer",
            sequence_order=2,
            status=AssignmentStatus.COMPLETED,
            output_text="Final article",
        ),
        TaskAssignment(
            task_run_id="run-1",
            agent_id="researcher",
            agent_name="Researcher",
            sequence_order=1,
            status=AssignmentStatus.FAILED,
            error_message="timeout",
        ),
    ]

    summary = await planner.summarize(user_prompt="Tides", control_hub=_hub(), assignments=assignments)

    assert summary == "Tides explained."
    prompt = transport.invocations[0][1]
    assert prompt.index("### Researcher (failed)\ntimeout") < prompt.index("### Writer (completed)\nFinal article")


@pytest.mark.asyncio
async def test_hub_failure_event_raises_agent_call_failure() -> None:
    transport = ScriptedTransport({"hub": AgentScript(error="model overloaded")})
    planner = ControlHubPlanner(transport, _settings())

    with pytest.raises(AgentCallFailure, match="model overloaded"):
        await planner.summarize(user_prompt="x", control_hub=_hub(), assignments=[])


@pytest.mark.asyncio
async def test_hub_streamed_chunks_are_used_when_completion_has_no_output() -> None:
    transport = ScriptedTransport({"hub": AgentScript(chunks=["Short ", "summary"], output="")})
    planner = ControlHubPlanner(transport, _settings())

    summary = await planner.summarize(user_prompt="x", control_hub=_hub(), assignments=[])

    assert summary == "Short summary"
