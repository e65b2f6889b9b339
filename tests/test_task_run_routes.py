from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx
import pytest

from conductor.core.config import OrchestrationSettings, SchedulerSettings, Settings
from conductor.dependencies import ConductorRuntime, build_runtime
from conductor.main import create_app
from conductor.orchestration.events import EventBus
from tests.helpers.stubs import (
    AgentScript,
    ScriptedTransport,
    StaticPlanProvider,
    build_registry,
    make_plan,
    wait_for,
)

PREFIX = "/api/v1"


def _runtime(
    *,
    scripts: dict[str, AgentScript] | None = None,
    plan=None,
    include_hub: bool = True,
    with_transport: bool = True,
    require_confirmation: bool = False,
) -> ConductorRuntime:
    settings = Settings(
        environment="test",
        scheduler=SchedulerSettings(enabled=False),
        orchestration=OrchestrationSettings(
            require_confirmation=require_confirmation,
            confirmation_timeout_seconds=0,
        ),
    )
    return build_runtime(
        settings,
        registry=build_registry(include_hub=include_hub),
        transport=ScriptedTransport(scripts) if with_transport else None,
        planner=StaticPlanProvider(plan or make_plan({"agent_id": "researcher"}, {"agent_id": "writer"})),
        events=EventBus(),
    )


@asynccontextmanager
async def _client(runtime: ConductorRuntime) -> AsyncIterator[httpx.AsyncClient]:
    app = create_app(runtime)
    transport = httpx.ASGITransport(app=app)
    try:
        async with app.router.lifespan_context(app):
            async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
                yield client
    finally:
        await transport.aclose()


async def _start_and_settle(client: httpx.AsyncClient, runtime: ConductorRuntime, **body) -> dict:
    response = await client.post(f"{PREFIX}/task-runs", json={"prompt": "Write about tides", **body})
    assert response.status_code == 201
    payload = response.json()
    await runtime.orchestrator.wait_until_settled(payload["id"], timeout=2.0)
    return payload


@pytest.mark.asyncio
async def test_health_and_root() -> None:
    async with _client(_runtime()) as client:
        health = await client.get(f"{PREFIX}/health")
        root = await client.get("/")

    assert health.json() == {"status": "ok"}
    assert root.status_code == 200


@pytest.mark.asyncio
async def test_start_task_run_and_read_details() -> None:
    runtime = _runtime()
    async with _client(runtime) as client:
        created = await _start_and_settle(client, runtime, workspace_id="ws-1")
        detail = await client.get(f"{PREFIX}/task-runs/{created['id']}")
        listing = await client.get(f"{PREFIX}/task-runs", params={"workspace_id": "ws-1"})

    assert created["status"] == "analyzing"
    assert created["is_active"] is True
    body = detail.json()
    assert body["status"] == "completed"
    assert body["is_active"] is False
    assert [item["agent_id"] for item in body["assignments"]] == ["researcher", "writer"]
    assert body["task_plan"]["validation"]["is_valid"] is True
    assert body["total_tokens_in"] == 20
    assert [item["id"] for item in listing.json()] == [created["id"]]


@pytest.mark.asyncio
async def test_start_rejects_empty_prompt() -> None:
    async with _client(_runtime()) as client:
        response = await client.post(f"{PREFIX}/task-runs", json={"prompt": ""})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_start_without_control_hub_returns_400() -> None:
    async with _client(_runtime(include_hub=False)) as client:
        response = await client.post(f"{PREFIX}/task-runs", json={"prompt": "Anything"})
        listing = await client.get(f"{PREFIX}/task-runs")

    assert response.status_code == 400
    assert "control hub" in response.json()["detail"]
    assert listing.json() == []


@pytest.mark.asyncio
async def test_second_start_in_workspace_conflicts() -> None:
    gate = asyncio.Event()
    runtime = _runtime(scripts={"researcher": AgentScript(gate=gate)})
    async with _client(runtime) as client:
        first = await client.post(f"{PREFIX}/task-runs", json={"prompt": "One", "workspace_id": "ws-1"})
        second = await client.post(f"{PREFIX}/task-runs", json={"prompt": "Two", "workspace_id": "ws-1"})
        gate.set()
        await runtime.orchestrator.wait_until_settled(first.json()["id"], timeout=2.0)

    assert second.status_code == 409


@pytest.mark.asyncio
async def test_unknown_task_run_returns_404() -> None:
    async with _client(_runtime()) as client:
        detail = await client.get(f"{PREFIX}/task-runs/missing")
        cancel = await client.post(f"{PREFIX}/task-runs/missing/cancel")
        events = await client.get(f"{PREFIX}/task-runs/missing/events")

    assert detail.status_code == 404
    assert cancel.status_code == 404
    assert events.status_code == 404


@pytest.mark.asyncio
async def test_cancel_agent_and_run() -> None:
    gate = asyncio.Event()
    runtime = _runtime(scripts={"researcher": AgentScript(gate=gate), "writer": AgentScript(gate=gate)})
    transport = runtime.transport
    async with _client(runtime) as client:
        created = await client.post(f"{PREFIX}/task-runs", json={"prompt": "Long job"})
        run_id = created.json()["id"]
        await wait_for(lambda: transport.started["researcher"].is_set())

        snapshot = await client.get(f"{PREFIX}/task-runs/{run_id}/snapshot")
        missing_agent = await client.post(f"{PREFIX}/task-runs/{run_id}/agents/nobody/cancel")
        cancelled = await client.post(f"{PREFIX}/task-runs/{run_id}/cancel")
        again = await client.post(f"{PREFIX}/task-runs/{run_id}/cancel")

    assert snapshot.json()["task_run"]["is_active"] is True
    assert snapshot.json()["trackers"][0]["status"] == "running"
    assert missing_agent.status_code == 404
    assert cancelled.json()["status"] == "cancelled"
    assert cancelled.json()["is_active"] is False
    assert again.json()["status"] == "cancelled"


@pytest.mark.asyncio
async def test_confirm_and_regenerate_flow() -> None:
    runtime = _runtime(require_confirmation=True)
    async with _client(runtime) as client:
        created = await _start_and_settle(client, runtime)
        run_id = created["id"]

        waiting = await client.get(f"{PREFIX}/task-runs/{run_id}")
        regenerated = await client.post(f"{PREFIX}/task-runs/{run_id}/agents/writer/regenerate")
        await runtime.orchestrator.wait_until_settled(run_id, timeout=2.0)
        confirmed = await client.post(f"{PREFIX}/task-runs/{run_id}/confirm")
        confirmed_again = await client.post(f"{PREFIX}/task-runs/{run_id}/confirm")
        late_regenerate = await client.post(f"{PREFIX}/task-runs/{run_id}/agents/writer/regenerate")

    assert waiting.json()["status"] == "awaiting_confirmation"
    assert regenerated.json()["status"] == "running"
    assert confirmed.json()["status"] == "completed"
    assert confirmed_again.status_code == 200
    assert late_regenerate.status_code == 409


@pytest.mark.asyncio
async def test_permission_response_is_forwarded() -> None:
    gate = asyncio.Event()
    script = AgentScript(
        gate=gate,
        events=[{"kind": "permission_request", "request": {"request_id": "p-1", "options": [{"id": "allow"}]}}],
    )
    runtime = _runtime(scripts={"researcher": script}, plan=make_plan({"agent_id": "researcher"}))
    async with _client(runtime) as client:
        created = await client.post(f"{PREFIX}/task-runs", json={"prompt": "Needs approval"})
        run_id = created.json()["id"]
        await wait_for(lambda: runtime.transport.started["researcher"].is_set())

        response = await client.post(
            f"{PREFIX}/task-runs/{run_id}/agents/researcher/permissions",
            json={"request_id": "p-1", "option_id": "allow"},
        )
        gate.set()
        await runtime.orchestrator.wait_until_settled(run_id, timeout=2.0)

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert runtime.transport.permission_responses[0][1:] == ("p-1", "allow")


@pytest.mark.asyncio
async def test_rating_and_delete() -> None:
    runtime = _runtime()
    async with _client(runtime) as client:
        created = await _start_and_settle(client, runtime)
        run_id = created["id"]

        rated = await client.put(f"{PREFIX}/task-runs/{run_id}/rating", json={"rating": 5})
        invalid = await client.put(f"{PREFIX}/task-runs/{run_id}/rating", json={"rating": 7})
        deleted = await client.delete(f"{PREFIX}/task-runs/{run_id}")
        gone = await client.get(f"{PREFIX}/task-runs/{run_id}")

    assert rated.json()["rating"] == 5
    assert invalid.status_code == 422
    assert deleted.status_code == 204
    assert gone.status_code == 404


@pytest.mark.asyncio
async def test_schedule_lifecycle_routes() -> None:
    runtime = _runtime()
    async with _client(runtime) as client:
        created = await _start_and_settle(client, runtime)
        run_id = created["id"]
        pattern = {"frequency": "weekly", "days_of_week": [1, 3], "time": "07:30"}

        scheduled = await client.put(
            f"{PREFIX}/task-runs/{run_id}/schedule",
            json={"schedule_type": "recurring", "recurrence_pattern": pattern},
        )
        paused = await client.post(f"{PREFIX}/task-runs/{run_id}/schedule/pause")
        resumed = await client.post(f"{PREFIX}/task-runs/{run_id}/schedule/resume")
        cleared = await client.delete(f"{PREFIX}/task-runs/{run_id}/schedule")
        invalid = await client.put(
            f"{PREFIX}/task-runs/{run_id}/schedule",
            json={"schedule_type": "once", "scheduled_time": "2000-01-01T00:00:00Z"},
        )
        pause_unscheduled = await client.post(f"{PREFIX}/task-runs/{run_id}/schedule/pause")

    assert scheduled.status_code == 200
    assert scheduled.json()["schedule_type"] == "recurring"
    assert scheduled.json()["next_run_at"] is not None
    assert paused.json()["is_paused"] is True
    assert paused.json()["next_run_at"] is None
    assert resumed.json()["is_paused"] is False
    assert resumed.json()["next_run_at"] is not None
    assert cleared.json()["schedule_type"] == "none"
    assert invalid.status_code == 422
    assert pause_unscheduled.status_code == 422


@pytest.mark.asyncio
async def test_schedule_preview() -> None:
    async with _client(_runtime()) as client:
        response = await client.post(
            f"{PREFIX}/schedules/preview",
            json={
                "recurrence_pattern": {"frequency": "weekly", "days_of_week": [1, 3, 5], "time": "09:00"},
                "after": "2024-01-02T10:00:00Z",
                "count": 2,
            },
        )
        invalid = await client.post(
            f"{PREFIX}/schedules/preview",
            json={"recurrence_pattern": {"frequency": "weekly"}},
        )

    occurrences = response.json()["occurrences"]
    assert [value[:16] for value in occurrences] == ["2024-01-03T09:00", "2024-01-05T09:00"]
    assert invalid.status_code == 422


@pytest.mark.asyncio
async def test_event_stream_for_finished_run() -> None:
    runtime = _runtime()
    async with _client(runtime) as client:
        created = await _start_and_settle(client, runtime)
        response = await client.get(f"{PREFIX}/task-runs/{created['id']}/events")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    body = response.text
    assert body.startswith("event: snapshot\n")
    assert body.rstrip().splitlines()[-2] == "event: end"


@pytest.mark.asyncio
async def test_routes_report_unavailable_without_transport() -> None:
    async with _client(_runtime(with_transport=False)) as client:
        response = await client.post(f"{PREFIX}/task-runs", json={"prompt": "Anything"})

    assert response.status_code == 503
    assert response.json()["detail"] == "No agent transport configured"


@pytest.mark.asyncio
async def test_workspace_session_routes() -> None:
    async with _client(_runtime()) as client:
        current = {"workspace_id": "ws-a", "draft_prompt": "half-typed", "viewed_task_run_id": "run-1"}
        switched = await client.post(
            f"{PREFIX}/workspaces/switch",
            json={"current": current, "target_workspace_id": "ws-b"},
        )
        restored = await client.get(f"{PREFIX}/workspaces/ws-a/session")
        listing = await client.get(f"{PREFIX}/workspaces/sessions")
        mismatch = await client.put(f"{PREFIX}/workspaces/ws-c/session", json={"workspace_id": "ws-d"})
        evicted = await client.delete(f"{PREFIX}/workspaces/ws-a/session")
        missing = await client.get(f"{PREFIX}/workspaces/ws-a/session")

    assert switched.json()["workspace_id"] == "ws-b"
    assert switched.json()["draft_prompt"] == ""
    assert restored.json()["draft_prompt"] == "half-typed"
    assert restored.json()["viewed_task_run_id"] == "run-1"
    assert listing.json() == {"workspace_ids": ["ws-a"], "max_workspaces": 16}
    assert mismatch.status_code == 422
    assert evicted.status_code == 204
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_metrics_endpoint_exposes_conductor_series() -> None:
    runtime = _runtime()
    async with _client(runtime) as client:
        await _start_and_settle(client, runtime)
        response = await client.get("/metrics")

    assert response.status_code == 200
    assert response.headers.get("content-type", "").startswith("text/plain")
    assert "conductor_task_runs_total" in response.text
    assert "conductor_assignment_events_total" in response.text
