from __future__ import annotations

import json

import pytest

from conductor.core.config import SessionCacheSettings
from conductor.orchestration.enums import AssignmentStatus
from conductor.orchestration.orchestrator import Orchestrator
from conductor.orchestration.store import InMemoryTaskRunStore
from conductor.orchestration.tracker import AgentTrackingInfo
from conductor.workspace import ChatMessage, SessionState, WorkspaceSessionCache, build_session_state
from conductor.workspace.session_cache import SESSION_STATE_VERSION
from tests.helpers.stubs import ScriptedTransport, StaticPlanProvider, build_registry, make_plan


def _tracker(agent_id: str, status: AssignmentStatus = AssignmentStatus.RUNNING) -> AgentTrackingInfo:
    return AgentTrackingInfo(
        assignment_id=f"a-{agent_id}",
        agent_id=agent_id,
        agent_name=agent_id.title(),
        sequence_order=1,
        status=status,
        streamed_output="partial",
    )


def _state(workspace_id: str, **kwargs) -> SessionState:
    return SessionState(workspace_id=workspace_id, **kwargs)


def test_switch_round_trip_restores_previous_state() -> None:
    cache = WorkspaceSessionCache()
    workspace_a = _state(
        "a",
        viewed_task_run_id="run-1",
        active_task_run_id="run-1",
        trackers=[_tracker("researcher")],
        chat_messages=[ChatMessage(role="user", content="hello")],
        draft_prompt="half-typed",
    )

    shown_b = cache.switch(workspace_a, "b")
    assert shown_b.workspace_id == "b"
    assert shown_b.trackers == []

    restored = cache.switch(shown_b, "a")

    assert restored.viewed_task_run_id == "run-1"
    assert restored.active_task_run_id == "run-1"
    assert restored.trackers == workspace_a.trackers
    assert restored.chat_messages[0].content == "hello"
    assert restored.draft_prompt == "half-typed"
    assert "b" in cache


def test_restored_state_does_not_alias_captured_state() -> None:
    cache = WorkspaceSessionCache()
    original = _state("a", chat_messages=[ChatMessage(role="user", content="first")])
    cache.capture(original)

    original.chat_messages.append(ChatMessage(role="assistant", content="later"))
    restored = cache.restore("a")

    assert [message.content for message in restored.chat_messages] == ["first"]
    restored.chat_messages.clear()
    assert len(cache.restore("a").chat_messages) == 1


def test_switch_to_same_workspace_returns_current() -> None:
    cache = WorkspaceSessionCache()
    current = _state("a", draft_prompt="keep me")

    assert cache.switch(current, "a") is current
    assert len(cache) == 0


def test_switch_without_current_state_starts_fresh() -> None:
    cache = WorkspaceSessionCache()

    state = cache.switch(None, "new")

    assert state.workspace_id == "new"
    assert state.version == SESSION_STATE_VERSION
    assert len(cache) == 0


def test_least_recently_used_workspace_is_evicted() -> None:
    cache = WorkspaceSessionCache(SessionCacheSettings(max_workspaces=2))
    cache.capture(_state("a"))
    cache.capture(_state("b"))
    assert cache.restore("a") is not None

    cache.capture(_state("c"))

    assert cache.workspace_ids() == ["a", "c"]
    assert cache.restore("b") is None


def test_version_mismatch_is_dropped() -> None:
    cache = WorkspaceSessionCache()
    cache.capture(_state("a", version=SESSION_STATE_VERSION + 1))

    assert cache.restore("a") is None
    assert "a" not in cache


def test_unreadable_entry_is_dropped() -> None:
    cache = WorkspaceSessionCache()
    cache.capture(_state("a"))
    cache._entries["a"] = json.dumps({"workspace_id": "a", "trackers": "broken"})

    assert cache.restore("a") is None
    assert len(cache) == 0


def test_evict_and_clear() -> None:
    cache = WorkspaceSessionCache()
    cache.capture(_state("a"))
    cache.capture(_state("b"))

    assert cache.evict("a") is True
    assert cache.evict("a") is False
    cache.clear()
    assert len(cache) == 0
    assert cache.max_workspaces == 16


@pytest.mark.asyncio
async def test_build_session_state_from_run_snapshot() -> None:
    store = InMemoryTaskRunStore()
    orchestrator = Orchestrator(
        store=store,
        registry=build_registry(),
        transport=ScriptedTransport(),
        planner=StaticPlanProvider(make_plan({"agent_id": "researcher"})),
    )
    run = await orchestrator.start("Explain tides", workspace_id="a")
    await orchestrator.wait_until_settled(run.id, timeout=2.0)
    snapshot = await orchestrator.snapshot(run.id)

    state = build_session_state("a", snapshot=snapshot, draft_prompt="next question")

    assert state.viewed_task_run_id == run.id
    assert state.active_task_run_id == (run.id if snapshot.is_active else None)
    assert [tracker.agent_id for tracker in state.trackers] == ["researcher"]
    await orchestrator.shutdown()
