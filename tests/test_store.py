from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from conductor.core.config import Settings
from conductor.core.errors import TaskRunNotFoundError
from conductor.orchestration.enums import AssignmentStatus, Frequency, ScheduleType, TaskRunStatus
from conductor.orchestration.state import RecurrencePattern, TaskAssignment, new_task_run
from conductor.orchestration.store import (
    InMemoryTaskRunStore,
    PostgresTaskRunStore,
    _assignment_args,
    _row_to_assignment,
    _row_to_run,
    build_task_run_store,
)

NOW = datetime(2024, 1, 2, 10, 0, tzinfo=timezone.utc)


def _assignment(run_id: str, agent_id: str, order: int) -> TaskAssignment:
    return TaskAssignment(task_run_id=run_id, agent_id=agent_id, agent_name=agent_id.title(), sequence_order=order)


@pytest.mark.asyncio
async def test_in_memory_store_returns_copies() -> None:
    store = InMemoryTaskRunStore()
    run = await store.create_task_run(new_task_run("Original prompt"))

    run.title = "mutated locally"
    stored = await store.get_task_run(run.id)

    assert stored.title == "Original prompt"


@pytest.mark.asyncio
async def test_save_state_only_touches_state_fields() -> None:
    store = InMemoryTaskRunStore()
    run = await store.create_task_run(new_task_run("Prompt", workspace_id="ws-1"))
    run.status = TaskRunStatus.RUNNING
    run.task_plan = {"analysis": "x"}
    run.workspace_id = "elsewhere"
    run.rating = 3

    await store.save_task_run_state(run)
    stored = await store.get_task_run(run.id)

    assert stored.status is TaskRunStatus.RUNNING
    assert stored.task_plan == {"analysis": "x"}
    assert stored.workspace_id == "ws-1"
    assert stored.rating is None


@pytest.mark.asyncio
async def test_assignments_are_listed_in_sequence_order() -> None:
    store = InMemoryTaskRunStore()
    run = await store.create_task_run(new_task_run("Prompt"))
    await store.create_assignments([_assignment(run.id, "writer", 2), _assignment(run.id, "researcher", 1)])

    listed = await store.list_assignments(run.id)
    listed[0].status = AssignmentStatus.COMPLETED
    await store.save_assignment(listed[0])

    again = await store.list_assignments(run.id)
    assert [item.agent_id for item in again] == ["researcher", "writer"]
    assert again[0].status is AssignmentStatus.COMPLETED


@pytest.mark.asyncio
async def test_list_filters_and_limits() -> None:
    store = InMemoryTaskRunStore()
    first = new_task_run("First", workspace_id="ws-1")
    second = new_task_run("Second", workspace_id="ws-1")
    second.created_at = first.created_at + timedelta(seconds=1)
    other = new_task_run("Other", workspace_id="ws-2")
    for run in (first, second, other):
        await store.create_task_run(run)

    scoped = await store.list_task_runs(workspace_id="ws-1")
    limited = await store.list_task_runs(limit=1)

    assert [run.id for run in scoped] == [second.id, first.id]
    assert len(limited) == 1


@pytest.mark.asyncio
async def test_incomplete_and_due_queries() -> None:
    store = InMemoryTaskRunStore()
    running = new_task_run("Running")
    running.status = TaskRunStatus.RUNNING
    done = new_task_run("Done")
    done.status = TaskRunStatus.COMPLETED
    for run in (running, done):
        await store.create_task_run(run)
    pattern = RecurrencePattern(frequency=Frequency.DAILY)
    await store.update_schedule(
        done.id,
        schedule_type=ScheduleType.RECURRING,
        scheduled_time=None,
        recurrence_pattern=pattern,
        next_run_at=NOW,
        is_paused=False,
    )

    incomplete = await store.list_incomplete_task_runs()
    due = await store.list_due_schedules(NOW)
    not_yet = await store.list_due_schedules(NOW - timedelta(minutes=1))

    assert [run.id for run in incomplete] == [running.id]
    assert [run.id for run in due] == [done.id]
    assert due[0].recurrence_pattern == pattern
    assert not_yet == []


@pytest.mark.asyncio
async def test_paused_schedules_are_not_due() -> None:
    store = InMemoryTaskRunStore()
    run = await store.create_task_run(new_task_run("Paused"))
    await store.update_schedule(
        run.id,
        schedule_type=ScheduleType.ONCE,
        scheduled_time=NOW,
        recurrence_pattern=None,
        next_run_at=NOW,
        is_paused=True,
    )

    assert await store.list_due_schedules(NOW + timedelta(hours=1)) == []


@pytest.mark.asyncio
async def test_rating_delete_and_missing_runs() -> None:
    store = InMemoryTaskRunStore()
    run = await store.create_task_run(new_task_run("Prompt"))
    await store.create_assignments([_assignment(run.id, "writer", 1)])

    assert (await store.set_rating(run.id, 4)).rating == 4
    assert await store.delete_task_run(run.id) is True
    assert await store.delete_task_run(run.id) is False
    assert await store.list_assignments(run.id) == []
    with pytest.raises(TaskRunNotFoundError):
        await store.set_rating(run.id, 1)


def test_row_mapping_round_trips_json_columns() -> None:
    run = new_task_run("Prompt", workspace_id="ws-1")
    row = {
        **run.model_dump(),
        "status": "awaiting_confirmation",
        "task_plan": json.dumps({"analysis": "plan"}),
        "schedule_type": "recurring",
        "recurrence_pattern": json.dumps({"frequency": "weekly", "days_of_week": [2], "time": "08:15"}),
        "next_run_at": NOW,
    }

    mapped = _row_to_run(row)

    assert mapped.status is TaskRunStatus.AWAITING_CONFIRMATION
    assert mapped.task_plan == {"analysis": "plan"}
    assert mapped.recurrence_pattern.days_of_week == (2,)
    assert mapped.schedule_type is ScheduleType.RECURRING


def test_assignment_row_mapping() -> None:
    assignment = _assignment("run-1", "writer", 2)
    assignment.depends_on = ["researcher"]
    columns = [
        "id", "task_run_id", "agent_id", "agent_name", "sequence_order", "depends_on", "matched_skills",
        "selection_reason", "is_terminal_step", "task_description", "input_text", "output_text", "status",
        "model_used", "tokens_in", "tokens_out", "cache_creation_tokens", "cache_read_tokens", "started_at",
        "completed_at", "duration_ms", "error_message", "created_at",
    ]

    row = dict(zip(columns, _assignment_args(assignment)))
    mapped = _row_to_assignment(row)

    assert mapped == assignment


def test_build_store_uses_memory_in_tests() -> None:
    assert isinstance(build_task_run_store(Settings(environment="test")), InMemoryTaskRunStore)


@pytest.mark.asyncio
async def test_postgres_store_rejects_invalid_pool() -> None:
    store = PostgresTaskRunStore(pool=object())

    with pytest.raises(RuntimeError):
        await store.get_task_run("anything")
