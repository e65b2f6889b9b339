from __future__ import annotations

import pytest
from prometheus_client import REGISTRY

from conductor.core.metrics import (
    increment_assignment_event,
    mark_task_run_finished,
    mark_task_run_started,
    observe_agent_execution,
    record_plan_validation,
    record_scheduler_fire,
)


def _sample(name: str, labels: dict[str, str] | None = None) -> float:
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


def test_task_run_gauge_tracks_start_and_finish():
    active_before = _sample("conductor_task_runs_active")
    completed_before = _sample("conductor_task_runs_total", {"status": "completed"})
    latency_before = _sample("conductor_task_run_latency_seconds_sum", {"status": "completed"})

    mark_task_run_started()
    assert _sample("conductor_task_runs_active") == pytest.approx(active_before + 1)

    mark_task_run_finished(status="completed", latency=4.0)

    assert _sample("conductor_task_runs_active") == pytest.approx(active_before)
    assert _sample("conductor_task_runs_total", {"status": "completed"}) == pytest.approx(completed_before + 1)
    assert _sample("conductor_task_run_latency_seconds_sum", {"status": "completed"}) == pytest.approx(
        latency_before + 4.0
    )


def test_agent_execution_records_latency_and_tokens():
    labels = {"agent": "metrics-agent"}
    latency_before = _sample("conductor_agent_execution_latency_seconds_sum", labels)
    tokens_in_before = _sample("conductor_agent_tokens_total", {"agent": "metrics-agent", "direction": "in"})

    observe_agent_execution(agent="metrics-agent", duration_ms=1500, tokens_in=12, tokens_out=0)

    assert _sample("conductor_agent_execution_latency_seconds_sum", labels) == pytest.approx(latency_before + 1.5)
    assert _sample("conductor_agent_tokens_total", {"agent": "metrics-agent", "direction": "in"}) == pytest.approx(
        tokens_in_before + 12
    )


def test_assignment_and_scheduler_counters_increment():
    assignment_labels = {"agent": "metrics-agent", "event": "skipped"}
    fire_labels = {"schedule_type": "recurring", "outcome": "deferred"}
    assignment_before = _sample("conductor_assignment_events_total", assignment_labels)
    fire_before = _sample("conductor_scheduler_fires_total", fire_labels)

    increment_assignment_event(agent="metrics-agent", event="skipped")
    record_scheduler_fire(schedule_type="recurring", outcome="deferred")

    assert _sample("conductor_assignment_events_total", assignment_labels) == pytest.approx(assignment_before + 1)
    assert _sample("conductor_scheduler_fires_total", fire_labels) == pytest.approx(fire_before + 1)


def test_plan_validation_outcomes_are_counted():
    before = _sample("conductor_plan_validation_total", {"outcome": "cycle"})
    count_before = _sample("conductor_plan_assignments_count")

    record_plan_validation(outcome="cycle", assignments=3)

    assert _sample("conductor_plan_validation_total", {"outcome": "cycle"}) == pytest.approx(before + 1)
    assert _sample("conductor_plan_assignments_count") == pytest.approx(count_before + 1)
