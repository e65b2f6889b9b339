from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

TASK_RUNS_TOTAL = Counter(
    "conductor_task_runs_total",
    "Task runs grouped by lifecycle status reached",
    labelnames=("status",),
)

TASK_RUNS_ACTIVE = Gauge(
    "conductor_task_runs_active",
    "Task runs currently analyzing, running or awaiting confirmation",
)

TASK_RUN_LATENCY_SECONDS = Histogram(
    "conductor_task_run_latency_seconds",
    "Wall clock time from task run start to a terminal status",
    labelnames=("status",),
    buckets=(1, 5, 10, 30, 60, 120, 300, 600, 1800, 3600, float("inf")),
)

ASSIGNMENT_EVENTS_TOTAL = Counter(
    "conductor_assignment_events_total",
    "Assignment lifecycle events (started/completed/failed/cancelled/skipped)",
    labelnames=("agent", "event"),
)

AGENT_EXECUTION_LATENCY_SECONDS = Histogram(
    "conductor_agent_execution_latency_seconds",
    "Latency of each agent call reported by the transport",
    labelnames=("agent",),
)

AGENT_TOKENS_TOTAL = Counter(
    "conductor_agent_tokens_total",
    "Tokens consumed by agent calls",
    labelnames=("agent", "direction"),
)

PLAN_VALIDATION_TOTAL = Counter(
    "conductor_plan_validation_total",
    "Plan validation outcomes (valid/warnings/cycle)",
    labelnames=("outcome",),
)

PLAN_ASSIGNMENTS = Histogram(
    "conductor_plan_assignments",
    "Number of assignments per accepted plan",
    buckets=(0, 1, 2, 3, 4, 5, 8, 13, 21),
)

SCHEDULER_FIRES_TOTAL = Counter(
    "conductor_scheduler_fires_total",
    "Scheduled task firings grouped by schedule type and outcome",
    labelnames=("schedule_type", "outcome"),
)

EVENT_DELIVERY_FAILURES_TOTAL = Counter(
    "conductor_event_delivery_failures_total",
    "Outward event deliveries that raised",
    labelnames=("target",),
)


def mark_task_run_started() -> None:
    TASK_RUNS_ACTIVE.inc()
    TASK_RUNS_TOTAL.labels(status="started").inc()


def mark_task_run_finished(*, status: str, latency: float | None = None) -> None:
    TASK_RUNS_ACTIVE.dec()
    TASK_RUNS_TOTAL.labels(status=status).inc()
    if latency is not None:
        TASK_RUN_LATENCY_SECONDS.labels(status=status).observe(max(0.0, latency))


def increment_assignment_event(*, agent: str, event: str) -> None:
    ASSIGNMENT_EVENTS_TOTAL.labels(agent=agent, event=event).inc()


def observe_agent_execution(*, agent: str, duration_ms: int, tokens_in: int = 0, tokens_out: int = 0) -> None:
    AGENT_EXECUTION_LATENCY_SECONDS.labels(agent=agent).observe(max(0, duration_ms) / 1000.0)
    if tokens_in:
        AGENT_TOKENS_TOTAL.labels(agent=agent, direction="in").inc(tokens_in)
    if tokens_out:
        AGENT_TOKENS_TOTAL.labels(agent=agent, direction="out").inc(tokens_out)


def record_plan_validation(*, outcome: str, assignments: int | None = None) -> None:
    PLAN_VALIDATION_TOTAL.labels(outcome=outcome).inc()
    if assignments is not None:
        PLAN_ASSIGNMENTS.observe(max(0, assignments))


def record_scheduler_fire(*, schedule_type: str, outcome: str) -> None:
    SCHEDULER_FIRES_TOTAL.labels(schedule_type=schedule_type, outcome=outcome).inc()


def increment_event_delivery_failure(*, target: str) -> None:
    EVENT_DELIVERY_FAILURES_TOTAL.labels(target=target).inc()
