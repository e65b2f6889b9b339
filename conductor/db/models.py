from __future__ import annotations

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    SmallInteger,
    String,
    Table,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB

metadata = MetaData()

task_runs = Table(
    "task_runs",
    metadata,
    Column("id", String(length=64), primary_key=True),
    Column("title", String(length=255), nullable=False),
    Column("user_prompt", Text(), nullable=False),
    Column("control_hub_agent_id", String(length=128), nullable=True),
    Column("workspace_id", String(length=128), nullable=True),
    Column("source_task_run_id", String(length=64), nullable=True),
    Column("status", String(length=32), nullable=False, server_default="pending"),
    Column("task_plan", JSONB(astext_type=Text()), nullable=True),
    Column("result_summary", Text(), nullable=True),
    Column("total_tokens_in", BigInteger(), nullable=False, server_default=text("0")),
    Column("total_tokens_out", BigInteger(), nullable=False, server_default=text("0")),
    Column("total_cache_creation_tokens", BigInteger(), nullable=False, server_default=text("0")),
    Column("total_cache_read_tokens", BigInteger(), nullable=False, server_default=text("0")),
    Column("total_duration_ms", BigInteger(), nullable=False, server_default=text("0")),
    Column("rating", SmallInteger(), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("schedule_type", String(length=16), nullable=False, server_default="none"),
    Column("scheduled_time", DateTime(timezone=True), nullable=True),
    Column("recurrence_pattern", JSONB(astext_type=Text()), nullable=True),
    Column("next_run_at", DateTime(timezone=True), nullable=True),
    Column("is_paused", Boolean(), nullable=False, server_default=text("false")),
)
Index("ix_task_runs_workspace_id", task_runs.c.workspace_id)
Index("ix_task_runs_status", task_runs.c.status)
Index("ix_task_runs_next_run_at", task_runs.c.next_run_at)

task_assignments = Table(
    "task_assignments",
    metadata,
    Column("id", String(length=64), primary_key=True),
    Column(
        "task_run_id",
        String(length=64),
        ForeignKey("task_runs.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("agent_id", String(length=128), nullable=False),
    Column("agent_name", String(length=255), nullable=False),
    Column("sequence_order", Integer(), nullable=False),
    Column("depends_on", JSONB(astext_type=Text()), nullable=False, server_default=text("'[]'::jsonb")),
    Column("matched_skills", JSONB(astext_type=Text()), nullable=False, server_default=text("'[]'::jsonb")),
    Column("selection_reason", Text(), nullable=True),
    Column("is_terminal_step", Boolean(), nullable=False, server_default=text("false")),
    Column("task_description", Text(), nullable=False, server_default=""),
    Column("input_text", Text(), nullable=False, server_default=""),
    Column("output_text", Text(), nullable=True),
    Column("status", String(length=32), nullable=False, server_default="pending"),
    Column("model_used", String(length=128), nullable=True),
    Column("tokens_in", BigInteger(), nullable=False, server_default=text("0")),
    Column("tokens_out", BigInteger(), nullable=False, server_default=text("0")),
    Column("cache_creation_tokens", BigInteger(), nullable=False, server_default=text("0")),
    Column("cache_read_tokens", BigInteger(), nullable=False, server_default=text("0")),
    Column("started_at", DateTime(timezone=True), nullable=True),
    Column("completed_at", DateTime(timezone=True), nullable=True),
    Column("duration_ms", BigInteger(), nullable=False, server_default=text("0")),
    Column("error_message", Text(), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)
Index("ix_task_assignments_task_run_id", task_assignments.c.task_run_id)
Index("ix_task_assignments_sequence", task_assignments.c.task_run_id, task_assignments.c.sequence_order)

__all__ = ["metadata", "task_assignments", "task_runs"]
