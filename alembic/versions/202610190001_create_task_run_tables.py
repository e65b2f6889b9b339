"""create task run tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 09:30:00
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "202610190001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "task_runs",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("user_prompt", sa.Text(), nullable=False),
        sa.Column("control_hub_agent_id", sa.String(length=128), nullable=True),
        sa.Column("workspace_id", sa.String(length=128), nullable=True),
        sa.Column("source_task_run_id", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("task_plan", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("result_summary", sa.Text(), nullable=True),
        sa.Column("total_tokens_in", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_tokens_out", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_cache_creation_tokens", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_cache_read_tokens", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_duration_ms", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("rating", sa.SmallInteger(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("schedule_type", sa.String(length=16), nullable=False, server_default="none"),
        sa.Column("scheduled_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recurrence_pattern", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_paused", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    )
    op.create_index("ix_task_runs_workspace_id", "task_runs", ["workspace_id"], unique=False)
    op.create_index("ix_task_runs_status", "task_runs", ["status"], unique=False)
    op.create_index("ix_task_runs_next_run_at", "task_runs", ["next_run_at"], unique=False)

    op.create_table(
        "task_assignments",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("task_run_id", sa.String(length=64), nullable=False),
        sa.Column("agent_id", sa.String(length=128), nullable=False),
        sa.Column("agent_name", sa.String(length=255), nullable=False),
        sa.Column("sequence_order", sa.Integer(), nullable=False),
        sa.Column("depends_on", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column(
            "matched_skills",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("selection_reason", sa.Text(), nullable=True),
        sa.Column("is_terminal_step", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("task_description", sa.Text(), nullable=False, server_default=""),
        sa.Column("input_text", sa.Text(), nullable=False, server_default=""),
        sa.Column("output_text", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("model_used", sa.String(length=128), nullable=True),
        sa.Column("tokens_in", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("tokens_out", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("cache_creation_tokens", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("cache_read_tokens", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["task_run_id"], ["task_runs.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_task_assignments_task_run_id", "task_assignments", ["task_run_id"], unique=False)
    op.create_index(
        "ix_task_assignments_sequence",
        "task_assignments",
        ["task_run_id", "sequence_order"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_task_assignments_sequence", table_name="task_assignments")
    op.drop_index("ix_task_assignments_task_run_id", table_name="task_assignments")
    op.drop_table("task_assignments")
    op.drop_index("ix_task_runs_next_run_at", table_name="task_runs")
    op.drop_index("ix_task_runs_status", table_name="task_runs")
    op.drop_index("ix_task_runs_workspace_id", table_name="task_runs")
    op.drop_table("task_runs")
