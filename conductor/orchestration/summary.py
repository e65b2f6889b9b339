from __future__ import annotations

from pathlib import Path
from typing import Sequence

from .enums import AssignmentStatus
from .state import TaskAssignment, TaskRun

_DIGEST_EXCERPT_CHARS = 500


def format_duration(duration_ms: int) -> str:
    if duration_ms < 1000:
        return f"{duration_ms}ms"
    if duration_ms < 60_000:
        return f"{duration_ms / 1000:.1f}s"
    minutes, remainder = divmod(duration_ms // 1000, 60)
    return f"{minutes}m {remainder}s"


def local_digest(assignments: Sequence[TaskAssignment]) -> str:
    """Plain summary assembled from assignment outputs, used when the control hub cannot summarize."""
    lines = []
    for assignment in sorted(assignments, key=lambda item: item.sequence_order):
        if assignment.status is not AssignmentStatus.COMPLETED or not assignment.output_text:
            continue
        excerpt = assignment.output_text.strip()
        if len(excerpt) > _DIGEST_EXCERPT_CHARS:
            excerpt = excerpt[:_DIGEST_EXCERPT_CHARS].rstrip() + "..."
        lines.append(f"- {assignment.agent_name}: {excerpt}")
    if not lines:
        return "No agent produced output."
    return "Agent results:\n" + "\n".join(lines)


def outcome_notes(assignments: Sequence[TaskAssignment]) -> list[str]:
    notes = []
    for assignment in sorted(assignments, key=lambda item: item.sequence_order):
        if assignment.status is AssignmentStatus.SKIPPED:
            reason = assignment.error_message or "a dependency did not complete"
            notes.append(f"Skipped {assignment.agent_name} (step {assignment.sequence_order}): {reason}")
        elif assignment.status is AssignmentStatus.FAILED:
            notes.append(
                f"Failed {assignment.agent_name} (step {assignment.sequence_order}): "
                f"{assignment.error_message or 'unknown error'}"
            )
        elif assignment.status is AssignmentStatus.CANCELLED:
            notes.append(f"Cancelled {assignment.agent_name} (step {assignment.sequence_order})")
    return notes


def compose_result_summary(summary: str, assignments: Sequence[TaskAssignment]) -> str:
    notes = outcome_notes(assignments)
    if not notes:
        return summary
    return summary.rstrip() + "\n\nNotes:\n" + "\n".join(f"- {note}" for note in notes)


def render_summary_markdown(run: TaskRun, assignments: Sequence[TaskAssignment]) -> str:
    lines = [
        f"# {run.title}",
        "",
        f"**Status:** {run.status.value}",
        "",
        "## Prompt",
        "",
        run.user_prompt,
        "",
        "## Summary",
        "",
        run.result_summary or "Summary not available",
        "",
        "## Agents",
        "",
        "| # | Agent | Model | Tokens In | Tokens Out | Duration | Status |",
        "|---|-------|-------|-----------|------------|----------|--------|",
    ]
    for assignment in sorted(assignments, key=lambda item: item.sequence_order):
        lines.append(
            f"| {assignment.sequence_order} | {assignment.agent_name} | {assignment.model_used or '-'} "
            f"| {assignment.tokens_in} | {assignment.tokens_out} | {format_duration(assignment.duration_ms)} "
            f"| {assignment.status.value} |"
        )
    lines.extend(
        [
            "",
            f"**Total tokens:** {run.total_tokens_in} in / {run.total_tokens_out} out",
            f"**Total duration:** {format_duration(run.total_duration_ms)}",
            "",
        ]
    )
    return "\n".join(lines)


def write_summary_file(output_dir: str | Path, run: TaskRun, assignments: Sequence[TaskAssignment]) -> Path:
    target_dir = Path(output_dir) / run.id
    target_dir.mkdir(parents=True, exist_ok=True)
    path = target_dir / "summary.md"
    path.write_text(render_summary_markdown(run, assignments), encoding="utf-8")
    return path


__all__ = [
    "compose_result_summary",
    "format_duration",
    "local_digest",
    "outcome_notes",
    "render_summary_markdown",
    "write_summary_file",
]
