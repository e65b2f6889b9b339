from __future__ import annotations

import asyncio
import inspect
import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Iterable, Mapping

import asyncpg

from ..core.config import Settings
from ..core.errors import TaskRunNotFoundError
from ..core.logging import get_logger
from .enums import TERMINAL_RUN_STATUSES, AssignmentStatus, ScheduleType, TaskRunStatus
from .state import RecurrencePattern, TaskAssignment, TaskRun, utcnow

logger = get_logger(name=__name__)

_STATE_FIELDS = (
    "title",
    "control_hub_agent_id",
    "status",
    "task_plan",
    "result_summary",
    "total_tokens_in",
    "total_tokens_out",
    "total_cache_creation_tokens",
    "total_cache_read_tokens",
    "total_duration_ms",
)

_SCHEDULE_FIELDS = ("schedule_type", "scheduled_time", "recurrence_pattern", "next_run_at", "is_paused")


class TaskRunStore:
    """Persistence boundary for task runs and their assignments.

    Status/result writes and schedule writes touch disjoint fields so the
    orchestrator and the scheduling API never overwrite each other.
    """

    async def create_task_run(self, run: TaskRun) -> TaskRun:
        raise NotImplementedError

    async def get_task_run(self, task_run_id: str) -> TaskRun | None:
        raise NotImplementedError

    async def list_task_runs(self, *, workspace_id: str | None = None, limit: int | None = None) -> list[TaskRun]:
        raise NotImplementedError

    async def save_task_run_state(self, run: TaskRun) -> None:
        raise NotImplementedError

    async def update_schedule(
        self,
        task_run_id: str,
        *,
        schedule_type: ScheduleType,
        scheduled_time: datetime | None,
        recurrence_pattern: RecurrencePattern | None,
        next_run_at: datetime | None,
        is_paused: bool,
    ) -> TaskRun:
        raise NotImplementedError

    async def set_rating(self, task_run_id: str, rating: int | None) -> TaskRun:
        raise NotImplementedError

    async def delete_task_run(self, task_run_id: str) -> bool:
        raise NotImplementedError

    async def create_assignments(self, assignments: Iterable[TaskAssignment]) -> None:
        raise NotImplementedError

    async def save_assignment(self, assignment: TaskAssignment) -> None:
        raise NotImplementedError

    async def list_assignments(self, task_run_id: str) -> list[TaskAssignment]:
        raise NotImplementedError

    async def list_incomplete_task_runs(self) -> list[TaskRun]:
        raise NotImplementedError

    async def list_due_schedules(self, now: datetime) -> list[TaskRun]:
        raise NotImplementedError

    async def close(self) -> None:
        return None

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["TaskRunStore"]:
        try:
            yield self
        finally:
            await self.close()


class InMemoryTaskRunStore(TaskRunStore):
    def __init__(self) -> None:
        self._runs: dict[str, TaskRun] = {}
        self._assignments: dict[str, dict[str, TaskAssignment]] = {}
        self._lock = asyncio.Lock()

    async def create_task_run(self, run: TaskRun) -> TaskRun:
        async with self._lock:
            self._runs[run.id] = run.model_copy(deep=True)
            self._assignments.setdefault(run.id, {})
        return run.model_copy(deep=True)

    async def get_task_run(self, task_run_id: str) -> TaskRun | None:
        async with self._lock:
            run = self._runs.get(task_run_id)
            return None if run is None else run.model_copy(deep=True)

    async def list_task_runs(self, *, workspace_id: str | None = None, limit: int | None = None) -> list[TaskRun]:
        async with self._lock:
            runs = [
                run.model_copy(deep=True)
                for run in self._runs.values()
                if workspace_id is None or run.workspace_id == workspace_id
            ]
        runs.sort(key=lambda item: item.created_at, reverse=True)
        return runs[:limit] if limit else runs

    async def save_task_run_state(self, run: TaskRun) -> None:
        async with self._lock:
            stored = self._require(run.id)
            for name in _STATE_FIELDS:
                setattr(stored, name, _copy_value(getattr(run, name)))
            stored.updated_at = utcnow()

    async def update_schedule(
        self,
        task_run_id: str,
        *,
        schedule_type: ScheduleType,
        scheduled_time: datetime | None,
        recurrence_pattern: RecurrencePattern | None,
        next_run_at: datetime | None,
        is_paused: bool,
    ) -> TaskRun:
        async with self._lock:
            stored = self._require(task_run_id)
            stored.schedule_type = schedule_type
            stored.scheduled_time = scheduled_time
            stored.recurrence_pattern = recurrence_pattern
            stored.next_run_at = next_run_at
            stored.is_paused = is_paused
            stored.updated_at = utcnow()
            return stored.model_copy(deep=True)

    async def set_rating(self, task_run_id: str, rating: int | None) -> TaskRun:
        async with self._lock:
            stored = self._require(task_run_id)
            stored.rating = rating
            stored.updated_at = utcnow()
            return stored.model_copy(deep=True)

    async def delete_task_run(self, task_run_id: str) -> bool:
        async with self._lock:
            self._assignments.pop(task_run_id, None)
            return self._runs.pop(task_run_id, None) is not None

    async def create_assignments(self, assignments: Iterable[TaskAssignment]) -> None:
        async with self._lock:
            for assignment in assignments:
                self._require(assignment.task_run_id)
                self._assignments.setdefault(assignment.task_run_id, {})[assignment.id] = assignment.model_copy(deep=True)

    async def save_assignment(self, assignment: TaskAssignment) -> None:
        async with self._lock:
            bucket = self._assignments.setdefault(assignment.task_run_id, {})
            bucket[assignment.id] = assignment.model_copy(deep=True)

    async def list_assignments(self, task_run_id: str) -> list[TaskAssignment]:
        async with self._lock:
            bucket = self._assignments.get(task_run_id, {})
            assignments = [assignment.model_copy(deep=True) for assignment in bucket.values()]
        assignments.sort(key=lambda item: (item.sequence_order, item.created_at))
        return assignments

    async def list_incomplete_task_runs(self) -> list[TaskRun]:
        async with self._lock:
            runs = [run.model_copy(deep=True) for run in self._runs.values() if run.status not in TERMINAL_RUN_STATUSES]
        runs.sort(key=lambda item: item.created_at)
        return runs

    async def list_due_schedules(self, now: datetime) -> list[TaskRun]:
        async with self._lock:
            due = [
                run.model_copy(deep=True)
                for run in self._runs.values()
                if run.schedule_type is not ScheduleType.NONE
                and not run.is_paused
                and run.next_run_at is not None
                and run.next_run_at <= now
            ]
        due.sort(key=lambda item: item.next_run_at)
        return due

    def _require(self, task_run_id: str) -> TaskRun:
        run = self._runs.get(task_run_id)
        if run is None:
            raise TaskRunNotFoundError(task_run_id)
        return run


def _copy_value(value: Any) -> Any:
    if isinstance(value, dict):
        return json.loads(json.dumps(value))
    return value


class PostgresTaskRunStore(TaskRunStore):
    _RUN_COLUMNS = """
        id, title, user_prompt, control_hub_agent_id, workspace_id, source_task_run_id, status,
        task_plan, result_summary, total_tokens_in, total_tokens_out, total_cache_creation_tokens,
        total_cache_read_tokens, total_duration_ms, rating, created_at, updated_at, schedule_type,
        scheduled_time, recurrence_pattern, next_run_at, is_paused
    """

    _ASSIGNMENT_COLUMNS = """
        id, task_run_id, agent_id, agent_name, sequence_order, depends_on, matched_skills,
        selection_reason, is_terminal_step, task_description, input_text, output_text, status,
        model_used, tokens_in, tokens_out, cache_creation_tokens, cache_read_tokens, started_at,
        completed_at, duration_ms, error_message, created_at
    """

    def __init__(self, pool: Any) -> None:
        self._pool_or_coroutine = pool
        self._pool: Any | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "PostgresTaskRunStore":
        pool = asyncpg.create_pool(
            dsn=str(settings.postgres.dsn),
            min_size=settings.postgres.pool_min_size,
            max_size=settings.postgres.pool_max_size,
        )
        return cls(pool)

    async def create_task_run(self, run: TaskRun) -> TaskRun:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            await connection.execute(
                f"""
                INSERT INTO task_runs ({self._RUN_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9, $10, $11, $12, $13, $14, $15, $16, $17,
                        $18, $19, $20::jsonb, $21, $22)
                """,
                run.id,
                run.title,
                run.user_prompt,
                run.control_hub_agent_id,
                run.workspace_id,
                run.source_task_run_id,
                run.status.value,
                _dump_json(run.task_plan),
                run.result_summary,
                run.total_tokens_in,
                run.total_tokens_out,
                run.total_cache_creation_tokens,
                run.total_cache_read_tokens,
                run.total_duration_ms,
                run.rating,
                run.created_at,
                run.updated_at,
                run.schedule_type.value,
                run.scheduled_time,
                _dump_json(run.recurrence_pattern.model_dump(mode="json") if run.recurrence_pattern else None),
                run.next_run_at,
                run.is_paused,
            )
        return run.model_copy(deep=True)

    async def get_task_run(self, task_run_id: str) -> TaskRun | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            row = await connection.fetchrow(f"SELECT {self._RUN_COLUMNS} FROM task_runs WHERE id = $1", task_run_id)
        return None if row is None else _row_to_run(row)

    async def list_task_runs(self, *, workspace_id: str | None = None, limit: int | None = None) -> list[TaskRun]:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            rows = await connection.fetch(
                f"""
                SELECT {self._RUN_COLUMNS} FROM task_runs
                WHERE ($1::text IS NULL OR workspace_id = $1)
                ORDER BY created_at DESC
                LIMIT $2
                """,
                workspace_id,
                limit,
            )
        return [_row_to_run(row) for row in rows]

    async def save_task_run_state(self, run: TaskRun) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            result = await connection.execute(
                """
                UPDATE task_runs
                SET title = $2,
                    control_hub_agent_id = $3,
                    status = $4,
                    task_plan = $5::jsonb,
                    result_summary = $6,
                    total_tokens_in = $7,
                    total_tokens_out = $8,
                    total_cache_creation_tokens = $9,
                    total_cache_read_tokens = $10,
                    total_duration_ms = $11,
                    updated_at = $12
                WHERE id = $1
                """,
                run.id,
                run.title,
                run.control_hub_agent_id,
                run.status.value,
                _dump_json(run.task_plan),
                run.result_summary,
                run.total_tokens_in,
                run.total_tokens_out,
                run.total_cache_creation_tokens,
                run.total_cache_read_tokens,
                run.total_duration_ms,
                utcnow(),
            )
        _require_updated(result, run.id)

    async def update_schedule(
        self,
        task_run_id: str,
        *,
        schedule_type: ScheduleType,
        scheduled_time: datetime | None,
        recurrence_pattern: RecurrencePattern | None,
        next_run_at: datetime | None,
        is_paused: bool,
    ) -> TaskRun:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            row = await connection.fetchrow(
                f"""
                UPDATE task_runs
                SET schedule_type = $2,
                    scheduled_time = $3,
                    recurrence_pattern = $4::jsonb,
                    next_run_at = $5,
                    is_paused = $6,
                    updated_at = $7
                WHERE id = $1
                RETURNING {self._RUN_COLUMNS}
                """,
                task_run_id,
                schedule_type.value,
                scheduled_time,
                _dump_json(recurrence_pattern.model_dump(mode="json") if recurrence_pattern else None),
                next_run_at,
                is_paused,
                utcnow(),
            )
        if row is None:
            raise TaskRunNotFoundError(task_run_id)
        return _row_to_run(row)

    async def set_rating(self, task_run_id: str, rating: int | None) -> TaskRun:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            row = await connection.fetchrow(
                f"""
                UPDATE task_runs SET rating = $2, updated_at = $3
                WHERE id = $1
                RETURNING {self._RUN_COLUMNS}
                """,
                task_run_id,
                rating,
                utcnow(),
            )
        if row is None:
            raise TaskRunNotFoundError(task_run_id)
        return _row_to_run(row)

    async def delete_task_run(self, task_run_id: str) -> bool:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            async with connection.transaction():
                await connection.execute("DELETE FROM task_assignments WHERE task_run_id = $1", task_run_id)
                result = await connection.execute("DELETE FROM task_runs WHERE id = $1", task_run_id)
        return result.endswith(" 1")

    async def create_assignments(self, assignments: Iterable[TaskAssignment]) -> None:
        records = [_assignment_args(assignment) for assignment in assignments]
        if not records:
            return
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            await connection.executemany(
                f"""
                INSERT INTO task_assignments ({self._ASSIGNMENT_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7::jsonb, $8, $9, $10, $11, $12, $13, $14, $15, $16,
                        $17, $18, $19, $20, $21, $22, $23)
                """,
                records,
            )

    async def save_assignment(self, assignment: TaskAssignment) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            await connection.execute(
                f"""
                INSERT INTO task_assignments ({self._ASSIGNMENT_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7::jsonb, $8, $9, $10, $11, $12, $13, $14, $15, $16,
                        $17, $18, $19, $20, $21, $22, $23)
                ON CONFLICT (id) DO UPDATE SET
                    input_text = EXCLUDED.input_text,
                    output_text = EXCLUDED.output_text,
                    status = EXCLUDED.status,
                    model_used = EXCLUDED.model_used,
                    tokens_in = EXCLUDED.tokens_in,
                    tokens_out = EXCLUDED.tokens_out,
                    cache_creation_tokens = EXCLUDED.cache_creation_tokens,
                    cache_read_tokens = EXCLUDED.cache_read_tokens,
                    started_at = EXCLUDED.started_at,
                    completed_at = EXCLUDED.completed_at,
                    duration_ms = EXCLUDED.duration_ms,
                    error_message = EXCLUDED.error_message
                """,
                *_assignment_args(assignment),
            )

    async def list_assignments(self, task_run_id: str) -> list[TaskAssignment]:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            rows = await connection.fetch(
                f"""
                SELECT {self._ASSIGNMENT_COLUMNS} FROM task_assignments
                WHERE task_run_id = $1
                ORDER BY sequence_order ASC, created_at ASC
                """,
                task_run_id,
            )
        return [_row_to_assignment(row) for row in rows]

    async def list_incomplete_task_runs(self) -> list[TaskRun]:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            rows = await connection.fetch(
                f"""
                SELECT {self._RUN_COLUMNS} FROM task_runs
                WHERE status <> ALL($1::text[])
                ORDER BY created_at ASC
                """,
                [status.value for status in TERMINAL_RUN_STATUSES],
            )
        return [_row_to_run(row) for row in rows]

    async def list_due_schedules(self, now: datetime) -> list[TaskRun]:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            rows = await connection.fetch(
                f"""
                SELECT {self._RUN_COLUMNS} FROM task_runs
                WHERE schedule_type <> 'none'
                  AND is_paused = FALSE
                  AND next_run_at IS NOT NULL
                  AND next_run_at <= $1
                ORDER BY next_run_at ASC
                """,
                now,
            )
        return [_row_to_run(row) for row in rows]

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["PostgresTaskRunStore"]:
        try:
            await self._ensure_pool()
            yield self
        finally:
            await self.close()

    async def _ensure_pool(self) -> Any:
        if self._pool is not None:
            return self._pool
        candidate = self._pool_or_coroutine
        if inspect.isawaitable(candidate):
            candidate = await candidate
        if not isinstance(candidate, asyncpg.Pool):
            raise RuntimeError("Invalid asyncpg pool supplied to PostgresTaskRunStore")
        self._pool = candidate
        return self._pool


def _dump_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value)


def _load_json(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:  # pragma: no cover - corrupt column
            logger.warning("stored_json_unreadable")
            return None
    return value


def _require_updated(result: str, task_run_id: str) -> None:
    if result.endswith(" 0"):
        raise TaskRunNotFoundError(task_run_id)


def _row_to_run(row: Mapping[str, Any]) -> TaskRun:
    pattern_payload = _load_json(row["recurrence_pattern"])
    return TaskRun(
        id=row["id"],
        title=row["title"],
        user_prompt=row["user_prompt"],
        control_hub_agent_id=row["control_hub_agent_id"],
        workspace_id=row["workspace_id"],
        source_task_run_id=row["source_task_run_id"],
        status=TaskRunStatus(row["status"]),
        task_plan=_load_json(row["task_plan"]),
        result_summary=row["result_summary"],
        total_tokens_in=row["total_tokens_in"],
        total_tokens_out=row["total_tokens_out"],
        total_cache_creation_tokens=row["total_cache_creation_tokens"],
        total_cache_read_tokens=row["total_cache_read_tokens"],
        total_duration_ms=row["total_duration_ms"],
        rating=row["rating"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        schedule_type=ScheduleType(row["schedule_type"]),
        scheduled_time=row["scheduled_time"],
        recurrence_pattern=RecurrencePattern.model_validate(pattern_payload) if pattern_payload else None,
        next_run_at=row["next_run_at"],
        is_paused=row["is_paused"],
    )


def _assignment_args(assignment: TaskAssignment) -> tuple[Any, ...]:
    return (
        assignment.id,
        assignment.task_run_id,
        assignment.agent_id,
        assignment.agent_name,
        assignment.sequence_order,
        json.dumps(assignment.depends_on),
        json.dumps(assignment.matched_skills),
        assignment.selection_reason,
        assignment.is_terminal_step,
        assignment.task_description,
        assignment.input_text,
        assignment.output_text,
        assignment.status.value,
        assignment.model_used,
        assignment.tokens_in,
        assignment.tokens_out,
        assignment.cache_creation_tokens,
        assignment.cache_read_tokens,
        assignment.started_at,
        assignment.completed_at,
        assignment.duration_ms,
        assignment.error_message,
        assignment.created_at,
    )


def _row_to_assignment(row: Mapping[str, Any]) -> TaskAssignment:
    return TaskAssignment(
        id=row["id"],
        task_run_id=row["task_run_id"],
        agent_id=row["agent_id"],
        agent_name=row["agent_name"],
        sequence_order=row["sequence_order"],
        depends_on=list(_load_json(row["depends_on"]) or []),
        matched_skills=list(_load_json(row["matched_skills"]) or []),
        selection_reason=row["selection_reason"],
        is_terminal_step=row["is_terminal_step"],
        task_description=row["task_description"],
        input_text=row["input_text"],
        output_text=row["output_text"],
        status=AssignmentStatus(row["status"]),
        model_used=row["model_used"],
        tokens_in=row["tokens_in"],
        tokens_out=row["tokens_out"],
        cache_creation_tokens=row["cache_creation_tokens"],
        cache_read_tokens=row["cache_read_tokens"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        duration_ms=row["duration_ms"],
        error_message=row["error_message"],
        created_at=row["created_at"],
    )


def build_task_run_store(settings: Settings) -> TaskRunStore:
    if settings.environment == "test":
        return InMemoryTaskRunStore()
    return PostgresTaskRunStore.from_settings(settings)


__all__ = [
    "InMemoryTaskRunStore",
    "PostgresTaskRunStore",
    "TaskRunStore",
    "build_task_run_store",
]
