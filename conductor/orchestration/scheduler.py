from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from pydantic import ValidationError

from ..core.config import SchedulerSettings
from ..core.errors import ConfigurationError, OrchestrationInProgressError, ScheduleError, TaskRunNotFoundError
from ..core.logging import get_logger
from ..core.metrics import record_scheduler_fire
from .enums import ScheduleType
from .orchestrator import Orchestrator
from .recurrence import next_occurrence
from .state import RecurrencePattern, TaskRun, utcnow
from .store import TaskRunStore

logger = get_logger(name=__name__)


def coerce_pattern(pattern: RecurrencePattern | Mapping[str, Any] | None) -> RecurrencePattern:
    if pattern is None:
        raise ScheduleError("Recurring schedules require a recurrence pattern")
    if isinstance(pattern, RecurrencePattern):
        return pattern
    try:
        return RecurrencePattern.model_validate(dict(pattern))
    except ValidationError as exc:
        raise ScheduleError(f"Invalid recurrence pattern: {exc.errors()[0].get('msg', exc)}") from exc


def preview_occurrences(
    pattern: RecurrencePattern | Mapping[str, Any],
    *,
    after: datetime,
    count: int = 1,
) -> list[datetime]:
    resolved = coerce_pattern(pattern)
    occurrences: list[datetime] = []
    cursor = after
    for _ in range(max(1, count)):
        cursor = next_occurrence(resolved, cursor)
        occurrences.append(cursor)
    return occurrences


class TaskScheduler:
    """Fires scheduled task runs when their ``next_run_at`` comes due.

    The run that owns a schedule acts as a template: each fire starts a fresh
    run from its prompt and records the template id as ``source_task_run_id``.
    """

    def __init__(
        self,
        *,
        orchestrator: Orchestrator,
        store: TaskRunStore | None = None,
        settings: SchedulerSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._store = store or orchestrator.store
        self._settings = settings or SchedulerSettings()
        self._clock = clock or utcnow
        self._last_fired: dict[str, str] = {}

    @property
    def poll_interval_seconds(self) -> float:
        return self._settings.poll_interval_seconds

    async def schedule_task(
        self,
        task_run_id: str,
        *,
        schedule_type: ScheduleType,
        scheduled_time: datetime | None = None,
        recurrence_pattern: RecurrencePattern | Mapping[str, Any] | None = None,
    ) -> TaskRun:
        if schedule_type is ScheduleType.NONE:
            return await self.clear_schedule(task_run_id)
        await self._require_run(task_run_id)
        if self._orchestrator.is_active(task_run_id):
            raise ScheduleError("A task run cannot be scheduled while it is running")

        now = self._clock()
        if schedule_type is ScheduleType.ONCE:
            if scheduled_time is None:
                raise ScheduleError("One-time schedules require scheduled_time")
            when = _as_utc(scheduled_time)
            if when <= now:
                raise ScheduleError("scheduled_time must be in the future")
            updated = await self._store.update_schedule(
                task_run_id,
                schedule_type=ScheduleType.ONCE,
                scheduled_time=when,
                recurrence_pattern=None,
                next_run_at=when,
                is_paused=False,
            )
        else:
            pattern = coerce_pattern(recurrence_pattern)
            updated = await self._store.update_schedule(
                task_run_id,
                schedule_type=ScheduleType.RECURRING,
                scheduled_time=None,
                recurrence_pattern=pattern,
                next_run_at=next_occurrence(pattern, now),
                is_paused=False,
            )
        logger.info(
            "schedule_set",
            task_run_id=task_run_id,
            schedule_type=schedule_type.value,
            next_run_at=updated.next_run_at.isoformat() if updated.next_run_at else None,
        )
        return updated

    async def clear_schedule(self, task_run_id: str) -> TaskRun:
        await self._require_run(task_run_id)
        updated = await self._store.update_schedule(
            task_run_id,
            schedule_type=ScheduleType.NONE,
            scheduled_time=None,
            recurrence_pattern=None,
            next_run_at=None,
            is_paused=False,
        )
        self._last_fired.pop(task_run_id, None)
        logger.info("schedule_cleared", task_run_id=task_run_id)
        return updated

    async def pause(self, task_run_id: str) -> TaskRun:
        run = await self._require_scheduled(task_run_id)
        next_run_at = None if run.schedule_type is ScheduleType.RECURRING else run.next_run_at
        updated = await self._store.update_schedule(
            task_run_id,
            schedule_type=run.schedule_type,
            scheduled_time=run.scheduled_time,
            recurrence_pattern=run.recurrence_pattern,
            next_run_at=next_run_at,
            is_paused=True,
        )
        logger.info("schedule_paused", task_run_id=task_run_id)
        return updated

    async def resume(self, task_run_id: str) -> TaskRun:
        run = await self._require_scheduled(task_run_id)
        next_run_at = run.next_run_at
        if run.schedule_type is ScheduleType.RECURRING and run.recurrence_pattern is not None:
            next_run_at = next_occurrence(run.recurrence_pattern, self._clock())
        updated = await self._store.update_schedule(
            task_run_id,
            schedule_type=run.schedule_type,
            scheduled_time=run.scheduled_time,
            recurrence_pattern=run.recurrence_pattern,
            next_run_at=next_run_at,
            is_paused=False,
        )
        logger.info("schedule_resumed", task_run_id=task_run_id)
        return updated

    def preview(
        self,
        pattern: RecurrencePattern | Mapping[str, Any],
        *,
        count: int = 1,
        after: datetime | None = None,
    ) -> list[datetime]:
        return preview_occurrences(pattern, after=after or self._clock(), count=count)

    async def tick(self, now: datetime | None = None) -> list[TaskRun]:
        """Fire every due schedule once. Returns the runs started by this tick."""
        current = _as_utc(now or self._clock())
        started: list[TaskRun] = []
        for schedule in await self._store.list_due_schedules(current):
            schedule_type = schedule.schedule_type.value
            blocker = self._blocking_run(schedule)
            if blocker is not None:
                logger.info("scheduled_fire_deferred", task_run_id=schedule.id, active_task_run_id=blocker)
                record_scheduler_fire(schedule_type=schedule_type, outcome="deferred")
                continue
            try:
                run = await self._orchestrator.start(
                    schedule.user_prompt,
                    title=schedule.title,
                    workspace_id=schedule.workspace_id,
                    source_task_run_id=schedule.id,
                )
            except OrchestrationInProgressError as exc:
                logger.info("scheduled_fire_deferred", task_run_id=schedule.id, active_task_run_id=exc.active_task_run_id)
                record_scheduler_fire(schedule_type=schedule_type, outcome="deferred")
                continue
            except ConfigurationError as exc:
                logger.warning("scheduled_fire_failed", task_run_id=schedule.id, error=str(exc))
                record_scheduler_fire(schedule_type=schedule_type, outcome="failed")
                continue

            self._last_fired[schedule.id] = run.id
            await self._advance(schedule, current)
            record_scheduler_fire(schedule_type=schedule_type, outcome="fired")
            logger.info("scheduled_run_started", task_run_id=schedule.id, started_task_run_id=run.id)
            started.append(run)
        return started

    async def _advance(self, schedule: TaskRun, now: datetime) -> None:
        if schedule.schedule_type is ScheduleType.RECURRING and schedule.recurrence_pattern is not None:
            await self._store.update_schedule(
                schedule.id,
                schedule_type=ScheduleType.RECURRING,
                scheduled_time=schedule.scheduled_time,
                recurrence_pattern=schedule.recurrence_pattern,
                next_run_at=next_occurrence(schedule.recurrence_pattern, now),
                is_paused=False,
            )
            return
        await self._store.update_schedule(
            schedule.id,
            schedule_type=ScheduleType.NONE,
            scheduled_time=None,
            recurrence_pattern=None,
            next_run_at=None,
            is_paused=False,
        )

    def _blocking_run(self, schedule: TaskRun) -> str | None:
        previous = self._last_fired.get(schedule.id)
        if previous is not None and self._orchestrator.is_active(previous):
            return previous
        if self._orchestrator.is_active(schedule.id):
            return schedule.id
        return self._orchestrator.active_run_for_workspace(schedule.workspace_id)

    async def _require_run(self, task_run_id: str) -> TaskRun:
        run = await self._store.get_task_run(task_run_id)
        if run is None:
            raise TaskRunNotFoundError(task_run_id)
        return run

    async def _require_scheduled(self, task_run_id: str) -> TaskRun:
        run = await self._require_run(task_run_id)
        if run.schedule_type is ScheduleType.NONE:
            raise ScheduleError(f"Task run '{task_run_id}' has no schedule")
        return run


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


__all__ = ["TaskScheduler", "coerce_pattern", "preview_occurrences"]
