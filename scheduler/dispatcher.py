"""Dispatcher — runs due schedules on a timer and on demand."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.errors import ConcurrencyConflict, ConfigurationError
from core.logging_config import trace_context
from core.state import ExecutionStatus, ExecutionTrigger, ScheduleExecution
from pipeline.runner import StepPipeline
from scheduler.models import Schedule, ScheduleMode
from scheduler.schedule_store import ScheduleStore

logger = logging.getLogger(__name__)

_TICK_JOB_ID = "dispatcher-tick"

_FINAL_EVENT = {
    ExecutionStatus.COMPLETED: "complete",
    ExecutionStatus.CANCELLED: "cancelled",
    ExecutionStatus.FAILED: "error",
}


class ScheduleDispatcher:
    """Finds due schedules, runs their pipelines and records executions.

    ``tick`` and ``run_now`` share one per-schedule run guard: a schedule is
    never executed twice at the same time by this process.  Across processes,
    due runs are claimed with a compare-and-swap on ``next_run_at``.
    """

    def __init__(
        self,
        store: ScheduleStore,
        pipeline: StepPipeline,
        tick_interval_seconds: float = 300.0,
        max_schedules_per_tick: int = 100,
    ):
        self._store = store
        self._pipeline = pipeline
        self._tick_interval = tick_interval_seconds
        self._max_per_tick = max_schedules_per_tick
        self._running: dict[str, asyncio.Event] = {}
        self._aps = AsyncIOScheduler()
        self.last_tick_at: datetime | None = None

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the periodic tick."""
        self._aps.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=self._tick_interval),
            id=_TICK_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._aps.start()
        logger.info("Dispatcher started", extra={"tick_interval_s": self._tick_interval})

    async def shutdown(self) -> None:
        if self._aps.running:
            self._aps.shutdown(wait=False)
        for event in self._running.values():
            event.set()
        logger.info("Dispatcher stopped")

    def next_tick_time(self) -> datetime | None:
        job = self._aps.get_job(_TICK_JOB_ID)
        return job.next_run_time if job else None

    # ── Triggers ─────────────────────────────────────────────────────────────

    async def tick(self, now: datetime | None = None) -> list[ScheduleExecution]:
        """Run every due recurring schedule once.

        Each schedule is isolated: a failure is logged and the tick moves on.
        """
        now = now or datetime.now(timezone.utc)
        self.last_tick_at = now
        due = await self._store.list_due(now, limit=self._max_per_tick)
        logger.info("Dispatcher tick", extra={"due": len(due)})

        executions = []
        for schedule in due:
            if schedule.id in self._running:
                logger.info("Schedule already running, skipped", extra={"schedule_id": schedule.id})
                continue
            cancel_event = self._acquire(schedule.id)
            try:
                claimed = await self._store.claim(
                    schedule.id, schedule.next_run_at, schedule.compute_next_run(now)
                )
                if not claimed:
                    logger.info("Schedule claimed elsewhere", extra={"schedule_id": schedule.id})
                    continue
                if not schedule.steps:
                    logger.warning("Schedule has no steps, skipped", extra={"schedule_id": schedule.id})
                    continue
                executions.append(
                    await self._execute(schedule, ExecutionTrigger.SCHEDULED, cancel_event)
                )
            except Exception:
                logger.exception("Scheduled run failed", extra={"schedule_id": schedule.id})
            finally:
                self._release(schedule.id)
        return executions

    async def run_now(self, schedule_id: str, execution_id: str | None = None) -> ScheduleExecution:
        """Run a schedule immediately, whatever its mode or due time.

        Raises KeyError (unknown id), ConcurrencyConflict (already running) or
        InvalidTransition (completed, draft or without steps).
        """
        cancel_event = self._acquire(schedule_id)
        try:
            schedule = await self._store.load(schedule_id)
            schedule.ensure_runnable()
            now = datetime.now(timezone.utc)
            if schedule.mode == ScheduleMode.RECURRING:
                # Paused schedules keep their next_run_at
                await self._store.claim(schedule.id, schedule.next_run_at, schedule.compute_next_run(now))
            elif not await self._store.claim(schedule.id, schedule.next_run_at, None):
                raise ConcurrencyConflict(schedule_id)
            return await self._execute(schedule, ExecutionTrigger.MANUAL, cancel_event, execution_id)
        finally:
            self._release(schedule_id)

    def cancel(self, schedule_id: str) -> bool:
        """Stop dispatching new records for a running schedule; False if it is not running."""
        event = self._running.get(schedule_id)
        if event is None:
            return False
        event.set()
        logger.info("Schedule run cancel requested", extra={"schedule_id": schedule_id})
        return True

    def is_running(self, schedule_id: str) -> bool:
        return schedule_id in self._running

    async def status(self, now: datetime | None = None) -> dict[str, Any]:
        """Preview for operators: what would the next tick run."""
        now = now or datetime.now(timezone.utc)
        due = await self._store.list_due(now, limit=self._max_per_tick)
        next_tick = self.next_tick_time()
        return {
            "now": now.isoformat(),
            "lastTickAt": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "nextTickAt": next_tick.isoformat() if next_tick else None,
            "running": sorted(self._running),
            "dueCount": len(due),
            "due": [
                {"id": s.id, "name": s.name,
                 "nextRunAt": s.next_run_at.isoformat() if s.next_run_at else None}
                for s in due
            ],
        }

    # ── Internal ──────────────────────────────────────────────────────────────

    def _acquire(self, schedule_id: str) -> asyncio.Event:
        if schedule_id in self._running:
            raise ConcurrencyConflict(schedule_id)
        event = asyncio.Event()
        self._running[schedule_id] = event
        return event

    def _release(self, schedule_id: str) -> None:
        self._running.pop(schedule_id, None)

    async def _execute(
        self,
        schedule: Schedule,
        trigger: ExecutionTrigger,
        cancel_event: asyncio.Event,
        execution_id: str | None = None,
    ) -> ScheduleExecution:
        init_kwargs: dict = dict(
            schedule_id=schedule.id,
            schedule_name=schedule.name,
            trigger=trigger,
        )
        if execution_id:
            init_kwargs["execution_id"] = execution_id
        execution = ScheduleExecution(**init_kwargs)

        with trace_context(execution.execution_id):
            logger.info(
                "Schedule run started",
                extra={"schedule_id": schedule.id, "trigger": trigger.value,
                       "steps": len(schedule.steps)},
            )
            await self._pipeline.emit(
                execution.execution_id, "start",
                scheduleId=schedule.id, scheduleName=schedule.name,
                trigger=trigger.value, totalSteps=len(schedule.steps),
            )

            try:
                execution.per_step_results = await self._pipeline.run(
                    schedule.steps, execution.execution_id, cancel_event
                )
                execution.status = (
                    ExecutionStatus.CANCELLED if cancel_event.is_set() else ExecutionStatus.COMPLETED
                )
            except ConfigurationError as e:
                execution.status = ExecutionStatus.FAILED
                execution.error = str(e)
                logger.error(
                    "Schedule run aborted",
                    extra={"schedule_id": schedule.id, "error": str(e)},
                )
            except Exception as e:
                execution.status = ExecutionStatus.FAILED
                execution.error = f"{type(e).__name__}: {e}"
                logger.exception("Schedule run crashed", extra={"schedule_id": schedule.id})
            execution.finished_at = datetime.now(timezone.utc)

            await self._store.append_execution(execution)
            await self._store.record_run(schedule.id, execution.started_at)
            if execution.status == ExecutionStatus.COMPLETED and schedule.mode == ScheduleMode.ONCE:
                if await self._store.mark_completed(schedule.id):
                    logger.info("Schedule completed", extra={"schedule_id": schedule.id})

            await self._pipeline.emit(
                execution.execution_id, _FINAL_EVENT[execution.status], execution=execution.to_dict()
            )
            logger.info(
                "Schedule run finished",
                extra={"schedule_id": schedule.id, "status": execution.status.value,
                       "succeeded": execution.succeeded, "failed": execution.failed,
                       "duration_s": execution.duration_seconds},
            )
        return execution
