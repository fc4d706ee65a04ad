"""Schedule repository operations: create, edit, toggle, duplicate, delete.

Every write is validated first and persisted with a single ScheduleStore
call, so a rejected definition never touches the stored schedule.  Edits and
toggles never write run state, so they cannot undo a claim or a completion
the dispatcher made after the schedule was loaded.
"""

import logging
from datetime import datetime, timezone
from typing import Any

from actions.registry import ActionRegistry
from core.errors import InvalidTransition, ValidationError
from core.state import ScheduleExecution
from query.evaluator import query_problems
from records.store import RecordStore
from scheduler.models import (
    DEFAULT_NAME,
    Schedule,
    ScheduleMode,
    ScheduleStatus,
    ScheduleStep,
)
from scheduler.schedule_store import ScheduleStore

logger = logging.getLogger(__name__)

# Fields a caller may change through update()
EDITABLE_FIELDS = frozenset({"name", "agent_id", "mode", "interval_minutes", "steps"})


class ScheduleService:
    def __init__(self, store: ScheduleStore, records: RecordStore, registry: ActionRegistry):
        self.store = store
        self.records = records
        self.registry = registry

    # ── Validation ───────────────────────────────────────────────────────────

    async def validate(self, schedule: Schedule) -> None:
        """Normalise *schedule* in place and raise ValidationError listing every problem."""
        schedule.name = (schedule.name or "").strip() or DEFAULT_NAME
        if schedule.mode == ScheduleMode.ONCE:
            schedule.interval_minutes = None

        errors: list[str] = []
        if schedule.mode == ScheduleMode.RECURRING and (
            schedule.interval_minutes is None or schedule.interval_minutes <= 0
        ):
            errors.append("intervalHours must be a positive number for recurring schedules")

        for i, step in enumerate(schedule.sorted_steps()):
            errors.extend(await self._step_problems(schedule, step, i))

        if errors:
            raise ValidationError(errors)

    async def _step_problems(self, schedule: Schedule, step: ScheduleStep, index: int) -> list[str]:
        where = f"steps[{index}]"
        problems = []
        model = await self.records.get_model(step.model_id)
        if model is None:
            problems.append(f"{where}: model '{step.model_id}' not found")
        elif schedule.agent_id and model.agent_id and model.agent_id != schedule.agent_id:
            problems.append(f"{where}: model '{model.name}' belongs to another agent")

        if step.action_id not in self.registry:
            problems.append(f"{where}: action '{step.action_id}' not found")
        elif model is not None:
            action = self.registry.get(step.action_id)
            if action.model_name != model.name:
                problems.append(
                    f"{where}: action '{action.id}' targets model '{action.model_name}', "
                    f"not '{model.name}'"
                )

        problems.extend(f"{where}: {p}" for p in query_problems(step.query, model))
        return problems

    # ── CRUD ─────────────────────────────────────────────────────────────────

    async def create(self, schedule: Schedule) -> Schedule:
        """Validate a Draft and persist it as Active."""
        if schedule.status != ScheduleStatus.DRAFT:
            schedule = schedule.model_copy(update={"status": ScheduleStatus.DRAFT})
        await self.validate(schedule)
        schedule.renumber_steps()
        schedule.activate(datetime.now(timezone.utc))
        await self.store.save(schedule)
        logger.info(
            "Schedule created",
            extra={"schedule_id": schedule.id, "schedule_name": schedule.name,
                   "mode": schedule.mode.value, "steps": len(schedule.steps)},
        )
        return schedule

    async def get(self, schedule_id: str) -> Schedule:
        return await self.store.load(schedule_id)

    async def list_schedules(self, agent_id: str | None = None) -> list[Schedule]:
        return await self.store.list_all(agent_id)

    async def update(self, schedule_id: str, changes: dict[str, Any]) -> Schedule:
        """Apply *changes* (snake_case Schedule fields) to an Active or Paused schedule.

        Status is preserved.  ``next_run_at`` is recomputed from now when the
        mode or interval changes.
        """
        unknown = sorted(set(changes) - EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields cannot be edited: {unknown}")

        current = await self.store.load(schedule_id)
        current.ensure_editable()
        candidate = current.model_copy(deep=True)

        if "name" in changes:
            candidate.name = changes["name"]
        if "agent_id" in changes:
            candidate.agent_id = changes["agent_id"]
        if "mode" in changes and changes["mode"] is not None:
            candidate.mode = ScheduleMode(changes["mode"])
        if "interval_minutes" in changes:
            candidate.interval_minutes = changes["interval_minutes"]
        if "steps" in changes and changes["steps"] is not None:
            candidate.steps = [
                s if isinstance(s, ScheduleStep) else ScheduleStep.model_validate(s)
                for s in changes["steps"]
            ]
            candidate.renumber_steps()

        if candidate.status == ScheduleStatus.PAUSED and candidate.mode == ScheduleMode.ONCE:
            raise ValidationError("A paused schedule cannot be switched to once mode")
        await self.validate(candidate)

        now = datetime.now(timezone.utc)
        reschedule = (candidate.mode, candidate.interval_minutes) != (
            current.mode, current.interval_minutes
        )
        if reschedule:
            candidate.next_run_at = (
                candidate.compute_next_run(now)
                if candidate.mode == ScheduleMode.RECURRING else now
            )
        candidate.updated_at = now
        if not await self.store.update_definition(candidate, reschedule=reschedule):
            latest = await self.store.load(schedule_id)
            latest.ensure_editable()
            raise InvalidTransition(
                f"Schedule '{schedule_id}' changed to '{latest.status.value}' during the edit"
            )
        logger.info("Schedule updated", extra={"schedule_id": schedule_id, "fields": sorted(changes)})
        return await self.store.load(schedule_id)

    async def toggle(self, schedule_id: str) -> Schedule:
        """Flip a recurring schedule between Active and Paused."""
        schedule = await self.store.load(schedule_id)
        previous = schedule.status
        schedule.toggle(datetime.now(timezone.utc))
        if not await self.store.set_status(schedule_id, previous, schedule.status):
            raise InvalidTransition(
                f"Schedule '{schedule_id}' is no longer '{previous.value}'"
            )
        logger.info(
            "Schedule toggled",
            extra={"schedule_id": schedule_id, "status": schedule.status.value},
        )
        return await self.store.load(schedule_id)

    async def duplicate(self, schedule_id: str, persist: bool = False) -> Schedule:
        """Copy a schedule into a new Draft; with *persist*, save it as Active."""
        source = await self.store.load(schedule_id)
        copy = source.duplicate()
        if persist:
            copy = await self.create(copy)
        logger.info(
            "Schedule duplicated",
            extra={"schedule_id": schedule_id, "copy_id": copy.id, "persisted": persist},
        )
        return copy

    async def delete(self, schedule_id: str, purge_history: bool = False) -> None:
        await self.store.delete(schedule_id, purge_history=purge_history)
        logger.info(
            "Schedule deleted",
            extra={"schedule_id": schedule_id, "purge_history": purge_history},
        )

    # ── Steps ────────────────────────────────────────────────────────────────

    async def add_step(self, schedule_id: str, step: ScheduleStep, position: int | None = None) -> Schedule:
        schedule = await self.store.load(schedule_id)
        draft = schedule.model_copy(deep=True)
        draft.add_step(step, position)
        return await self.update(schedule_id, {"steps": draft.steps})

    async def remove_step(self, schedule_id: str, step_id: str) -> Schedule:
        schedule = await self.store.load(schedule_id)
        draft = schedule.model_copy(deep=True)
        draft.remove_step(step_id=step_id)
        return await self.update(schedule_id, {"steps": draft.steps})

    # ── History ──────────────────────────────────────────────────────────────

    async def list_executions(self, schedule_id: str, limit: int = 50) -> list[ScheduleExecution]:
        return await self.store.list_executions(schedule_id, limit=limit)

    async def get_execution(self, execution_id: str) -> ScheduleExecution:
        return await self.store.get_execution(execution_id)
