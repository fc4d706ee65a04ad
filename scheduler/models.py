"""Schedule entity, its steps, and the lifecycle state machine.

    Draft ──create──▶ Active ◀──toggle──▶ Paused      (recurring only)
                        │
                        └──run (once mode)──▶ Completed   (terminal)

Delete removes a schedule in any persisted state; its execution history is
kept unless purged explicitly.
"""

import math
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import Field, computed_field, field_serializer, field_validator, model_validator

from core.errors import InvalidTransition
from core.schema import CamelModel
from query.definition import StepQuery, StructuredQuery, dump_query, parse_query

DEFAULT_NAME = "Untitled Schedule"
COPY_SUFFIX = " (Copy)"


class ScheduleMode(str, Enum):
    ONCE = "once"
    RECURRING = "recurring"


class ScheduleStatus(str, Enum):
    DRAFT = "draft"           # in memory only, never persisted
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


def hours_to_minutes(value: Any) -> int | None:
    """Normalise an ``intervalHours`` value (number or numeric string).

    Fractional hours are accepted (0.5 -> 30 minutes); the result is rounded
    to whole minutes.  Raises ValueError for non-numeric input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"intervalHours must be a number, got {value!r}")
    try:
        hours = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"intervalHours must be a number, got {value!r}") from None
    if math.isnan(hours) or math.isinf(hours):
        raise ValueError(f"intervalHours must be finite, got {value!r}")
    return round(hours * 60)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ScheduleStep(CamelModel):
    id: str | None = None
    model_id: str
    query: StepQuery = Field(default_factory=StructuredQuery)
    action_id: str
    order: int = 0

    @field_validator("query", mode="before")
    @classmethod
    def _parse_query(cls, v: Any) -> Any:
        return parse_query(v)

    @field_serializer("query")
    def _dump_query(self, query: StepQuery) -> dict | str:
        return dump_query(query)

    def copy_definition(self) -> "ScheduleStep":
        """Deep copy of the step's content without its identity."""
        return ScheduleStep(
            model_id=self.model_id,
            query=self.query.model_copy(deep=True),
            action_id=self.action_id,
            order=self.order,
        )


class Schedule(CamelModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    agent_id: str | None = None
    name: str = DEFAULT_NAME
    mode: ScheduleMode = ScheduleMode.RECURRING
    interval_minutes: int | None = None
    steps: list[ScheduleStep] = []
    status: ScheduleStatus = ScheduleStatus.DRAFT
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    run_count: int = 0
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @model_validator(mode="before")
    @classmethod
    def _accept_interval_hours(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        hours = data.pop("intervalHours", None)
        hours = data.pop("interval_hours", hours)
        if hours is not None and data.get("interval_minutes", data.get("intervalMinutes")) is None:
            data["interval_minutes"] = hours_to_minutes(hours)
        return data

    @computed_field
    @property
    def interval_hours(self) -> float | None:
        if self.interval_minutes is None:
            return None
        return self.interval_minutes / 60

    @property
    def interval(self) -> timedelta | None:
        if self.interval_minutes is None:
            return None
        return timedelta(minutes=self.interval_minutes)

    # ── Steps ────────────────────────────────────────────────────────────────

    def sorted_steps(self) -> list[ScheduleStep]:
        """Steps in execution order; ties keep their list position."""
        return sorted(self.steps, key=lambda s: s.order)

    def renumber_steps(self) -> None:
        """Rewrite ``order`` as a dense 0..n-1 sequence in execution order."""
        self.steps = self.sorted_steps()
        for i, step in enumerate(self.steps):
            step.order = i

    def add_step(self, step: ScheduleStep, position: int | None = None) -> ScheduleStep:
        """Insert *step* at *position* in execution order (default: last)."""
        ordered = self.sorted_steps()
        if position is None or position > len(ordered):
            position = len(ordered)
        ordered.insert(max(position, 0), step)
        self.steps = ordered
        self.renumber_steps()
        return step

    def remove_step(self, step_id: str | None = None, position: int | None = None) -> ScheduleStep:
        """Remove a step by id or by execution position."""
        ordered = self.sorted_steps()
        if step_id is not None:
            matches = [i for i, s in enumerate(ordered) if s.id == step_id]
            if not matches:
                raise KeyError(f"Step '{step_id}' not found")
            position = matches[0]
        if position is None or not 0 <= position < len(ordered):
            raise KeyError(f"No step at position {position}")
        removed = ordered.pop(position)
        self.steps = ordered
        self.renumber_steps()
        return removed

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def compute_next_run(self, run_time: datetime) -> datetime | None:
        if self.mode != ScheduleMode.RECURRING or self.interval is None:
            return None
        return run_time + self.interval

    def is_due(self, now: datetime) -> bool:
        return (
            self.status == ScheduleStatus.ACTIVE
            and self.mode == ScheduleMode.RECURRING
            and self.next_run_at is not None
            and self.next_run_at <= now
        )

    def activate(self, now: datetime) -> None:
        """Draft -> Active on first save."""
        if self.status != ScheduleStatus.DRAFT:
            raise InvalidTransition(f"Schedule '{self.id}' is already {self.status.value}")
        self.status = ScheduleStatus.ACTIVE
        self.created_at = self.updated_at = now
        if self.mode == ScheduleMode.RECURRING:
            self.next_run_at = self.compute_next_run(now)
        else:
            self.next_run_at = now

    def toggle(self, now: datetime) -> None:
        if self.mode != ScheduleMode.RECURRING:
            raise InvalidTransition("Only recurring schedules can be paused or resumed")
        if self.status == ScheduleStatus.ACTIVE:
            self.status = ScheduleStatus.PAUSED
        elif self.status == ScheduleStatus.PAUSED:
            self.status = ScheduleStatus.ACTIVE
        else:
            raise InvalidTransition(
                f"Cannot toggle a schedule in state '{self.status.value}'"
            )
        self.updated_at = now

    def ensure_editable(self) -> None:
        if self.status not in (ScheduleStatus.ACTIVE, ScheduleStatus.PAUSED):
            raise InvalidTransition(
                f"Schedule in state '{self.status.value}' cannot be edited"
            )

    def ensure_runnable(self) -> None:
        if self.status == ScheduleStatus.DRAFT:
            raise InvalidTransition("Draft schedules must be saved before they can run")
        if self.status == ScheduleStatus.COMPLETED:
            raise InvalidTransition(f"Schedule '{self.id}' has already completed")
        if not self.steps:
            raise InvalidTransition(f"Schedule '{self.id}' has no steps to run")

    def duplicate(self) -> "Schedule":
        """A new Draft with the same definition and none of the run state."""
        return Schedule(
            agent_id=self.agent_id,
            name=f"{self.name}{COPY_SUFFIX}",
            mode=self.mode,
            interval_minutes=self.interval_minutes,
            steps=[s.copy_definition() for s in self.sorted_steps()],
            status=ScheduleStatus.DRAFT,
        )
