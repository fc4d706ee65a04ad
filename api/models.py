"""API request models.

Responses are the domain models serialised with camelCase keys
(``Schedule.to_dict()`` etc.), wrapped in a named envelope such as
``{"schedule": {...}}``.
"""

from typing import Any

from pydantic import field_validator

from core.schema import CamelModel
from records.models import FieldDefinition
from scheduler.models import DEFAULT_NAME, Schedule, ScheduleMode, ScheduleStep, hours_to_minutes


def _check_hours(value: Any) -> float | None:
    minutes = hours_to_minutes(value)   # raises ValueError -> 422
    return None if minutes is None else float(value)


class CreateScheduleRequest(CamelModel):
    agent_id: str | None = None
    name: str | None = None
    mode: ScheduleMode = ScheduleMode.RECURRING
    interval_hours: float | str | None = None
    steps: list[ScheduleStep] = []

    @field_validator("interval_hours")
    @classmethod
    def _hours(cls, v: Any) -> float | None:
        return _check_hours(v)

    def to_schedule(self) -> Schedule:
        return Schedule(
            agent_id=self.agent_id,
            name=self.name or DEFAULT_NAME,
            mode=self.mode,
            interval_minutes=hours_to_minutes(self.interval_hours),
            steps=[s.model_copy(deep=True) for s in self.steps],
        )


class UpdateScheduleRequest(CamelModel):
    agent_id: str | None = None
    name: str | None = None
    mode: ScheduleMode | None = None
    interval_hours: float | str | None = None
    steps: list[ScheduleStep] | None = None

    @field_validator("interval_hours")
    @classmethod
    def _hours(cls, v: Any) -> float | None:
        return _check_hours(v)

    def changes(self) -> dict[str, Any]:
        """Only the fields the caller sent, keyed by Schedule attribute name."""
        changes: dict[str, Any] = {}
        for name in self.model_fields_set:
            if name == "interval_hours":
                changes["interval_minutes"] = hours_to_minutes(self.interval_hours)
            else:
                changes[name] = getattr(self, name)
        return changes


class AddStepRequest(CamelModel):
    step: ScheduleStep
    position: int | None = None


class CreateModelRequest(CamelModel):
    agent_id: str | None = None
    name: str
    fields: list[FieldDefinition]


class CreateRecordRequest(CamelModel):
    data: dict[str, Any]
