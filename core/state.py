"""Execution log types: one ScheduleExecution per schedule run."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import Field

from core.schema import CamelModel


class ExecutionTrigger(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class ExecutionStatus(str, Enum):
    COMPLETED = "completed"   # every step ran; individual records may have failed
    FAILED = "failed"         # aborted by a ConfigurationError
    CANCELLED = "cancelled"


class RecordStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"   # never dispatched because the run was cancelled


class RecordOutcome(CamelModel):
    record_id: str
    status: RecordStatus
    error: str | None = None
    outputs: dict[str, Any] = {}
    attempts: int = 0
    duration_seconds: float | None = None


class RecordError(CamelModel):
    record_id: str
    error: str


class StepResult(CamelModel):
    step_order: int
    model_id: str
    action_id: str
    matched_record_count: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    errors: list[RecordError] = []
    records: list[RecordOutcome] = []
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def add(self, outcome: RecordOutcome) -> None:
        self.records.append(outcome)
        if outcome.status == RecordStatus.SUCCEEDED:
            self.succeeded += 1
        elif outcome.status == RecordStatus.FAILED:
            self.failed += 1
            self.errors.append(
                RecordError(record_id=outcome.record_id, error=outcome.error or "")
            )
        else:
            self.cancelled += 1


class ScheduleExecution(CamelModel):
    execution_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    schedule_id: str
    schedule_name: str = ""
    trigger: ExecutionTrigger = ExecutionTrigger.MANUAL
    status: ExecutionStatus = ExecutionStatus.COMPLETED
    error: str | None = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    per_step_results: list[StepResult] = []

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    @property
    def succeeded(self) -> int:
        return sum(s.succeeded for s in self.per_step_results)

    @property
    def failed(self) -> int:
        return sum(s.failed for s in self.per_step_results)

    def summary(self) -> str:
        lines = [
            f"Schedule : {self.schedule_name or self.schedule_id}",
            f"Status   : {self.status.value}",
            f"Duration : {self.duration_seconds:.2f}s" if self.duration_seconds else "Duration : -",
        ]
        if self.error:
            lines.append(f"Error    : {self.error}")
        lines += [
            "",
            f"{'Step':<6} {'Action':<24} {'Matched':>8} {'OK':>5} {'Failed':>7}",
            "-" * 54,
        ]
        for step in self.per_step_results:
            lines.append(
                f"{step.step_order:<6} {step.action_id:<24} "
                f"{step.matched_record_count:>8} {step.succeeded:>5} {step.failed:>7}"
            )
        return "\n".join(lines)
