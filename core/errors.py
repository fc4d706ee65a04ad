"""Error taxonomy shared by the pipeline, scheduler and API layers."""


class SchedulerError(Exception):
    """Base class for all scheduler errors."""


class ConfigurationError(SchedulerError):
    """A schedule definition cannot be executed (fatal for the whole run).

    Raised for unknown filter operators, unresolvable model/action
    references and actions bound to a different model than their step.
    """


class RecordActionError(SchedulerError):
    """An action failed for a single record. Never escapes the pipeline."""

    def __init__(self, message: str, record_id: str | None = None):
        super().__init__(message)
        self.record_id = record_id


class ValidationError(SchedulerError):
    """A schedule definition was rejected at save time; nothing was written."""

    def __init__(self, errors: list[str] | str):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class ConcurrencyConflict(SchedulerError):
    """The schedule is already being executed by another caller."""

    def __init__(self, schedule_id: str):
        super().__init__(f"Schedule '{schedule_id}' is already running")
        self.schedule_id = schedule_id


class InvalidTransition(SchedulerError):
    """The requested lifecycle operation is not allowed in the current state."""
