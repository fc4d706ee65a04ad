"""Action registry and the executor the Step Pipeline calls."""

import logging
from typing import Any

from actions.base import BaseAction
from core.errors import ConfigurationError, RecordActionError
from records.models import Record

logger = logging.getLogger(__name__)


class ActionRegistry:
    def __init__(self):
        self._actions: dict[str, BaseAction] = {}

    def register(self, action: BaseAction) -> None:
        self._actions[action.id] = action

    def get(self, action_id: str) -> BaseAction:
        if action_id not in self._actions:
            raise KeyError(f"Action '{action_id}' not found. Registered: {list(self._actions)}")
        return self._actions[action_id]

    def all(self) -> list[BaseAction]:
        return list(self._actions.values())

    def __contains__(self, action_id: str) -> bool:
        return action_id in self._actions


class ActionExecutor:
    """Runs an action by id and enforces its output contract.

    Any failure for a record (exception, unsuccessful result, malformed
    outputs) is raised as RecordActionError; an unknown action id is a
    ConfigurationError.
    """

    def __init__(self, registry: ActionRegistry):
        self.registry = registry

    def resolve(self, action_id: str) -> BaseAction:
        try:
            return self.registry.get(action_id)
        except KeyError as e:
            raise ConfigurationError(str(e.args[0])) from e

    async def execute(self, action_id: str, record: Record) -> dict[str, Any]:
        action = self.resolve(action_id)
        try:
            result = await action.execute(record)
        except RecordActionError:
            raise
        except Exception as e:
            raise RecordActionError(f"{type(e).__name__}: {e}", record_id=record.id) from e

        if not result.success:
            raise RecordActionError(result.error or "Action reported failure", record_id=record.id)

        outputs = result.outputs if result.outputs is not None else {}
        if not isinstance(outputs, dict):
            raise RecordActionError(
                f"Malformed outputs: expected a mapping, got {type(outputs).__name__}",
                record_id=record.id,
            )
        if action.output_fields:
            unexpected = sorted(set(outputs) - set(action.output_fields))
            if unexpected:
                raise RecordActionError(
                    f"Malformed outputs: fields {unexpected} are not in outputFields "
                    f"{action.output_fields}",
                    record_id=record.id,
                )
        logger.debug(
            "Action executed",
            extra={"action": action_id, "record_id": record.id, "fields": list(outputs)},
        )
        return outputs
