"""Action base class and result type."""

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel

from records.models import Record


class ActionResult(BaseModel):
    success: bool
    outputs: Any = {}
    error: str | None = None


class BaseAction(ABC):
    """Work performed against one record; returns field updates.

    ``model_name`` names the data model the action is written for; a schedule
    step may only pair the action with records of that model.
    ``output_fields`` lists the fields the action may write (empty = any).
    """

    type: str = "custom"

    def __init__(
        self,
        id: str,
        model_name: str,
        output_fields: list[str] | None = None,
        description: str = "",
    ):
        self.id = id
        self.model_name = model_name
        self.output_fields = list(output_fields or [])
        self.description = description

    @abstractmethod
    async def execute(self, record: Record) -> ActionResult:
        """Run the action for *record*."""
        ...

    def describe(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "modelName": self.model_name,
            "outputFields": self.output_fields,
            "description": self.description,
        }
