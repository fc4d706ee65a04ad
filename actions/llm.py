"""LLM action — ask Claude to fill a record's output fields."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

import anthropic

from actions.base import ActionResult, BaseAction
from query.predicates import as_text
from records.models import Record

logger = logging.getLogger(__name__)

MODEL = "claude-sonnet-4-6"

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")
_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")

_DEFAULT_SYSTEM = (
    "You process one database record at a time. "
    "Reply with a single JSON object and nothing else."
)


def render_prompt(template: str, record: Record) -> str:
    """Replace ``{{field}}`` placeholders with the record's field values."""
    def replacer(m: re.Match) -> str:
        field = m.group(1)
        if field not in record.data:
            raise ValueError(f"Unknown field reference '{{{{{field}}}}}'")
        return as_text(record.data[field])
    return _PLACEHOLDER.sub(replacer, template)


def parse_json_object(text: str) -> dict[str, Any]:
    """Extract the JSON object from a model reply (code fences tolerated)."""
    cleaned = _FENCE.sub("", text.strip())
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start == -1 or end < start:
        raise ValueError("Reply does not contain a JSON object")
    value = json.loads(cleaned[start:end + 1])
    if not isinstance(value, dict):
        raise ValueError("Reply JSON is not an object")
    return value


class LLMAction(BaseAction):
    type = "llm"

    def __init__(
        self,
        id: str,
        model_name: str,
        prompt: str,
        output_fields: list[str],
        system_prompt: str = _DEFAULT_SYSTEM,
        model: str = MODEL,
        max_tokens: int = 2048,
        client: anthropic.AsyncAnthropic | None = None,
        **kwargs,
    ):
        super().__init__(id, model_name, output_fields=output_fields, **kwargs)
        self.prompt = prompt
        self.system_prompt = system_prompt
        self.model = model
        self.max_tokens = max_tokens
        self._client = client

    @property
    def client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            self._client = anthropic.AsyncAnthropic()
        return self._client

    async def execute(self, record: Record) -> ActionResult:
        try:
            user_prompt = render_prompt(self.prompt, record)
        except ValueError as e:
            return ActionResult(success=False, error=str(e))

        user_prompt += (
            "\n\nReturn a JSON object with exactly these keys: "
            + ", ".join(self.output_fields)
        )
        response = await self.client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            system=self.system_prompt,
            messages=[{"role": "user", "content": user_prompt}],
        )
        if response.usage:
            logger.debug(
                "LLM tokens",
                extra={
                    "action": self.id,
                    "input_tokens": response.usage.input_tokens,
                    "output_tokens": response.usage.output_tokens,
                    "model": self.model,
                },
            )

        text = "\n".join(b.text for b in response.content if b.type == "text")
        try:
            data = parse_json_object(text)
        except ValueError as e:
            return ActionResult(success=False, error=f"Could not parse model reply: {e}")
        return ActionResult(
            success=True,
            outputs={k: v for k, v in data.items() if k in self.output_fields},
        )
