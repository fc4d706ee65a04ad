"""Load action definitions from a YAML catalog.

Example::

    actions:
      - id: analyzeTicket
        type: llm
        model_name: SupportTicket
        output_fields: [category, priority]
        prompt: "Classify this ticket: {{subject}} / {{body}}"
      - id: markTriaged
        type: set_fields
        model_name: SupportTicket
        values: {status: Triaged}
      - id: enrichLead
        type: webhook
        model_name: Lead
        url: https://hooks.example.com/enrich
        output_fields: [company_size]
"""

from pathlib import Path
from typing import Any

import yaml

from actions.base import BaseAction
from actions.builtin import SetFieldsAction, WebhookAction
from actions.llm import LLMAction
from actions.registry import ActionRegistry

_ACTION_TYPES: dict[str, type[BaseAction]] = {
    SetFieldsAction.type: SetFieldsAction,
    WebhookAction.type: WebhookAction,
    LLMAction.type: LLMAction,
}

# camelCase keys accepted for compatibility with the agent template format
_ALIASES = {"modelName": "model_name", "targetModel": "model_name",
            "outputFields": "output_fields", "systemPrompt": "system_prompt"}


def build_action(spec: dict[str, Any], default_llm_model: str | None = None) -> BaseAction:
    spec = {_ALIASES.get(k, k): v for k, v in spec.items()}
    kind = spec.pop("type", None)
    if kind not in _ACTION_TYPES:
        raise ValueError(
            f"Action '{spec.get('id')}': unknown type {kind!r} "
            f"(expected one of {sorted(_ACTION_TYPES)})"
        )
    for key in ("id", "model_name"):
        if not spec.get(key):
            raise ValueError(f"Action definition missing '{key}': {spec}")
    if kind == LLMAction.type and default_llm_model:
        spec.setdefault("model", default_llm_model)
    return _ACTION_TYPES[kind](**spec)


def load_actions(path: str | Path, default_llm_model: str | None = None) -> list[BaseAction]:
    with open(path) as f:
        doc = yaml.safe_load(f) or {}
    return [build_action(spec, default_llm_model) for spec in doc.get("actions", [])]


def load_into(registry: ActionRegistry, path: str | Path, default_llm_model: str | None = None) -> int:
    """Register every action from *path*; returns how many were loaded."""
    actions = load_actions(path, default_llm_model)
    for action in actions:
        registry.register(action)
    return len(actions)
