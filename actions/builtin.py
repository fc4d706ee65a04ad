"""Built-in actions: set_fields, webhook."""

from typing import Any

import httpx

from actions.base import ActionResult, BaseAction
from records.models import Record


class SetFieldsAction(BaseAction):
    """Write a fixed set of field values, e.g. move a ticket to "Triaged"."""

    type = "set_fields"

    def __init__(self, id: str, model_name: str, values: dict[str, Any], **kwargs):
        kwargs.setdefault("output_fields", list(values))
        super().__init__(id, model_name, **kwargs)
        self.values = dict(values)

    async def execute(self, record: Record) -> ActionResult:
        return ActionResult(success=True, outputs=dict(self.values))


class WebhookAction(BaseAction):
    """POST the record to an external endpoint and write back its JSON reply.

    The endpoint receives ``{"recordId", "modelId", "data"}`` and should answer
    with a JSON object of field values, optionally wrapped as
    ``{"outputs": {...}}``.  Keys outside ``output_fields`` are dropped.
    """

    type = "webhook"

    def __init__(
        self,
        id: str,
        model_name: str,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
        **kwargs,
    ):
        super().__init__(id, model_name, **kwargs)
        self.url = url
        self.headers = dict(headers or {})
        self.timeout = timeout

    async def execute(self, record: Record) -> ActionResult:
        payload = {
            "recordId": record.id,
            "modelId": record.model_id,
            "data": record.to_dict()["data"],
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=payload, headers=self.headers)
        except httpx.HTTPError as e:
            return ActionResult(success=False, error=f"Webhook request failed: {e}")

        if response.is_error:
            return ActionResult(
                success=False,
                error=f"Webhook returned HTTP {response.status_code}: {response.text[:200]}",
            )
        if not response.content:
            return ActionResult(success=True, outputs={})
        try:
            body = response.json()
        except ValueError:
            return ActionResult(success=False, error="Webhook response is not JSON")
        if isinstance(body, dict) and isinstance(body.get("outputs"), dict):
            body = body["outputs"]
        if not isinstance(body, dict):
            return ActionResult(success=False, outputs=body, error="Webhook response is not an object")
        if self.output_fields:
            body = {k: v for k, v in body.items() if k in self.output_fields}
        return ActionResult(success=True, outputs=body)
