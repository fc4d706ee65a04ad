"""Shared fixtures: per-test SQLite stores, a SupportTicket model, fake actions."""

import asyncio
from typing import Any, Callable

import pytest

from actions.base import ActionResult, BaseAction
from actions.builtin import SetFieldsAction
from actions.registry import ActionExecutor, ActionRegistry
from core.event_bus import EventBus
from pipeline.runner import StepPipeline
from records.models import DataModel, FieldDefinition, FieldType, Record
from records.store import SqlRecordStore
from scheduler.dispatcher import ScheduleDispatcher
from scheduler.schedule_store import ScheduleStore
from scheduler.service import ScheduleService


class RecordingAction(BaseAction):
    """Returns fixed outputs and remembers every record it was called with."""

    type = "recording"

    def __init__(
        self,
        id: str,
        model_name: str,
        outputs: dict[str, Any] | None = None,
        fail_when: Callable[[Record], bool] | None = None,
        delay: float = 0.0,
        **kwargs,
    ):
        kwargs.setdefault("output_fields", list(outputs or {}))
        super().__init__(id, model_name, **kwargs)
        self.outputs = dict(outputs or {})
        self.fail_when = fail_when
        self.delay = delay
        self.calls: list[Record] = []

    async def execute(self, record: Record) -> ActionResult:
        self.calls.append(record)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_when and self.fail_when(record):
            raise RuntimeError(f"action blew up on {record.id}")
        return ActionResult(success=True, outputs=dict(self.outputs))

    @property
    def called_ids(self) -> list[str]:
        return [r.id for r in self.calls]


TICKET_FIELDS = [
    FieldDefinition(name="subject", type=FieldType.TEXT, required=True),
    FieldDefinition(name="body", type=FieldType.TEXTAREA),
    FieldDefinition(name="status", type=FieldType.SELECT,
                    options=["New", "Triaged", "Resolved"], default_value="New"),
    FieldDefinition(name="priority", type=FieldType.NUMBER),
    FieldDefinition(name="category", type=FieldType.TEXT),
    FieldDefinition(name="content", type=FieldType.TEXTAREA),
    FieldDefinition(name="due", type=FieldType.DATE),
    FieldDefinition(name="urgent", type=FieldType.BOOLEAN),
]


# ── Stores ────────────────────────────────────────────────────────────────────

@pytest.fixture
async def record_store(tmp_path):
    store = SqlRecordStore(f"sqlite+aiosqlite:///{tmp_path}/records.db")
    await store.init()
    yield store
    await store.dispose()


@pytest.fixture
async def schedule_store(tmp_path):
    store = ScheduleStore(f"sqlite+aiosqlite:///{tmp_path}/schedules.db")
    await store.init()
    yield store
    await store.dispose()


@pytest.fixture
async def ticket_model(record_store):
    model = DataModel(agent_id="agent-1", name="SupportTicket", fields=TICKET_FIELDS)
    return await record_store.create_model(model)


@pytest.fixture
async def lead_model(record_store):
    model = DataModel(
        agent_id="agent-1",
        name="Lead",
        fields=[FieldDefinition(name="email", type=FieldType.EMAIL)],
    )
    return await record_store.create_model(model)


@pytest.fixture
async def tickets(record_store, ticket_model):
    """Three New tickets and two Resolved ones, in creation order."""
    rows = [
        {"subject": "Cannot log in", "status": "New", "priority": 3},
        {"subject": "Invoice is wrong", "status": "New", "priority": 1},
        {"subject": "Feature request", "status": "New", "priority": 2},
        {"subject": "Old bug", "status": "Resolved", "priority": 5},
        {"subject": "Password reset", "status": "Resolved", "priority": 4},
    ]
    return [await record_store.create_record(ticket_model.id, row) for row in rows]


# ── Actions ───────────────────────────────────────────────────────────────────

@pytest.fixture
def analyze_action():
    return RecordingAction("analyzeTicket", "SupportTicket", outputs={"category": "billing"})


@pytest.fixture
def content_action():
    return RecordingAction("writeContent", "SupportTicket", outputs={"content": "Draft reply"})


@pytest.fixture
def registry(analyze_action, content_action):
    reg = ActionRegistry()
    reg.register(analyze_action)
    reg.register(content_action)
    reg.register(SetFieldsAction("markTriaged", "SupportTicket", values={"status": "Triaged"}))
    reg.register(RecordingAction("enrichLead", "Lead"))
    return reg


# ── Scheduler components ──────────────────────────────────────────────────────

@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def pipeline(record_store, registry, event_bus):
    return StepPipeline(record_store, ActionExecutor(registry), event_bus=event_bus, timeout=5.0)


@pytest.fixture
def service(schedule_store, record_store, registry):
    return ScheduleService(schedule_store, record_store, registry)


@pytest.fixture
def dispatcher(schedule_store, pipeline):
    return ScheduleDispatcher(schedule_store, pipeline)
