"""Tests for the step pipeline."""

import asyncio
from unittest.mock import patch

import pytest

from actions.registry import ActionExecutor
from conftest import RecordingAction
from core.errors import ConfigurationError
from core.state import RecordStatus
from pipeline.runner import StepPipeline
from scheduler.models import ScheduleStep


def step(model_id: str, action_id: str, order: int = 0, query=None) -> ScheduleStep:
    return ScheduleStep(model_id=model_id, action_id=action_id, order=order, query=query)


NEW_TICKETS = {"filters": [{"field": "status", "operator": "equals", "value": "New"}], "logic": "AND"}


# ── Matching and invocation ───────────────────────────────────────────────────

async def test_runs_action_once_per_matched_record(pipeline, ticket_model, tickets, analyze_action):
    results = await pipeline.run([step(ticket_model.id, "analyzeTicket", 1, NEW_TICKETS)])

    assert len(results) == 1
    assert results[0].matched_record_count == 3
    assert results[0].succeeded == 3
    assert results[0].failed == 0
    assert sorted(analyze_action.called_ids) == sorted(t.id for t in tickets[:3])


async def test_outputs_are_written_back(pipeline, record_store, ticket_model, tickets):
    await pipeline.run([step(ticket_model.id, "analyzeTicket", 0, NEW_TICKETS)])

    records = {r.id: r for r in await record_store.list_records(ticket_model.id)}
    assert all(records[t.id].data["category"] == "billing" for t in tickets[:3])
    assert all(records[t.id].data["category"] is None for t in tickets[3:])


async def test_empty_query_matches_all_records(pipeline, ticket_model, tickets, analyze_action):
    results = await pipeline.run([step(ticket_model.id, "analyzeTicket")])
    assert results[0].matched_record_count == 5
    assert len(analyze_action.calls) == 5


async def test_free_text_query(pipeline, ticket_model, tickets, analyze_action):
    results = await pipeline.run([step(ticket_model.id, "analyzeTicket", 0, "invoice")])
    assert results[0].matched_record_count == 1
    assert analyze_action.called_ids == [tickets[1].id]


async def test_second_step_sees_first_step_writes(pipeline, record_store, ticket_model, tickets,
                                                  content_action, analyze_action):
    """Step 2 filters on content written by step 1 within the same run."""
    steps = [
        step(ticket_model.id, "writeContent", 0, NEW_TICKETS),
        step(ticket_model.id, "analyzeTicket", 1,
             {"filters": [{"field": "content", "operator": "is_not_empty"}]}),
    ]
    results = await pipeline.run(steps)

    assert [r.matched_record_count for r in results] == [3, 3]
    assert sorted(analyze_action.called_ids) == sorted(t.id for t in tickets[:3])


async def test_steps_run_in_order_not_list_position(pipeline, ticket_model, tickets):
    steps = [
        step(ticket_model.id, "analyzeTicket", 5,
             {"filters": [{"field": "status", "operator": "equals", "value": "Triaged"}]}),
        step(ticket_model.id, "markTriaged", 2, NEW_TICKETS),
    ]
    results = await pipeline.run(steps)
    assert [r.action_id for r in results] == ["markTriaged", "analyzeTicket"]
    assert results[1].matched_record_count == 3


async def test_no_matches_is_a_successful_empty_step(pipeline, ticket_model, tickets, analyze_action):
    query = {"filters": [{"field": "status", "operator": "equals", "value": "Triaged"}]}
    results = await pipeline.run([step(ticket_model.id, "analyzeTicket", 0, query)])
    assert results[0].matched_record_count == 0
    assert analyze_action.calls == []


# ── Failure isolation ─────────────────────────────────────────────────────────

async def test_record_failure_does_not_stop_step_or_next_step(
    record_store, registry, ticket_model, tickets, content_action
):
    bad = tickets[1].id
    registry.register(RecordingAction(
        "flaky", "SupportTicket", outputs={"category": "x"}, fail_when=lambda r: r.id == bad,
    ))
    pipeline = StepPipeline(record_store, ActionExecutor(registry), timeout=5.0)

    results = await pipeline.run([
        step(ticket_model.id, "flaky", 0, NEW_TICKETS),
        step(ticket_model.id, "writeContent", 1, NEW_TICKETS),
    ])

    assert results[0].succeeded == 2
    assert results[0].failed == 1
    assert results[0].errors[0].record_id == bad
    assert "blew up" in results[0].errors[0].error
    assert results[1].succeeded == 3
    assert len(content_action.calls) == 3


async def test_timeout_marks_record_failed(record_store, registry, ticket_model, tickets):
    registry.register(RecordingAction("slow", "SupportTicket", delay=1.0))
    pipeline = StepPipeline(record_store, ActionExecutor(registry), timeout=0.05)

    results = await pipeline.run([step(ticket_model.id, "slow", 0, NEW_TICKETS)])

    assert results[0].failed == 3
    assert "timed out" in results[0].errors[0].error


async def test_invalid_output_value_marks_record_failed(record_store, registry, ticket_model, tickets):
    registry.register(RecordingAction("badStatus", "SupportTicket", outputs={"status": "Lost"}))
    pipeline = StepPipeline(record_store, ActionExecutor(registry))

    results = await pipeline.run([step(ticket_model.id, "badStatus", 0, NEW_TICKETS)])

    assert results[0].failed == 3
    assert "Could not apply outputs" in results[0].errors[0].error


async def test_store_error_on_one_record_is_isolated(pipeline, record_store, ticket_model, tickets,
                                                     content_action):
    bad = tickets[0].id
    original = record_store.update_record

    async def locked_for_one(record_id, updates):
        if record_id == bad:
            raise RuntimeError("database is locked")
        return await original(record_id, updates)

    with patch.object(record_store, "update_record", side_effect=locked_for_one):
        results = await pipeline.run([
            step(ticket_model.id, "analyzeTicket", 0, NEW_TICKETS),
            step(ticket_model.id, "writeContent", 1, NEW_TICKETS),
        ])

    assert results[0].succeeded == 2
    assert results[0].failed == 1
    assert results[0].errors[0].record_id == bad
    assert "database is locked" in results[0].errors[0].error
    assert len(content_action.calls) == 3
    assert results[1].succeeded == 2
    assert results[1].failed == 1


async def test_retries_before_failing(record_store, registry, ticket_model, tickets):
    attempts: dict[str, int] = {}

    def fail_first(record):
        attempts[record.id] = attempts.get(record.id, 0) + 1
        return attempts[record.id] == 1

    registry.register(RecordingAction("retry", "SupportTicket", outputs={"category": "ok"},
                                      fail_when=fail_first))
    pipeline = StepPipeline(record_store, ActionExecutor(registry), max_retries=1)

    results = await pipeline.run([step(ticket_model.id, "retry", 0, NEW_TICKETS)])

    assert results[0].succeeded == 3
    assert all(o.attempts == 2 for o in results[0].records)


# ── Configuration errors ──────────────────────────────────────────────────────

async def test_unknown_operator_fails_fast_without_mutation(pipeline, record_store, ticket_model,
                                                           tickets, content_action):
    before = [r.data for r in await record_store.list_records(ticket_model.id)]
    steps = [
        step(ticket_model.id, "writeContent", 0, NEW_TICKETS),
        step(ticket_model.id, "writeContent", 1,
             {"filters": [{"field": "status", "operator": "fuzzy_match", "value": "New"}]}),
    ]
    with pytest.raises(ConfigurationError, match="fuzzy_match"):
        await pipeline.run(steps)

    assert content_action.calls == []
    assert [r.data for r in await record_store.list_records(ticket_model.id)] == before


async def test_unknown_model_is_configuration_error(pipeline):
    with pytest.raises(ConfigurationError, match="model"):
        await pipeline.run([step("missing", "analyzeTicket")])


async def test_unknown_action_is_configuration_error(pipeline, ticket_model):
    with pytest.raises(ConfigurationError, match="ghostAction"):
        await pipeline.run([step(ticket_model.id, "ghostAction")])


async def test_action_model_mismatch_is_configuration_error(pipeline, ticket_model, lead_model):
    with pytest.raises(ConfigurationError, match="targets model 'Lead'"):
        await pipeline.run([step(ticket_model.id, "enrichLead")])


# ── Cancellation and events ───────────────────────────────────────────────────

async def test_cancel_stops_new_records_and_later_steps(record_store, registry, ticket_model,
                                                        tickets, content_action):
    cancel = asyncio.Event()

    def cancel_after_first(record):
        cancel.set()
        return False

    registry.register(RecordingAction("first", "SupportTicket", outputs={"category": "x"},
                                      fail_when=cancel_after_first))
    pipeline = StepPipeline(record_store, ActionExecutor(registry), max_concurrency=1)

    results = await pipeline.run(
        [step(ticket_model.id, "first", 0, NEW_TICKETS),
         step(ticket_model.id, "writeContent", 1)],
        cancel_event=cancel,
    )

    assert len(results) == 1
    assert results[0].succeeded == 1
    assert results[0].cancelled == 2
    assert [o.status for o in results[0].records].count(RecordStatus.CANCELLED) == 2
    assert content_action.calls == []


async def test_events_published_per_execution(pipeline, event_bus, ticket_model, tickets):
    q = event_bus.subscribe("exec-1")
    await pipeline.run([step(ticket_model.id, "analyzeTicket", 0, NEW_TICKETS)], execution_id="exec-1")

    kinds = []
    while not q.empty():
        kinds.append((await q.get())["type"])
    assert kinds[0] == "step_start"
    assert kinds[1:3] == ["records_found", "records_filtered"]
    assert kinds.count("record_start") == 3
    assert kinds.count("record_complete") == 3
    assert kinds[-1] == "step_complete"
