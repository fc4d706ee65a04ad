"""Tests for the CLI tool."""

import json
from unittest.mock import MagicMock, patch

import pytest
import yaml
from click.testing import CliRunner

from cli.main import cli


SCHEDULE = {
    "id": "sch-1",
    "name": "Nightly triage",
    "mode": "recurring",
    "intervalHours": 24,
    "status": "active",
    "nextRunAt": "2024-05-02T12:00:00+00:00",
    "runCount": 0,
    "steps": [
        {"id": "st-1", "order": 0, "modelId": "m-1", "actionId": "analyzeTicket",
         "query": {"filters": [{"field": "status", "operator": "equals", "value": "New"}],
                   "logic": "AND"}},
    ],
}

EXECUTION = {
    "executionId": "ex-1",
    "scheduleId": "sch-1",
    "trigger": "manual",
    "status": "completed",
    "error": None,
    "startedAt": "2024-05-01T12:00:00+00:00",
    "perStepResults": [
        {"stepOrder": 0, "actionId": "analyzeTicket", "matchedRecordCount": 3,
         "succeeded": 2, "failed": 1,
         "errors": [{"recordId": "r-2", "error": "boom"}]},
    ],
}


# ── Fixtures ──────────────────────────────────────────────────────────────────


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def schedule_yaml(tmp_path):
    body = {
        "name": "Nightly triage",
        "mode": "recurring",
        "intervalHours": 24,
        "steps": [{"modelId": "m-1", "actionId": "analyzeTicket", "query": "urgent", "order": 0}],
    }
    p = tmp_path / "schedule.yaml"
    p.write_text(yaml.dump(body))
    return str(p)


def _response(status: int, data=None, text: str = "") -> MagicMock:
    return MagicMock(
        status_code=status,
        json=lambda: data or {},
        text=text,
        is_error=status >= 400,
    )


def _mock_client(mock_factory) -> MagicMock:
    mc = MagicMock()
    mc.__enter__ = MagicMock(return_value=mc)
    mc.__exit__ = MagicMock(return_value=False)
    mock_factory.return_value = mc
    return mc


# ── Help ──────────────────────────────────────────────────────────────────────


def test_cli_help(runner):
    result = runner.invoke(cli, ["--help"])
    assert result.exit_code == 0
    assert "schedule" in result.output
    assert "tick" in result.output
    assert "status" in result.output


def test_schedule_help(runner):
    result = runner.invoke(cli, ["schedule", "--help"])
    assert result.exit_code == 0
    for name in ("list", "create", "toggle", "duplicate", "run", "executions"):
        assert name in result.output


# ── schedule commands ─────────────────────────────────────────────────────────


def test_schedule_list(runner):
    with patch("cli.main._client") as mock_factory:
        mc = _mock_client(mock_factory)
        mc.get.return_value = _response(200, {"schedules": [SCHEDULE]})

        result = runner.invoke(cli, ["schedule", "list", "--agent", "agent-1"])

    assert result.exit_code == 0
    assert "sch-1" in result.output
    assert "24h" in result.output
    mc.get.assert_called_once_with("/schedules", params={"agentId": "agent-1"})


def test_schedule_list_empty(runner):
    with patch("cli.main._client") as mock_factory:
        _mock_client(mock_factory).get.return_value = _response(200, {"schedules": []})
        result = runner.invoke(cli, ["schedule", "list"])
    assert "No schedules found." in result.output


def test_schedule_show(runner):
    with patch("cli.main._client") as mock_factory:
        _mock_client(mock_factory).get.return_value = _response(200, {"schedule": SCHEDULE})
        result = runner.invoke(cli, ["schedule", "show", "sch-1"])
    assert result.exit_code == 0
    assert "Nightly triage" in result.output
    assert "analyzeTicket" in result.output


def test_schedule_show_missing(runner):
    with patch("cli.main._client") as mock_factory:
        _mock_client(mock_factory).get.return_value = _response(
            404, {"detail": "Schedule 'ghost' not found"}
        )
        result = runner.invoke(cli, ["schedule", "show", "ghost"])
    assert result.exit_code == 1


def test_schedule_create_posts_file(runner, schedule_yaml):
    with patch("cli.main._client") as mock_factory:
        mc = _mock_client(mock_factory)
        mc.post.return_value = _response(201, {"schedule": SCHEDULE})

        result = runner.invoke(cli, ["schedule", "create", schedule_yaml])

    assert result.exit_code == 0
    assert "Created  sch-1" in result.output
    payload = mc.post.call_args.kwargs["json"]
    assert payload["intervalHours"] == 24
    assert payload["steps"][0]["query"] == "urgent"


def test_schedule_create_validation_errors(runner, schedule_yaml):
    with patch("cli.main._client") as mock_factory:
        _mock_client(mock_factory).post.return_value = _response(422, {
            "detail": "invalid",
            "errors": ["steps[0]: action 'ghost' not found"],
        })
        result = runner.invoke(cli, ["schedule", "create", schedule_yaml])
    assert result.exit_code == 1


def test_schedule_update_patches_file(runner, tmp_path):
    p = tmp_path / "changes.yaml"
    p.write_text(yaml.dump({"name": "Hourly triage", "intervalHours": 1}))
    with patch("cli.main._client") as mock_factory:
        mc = _mock_client(mock_factory)
        mc.patch.return_value = _response(200, {"schedule": {**SCHEDULE, "intervalHours": 1}})

        result = runner.invoke(cli, ["schedule", "update", "sch-1", str(p)])

    assert result.exit_code == 0
    assert "Updated  sch-1  [active]" in result.output
    mc.patch.assert_called_once_with(
        "/schedules/sch-1", json={"name": "Hourly triage", "intervalHours": 1}
    )


def test_schedule_update_completed_is_error(runner, tmp_path):
    p = tmp_path / "changes.json"
    p.write_text(json.dumps({"name": "Too late"}))
    with patch("cli.main._client") as mock_factory:
        _mock_client(mock_factory).patch.return_value = _response(
            409, {"detail": "Schedule in state 'completed' cannot be edited"}
        )
        result = runner.invoke(cli, ["schedule", "update", "sch-1", str(p)])
    assert result.exit_code == 1


def test_schedule_toggle(runner):
    with patch("cli.main._client") as mock_factory:
        _mock_client(mock_factory).post.return_value = _response(
            200, {"schedule": {**SCHEDULE, "status": "paused"}}
        )
        result = runner.invoke(cli, ["schedule", "toggle", "sch-1"])
    assert result.exit_code == 0
    assert "Paused" in result.output


def test_schedule_duplicate_draft_prints_json(runner):
    with patch("cli.main._client") as mock_factory:
        mc = _mock_client(mock_factory)
        mc.post.return_value = _response(200, {"schedule": {**SCHEDULE, "status": "draft"}})
        result = runner.invoke(cli, ["schedule", "duplicate", "sch-1"])
    assert result.exit_code == 0
    assert json.loads(result.output)["status"] == "draft"
    mc.post.assert_called_once_with("/schedules/sch-1/duplicate", params={"persist": False})


def test_schedule_delete_with_purge(runner):
    with patch("cli.main._client") as mock_factory:
        mc = _mock_client(mock_factory)
        mc.delete.return_value = _response(204)
        result = runner.invoke(cli, ["schedule", "delete", "sch-1", "--purge-history"])
    assert result.exit_code == 0
    mc.delete.assert_called_once_with("/schedules/sch-1", params={"purgeHistory": True})


# ── run / executions ──────────────────────────────────────────────────────────


def test_schedule_run(runner):
    with patch("cli.main._client") as mock_factory:
        _mock_client(mock_factory).post.return_value = _response(200, {"execution": EXECUTION})
        result = runner.invoke(cli, ["schedule", "run", "sch-1"])
    assert result.exit_code == 0
    assert "completed" in result.output
    assert "boom" in result.output


def test_schedule_run_failed_exits_nonzero(runner):
    failed = {**EXECUTION, "status": "failed", "error": "unknown operator", "perStepResults": []}
    with patch("cli.main._client") as mock_factory:
        _mock_client(mock_factory).post.return_value = _response(200, {"execution": failed})
        result = runner.invoke(cli, ["schedule", "run", "sch-1"])
    assert result.exit_code == 1
    assert "unknown operator" in result.output


def test_schedule_run_conflict(runner):
    with patch("cli.main._client") as mock_factory:
        _mock_client(mock_factory).post.return_value = _response(
            409, {"detail": "Schedule 'sch-1' is already running"}
        )
        result = runner.invoke(cli, ["schedule", "run", "sch-1"])
    assert result.exit_code == 1


def test_schedule_run_json(runner):
    with patch("cli.main._client") as mock_factory:
        _mock_client(mock_factory).post.return_value = _response(200, {"execution": EXECUTION})
        result = runner.invoke(cli, ["--json", "schedule", "run", "sch-1"])
    assert json.loads(result.output)["executionId"] == "ex-1"


def test_schedule_run_stream_prints_events(runner):
    events = [
        {"type": "start", "scheduleName": "Nightly triage", "totalSteps": 1},
        {"type": "step_start", "step": 1, "total": 1, "actionId": "analyzeTicket"},
        {"type": "records_filtered", "count": 3},
        {"type": "record_complete", "recordId": "r-1", "success": True},
        {"type": "record_complete", "recordId": "r-2", "success": False, "error": "boom"},
        {"type": "complete", "execution": EXECUTION},
        {"type": "record_complete", "recordId": "r-9", "success": True},
    ]
    stream_resp = MagicMock(is_error=False)
    stream_resp.iter_lines.return_value = [": keep-alive"] + [
        f"data: {json.dumps(e)}" for e in events
    ]
    with patch("cli.main._client") as mock_factory:
        mc = _mock_client(mock_factory)
        mc.stream.return_value.__enter__.return_value = stream_resp

        result = runner.invoke(cli, ["schedule", "run", "sch-1", "--stream"])

    assert result.exit_code == 0
    assert "Step 1/1  analyzeTicket" in result.output
    assert "matched 3 record(s)" in result.output
    assert "r-2" in result.output and "boom" in result.output
    assert "completed" in result.output
    assert "r-9" not in result.output
    mock_factory.assert_called_once_with("http://localhost:8000", timeout=None)
    mc.stream.assert_called_once_with("POST", "/schedules/sch-1/run", params={"stream": "true"})


def test_schedule_run_stream_json(runner):
    stream_resp = MagicMock(is_error=False)
    stream_resp.iter_lines.return_value = [
        'data: {"type": "start", "scheduleName": "Nightly triage", "totalSteps": 1}',
        'data: {"type": "error", "error": "unknown operator"}',
    ]
    with patch("cli.main._client") as mock_factory:
        _mock_client(mock_factory).stream.return_value.__enter__.return_value = stream_resp
        result = runner.invoke(cli, ["--json", "schedule", "run", "sch-1", "--stream"])
    lines = [json.loads(line) for line in result.output.splitlines()]
    assert [e["type"] for e in lines] == ["start", "error"]


def test_schedule_cancel(runner):
    with patch("cli.main._client") as mock_factory:
        mc = _mock_client(mock_factory)
        mc.post.return_value = _response(200, {"cancelled": True})
        result = runner.invoke(cli, ["schedule", "cancel", "sch-1"])
    assert result.exit_code == 0
    assert "Cancelling  sch-1" in result.output
    mc.post.assert_called_once_with("/schedules/sch-1/cancel")


def test_schedule_cancel_not_running(runner):
    with patch("cli.main._client") as mock_factory:
        _mock_client(mock_factory).post.return_value = _response(
            409, {"detail": "Schedule 'sch-1' is not running"}
        )
        result = runner.invoke(cli, ["schedule", "cancel", "sch-1"])
    assert result.exit_code == 1


def test_schedule_executions(runner):
    with patch("cli.main._client") as mock_factory:
        mc = _mock_client(mock_factory)
        mc.get.return_value = _response(200, {"executions": [EXECUTION]})
        result = runner.invoke(cli, ["schedule", "executions", "sch-1", "--limit", "5"])
    assert result.exit_code == 0
    assert "ex-1" in result.output
    mc.get.assert_called_once_with("/schedules/sch-1/executions", params={"limit": 5})


# ── tick / status ─────────────────────────────────────────────────────────────


def test_tick_sends_token(runner):
    with patch("cli.main._client") as mock_factory:
        mc = _mock_client(mock_factory)
        mc.post.return_value = _response(200, {"processed": 1, "executions": [{
            "executionId": "ex-1", "scheduleId": "sch-1", "scheduleName": "Nightly triage",
            "status": "completed", "succeeded": 3, "failed": 0, "error": None,
        }]})
        result = runner.invoke(cli, ["tick", "--token", "s3cret"])
    assert result.exit_code == 0
    assert "Processed 1 schedule(s)." in result.output
    mc.post.assert_called_once_with("/dispatcher/tick", headers={"Authorization": "Bearer s3cret"})


def test_tick_unauthorized(runner):
    with patch("cli.main._client") as mock_factory:
        _mock_client(mock_factory).post.return_value = _response(401, {"detail": "Unauthorized"})
        result = runner.invoke(cli, ["tick"])
    assert result.exit_code == 1


def test_dispatcher_status(runner):
    with patch("cli.main._client") as mock_factory:
        _mock_client(mock_factory).get.return_value = _response(200, {
            "now": "2024-05-01T12:00:00+00:00", "lastTickAt": None, "nextTickAt": None,
            "running": [], "dueCount": 1,
            "due": [{"id": "sch-1", "name": "Nightly triage", "nextRunAt": "2024-05-01T11:00:00+00:00"}],
        })
        result = runner.invoke(cli, ["status"])
    assert result.exit_code == 0
    assert "Due now:   1" in result.output
    assert "sch-1" in result.output
