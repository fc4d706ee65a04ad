"""Agent Scheduler CLI — interact with a running scheduler API server."""

from __future__ import annotations

import json
import sys
from typing import Any

import click
import httpx
import yaml
from rich import box
from rich.console import Console
from rich.table import Table

console = Console()
err_console = Console(stderr=True)

_TERMINAL = {"complete", "cancelled", "error"}

_STATUS_COLOR: dict[str, str] = {
    "completed": "green",
    "succeeded": "green",
    "failed": "red",
    "cancelled": "dim",
    "active": "green",
    "paused": "yellow",
    "draft": "blue",
}


# ── Internal helpers ──────────────────────────────────────────────────────────


def _color(status: str) -> str:
    return _STATUS_COLOR.get(status, "white")


def _client(url: str, timeout: float | None = 300) -> httpx.Client:
    # Runs wait for the whole pipeline
    return httpx.Client(base_url=url.rstrip("/"), timeout=timeout)


def _load_file(path: str) -> dict:
    with open(path) as f:
        return yaml.safe_load(f) if path.endswith((".yaml", ".yml")) else json.load(f)


def _die(msg: str, code: int = 1) -> None:
    err_console.print(f"[red]Error:[/] {msg}")
    sys.exit(code)


def _check(resp: httpx.Response) -> None:
    if resp.status_code in (404, 409, 422):
        body = resp.json()
        detail = body.get("detail", "Request failed")
        for err in body.get("errors", []):
            detail += f"\n  - {err}"
        _die(detail if isinstance(detail, str) else json.dumps(detail))
    if resp.is_error:
        _die(f"HTTP {resp.status_code}: {resp.text}")


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _interval(s: dict) -> str:
    if s.get("mode") != "recurring" or s.get("intervalHours") is None:
        return "-"
    return f"{s['intervalHours']:g}h"


# ── Root group ────────────────────────────────────────────────────────────────


@click.group()
@click.option(
    "--url", "-u",
    default="http://localhost:8000",
    envvar="SCHEDULER_URL",
    show_default=True,
    help="Scheduler API base URL.",
)
@click.option("--json", "json_output", is_flag=True, help="Output raw JSON.")
@click.pass_context
def cli(ctx: click.Context, url: str, json_output: bool) -> None:
    """Agent Scheduler — query-driven record automation CLI."""
    ctx.ensure_object(dict)
    ctx.obj["url"] = url
    ctx.obj["json_output"] = json_output


# ── scheduler tick / status ───────────────────────────────────────────────────


@cli.command("tick")
@click.option("--token", envvar="SCHEDULER_CRON_TOKEN", help="Bearer token for the tick endpoint.")
@click.pass_obj
def tick(obj: dict, token: str | None) -> None:
    """Run every due schedule now."""
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    with _client(obj["url"]) as c:
        resp = c.post("/dispatcher/tick", headers=headers)
    if resp.status_code == 401:
        _die("Unauthorized: pass --token or set SCHEDULER_CRON_TOKEN")
    _check(resp)
    data = resp.json()

    if obj["json_output"]:
        _echo_json(data)
        return

    click.echo(f"Processed {data['processed']} schedule(s).")
    for e in data.get("executions", []):
        status = e["status"]
        console.print(
            f"  {e['scheduleName'] or e['scheduleId']}: [{_color(status)}]{status}[/]"
            f"  ok={e['succeeded']} failed={e['failed']}"
        )


@cli.command("status")
@click.pass_obj
def dispatcher_status(obj: dict) -> None:
    """Show which schedules are due and when the next tick runs."""
    with _client(obj["url"]) as c:
        resp = c.get("/dispatcher/status")
    _check(resp)
    data = resp.json()

    if obj["json_output"]:
        _echo_json(data)
        return

    click.echo(f"Next tick: {data.get('nextTickAt') or '-'}")
    click.echo(f"Last tick: {data.get('lastTickAt') or '-'}")
    click.echo(f"Running:   {', '.join(data.get('running', [])) or '-'}")
    click.echo(f"Due now:   {data['dueCount']}")
    for s in data.get("due", []):
        click.echo(f"  {s['id']}  {s['name']}  (due {s['nextRunAt']})")


# ── scheduler schedule ────────────────────────────────────────────────────────


@cli.group("schedule")
def schedule() -> None:
    """Manage schedules."""


@schedule.command("list")
@click.option("--agent", "agent_id", help="Only schedules of this agent.")
@click.pass_obj
def schedule_list(obj: dict, agent_id: str | None) -> None:
    """List schedules."""
    params = {"agentId": agent_id} if agent_id else {}
    with _client(obj["url"]) as c:
        resp = c.get("/schedules", params=params)
    _check(resp)
    data = resp.json()

    if obj["json_output"]:
        _echo_json(data)
        return

    schedules = data.get("schedules", [])
    if not schedules:
        click.echo("No schedules found.")
        return

    table = Table(box=box.SIMPLE)
    table.add_column("Schedule ID", style="cyan")
    table.add_column("Name")
    table.add_column("Mode")
    table.add_column("Every", justify="right")
    table.add_column("Steps", justify="right")
    table.add_column("Status")
    table.add_column("Next Run")
    for s in schedules:
        status = s.get("status", "?")
        table.add_row(
            s["id"],
            s.get("name", ""),
            s.get("mode", "?"),
            _interval(s),
            str(len(s.get("steps", []))),
            f"[{_color(status)}]{status}[/]",
            s.get("nextRunAt") or "-",
        )
    console.print(table)


@schedule.command("show")
@click.argument("schedule_id")
@click.pass_obj
def schedule_show(obj: dict, schedule_id: str) -> None:
    """Show a schedule and its steps."""
    with _client(obj["url"]) as c:
        resp = c.get(f"/schedules/{schedule_id}")
    _check(resp)
    _print_schedule(resp.json()["schedule"], obj["json_output"])


def _print_schedule(s: dict, json_output: bool) -> None:
    if json_output:
        _echo_json(s)
        return

    status = s.get("status", "?")
    console.print(f"[cyan]{s['id']}[/]  {s.get('name', '')}  [{_color(status)}]{status}[/]")
    console.print(f"Mode: {s.get('mode')}  Every: {_interval(s)}  Next run: {s.get('nextRunAt') or '-'}")
    console.print(f"Runs: {s.get('runCount', 0)}  Last run: {s.get('lastRunAt') or '-'}\n")

    steps = s.get("steps", [])
    if steps:
        table = Table(box=box.SIMPLE)
        table.add_column("Order", justify="right")
        table.add_column("Model", style="cyan")
        table.add_column("Query")
        table.add_column("Action")
        for step in steps:
            query = step.get("query")
            table.add_row(
                str(step.get("order")),
                step.get("modelId", ""),
                query if isinstance(query, str) else json.dumps(query),
                step.get("actionId", ""),
            )
        console.print(table)


@schedule.command("create")
@click.argument("file", type=click.Path(exists=True))
@click.pass_obj
def schedule_create(obj: dict, file: str) -> None:
    """Create a schedule from a YAML or JSON file.

    \b
    File format (YAML example):
      name: Triage new tickets
      mode: recurring
      intervalHours: 24
      steps:
        - modelId: <model id>
          query:
            filters:
              - {field: status, operator: equals, value: New}
            logic: AND
          actionId: analyzeTicket
          order: 0
    """
    payload = _load_file(file)
    with _client(obj["url"]) as c:
        resp = c.post("/schedules", json=payload)
    _check(resp)
    s = resp.json()["schedule"]

    if obj["json_output"]:
        _echo_json(s)
        return

    click.echo(f"Created  {s['id']}  [{s['status']}]  next: {s.get('nextRunAt') or '-'}")


@schedule.command("update")
@click.argument("schedule_id")
@click.argument("file", type=click.Path(exists=True))
@click.pass_obj
def schedule_update(obj: dict, schedule_id: str, file: str) -> None:
    """Edit a schedule with the fields given in a YAML or JSON file."""
    payload = _load_file(file)
    with _client(obj["url"]) as c:
        resp = c.patch(f"/schedules/{schedule_id}", json=payload)
    _check(resp)
    s = resp.json()["schedule"]

    if obj["json_output"]:
        _echo_json(s)
        return

    click.echo(f"Updated  {s['id']}  [{s['status']}]  next: {s.get('nextRunAt') or '-'}")


@schedule.command("toggle")
@click.argument("schedule_id")
@click.pass_obj
def schedule_toggle(obj: dict, schedule_id: str) -> None:
    """Pause an active recurring schedule, or resume a paused one."""
    with _client(obj["url"]) as c:
        resp = c.post(f"/schedules/{schedule_id}/toggle")
    _check(resp)
    s = resp.json()["schedule"]
    if obj["json_output"]:
        _echo_json(s)
        return
    click.echo(f"{'Resumed' if s['status'] == 'active' else 'Paused'}  {schedule_id}")


@schedule.command("duplicate")
@click.argument("schedule_id")
@click.option("--persist", is_flag=True, help="Save the copy as a new active schedule.")
@click.pass_obj
def schedule_duplicate(obj: dict, schedule_id: str, persist: bool) -> None:
    """Copy a schedule's definition."""
    with _client(obj["url"]) as c:
        resp = c.post(f"/schedules/{schedule_id}/duplicate", params={"persist": persist})
    _check(resp)
    s = resp.json()["schedule"]

    if obj["json_output"] or not persist:
        _echo_json(s)
        return

    click.echo(f"Created  {s['id']}  {s['name']}  [{s['status']}]")


@schedule.command("delete")
@click.argument("schedule_id")
@click.option("--purge-history", is_flag=True, help="Also delete the execution log.")
@click.pass_obj
def schedule_delete(obj: dict, schedule_id: str, purge_history: bool) -> None:
    """Delete a schedule."""
    with _client(obj["url"]) as c:
        resp = c.delete(f"/schedules/{schedule_id}", params={"purgeHistory": purge_history})
    _check(resp)
    click.echo(f"Deleted  {schedule_id}")


@schedule.command("run")
@click.argument("schedule_id")
@click.option("--stream", "stream_events", is_flag=True, help="Print pipeline events as they happen.")
@click.pass_obj
def schedule_run(obj: dict, schedule_id: str, stream_events: bool) -> None:
    """Run a schedule now."""
    if stream_events:
        _stream_run(obj, schedule_id)
        return

    with _client(obj["url"]) as c:
        resp = c.post(f"/schedules/{schedule_id}/run")
    _check(resp)
    execution = resp.json()["execution"]
    _print_execution(execution, obj["json_output"])
    if execution["status"] == "failed":
        sys.exit(1)


def _stream_run(obj: dict, schedule_id: str) -> None:
    try:
        with _client(obj["url"], timeout=None) as c:
            with c.stream("POST", f"/schedules/{schedule_id}/run", params={"stream": "true"}) as resp:
                if resp.is_error:
                    resp.read()
                    _check(resp)
                for line in resp.iter_lines():
                    if not line.startswith("data: "):
                        continue
                    try:
                        event = json.loads(line[6:])
                    except json.JSONDecodeError:
                        continue
                    if obj["json_output"]:
                        click.echo(json.dumps(event))
                    else:
                        _print_event(event)
                    if event.get("type") in _TERMINAL:
                        break
    except httpx.ConnectError:
        _die(f"Cannot connect to {obj['url']}")


def _print_event(event: dict) -> None:
    kind = event.get("type")
    if kind == "start":
        console.print(f"[bold]{event.get('scheduleName')}[/]  {event.get('totalSteps')} step(s)")
    elif kind == "step_start":
        console.print(f"Step {event['step']}/{event['total']}  {event['actionId']}")
    elif kind == "records_filtered":
        console.print(f"  matched {event['count']} record(s)")
    elif kind == "record_complete":
        if event.get("success"):
            console.print(f"  [green]ok[/]    {event['recordId']}")
        else:
            console.print(f"  [red]fail[/]  {event['recordId']}  {event.get('error') or ''}")
    elif kind in _TERMINAL:
        execution = event.get("execution")
        if execution:
            console.print()
            _print_execution(execution, False)
        else:
            console.print(f"[red]{event.get('error')}[/]")


@schedule.command("cancel")
@click.argument("schedule_id")
@click.pass_obj
def schedule_cancel(obj: dict, schedule_id: str) -> None:
    """Stop a running schedule after its in-flight records finish."""
    with _client(obj["url"]) as c:
        resp = c.post(f"/schedules/{schedule_id}/cancel")
    _check(resp)
    click.echo(f"Cancelling  {schedule_id}")


@schedule.command("executions")
@click.argument("schedule_id")
@click.option("--limit", default=50, show_default=True)
@click.pass_obj
def schedule_executions(obj: dict, schedule_id: str, limit: int) -> None:
    """List past executions, most recent first."""
    with _client(obj["url"]) as c:
        resp = c.get(f"/schedules/{schedule_id}/executions", params={"limit": limit})
    _check(resp)
    data = resp.json()

    if obj["json_output"]:
        _echo_json(data)
        return

    executions = data.get("executions", [])
    if not executions:
        click.echo("No executions found.")
        return

    table = Table(box=box.SIMPLE)
    table.add_column("Execution ID", style="cyan")
    table.add_column("Trigger")
    table.add_column("Status")
    table.add_column("Started")
    table.add_column("Matched", justify="right")
    table.add_column("OK", justify="right")
    table.add_column("Failed", justify="right")
    for e in executions:
        status = e.get("status", "?")
        steps = e.get("perStepResults", [])
        table.add_row(
            e["executionId"],
            e.get("trigger", "?"),
            f"[{_color(status)}]{status}[/]",
            e.get("startedAt", ""),
            str(sum(s.get("matchedRecordCount", 0) for s in steps)),
            str(sum(s.get("succeeded", 0) for s in steps)),
            str(sum(s.get("failed", 0) for s in steps)),
        )
    console.print(table)


def _print_execution(execution: dict, json_output: bool) -> None:
    if json_output:
        _echo_json(execution)
        return

    status = execution.get("status", "?")
    console.print(f"Status: [{_color(status)}]{status}[/]")
    if execution.get("error"):
        console.print(f"[red]{execution['error']}[/]")

    steps = execution.get("perStepResults", [])
    if steps:
        table = Table(box=box.SIMPLE)
        table.add_column("Step", justify="right")
        table.add_column("Action", style="cyan")
        table.add_column("Matched", justify="right")
        table.add_column("OK", justify="right")
        table.add_column("Failed", justify="right")
        table.add_column("Errors")
        for s in steps:
            errors = "; ".join(
                f"{e['recordId']}: {e['error']}" for e in s.get("errors", [])
            )[:80]
            table.add_row(
                str(s["stepOrder"]),
                s["actionId"],
                str(s["matchedRecordCount"]),
                str(s["succeeded"]),
                str(s["failed"]),
                f"[red]{errors}[/]" if errors else "",
            )
        console.print(table)
