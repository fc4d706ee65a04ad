"""FastAPI service layer for the agent scheduler."""

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from actions.catalog import load_into
from actions.registry import ActionExecutor, ActionRegistry
from api.models import (
    AddStepRequest,
    CreateModelRequest,
    CreateRecordRequest,
    CreateScheduleRequest,
    UpdateScheduleRequest,
)
from core.config import Settings, get_settings
from core.errors import (
    ConcurrencyConflict,
    ConfigurationError,
    InvalidTransition,
    ValidationError,
)
from core.event_bus import EventBus
from pipeline.runner import StepPipeline, make_event
from query.evaluator import QueryEvaluator
from records.models import DataModel
from records.store import SqlRecordStore
from scheduler.dispatcher import ScheduleDispatcher
from scheduler.schedule_store import ScheduleStore
from scheduler.service import ScheduleService

logger = logging.getLogger(__name__)

# ── Singletons ────────────────────────────────────────────────────────────────
# Built at module load so routes work even when ASGITransport doesn't trigger
# the lifespan (e.g. in tests); configure() swaps them out.

_settings: Settings = get_settings()
_event_bus = EventBus()
_records: SqlRecordStore
_schedule_store: ScheduleStore
_action_registry: ActionRegistry
_service: ScheduleService
_dispatcher: ScheduleDispatcher


def configure(
    settings: Settings | None = None,
    records: SqlRecordStore | None = None,
    schedule_store: ScheduleStore | None = None,
    registry: ActionRegistry | None = None,
) -> None:
    """(Re)build the module singletons from *settings* and optional overrides."""
    global _settings, _records, _schedule_store, _action_registry, _service, _dispatcher
    _settings = settings or _settings
    _records = records or SqlRecordStore(_settings.database_url)
    _schedule_store = schedule_store or ScheduleStore(_settings.database_url)
    if registry is None:
        registry = ActionRegistry()
        if _settings.actions_file:
            count = load_into(registry, _settings.actions_file, _settings.llm_model)
            logger.info("Actions loaded", extra={"path": _settings.actions_file, "count": count})
    _action_registry = registry

    pipeline = StepPipeline(
        _records,
        ActionExecutor(_action_registry),
        evaluator=QueryEvaluator(_records),
        event_bus=_event_bus,
        max_concurrency=_settings.max_concurrent_records,
        timeout=_settings.action_timeout_seconds,
        max_retries=_settings.action_max_retries,
        retry_delay=_settings.action_retry_delay,
        retry_backoff=_settings.action_retry_backoff,
    )
    _service = ScheduleService(_schedule_store, _records, _action_registry)
    _dispatcher = ScheduleDispatcher(
        _schedule_store,
        pipeline,
        tick_interval_seconds=_settings.tick_interval_seconds,
        max_schedules_per_tick=_settings.max_schedules_per_tick,
    )


configure()


@asynccontextmanager
async def lifespan(app: FastAPI):
    await _records.init()
    await _schedule_store.init()
    if _settings.enable_background_tick:
        await _dispatcher.start()
    yield
    await _dispatcher.shutdown()
    await _schedule_store.dispose()
    await _records.dispose()


app = FastAPI(
    title="Agent Scheduler API",
    description="Query-driven job scheduler over a dynamic record store.",
    version="0.1.0",
    lifespan=lifespan,
)


# ── Error mapping ─────────────────────────────────────────────────────────────

@app.exception_handler(ValidationError)
async def _validation_error(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc), "errors": exc.errors})


@app.exception_handler(ConfigurationError)
async def _configuration_error(request: Request, exc: ConfigurationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(ConcurrencyConflict)
async def _concurrency_conflict(request: Request, exc: ConcurrencyConflict):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(InvalidTransition)
async def _invalid_transition(request: Request, exc: InvalidTransition):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


def _not_found(e: KeyError) -> HTTPException:
    return HTTPException(404, detail=str(e.args[0]) if e.args else "Not found")


# ── Routes ────────────────────────────────────────────────────────────────────

@app.get("/health")
async def health():
    return {"status": "ok"}


# ── Schedule routes ───────────────────────────────────────────────────────────

@app.post("/schedules", status_code=201)
async def create_schedule(req: CreateScheduleRequest):
    """Validate and save a new schedule (Draft -> Active)."""
    schedule = await _service.create(req.to_schedule())
    return {"schedule": schedule.to_dict()}


@app.get("/schedules")
async def list_schedules(agent_id: str | None = Query(None, alias="agentId")):
    schedules = await _service.list_schedules(agent_id)
    return {"schedules": [s.to_dict() for s in schedules]}


@app.get("/schedules/{schedule_id}")
async def get_schedule(schedule_id: str):
    try:
        schedule = await _service.get(schedule_id)
    except KeyError as e:
        raise _not_found(e)
    return {"schedule": schedule.to_dict()}


@app.patch("/schedules/{schedule_id}")
async def update_schedule(schedule_id: str, req: UpdateScheduleRequest):
    """Edit an Active or Paused schedule; status is unchanged."""
    try:
        schedule = await _service.update(schedule_id, req.changes())
    except KeyError as e:
        raise _not_found(e)
    return {"schedule": schedule.to_dict()}


@app.delete("/schedules/{schedule_id}", status_code=204)
async def delete_schedule(schedule_id: str, purge_history: bool = Query(False, alias="purgeHistory")):
    """Delete a schedule; execution history is kept unless purgeHistory=true."""
    try:
        await _service.delete(schedule_id, purge_history=purge_history)
    except KeyError as e:
        raise _not_found(e)


@app.post("/schedules/{schedule_id}/toggle")
async def toggle_schedule(schedule_id: str):
    """Pause an active recurring schedule or resume a paused one."""
    try:
        schedule = await _service.toggle(schedule_id)
    except KeyError as e:
        raise _not_found(e)
    return {"schedule": schedule.to_dict()}


@app.post("/schedules/{schedule_id}/duplicate")
async def duplicate_schedule(schedule_id: str, persist: bool = False):
    """Copy a schedule. Returns an unsaved Draft unless persist=true."""
    try:
        copy = await _service.duplicate(schedule_id, persist=persist)
    except KeyError as e:
        raise _not_found(e)
    return JSONResponse(status_code=201 if persist else 200, content={"schedule": copy.to_dict()})


@app.post("/schedules/{schedule_id}/steps")
async def add_step(schedule_id: str, req: AddStepRequest):
    try:
        schedule = await _service.add_step(schedule_id, req.step, req.position)
    except KeyError as e:
        raise _not_found(e)
    return {"schedule": schedule.to_dict()}


@app.delete("/schedules/{schedule_id}/steps/{step_id}")
async def remove_step(schedule_id: str, step_id: str):
    try:
        schedule = await _service.remove_step(schedule_id, step_id)
    except KeyError as e:
        raise _not_found(e)
    return {"schedule": schedule.to_dict()}


@app.get("/schedules/{schedule_id}/executions")
async def list_executions(schedule_id: str, limit: int = Query(50, ge=1, le=500)):
    """Execution log, most recent first. Available after the schedule is deleted."""
    executions = await _service.list_executions(schedule_id, limit=limit)
    return {"executions": [e.to_dict() for e in executions]}


@app.get("/executions/{execution_id}")
async def get_execution(execution_id: str):
    try:
        execution = await _service.get_execution(execution_id)
    except KeyError as e:
        raise _not_found(e)
    return {"execution": execution.to_dict()}


# ── Run routes ────────────────────────────────────────────────────────────────

_SSE_TERMINAL = {"complete", "cancelled", "error"}
_SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


@app.post("/schedules/{schedule_id}/run")
async def run_schedule(schedule_id: str, stream: bool = False):
    """Run a schedule now.

    Without ``stream`` the call waits and returns the execution.  With
    ``stream=true`` pipeline events are pushed as Server-Sent Events until a
    ``complete``, ``cancelled`` or ``error`` event; disconnecting cancels the
    run (records already dispatched still finish).
    """
    if not stream:
        try:
            execution = await _dispatcher.run_now(schedule_id)
        except KeyError as e:
            raise _not_found(e)
        return {"execution": execution.to_dict()}

    try:
        schedule = await _service.get(schedule_id)
    except KeyError as e:
        raise _not_found(e)
    schedule.ensure_runnable()
    if _dispatcher.is_running(schedule_id):
        raise ConcurrencyConflict(schedule_id)

    execution_id = str(uuid.uuid4())
    q = _event_bus.subscribe(execution_id)
    task = asyncio.create_task(_dispatcher.run_now(schedule_id, execution_id=execution_id))

    def _on_done(t: asyncio.Task) -> None:
        if not t.cancelled() and t.exception() is not None:
            q.put_nowait(make_event("error", execution_id, error=str(t.exception())))

    task.add_done_callback(_on_done)

    async def generator():
        try:
            while True:
                try:
                    event = await asyncio.wait_for(q.get(), timeout=30.0)
                    yield f"data: {json.dumps(event, default=str)}\n\n"
                    if event.get("type") in _SSE_TERMINAL:
                        return
                except asyncio.TimeoutError:
                    yield ": heartbeat\n\n"
        finally:
            _event_bus.unsubscribe(execution_id, q)
            if not task.done():
                _dispatcher.cancel(schedule_id)

    return StreamingResponse(generator(), media_type="text/event-stream", headers=_SSE_HEADERS)


@app.post("/schedules/{schedule_id}/cancel")
async def cancel_run(schedule_id: str):
    """Stop dispatching new records for a running schedule."""
    if not _dispatcher.cancel(schedule_id):
        raise HTTPException(409, detail=f"Schedule '{schedule_id}' is not running")
    return {"cancelled": True}


# ── Dispatcher routes ─────────────────────────────────────────────────────────

@app.post("/dispatcher/tick")
async def dispatcher_tick(authorization: str | None = Header(None)):
    """Run due schedules now. Intended for an external cron."""
    if _settings.cron_token and authorization != f"Bearer {_settings.cron_token}":
        raise HTTPException(401, detail="Unauthorized")
    executions = await _dispatcher.tick()
    return {
        "processed": len(executions),
        "executions": [
            {"executionId": e.execution_id, "scheduleId": e.schedule_id,
             "scheduleName": e.schedule_name, "status": e.status.value,
             "succeeded": e.succeeded, "failed": e.failed, "error": e.error}
            for e in executions
        ],
    }


@app.get("/dispatcher/status")
async def dispatcher_status():
    return await _dispatcher.status()


# ── Model / record routes ─────────────────────────────────────────────────────

@app.get("/actions")
async def list_actions():
    return {"actions": [a.describe() for a in _action_registry.all()]}


@app.post("/models", status_code=201)
async def create_model(req: CreateModelRequest):
    model = DataModel(agent_id=req.agent_id, name=req.name, fields=req.fields)
    await _records.create_model(model)
    return {"model": model.to_dict()}


@app.get("/models")
async def list_models(agent_id: str | None = Query(None, alias="agentId")):
    models = await _records.list_models(agent_id)
    return {"models": [m.to_dict() for m in models]}


@app.post("/models/{model_id}/records", status_code=201)
async def create_record(model_id: str, req: CreateRecordRequest):
    try:
        record = await _records.create_record(model_id, req.data)
    except KeyError as e:
        raise _not_found(e)
    except ValueError as e:
        raise HTTPException(422, detail=str(e))
    return {"record": record.to_dict()}


@app.get("/models/{model_id}/records")
async def list_records(model_id: str):
    if await _records.get_model(model_id) is None:
        raise HTTPException(404, detail=f"Model '{model_id}' not found")
    records = await _records.list_records(model_id)
    return {"records": [r.to_dict() for r in records]}
