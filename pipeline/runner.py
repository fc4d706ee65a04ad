"""Step Pipeline — runs a schedule's steps against the Record Store."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from actions.registry import ActionExecutor
from core.errors import ConfigurationError, RecordActionError
from core.event_bus import EventBus
from core.state import RecordOutcome, RecordStatus, StepResult
from query.evaluator import QueryEvaluator, query_problems
from records.models import Record
from records.store import RecordStore

if TYPE_CHECKING:
    from scheduler.models import ScheduleStep

logger = logging.getLogger(__name__)


class StepPipeline:
    """Executes ordered (model, query, action) steps.

    Steps run strictly one after another so a later step sees every field
    written by an earlier one.  Within a step, matched records are processed
    concurrently up to ``max_concurrency``; each record is its own unit of
    work and a failure is recorded against that record only.

    Every step is checked before the first record is touched: an unknown
    model, action or operator raises ConfigurationError and nothing runs.
    """

    def __init__(
        self,
        store: RecordStore,
        executor: ActionExecutor,
        evaluator: QueryEvaluator | None = None,
        event_bus: EventBus | None = None,
        max_concurrency: int = 5,
        timeout: float | None = 120.0,
        max_retries: int = 0,
        retry_delay: float = 0.0,
        retry_backoff: float = 2.0,
    ):
        self.store = store
        self.executor = executor
        self.evaluator = evaluator or QueryEvaluator(store)
        self.event_bus = event_bus
        self.max_concurrency = max(1, max_concurrency)
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.retry_backoff = retry_backoff

    # ── Public API ───────────────────────────────────────────────────────────

    async def run(
        self,
        steps: list[ScheduleStep],
        execution_id: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> list[StepResult]:
        """Run *steps* in ``order`` and return one StepResult per step run.

        When *cancel_event* is set, records not yet dispatched are reported as
        cancelled and the remaining steps are skipped.
        """
        ordered = sorted(steps, key=lambda s: s.order)
        await self.preflight(ordered)

        results: list[StepResult] = []
        for index, step in enumerate(ordered):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Pipeline cancelled before step", extra={"step": step.order})
                break
            await self.emit(execution_id, "step_start", step=index + 1, total=len(ordered),
                            stepOrder=step.order, modelId=step.model_id, actionId=step.action_id)
            result = await self._run_step(step, execution_id, cancel_event)
            results.append(result)
            await self.emit(execution_id, "step_complete", step=index + 1,
                            stepOrder=step.order, result=result.to_dict())
        return results

    async def preflight(self, steps: list[ScheduleStep]) -> None:
        """Resolve every model/action reference; raise ConfigurationError on the first bad step."""
        for step in steps:
            where = f"Step {step.order}"
            model = await self.store.get_model(step.model_id)
            if model is None:
                raise ConfigurationError(f"{where}: model '{step.model_id}' not found")
            action = self.executor.resolve(step.action_id)
            if action.model_name != model.name:
                raise ConfigurationError(
                    f"{where}: action '{action.id}' targets model '{action.model_name}', "
                    f"not '{model.name}'"
                )
            problems = query_problems(step.query, model)
            if problems:
                raise ConfigurationError(f"{where}: " + "; ".join(problems))

    async def emit(self, execution_id: str | None, kind: str, **data: Any) -> None:
        if self.event_bus and execution_id:
            await self.event_bus.publish(execution_id, make_event(kind, execution_id, **data))

    # ── Step execution ───────────────────────────────────────────────────────

    async def _run_step(
        self,
        step: ScheduleStep,
        execution_id: str | None,
        cancel_event: asyncio.Event | None,
    ) -> StepResult:
        result = StepResult(
            step_order=step.order,
            model_id=step.model_id,
            action_id=step.action_id,
            started_at=datetime.now(timezone.utc),
        )

        # Fresh read, then a fixed snapshot for the rest of the step
        candidates = await self.store.list_records(step.model_id)
        await self.emit(execution_id, "records_found", stepOrder=step.order, count=len(candidates))
        matched = _unique(await self.evaluator.select(step.model_id, candidates, step.query))
        result.matched_record_count = len(matched)
        await self.emit(execution_id, "records_filtered", stepOrder=step.order,
                        count=len(matched), recordIds=[r.id for r in matched])
        logger.info(
            "Step started",
            extra={"step": step.order, "model": step.model_id, "action": step.action_id,
                   "candidates": len(candidates), "matched": len(matched)},
        )

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def guarded(record: Record) -> RecordOutcome:
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    return RecordOutcome(record_id=record.id, status=RecordStatus.CANCELLED)
                return await self._run_record(step, record, execution_id)

        for outcome in await asyncio.gather(*[guarded(r) for r in matched]):
            result.add(outcome)

        result.finished_at = datetime.now(timezone.utc)
        logger.info(
            "Step completed",
            extra={"step": step.order, "succeeded": result.succeeded,
                   "failed": result.failed, "cancelled": result.cancelled},
        )
        return result

    async def _run_record(
        self,
        step: ScheduleStep,
        record: Record,
        execution_id: str | None,
    ) -> RecordOutcome:
        await self.emit(execution_id, "record_start", stepOrder=step.order, recordId=record.id)
        started = time.monotonic()
        outputs, error, attempts = await self._invoke_with_retry(step.action_id, record)

        if error is None and outputs:
            try:
                await self.store.update_record(record.id, outputs)
            except (KeyError, ValueError) as e:
                error = f"Could not apply outputs: {e}"
            except Exception as e:
                # One record's write-back failing must not abort the step
                error = f"Could not save outputs: {type(e).__name__}: {e}"

        outcome = RecordOutcome(
            record_id=record.id,
            status=RecordStatus.SUCCEEDED if error is None else RecordStatus.FAILED,
            error=error,
            outputs=outputs if error is None else {},
            attempts=attempts,
            duration_seconds=round(time.monotonic() - started, 3),
        )
        if error is not None:
            logger.warning(
                "Record failed",
                extra={"step": step.order, "record_id": record.id, "error": error},
            )
        await self.emit(execution_id, "record_complete", stepOrder=step.order,
                        recordId=record.id, success=error is None, error=error,
                        outputs=outcome.outputs)
        return outcome

    async def _invoke_with_retry(
        self, action_id: str, record: Record
    ) -> tuple[dict[str, Any], str | None, int]:
        """Call the action, retrying with exponential backoff on record-level failure."""
        delay = self.retry_delay
        error: str | None = None
        for attempt in range(self.max_retries + 1):
            try:
                outputs = await asyncio.wait_for(
                    self.executor.execute(action_id, record), timeout=self.timeout
                )
                return outputs, None, attempt + 1
            except asyncio.TimeoutError:
                error = f"Action timed out after {self.timeout}s"
            except RecordActionError as e:
                error = str(e)

            if attempt < self.max_retries:
                logger.warning(
                    "Record retry",
                    extra={"record_id": record.id, "attempt": attempt + 1,
                           "max": self.max_retries + 1, "delay_s": delay},
                )
                if delay > 0:
                    await asyncio.sleep(delay)
                delay *= self.retry_backoff
        return {}, error, self.max_retries + 1


# ── Module-level helpers ──────────────────────────────────────────────────────

def make_event(kind: str, execution_id: str, **data: Any) -> dict:
    """Build an SSE-friendly event dict."""
    return {
        "type": kind,
        "executionId": execution_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **data,
    }


def _unique(records: list[Record]) -> list[Record]:
    seen: set[str] = set()
    unique = []
    for r in records:
        if r.id not in seen:
            seen.add(r.id)
            unique.append(r)
    return unique
