"""ScheduleStore — SQLite persistence for schedules, their steps and executions.

Each save writes the schedule row and its full step list in one transaction,
so a schedule never references a step that was not persisted.  Edits write
the definition columns only.  Run-state changes that must not race (claiming
a due run, pausing, completing a once-mode schedule) are compare-and-swap
UPDATEs.
"""

import json
import uuid
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import create_async_engine

from core.state import ScheduleExecution
from query.definition import dump_query
from scheduler.models import Schedule, ScheduleMode, ScheduleStatus, ScheduleStep

# ── Schema ───────────────────────────────────────────────────────────────────

_metadata = sa.MetaData()

_schedules = sa.Table(
    "schedules",
    _metadata,
    sa.Column("schedule_id",      sa.String,  primary_key=True),
    sa.Column("agent_id",         sa.String,  nullable=True, index=True),
    sa.Column("name",             sa.String,  nullable=False),
    sa.Column("mode",             sa.String,  nullable=False),
    sa.Column("status",           sa.String,  nullable=False),
    sa.Column("interval_minutes", sa.Integer, nullable=True),
    sa.Column("next_run_at",      sa.String,  nullable=True, index=True),
    sa.Column("last_run_at",      sa.String,  nullable=True),
    sa.Column("run_count",        sa.Integer, nullable=False, default=0),
    sa.Column("created_at",       sa.String,  nullable=False),
    sa.Column("updated_at",       sa.String,  nullable=False),
)

_steps = sa.Table(
    "schedule_steps",
    _metadata,
    sa.Column("step_id",     sa.String,  primary_key=True),
    sa.Column("schedule_id", sa.String,  nullable=False, index=True),
    sa.Column("position",    sa.Integer, nullable=False),
    sa.Column("model_id",    sa.String,  nullable=False),
    sa.Column("action_id",   sa.String,  nullable=False),
    sa.Column("query",       sa.Text,    nullable=False),   # structured JSON or free-text string
)

_executions = sa.Table(
    "schedule_executions",
    _metadata,
    sa.Column("execution_id", sa.String, primary_key=True),
    sa.Column("schedule_id",  sa.String, nullable=False, index=True),
    sa.Column("status",       sa.String, nullable=False),
    sa.Column("trigger",      sa.String, nullable=False),
    sa.Column("started_at",   sa.String, nullable=False),
    sa.Column("state_json",   sa.Text,   nullable=False),   # full Pydantic JSON
)


def _ts(value: datetime | None) -> str | None:
    """Fixed-width UTC ISO string, so stored timestamps compare as text."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _assign_step_ids(schedule: Schedule) -> None:
    schedule.renumber_steps()
    for step in schedule.steps:
        if step.id is None:
            step.id = str(uuid.uuid4())


async def _replace_steps(conn, schedule: Schedule) -> None:
    await conn.execute(sa.delete(_steps).where(_steps.c.schedule_id == schedule.id))
    if schedule.steps:
        await conn.execute(
            sa.insert(_steps),
            [
                {
                    "step_id":     step.id,
                    "schedule_id": schedule.id,
                    "position":    step.order,
                    "model_id":    step.model_id,
                    "action_id":   step.action_id,
                    "query":       json.dumps(dump_query(step.query)),
                }
                for step in schedule.steps
            ],
        )


# ── Store ────────────────────────────────────────────────────────────────────

class ScheduleStore:
    """Persist and load Schedule objects via SQLite."""

    def __init__(self, db_url: str = "sqlite+aiosqlite:///scheduler.db"):
        self._engine = create_async_engine(db_url, echo=False)

    async def init(self) -> None:
        """Create tables if they don't exist. Call once at startup."""
        async with self._engine.begin() as conn:
            await conn.run_sync(_metadata.create_all)

    async def dispose(self) -> None:
        await self._engine.dispose()

    # ── Schedules ────────────────────────────────────────────────────────────

    async def save(self, schedule: Schedule) -> Schedule:
        """Upsert *schedule* and replace its steps atomically.

        Steps without an id are assigned one; ``order`` is persisted as the
        dense position in execution order.
        """
        if schedule.status == ScheduleStatus.DRAFT:
            raise ValueError("Draft schedules must be activated before they are saved")
        _assign_step_ids(schedule)

        row = {
            "schedule_id":      schedule.id,
            "agent_id":         schedule.agent_id,
            "name":             schedule.name,
            "mode":             schedule.mode.value,
            "status":           schedule.status.value,
            "interval_minutes": schedule.interval_minutes,
            "next_run_at":      _ts(schedule.next_run_at),
            "last_run_at":      _ts(schedule.last_run_at),
            "run_count":        schedule.run_count,
            "created_at":       _ts(schedule.created_at),
            "updated_at":       _ts(schedule.updated_at),
        }
        async with self._engine.begin() as conn:
            await conn.execute(
                sqlite_insert(_schedules)
                .values(**row)
                .on_conflict_do_update(
                    index_elements=["schedule_id"],
                    set_={k: v for k, v in row.items() if k != "schedule_id"},
                )
            )
            await _replace_steps(conn, schedule)
        return schedule

    async def update_definition(self, schedule: Schedule, reschedule: bool = False) -> bool:
        """Write the definition of an editable schedule and replace its steps.

        Only the name, agent, mode, interval and steps are written; status and
        run counters are left to the run-state methods below.  ``next_run_at``
        is written only when *reschedule* is set.  Returns False, writing
        nothing, if the schedule is gone or no longer editable (a once-mode
        definition also requires the stored schedule to be Active).
        """
        _assign_step_ids(schedule)
        allowed = [ScheduleStatus.ACTIVE.value]
        if schedule.mode == ScheduleMode.RECURRING:
            allowed.append(ScheduleStatus.PAUSED.value)
        values = {
            "agent_id":         schedule.agent_id,
            "name":             schedule.name,
            "mode":             schedule.mode.value,
            "interval_minutes": schedule.interval_minutes,
            "updated_at":       _ts(schedule.updated_at),
        }
        if reschedule:
            values["next_run_at"] = _ts(schedule.next_run_at)
        async with self._engine.begin() as conn:
            result = await conn.execute(
                sa.update(_schedules)
                .where(_schedules.c.schedule_id == schedule.id)
                .where(_schedules.c.status.in_(allowed))
                .values(**values)
            )
            if result.rowcount != 1:
                return False
            await _replace_steps(conn, schedule)
        return True

    async def load(self, schedule_id: str) -> Schedule:
        """Load a Schedule by ID. Raises KeyError if not found."""
        async with self._engine.connect() as conn:
            row = (await conn.execute(
                sa.select(_schedules).where(_schedules.c.schedule_id == schedule_id)
            )).fetchone()
            if row is None:
                raise KeyError(f"Schedule '{schedule_id}' not found")
            steps = (await conn.execute(
                sa.select(_steps)
                .where(_steps.c.schedule_id == schedule_id)
                .order_by(_steps.c.position)
            )).fetchall()
        return self._to_schedule(row, steps)

    async def list_all(self, agent_id: str | None = None) -> list[Schedule]:
        query = sa.select(_schedules.c.schedule_id)
        if agent_id:
            query = query.where(_schedules.c.agent_id == agent_id)
        async with self._engine.connect() as conn:
            ids = (await conn.execute(query.order_by(_schedules.c.created_at))).scalars().all()
        return [await self.load(sid) for sid in ids]

    async def list_due(self, now: datetime, limit: int = 100) -> list[Schedule]:
        """Active recurring schedules whose ``next_run_at`` is at or before *now*."""
        query = (
            sa.select(_schedules.c.schedule_id)
            .where(_schedules.c.status == ScheduleStatus.ACTIVE.value)
            .where(_schedules.c.mode == ScheduleMode.RECURRING.value)
            .where(_schedules.c.next_run_at.is_not(None))
            .where(_schedules.c.next_run_at <= _ts(now))
            .order_by(_schedules.c.next_run_at)
            .limit(limit)
        )
        async with self._engine.connect() as conn:
            ids = (await conn.execute(query)).scalars().all()
        return [await self.load(sid) for sid in ids]

    async def delete(self, schedule_id: str, purge_history: bool = False) -> None:
        """Remove a schedule and its steps. Raises KeyError if not found."""
        async with self._engine.begin() as conn:
            result = await conn.execute(
                sa.delete(_schedules).where(_schedules.c.schedule_id == schedule_id)
            )
            if result.rowcount == 0:
                raise KeyError(f"Schedule '{schedule_id}' not found")
            await conn.execute(sa.delete(_steps).where(_steps.c.schedule_id == schedule_id))
            if purge_history:
                await conn.execute(
                    sa.delete(_executions).where(_executions.c.schedule_id == schedule_id)
                )

    # ── Run state ────────────────────────────────────────────────────────────

    async def claim(
        self,
        schedule_id: str,
        expected_next_run_at: datetime | None,
        new_next_run_at: datetime | None,
    ) -> bool:
        """Advance ``next_run_at`` only if it still equals *expected_next_run_at*.

        Returns False when another dispatcher already claimed this run or the
        schedule is no longer active.
        """
        where = [
            _schedules.c.schedule_id == schedule_id,
            _schedules.c.status == ScheduleStatus.ACTIVE.value,
        ]
        if expected_next_run_at is None:
            where.append(_schedules.c.next_run_at.is_(None))
        else:
            where.append(_schedules.c.next_run_at == _ts(expected_next_run_at))
        async with self._engine.begin() as conn:
            result = await conn.execute(
                sa.update(_schedules)
                .where(*where)
                .values(
                    next_run_at=_ts(new_next_run_at),
                    updated_at=_ts(datetime.now(timezone.utc)),
                )
            )
        return result.rowcount == 1

    async def set_status(
        self,
        schedule_id: str,
        expected: ScheduleStatus,
        status: ScheduleStatus,
    ) -> bool:
        """Move a schedule from *expected* to *status*; False if it was no longer *expected*."""
        async with self._engine.begin() as conn:
            result = await conn.execute(
                sa.update(_schedules)
                .where(_schedules.c.schedule_id == schedule_id)
                .where(_schedules.c.status == expected.value)
                .values(status=status.value, updated_at=_ts(datetime.now(timezone.utc)))
            )
        return result.rowcount == 1

    async def mark_completed(self, schedule_id: str) -> bool:
        """Move a schedule to Completed; returns False if it already was (or is gone)."""
        async with self._engine.begin() as conn:
            result = await conn.execute(
                sa.update(_schedules)
                .where(_schedules.c.schedule_id == schedule_id)
                .where(_schedules.c.status.in_(
                    [ScheduleStatus.ACTIVE.value, ScheduleStatus.PAUSED.value]
                ))
                .values(
                    status=ScheduleStatus.COMPLETED.value,
                    next_run_at=None,
                    updated_at=_ts(datetime.now(timezone.utc)),
                )
            )
        return result.rowcount == 1

    async def record_run(self, schedule_id: str, run_at: datetime) -> None:
        """Stamp ``last_run_at`` and bump ``run_count``. Missing schedules are ignored."""
        async with self._engine.begin() as conn:
            await conn.execute(
                sa.update(_schedules)
                .where(_schedules.c.schedule_id == schedule_id)
                .values(
                    last_run_at=_ts(run_at),
                    run_count=_schedules.c.run_count + 1,
                )
            )

    # ── Executions ───────────────────────────────────────────────────────────

    async def append_execution(self, execution: ScheduleExecution) -> None:
        """Insert a finished execution; the log is append-only."""
        async with self._engine.begin() as conn:
            await conn.execute(
                sa.insert(_executions).values(
                    execution_id=execution.execution_id,
                    schedule_id=execution.schedule_id,
                    status=execution.status.value,
                    trigger=execution.trigger.value,
                    started_at=_ts(execution.started_at),
                    state_json=execution.model_dump_json(),
                )
            )

    async def get_execution(self, execution_id: str) -> ScheduleExecution:
        async with self._engine.connect() as conn:
            row = (await conn.execute(
                sa.select(_executions.c.state_json)
                .where(_executions.c.execution_id == execution_id)
            )).fetchone()
        if row is None:
            raise KeyError(f"Execution '{execution_id}' not found")
        return ScheduleExecution.model_validate_json(row.state_json)

    async def list_executions(self, schedule_id: str, limit: int = 50) -> list[ScheduleExecution]:
        """Most recent first."""
        async with self._engine.connect() as conn:
            rows = (await conn.execute(
                sa.select(_executions.c.state_json)
                .where(_executions.c.schedule_id == schedule_id)
                .order_by(_executions.c.started_at.desc())
                .limit(limit)
            )).fetchall()
        return [ScheduleExecution.model_validate_json(r.state_json) for r in rows]

    # ── Internal ─────────────────────────────────────────────────────────────

    @staticmethod
    def _to_schedule(row, step_rows) -> Schedule:
        return Schedule(
            id=row.schedule_id,
            agent_id=row.agent_id,
            name=row.name,
            mode=ScheduleMode(row.mode),
            status=ScheduleStatus(row.status),
            interval_minutes=row.interval_minutes,
            next_run_at=_dt(row.next_run_at),
            last_run_at=_dt(row.last_run_at),
            run_count=row.run_count,
            created_at=_dt(row.created_at),
            updated_at=_dt(row.updated_at),
            steps=[
                ScheduleStep(
                    id=s.step_id,
                    model_id=s.model_id,
                    action_id=s.action_id,
                    query=json.loads(s.query),
                    order=s.position,
                )
                for s in step_rows
            ],
        )
