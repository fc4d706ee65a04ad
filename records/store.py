"""Record Store — typed records per data model.

The scheduler consumes the RecordStore interface only; SqlRecordStore is the
SQLite-backed implementation used by the service and the tests.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import create_async_engine

from query.definition import parse_legacy_query
from query.predicates import evaluate_filter
from records.models import (
    DataModel,
    Record,
    coerce_data,
    decode_data,
    encode_data,
)


class RecordStore(ABC):
    """Interface the Step Pipeline and Query Evaluator depend on."""

    @abstractmethod
    async def get_model(self, model_id: str) -> DataModel | None:
        """Return the model, or None when it does not exist."""
        ...

    @abstractmethod
    async def list_records(self, model_id: str) -> list[Record]:
        ...

    @abstractmethod
    async def get_records_matching_semantic_query(
        self, model_id: str, text: str
    ) -> list[Record]:
        ...

    @abstractmethod
    async def update_record(self, record_id: str, field_updates: dict[str, Any]) -> Record:
        """Apply *field_updates* atomically. Raises KeyError / ValueError."""
        ...


# ── Schema ───────────────────────────────────────────────────────────────────

_metadata = sa.MetaData()

_models = sa.Table(
    "data_models",
    _metadata,
    sa.Column("model_id",   sa.String, primary_key=True),
    sa.Column("agent_id",   sa.String, nullable=True, index=True),
    sa.Column("name",       sa.String, nullable=False),
    sa.Column("definition", sa.Text,   nullable=False),   # full DataModel JSON
)

_records = sa.Table(
    "records",
    _metadata,
    sa.Column("record_id",  sa.String, primary_key=True),
    sa.Column("model_id",   sa.String, nullable=False, index=True),
    sa.Column("data",       sa.Text,   nullable=False),
    sa.Column("created_at", sa.String, nullable=False),
    sa.Column("updated_at", sa.String, nullable=False),
)


# ── Store ────────────────────────────────────────────────────────────────────

class SqlRecordStore(RecordStore):
    """Persist models and records via SQLite."""

    def __init__(self, db_url: str = "sqlite+aiosqlite:///scheduler.db"):
        self._engine = create_async_engine(db_url, echo=False)

    async def init(self) -> None:
        """Create tables if they don't exist. Call once at startup."""
        async with self._engine.begin() as conn:
            await conn.run_sync(_metadata.create_all)

    async def dispose(self) -> None:
        await self._engine.dispose()

    # ── Models ───────────────────────────────────────────────────────────────

    async def create_model(self, model: DataModel) -> DataModel:
        async with self._engine.begin() as conn:
            await conn.execute(
                sa.insert(_models).values(
                    model_id=model.id,
                    agent_id=model.agent_id,
                    name=model.name,
                    definition=model.to_json(),
                )
            )
        return model

    async def get_model(self, model_id: str) -> DataModel | None:
        async with self._engine.connect() as conn:
            row = (await conn.execute(
                sa.select(_models.c.definition).where(_models.c.model_id == model_id)
            )).fetchone()
        return DataModel.model_validate_json(row.definition) if row else None

    async def list_models(self, agent_id: str | None = None) -> list[DataModel]:
        query = sa.select(_models.c.definition)
        if agent_id:
            query = query.where(_models.c.agent_id == agent_id)
        async with self._engine.connect() as conn:
            rows = (await conn.execute(query.order_by(_models.c.name))).fetchall()
        return [DataModel.model_validate_json(r.definition) for r in rows]

    # ── Records ──────────────────────────────────────────────────────────────

    async def create_record(self, model_id: str, data: dict[str, Any]) -> Record:
        """Validate *data* against the model and insert a new record."""
        model = await self.get_model(model_id)
        if model is None:
            raise KeyError(f"Model '{model_id}' not found")
        record = Record(model_id=model_id, data=coerce_data(model, data))
        async with self._engine.begin() as conn:
            await conn.execute(
                sa.insert(_records).values(
                    record_id=record.id,
                    model_id=model_id,
                    data=encode_data(record.data),
                    created_at=record.created_at.isoformat(),
                    updated_at=record.updated_at.isoformat(),
                )
            )
        return record

    async def get_record(self, record_id: str) -> Record:
        async with self._engine.connect() as conn:
            row = (await conn.execute(
                sa.select(_records).where(_records.c.record_id == record_id)
            )).fetchone()
        if row is None:
            raise KeyError(f"Record '{record_id}' not found")
        return self._to_record(row, await self.get_model(row.model_id))

    async def list_records(self, model_id: str) -> list[Record]:
        model = await self.get_model(model_id)
        async with self._engine.connect() as conn:
            rows = (await conn.execute(
                sa.select(_records)
                .where(_records.c.model_id == model_id)
                .order_by(_records.c.created_at, _records.c.record_id)
            )).fetchall()
        return [self._to_record(r, model) for r in rows]

    async def get_records_matching_semantic_query(
        self, model_id: str, text: str
    ) -> list[Record]:
        """Free-text search over a model's records.

        ``field equals 'value'`` is treated as an exact field match; any other
        text matches records whose serialised data contains the whole phrase
        or any of its words (case-insensitive).  Blank text matches all.
        """
        records = await self.list_records(model_id)
        if not text or not text.strip():
            return records

        structured = parse_legacy_query(text)
        if structured is not None:
            return [
                r for r in records
                if all(evaluate_filter(r.data, f) for f in structured.filters)
            ]

        phrase = text.strip().lower()
        keywords = [w for w in phrase.split() if w]
        matched = []
        for r in records:
            blob = encode_data(r.data).lower()
            if phrase in blob or any(k in blob for k in keywords):
                matched.append(r)
        return matched

    async def update_record(self, record_id: str, field_updates: dict[str, Any]) -> Record:
        """Merge *field_updates* into the record inside one transaction."""
        async with self._engine.begin() as conn:
            row = (await conn.execute(
                sa.select(_records).where(_records.c.record_id == record_id)
            )).fetchone()
            if row is None:
                raise KeyError(f"Record '{record_id}' not found")
            model_row = (await conn.execute(
                sa.select(_models.c.definition).where(_models.c.model_id == row.model_id)
            )).fetchone()
            model = DataModel.model_validate_json(model_row.definition) if model_row else None

            data = decode_data(model, row.data)
            data.update(coerce_data(model, field_updates, partial=True) if model else field_updates)
            now = datetime.now(timezone.utc)
            await conn.execute(
                sa.update(_records)
                .where(_records.c.record_id == record_id)
                .values(data=encode_data(data), updated_at=now.isoformat())
            )
        return Record(
            id=record_id,
            model_id=row.model_id,
            data=data,
            created_at=datetime.fromisoformat(row.created_at),
            updated_at=now,
        )

    @staticmethod
    def _to_record(row, model: DataModel | None) -> Record:
        return Record(
            id=row.record_id,
            model_id=row.model_id,
            data=decode_data(model, row.data),
            created_at=datetime.fromisoformat(row.created_at),
            updated_at=datetime.fromisoformat(row.updated_at),
        )
