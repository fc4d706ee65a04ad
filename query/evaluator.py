"""Query Evaluator — does a record match a step's query?"""

from __future__ import annotations

from typing import TYPE_CHECKING

from query.definition import (
    KNOWN_OPERATORS,
    LIST_OPERATORS,
    ORDERING_OPERATORS,
    FreeTextQuery,
    QueryLogic,
    StepQuery,
    StructuredQuery,
)
from query.predicates import evaluate_filter

if TYPE_CHECKING:
    from records.models import DataModel, Record
    from records.store import RecordStore


def matches_structured(record: Record, query: StructuredQuery) -> bool:
    """Pure predicate for structured queries.

    Every filter is evaluated, then folded with AND (all) or OR (any).  An
    empty filter list means "no filter" and matches every record under
    either logic.
    """
    if not query.filters:
        return True
    results = [evaluate_filter(record.data, f) for f in query.filters]
    if query.logic == QueryLogic.OR:
        return any(results)
    return all(results)


def query_problems(query: StepQuery, model: DataModel | None = None) -> list[str]:
    """Return what is wrong with *query* as a definition (empty list if valid).

    Field references are checked only when *model* is given.
    """
    if isinstance(query, FreeTextQuery):
        return []
    problems = []
    for i, f in enumerate(query.filters):
        where = f"filter {i} ({f.field!r})"
        if not f.field:
            problems.append(f"{where}: field is required")
        elif model is not None and model.field(f.field) is None:
            problems.append(f"{where}: model '{model.name}' has no field '{f.field}'")
        if f.operator not in KNOWN_OPERATORS:
            problems.append(f"{where}: unknown operator '{f.operator}'")
        elif f.operator in LIST_OPERATORS and not isinstance(f.value, list):
            problems.append(f"{where}: operator '{f.operator}' requires a list value")
        elif f.operator in ORDERING_OPERATORS and isinstance(f.value, (list, dict)):
            problems.append(f"{where}: operator '{f.operator}' requires a single value")
    return problems


class QueryEvaluator:
    """Evaluates step queries; free-text queries are delegated to the store."""

    def __init__(self, store: RecordStore):
        self.store = store

    async def matches(self, record: Record, query: StepQuery) -> bool:
        if isinstance(query, FreeTextQuery):
            hits = await self.store.get_records_matching_semantic_query(
                record.model_id, query.text
            )
            return any(h.id == record.id for h in hits)
        return matches_structured(record, query)

    async def select(
        self, model_id: str, candidates: list[Record], query: StepQuery
    ) -> list[Record]:
        """Filter *candidates* (all records of *model_id*) down to the matches.

        Order of *candidates* is preserved.  A free-text query costs one
        store search regardless of the number of candidates.
        """
        if isinstance(query, FreeTextQuery):
            hits = await self.store.get_records_matching_semantic_query(model_id, query.text)
            hit_ids = {h.id for h in hits}
            return [r for r in candidates if r.id in hit_ids]
        return [r for r in candidates if matches_structured(r, query)]
