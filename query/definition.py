"""Step queries: structured filter lists or legacy free-text search.

On the wire a step's ``query`` is either an object
``{"filters": [...], "logic": "AND" | "OR"}`` or a plain string.  Inside the
scheduler both forms are explicit variants (StructuredQuery / FreeTextQuery)
so no caller has to type-check a loosely typed field.
"""

import re
from enum import Enum
from typing import Any, Literal, Union

from pydantic import field_validator

from core.schema import CamelModel


class FilterOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_OR_EQUAL = "greater_or_equal"
    LESS_OR_EQUAL = "less_or_equal"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IN = "in"
    NOT_IN = "not_in"


KNOWN_OPERATORS = frozenset(op.value for op in FilterOperator)

LIST_OPERATORS = frozenset({FilterOperator.IN.value, FilterOperator.NOT_IN.value})
ORDERING_OPERATORS = frozenset({
    FilterOperator.GREATER_THAN.value,
    FilterOperator.LESS_THAN.value,
    FilterOperator.GREATER_OR_EQUAL.value,
    FilterOperator.LESS_OR_EQUAL.value,
})


class QueryLogic(str, Enum):
    AND = "AND"
    OR = "OR"


class ScheduleFilter(CamelModel):
    field: str
    # Kept as a plain string: definitions saved by older clients may carry an
    # operator this version does not know, which must surface as a
    # ConfigurationError when the schedule runs rather than a load failure.
    operator: str
    value: Any = None


class StructuredQuery(CamelModel):
    kind: Literal["structured"] = "structured"
    filters: list[ScheduleFilter] = []
    logic: QueryLogic = QueryLogic.AND

    @field_validator("logic", mode="before")
    @classmethod
    def _upper_logic(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


class FreeTextQuery(CamelModel):
    kind: Literal["text"] = "text"
    text: str


StepQuery = Union[StructuredQuery, FreeTextQuery]


def parse_query(raw: Any) -> StepQuery:
    """Convert the wire form of a step query into its explicit variant.

    ``None`` and an empty object mean "no filter" (all records).
    """
    if isinstance(raw, (StructuredQuery, FreeTextQuery)):
        return raw
    if raw is None:
        return StructuredQuery()
    if isinstance(raw, str):
        return FreeTextQuery(text=raw)
    if isinstance(raw, dict):
        if raw.get("kind") == "text":
            return FreeTextQuery.model_validate(raw)
        return StructuredQuery.model_validate(raw)
    raise ValueError(f"Unsupported query type: {type(raw).__name__}")


def dump_query(query: StepQuery) -> dict | str:
    """Inverse of parse_query: the persisted / wire shape."""
    if isinstance(query, FreeTextQuery):
        return query.text
    return {
        "filters": [f.model_dump(mode="json", by_alias=True) for f in query.filters],
        "logic": query.logic.value,
    }


_LEGACY_EQUALS = re.compile(r"(\w+)\s+equals\s+['\"](.*?)['\"]", re.IGNORECASE)


def parse_legacy_query(text: str) -> StructuredQuery | None:
    """Understand the legacy ``field equals 'value'`` text form.

    Returns None when the text is not in that form.
    """
    m = _LEGACY_EQUALS.search(text or "")
    if not m:
        return None
    field, value = m.groups()
    return StructuredQuery(
        filters=[ScheduleFilter(field=field, operator=FilterOperator.EQUALS.value, value=value)],
    )


def describe_filter(f: ScheduleFilter) -> str:
    op = f.operator
    if op == FilterOperator.EQUALS:
        return f'{f.field} equals "{f.value}"'
    if op == FilterOperator.NOT_EQUALS:
        return f'{f.field} does not equal "{f.value}"'
    if op == FilterOperator.CONTAINS:
        return f'{f.field} contains "{f.value}"'
    if op == FilterOperator.NOT_CONTAINS:
        return f'{f.field} does not contain "{f.value}"'
    if op == FilterOperator.IS_EMPTY:
        return f"{f.field} is empty"
    if op == FilterOperator.IS_NOT_EMPTY:
        return f"{f.field} is not empty"
    if op == FilterOperator.GREATER_THAN:
        return f"{f.field} > {f.value}"
    if op == FilterOperator.LESS_THAN:
        return f"{f.field} < {f.value}"
    if op == FilterOperator.GREATER_OR_EQUAL:
        return f"{f.field} >= {f.value}"
    if op == FilterOperator.LESS_OR_EQUAL:
        return f"{f.field} <= {f.value}"
    if op in LIST_OPERATORS and isinstance(f.value, list):
        word = "in" if op == FilterOperator.IN else "not in"
        return f"{f.field} {word} [{', '.join(str(v) for v in f.value)}]"
    return f"{f.field} {op} {f.value}"


def describe_query(query: StepQuery) -> str:
    """Human-readable one-line description of a step query."""
    if isinstance(query, FreeTextQuery):
        return f'search "{query.text}"' if query.text.strip() else "all records"
    if not query.filters:
        return "all records"
    return f" {query.logic.value} ".join(describe_filter(f) for f in query.filters)
