"""Dynamic data models and the records that instantiate them.

Field values are loosely typed on input (JSON from forms or actions) and are
coerced to a canonical Python type per the model's FieldDefinition when they
cross the Record Store boundary:

    text / textarea / email / url / oauth  -> str
    number                                 -> int | float
    date                                   -> datetime (UTC)
    boolean                                -> bool
    select                                 -> str, or list[str] for multi-select

Empty input (None or "") is stored as None.
"""

import json
import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any
from urllib.parse import urlparse

from pydantic import Field

from core.schema import CamelModel


class FieldType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    SELECT = "select"
    BOOLEAN = "boolean"
    TEXTAREA = "textarea"
    EMAIL = "email"
    URL = "url"
    OAUTH = "oauth"


class FieldDefinition(CamelModel):
    name: str
    type: FieldType = FieldType.TEXT
    required: bool = False
    options: list[str] | None = None
    default_value: Any = None


class DataModel(CamelModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    agent_id: str | None = None
    name: str
    fields: list[FieldDefinition] = []

    def field(self, name: str) -> FieldDefinition | None:
        for f in self.fields:
            if f.name == name:
                return f
        return None


class Record(CamelModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    model_id: str
    data: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ── Coercion ──────────────────────────────────────────────────────────────────

_TRUE = {"true", "yes", "1", "on"}
_FALSE = {"false", "no", "0", "off"}


def parse_datetime(value: Any) -> datetime | None:
    """Parse a datetime/date/ISO-8601 string. Naive values are taken as UTC."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_number(value: Any) -> int | float | None:
    """Return a number for int/float/numeric-string input, else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return int(text)
        except ValueError:
            pass
        try:
            return float(text)
        except ValueError:
            return None
    return None


def coerce_value(field: FieldDefinition, value: Any) -> Any:
    """Coerce *value* to the canonical type for *field*. Raises ValueError."""
    if value is None or value == "":
        return None
    name, ftype = field.name, field.type

    if ftype == FieldType.NUMBER:
        number = parse_number(value)
        if number is None:
            raise ValueError(f"Field '{name}' expects a number, got {value!r}")
        return number

    if ftype == FieldType.DATE:
        dt = parse_datetime(value)
        if dt is None:
            raise ValueError(f"Field '{name}' expects a date, got {value!r}")
        return dt

    if ftype == FieldType.BOOLEAN:
        if isinstance(value, bool):
            return value
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        if isinstance(value, str) and value.strip().lower() in _TRUE | _FALSE:
            return value.strip().lower() in _TRUE
        raise ValueError(f"Field '{name}' expects a boolean, got {value!r}")

    if ftype == FieldType.SELECT:
        values = value if isinstance(value, list) else [value]
        values = [str(v) for v in values]
        if field.options:
            unknown = [v for v in values if v not in field.options]
            if unknown:
                raise ValueError(
                    f"Field '{name}' has no option(s) {unknown}; allowed: {field.options}"
                )
        return values if isinstance(value, list) else values[0]

    if ftype == FieldType.OAUTH and isinstance(value, dict):
        return json.dumps(value)

    if isinstance(value, (dict, list)):
        raise ValueError(f"Field '{name}' expects text, got {type(value).__name__}")
    text = str(value)

    if ftype == FieldType.EMAIL and "@" not in text:
        raise ValueError(f"Field '{name}' expects an email address, got {text!r}")
    if ftype == FieldType.URL and not urlparse(text).scheme:
        raise ValueError(f"Field '{name}' expects a URL, got {text!r}")
    return text


def coerce_data(model: DataModel, data: dict[str, Any], partial: bool = False) -> dict[str, Any]:
    """Validate and coerce a field mapping against *model*.

    With ``partial=False`` (record creation) defaults are applied and required
    fields must be present; with ``partial=True`` (field updates) only the
    given fields are checked.
    """
    unknown = [k for k in data if model.field(k) is None]
    if unknown:
        raise ValueError(f"Model '{model.name}' has no field(s) {unknown}")

    result: dict[str, Any] = {}
    for f in model.fields:
        if f.name in data:
            result[f.name] = coerce_value(f, data[f.name])
        elif not partial:
            result[f.name] = coerce_value(f, f.default_value)
        else:
            continue
        if f.required and result[f.name] is None:
            raise ValueError(f"Field '{f.name}' is required")
    return result


def encode_data(data: dict[str, Any]) -> str:
    """Serialise coerced record data for storage."""
    return json.dumps(data, default=_json_default)


def decode_data(model: DataModel | None, raw: str) -> dict[str, Any]:
    """Load stored record data, restoring date fields to datetimes."""
    data = json.loads(raw)
    if model is None:
        return data
    for f in model.fields:
        if f.type == FieldType.DATE and data.get(f.name) is not None:
            data[f.name] = parse_datetime(data[f.name])
    return data


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
