"""
Deterministic canned objects for the "mock" model.

Used by tests and end-to-end runs to exercise the whole pipeline without a
network call. The same schema always produces the same object: field defaults
are used where present, otherwise a placeholder derived from the field name.
Length and range constraints (min_length, max_length, ge, gt, le, lt,
multiple_of) are honoured so constrained schemas still validate.
"""

from __future__ import annotations

import math
import types
from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Any, Iterable, Literal, Optional, Union, get_args, get_origin

import annotated_types
from pydantic import BaseModel
from pydantic.fields import FieldInfo
from pydantic_core import PydanticUndefined

_EPOCH = datetime(2026, 1, 1, tzinfo=timezone.utc)
_MAX_DEPTH = 4

_CONSTRAINT_TYPES: tuple[tuple[type, str], ...] = (
    (annotated_types.MinLen, "min_length"),
    (annotated_types.MaxLen, "max_length"),
    (annotated_types.Ge, "ge"),
    (annotated_types.Gt, "gt"),
    (annotated_types.Le, "le"),
    (annotated_types.Lt, "lt"),
    (annotated_types.MultipleOf, "multiple_of"),
)


def _constraints(metadata: Iterable[Any], into: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    """Collect annotated_types bounds from field metadata (FieldInfo entries are unpacked)."""
    found = dict(into or {})
    for item in metadata:
        if isinstance(item, FieldInfo):
            found = _constraints(item.metadata, found)
            continue
        for kind, key in _CONSTRAINT_TYPES:
            if isinstance(item, kind):
                found[key] = getattr(item, key)
    return found


def _mock_int(c: dict[str, Any]) -> int:
    lows = [math.ceil(c["ge"])] if c.get("ge") is not None else []
    if c.get("gt") is not None:
        lows.append(math.floor(c["gt"]) + 1)
    highs = [math.floor(c["le"])] if c.get("le") is not None else []
    if c.get("lt") is not None:
        highs.append(math.ceil(c["lt"]) - 1)
    hi = min(highs) if highs else None

    value = 1
    if lows:
        value = max(value, max(lows))
    if hi is not None:
        value = min(value, hi)
    step = c.get("multiple_of")
    if step:
        stepped = math.ceil(value / step) * step
        value = stepped if hi is None or stepped <= hi else math.floor(value / step) * step
    return int(value)


def _mock_float(c: dict[str, Any]) -> float:
    lo = c.get("ge") if c.get("ge") is not None else c.get("gt")
    hi = c.get("le") if c.get("le") is not None else c.get("lt")

    def _ok(v: float) -> bool:
        return (
            (c.get("ge") is None or v >= c["ge"])
            and (c.get("gt") is None or v > c["gt"])
            and (c.get("le") is None or v <= c["le"])
            and (c.get("lt") is None or v < c["lt"])
        )

    if _ok(1.0):
        return 1.0
    if lo is not None and hi is not None:
        return (lo + hi) / 2
    if lo is not None:
        return float(lo) + (1.0 if c.get("gt") is not None else 0.0)
    return float(hi) - (1.0 if c.get("lt") is not None else 0.0)


def _mock_str(name: str, c: dict[str, Any]) -> str:
    value = f"Mock {name.replace('_', ' ')}"
    if c.get("min_length"):
        value = value.ljust(c["min_length"], "x")
    if c.get("max_length") is not None:
        value = value[: c["max_length"]]
    return value


def _mock_value(annotation: Any, name: str, depth: int, c: Optional[dict[str, Any]] = None) -> Any:
    c = c or {}
    origin = get_origin(annotation)
    args = get_args(annotation)
    if origin is Annotated:
        return _mock_value(args[0], name, depth, _constraints(args[1:], c))
    if origin is Union or (hasattr(types, "UnionType") and origin is types.UnionType):
        non_none = [a for a in args if a is not type(None)]
        return _mock_value(non_none[0], name, depth, c) if non_none else None
    if origin is Literal:
        return args[0]
    if origin in (list, tuple, set, frozenset) or annotation in (list, tuple, set, frozenset):
        if depth > _MAX_DEPTH or not args:
            return []
        count = max(1, c.get("min_length") or 0)
        if c.get("max_length") is not None:
            count = min(count, c["max_length"])
        return [_mock_value(args[0], name, depth + 1) for _ in range(count)]
    if origin is dict or annotation is dict:
        return {}
    if isinstance(annotation, type):
        if issubclass(annotation, BaseModel):
            return _mock_fields(annotation, depth + 1) if depth <= _MAX_DEPTH else {}
        if issubclass(annotation, Enum):
            return next(iter(annotation)).value
        if annotation is bool:
            return True
        if annotation is int:
            return _mock_int(c)
        if annotation is float:
            return _mock_float(c)
        if annotation is str:
            return _mock_str(name, c)
        if annotation is datetime:
            return _EPOCH.isoformat()
        if annotation is date:
            return _EPOCH.date().isoformat()
    return None


def _mock_fields(schema: type[BaseModel], depth: int) -> dict[str, Any]:
    data: dict[str, Any] = {}
    for name, info in schema.model_fields.items():
        key = info.alias or name
        if info.default is not PydanticUndefined:
            data[key] = info.default.value if isinstance(info.default, Enum) else info.default
        elif info.default_factory is not None:
            continue
        else:
            data[key] = _mock_value(info.annotation, name, depth, _constraints(info.metadata))
    return data


def mock_payload(schema: type[BaseModel]) -> dict[str, Any]:
    """Raw field values the mock model "returns" for schema."""
    return _mock_fields(schema, 0)


def build_mock_object(schema: type[BaseModel]) -> BaseModel:
    """A valid instance of schema with deterministic placeholder content.

    Raises pydantic.ValidationError for constraints no placeholder can meet
    (a regex pattern, a custom validator).
    """
    return schema.model_validate(mock_payload(schema))
