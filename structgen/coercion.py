"""
Schema coercion and wrapper unwrapping for Layer 1 recovery.

Target schemas are pydantic models. Validation here is JSON-strict: "5" is not
an int and "true" is not a bool. Near-miss values are fixed by
coerce_to_schema(), a deterministic walk over the model's field annotations,
and then validated again. Every issue seen along the way is kept for the
audit log, whether or not coercion ends up succeeding.
"""

from __future__ import annotations

import json
import re
import types
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Callable, Literal, Optional, Union, get_args, get_origin

import structlog
from pydantic import BaseModel, ValidationError

from structgen.models import SchemaIssue, WrapperType

logger = structlog.get_logger()

_NUMERIC_RE = re.compile(r"^\s*[-+]?(\d+(\.\d*)?|\.\d+)([eE][-+]?\d+)?\s*$")

_LIST_ORIGINS = (list, tuple, set, frozenset)

# Tool-call envelope keys that sit beside the payload and carry no content
_ENVELOPE_KEYS = frozenset({"name", "type", "id", "tool", "tool_name", "tool_use_id"})


# ═══════════════════════════════════════════════════════════
# Validation
# ═══════════════════════════════════════════════════════════


def issues_from_validation_error(exc: ValidationError) -> list[SchemaIssue]:
    return [
        SchemaIssue(
            path=".".join(str(p) for p in err.get("loc", ())),
            message=err.get("msg", ""),
            code=err.get("type", ""),
        )
        for err in exc.errors()
    ]


def validate_strict(schema: type[BaseModel], data: Any) -> BaseModel:
    """Validate as the JSON the provider should have sent, without lax coercion."""
    return schema.model_validate_json(json.dumps(data), strict=True)


# ═══════════════════════════════════════════════════════════
# Wrapper detection
# ═══════════════════════════════════════════════════════════


@dataclass
class UnwrapResult:
    unwrapped: Any
    was_wrapped: bool
    wrapper_type: WrapperType


def _payload_object(value: Any) -> Optional[dict[str, Any]]:
    """The wrapped payload as a dict; stringified JSON objects are parsed."""
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None
    return None


def _content_keys(raw: dict[str, Any]) -> list[str]:
    return [k for k in raw if k not in _ENVELOPE_KEYS]


def _schema_fields(schema: Optional[type[BaseModel]]) -> set[str]:
    if schema is None:
        return set()
    names: set[str] = set()
    for name, info in schema.model_fields.items():
        names.add(name)
        if info.alias:
            names.add(info.alias)
    return names


def _keyed_matcher(*keys: str) -> Callable[[dict[str, Any], set[str]], Optional[dict[str, Any]]]:
    def match(raw: dict[str, Any], fields: set[str]) -> Optional[dict[str, Any]]:
        content = _content_keys(raw)
        if len(content) != 1 or content[0] not in keys or content[0] in fields:
            return None
        return _payload_object(raw[content[0]])

    return match


def _match_unknown(raw: dict[str, Any], fields: set[str]) -> Optional[dict[str, Any]]:
    """A single unrecognised key whose object value looks like the schema."""
    content = _content_keys(raw)
    if len(content) != 1 or not fields or content[0] in fields:
        return None
    payload = _payload_object(raw[content[0]])
    if payload is None or not (set(payload) & fields):
        return None
    return payload


# Order matters: known shapes before the catch-all
WRAPPER_MATCHERS: tuple[tuple[WrapperType, Callable[[dict[str, Any], set[str]], Optional[dict[str, Any]]]], ...] = (
    (WrapperType.PARAMETERS, _keyed_matcher("parameters", "parameter")),
    (WrapperType.INPUT, _keyed_matcher("input")),
    (WrapperType.UNKNOWN, _match_unknown),
)


def unwrap_payload(parsed: Any, schema: Optional[type[BaseModel]] = None) -> UnwrapResult:
    """Strip a known tool-call envelope, e.g. {"parameters": {...}}.

    Keys that are real fields of the schema are never treated as wrappers.
    Without a schema the UNKNOWN shape is never matched.
    """
    if not isinstance(parsed, dict):
        return UnwrapResult(parsed, False, WrapperType.NONE)
    fields = _schema_fields(schema)
    for wrapper_type, matcher in WRAPPER_MATCHERS:
        payload = matcher(parsed, fields)
        if payload is not None:
            logger.debug("wrapper_detected", wrapper_type=wrapper_type.value, keys=list(payload)[:10])
            return UnwrapResult(payload, True, wrapper_type)
    return UnwrapResult(parsed, False, WrapperType.NONE)


# ═══════════════════════════════════════════════════════════
# Coercion
# ═══════════════════════════════════════════════════════════


def _normalize_label(value: str) -> str:
    return re.sub(r"[\s_-]+", "_", value.strip().lower())


def _fuzzy_choice(raw: Any, options: list[Any]) -> Any:
    """Exact, then case/separator-insensitive, then substring match against string options."""
    if raw in options or not isinstance(raw, str):
        return raw
    str_options = [o for o in options if isinstance(o, str)]
    lowered = _normalize_label(raw)
    for opt in str_options:
        if _normalize_label(opt) == lowered:
            return opt
    for opt in str_options:
        if lowered and (_normalize_label(opt) in lowered or lowered in _normalize_label(opt)):
            return opt
    return raw


def _coerce_list(raw: Any, element: Any) -> Any:
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            raw = parsed
    if not isinstance(raw, (list, tuple)):
        # Single value where a list is expected
        raw = [raw]
    if element is Any:
        return list(raw)
    return [coerce_to_schema(item, element) for item in raw]


def _coerce_model(raw: Any, schema: type[BaseModel]) -> Any:
    if isinstance(raw, str):
        parsed = _payload_object(raw)
        if parsed is not None:
            raw = parsed
    if not isinstance(raw, dict):
        return raw
    keep_extra = schema.model_config.get("extra") == "allow"
    result: dict[str, Any] = {}
    consumed: set[str] = set()
    for name, info in schema.model_fields.items():
        key = info.alias if info.alias and info.alias in raw else name
        consumed.add(key)
        if key not in raw:
            if info.is_required() and _is_list_annotation(info.annotation):
                result[key] = []
            continue
        value = raw[key]
        if value is None:
            if not info.is_required():
                # Let the field default apply
                continue
            if _is_list_annotation(info.annotation):
                result[key] = []
                continue
            result[key] = None
            continue
        result[key] = coerce_to_schema(value, info.annotation)
    if keep_extra:
        for k, v in raw.items():
            if k not in consumed:
                result[k] = v
    return result


def _is_list_annotation(annotation: Any) -> bool:
    origin = get_origin(annotation)
    if origin is Annotated:
        return _is_list_annotation(get_args(annotation)[0])
    return annotation in _LIST_ORIGINS or origin in _LIST_ORIGINS


def _coerce_number(raw: Any, target: type) -> Any:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str) and _NUMERIC_RE.match(raw):
        number = float(raw)
        if target is int:
            return int(number) if number.is_integer() else raw
        return number
    if target is int and isinstance(raw, float) and raw.is_integer():
        return int(raw)
    if target is float and isinstance(raw, int):
        return float(raw)
    return raw


def coerce_to_schema(raw: Any, annotation: Any) -> Any:
    """Recursively nudge raw toward annotation. Returns raw unchanged when no rule applies."""
    if raw is None:
        return None
    origin = get_origin(annotation)
    args = get_args(annotation)

    if origin is Annotated:
        return coerce_to_schema(raw, args[0])
    if origin is Union or (hasattr(types, "UnionType") and origin is types.UnionType):
        non_none = [a for a in args if a is not type(None)]
        if len(non_none) == 1:
            return coerce_to_schema(raw, non_none[0])
        return raw
    if origin is Literal:
        return _fuzzy_choice(raw, list(args))
    if annotation in _LIST_ORIGINS or origin in _LIST_ORIGINS:
        return _coerce_list(raw, args[0] if args else Any)
    if origin is dict or annotation is dict:
        return raw if isinstance(raw, dict) else (_payload_object(raw) or raw)
    if not isinstance(annotation, type):
        return raw
    if issubclass(annotation, BaseModel):
        return _coerce_model(raw, annotation)
    if issubclass(annotation, Enum):
        values = [m.value for m in annotation]
        return _fuzzy_choice(raw, values)
    if annotation is bool:
        if isinstance(raw, str) and raw.strip().lower() in ("true", "false"):
            return raw.strip().lower() == "true"
        return raw
    if annotation in (int, float):
        return _coerce_number(raw, annotation)
    if annotation is str:
        if isinstance(raw, str):
            return raw
        if isinstance(raw, (dict, list)):
            return json.dumps(raw)
        if isinstance(raw, bool):
            return "true" if raw else "false"
        return str(raw)
    return raw


@dataclass
class CoercionResult:
    value: Optional[BaseModel]
    issues: list[SchemaIssue] = field(default_factory=list)
    coerced: bool = False

    @property
    def success(self) -> bool:
        return self.value is not None


def try_coerce_and_validate(data: Any, schema: type[BaseModel]) -> CoercionResult:
    """Validate, coerce on failure, validate again. Issues from both passes are kept."""
    issues: list[SchemaIssue] = []
    try:
        return CoercionResult(validate_strict(schema, data))
    except ValidationError as e:
        issues.extend(issues_from_validation_error(e))
    except (TypeError, ValueError) as e:
        issues.append(SchemaIssue(path="", message=str(e), code="not_serializable"))

    coerced = coerce_to_schema(data, schema)
    try:
        value = validate_strict(schema, coerced)
    except ValidationError as e:
        seen = {(i.path, i.message) for i in issues}
        for issue in issues_from_validation_error(e):
            if (issue.path, issue.message) not in seen:
                issues.append(issue)
        logger.debug(
            "coercion_failed",
            schema=schema.__name__,
            issues=len(issues),
            first=[f"{i.path}: {i.message}" for i in issues[:3]],
        )
        return CoercionResult(None, issues, coerced=True)
    except (TypeError, ValueError) as e:
        issues.append(SchemaIssue(path="", message=str(e), code="not_serializable"))
        return CoercionResult(None, issues, coerced=True)
    logger.debug("coercion_succeeded", schema=schema.__name__, issues_fixed=len(issues))
    return CoercionResult(value, issues, coerced=True)
