"""
Layer 0 text repair: deterministic fixes for near-miss JSON from a provider.

Runs before the response body is handed to the schema. Each step is tried in
order and the first text that json.loads() accepts wins:

  1. strip markdown fences and prose before the first bracket
  2. remove // comments, trailing commas, NaN/Infinity
  3. escape raw control characters inside strings
  4. cut at the matching close bracket, or close a truncated tail
  5. json-repair as the last resort
"""

from __future__ import annotations

import json
import re
from typing import Any, Optional

import structlog
from json_repair import repair_json as _repair_json

logger = structlog.get_logger()

_CONTROL_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t", "\b": "\\b", "\f": "\\f"}


def try_parse(text: str) -> tuple[bool, Any]:
    """json.loads without raising; returns (ok, value)."""
    try:
        return True, json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return False, None


def strip_json_fences(raw: str) -> str:
    """Remove markdown code fences and any prose before the first bracket."""
    cleaned = raw.strip()
    cleaned = re.sub(r"^\s*```(?:json|JSON)?\s*\n?", "", cleaned)
    if "```" in cleaned:
        cleaned = cleaned.split("```")[0]
    cleaned = cleaned.strip()
    starts = [i for i in (cleaned.find("{"), cleaned.find("[")) if i >= 0]
    if starts and min(starts) > 0:
        cleaned = cleaned[min(starts):]
    return cleaned


def sanitize_json(text: str) -> str:
    """Fix common LLM JSON errors (trailing commas, comments, NaN/Infinity)."""
    # Whole-line and trailing // comments only; URLs inside strings keep their //
    text = re.sub(r"(?m)^\s*//.*$", "", text)
    text = re.sub(r",\s*//[^\n]*", ",", text)
    text = re.sub(r",\s*([}\]])", r"\1", text)
    text = re.sub(r"\bNaN\b", "null", text)
    text = re.sub(r"-?\bInfinity\b", "null", text)
    return text


def escape_control_characters(text: str) -> str:
    """Escape raw newlines/tabs/other control chars that appear inside string literals."""
    out: list[str] = []
    in_string = False
    escape = False
    for c in text:
        if escape:
            escape = False
            out.append(c)
            continue
        if c == "\\" and in_string:
            escape = True
            out.append(c)
            continue
        if c == '"':
            in_string = not in_string
            out.append(c)
            continue
        if in_string and ord(c) < 0x20:
            out.append(_CONTROL_ESCAPES.get(c, f"\\u{ord(c):04x}"))
            continue
        out.append(c)
    return "".join(out)


def balance_brackets(text: str) -> str:
    """Cut after the matching close of the first { or [, or close a truncated document.

    Tracks nesting with a stack and string state, so brackets inside string
    values are ignored. A dangling string is closed before the brackets.
    """
    starts = [i for i in (text.find("{"), text.find("[")) if i >= 0]
    if not starts:
        return text
    start = min(starts)
    stack: list[str] = []
    in_string = False
    escape = False
    for i in range(start, len(text)):
        c = text[i]
        if escape:
            escape = False
            continue
        if c == "\\" and in_string:
            escape = True
            continue
        if c == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if c == "{":
            stack.append("}")
        elif c == "[":
            stack.append("]")
        elif c in "}]":
            if not stack or stack[-1] != c:
                break
            stack.pop()
            if not stack:
                return text[start:i + 1]
    body = text[start:].rstrip()
    if in_string:
        body += '"'
    body = re.sub(r",\s*$", "", body)
    if stack and stack[-1] == "}":
        # Dangling key with no value: {"a": 1, "b"  or  {"a": 1, "b":
        body = re.sub(r'([{,]\s*"[^"]*"\s*):?\s*$', r"\1: null", body)
    return body + "".join(reversed(stack))


def repair_json_text(text: str) -> Optional[str]:
    """Return a JSON text that parses, derived from text, or None if nothing works."""
    if not text or not text.strip():
        return None
    candidate = strip_json_fences(text)
    ok, _ = try_parse(candidate)
    if ok:
        return candidate
    for step in (sanitize_json, escape_control_characters, balance_brackets):
        candidate = step(candidate)
        ok, _ = try_parse(candidate)
        if ok:
            return candidate
    try:
        repaired = _repair_json(candidate, return_objects=True)
    except Exception as e:
        logger.debug("json_repair_library_failed", error=str(e))
        return None
    if isinstance(repaired, (dict, list)) and repaired:
        return json.dumps(repaired)
    return None
