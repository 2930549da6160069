"""
Sanitization of sensitive text before it is written to the audit log.

Raw provider output and prompts can carry learner data. Before persistence:
  - common PII patterns (email, phone, SSN, card-like numbers) are scrubbed
  - long values are replaced by a marker holding only a hash and a length
  - the course context document and weak-areas feedback blocks of a prompt
    are always replaced by markers

Marker format: [REDACTED:<label>:sha256=<hex>:chars=<n>]
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from structgen.config import Settings, get_settings


class PIITag(str, Enum):
    """Types of PII scrubbed from inline text."""

    SSN = "ssn"
    PHONE = "phone"
    EMAIL = "email"
    CARD = "card"


# Card-like numbers first so the phone pattern does not eat their groups
_PII_PATTERNS: list[tuple[PIITag, re.Pattern[str], str]] = [
    (PIITag.CARD, re.compile(r"\b(?:\d[ -]?){13,16}\b"), "[CARD REDACTED]"),
    (PIITag.SSN, re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), "[SSN REDACTED]"),
    (PIITag.EMAIL, re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[EMAIL REDACTED]"),
    (PIITag.PHONE, re.compile(r"(?<!\d)\(?\d{3}\)?[-.\s]\d{3}[-.\s]\d{4}\b"), "[PHONE REDACTED]"),
]

_NEXT_SECTION = r"(\n\n[A-Z][A-Z _-]+:|$)"
_CONTEXT_DOC_RE = re.compile(r"(COURSE CONTEXT DOCUMENT:\n)([\s\S]*?)" + _NEXT_SECTION, re.IGNORECASE)
_FEEDBACK_RE = re.compile(r"(IMPORTANT - WEAK AREAS FEEDBACK:\n)([\s\S]*?)" + _NEXT_SECTION, re.IGNORECASE)


@dataclass
class SanitizedText:
    sanitized: Optional[str]
    redacted: bool
    hash: Optional[str]


def sha256(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def build_redaction_marker(label: str, value: str) -> str:
    return f"[REDACTED:{label}:sha256={sha256(value)}:chars={len(value)}]"


def scrub_pii(text: str) -> tuple[str, list[PIITag]]:
    """Replace PII matches with tags. Returns the scrubbed text and the tags found."""
    found: list[PIITag] = []
    for tag, pattern, replacement in _PII_PATTERNS:
        text, count = pattern.subn(replacement, text)
        if count:
            found.append(tag)
    return text, found


def sanitize_text_for_persistence(
    value: Optional[str],
    label: str,
    settings: Optional[Settings] = None,
) -> SanitizedText:
    """Short text is kept with PII scrubbed; long text becomes a marker."""
    if not value:
        return SanitizedText(None, False, None)
    limit = (settings or get_settings()).generation_log.inline_max_chars
    digest = sha256(value)
    if len(value) > limit:
        return SanitizedText(build_redaction_marker(label, value), True, digest)
    scrubbed, found = scrub_pii(value)
    return SanitizedText(scrubbed, bool(found), digest)


def sanitize_prompt_for_persistence(
    prompt: Optional[str],
    settings: Optional[Settings] = None,
) -> SanitizedText:
    """Replace user-supplied prompt blocks with markers; long prompts collapse to one marker.

    The hash is always of the original prompt so identical prompts can be grouped.
    """
    if not prompt:
        return SanitizedText(None, False, None)
    limit = (settings or get_settings()).generation_log.prompt_max_chars
    redacted = False

    def _context_doc(match: re.Match[str]) -> str:
        nonlocal redacted
        redacted = True
        return match.group(1) + build_redaction_marker("contextDoc", match.group(2)) + match.group(3)

    def _feedback(match: re.Match[str]) -> str:
        nonlocal redacted
        redacted = True
        return match.group(1) + build_redaction_marker("userFeedback", match.group(2)) + match.group(3)

    output = _CONTEXT_DOC_RE.sub(_context_doc, prompt)
    output = _FEEDBACK_RE.sub(_feedback, output)

    if len(output) > limit:
        return SanitizedText(build_redaction_marker("prompt", output), True, sha256(prompt))

    output, found = scrub_pii(output)
    return SanitizedText(output, redacted or bool(found), sha256(prompt))
