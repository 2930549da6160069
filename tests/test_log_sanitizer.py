"""Tests for audit-log text sanitization."""

import hashlib

from structgen.config import Settings
from structgen.log_sanitizer import (
    PIITag,
    build_redaction_marker,
    sanitize_prompt_for_persistence,
    sanitize_text_for_persistence,
    scrub_pii,
)


def test_marker_format() -> None:
    digest = hashlib.sha256(b"secret").hexdigest()
    assert build_redaction_marker("rawOutput", "secret") == f"[REDACTED:rawOutput:sha256={digest}:chars=6]"


class TestScrubPII:
    def test_email_and_phone(self) -> None:
        text, found = scrub_pii("Contact jane@example.com or 555-123-4567.")
        assert "jane@example.com" not in text
        assert "555-123-4567" not in text
        assert PIITag.EMAIL in found
        assert PIITag.PHONE in found

    def test_ssn(self) -> None:
        text, found = scrub_pii("SSN 123-45-6789")
        assert text == "SSN [SSN REDACTED]"
        assert found == [PIITag.SSN]

    def test_card_number(self) -> None:
        text, found = scrub_pii("card 4111 1111 1111 1111 on file")
        assert "4111" not in text
        assert PIITag.CARD in found

    def test_plain_numbers_untouched(self) -> None:
        text, found = scrub_pii('{"duration_minutes": 45, "year": 2026}')
        assert text == '{"duration_minutes": 45, "year": 2026}'
        assert found == []


class TestSanitizeText:
    def test_empty(self, settings: Settings) -> None:
        result = sanitize_text_for_persistence(None, "rawOutput", settings)
        assert result.sanitized is None
        assert not result.redacted
        assert result.hash is None

    def test_short_text_kept(self, settings: Settings) -> None:
        result = sanitize_text_for_persistence('{"title": "Intro"}', "rawOutput", settings)
        assert result.sanitized == '{"title": "Intro"}'
        assert not result.redacted
        assert result.hash == hashlib.sha256(b'{"title": "Intro"}').hexdigest()

    def test_long_text_replaced_by_marker(self, settings: Settings) -> None:
        value = "y" * (settings.generation_log.inline_max_chars + 1)
        result = sanitize_text_for_persistence(value, "rawOutput", settings)
        assert result.redacted
        assert result.sanitized == build_redaction_marker("rawOutput", value)


class TestSanitizePrompt:
    def test_context_document_block_redacted(self, settings: Settings) -> None:
        doc = "Chapter 1: the learner's own notes\nwith several lines"
        prompt = f"Create a lesson.\n\nCOURSE CONTEXT DOCUMENT:\n{doc}\n\nOUTPUT FORMAT: JSON"
        result = sanitize_prompt_for_persistence(prompt, settings)
        assert result.redacted
        assert doc not in result.sanitized
        assert build_redaction_marker("contextDoc", doc) in result.sanitized
        assert result.sanitized.endswith("\n\nOUTPUT FORMAT: JSON")
        assert result.hash == hashlib.sha256(prompt.encode()).hexdigest()

    def test_feedback_block_redacted_to_end(self, settings: Settings) -> None:
        feedback = "Struggled with denominators"
        prompt = f"Create a quiz.\n\nIMPORTANT - WEAK AREAS FEEDBACK:\n{feedback}"
        result = sanitize_prompt_for_persistence(prompt, settings)
        assert result.sanitized == (
            "Create a quiz.\n\nIMPORTANT - WEAK AREAS FEEDBACK:\n" + build_redaction_marker("userFeedback", feedback)
        )

    def test_long_prompt_collapses_to_single_marker(self, settings: Settings) -> None:
        prompt = "Explain fractions. " * 200
        result = sanitize_prompt_for_persistence(prompt, settings)
        assert result.redacted
        assert result.sanitized.startswith("[REDACTED:prompt:sha256=")
        assert result.sanitized.count("[REDACTED:") == 1

    def test_plain_prompt_unchanged(self, settings: Settings) -> None:
        result = sanitize_prompt_for_persistence("Write a lesson on fractions.", settings)
        assert result.sanitized == "Write a lesson on fractions."
        assert not result.redacted

    def test_none_prompt(self, settings: Settings) -> None:
        assert sanitize_prompt_for_persistence(None, settings).sanitized is None
