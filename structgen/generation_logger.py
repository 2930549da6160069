"""
Generation Logger: request-scoped builder for one ai_generation_log row.

Each recovery stage records what it did; record calls are additive and may
arrive in any order. finalize() resolves the outcome, sanitizes sensitive
text and writes exactly one row. A failed write is logged and counted but
never reaches the caller: the audit log must not break generation.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Union

import structlog

from structgen.config import Settings, get_settings
from structgen.errors import GenerationError
from structgen.log_sanitizer import sanitize_prompt_for_persistence, sanitize_text_for_persistence, sha256
from structgen.log_store import GenerationLogStore
from structgen.model_resolver import get_provider_for_model
from structgen.models import (
    GenerationOutcome,
    GenerationType,
    Layer0Result,
    RepairResult,
    RepairTracker,
    SchemaIssue,
    WrapperType,
    utc_now,
)
from structgen.observability import metrics as obs_metrics
from structgen.retention import get_sensitive_text_expiry

logger = structlog.get_logger()


@dataclass
class GenerationLogContext:
    """Who asked for what. The generator fills schema_name, model_id and prompt_text."""

    generation_type: Union[GenerationType, str]
    schema_name: str = ""
    model_id: str = ""
    user_id: Optional[str] = None
    course_id: Optional[str] = None
    lesson_id: Optional[str] = None
    language: Optional[str] = None
    difficulty: Optional[str] = None
    prompt_text: Optional[str] = None

    @property
    def generation_type_value(self) -> str:
        gt = self.generation_type
        return gt.value if isinstance(gt, GenerationType) else str(gt)


def truncate_raw_text(text: Optional[str], max_chars: int) -> Optional[str]:
    if text is None or len(text) <= max_chars:
        return text
    omitted = len(text) - max_chars
    return text[:max_chars] + f"\n[TRUNCATED: {omitted} chars omitted]"


class GenerationLogger:
    """Accumulates one attempt's recovery history, then persists it once."""

    def __init__(
        self,
        context: GenerationLogContext,
        store: Optional[GenerationLogStore] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.context = context
        self._store = store
        self._settings = settings or get_settings()
        self.created_at = clock()
        self._started = time.perf_counter()
        self.prompt_hash = sha256(context.prompt_text) if context.prompt_text else None
        self.sensitive_text_expires_at = get_sensitive_text_expiry(self.created_at, self._settings)
        self._finalized = False
        self.log_id: Optional[str] = None

        # Layer 0
        self._layer0_result = Layer0Result.NOT_RUN
        self._layer0_repair_result = RepairResult.NOT_ATTEMPTED
        self._layer0_error: Optional[str] = None
        self._raw_text: Optional[str] = None
        self._raw_text_length = 0

        # Layer 1
        self._layer1_called = False
        self._layer1_success = False
        self._layer1_had_wrapper = False
        self._wrapper_type = WrapperType.NONE

        # Layer 2
        self._layer2_called = False
        self._layer2_success = False
        self._layer2_model_id: Optional[str] = None

        self._issues: list[SchemaIssue] = []
        self._error_message: Optional[str] = None

    @property
    def finalized(self) -> bool:
        return self._finalized

    def _accepting(self, event: str) -> bool:
        if self._finalized:
            logger.warning("generation_log_record_after_finalize", call=event, log_id=self.log_id)
            return False
        return True

    def _add_issues(self, issues: Optional[list[SchemaIssue]]) -> None:
        seen = {(i.path, i.message) for i in self._issues}
        for issue in issues or []:
            if (issue.path, issue.message) not in seen:
                self._issues.append(issue)
                seen.add((issue.path, issue.message))

    # ── Recording ──

    def record_layer0(self, tracker: RepairTracker) -> None:
        if not self._accepting("record_layer0"):
            return
        self._layer0_result = tracker.layer0_result
        self._layer0_repair_result = tracker.repair_result
        self._layer0_error = tracker.error
        if tracker.raw_text is not None:
            self._raw_text = tracker.raw_text
            self._raw_text_length = tracker.raw_text_length

    def record_layer1(
        self,
        success: bool,
        had_wrapper: bool = False,
        wrapper_type: WrapperType = WrapperType.NONE,
        issues: Optional[list[SchemaIssue]] = None,
    ) -> None:
        if not self._accepting("record_layer1"):
            return
        self._layer1_called = True
        self._layer1_success = success
        self._layer1_had_wrapper = had_wrapper
        self._wrapper_type = wrapper_type
        self._add_issues(issues)

    def record_layer2(
        self,
        success: bool,
        model_id: Optional[str],
        issues: Optional[list[SchemaIssue]] = None,
    ) -> None:
        if not self._accepting("record_layer2"):
            return
        self._layer2_called = True
        self._layer2_success = success
        self._layer2_model_id = model_id
        self._add_issues(issues)

    def record_failure(self, message: str) -> None:
        if not self._accepting("record_failure"):
            return
        self._error_message = message

    # ── Resolution ──

    def resolve_outcome(self) -> GenerationOutcome:
        if self._layer2_called and self._layer2_success:
            return GenerationOutcome.REPAIRED_LAYER2
        if self._layer1_called and self._layer1_success:
            return GenerationOutcome.REPAIRED_LAYER1
        if self._error_message or self._layer1_called or self._layer2_called:
            return GenerationOutcome.FAILED
        if self._layer0_result == Layer0Result.OK:
            return GenerationOutcome.SUCCESS_LAYER0
        return GenerationOutcome.FAILED

    def _provider(self) -> str:
        try:
            return get_provider_for_model(self.context.model_id).value
        except GenerationError:
            return "unknown"

    def build_record(self) -> dict[str, Any]:
        """Column values for the row finalize() would write."""
        cfg = self._settings.generation_log
        outcome = self.resolve_outcome()

        raw = sanitize_text_for_persistence(self._raw_text, "rawOutput", self._settings)
        store_prompt = outcome != GenerationOutcome.SUCCESS_LAYER0 or cfg.store_prompt_on_success
        prompt = (
            sanitize_prompt_for_persistence(self.context.prompt_text, self._settings)
            if store_prompt
            else None
        )

        return {
            "generation_type": self.context.generation_type_value,
            "schema_name": self.context.schema_name,
            "model_id": self.context.model_id,
            "provider": self._provider(),
            "user_id": self.context.user_id,
            "course_id": self.context.course_id,
            "lesson_id": self.context.lesson_id,
            "outcome": outcome.value,
            "duration_ms": int((time.perf_counter() - self._started) * 1000),
            "layer0_called": self._layer0_result != Layer0Result.NOT_RUN,
            "layer0_result": self._layer0_result.value,
            "layer0_repair_result": self._layer0_repair_result.value,
            "layer0_error": self._layer0_error,
            "layer1_called": self._layer1_called,
            "layer1_success": self._layer1_success,
            "layer1_had_wrapper": self._layer1_had_wrapper,
            "wrapper_type": self._wrapper_type.value,
            "layer2_called": self._layer2_called,
            "layer2_success": self._layer2_success,
            "layer2_model_id": self._layer2_model_id,
            "raw_output_len": self._raw_text_length,
            "raw_output_text": truncate_raw_text(raw.sanitized, cfg.raw_text_max_chars),
            "raw_output_redacted": raw.redacted,
            "validation_errors": [i.as_dict() for i in self._issues],
            "error_message": self._error_message,
            "prompt_hash": self.prompt_hash,
            "prompt_text": prompt.sanitized if prompt else None,
            "prompt_redacted": prompt.redacted if prompt else False,
            "sensitive_text_expires_at": self.sensitive_text_expires_at,
            "sensitive_text_redacted_at": None,
            "language": self.context.language,
            "difficulty": self.context.difficulty,
            "created_at": self.created_at,
        }

    async def finalize(self) -> Optional[str]:
        """Write the row once. Returns its id, or None when nothing was written."""
        if self._finalized:
            logger.warning("generation_log_double_finalize", log_id=self.log_id)
            return self.log_id
        self._finalized = True

        try:
            values = self.build_record()
            if self._store is None:
                logger.debug("generation_log_no_store", outcome=values["outcome"])
                return None
            self.log_id = await asyncio.to_thread(self._store.add, values)
        except Exception as e:
            obs_metrics.record_log_write_failure()
            logger.error(
                "generation_log_write_failed",
                schema=self.context.schema_name,
                model=self.context.model_id,
                error_type=type(e).__name__,
                error=str(e)[:300],
            )
            return None

        logger.debug(
            "generation_log_written",
            log_id=self.log_id,
            outcome=values["outcome"],
            duration_ms=values["duration_ms"],
        )
        return self.log_id


def create_generation_logger(
    context: GenerationLogContext,
    store: Optional[GenerationLogStore] = None,
    settings: Optional[Settings] = None,
) -> GenerationLogger:
    return GenerationLogger(context, store, settings)
