"""
Generation Invoker: the primary structured-generation call (Layer 0).

Asks the model for JSON matching the target schema, applies the text-repair
hook when the body does not parse, and validates strictly. Returns a tagged
result instead of raising on malformed output:

  StructuredResult    schema-valid object, recovery never runs
  RecoverableFailure  text that is not a valid object, handed to recovery
  FatalFailure        auth / deadline / request error, recovery never runs

Design decisions:
  - One Deadline bounds every provider call of a request; overrun is a
    ProviderTimeoutError, never a malformed-output failure
  - Retry only on transient request errors (rate limit, 5xx, network)
  - Layer 0 is observable through the caller-owned RepairTracker
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import structlog
from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, ValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from structgen.coercion import issues_from_validation_error, validate_strict
from structgen.config import Settings, get_settings
from structgen.errors import (
    GenerationError,
    NoStructuredOutputError,
    ProviderRequestError,
    ProviderTimeoutError,
    classify_provider_error,
)
from structgen.mock_data import build_mock_object, mock_payload
from structgen.model_resolver import ModelHandle, is_reasoning_model
from structgen.models import (
    AIProvider,
    FatalFailure,
    InvocationResult,
    Layer0Result,
    RecoverableFailure,
    RepairResult,
    RepairTracker,
    StructuredResult,
)
from structgen.observability import metrics as obs_metrics
from structgen.text_repair import repair_json_text, try_parse

logger = structlog.get_logger()

_SCHEMA_INSTRUCTION = (
    "You MUST respond with valid JSON matching this schema:\n"
    "{schema}\n\n"
    "Respond with ONLY the JSON object, no other text."
)


class Deadline:
    """Overall time budget shared by every provider call of one request."""

    def __init__(self, seconds: float) -> None:
        self.seconds = seconds
        self._expires = time.monotonic() + seconds

    def remaining(self) -> float:
        return self._expires - time.monotonic()

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0


@dataclass
class InvokeOptions:
    deadline: Optional[Deadline] = None
    repair_text: bool = True
    temperature: Optional[float] = None
    purpose: str = "generation"


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, ProviderRequestError) and exc.transient


def _response_text(response: Any) -> str:
    """Flatten a chat model response to text (Anthropic returns content blocks)."""
    content = response.content if hasattr(response, "content") else response
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(str(block.get("text", "")))
            elif isinstance(block, dict) and "input" in block:
                parts.append(json.dumps(block["input"]))
        return "".join(parts)
    return str(content)


class GenerationInvoker:
    """Runs one structured call against a resolved model handle."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()

    async def invoke(
        self,
        handle: ModelHandle,
        prompt: str,
        schema: type[BaseModel],
        options: Optional[InvokeOptions] = None,
        tracker: Optional[RepairTracker] = None,
    ) -> InvocationResult:
        options = options or InvokeOptions()
        tracker = tracker if tracker is not None else RepairTracker()

        if handle.is_mock:
            return self._invoke_mock(schema, options, tracker)

        try:
            text = await self._call_with_deadline(handle, prompt, schema, options)
        except GenerationError as e:
            tracker.layer0_result = Layer0Result.FAILED
            tracker.error = str(e)
            logger.warning(
                "provider_call_failed",
                model=handle.model_id,
                purpose=options.purpose,
                error_type=type(e).__name__,
                error=str(e)[:200],
            )
            return FatalFailure(error=e, tracker=tracker)

        return self._parse_response(text, schema, options, tracker, handle.model_id)

    def _invoke_mock(self, schema: type[BaseModel], options: InvokeOptions, tracker: RepairTracker) -> InvocationResult:
        try:
            value = build_mock_object(schema)
        except ValidationError as e:
            # Placeholder cannot meet the schema (pattern, custom validator): treat as malformed output
            logger.warning("mock_generation_invalid", schema=schema.__name__, errors=e.error_count())
            text = json.dumps(mock_payload(schema), default=str)
            return self._parse_response(text, schema, options, tracker, "mock")
        tracker.layer0_result = Layer0Result.OK
        logger.debug("mock_generation", schema=schema.__name__)
        return StructuredResult(value=value, raw_text=None, tracker=tracker)

    # ── Provider call ──

    async def _call_with_deadline(
        self,
        handle: ModelHandle,
        prompt: str,
        schema: type[BaseModel],
        options: InvokeOptions,
    ) -> str:
        deadline = options.deadline or Deadline(self._settings.llm.generation_deadline_seconds)
        remaining = deadline.remaining()
        if remaining <= 0:
            raise ProviderTimeoutError(f"Generation deadline of {deadline.seconds:g}s exceeded before calling {handle.model_id}")
        try:
            return await asyncio.wait_for(self._call_with_retries(handle, prompt, schema, options), timeout=remaining)
        except asyncio.TimeoutError as e:
            raise ProviderTimeoutError(
                f"Generation deadline of {deadline.seconds:g}s exceeded waiting on {handle.model_id}"
            ) from e

    async def _call_with_retries(
        self,
        handle: ModelHandle,
        prompt: str,
        schema: type[BaseModel],
        options: InvokeOptions,
    ) -> str:
        llm = self._settings.llm
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, llm.retry_attempts)),
            wait=wait_exponential(multiplier=llm.retry_wait_multiplier, min=0, max=llm.retry_wait_max),
            retry=retry_if_exception(_is_transient),
            reraise=True,
            before_sleep=lambda rs: logger.warning(
                "llm_retry",
                model=handle.model_id,
                attempt=rs.attempt_number,
                error=str(rs.outcome.exception()) if rs.outcome else "unknown",
            ),
        )
        async for attempt in retrying:
            with attempt:
                return await self._call_provider(handle, prompt, schema, options)
        raise ProviderRequestError(f"No attempt made for {handle.model_id}")

    async def _call_provider(
        self,
        handle: ModelHandle,
        prompt: str,
        schema: type[BaseModel],
        options: InvokeOptions,
    ) -> str:
        model = handle.chat_model
        messages = [
            SystemMessage(content=_SCHEMA_INSTRUCTION.format(schema=json.dumps(schema.model_json_schema(), indent=2))),
            HumanMessage(content=prompt),
        ]
        bindings: dict[str, Any] = {}
        if options.temperature is not None:
            bindings["temperature"] = options.temperature
        if handle.provider == AIProvider.OPENAI and not is_reasoning_model(handle.model_id):
            bindings["response_format"] = {"type": "json_object"}
        if bindings and hasattr(model, "bind"):
            model = model.bind(**bindings)

        async with obs_metrics.track_llm_call(
            model=handle.model_id,
            purpose=options.purpose,
            provider=handle.provider.value,
        ):
            try:
                response = await model.ainvoke(messages)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                raise classify_provider_error(e) from e
        return _response_text(response)

    # ── Layer 0 ──

    def _parse_response(
        self,
        text: str,
        schema: type[BaseModel],
        options: InvokeOptions,
        tracker: RepairTracker,
        model_id: str,
    ) -> InvocationResult:
        tracker.capture_raw(text)
        candidate = text
        ok, data = try_parse(text)
        if not ok and options.repair_text:
            tracker.repair_called = True
            self._dump_raw(text, model_id)
            repaired = repair_json_text(text)
            if repaired is not None:
                candidate = repaired
                ok, data = try_parse(repaired)
            tracker.repair_result = RepairResult.SUCCEEDED if ok else RepairResult.FAILED
            logger.debug(
                "layer0_repair",
                model=model_id,
                raw_length=len(text),
                result=tracker.repair_result.value,
            )

        if not ok:
            tracker.layer0_result = Layer0Result.FAILED
            tracker.error = "No object generated: could not parse the response."
            return RecoverableFailure(
                error=NoStructuredOutputError(tracker.error, text=text),
                raw_text=candidate,
                tracker=tracker,
            )

        try:
            value = validate_strict(schema, data)
        except ValidationError as e:
            issues = issues_from_validation_error(e)
            tracker.layer0_result = Layer0Result.FAILED
            tracker.error = "No object generated: response did not match schema."
            logger.info(
                "layer0_schema_mismatch",
                model=model_id,
                schema=schema.__name__,
                issues=len(issues),
                first=[f"{i.path}: {i.message}" for i in issues[:3]],
            )
            return RecoverableFailure(
                error=NoStructuredOutputError(tracker.error, text=text, issues=[i.as_dict() for i in issues]),
                raw_text=candidate,
                tracker=tracker,
            )

        tracker.layer0_result = Layer0Result.OK
        return StructuredResult(value=value, raw_text=text, tracker=tracker)

    def _dump_raw(self, text: str, model_id: str) -> None:
        """Write raw provider text to the debug dump directory when AI_DEBUG_DUMPS is on."""
        cfg = self._settings.generation_log
        if not cfg.debug_dumps:
            return
        try:
            directory = Path(cfg.debug_dump_dir)
            directory.mkdir(parents=True, exist_ok=True)
            stamp = datetime.now().strftime("%Y%m%dT%H%M%S%f")
            path = directory / f"repair-{model_id}-{stamp}.json"
            path.write_text(text, encoding="utf-8")
            logger.info("debug_dump_written", path=str(path), chars=len(text))
        except OSError as e:
            logger.error("debug_dump_failed", error=str(e))
