"""
Recovery Pipeline: Layers 1 and 2, run only on a RecoverableFailure.

Layer 1 is local and deterministic: parse, unwrap a tool-call envelope, coerce
to the schema. Layer 2 asks the cheapest credentialed model to re-emit the raw
text as conforming JSON and runs its answer through Layer 1 once. There is no
recursion: a malformed repack never triggers another repack.

When every layer fails the caller gets RecoveryExhaustedError carrying the
primary model's error, never the repack model's.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

import structlog
from pydantic import BaseModel

from structgen.coercion import try_coerce_and_validate, unwrap_payload
from structgen.config import Settings, get_settings
from structgen.errors import ProviderTimeoutError, RecoveryExhaustedError
from structgen.invoker import Deadline, GenerationInvoker, InvokeOptions
from structgen.model_resolver import CredentialsLike, ModelHandle, ModelResolver
from structgen.models import (
    FatalFailure,
    GenerationOutcome,
    RecoverableFailure,
    RepairTracker,
    SchemaIssue,
    StructuredResult,
    WrapperType,
)
from structgen.observability import metrics as obs_metrics
from structgen.text_repair import try_parse

if TYPE_CHECKING:
    from structgen.generation_logger import GenerationLogger

logger = structlog.get_logger()

_REPACK_PROMPT = """The text below was meant to be a single JSON object matching the JSON schema that follows, but it is malformed, wrapped in another object, or has values of the wrong type.

Re-emit the same content as one JSON object that conforms to the schema. Keep every value that fits; do not invent new content; do not wrap the object in any other key.

JSON SCHEMA:
{schema}

TEXT TO REPACK:
{raw_text}"""


@dataclass
class LocalRecovery:
    """What Layer 1 did with one piece of text."""

    value: Optional[BaseModel] = None
    parsed: bool = False
    was_wrapped: bool = False
    wrapper_type: WrapperType = WrapperType.NONE
    issues: list[SchemaIssue] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.value is not None


@dataclass
class RecoveryOutcome:
    value: BaseModel
    outcome: GenerationOutcome
    was_wrapped: bool = False
    wrapper_type: WrapperType = WrapperType.NONE
    issues: list[SchemaIssue] = field(default_factory=list)
    repack_model_id: Optional[str] = None


def recover_locally(text: Optional[str], schema: type[BaseModel]) -> LocalRecovery:
    """Layer 1: direct parse, wrapper unwrap, then schema coercion."""
    ok, data = try_parse(text) if text else (False, None)
    if not ok:
        return LocalRecovery(issues=[SchemaIssue(path="", message="Response is not valid JSON", code="json_invalid")])

    unwrapped = unwrap_payload(data, schema)
    coerced = try_coerce_and_validate(unwrapped.unwrapped, schema)
    return LocalRecovery(
        value=coerced.value,
        parsed=True,
        was_wrapped=unwrapped.was_wrapped,
        wrapper_type=unwrapped.wrapper_type,
        issues=coerced.issues,
    )


class RecoveryPipeline:
    """Turns a RecoverableFailure into a valid object or RecoveryExhaustedError."""

    def __init__(
        self,
        resolver: Optional[ModelResolver] = None,
        invoker: Optional[GenerationInvoker] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._resolver = resolver or ModelResolver(self._settings)
        self._invoker = invoker or GenerationInvoker(self._settings)

    async def recover(
        self,
        failure: RecoverableFailure,
        schema: type[BaseModel],
        credentials: CredentialsLike,
        generation_logger: Optional["GenerationLogger"] = None,
        deadline: Optional[Deadline] = None,
    ) -> RecoveryOutcome:
        # ── Layer 1 ──
        local = recover_locally(failure.raw_text, schema)
        if generation_logger is not None:
            generation_logger.record_layer1(
                success=local.success,
                had_wrapper=local.was_wrapped,
                wrapper_type=local.wrapper_type,
                issues=local.issues,
            )
        obs_metrics.record_recovery_layer("layer1", local.success)
        logger.info(
            "recovery_layer1_done",
            schema=schema.__name__,
            success=local.success,
            parsed=local.parsed,
            wrapper_type=local.wrapper_type.value,
            issues=len(local.issues),
        )
        if local.value is not None:
            return RecoveryOutcome(
                value=local.value,
                outcome=GenerationOutcome.REPAIRED_LAYER1,
                was_wrapped=local.was_wrapped,
                wrapper_type=local.wrapper_type,
                issues=local.issues,
            )

        # ── Layer 2 ──
        handle = self._resolver.cheapest_available(credentials)
        if handle is None:
            logger.info("recovery_layer2_skipped", reason="no_credentialed_model")
            raise RecoveryExhaustedError(failure.error)

        try:
            value, repack_issues = await self._repack(handle, failure, schema, deadline)
        except ProviderTimeoutError as e:
            if generation_logger is not None:
                generation_logger.record_layer2(
                    success=False,
                    model_id=handle.model_id,
                    issues=[SchemaIssue(path="", message=str(e), code="repack_timeout")],
                )
            obs_metrics.record_recovery_layer("layer2", False)
            logger.warning("recovery_layer2_timeout", schema=schema.__name__, model=handle.model_id)
            raise
        if generation_logger is not None:
            generation_logger.record_layer2(
                success=value is not None,
                model_id=handle.model_id,
                issues=repack_issues,
            )
        obs_metrics.record_recovery_layer("layer2", value is not None)
        logger.info(
            "recovery_layer2_done",
            schema=schema.__name__,
            model=handle.model_id,
            success=value is not None,
        )
        if value is None:
            raise RecoveryExhaustedError(failure.error)
        return RecoveryOutcome(
            value=value,
            outcome=GenerationOutcome.REPAIRED_LAYER2,
            was_wrapped=local.was_wrapped,
            wrapper_type=local.wrapper_type,
            issues=local.issues,
            repack_model_id=handle.model_id,
        )

    async def _repack(
        self,
        handle: ModelHandle,
        failure: RecoverableFailure,
        schema: type[BaseModel],
        deadline: Optional[Deadline],
    ) -> tuple[Optional[BaseModel], list[SchemaIssue]]:
        """One repack call plus at most one local pass over its answer."""
        raw_text = failure.error.text or failure.raw_text
        prompt = _REPACK_PROMPT.format(
            schema=json.dumps(schema.model_json_schema(), indent=2),
            raw_text=raw_text,
        )
        options = InvokeOptions(deadline=deadline, temperature=0.0, purpose="repack")
        result = await self._invoker.invoke(handle, prompt, schema, options, tracker=RepairTracker())

        if isinstance(result, StructuredResult):
            return result.value, []
        if isinstance(result, FatalFailure):
            if isinstance(result.error, ProviderTimeoutError):
                raise result.error
            logger.warning(
                "repack_call_failed",
                model=handle.model_id,
                error_type=type(result.error).__name__,
                error=str(result.error)[:200],
            )
            return None, [SchemaIssue(path="", message=str(result.error), code="repack_failed")]

        local = recover_locally(result.raw_text, schema)
        return local.value, local.issues
