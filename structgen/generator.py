"""
Structured generation service: the one entry point route code calls.

Resolves the model, runs the primary call, hands recoverable failures to the
recovery pipeline and finalizes the audit row exactly once, whatever happens.
Only ProviderAuthError, ProviderTimeoutError, ProviderRequestError and
RecoveryExhaustedError reach the caller.
"""

from __future__ import annotations

import time
from dataclasses import replace
from typing import Optional

import structlog
from pydantic import BaseModel

from structgen.config import Settings, get_settings
from structgen.errors import GenerationError
from structgen.generation_logger import GenerationLogContext, create_generation_logger
from structgen.invoker import Deadline, GenerationInvoker, InvokeOptions
from structgen.log_store import GenerationLogStore
from structgen.model_resolver import CredentialsLike, ModelResolver
from structgen.models import (
    FatalFailure,
    GenerationOutcome,
    GenerationOutput,
    RepairTracker,
    StructuredResult,
)
from structgen.observability import metrics as obs_metrics
from structgen.recovery import RecoveryPipeline

logger = structlog.get_logger()


class StructuredGenerator:
    """Orchestrates resolver, invoker, recovery and audit logging for one request at a time.

    Holds no per-request state; concurrent generate() calls share only
    configuration and the injected collaborators.
    """

    def __init__(
        self,
        resolver: Optional[ModelResolver] = None,
        invoker: Optional[GenerationInvoker] = None,
        pipeline: Optional[RecoveryPipeline] = None,
        store: Optional[GenerationLogStore] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._resolver = resolver or ModelResolver(self._settings)
        self._invoker = invoker or GenerationInvoker(self._settings)
        self._pipeline = pipeline or RecoveryPipeline(self._resolver, self._invoker, self._settings)
        self._store = store

    async def generate(
        self,
        *,
        prompt: str,
        schema: type[BaseModel],
        context: GenerationLogContext,
        credentials: CredentialsLike = None,
        model_id: Optional[str] = None,
    ) -> GenerationOutput:
        model_id = model_id or self._settings.llm.generation_model
        context = replace(
            context,
            schema_name=context.schema_name or schema.__name__,
            model_id=model_id,
            prompt_text=prompt,
        )
        gen_logger = create_generation_logger(context, self._store, self._settings)
        deadline = Deadline(self._settings.llm.generation_deadline_seconds)
        started = time.perf_counter()
        log = logger.bind(
            generation_type=context.generation_type_value,
            schema=context.schema_name,
            model=model_id,
        )
        log.info("generation_started", prompt_chars=len(prompt))

        try:
            try:
                handle = self._resolver.resolve(model_id, credentials)
                tracker = RepairTracker()
                result = await self._invoker.invoke(
                    handle, prompt, schema, InvokeOptions(deadline=deadline), tracker=tracker
                )
                gen_logger.record_layer0(tracker)

                if isinstance(result, StructuredResult):
                    output = GenerationOutput(
                        value=result.value,
                        outcome=GenerationOutcome.SUCCESS_LAYER0,
                        model_id=model_id,
                    )
                elif isinstance(result, FatalFailure):
                    raise result.error
                else:
                    recovered = await self._pipeline.recover(
                        result,
                        schema,
                        credentials,
                        generation_logger=gen_logger,
                        deadline=deadline,
                    )
                    output = GenerationOutput(
                        value=recovered.value,
                        outcome=recovered.outcome,
                        model_id=model_id,
                        repack_model_id=recovered.repack_model_id,
                        issues=recovered.issues,
                    )
            except GenerationError as e:
                gen_logger.record_failure(str(e))
                log.warning("generation_failed", error_type=type(e).__name__, error=str(e)[:200])
                raise

            log.info(
                "generation_completed",
                outcome=output.outcome.value,
                repack_model=output.repack_model_id,
                duration_ms=int((time.perf_counter() - started) * 1000),
            )
            return output
        finally:
            outcome = gen_logger.resolve_outcome()
            await gen_logger.finalize()
            obs_metrics.record_generation_outcome(
                context.generation_type_value,
                outcome.value,
                time.perf_counter() - started,
            )
