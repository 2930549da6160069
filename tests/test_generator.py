"""End-to-end tests for StructuredGenerator: outcome, caller-visible errors and the audit row."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from structgen.config import Settings
from structgen.errors import PersistenceError, ProviderAuthError, ProviderTimeoutError, RecoveryExhaustedError
from structgen.generation_logger import GenerationLogContext
from structgen.generator import StructuredGenerator
from structgen.invoker import GenerationInvoker
from structgen.log_store import GenerationLogFilters, GenerationLogStore
from structgen.model_resolver import ModelResolver
from structgen.models import GenerationOutcome, WrapperType
from structgen.recovery import RecoveryPipeline
from tests.conftest import ConstrainedLesson, CourseCode, FakeChatModel, FakeModelFactory, Lesson, Section

_PROMPT = "Write a five minute lesson introducing fractions."
_ANTHROPIC = {"anthropic": "sk-ant"}
_PRIMARY = "claude-opus-4-6"
_REPACK = "claude-haiku-4-5-20251001"


@pytest.fixture
def generator(
    resolver: ModelResolver,
    invoker: GenerationInvoker,
    store: GenerationLogStore,
    settings: Settings,
) -> StructuredGenerator:
    return StructuredGenerator(resolver, invoker, store=store, settings=settings)


def _only_row(store: GenerationLogStore) -> dict:
    page = store.query(GenerationLogFilters())
    assert page.total == 1
    return store.get(page.logs[0]["id"]).to_dict()


class TestSuccess:
    @pytest.mark.asyncio
    async def test_mock_model_round_trip(
        self, generator: StructuredGenerator, store: GenerationLogStore, log_context: GenerationLogContext
    ) -> None:
        first = await generator.generate(prompt=_PROMPT, schema=Lesson, context=log_context, model_id="mock")
        assert first.outcome == GenerationOutcome.SUCCESS_LAYER0
        assert isinstance(first.value, Lesson)
        assert first.model_id == "mock"

        row = _only_row(store)
        assert row["outcome"] == "success_layer0"
        assert row["provider"] == "mock"
        assert row["schema_name"] == "Lesson"
        assert row["layer0_called"] is True
        assert row["layer1_called"] is False
        assert row["prompt_text"] is None
        assert row["prompt_hash"] is not None

        second = await generator.generate(prompt=_PROMPT, schema=Lesson, context=log_context, model_id="mock")
        assert second.value == first.value

    @pytest.mark.asyncio
    async def test_default_model_used(
        self,
        generator: StructuredGenerator,
        model_factory: FakeModelFactory,
        store: GenerationLogStore,
        log_context: GenerationLogContext,
    ) -> None:
        model_factory.models[_PRIMARY] = FakeChatModel(json.dumps({"title": "Fractions", "duration_minutes": 5}))
        output = await generator.generate(prompt=_PROMPT, schema=Lesson, context=log_context, credentials=_ANTHROPIC)
        assert output.model_id == _PRIMARY
        assert output.value == Lesson(title="Fractions", duration_minutes=5)
        assert _only_row(store)["model_id"] == _PRIMARY

    @pytest.mark.asyncio
    async def test_recovery_not_run_on_success(
        self,
        resolver: ModelResolver,
        invoker: GenerationInvoker,
        settings: Settings,
        log_context: GenerationLogContext,
    ) -> None:
        pipeline = MagicMock(spec=RecoveryPipeline)
        pipeline.recover = AsyncMock()
        generator = StructuredGenerator(resolver, invoker, pipeline, settings=settings)
        await generator.generate(prompt=_PROMPT, schema=Lesson, context=log_context, model_id="mock")
        pipeline.recover.assert_not_awaited()


class TestRecovery:
    @pytest.mark.asyncio
    async def test_numeric_string_repaired_locally(
        self,
        generator: StructuredGenerator,
        model_factory: FakeModelFactory,
        store: GenerationLogStore,
        log_context: GenerationLogContext,
    ) -> None:
        model_factory.models[_PRIMARY] = FakeChatModel(json.dumps({"title": "Fractions", "duration_minutes": "5"}))
        output = await generator.generate(prompt=_PROMPT, schema=Lesson, context=log_context, credentials=_ANTHROPIC)
        assert output.outcome == GenerationOutcome.REPAIRED_LAYER1
        assert output.value.duration_minutes == 5  # type: ignore[attr-defined]

        row = _only_row(store)
        assert row["outcome"] == "repaired_layer1"
        assert row["layer0_result"] == "failed"
        assert row["layer1_called"] is True
        assert row["layer1_success"] is True
        assert row["layer2_called"] is False
        assert any(e["path"] == "duration_minutes" for e in row["validation_errors"])
        assert row["prompt_text"] == _PROMPT

    @pytest.mark.asyncio
    async def test_wrapper_recorded(
        self,
        generator: StructuredGenerator,
        model_factory: FakeModelFactory,
        store: GenerationLogStore,
        log_context: GenerationLogContext,
    ) -> None:
        model_factory.models[_PRIMARY] = FakeChatModel('{"parameters": {"title": "Intro"}}')
        output = await generator.generate(prompt=_PROMPT, schema=Section, context=log_context, credentials=_ANTHROPIC)
        assert output.value == Section(title="Intro")
        row = _only_row(store)
        assert row["layer1_had_wrapper"] is True
        assert row["wrapper_type"] == WrapperType.PARAMETERS.value

    @pytest.mark.asyncio
    async def test_repack_by_cheapest_model(
        self,
        generator: StructuredGenerator,
        model_factory: FakeModelFactory,
        store: GenerationLogStore,
        log_context: GenerationLogContext,
    ) -> None:
        model_factory.models[_PRIMARY] = FakeChatModel("The lesson is called Fractions and lasts five minutes.")
        model_factory.models[_REPACK] = FakeChatModel(json.dumps({"title": "Fractions", "duration_minutes": 5}))
        output = await generator.generate(prompt=_PROMPT, schema=Lesson, context=log_context, credentials=_ANTHROPIC)
        assert output.outcome == GenerationOutcome.REPAIRED_LAYER2
        assert output.repack_model_id == _REPACK

        row = _only_row(store)
        assert row["outcome"] == "repaired_layer2"
        assert row["layer1_success"] is False
        assert row["layer2_called"] is True
        assert row["layer2_success"] is True
        assert row["layer2_model_id"] == _REPACK
        assert row["model_id"] == _PRIMARY

    @pytest.mark.asyncio
    async def test_exhaustion_surfaces_primary_error(
        self,
        generator: StructuredGenerator,
        model_factory: FakeModelFactory,
        store: GenerationLogStore,
        log_context: GenerationLogContext,
    ) -> None:
        model_factory.models[_PRIMARY] = FakeChatModel("I cannot help with that.")
        model_factory.models[_REPACK] = FakeChatModel("Neither can I.")
        with pytest.raises(RecoveryExhaustedError) as exc_info:
            await generator.generate(prompt=_PROMPT, schema=Lesson, context=log_context, credentials=_ANTHROPIC)
        assert str(exc_info.value).startswith("No object generated")

        row = _only_row(store)
        assert row["outcome"] == "failed"
        assert row["error_message"] == str(exc_info.value)
        assert row["layer2_called"] is True
        assert row["layer2_success"] is False
        assert row["prompt_text"] == _PROMPT
        assert row["raw_output_text"] == "I cannot help with that."


class TestFatal:
    @pytest.mark.asyncio
    async def test_missing_key_logged_as_not_run(
        self, generator: StructuredGenerator, store: GenerationLogStore, log_context: GenerationLogContext
    ) -> None:
        with pytest.raises(ProviderAuthError):
            await generator.generate(
                prompt=_PROMPT, schema=Lesson, context=log_context, credentials={"openai": "k"}, model_id=_PRIMARY
            )
        row = _only_row(store)
        assert row["outcome"] == "failed"
        assert row["layer0_called"] is False
        assert row["layer0_result"] == "not_run"
        assert row["error_message"]

    @pytest.mark.asyncio
    async def test_provider_auth_error_skips_recovery(
        self,
        generator: StructuredGenerator,
        model_factory: FakeModelFactory,
        store: GenerationLogStore,
        log_context: GenerationLogContext,
    ) -> None:
        model_factory.models[_PRIMARY] = FakeChatModel(Exception("401 unauthorized"))
        with pytest.raises(ProviderAuthError):
            await generator.generate(prompt=_PROMPT, schema=Lesson, context=log_context, credentials=_ANTHROPIC)
        row = _only_row(store)
        assert row["layer0_result"] == "failed"
        assert row["layer1_called"] is False
        assert row["layer2_called"] is False


@pytest.mark.asyncio
async def test_store_failure_does_not_affect_result(
    resolver: ModelResolver, invoker: GenerationInvoker, settings: Settings, log_context: GenerationLogContext
) -> None:
    broken = MagicMock(spec=GenerationLogStore)
    broken.add.side_effect = PersistenceError("disk full")
    generator = StructuredGenerator(resolver, invoker, store=broken, settings=settings)
    output = await generator.generate(prompt=_PROMPT, schema=Lesson, context=log_context, model_id="mock")
    assert output.outcome == GenerationOutcome.SUCCESS_LAYER0
    broken.add.assert_called_once()


class TestMockConstraints:
    @pytest.mark.asyncio
    async def test_constrained_schema_succeeds(
        self, generator: StructuredGenerator, store: GenerationLogStore, log_context: GenerationLogContext
    ) -> None:
        output = await generator.generate(prompt=_PROMPT, schema=ConstrainedLesson, context=log_context, model_id="mock")
        assert output.outcome == GenerationOutcome.SUCCESS_LAYER0
        assert isinstance(output.value, ConstrainedLesson)
        assert _only_row(store)["outcome"] == "success_layer0"

    @pytest.mark.asyncio
    async def test_unmeetable_schema_raises_generation_error(
        self, generator: StructuredGenerator, store: GenerationLogStore, log_context: GenerationLogContext
    ) -> None:
        with pytest.raises(RecoveryExhaustedError):
            await generator.generate(prompt=_PROMPT, schema=CourseCode, context=log_context, model_id="mock")
        row = _only_row(store)
        assert row["outcome"] == "failed"
        assert row["layer1_called"] is True


@pytest.mark.asyncio
async def test_repack_timeout_recorded_on_row(
    resolver: ModelResolver,
    invoker: GenerationInvoker,
    model_factory: FakeModelFactory,
    store: GenerationLogStore,
    settings: Settings,
    log_context: GenerationLogContext,
) -> None:
    short = settings.model_copy(
        update={"llm": settings.llm.model_copy(update={"generation_deadline_seconds": 0.5})}
    )
    generator = StructuredGenerator(resolver, invoker, store=store, settings=short)
    model_factory.models[_PRIMARY] = FakeChatModel("not json at all")
    model_factory.models[_REPACK] = FakeChatModel(2.0, json.dumps({"title": "Fractions", "duration_minutes": 5}))

    with pytest.raises(ProviderTimeoutError):
        await generator.generate(prompt=_PROMPT, schema=Lesson, context=log_context, credentials=_ANTHROPIC)

    row = _only_row(store)
    assert row["outcome"] == "failed"
    assert row["layer1_called"] is True
    assert row["layer2_called"] is True
    assert row["layer2_success"] is False
    assert row["layer2_model_id"] == _REPACK
    assert "deadline" in row["error_message"]
    assert any(e["code"] == "repack_timeout" for e in row["validation_errors"])
