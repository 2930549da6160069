"""Tests for the model resolver: provider inference, credentials, cheapest repack model."""

import json

import pytest

from structgen.config import Settings
from structgen.errors import ProviderAuthError, UnknownModelError
from structgen.model_resolver import (
    MODEL_REGISTRY,
    REPACK_MODEL_PREFERENCE,
    ModelResolver,
    credentials_from_headers,
    get_provider_for_model,
    is_reasoning_model,
)
from structgen.models import AIProvider, ProviderCredentials
from tests.conftest import FakeChatModel, FakeModelFactory


@pytest.mark.parametrize(
    "model_id,provider",
    [
        ("claude-haiku-4-5-20251001", AIProvider.ANTHROPIC),
        ("claude-some-future-model", AIProvider.ANTHROPIC),
        ("gpt-5.2", AIProvider.OPENAI),
        ("o3-mini", AIProvider.OPENAI),
        ("gemini-2.5-flash", AIProvider.GOOGLE),
        ("mock", AIProvider.MOCK),
    ],
)
def test_provider_inferred_from_model_id(model_id: str, provider: AIProvider) -> None:
    assert get_provider_for_model(model_id) == provider


def test_unknown_model_raises() -> None:
    with pytest.raises(UnknownModelError):
        get_provider_for_model("llama-3-70b")


def test_unknown_model_is_an_auth_error(resolver: ModelResolver) -> None:
    with pytest.raises(ProviderAuthError):
        resolver.resolve("llama-3-70b", {"anthropic": "k"})


def test_reasoning_models_detected() -> None:
    assert is_reasoning_model("o3-mini")
    assert is_reasoning_model("gemini-2.5-pro")
    assert not is_reasoning_model("gpt-5-mini")


def test_registry_and_preference_agree() -> None:
    registered = {m.id for m in MODEL_REGISTRY}
    assert set(REPACK_MODEL_PREFERENCE) <= registered


def test_preference_follows_registry_cost() -> None:
    costs = {m.id: m.input_cost_per_1k + m.output_cost_per_1k for m in MODEL_REGISTRY}
    ranked = [costs[model_id] for model_id in REPACK_MODEL_PREFERENCE]
    assert ranked == sorted(ranked)
    assert REPACK_MODEL_PREFERENCE[0] == "gpt-5-mini"


class TestResolve:
    def test_missing_key_raises_auth_error(self, resolver: ModelResolver) -> None:
        with pytest.raises(ProviderAuthError) as exc_info:
            resolver.resolve("claude-haiku-4-5-20251001", {"openai": "k"})
        assert exc_info.value.provider == "anthropic"

    def test_blank_key_counts_as_missing(self, resolver: ModelResolver) -> None:
        with pytest.raises(ProviderAuthError):
            resolver.resolve("gpt-5-mini", {"openai": "   "})

    def test_resolves_with_key(self, resolver: ModelResolver) -> None:
        handle = resolver.resolve("gpt-5-mini", ProviderCredentials(openai="sk-test"))
        assert handle.provider == AIProvider.OPENAI
        assert handle.api_key == "sk-test"
        assert not handle.is_mock

    def test_mock_needs_no_credentials(self, resolver: ModelResolver) -> None:
        handle = resolver.resolve("mock", None)
        assert handle.is_mock

    def test_chat_model_built_lazily_once(self, settings: Settings) -> None:
        factory = FakeModelFactory({"gpt-5-mini": FakeChatModel()})
        resolver = ModelResolver(settings, chat_model_factory=factory)
        handle = resolver.resolve("gpt-5-mini", {"openai": "k"})
        assert factory.built == []
        first = handle.chat_model
        second = handle.chat_model
        assert first is second
        assert factory.built == [(AIProvider.OPENAI, "gpt-5-mini")]


class TestCheapestAvailable:
    def test_no_credentials_returns_none(self, resolver: ModelResolver) -> None:
        assert resolver.cheapest_available({}) is None
        assert resolver.cheapest_available(None) is None

    def test_openai_only_returns_openai_handle(self, resolver: ModelResolver) -> None:
        handle = resolver.cheapest_available({"openai": "k"})
        assert handle is not None
        assert handle.provider == AIProvider.OPENAI
        assert handle.model_id == "gpt-5-mini"

    def test_prefers_cheapest_across_providers(self, resolver: ModelResolver) -> None:
        handle = resolver.cheapest_available({"openai": "k", "anthropic": "k", "google": "k"})
        assert handle is not None
        assert handle.model_id == REPACK_MODEL_PREFERENCE[0]

    def test_cheaper_provider_beats_anthropic(self, resolver: ModelResolver) -> None:
        handle = resolver.cheapest_available({"anthropic": "k", "google": "k"})
        assert handle is not None
        assert handle.model_id == "gemini-2.5-flash"

    def test_has_any_credential(self, resolver: ModelResolver) -> None:
        assert not resolver.has_any_credential({})
        assert not resolver.has_any_credential({"google": ""})
        assert resolver.has_any_credential({"google": "k"})

    def test_available_models_filtered_by_key(self, resolver: ModelResolver) -> None:
        models = resolver.available_models({"google": "k"})
        assert models
        assert all(m.provider == AIProvider.GOOGLE for m in models)


class TestCredentialsFromHeaders:
    def test_json_header(self, settings: Settings) -> None:
        creds = credentials_from_headers(
            {"X-API-Keys": json.dumps({"openai": "sk-o", "google": "g-k"})},
            settings,
        )
        assert creds.openai == "sk-o"
        assert creds.google == "g-k"
        assert creds.anthropic is None

    def test_legacy_header_is_anthropic(self, settings: Settings) -> None:
        creds = credentials_from_headers({"x-api-key": "sk-ant"}, settings)
        assert creds.anthropic == "sk-ant"
        assert creds.openai is None

    def test_unparseable_json_header_falls_back(self, settings: Settings) -> None:
        creds = credentials_from_headers({"x-api-keys": "{not json", "x-api-key": "sk-ant"}, settings)
        assert creds.anthropic == "sk-ant"

    def test_environment_fallback(self, settings: Settings) -> None:
        env_settings = settings.model_copy(
            update={"llm": settings.llm.model_copy(update={"google_api_key": "env-g"})}
        )
        creds = credentials_from_headers({}, env_settings)
        assert creds.google == "env-g"
