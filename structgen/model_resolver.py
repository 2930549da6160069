"""
Model resolution: model id + provider credentials -> callable model handle.

Provides a clean abstraction over Claude, GPT and Gemini so that generation
code doesn't couple to any specific provider. Resolution is a pure lookup over
the static registry and the credentials handed in; the LangChain chat model
behind a handle is only constructed when the invoker first needs it.

Design decisions:
  - No module-level client singletons; the chat model factory is injectable
  - The cheapest-model ranking is static and only ever used for Layer 2 repack
  - "mock" resolves without credentials for tests and e2e runs
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Union

import structlog
from langchain_anthropic import ChatAnthropic
from langchain_core.language_models import BaseChatModel
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_openai import ChatOpenAI

from structgen.config import Settings, get_settings
from structgen.errors import ProviderAuthError, UnknownModelError
from structgen.models import AIProvider, ModelTier, ProviderCredentials

logger = structlog.get_logger()

MOCK_MODEL_ID = "mock"
DEFAULT_GENERATION_MODEL = "claude-opus-4-6"

CredentialsLike = Union[ProviderCredentials, Mapping[str, Optional[str]], None]


@dataclass(frozen=True)
class ModelInfo:
    """A registered model and its approximate cost per 1K tokens (USD)."""

    id: str
    label: str
    provider: AIProvider
    tier: ModelTier
    input_cost_per_1k: float
    output_cost_per_1k: float


MODEL_REGISTRY: tuple[ModelInfo, ...] = (
    # Anthropic
    ModelInfo("claude-opus-4-6", "Claude Opus 4.6", AIProvider.ANTHROPIC, ModelTier.PREMIUM, 0.015, 0.075),
    ModelInfo("claude-sonnet-4-5-20250929", "Claude Sonnet 4.5", AIProvider.ANTHROPIC, ModelTier.BALANCED, 0.003, 0.015),
    ModelInfo("claude-haiku-4-5-20251001", "Claude Haiku 4.5", AIProvider.ANTHROPIC, ModelTier.FAST, 0.001, 0.005),
    # OpenAI
    ModelInfo("gpt-5.2", "GPT-5.2", AIProvider.OPENAI, ModelTier.PREMIUM, 0.00175, 0.014),
    ModelInfo("gpt-5-mini", "GPT-5 Mini", AIProvider.OPENAI, ModelTier.FAST, 0.00025, 0.002),
    ModelInfo("o3-mini", "o3-mini", AIProvider.OPENAI, ModelTier.BALANCED, 0.0011, 0.0044),
    # Google
    ModelInfo("gemini-3-pro-preview", "Gemini 3 Pro", AIProvider.GOOGLE, ModelTier.PREMIUM, 0.002, 0.012),
    ModelInfo("gemini-2.5-pro", "Gemini 2.5 Pro", AIProvider.GOOGLE, ModelTier.BALANCED, 0.00125, 0.01),
    ModelInfo("gemini-2.5-flash", "Gemini 2.5 Flash", AIProvider.GOOGLE, ModelTier.FAST, 0.0003, 0.0025),
)

# Model preference for repack, cheapest first by combined input + output cost
REPACK_MODEL_PREFERENCE: tuple[str, ...] = tuple(
    m.id for m in sorted(MODEL_REGISTRY, key=lambda m: m.input_cost_per_1k + m.output_cost_per_1k)
)

_PREFIXES: tuple[tuple[str, AIProvider], ...] = (
    ("claude-", AIProvider.ANTHROPIC),
    ("gpt-", AIProvider.OPENAI),
    ("o1-", AIProvider.OPENAI),
    ("o3-", AIProvider.OPENAI),
    ("o4-", AIProvider.OPENAI),
    ("gemini-", AIProvider.GOOGLE),
)

# Model name substrings that identify reasoning / thinking models.
# These models do not support response_format=json_object.
_REASONING_MODEL_PATTERNS = ("o1", "o3", "o4", "gemini-2.5", "gemini-3")


def get_model_info(model_id: str) -> Optional[ModelInfo]:
    return next((m for m in MODEL_REGISTRY if m.id == model_id), None)


def get_provider_for_model(model_id: str) -> AIProvider:
    """Infer the provider from the model id prefix, then the registry."""
    if model_id == MOCK_MODEL_ID:
        return AIProvider.MOCK
    for prefix, provider in _PREFIXES:
        if model_id.startswith(prefix):
            return provider
    info = get_model_info(model_id)
    if info:
        return info.provider
    raise UnknownModelError(f"Unknown model provider for model: {model_id}")


def is_reasoning_model(model_id: str) -> bool:
    """Return True if the model is a reasoning/thinking model that should not use json_mode."""
    name = model_id.lower()
    return any(pat in name for pat in _REASONING_MODEL_PATTERNS)


def build_chat_model(provider: AIProvider, model_id: str, api_key: str, settings: Settings) -> BaseChatModel:
    """Construct the LangChain chat model for a provider. No network I/O."""
    if provider == AIProvider.ANTHROPIC:
        return ChatAnthropic(
            model=model_id,
            api_key=api_key,
            temperature=settings.llm.temperature,
            max_tokens=settings.llm.max_tokens,
        )
    if provider == AIProvider.OPENAI:
        return ChatOpenAI(
            model=model_id,
            api_key=api_key,
            temperature=settings.llm.temperature,
            max_tokens=settings.llm.max_tokens,
        )
    if provider == AIProvider.GOOGLE:
        return ChatGoogleGenerativeAI(
            model=model_id,
            google_api_key=api_key,
            temperature=settings.llm.temperature,
            max_output_tokens=settings.llm.max_tokens,
        )
    raise UnknownModelError(f"No chat model for provider: {provider.value}")


ChatModelFactory = Callable[[AIProvider, str, str, Settings], BaseChatModel]


@dataclass
class ModelHandle:
    """Callable model reference. The chat model is built lazily on first access."""

    model_id: str
    provider: AIProvider
    api_key: Optional[str] = field(default=None, repr=False)
    factory: Optional[ChatModelFactory] = field(default=None, repr=False, compare=False)
    settings: Optional[Settings] = field(default=None, repr=False, compare=False)
    _chat_model: Optional[BaseChatModel] = field(default=None, init=False, repr=False, compare=False)

    @property
    def is_mock(self) -> bool:
        return self.provider == AIProvider.MOCK

    @property
    def chat_model(self) -> BaseChatModel:
        if self._chat_model is None:
            if self.is_mock:
                raise UnknownModelError("The mock model has no chat model")
            factory = self.factory or build_chat_model
            self._chat_model = factory(self.provider, self.model_id, self.api_key or "", self.settings or get_settings())
        return self._chat_model


class ModelResolver:
    """Maps model ids and credentials to handles; ranks models by cost for repack."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        chat_model_factory: Optional[ChatModelFactory] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._factory = chat_model_factory or build_chat_model

    def resolve(self, model_id: str, credentials: CredentialsLike) -> ModelHandle:
        """Return a handle for model_id, or raise ProviderAuthError if its provider has no key."""
        provider = get_provider_for_model(model_id)
        if provider == AIProvider.MOCK:
            return ModelHandle(model_id=model_id, provider=provider)
        creds = ProviderCredentials.coerce(credentials)
        api_key = creds.for_provider(provider)
        if not api_key:
            raise ProviderAuthError(f"No API key configured for provider: {provider.value}", provider=provider.value)
        return ModelHandle(
            model_id=model_id,
            provider=provider,
            api_key=api_key,
            factory=self._factory,
            settings=self._settings,
        )

    def has_any_credential(self, credentials: CredentialsLike) -> bool:
        return ProviderCredentials.coerce(credentials).has_any()

    def cheapest_available(self, credentials: CredentialsLike) -> Optional[ModelHandle]:
        """Cheapest registered model whose provider has a key, or None."""
        creds = ProviderCredentials.coerce(credentials)
        for model_id in REPACK_MODEL_PREFERENCE:
            info = get_model_info(model_id)
            if info is None:
                continue
            if creds.for_provider(info.provider):
                return self.resolve(model_id, creds)
        return None

    def available_models(self, credentials: CredentialsLike) -> list[ModelInfo]:
        """Registered models usable with these credentials, in registry order."""
        creds = ProviderCredentials.coerce(credentials)
        return [m for m in MODEL_REGISTRY if creds.for_provider(m.provider)]


def credentials_from_settings(settings: Optional[Settings] = None) -> ProviderCredentials:
    settings = settings or get_settings()
    return ProviderCredentials(
        anthropic=settings.llm.anthropic_api_key or None,
        openai=settings.llm.openai_api_key or None,
        google=settings.llm.google_api_key or None,
    )


def credentials_from_headers(headers: Mapping[str, Any], settings: Optional[Settings] = None) -> ProviderCredentials:
    """Collect per-request keys from request headers, falling back to configured keys.

    Primary: JSON-encoded ``x-api-keys`` header. Legacy: a single ``x-api-key``
    header, treated as an Anthropic key.
    """
    env = credentials_from_settings(settings)
    lowered = {str(k).lower(): v for k, v in headers.items()}
    keys_header = lowered.get("x-api-keys")
    if keys_header:
        try:
            parsed = json.loads(keys_header)
        except (TypeError, ValueError):
            logger.warning("api_keys_header_unparseable")
            parsed = None
        if isinstance(parsed, dict):
            return ProviderCredentials(
                anthropic=parsed.get("anthropic") or env.anthropic,
                openai=parsed.get("openai") or env.openai,
                google=parsed.get("google") or env.google,
            )
    legacy = lowered.get("x-api-key")
    return ProviderCredentials(
        anthropic=legacy or env.anthropic,
        openai=env.openai,
        google=env.google,
    )
