"""
Core data models for structured generation.

Enums shared by the resolver, invoker, recovery pipeline and audit log, the
provider credential map, the Layer 0 repair tracker and the tagged result the
invoker returns instead of raising on malformed output.

Design principles:
  - Malformed output is a value (RecoverableFailure), not an exception
    inspected by shape
  - Wrapper shapes are a closed enum; a new shape is one member plus one matcher
  - Everything here is request-scoped; nothing is shared across requests
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Mapping, Optional, Union

from pydantic import BaseModel

from structgen.errors import GenerationError, NoStructuredOutputError

UTC = timezone.utc


def utc_now() -> datetime:
    """Current time, timezone-aware UTC."""
    return datetime.now(UTC)


# ═══════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════


class AIProvider(str, Enum):
    """Providers a model id can resolve to."""

    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GOOGLE = "google"
    MOCK = "mock"


class ModelTier(str, Enum):
    """Cost/quality tier of a registered model."""

    PREMIUM = "premium"
    BALANCED = "balanced"
    FAST = "fast"


class GenerationType(str, Enum):
    """What a generation request produces; used for audit attribution only."""

    COURSE = "course"
    LESSON = "lesson"
    QUIZ = "quiz"
    DIAGNOSTIC = "diagnostic"
    TRIVIA = "trivia"
    COMPLETION_SUMMARY = "completion_summary"
    COURSE_SUGGESTION = "course_suggestion"
    TRANSLATION = "translation"
    VISUALIZATION = "visualization"


class GenerationOutcome(str, Enum):
    """Exactly one per audit row."""

    SUCCESS_LAYER0 = "success_layer0"
    REPAIRED_LAYER1 = "repaired_layer1"
    REPAIRED_LAYER2 = "repaired_layer2"
    FAILED = "failed"


class Layer0Result(str, Enum):
    """Outcome of the primary structured call."""

    OK = "ok"
    FAILED = "failed"
    NOT_RUN = "not_run"


class RepairResult(str, Enum):
    """Outcome of the Layer 0 text-repair hook."""

    NOT_ATTEMPTED = "not_attempted"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class WrapperType(str, Enum):
    """Known tool-call envelope shapes around the real payload."""

    NONE = "none"
    PARAMETERS = "parameters"
    INPUT = "input"
    UNKNOWN = "unknown"


# ═══════════════════════════════════════════════════════════
# Credentials
# ═══════════════════════════════════════════════════════════


class ProviderCredentials(BaseModel):
    """API keys per provider. Empty strings count as missing."""

    anthropic: Optional[str] = None
    openai: Optional[str] = None
    google: Optional[str] = None

    def for_provider(self, provider: AIProvider) -> Optional[str]:
        if provider == AIProvider.MOCK:
            return None
        key = getattr(self, provider.value, None)
        return key.strip() if key and key.strip() else None

    def has_any(self) -> bool:
        return any(self.for_provider(p) for p in (AIProvider.ANTHROPIC, AIProvider.OPENAI, AIProvider.GOOGLE))

    @classmethod
    def coerce(cls, value: Union["ProviderCredentials", Mapping[str, Optional[str]], None]) -> "ProviderCredentials":
        """Accept a ProviderCredentials or a plain {provider: key} mapping."""
        if value is None:
            return cls()
        if isinstance(value, ProviderCredentials):
            return value
        known = {p.value for p in AIProvider if p != AIProvider.MOCK}
        return cls(**{k: v for k, v in value.items() if k in known})


# ═══════════════════════════════════════════════════════════
# Layer 0 tracker and invocation results
# ═══════════════════════════════════════════════════════════


@dataclass
class RepairTracker:
    """Observable record of what Layer 0 did during one provider call.

    The invoker writes it, the generation logger reads it; neither needs to
    know the other's internals.
    """

    layer0_result: Layer0Result = Layer0Result.NOT_RUN
    repair_called: bool = False
    repair_result: RepairResult = RepairResult.NOT_ATTEMPTED
    raw_text: Optional[str] = None
    raw_text_length: int = 0
    error: Optional[str] = None

    def capture_raw(self, text: str) -> None:
        self.raw_text = text
        self.raw_text_length = len(text)


@dataclass
class SchemaIssue:
    """One validation problem: dotted path, message and pydantic error code."""

    path: str
    message: str
    code: str = ""

    def as_dict(self) -> dict[str, str]:
        return {"path": self.path, "message": self.message, "code": self.code}


@dataclass
class StructuredResult:
    """Schema-valid object from the provider on the first try."""

    value: BaseModel
    raw_text: Optional[str]
    tracker: RepairTracker


@dataclass
class RecoverableFailure:
    """The provider answered with text that is not a schema-valid object."""

    error: NoStructuredOutputError
    raw_text: str
    tracker: RepairTracker


@dataclass
class FatalFailure:
    """Provider-level failure unrelated to output shape. Recovery never runs."""

    error: GenerationError
    tracker: RepairTracker


InvocationResult = Union[StructuredResult, RecoverableFailure, FatalFailure]


@dataclass
class GenerationOutput:
    """What route code receives: a valid object and how it was obtained."""

    value: BaseModel
    outcome: GenerationOutcome
    model_id: str
    repack_model_id: Optional[str] = None
    issues: list[SchemaIssue] = field(default_factory=list)

