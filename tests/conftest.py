"""Shared pytest fixtures for structgen tests."""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Annotated, Any, Optional, Union

import pytest
from langchain_core.messages import AIMessage
from pydantic import BaseModel, Field

from structgen.config import GenerationLogConfig, LLMConfig, ObservabilityConfig, Settings
from structgen.generation_logger import GenerationLogContext
from structgen.invoker import GenerationInvoker
from structgen.log_store import GenerationLogStore
from structgen.model_resolver import ModelResolver
from structgen.models import AIProvider, GenerationType


# ── Target schemas ──


class Section(BaseModel):
    title: str


class Lesson(BaseModel):
    title: str
    duration_minutes: int
    objectives: list[str] = Field(default_factory=list)
    summary: str = ""


class Difficulty(str, Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class QuizQuestion(BaseModel):
    prompt: str
    options: list[str]
    answer_index: int
    difficulty: Difficulty = Difficulty.BEGINNER


class Quiz(BaseModel):
    title: str
    questions: list[QuizQuestion]


class ConstrainedLesson(BaseModel):
    title: str = Field(min_length=20)
    slug: str = Field(max_length=4)
    duration_minutes: int = Field(ge=5, le=90)
    weight: float = Field(gt=0, lt=0.5)
    tags: list[Annotated[str, Field(min_length=8)]] = Field(min_length=2)


class CourseCode(BaseModel):
    code: str = Field(pattern=r"^[A-Z]{3}-\d{3}$")


# ── Fake chat model ──


class FakeChatModel:
    """Stands in for a LangChain chat model: replays queued responses in order.

    A queued BaseException is raised instead of returned; a float is a delay
    in seconds before the next queued response.
    """

    def __init__(self, *responses: Union[str, list, BaseException, float]) -> None:
        self.responses = list(responses)
        self.calls: list[list[Any]] = []
        self.bound: dict[str, Any] = {}

    def bind(self, **kwargs: Any) -> "FakeChatModel":
        self.bound.update(kwargs)
        return self

    async def ainvoke(self, messages: list[Any]) -> AIMessage:
        self.calls.append(messages)
        response = self.responses.pop(0)
        if isinstance(response, float):
            await asyncio.sleep(response)
            response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return AIMessage(content=response)


class FakeModelFactory:
    """chat_model_factory that hands out FakeChatModels by model id."""

    def __init__(self, models: Optional[dict[str, FakeChatModel]] = None) -> None:
        self.models = models or {}
        self.built: list[tuple[AIProvider, str]] = []

    def __call__(self, provider: AIProvider, model_id: str, api_key: str, settings: Settings) -> FakeChatModel:
        self.built.append((provider, model_id))
        return self.models[model_id]


# ── Fixtures ──


@pytest.fixture
def settings() -> Settings:
    """Settings with no environment keys, no retry waits and a short deadline."""
    llm = LLMConfig(retry_wait_multiplier=0.0, retry_wait_max=0.0).model_copy(
        update={
            "anthropic_api_key": "",
            "openai_api_key": "",
            "google_api_key": "",
            "retry_attempts": 3,
            "generation_deadline_seconds": 30.0,
        }
    )
    log_cfg = GenerationLogConfig().model_copy(
        update={
            "sensitive_ttl_hours": 24.0,
            "store_prompt_on_success": False,
            "debug_dumps": False,
        }
    )
    return Settings(llm=llm, generation_log=log_cfg, observability=ObservabilityConfig())


@pytest.fixture
def model_factory() -> FakeModelFactory:
    return FakeModelFactory()


@pytest.fixture
def resolver(settings: Settings, model_factory: FakeModelFactory) -> ModelResolver:
    return ModelResolver(settings, chat_model_factory=model_factory)


@pytest.fixture
def invoker(settings: Settings) -> GenerationInvoker:
    return GenerationInvoker(settings)


@pytest.fixture
def store() -> GenerationLogStore:
    """In-memory SQLite audit log, schema created."""
    s = GenerationLogStore.from_url("sqlite://")
    s.create_schema()
    return s


@pytest.fixture
def log_context() -> GenerationLogContext:
    return GenerationLogContext(
        generation_type=GenerationType.LESSON,
        user_id="user-1",
        course_id="course-1",
        lesson_id="lesson-1",
        language="en",
        difficulty="beginner",
    )
