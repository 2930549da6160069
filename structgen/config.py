"""
Centralized configuration for structured generation.

All settings are loaded from environment variables with sensible defaults.
Pydantic Settings provides validation and type coercion.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

# Load .env then .env.local (so .env.local overrides). Shell values win over both.
_repo_root = Path(__file__).resolve().parent.parent
load_dotenv(_repo_root / ".env")
_env_local = _repo_root / ".env.local"
if _env_local.exists():
    load_dotenv(_env_local, override=True)

DEFAULT_RETENTION_HOURS = 24.0


class LLMConfig(BaseSettings):
    """Provider API keys, default model and call limits."""

    anthropic_api_key: str = Field(default="", alias="ANTHROPIC_API_KEY")
    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")
    google_api_key: str = Field(default="", alias="GOOGLE_AI_API_KEY")

    generation_model: str = Field(default="claude-opus-4-6", alias="GENERATION_MODEL")

    # Shared generation params
    temperature: float = 0.1
    max_tokens: int = Field(default=16000, alias="GENERATION_MAX_TOKENS")

    # Overall budget for one generation request, primary call and repack included.
    # Serverless invocations are capped at 300s.
    generation_deadline_seconds: float = Field(default=300.0, alias="GENERATION_DEADLINE_SECONDS")

    # Transient provider errors (rate limit, 5xx, connection reset) only
    retry_attempts: int = Field(default=3, alias="LLM_RETRY_ATTEMPTS")
    retry_wait_multiplier: float = 1.0
    retry_wait_max: float = 20.0


class GenerationLogConfig(BaseSettings):
    """Audit log persistence, retention and sanitization."""

    database_url: str = Field(
        default="sqlite:///generation_logs.db",
        alias="GENERATION_LOG_DATABASE_URL",
        description="SQLAlchemy URL of the relational store holding ai_generation_log.",
    )
    sensitive_ttl_hours: float = Field(
        default=DEFAULT_RETENTION_HOURS,
        alias="AI_LOG_SENSITIVE_TTL_HOURS",
        description="Hours raw output and prompt text stay readable before redaction.",
    )
    raw_text_max_chars: int = 200 * 1024
    inline_max_chars: int = 800
    prompt_max_chars: int = 1200
    store_prompt_on_success: bool = Field(default=False, alias="AI_LOG_STORE_PROMPT_ON_SUCCESS")
    debug_dumps: bool = Field(default=False, alias="AI_DEBUG_DUMPS")
    debug_dump_dir: str = Field(default=".debug-dumps", alias="AI_DEBUG_DUMP_DIR")

    @field_validator("sensitive_ttl_hours", mode="before")
    @classmethod
    def _positive_ttl(cls, value: object) -> float:
        try:
            hours = float(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return DEFAULT_RETENTION_HOURS
        if hours != hours or hours <= 0 or hours == float("inf"):
            return DEFAULT_RETENTION_HOURS
        return hours


class ObservabilityConfig(BaseSettings):
    """Log level and Prometheus metrics."""

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    metrics_enabled: bool = Field(default=False, alias="PROMETHEUS_METRICS_ENABLED")
    metrics_port: int = Field(default=8000, alias="PROMETHEUS_METRICS_PORT")


class Settings(BaseSettings):
    """Root settings container. Access all config from one object."""

    llm: LLMConfig = Field(default_factory=LLMConfig)
    generation_log: GenerationLogConfig = Field(default_factory=GenerationLogConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Singleton settings instance. Cached after first call."""
    return Settings()
