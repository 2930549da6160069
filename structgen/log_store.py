"""
Persistence for the generation audit log (table ai_generation_log).

One row per generation attempt, written once by the generation logger and
later mutated once by the retention sweep. Rows are never deleted here.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, field_validator
from sqlalchemy import JSON, Boolean, DateTime, Engine, Integer, String, Text, create_engine, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from structgen.errors import PersistenceError
from structgen.models import UTC, utc_now

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200

# Columns holding sensitive text; excluded from list views
SENSITIVE_COLUMNS = ("raw_output_text", "prompt_text")


class Base(DeclarativeBase):
    pass


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on the way back; stored values are always UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _to_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)


class GenerationLogRecord(Base):
    """Audit row for one structured generation attempt."""

    __tablename__ = "ai_generation_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # Attribution
    generation_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    schema_name: Mapped[str] = mapped_column(String(128), nullable=False)
    model_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    course_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    lesson_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    outcome: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Layer 0
    layer0_called: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    layer0_result: Mapped[str] = mapped_column(String(16), nullable=False, default="not_run")
    layer0_repair_result: Mapped[str] = mapped_column(String(16), nullable=False, default="not_attempted")
    layer0_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Layer 1
    layer1_called: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    layer1_success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    layer1_had_wrapper: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    wrapper_type: Mapped[str] = mapped_column(String(16), nullable=False, default="none")

    # Layer 2
    layer2_called: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    layer2_success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    layer2_model_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # Output and errors
    raw_output_len: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    raw_output_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    raw_output_redacted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    validation_errors: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Prompt
    prompt_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    prompt_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    prompt_redacted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Retention
    sensitive_text_expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    sensitive_text_redacted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    language: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    difficulty: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)

    def to_dict(self) -> dict[str, Any]:
        """Every column, sensitive text included."""
        data: dict[str, Any] = {}
        for column in self.__table__.columns:
            value = getattr(self, column.key)
            if isinstance(value, datetime):
                value = _as_utc(value).isoformat()
            data[column.key] = value
        return data

    def to_summary(self) -> dict[str, Any]:
        """List-view shape: no raw output or prompt text."""
        data = self.to_dict()
        for key in SENSITIVE_COLUMNS:
            data.pop(key, None)
        return data

    def __repr__(self) -> str:
        return f"<GenerationLogRecord(id={self.id}, type='{self.generation_type}', outcome='{self.outcome}')>"


class GenerationLogFilters(BaseModel):
    """Admin list filters. Out-of-range paging values are clamped, not rejected."""

    generation_type: Optional[str] = None
    outcome: Optional[str] = None
    model_id: Optional[str] = None
    course_id: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    limit: int = DEFAULT_PAGE_SIZE
    offset: int = 0

    @field_validator("limit", mode="before")
    @classmethod
    def _clamp_limit(cls, value: Any) -> int:
        try:
            limit = int(value)
        except (TypeError, ValueError):
            return DEFAULT_PAGE_SIZE
        if limit == 0:
            return DEFAULT_PAGE_SIZE
        return min(max(limit, 1), MAX_PAGE_SIZE)

    @field_validator("offset", mode="before")
    @classmethod
    def _clamp_offset(cls, value: Any) -> int:
        try:
            return max(int(value), 0)
        except (TypeError, ValueError):
            return 0


@dataclass
class GenerationLogPage:
    logs: list[dict[str, Any]]
    total: int
    limit: int
    offset: int
    stats: dict[str, int] = field(default_factory=dict)


class GenerationLogStore:
    """Synchronous SQLAlchemy access to ai_generation_log."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str) -> "GenerationLogStore":
        kwargs: dict[str, Any] = {}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection, or every session sees an empty database
                kwargs["poolclass"] = StaticPool
        return cls(create_engine(url, **kwargs))

    @property
    def engine(self) -> Engine:
        return self._engine

    def create_schema(self) -> None:
        Base.metadata.create_all(self._engine)

    def add(self, values: dict[str, Any]) -> str:
        """Insert one row and return its id. Raises PersistenceError."""
        try:
            with self._sessions.begin() as session:
                record = GenerationLogRecord(**values)
                session.add(record)
                session.flush()
                return record.id
        except (SQLAlchemyError, TypeError) as e:
            raise PersistenceError(f"Failed to write generation log: {e}") from e

    def get(self, log_id: str) -> Optional[GenerationLogRecord]:
        with self._sessions() as session:
            return session.get(GenerationLogRecord, log_id)

    def query(self, filters: GenerationLogFilters) -> GenerationLogPage:
        conditions = []
        if filters.generation_type:
            conditions.append(GenerationLogRecord.generation_type == filters.generation_type)
        if filters.outcome:
            conditions.append(GenerationLogRecord.outcome == filters.outcome)
        if filters.model_id:
            conditions.append(GenerationLogRecord.model_id == filters.model_id)
        if filters.course_id:
            conditions.append(GenerationLogRecord.course_id == filters.course_id)
        if filters.date_from:
            conditions.append(GenerationLogRecord.created_at >= _to_utc(filters.date_from))
        if filters.date_to:
            conditions.append(GenerationLogRecord.created_at <= _to_utc(filters.date_to))

        with self._sessions() as session:
            rows = session.scalars(
                select(GenerationLogRecord)
                .where(*conditions)
                .order_by(GenerationLogRecord.created_at.desc())
                .limit(filters.limit)
                .offset(filters.offset)
            ).all()
            total = session.scalar(select(func.count()).select_from(GenerationLogRecord).where(*conditions)) or 0
            stats = {
                outcome: count
                for outcome, count in session.execute(
                    select(GenerationLogRecord.outcome, func.count())
                    .where(*conditions)
                    .group_by(GenerationLogRecord.outcome)
                ).all()
            }
        return GenerationLogPage(
            logs=[r.to_summary() for r in rows],
            total=total,
            limit=filters.limit,
            offset=filters.offset,
            stats=stats,
        )

    def redact_expired(self, now: datetime) -> int:
        """Null sensitive text on expired, unredacted rows in one conditional UPDATE.

        Concurrent callers cannot redact a row twice: the redacted_at IS NULL
        guard makes the second UPDATE match nothing.
        """
        now = _to_utc(now)
        stmt = (
            update(GenerationLogRecord)
            .where(
                GenerationLogRecord.sensitive_text_expires_at <= now,
                GenerationLogRecord.sensitive_text_redacted_at.is_(None),
            )
            .values(
                raw_output_text=None,
                prompt_text=None,
                raw_output_redacted=True,
                prompt_redacted=True,
                sensitive_text_redacted_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        with self._sessions.begin() as session:
            result = session.execute(stmt)
            return result.rowcount or 0
