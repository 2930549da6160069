"""Retention window for sensitive audit text and the redaction sweep."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

import structlog

from structgen.config import Settings, get_settings
from structgen.log_store import GenerationLogStore
from structgen.models import utc_now
from structgen.observability import metrics as obs_metrics

logger = structlog.get_logger()


def get_retention_hours(settings: Optional[Settings] = None) -> float:
    return (settings or get_settings()).generation_log.sensitive_ttl_hours


def get_sensitive_text_expiry(from_: Optional[datetime] = None, settings: Optional[Settings] = None) -> datetime:
    """When raw output and prompt text recorded at from_ stop being readable."""
    start = from_ or utc_now()
    return start + timedelta(hours=get_retention_hours(settings))


def cleanup_expired(store: GenerationLogStore, now: Optional[datetime] = None) -> int:
    """Redact sensitive text of every expired row. Returns the number of rows redacted."""
    now = now or utc_now()
    count = store.redact_expired(now)
    obs_metrics.record_redactions(count)
    if count:
        logger.info("generation_log_redacted", rows=count, now=now.isoformat())
    return count
