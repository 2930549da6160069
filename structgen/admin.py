"""Admin surface over the generation audit log: list, detail and cleanup.

Every read runs the retention sweep first, so expired sensitive text is
never returned.
"""

from __future__ import annotations

from typing import Any, Optional

import structlog

from structgen.log_store import GenerationLogFilters, GenerationLogPage, GenerationLogStore
from structgen.retention import cleanup_expired

logger = structlog.get_logger()


class GenerationLogAdmin:
    def __init__(self, store: GenerationLogStore) -> None:
        self._store = store

    def list_logs(self, filters: Optional[GenerationLogFilters] = None) -> GenerationLogPage:
        cleanup_expired(self._store)
        page = self._store.query(filters or GenerationLogFilters())
        logger.debug("generation_logs_listed", total=page.total, returned=len(page.logs))
        return page

    def get_log(self, log_id: str) -> Optional[dict[str, Any]]:
        cleanup_expired(self._store)
        record = self._store.get(log_id)
        return record.to_dict() if record else None

    def cleanup(self) -> int:
        redacted = cleanup_expired(self._store)
        logger.info("generation_log_cleanup", redacted=redacted)
        return redacted
