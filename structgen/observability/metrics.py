"""
Prometheus metrics for structured generation.

All metrics are no-op when observability.metrics_enabled is False.
Exposes track_llm_call, record_generation_outcome, record_recovery_layer,
record_log_write_failure, record_redactions and start_server.
"""

from __future__ import annotations

import contextlib
import threading
import time
from typing import Any

from prometheus_client import (
    Counter,
    Histogram,
    start_http_server as prometheus_start_http_server,
)


def _enabled() -> bool:
    try:
        from structgen.config import get_settings
        return bool(get_settings().observability.metrics_enabled)
    except Exception:
        return False


# Lazy registry: only create metrics when enabled and first used
_metrics_created = False


def _ensure_metrics() -> bool:
    global _metrics_created
    if _metrics_created or not _enabled():
        return _metrics_created
    _create_metrics()
    _metrics_created = True
    return True


def _create_metrics() -> None:
    """Create all Prometheus metrics (called once when enabled)."""
    # Generation (business)
    _generation_outcomes = Counter(
        "generation_outcomes_total",
        "Structured generations by final outcome",
        ["generation_type", "outcome"],
    )
    _generation_duration = Histogram(
        "generation_duration_seconds",
        "End-to-end structured generation latency",
        ["generation_type", "outcome"],
        buckets=[1, 5, 15, 30, 60, 120, 300],
    )
    _recovery_layers = Counter(
        "recovery_layer_attempts_total",
        "Recovery layer attempts by result",
        ["layer", "result"],
    )

    # LLM (operational)
    _llm_duration = Histogram(
        "llm_call_duration_seconds",
        "LLM call latency",
        ["model", "purpose", "provider"],
        buckets=[0.5, 1, 2, 5, 10, 30, 60, 120],
    )
    _llm_errors = Counter(
        "llm_call_errors_total",
        "LLM call errors",
        ["model", "purpose", "error_type"],
    )

    # Audit log
    _log_write_failures = Counter(
        "generation_log_write_failures_total",
        "Audit rows that could not be persisted",
        [],
    )
    _redactions = Counter(
        "generation_log_redactions_total",
        "Audit rows whose sensitive text was redacted",
        [],
    )

    _registry = {
        "generation_outcomes": _generation_outcomes,
        "generation_duration": _generation_duration,
        "recovery_layers": _recovery_layers,
        "llm_duration": _llm_duration,
        "llm_errors": _llm_errors,
        "log_write_failures": _log_write_failures,
        "redactions": _redactions,
    }
    setattr(_MetricsCollector, "_registry", _registry)


class _MetricsCollector:
    """Collector that delegates to Prometheus when enabled, no-op otherwise."""

    _registry: dict[str, Any] = {}

    def _get(self, name: str) -> Any:
        _ensure_metrics()
        return self._registry.get(name)

    # --- LLM ---
    @contextlib.asynccontextmanager
    async def track_llm_call(self, model: str = "", purpose: str = "", provider: str = ""):
        m = self._get("llm_duration")
        start = time.perf_counter()
        try:
            yield
        except BaseException as e:
            err = self._get("llm_errors")
            if err:
                err.labels(
                    model=model or "unknown",
                    purpose=purpose or "unknown",
                    error_type=type(e).__name__,
                ).inc()
            raise
        finally:
            if m:
                m.labels(
                    model=model or "unknown",
                    purpose=purpose or "unknown",
                    provider=provider or "unknown",
                ).observe(time.perf_counter() - start)

    # --- Generation ---
    def record_generation_outcome(
        self,
        generation_type: str,
        outcome: str,
        duration_seconds: float = 0.0,
    ) -> None:
        c = self._get("generation_outcomes")
        d = self._get("generation_duration")
        if c:
            c.labels(generation_type=generation_type or "unknown", outcome=outcome or "unknown").inc()
        if d and duration_seconds >= 0:
            d.labels(generation_type=generation_type or "unknown", outcome=outcome or "unknown").observe(
                duration_seconds
            )

    def record_recovery_layer(self, layer: str, success: bool) -> None:
        c = self._get("recovery_layers")
        if c:
            c.labels(layer=layer, result="success" if success else "failure").inc()

    # --- Audit log ---
    def record_log_write_failure(self) -> None:
        c = self._get("log_write_failures")
        if c:
            c.inc()

    def record_redactions(self, count: int) -> None:
        c = self._get("redactions")
        if c and count > 0:
            c.inc(count)

    def start_server(self, port: int = 8000) -> None:
        if not _enabled():
            return
        _ensure_metrics()

        def run() -> None:
            try:
                prometheus_start_http_server(port, addr="0.0.0.0")
            except OSError:
                pass

        t = threading.Thread(target=run, daemon=True)
        t.start()


metrics = _MetricsCollector()
