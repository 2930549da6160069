"""Observability: Prometheus metrics for structured generation."""

from structgen.observability.metrics import metrics

__all__ = ["metrics"]
