"""Request-scoped tracing and bounded in-process metrics."""

from juchang_ai.observability.metrics import MetricPoint, MetricsBuffer
from juchang_ai.observability.trace import Span, Trace

__all__ = ["MetricPoint", "MetricsBuffer", "Span", "Trace"]
