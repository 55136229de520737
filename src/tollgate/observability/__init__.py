"""Observability: OpenTelemetry tracing, dispatch metrics, and structured logging."""

from tollgate.observability.logging import StructuredLogger
from tollgate.observability.metrics import DispatchMetrics, SpendTracker
from tollgate.observability.tracing import TracingManager

__all__ = [
    "DispatchMetrics",
    "SpendTracker",
    "StructuredLogger",
    "TracingManager",
]
