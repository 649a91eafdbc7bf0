"""
Observability module for tracing and metrics.

Provides:
- Custom tracing spans for pipeline stages and model calls
- Custom metrics for model requests, pipeline executions and cache traffic
"""

from .tracing import (
    trace_operation,
    set_span_status,
    add_span_attribute,
)

from .metrics import (
    record_ai_request,
    record_pipeline_execution,
    record_cache_event,
    record_error,
)

__all__ = [
    # Tracing
    "trace_operation",
    "set_span_status",
    "add_span_attribute",
    # Metrics
    "record_ai_request",
    "record_pipeline_execution",
    "record_cache_event",
    "record_error",
]
