"""
Custom metrics for Clinic-Insights using OpenTelemetry.

Provides counters and histograms for model calls, pipeline executions and cache traffic.
"""
import logging
from typing import Optional

from opentelemetry import metrics
from opentelemetry.metrics import Counter, Histogram

logger = logging.getLogger(__name__)

meter = metrics.get_meter("clinicinsights")

# Initialize custom metrics (lazy initialization)
_metrics_initialized = False
_ai_request_counter: Optional[Counter] = None
_ai_latency_histogram: Optional[Histogram] = None
_ai_token_counter: Optional[Counter] = None
_pipeline_counter: Optional[Counter] = None
_pipeline_latency_histogram: Optional[Histogram] = None
_cache_event_counter: Optional[Counter] = None
_error_counter: Optional[Counter] = None


def _initialize_metrics():
    """Initialize custom metrics instruments."""
    global _metrics_initialized, _ai_request_counter, _ai_latency_histogram
    global _ai_token_counter, _pipeline_counter, _pipeline_latency_histogram
    global _cache_event_counter, _error_counter

    if _metrics_initialized:
        return

    _ai_request_counter = meter.create_counter(
        name="clinicinsights.ai.requests",
        description="Total number of model endpoint requests",
        unit="1",
    )
    _ai_latency_histogram = meter.create_histogram(
        name="clinicinsights.ai.latency",
        description="Model endpoint request latency in milliseconds",
        unit="ms",
    )
    _ai_token_counter = meter.create_counter(
        name="clinicinsights.ai.tokens",
        description="Total tokens used in model requests",
        unit="1",
    )
    _pipeline_counter = meter.create_counter(
        name="clinicinsights.pipeline.executions",
        description="Total pipeline executions",
        unit="1",
    )
    _pipeline_latency_histogram = meter.create_histogram(
        name="clinicinsights.pipeline.latency",
        description="End-to-end pipeline latency in milliseconds",
        unit="ms",
    )
    _cache_event_counter = meter.create_counter(
        name="clinicinsights.cache.events",
        description="Cache hits, misses, sets and evictions",
        unit="1",
    )
    _error_counter = meter.create_counter(
        name="clinicinsights.errors",
        description="Total application errors",
        unit="1",
    )

    _metrics_initialized = True
    logger.debug("Custom metrics initialized")


def record_ai_request(model: str, latency_ms: float, tokens: int, success: bool = True):
    """
    Record a model endpoint request metric.

    Args:
        model: Model or deployment name
        latency_ms: Request latency in milliseconds
        tokens: Total tokens used
        success: Whether the request succeeded
    """
    _initialize_metrics()
    _ai_request_counter.add(1, {"model": model, "status": "success" if success else "error"})
    _ai_latency_histogram.record(latency_ms, {"model": model})
    if tokens:
        _ai_token_counter.add(tokens, {"model": model})
    if not success:
        _error_counter.add(1, {"type": "ai_request", "model": model})


def record_pipeline_execution(pipeline_type: str, duration_ms: float, success: bool, cache_hit: bool = False):
    """Record one finished pipeline execution."""
    _initialize_metrics()
    attributes = {
        "pipeline_type": pipeline_type,
        "status": "success" if success else "error",
        "cache_hit": str(cache_hit).lower(),
    }
    _pipeline_counter.add(1, attributes)
    _pipeline_latency_histogram.record(duration_ms, {"pipeline_type": pipeline_type})


def record_cache_event(event: str, pipeline_type: Optional[str] = None):
    """Record a cache event (hit, miss, set, evict, expire, l2_error)."""
    _initialize_metrics()
    attributes = {"event": event}
    if pipeline_type:
        attributes["pipeline_type"] = pipeline_type
    _cache_event_counter.add(1, attributes)


def record_error(error_type: str, error_message: Optional[str] = None):
    """
    Record an application error.

    Args:
        error_type: Type of error (e.g., "LLM_001", "SYSTEM_002")
        error_message: Optional error message
    """
    _initialize_metrics()
    attributes = {"type": error_type}
    if error_message:
        attributes["message"] = error_message[:100]
    _error_counter.add(1, attributes)
