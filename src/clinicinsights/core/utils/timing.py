"""
Performance timing utilities for the pipeline stages.
"""

import logging
import time
from contextlib import contextmanager
from typing import Any, Dict, Optional

logger = logging.getLogger("clinicinsights.timing")


class TimingContext:
    """Context manager for timing one pipeline stage in milliseconds."""

    def __init__(self, stage_name: str, logger_instance: Optional[logging.Logger] = None):
        self.stage_name = stage_name
        self.logger = logger_instance or logger
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None
        self.duration_ms: float = 0.0
        self.metadata: Dict[str, Any] = {}

    def __enter__(self):
        self.start_time = time.perf_counter()
        self.logger.debug(f"[TIMING START] {self.stage_name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.end_time = time.perf_counter()
        self.duration_ms = (self.end_time - self.start_time) * 1000.0

        log_parts = [
            f"[TIMING END] {self.stage_name}",
            f"Duration: {self.duration_ms:.1f}ms",
        ]
        if exc_type is not None:
            log_parts.append(f"Failed: {exc_type.__name__}")
        if self.metadata:
            meta_str = ", ".join(f"{k}={v}" for k, v in self.metadata.items())
            log_parts.append(f"Metadata: {meta_str}")

        self.logger.debug(" | ".join(log_parts))
        return False

    def add_metadata(self, **kwargs):
        """Add metadata to timing log."""
        self.metadata.update(kwargs)


class LatencyBreakdown:
    """Accumulates per-stage durations for one execution."""

    STAGES = ("context_aggregation", "prompt_compilation", "llm_execution", "validation")

    def __init__(self) -> None:
        self._started = time.perf_counter()
        self.stages: Dict[str, float] = {stage: 0.0 for stage in self.STAGES}

    @contextmanager
    def stage(self, name: str, logger_instance: Optional[logging.Logger] = None):
        with TimingContext(name, logger_instance) as ctx:
            try:
                yield ctx
            finally:
                # __exit__ has not run yet, so measure here
                self.stages[name] = self.stages.get(name, 0.0) + (
                    time.perf_counter() - ctx.start_time
                ) * 1000.0

    @property
    def total_ms(self) -> float:
        return (time.perf_counter() - self._started) * 1000.0

    def as_dict(self) -> Dict[str, float]:
        data = {f"{name}_ms": round(value, 2) for name, value in self.stages.items()}
        data["total_ms"] = round(self.total_ms, 2)
        return data


@contextmanager
def timing(stage_name: str, logger_instance: Optional[logging.Logger] = None):
    """Simple timing context manager."""
    with TimingContext(stage_name, logger_instance) as ctx:
        yield ctx
