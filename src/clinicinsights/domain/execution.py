"""Execution records produced by the pipeline executor."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from ..core.cancellation import CancellationToken
from .errors import PipelineServiceError


class ExecutionState(str, Enum):
    """Stages of one pipeline execution, in order."""

    CACHE_CHECK = "cache_check"
    CONTEXT_AGGREGATION = "context_aggregation"
    PROMPT_COMPILATION = "prompt_compilation"
    MODEL_EXECUTION = "model_execution"
    OUTPUT_VALIDATION = "output_validation"
    CACHE_STORE = "cache_store"
    AUDIT_COMPLETE = "audit_complete"
    AUDIT_ERROR = "audit_error"


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_counts(cls, prompt_tokens: int, completion_tokens: int) -> "TokenUsage":
        return cls(prompt_tokens, completion_tokens, prompt_tokens + completion_tokens)


@dataclass
class AnalyzeOptions:
    """Per-call inputs for one pipeline execution."""

    patient_id: str
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    variables: Dict[str, Any] = field(default_factory=dict)
    purpose: Optional[str] = None
    prompt_version: Optional[str] = None
    skip_cache: bool = False
    cache_ttl: Optional[int] = None
    max_retries: int = 2
    cancel_token: Optional[CancellationToken] = None
    execution_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExecutionMetadata:
    execution_id: str
    pipeline_type: str
    prompt_id: str
    prompt_version: str
    model_used: str
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    latency: Dict[str, float] = field(default_factory=dict)
    cache_hit: bool = False
    retry_count: int = 0
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass
class PipelineResult:
    """Outcome of one pipeline invocation; never raised, always returned."""

    success: bool
    data: Any = None
    error: Optional[PipelineServiceError] = None
    metadata: Optional[ExecutionMetadata] = None
    execution_time_ms: float = 0.0
    cancelled: bool = False
    timestamp: datetime = field(default_factory=datetime.utcnow)

    @property
    def cache_hit(self) -> bool:
        return bool(self.metadata and self.metadata.cache_hit)

    def to_dict(self) -> Dict[str, Any]:
        data = self.data.model_dump() if hasattr(self.data, "model_dump") else self.data
        return {
            "success": self.success,
            "data": data,
            "error": self.error.to_dict() if self.error else None,
            "metadata": self.metadata.to_dict() if self.metadata else None,
            "execution_time_ms": round(self.execution_time_ms, 2),
            "cancelled": self.cancelled,
            "timestamp": self.timestamp.isoformat(),
        }
