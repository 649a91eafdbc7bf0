"""Audit domain records: execution entries, query filters and metrics."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class AuditTokenUsage:
    prompt: int = 0
    completion: int = 0
    total: int = 0
    estimated_cost: Optional[float] = None


@dataclass
class AuditRequest:
    prompt_template: Optional[str] = None
    prompt_version: Optional[str] = None
    variables: Optional[Dict[str, Any]] = None
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


@dataclass
class AuditResponse:
    success: bool = False
    data: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class AuditPerformance:
    total_duration_ms: float = 0.0
    context_aggregation_ms: float = 0.0
    prompt_compilation_ms: float = 0.0
    llm_execution_ms: float = 0.0
    validation_ms: float = 0.0
    cache_hit: bool = False
    token_usage: Optional[AuditTokenUsage] = None


@dataclass
class AuditEntry:
    """One pipeline execution as persisted to the audit store."""

    execution_id: str
    pipeline_type: str
    patient_id: Optional[str] = None
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)
    request: AuditRequest = field(default_factory=AuditRequest)
    response: AuditResponse = field(default_factory=AuditResponse)
    performance: AuditPerformance = field(default_factory=AuditPerformance)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_tokens(self) -> int:
        usage = self.performance.token_usage
        return usage.total if usage else 0

    def to_document(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "AuditEntry":
        performance = dict(document.get("performance") or {})
        token_usage = performance.pop("token_usage", None)
        return cls(
            execution_id=document["execution_id"],
            pipeline_type=document["pipeline_type"],
            patient_id=document.get("patient_id"),
            session_id=document.get("session_id"),
            user_id=document.get("user_id"),
            organization_id=document.get("organization_id"),
            timestamp=document.get("timestamp") or datetime.utcnow(),
            request=AuditRequest(**(document.get("request") or {})),
            response=AuditResponse(**(document.get("response") or {})),
            performance=AuditPerformance(
                token_usage=AuditTokenUsage(**token_usage) if token_usage else None,
                **performance,
            ),
            metadata=dict(document.get("metadata") or {}),
        )


@dataclass
class AuditFilter:
    """Query filter for audit entries; unset fields do not constrain."""

    execution_id: Optional[str] = None
    pipeline_type: Optional[str] = None
    patient_id: Optional[str] = None
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    success: Optional[bool] = None
    cache_hit: Optional[bool] = None
    limit: Optional[int] = 100  # None returns every match
    offset: int = 0
    order_by: str = "timestamp"
    order_direction: str = "desc"


@dataclass
class AuditQueryResult:
    entries: List[AuditEntry]
    total: int
    has_more: bool


@dataclass
class PipelineBreakdown:
    count: int = 0
    avg_duration_ms: float = 0.0
    success_rate: float = 0.0
    avg_tokens: float = 0.0


@dataclass
class ErrorSummary:
    code: str
    count: int
    message: str


@dataclass
class AuditMetrics:
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    cache_hits: int = 0
    average_duration_ms: float = 0.0
    p50_duration_ms: float = 0.0
    p95_duration_ms: float = 0.0
    p99_duration_ms: float = 0.0
    total_tokens: int = 0
    average_tokens: float = 0.0
    estimated_total_cost: float = 0.0
    pipeline_breakdown: Dict[str, PipelineBreakdown] = field(default_factory=dict)
    top_errors: List[ErrorSummary] = field(default_factory=list)


# Document paths used when ordering audit queries
SORT_FIELDS: Dict[str, str] = {
    "timestamp": "timestamp",
    "duration": "performance.total_duration_ms",
    "tokens": "performance.token_usage.total",
}
