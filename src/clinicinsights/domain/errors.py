"""
Pipeline error taxonomy and recovery strategies.

Every failure inside a pipeline execution is normalized into a
PipelineServiceError carrying one ErrorCode; the code selects the
RecoveryStrategy the executor applies.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from ..core.exceptions import ClinicInsightsException, ModelRateLimitError


class ErrorCode(str, Enum):
    """Fixed error codes for pipeline failures."""

    CONTEXT_AGGREGATION_FAILED = "CONTEXT_001"
    CONTEXT_NOT_FOUND = "CONTEXT_002"
    INSUFFICIENT_CONTEXT = "CONTEXT_003"

    PROMPT_NOT_FOUND = "PROMPT_001"
    PROMPT_COMPILATION_FAILED = "PROMPT_002"
    PROMPT_TOO_LARGE = "PROMPT_003"

    LLM_TIMEOUT = "LLM_001"
    LLM_RATE_LIMIT = "LLM_002"
    LLM_INVALID_RESPONSE = "LLM_003"
    LLM_CONNECTION_ERROR = "LLM_004"

    OUTPUT_VALIDATION_FAILED = "VALIDATION_001"
    SCHEMA_MISMATCH = "VALIDATION_002"
    MISSING_REQUIRED_FIELDS = "VALIDATION_003"

    CACHE_ERROR = "SYSTEM_001"
    AUDIT_ERROR = "SYSTEM_002"
    CONFIG_ERROR = "SYSTEM_003"
    UNKNOWN_ERROR = "SYSTEM_999"


class RecoveryType(str, Enum):
    RETRY = "retry"
    FALLBACK = "fallback"
    QUEUE = "queue"
    FAIL = "fail"
    DEGRADE = "degrade"


class BackoffKind(str, Enum):
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class RecoveryStrategy:
    """Declared action for one error code."""

    type: RecoveryType
    max_attempts: int = 0
    backoff: BackoffKind = BackoffKind.LINEAR
    base_delay_ms: int = 0
    fallback_action: Optional[str] = None

    def delay_ms(self, attempt: int) -> int:
        """Delay before retry number ``attempt`` (1-based)."""
        if self.base_delay_ms <= 0:
            return 0
        attempt = max(attempt, 1)
        if self.backoff is BackoffKind.EXPONENTIAL:
            return self.base_delay_ms * (2 ** (attempt - 1))
        return self.base_delay_ms * attempt


_FAIL = RecoveryStrategy(RecoveryType.FAIL)

RECOVERY_STRATEGIES: Dict[ErrorCode, RecoveryStrategy] = {
    ErrorCode.CONTEXT_AGGREGATION_FAILED: RecoveryStrategy(
        RecoveryType.RETRY, max_attempts=2, backoff=BackoffKind.LINEAR, base_delay_ms=1000
    ),
    ErrorCode.CONTEXT_NOT_FOUND: _FAIL,
    ErrorCode.INSUFFICIENT_CONTEXT: _FAIL,
    ErrorCode.PROMPT_NOT_FOUND: _FAIL,
    ErrorCode.PROMPT_COMPILATION_FAILED: RecoveryStrategy(RecoveryType.RETRY, max_attempts=2),
    ErrorCode.PROMPT_TOO_LARGE: RecoveryStrategy(
        RecoveryType.FALLBACK, fallback_action="truncate_context"
    ),
    ErrorCode.LLM_TIMEOUT: RecoveryStrategy(
        RecoveryType.RETRY, max_attempts=3, backoff=BackoffKind.EXPONENTIAL, base_delay_ms=1000
    ),
    ErrorCode.LLM_RATE_LIMIT: RecoveryStrategy(
        RecoveryType.QUEUE, max_attempts=1, base_delay_ms=60000
    ),
    ErrorCode.LLM_INVALID_RESPONSE: RecoveryStrategy(RecoveryType.RETRY, max_attempts=2),
    ErrorCode.LLM_CONNECTION_ERROR: RecoveryStrategy(
        RecoveryType.RETRY, max_attempts=3, backoff=BackoffKind.EXPONENTIAL, base_delay_ms=2000
    ),
    ErrorCode.OUTPUT_VALIDATION_FAILED: RecoveryStrategy(
        RecoveryType.FALLBACK, fallback_action="use_default"
    ),
    ErrorCode.SCHEMA_MISMATCH: _FAIL,
    ErrorCode.MISSING_REQUIRED_FIELDS: RecoveryStrategy(RecoveryType.RETRY, max_attempts=2),
    ErrorCode.CACHE_ERROR: RecoveryStrategy(RecoveryType.DEGRADE),
    ErrorCode.AUDIT_ERROR: RecoveryStrategy(RecoveryType.DEGRADE),
    ErrorCode.CONFIG_ERROR: _FAIL,
    ErrorCode.UNKNOWN_ERROR: _FAIL,
}


def get_recovery_strategy(code: ErrorCode) -> RecoveryStrategy:
    return RECOVERY_STRATEGIES.get(code, _FAIL)


class PipelineServiceError(Exception):
    """Normalized pipeline failure returned to callers and written to audit."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        pipeline_type: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        retry_after_ms: Optional[int] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.pipeline_type = pipeline_type
        self.details = details or {}
        self.retry_after_ms = retry_after_ms
        super().__init__(message)

    @property
    def strategy(self) -> RecoveryStrategy:
        return get_recovery_strategy(self.code)

    @property
    def recoverable(self) -> bool:
        return self.strategy.type in (RecoveryType.RETRY, RecoveryType.QUEUE, RecoveryType.FALLBACK)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "pipeline_type": self.pipeline_type,
            "details": self.details,
            "recoverable": self.recoverable,
            "retry_after_ms": self.retry_after_ms,
        }


_CODE_LOOKUP = {code.value: code for code in ErrorCode}
_CODE_LOOKUP.update(
    {
        "PROMPT_DEPRECATED": ErrorCode.PROMPT_NOT_FOUND,
        "PROMPT_VALIDATION_ERROR": ErrorCode.CONFIG_ERROR,
        "JSON_PARSE_ERROR": ErrorCode.OUTPUT_VALIDATION_FAILED,
    }
)


def normalize_error(error: BaseException, pipeline_type: Optional[str] = None) -> PipelineServiceError:
    """Classify any exception into a PipelineServiceError.

    Service exceptions carry their code; anything else is classified by the
    text of its message.
    """
    if isinstance(error, PipelineServiceError):
        if pipeline_type and not error.pipeline_type:
            error.pipeline_type = pipeline_type
        return error

    if isinstance(error, ClinicInsightsException) and error.error_code in _CODE_LOOKUP:
        retry_after = error.retry_after_ms if isinstance(error, ModelRateLimitError) else None
        return PipelineServiceError(
            _CODE_LOOKUP[error.error_code],
            error.message,
            pipeline_type=pipeline_type,
            details=dict(error.details),
            retry_after_ms=retry_after,
        )

    message = str(error) or error.__class__.__name__
    lowered = message.lower()
    details = {"original_error": error.__class__.__name__}

    if isinstance(error, TimeoutError) or "timeout" in lowered or "timed out" in lowered:
        code = ErrorCode.LLM_TIMEOUT
    elif "429" in lowered or "rate limit" in lowered:
        code = ErrorCode.LLM_RATE_LIMIT
    elif isinstance(error, ConnectionError) or "econnrefused" in lowered or "connection" in lowered:
        code = ErrorCode.LLM_CONNECTION_ERROR
    elif "json" in lowered or "parse" in lowered:
        code = ErrorCode.OUTPUT_VALIDATION_FAILED
    else:
        code = ErrorCode.UNKNOWN_ERROR

    return PipelineServiceError(code, message, pipeline_type=pipeline_type, details=details)
