"""
Exception handling for Clinic-Insights.

This module provides the exception classes raised by the pipeline engine
and its collaborators. Every exception carries a stable error code so that
the executor can normalize it into a recovery strategy.
"""

from typing import Any, Dict, List, Optional


class ClinicInsightsException(Exception):
    """Base exception class for Clinic-Insights."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(ClinicInsightsException):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, "SYSTEM_003", details)


class PromptValidationError(ClinicInsightsException):
    """Raised when a prompt template fails registration checks."""

    def __init__(self, template_id: str, errors: List[str]) -> None:
        self.errors = errors
        message = f"Prompt template '{template_id}' is invalid: " + "; ".join(errors)
        super().__init__(message, "PROMPT_VALIDATION_ERROR", {"errors": errors})


class PromptNotFoundError(ClinicInsightsException):
    """Raised when a prompt id or version is not registered."""

    def __init__(self, template_id: str, version: Optional[str] = None) -> None:
        if version:
            message = f"Prompt template '{template_id}' version '{version}' not found"
        else:
            message = f"Prompt template '{template_id}' not found"
        super().__init__(
            message, "PROMPT_001", {"template_id": template_id, "version": version}
        )


class PromptDeprecatedError(ClinicInsightsException):
    """Raised when resolution would return a deprecated template without opt-in."""

    def __init__(self, template_id: str, version: str) -> None:
        message = f"Prompt template '{template_id}' version '{version}' is deprecated"
        super().__init__(
            message,
            "PROMPT_DEPRECATED",
            {"template_id": template_id, "version": version},
        )


class PromptCompilationError(ClinicInsightsException):
    """Raised when a template cannot be rendered with the supplied variables."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, "PROMPT_002", details)


class PromptTooLargeError(ClinicInsightsException):
    """Raised when a compiled prompt exceeds the token limit."""

    def __init__(self, estimated_tokens: int, limit: int) -> None:
        message = f"Compiled prompt is too large: ~{estimated_tokens} tokens (limit {limit})"
        super().__init__(
            message,
            "PROMPT_003",
            {"estimated_tokens": estimated_tokens, "limit": limit},
        )


class JsonParseError(ClinicInsightsException):
    """Raised when no extraction strategy yields JSON."""

    MAX_RAW_LENGTH = 500

    def __init__(self, message: str, raw_response: str) -> None:
        if len(raw_response) > self.MAX_RAW_LENGTH:
            raw_response = raw_response[: self.MAX_RAW_LENGTH] + "..."
        self.raw_response = raw_response
        super().__init__(message, "JSON_PARSE_ERROR", {"raw_response": raw_response})


class OutputValidationError(ClinicInsightsException):
    """Raised when parsed model output does not match the pipeline schema."""

    def __init__(
        self,
        message: str,
        pipeline_type: Optional[str] = None,
        parse_error: Optional[str] = None,
        partial_data: Optional[Dict[str, Any]] = None,
        raw_response: Optional[str] = None,
    ) -> None:
        self.pipeline_type = pipeline_type
        self.partial_data = partial_data
        self.raw_response = raw_response
        super().__init__(
            message,
            "VALIDATION_001",
            {
                "pipeline_type": pipeline_type,
                "parse_error": parse_error,
                "partial_data": partial_data,
                "raw_response": raw_response,
            },
        )


class SchemaMismatchError(ClinicInsightsException):
    """Raised when model output has the wrong overall shape."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, "VALIDATION_002", details)


class ContextAggregationError(ClinicInsightsException):
    """Raised when patient context cannot be assembled."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, "CONTEXT_001", details)


class ContextNotFoundError(ClinicInsightsException):
    """Raised when no context exists for the patient."""

    def __init__(self, patient_id: str) -> None:
        message = f"No context found for patient '{patient_id}'"
        super().__init__(message, "CONTEXT_002", {"patient_id": patient_id})


class InsufficientContextError(ClinicInsightsException):
    """Raised when the available context is too thin for the purpose."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, "CONTEXT_003", details)


class ModelEndpointError(ClinicInsightsException):
    """Base class for model endpoint failures."""


class ModelTimeoutError(ModelEndpointError):
    """Raised when the model call times out."""

    def __init__(self, message: str = "Model request timed out", details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, "LLM_001", details)


class ModelRateLimitError(ModelEndpointError):
    """Raised when the model endpoint rejects the call with a rate limit."""

    def __init__(
        self,
        message: str = "Model rate limit exceeded",
        retry_after_ms: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.retry_after_ms = retry_after_ms
        super().__init__(message, "LLM_002", details)


class ModelInvalidResponseError(ModelEndpointError):
    """Raised when the model returns an empty or malformed response."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, "LLM_003", details)


class ModelConnectionError(ModelEndpointError):
    """Raised when the model endpoint cannot be reached."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, "LLM_004", details)


class CacheError(ClinicInsightsException):
    """Raised when there's a cache operation error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, "SYSTEM_001", details)


class AuditError(ClinicInsightsException):
    """Raised when there's an audit persistence error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, "SYSTEM_002", details)


class PipelineCancelledError(ClinicInsightsException):
    """Raised when an execution observes its cancellation token."""

    def __init__(self, execution_id: Optional[str] = None) -> None:
        message = "Pipeline execution was cancelled"
        super().__init__(message, "CANCELLED", {"execution_id": execution_id})
