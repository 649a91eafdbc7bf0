"""
Model invocation endpoint interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional, Type

from pydantic import BaseModel

from clinicinsights.core.cancellation import CancellationToken
from clinicinsights.domain.execution import TokenUsage


@dataclass
class ModelRequest:
    prompt: str
    model: str
    temperature: float
    max_tokens: int
    output_schema: Optional[Type[BaseModel]] = None
    system_prompt: Optional[str] = None
    pipeline_type: Optional[str] = None


@dataclass
class ModelResponse:
    """Raw text, or an object already conforming to ``output_schema``."""

    text: Optional[str] = None
    structured: Any = None
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: Optional[str] = None
    model: Optional[str] = None


class ModelEndpoint(ABC):
    """Abstract LLM endpoint."""

    @abstractmethod
    async def invoke(
        self,
        request: ModelRequest,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ModelResponse:
        """
        Run one completion.

        When ``request.output_schema`` is set the endpoint guarantees that
        ``ModelResponse.structured`` conforms to it.

        Raises:
            ModelTimeoutError, ModelRateLimitError, ModelConnectionError,
            ModelInvalidResponseError
        """
        pass

    async def health_check(self) -> bool:
        """Report whether the endpoint is reachable."""
        return True
