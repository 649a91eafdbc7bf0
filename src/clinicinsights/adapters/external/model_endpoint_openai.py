"""
Azure OpenAI implementation of the model endpoint with telemetry.

Every call is traced, timed and recorded in the AI request metrics. SDK
errors are mapped onto the pipeline's model error taxonomy so the executor
can choose a recovery strategy.
"""

import json
import logging
import time
from typing import Any, Dict, List, Optional

import openai
from pydantic import ValidationError

from clinicinsights.application.ports.services.model_endpoint import (
    ModelEndpoint,
    ModelRequest,
    ModelResponse,
)
from clinicinsights.core.ai_client import AzureAIClient
from clinicinsights.core.cancellation import CancellationToken
from clinicinsights.core.exceptions import (
    ModelConnectionError,
    ModelInvalidResponseError,
    ModelRateLimitError,
    ModelTimeoutError,
)
from clinicinsights.domain.execution import TokenUsage
from clinicinsights.observability.metrics import record_ai_request
from clinicinsights.observability.tracing import (
    add_span_attribute,
    set_span_status,
    trace_operation,
)

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a clinical documentation assistant. Follow the instructions exactly "
    "and never invent clinical facts that are not present in the provided context."
)
JSON_SYSTEM_SUFFIX = " Respond with a single valid JSON object and nothing else."


def _retry_after_ms(error: openai.RateLimitError) -> Optional[int]:
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None) or {}
    value = headers.get("retry-after-ms") or headers.get("retry-after")
    if value is None:
        return None
    try:
        seconds_or_ms = float(value)
    except (TypeError, ValueError):
        return None
    if "retry-after-ms" in headers:
        return int(seconds_or_ms)
    return int(seconds_or_ms * 1000)


def map_openai_error(error: Exception) -> Exception:
    """Translate an openai SDK exception into a model endpoint error."""
    if isinstance(error, openai.APITimeoutError):
        return ModelTimeoutError(f"Model request timed out: {error}")
    if isinstance(error, openai.RateLimitError):
        return ModelRateLimitError(f"Model rate limit exceeded: {error}", _retry_after_ms(error))
    if isinstance(error, openai.APIConnectionError):
        return ModelConnectionError(f"Model endpoint unreachable: {error}")
    if isinstance(error, openai.InternalServerError):
        return ModelConnectionError(f"Model endpoint server error: {error}")
    if isinstance(error, openai.APIStatusError):
        return ModelInvalidResponseError(
            f"Model endpoint rejected the request: {error}",
            {"status_code": getattr(error, "status_code", None)},
        )
    return error


class AzureOpenAIModelEndpoint(ModelEndpoint):
    """ModelEndpoint backed by an AzureAIClient."""

    def __init__(self, client: AzureAIClient, system_prompt: str = DEFAULT_SYSTEM_PROMPT) -> None:
        self.client = client
        self.system_prompt = system_prompt

    def _system_prompt(self, request: ModelRequest) -> str:
        system_prompt = request.system_prompt or self.system_prompt
        if request.output_schema is not None:
            system_prompt += JSON_SYSTEM_SUFFIX
        return system_prompt

    async def _call(self, request: ModelRequest) -> Any:
        if request.output_schema is not None:
            return await self.client.chat_json(
                request.prompt,
                system_prompt=self._system_prompt(request),
                model=request.model,
                temperature=request.temperature,
                max_tokens=request.max_tokens,
            )
        messages: List[Dict[str, str]] = [
            {"role": "system", "content": self._system_prompt(request)},
            {"role": "user", "content": request.prompt},
        ]
        return await self.client.chat(
            messages,
            model=request.model,
            temperature=request.temperature,
            max_tokens=request.max_tokens,
        )

    @staticmethod
    def _structured(request: ModelRequest, text: str) -> Any:
        try:
            payload = json.loads(text)
        except ValueError as e:
            raise ModelInvalidResponseError(
                f"Structured output is not valid JSON: {e}", {"preview": text[:200]}
            )
        try:
            return request.output_schema.model_validate(payload)
        except ValidationError as e:
            raise ModelInvalidResponseError(
                f"Structured output does not match {request.output_schema.__name__}",
                {"errors": e.errors(include_url=False)[:10]},
            )

    async def invoke(
        self,
        request: ModelRequest,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ModelResponse:
        start_time = time.perf_counter()

        with trace_operation(
            "llm_call",
            {
                "llm.pipeline_type": request.pipeline_type,
                "llm.model": request.model,
                "llm.structured": request.output_schema is not None,
            },
        ) as span:
            try:
                if cancel_token is not None:
                    raw = await cancel_token.run(self._call(request))
                else:
                    raw = await self._call(request)

                if not raw.choices:
                    raise ModelInvalidResponseError("Model returned no choices")
                choice = raw.choices[0]
                text = choice.message.content or ""
                usage = getattr(raw, "usage", None)
                token_usage = TokenUsage.from_counts(
                    getattr(usage, "prompt_tokens", 0) or 0,
                    getattr(usage, "completion_tokens", 0) or 0,
                )
                structured = self._structured(request, text) if request.output_schema is not None else None
            except openai.OpenAIError as e:
                error = map_openai_error(e)
                self._record_failure(span, request, start_time, error)
                raise error from e
            except Exception as e:
                self._record_failure(span, request, start_time, e)
                raise

            latency_ms = (time.perf_counter() - start_time) * 1000.0
            if span:
                add_span_attribute(span, "llm.latency_ms", latency_ms)
                add_span_attribute(span, "llm.tokens", token_usage.total_tokens)
                set_span_status(span, success=True)
            record_ai_request(request.model, latency_ms, token_usage.total_tokens, success=True)

            logger.info(
                f"LLM call completed: pipeline={request.pipeline_type} model={request.model} "
                f"tokens={token_usage.total_tokens} latency_ms={latency_ms:.2f}"
            )

            return ModelResponse(
                text=text,
                structured=structured,
                token_usage=token_usage,
                finish_reason=getattr(choice, "finish_reason", None),
                model=getattr(raw, "model", None) or request.model,
            )

    @staticmethod
    def _record_failure(span, request: ModelRequest, start_time: float, error: Exception) -> None:
        latency_ms = (time.perf_counter() - start_time) * 1000.0
        if span:
            add_span_attribute(span, "llm.latency_ms", latency_ms)
            add_span_attribute(span, "llm.error", str(error)[:200])
            set_span_status(span, success=False, error_message=str(error))
        record_ai_request(request.model, latency_ms, 0, success=False)
        logger.error(
            f"LLM call failed: pipeline={request.pipeline_type} model={request.model} error={str(error)}"
        )

    async def health_check(self) -> bool:
        return bool(self.client.deployment_name)
