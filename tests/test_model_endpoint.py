"""
Azure OpenAI model endpoint tests against a stubbed client.
"""

import asyncio
from types import SimpleNamespace

import httpx
import openai
import pytest

from clinicinsights.adapters.external.model_endpoint_openai import (
    JSON_SYSTEM_SUFFIX,
    AzureOpenAIModelEndpoint,
    map_openai_error,
)
from clinicinsights.application.ports.services.model_endpoint import ModelRequest
from clinicinsights.core.ai_client import AzureAIClient
from clinicinsights.core.cancellation import CancellationToken
from clinicinsights.core.config import AzureOpenAISettings
from clinicinsights.core.exceptions import (
    ConfigurationError,
    ModelConnectionError,
    ModelInvalidResponseError,
    ModelRateLimitError,
    ModelTimeoutError,
    PipelineCancelledError,
)
from clinicinsights.domain.schemas import ChatWithChartOutput

REQUEST = httpx.Request("POST", "https://clinic.openai.azure.com/openai/deployments/chat/chat/completions")


def completion(content, prompt_tokens=10, completion_tokens=5):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content), finish_reason="stop")],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
        model="chat-deployment",
    )


class StubClient(AzureAIClient):
    """Real request shaping over a scripted ``chat``."""

    deployment_name = "chat-deployment"

    def __init__(self, outcome=None, delay=0.0):
        self._deployment_name = "chat-deployment"
        self.outcome = outcome
        self.delay = delay
        self.calls = []

    async def chat(self, messages, **kwargs):
        self.calls.append((messages, kwargs))
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome


def model_request(output_schema=None) -> ModelRequest:
    return ModelRequest(
        prompt="What did the patient say about sleep?",
        model="chat-deployment",
        temperature=0.2,
        max_tokens=500,
        output_schema=output_schema,
        pipeline_type="chat_with_chart",
    )


# -----------------------------------------------------------------------------
# Invocation
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_structured_request():
    client = StubClient(completion('{"answer": "About six hours."}'))
    endpoint = AzureOpenAIModelEndpoint(client)

    response = await endpoint.invoke(model_request(ChatWithChartOutput))

    assert isinstance(response.structured, ChatWithChartOutput)
    assert response.structured.answer == "About six hours."
    assert response.token_usage.total_tokens == 15
    assert response.finish_reason == "stop"

    messages, kwargs = client.calls[0]
    assert kwargs["response_format"] == {"type": "json_object"}
    assert kwargs["model"] == "chat-deployment"
    assert kwargs["max_tokens"] == 500
    assert messages[0]["content"].endswith(JSON_SYSTEM_SUFFIX)
    assert messages[1] == {"role": "user", "content": "What did the patient say about sleep?"}


@pytest.mark.asyncio
async def test_text_request():
    client = StubClient(completion("Plain answer"))
    response = await AzureOpenAIModelEndpoint(client).invoke(model_request())

    assert response.text == "Plain answer"
    assert response.structured is None
    assert "response_format" not in client.calls[0][1]


@pytest.mark.asyncio
async def test_chat_json_without_system_prompt():
    client = StubClient(completion("{}"))

    await client.chat_json("Summarize the session", model="chat-deployment", max_tokens=200)

    messages, kwargs = client.calls[0]
    assert messages == [{"role": "user", "content": "Summarize the session"}]
    assert kwargs["response_format"] == {"type": "json_object"}
    assert kwargs["temperature"] == 0.3
    assert kwargs["max_tokens"] == 200


@pytest.mark.asyncio
async def test_structured_output_must_be_json():
    endpoint = AzureOpenAIModelEndpoint(StubClient(completion("Sure, here you go")))
    with pytest.raises(ModelInvalidResponseError):
        await endpoint.invoke(model_request(ChatWithChartOutput))


@pytest.mark.asyncio
async def test_structured_output_must_match_the_schema():
    endpoint = AzureOpenAIModelEndpoint(StubClient(completion('{"reply": "no answer field"}')))
    with pytest.raises(ModelInvalidResponseError) as exc_info:
        await endpoint.invoke(model_request(ChatWithChartOutput))
    assert "ChatWithChartOutput" in exc_info.value.message


@pytest.mark.asyncio
async def test_empty_choices():
    endpoint = AzureOpenAIModelEndpoint(StubClient(SimpleNamespace(choices=[], usage=None, model=None)))
    with pytest.raises(ModelInvalidResponseError):
        await endpoint.invoke(model_request())


@pytest.mark.asyncio
async def test_sdk_errors_are_mapped_on_invoke():
    endpoint = AzureOpenAIModelEndpoint(StubClient(openai.APITimeoutError(request=REQUEST)))
    with pytest.raises(ModelTimeoutError):
        await endpoint.invoke(model_request())


@pytest.mark.asyncio
async def test_cancellation_abandons_the_call():
    endpoint = AzureOpenAIModelEndpoint(StubClient(completion("late"), delay=5))
    token = CancellationToken("exec-1")

    task = asyncio.create_task(endpoint.invoke(model_request(), cancel_token=token))
    await asyncio.sleep(0.01)
    token.cancel()

    with pytest.raises(PipelineCancelledError):
        await task


@pytest.mark.asyncio
async def test_health_check():
    assert await AzureOpenAIModelEndpoint(StubClient()).health_check() is True


# -----------------------------------------------------------------------------
# Error mapping
# -----------------------------------------------------------------------------


def test_rate_limit_retry_after_seconds():
    response = httpx.Response(429, headers={"retry-after": "2"}, request=REQUEST)
    error = map_openai_error(openai.RateLimitError("slow down", response=response, body=None))
    assert isinstance(error, ModelRateLimitError)
    assert error.retry_after_ms == 2000


def test_rate_limit_retry_after_ms():
    response = httpx.Response(429, headers={"retry-after-ms": "750"}, request=REQUEST)
    error = map_openai_error(openai.RateLimitError("slow down", response=response, body=None))
    assert error.retry_after_ms == 750


def test_rate_limit_without_header():
    response = httpx.Response(429, request=REQUEST)
    error = map_openai_error(openai.RateLimitError("slow down", response=response, body=None))
    assert error.retry_after_ms is None


def test_connection_and_server_errors():
    assert isinstance(map_openai_error(openai.APIConnectionError(request=REQUEST)), ModelConnectionError)
    server = openai.InternalServerError("boom", response=httpx.Response(500, request=REQUEST), body=None)
    assert isinstance(map_openai_error(server), ModelConnectionError)


def test_rejected_request():
    rejected = openai.BadRequestError("bad", response=httpx.Response(400, request=REQUEST), body=None)
    error = map_openai_error(rejected)
    assert isinstance(error, ModelInvalidResponseError)
    assert error.details["status_code"] == 400


def test_other_errors_pass_through():
    original = RuntimeError("unexpected")
    assert map_openai_error(original) is original


# -----------------------------------------------------------------------------
# Client configuration
# -----------------------------------------------------------------------------


def test_client_requires_endpoint_and_key():
    with pytest.raises(ConfigurationError):
        AzureAIClient(settings=AzureOpenAISettings(endpoint="", api_key=""))


def test_client_resolves_deployments():
    client = AzureAIClient(
        settings=AzureOpenAISettings(
            endpoint="https://clinic.openai.azure.com/",
            api_key="test-key",
            deployment_name="chat-deployment",
            reasoning_deployment_name="",
        )
    )
    assert client.deployment_name == "chat-deployment"
    assert client.reasoning_deployment_name == "chat-deployment"
