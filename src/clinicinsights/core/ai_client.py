"""
Azure OpenAI client wrapper used by the pipeline model endpoint.

The client only talks to Azure OpenAI (via AsyncAzureOpenAI) and resolves
deployment names from configuration. Retries, output validation and
telemetry are handled by the callers.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from openai import AsyncAzureOpenAI

from .config import AzureOpenAISettings, get_settings
from .exceptions import ConfigurationError


class AzureAIClient:
    """
    Thin wrapper around AsyncAzureOpenAI for chat completions.

    Two deployments are configured: a chat deployment used by most
    pipelines and a reasoning deployment for the clinical judgement ones.
    """

    def __init__(
        self,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        api_version: Optional[str] = None,
        deployment_name: Optional[str] = None,
        reasoning_deployment_name: Optional[str] = None,
        timeout: Optional[float] = None,
        settings: Optional[AzureOpenAISettings] = None,
    ) -> None:
        """
        Initialize AzureAIClient.

        If arguments are omitted, values are loaded from application settings.
        """
        settings = settings or get_settings().azure_openai

        endpoint = endpoint or settings.endpoint
        api_key = api_key or settings.api_key
        api_version = api_version or settings.api_version
        deployment_name = deployment_name or settings.deployment_name
        reasoning_deployment_name = reasoning_deployment_name or settings.reasoning_deployment_name
        timeout = timeout if timeout is not None else settings.request_timeout_seconds

        if not endpoint or not api_key:
            raise ConfigurationError(
                "Azure OpenAI endpoint and API key must be configured. "
                "Set AZURE_OPENAI_ENDPOINT and AZURE_OPENAI_API_KEY."
            )

        if not deployment_name:
            raise ConfigurationError(
                "Azure OpenAI deployment name is required. "
                "Set AZURE_OPENAI_DEPLOYMENT_NAME."
            )

        # Azure SDK does not expect a trailing slash
        normalized_endpoint = endpoint.rstrip("/")

        self._deployment_name = deployment_name
        self._reasoning_deployment_name = reasoning_deployment_name or deployment_name

        self._client = AsyncAzureOpenAI(
            api_key=api_key,
            api_version=api_version,
            azure_endpoint=normalized_endpoint,
            timeout=timeout,
            max_retries=0,
        )

    @property
    def deployment_name(self) -> str:
        return self._deployment_name

    @property
    def reasoning_deployment_name(self) -> str:
        return self._reasoning_deployment_name

    async def chat(
        self,
        messages: Sequence[Dict[str, str]],
        *,
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        **kwargs: Any,
    ):
        """
        Generic chat completion helper.

        Args:
            messages: OpenAI chat messages list.
            model: Optional deployment name override. Defaults to configured deployment.
            temperature: Sampling temperature.
            max_tokens: Optional max tokens for the response.
            **kwargs: Passed directly to Azure OpenAI SDK.
        """
        deployment = model or self._deployment_name
        return await self._client.chat.completions.create(
            model=deployment,
            messages=list(messages),
            temperature=temperature,
            max_tokens=max_tokens,
            **kwargs,
        )

    async def chat_json(
        self,
        prompt: str,
        *,
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: Optional[int] = None,
        **kwargs: Any,
    ):
        """
        Chat completion constrained to a single JSON object response.
        """
        messages: List[Dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        return await self.chat(
            messages,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            response_format={"type": "json_object"},
            **kwargs,
        )

    async def close(self) -> None:
        await self._client.close()


__all__ = ["AzureAIClient"]
