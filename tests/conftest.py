"""
Shared fixtures: fake model endpoint, shared cache stores, chart data and a
fully wired executor over in-memory collaborators.
"""

from typing import Any, Dict, List

import pytest

from clinicinsights.adapters.cache import MemoryAICache
from clinicinsights.adapters.db.memory.audit_store import InMemoryAuditStore
from clinicinsights.adapters.db.memory.context_aggregator import InMemoryContextAggregator
from clinicinsights.adapters.prompts.default_prompts import register_default_prompts
from clinicinsights.application.services.audit_service import AuditService
from clinicinsights.application.services.pipeline_executor import PipelineExecutor
from clinicinsights.application.services.prompt_registry import PromptRegistry
from clinicinsights.core.config import (
    AuditSettings,
    AzureOpenAISettings,
    CacheSettings,
    InsightsSettings,
    LoggingSettings,
    PromptSettings,
    RedisSettings,
    Settings,
)

from fakes import FakeClock, FakeModelEndpoint, sample_chart


@pytest.fixture
def chart() -> Dict[str, Any]:
    return sample_chart()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        app_env="testing",
        azure_openai=AzureOpenAISettings(
            endpoint="",
            api_key="",
            deployment_name="chat-deployment",
            reasoning_deployment_name="reasoning-deployment",
        ),
        redis=RedisSettings(key_prefix="ai"),
        cache=CacheSettings(backend="memory", cleanup_interval_seconds=0),
        audit=AuditSettings(backend="memory", enabled=True, retention_days=90),
        prompts=PromptSettings(resolution_cache_size=50, register_defaults=True, max_prompt_tokens=100000),
        insights=InsightsSettings(global_timeout_ms=45000, history_size=100, max_queue_delay_ms=60000),
        logging=LoggingSettings(level="INFO", format="json"),
    )


@pytest.fixture
def registry() -> PromptRegistry:
    registry = PromptRegistry()
    register_default_prompts(registry)
    return registry


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache() -> MemoryAICache:
    return MemoryAICache(cleanup_interval_seconds=0)


@pytest.fixture
def audit_store() -> InMemoryAuditStore:
    return InMemoryAuditStore()


@pytest.fixture
def audit_service(audit_store, settings) -> AuditService:
    return AuditService(audit_store, settings.audit)


@pytest.fixture
def context_aggregator(chart) -> InMemoryContextAggregator:
    aggregator = InMemoryContextAggregator()
    aggregator.add_patient(
        "patient-1",
        chart["patient"],
        sessions=chart["sessions"],
        assessments=chart["assessments"],
        alerts=chart["alerts"],
    )
    aggregator.add_patient("patient-no-plan", {"demographics": {"age": 51}})
    return aggregator


@pytest.fixture
def model_endpoint() -> FakeModelEndpoint:
    return FakeModelEndpoint()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return sleep


@pytest.fixture
def executor(registry, cache, audit_service, context_aggregator, model_endpoint, settings, fake_sleep):
    return PipelineExecutor(
        registry,
        cache,
        audit_service,
        context_aggregator,
        model_endpoint,
        settings=settings,
        sleep=fake_sleep,
    )
