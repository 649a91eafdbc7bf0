"""
Dependency container and engine wiring tests.
"""

import logging

import pytest

from clinicinsights.adapters.cache import MemoryAICache, TieredAICache
from clinicinsights.adapters.db.memory.audit_store import InMemoryAuditStore
from clinicinsights.adapters.db.memory.context_aggregator import InMemoryContextAggregator
from clinicinsights.application.services.insights_orchestrator import InsightsContext
from clinicinsights.core.container import Container, ServiceNames, ServiceProvider, build_engine
from clinicinsights.core.exceptions import ConfigurationError
from clinicinsights.core.structured_logger import ROOT_LOGGER_NAME

from fakes import TRANSCRIPT, FakeSharedStore


@pytest.fixture(autouse=True)
def remove_log_handlers():
    package_logger = logging.getLogger(ROOT_LOGGER_NAME)
    level = package_logger.level
    yield
    package_logger.setLevel(level)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)


def test_factories_run_once(settings):
    container = Container(settings)
    built = []
    container.register_factory("thing", lambda: built.append(1) or object())

    first = container.get("thing")
    assert container.get("thing") is first
    assert built == [1]


def test_lookup_and_clear(settings):
    container = Container(settings)
    container.register_service("svc", "value")
    provider = ServiceProvider(container, "svc")

    assert container.has("svc")
    assert provider.get() == "value"
    assert container.settings is settings

    container.clear()
    assert not container.has("svc")
    assert provider.get_or_none() is None
    with pytest.raises(ConfigurationError):
        container.get("svc")


@pytest.mark.asyncio
async def test_build_engine_with_injected_collaborators(settings, model_endpoint, context_aggregator):
    engine = await build_engine(settings, model_endpoint=model_endpoint, context_aggregator=context_aggregator)
    await engine.start()

    assert isinstance(engine.cache, MemoryAICache)
    assert isinstance(engine.audit.store, InMemoryAuditStore)
    assert engine.container.get(ServiceNames.PIPELINE_EXECUTOR) is engine.executor
    assert engine.container.get(ServiceNames.MODEL_ENDPOINT) is model_endpoint
    assert len(engine.registry.list()) == 6

    state = await engine.orchestrator.coordinate_analysis(
        InsightsContext(session_id="session-1", patient_id="patient-1", transcript=TRANSCRIPT)
    )
    assert state.overall_progress == 100

    await engine.shutdown()
    assert await engine.cache.keys() == []


@pytest.mark.asyncio
async def test_shared_store_selects_the_tiered_cache(settings, model_endpoint):
    engine = await build_engine(settings, model_endpoint=model_endpoint, l2_store=FakeSharedStore())

    assert isinstance(engine.cache, TieredAICache)
    assert isinstance(engine.container.get(ServiceNames.CONTEXT_AGGREGATOR), InMemoryContextAggregator)


@pytest.mark.asyncio
async def test_model_endpoint_needs_azure_credentials(settings):
    with pytest.raises(ConfigurationError):
        await build_engine(settings)
