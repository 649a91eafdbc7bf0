"""
Dependency injection container and engine bootstrap.

Services are plain objects built once at startup and injected into their
consumers; ``build_engine`` wires the whole pipeline stack from settings.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

from clinicinsights.adapters.cache import AICache, create_cache
from clinicinsights.adapters.db.memory.audit_store import InMemoryAuditStore
from clinicinsights.adapters.db.memory.context_aggregator import InMemoryContextAggregator
from clinicinsights.adapters.db.mongo.audit_store import MongoAuditStore
from clinicinsights.adapters.db.mongo.context_aggregator import MongoContextAggregator
from clinicinsights.adapters.external.model_endpoint_openai import AzureOpenAIModelEndpoint
from clinicinsights.adapters.prompts.default_prompts import register_default_prompts
from clinicinsights.application.ports.repositories.audit_store import AuditStore
from clinicinsights.application.ports.repositories.cache_store import SharedCacheStore
from clinicinsights.application.ports.services.context_aggregator import ContextAggregator
from clinicinsights.application.ports.services.model_endpoint import ModelEndpoint
from clinicinsights.application.services.audit_service import AuditService
from clinicinsights.application.services.insights_orchestrator import InsightsOrchestrator
from clinicinsights.application.services.pipeline_executor import PipelineExecutor
from clinicinsights.application.services.prompt_registry import PromptRegistry

from .ai_client import AzureAIClient
from .config import Settings, get_settings
from .exceptions import ConfigurationError
from .structured_logger import configure_logging, get_logger

T = TypeVar("T")

logger = get_logger(__name__)


class Container:
    """Lightweight dependency injection container."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._services: Dict[str, Any] = {}
        self._factories: Dict[str, Callable[[], Any]] = {}
        self._singletons: Dict[str, Any] = {}
        self._settings = settings or get_settings()

    @property
    def settings(self) -> Settings:
        return self._settings

    def register_singleton(self, name: str, instance: Any) -> None:
        """Register a singleton instance."""
        self._singletons[name] = instance

    def register_factory(self, name: str, factory: Callable[[], Any]) -> None:
        """Register a factory function."""
        self._factories[name] = factory

    def register_service(self, name: str, service: Any) -> None:
        """Register a service instance."""
        self._services[name] = service

    def get(self, name: str) -> Any:
        """Get a service by name."""
        if name in self._singletons:
            return self._singletons[name]

        if name in self._services:
            return self._services[name]

        if name in self._factories:
            instance = self._factories[name]()
            # factories run once, then behave like singletons
            self._singletons[name] = instance
            return instance

        raise ConfigurationError(f"Service '{name}' not found")

    def get_or_none(self, name: str) -> Optional[Any]:
        """Get a service by name, return None if not found."""
        try:
            return self.get(name)
        except ConfigurationError:
            return None

    def has(self, name: str) -> bool:
        """Check if a service is registered."""
        return name in self._services or name in self._factories or name in self._singletons

    def clear(self) -> None:
        """Clear all registered services."""
        self._services.clear()
        self._factories.clear()
        self._singletons.clear()


class ServiceProvider(Generic[T]):
    """Generic service provider for type-safe dependency injection."""

    def __init__(self, container: Container, service_name: str) -> None:
        self._container = container
        self._service_name = service_name

    def get(self) -> T:
        """Get the service instance."""
        return self._container.get(self._service_name)

    def get_or_none(self) -> Optional[T]:
        """Get the service instance or None if not found."""
        return self._container.get_or_none(self._service_name)


class ServiceNames:
    """Service names registered by build_engine."""

    SETTINGS = "settings"
    PROMPT_REGISTRY = "prompt_registry"
    CACHE = "cache"
    AUDIT_STORE = "audit_store"
    AUDIT_SERVICE = "audit_service"
    CONTEXT_AGGREGATOR = "context_aggregator"
    MODEL_ENDPOINT = "model_endpoint"
    PIPELINE_EXECUTOR = "pipeline_executor"
    INSIGHTS_ORCHESTRATOR = "insights_orchestrator"


@dataclass
class InsightsEngine:
    """Fully wired service graph with a start/stop lifecycle."""

    container: Container
    registry: PromptRegistry
    cache: AICache
    audit: AuditService
    executor: PipelineExecutor
    orchestrator: InsightsOrchestrator

    async def start(self) -> None:
        await self.cache.start()
        logger.info("Insights engine started", cache_backend=type(self.cache).__name__)

    async def shutdown(self) -> None:
        await self.audit.flush()
        await self.cache.shutdown()
        store = self.audit.store
        if isinstance(store, MongoAuditStore):
            await store.close()
        logger.info("Insights engine stopped")


async def _build_audit_store(settings: Settings) -> AuditStore:
    if settings.audit.backend == "mongo":
        return await MongoAuditStore.connect(settings.database)
    return InMemoryAuditStore()


def _build_context_aggregator(settings: Settings, audit_store: AuditStore) -> ContextAggregator:
    if isinstance(audit_store, MongoAuditStore):
        return MongoContextAggregator(audit_store.db, settings.database)
    return InMemoryContextAggregator()


async def build_engine(
    settings: Optional[Settings] = None,
    model_endpoint: Optional[ModelEndpoint] = None,
    context_aggregator: Optional[ContextAggregator] = None,
    audit_store: Optional[AuditStore] = None,
    l2_store: Optional[SharedCacheStore] = None,
    registry: Optional[PromptRegistry] = None,
    **executor_kwargs: Any,
) -> InsightsEngine:
    """Construct and wire every service. Collaborators passed in win over settings."""
    settings = settings or get_settings()
    configure_logging(settings.logging.level, settings.logging.format)
    container = Container(settings)
    container.register_singleton(ServiceNames.SETTINGS, settings)

    if registry is None:
        registry = PromptRegistry(cache_size=settings.prompts.resolution_cache_size)
        if settings.prompts.register_defaults:
            register_default_prompts(registry)

    cache = create_cache(settings, l2_store=l2_store)
    audit_store = audit_store or await _build_audit_store(settings)
    audit = AuditService(audit_store, settings.audit)
    context_aggregator = context_aggregator or _build_context_aggregator(settings, audit_store)
    model_endpoint = model_endpoint or AzureOpenAIModelEndpoint(AzureAIClient(settings=settings.azure_openai))

    executor = PipelineExecutor(
        registry,
        cache,
        audit,
        context_aggregator,
        model_endpoint,
        settings=settings,
        **executor_kwargs,
    )
    orchestrator = InsightsOrchestrator(executor, settings=settings.insights)

    container.register_singleton(ServiceNames.PROMPT_REGISTRY, registry)
    container.register_singleton(ServiceNames.CACHE, cache)
    container.register_singleton(ServiceNames.AUDIT_STORE, audit_store)
    container.register_singleton(ServiceNames.AUDIT_SERVICE, audit)
    container.register_singleton(ServiceNames.CONTEXT_AGGREGATOR, context_aggregator)
    container.register_singleton(ServiceNames.MODEL_ENDPOINT, model_endpoint)
    container.register_singleton(ServiceNames.PIPELINE_EXECUTOR, executor)
    container.register_singleton(ServiceNames.INSIGHTS_ORCHESTRATOR, orchestrator)

    logger.info(
        "Insights engine wired",
        cache_backend=settings.cache.backend,
        audit_backend=settings.audit.backend,
        prompts=len(registry.list()),
    )
    return InsightsEngine(container, registry, cache, audit, executor, orchestrator)
