"""
Single-pipeline execution engine.

One ``analyze`` call walks the states

    cache_check -> context_aggregation -> prompt_compilation ->
    model_execution -> output_validation -> cache_store -> audit_complete

and any failure ends the attempt in ``audit_error``. Failures are normalized
into a PipelineServiceError whose code selects a recovery strategy; retryable
codes start a new attempt (from the cache check) with a decremented retry
budget. ``analyze`` never raises: callers always get a PipelineResult.
"""

import asyncio
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from pydantic import BaseModel

from clinicinsights.adapters.cache import AICache, CacheEntryInfo, CacheKeyGenerator, CacheStats
from clinicinsights.application.ports.services.context_aggregator import ContextAggregator
from clinicinsights.application.ports.services.model_endpoint import (
    ModelEndpoint,
    ModelRequest,
    ModelResponse,
)
from clinicinsights.application.services.audit_service import AuditService
from clinicinsights.application.services.output_parser import get_parser_for_pipeline
from clinicinsights.application.services.prompt_compiler import compile_prompt, render_value
from clinicinsights.application.services.prompt_registry import PromptRegistry
from clinicinsights.core.cancellation import CancellationToken, check_cancelled
from clinicinsights.core.config import Settings, get_settings
from clinicinsights.core.exceptions import (
    ClinicInsightsException,
    ContextAggregationError,
    PipelineCancelledError,
)
from clinicinsights.core.utils.timing import LatencyBreakdown
from clinicinsights.domain.audit import (
    AuditEntry,
    AuditPerformance,
    AuditRequest,
    AuditResponse,
    AuditTokenUsage,
)
from clinicinsights.domain.errors import (
    ErrorCode,
    PipelineServiceError,
    RecoveryType,
    normalize_error,
)
from clinicinsights.domain.execution import (
    AnalyzeOptions,
    ExecutionMetadata,
    ExecutionState,
    PipelineResult,
    TokenUsage,
)
from clinicinsights.domain.pipeline_types import (
    ModelRole,
    PipelineDefinition,
    PipelineType,
    get_pipeline_definition,
)
from clinicinsights.domain.prompt_template import PromptTemplate
from clinicinsights.observability.metrics import record_error, record_pipeline_execution
from clinicinsights.observability.tracing import add_span_attribute, set_span_status, trace_operation

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]
BatchRequest = Tuple[Any, AnalyzeOptions]


def new_execution_id(pipeline_type: PipelineType) -> str:
    return f"{pipeline_type.value}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def to_json_data(value: Any) -> Any:
    """Normalize validated output so fresh and cached results look the same."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


class _Attempt:
    """Mutable bookkeeping for one pass through the state machine."""

    def __init__(self, execution_id: str, retry_count: int) -> None:
        self.execution_id = execution_id
        self.retry_count = retry_count
        self.state = ExecutionState.CACHE_CHECK
        self.breakdown = LatencyBreakdown()
        self.template: Optional[PromptTemplate] = None
        self.model_used: Optional[str] = None
        self.token_usage = TokenUsage()
        self.audit_entry: Optional[AuditEntry] = None


class PipelineExecutor:
    """Runs pipelines against injected cache, audit, context and model collaborators."""

    def __init__(
        self,
        registry: PromptRegistry,
        cache: AICache,
        audit: AuditService,
        context_aggregator: ContextAggregator,
        model_endpoint: ModelEndpoint,
        settings: Optional[Settings] = None,
        key_generator: Optional[CacheKeyGenerator] = None,
        fallbacks: Optional[Dict[PipelineType, Any]] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.settings = settings or get_settings()
        self.registry = registry
        self.cache = cache
        self.audit = audit
        self.context_aggregator = context_aggregator
        self.model_endpoint = model_endpoint
        self.key_generator = key_generator or CacheKeyGenerator(self.settings.redis.key_prefix)
        self.fallbacks = dict(fallbacks or {})
        self.max_prompt_tokens = self.settings.prompts.max_prompt_tokens
        self.max_queue_delay_ms = self.settings.insights.max_queue_delay_ms
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    async def analyze(self, pipeline_type: Any, options: AnalyzeOptions) -> PipelineResult:
        """Execute one pipeline, retrying per the recovery table. Never raises."""
        started = time.perf_counter()
        try:
            pipeline_type = PipelineType(pipeline_type)
        except ValueError:
            error = PipelineServiceError(
                ErrorCode.CONFIG_ERROR,
                f"Unknown pipeline type: {pipeline_type}",
                pipeline_type=str(pipeline_type),
            )
            return PipelineResult(success=False, error=error)

        definition = get_pipeline_definition(pipeline_type)
        execution_id = options.execution_id or new_execution_id(pipeline_type)
        token = options.cancel_token
        retries_left = options.max_retries
        attempts_by_code: Dict[ErrorCode, int] = {}
        retry_count = 0

        with trace_operation(
            "pipeline.analyze",
            {
                "pipeline.type": pipeline_type.value,
                "pipeline.execution_id": execution_id,
                "pipeline.patient_id": options.patient_id,
                "pipeline.session_id": options.session_id,
            },
        ) as span:
            while True:
                attempt_id = execution_id if retry_count == 0 else f"{execution_id}-retry{retry_count}"
                result = await self._execute_once(definition, options, attempt_id, retry_count)
                if result.success or result.cancelled:
                    break

                delay_ms = self._retry_delay(result.error, attempts_by_code, retries_left)
                if delay_ms is None:
                    break

                retries_left -= 1
                retry_count += 1
                logger.warning(
                    f"Retrying pipeline={pipeline_type.value} execution_id={execution_id} "
                    f"code={result.error.code.value} attempt={retry_count} delay_ms={delay_ms}"
                )
                if delay_ms:
                    await self._sleep(delay_ms / 1000.0)
                if token is not None and token.is_cancelled:
                    result = PipelineResult(success=False, cancelled=True, metadata=result.metadata)
                    break

            result.execution_time_ms = (time.perf_counter() - started) * 1000.0
            if span:
                add_span_attribute(span, "pipeline.success", result.success)
                add_span_attribute(span, "pipeline.cache_hit", result.cache_hit)
                add_span_attribute(span, "pipeline.retry_count", retry_count)
                add_span_attribute(span, "pipeline.duration_ms", result.execution_time_ms)
                set_span_status(
                    span,
                    success=result.success,
                    error_message=result.error.message if result.error else None,
                )

        record_pipeline_execution(
            pipeline_type.value, result.execution_time_ms, result.success, cache_hit=result.cache_hit
        )
        return result

    async def analyze_batch(self, requests: Dict[str, BatchRequest]) -> Dict[str, PipelineResult]:
        """Run every request concurrently; one failure never affects another."""
        request_ids = list(requests)
        outcomes = await asyncio.gather(
            *(self.analyze(pipeline_type, options) for pipeline_type, options in requests.values()),
            return_exceptions=True,
        )

        results: Dict[str, PipelineResult] = {}
        for request_id, (pipeline_type, _), outcome in zip(request_ids, requests.values(), outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Batch request {request_id} crashed: {outcome}")
                outcome = PipelineResult(
                    success=False, error=normalize_error(outcome, str(getattr(pipeline_type, "value", pipeline_type)))
                )
            results[request_id] = outcome
        return results

    async def invalidate_cache(self, pattern: Optional[str] = None) -> int:
        removed = await self.cache.clear(pattern)
        logger.info(f"Invalidated {removed} cached result(s) pattern={pattern or '*'}")
        return removed

    async def invalidate_patient(self, patient_id: str, pipeline_type: Optional[Any] = None) -> int:
        pipeline = PipelineType(pipeline_type).value if pipeline_type else None
        return await self.invalidate_cache(
            self.key_generator.generate_pattern(pipeline_type=pipeline, patient_id=patient_id)
        )

    async def get_cache_stats(self) -> CacheStats:
        return await self.cache.get_stats()

    async def health_check(self) -> Dict[str, Any]:
        """Aggregate health of cache, audit, context source and model endpoint."""
        components: Dict[str, bool] = {}
        components["cache"] = await self._probe("cache", self.cache.health_check)

        async def audit_probe() -> bool:
            return (await self.audit.health_check()).healthy

        components["audit"] = await self._probe("audit", audit_probe)
        components["context_aggregator"] = await self._probe(
            "context_aggregator", self.context_aggregator.health_check
        )
        components["model_endpoint"] = await self._probe("model_endpoint", self.model_endpoint.health_check)
        return {"healthy": all(components.values()), "components": components}

    @staticmethod
    async def _probe(name: str, check: Callable[[], Awaitable[bool]]) -> bool:
        try:
            return bool(await check())
        except Exception as e:
            logger.warning(f"Health probe {name} failed: {e}")
            return False

    # ------------------------------------------------------------------
    # Retry policy
    # ------------------------------------------------------------------

    def _retry_delay(
        self,
        error: Optional[PipelineServiceError],
        attempts_by_code: Dict[ErrorCode, int],
        retries_left: int,
    ) -> Optional[int]:
        """Delay in ms before the next attempt, or None when no retry applies."""
        if error is None or retries_left <= 0:
            return None
        strategy = error.strategy
        if strategy.type not in (RecoveryType.RETRY, RecoveryType.QUEUE):
            return None

        attempt = attempts_by_code.get(error.code, 0) + 1
        if attempt > strategy.max_attempts:
            return None
        attempts_by_code[error.code] = attempt

        if strategy.type is RecoveryType.QUEUE:
            delay = error.retry_after_ms or strategy.base_delay_ms
            return min(delay, self.max_queue_delay_ms)
        return strategy.delay_ms(attempt)

    # ------------------------------------------------------------------
    # One attempt
    # ------------------------------------------------------------------

    async def _execute_once(
        self,
        definition: PipelineDefinition,
        options: AnalyzeOptions,
        execution_id: str,
        retry_count: int,
    ) -> PipelineResult:
        pipeline = definition.pipeline_type.value
        token = options.cancel_token
        attempt = _Attempt(execution_id, retry_count)

        try:
            check_cancelled(token)
            template = self.registry.get(definition.prompt_id, version=options.prompt_version)
            attempt.template = template
            attempt.model_used = self._model_for(definition, template)
            cache_key = self.key_generator.generate(
                pipeline,
                options.patient_id,
                template.version,
                session_id=options.session_id,
                variables=options.variables,
            )

            if not options.skip_cache:
                cached = await self._cache_get(cache_key, token)
                if cached is not None:
                    return self._cache_hit(definition, options, attempt, cached)

            attempt.audit_entry = self._start_audit(definition, options, attempt)

            attempt.state = ExecutionState.CONTEXT_AGGREGATION
            with attempt.breakdown.stage("context_aggregation"):
                context = await self._aggregate(definition, options, token)

            attempt.state = ExecutionState.PROMPT_COMPILATION
            with attempt.breakdown.stage("prompt_compilation"):
                compiled = compile_prompt(
                    template,
                    self._build_variables(context, options),
                    max_tokens=self.max_prompt_tokens,
                )
            if compiled.truncated:
                logger.warning(
                    f"Prompt truncated to fit pipeline={pipeline} execution_id={execution_id} "
                    f"estimated_tokens={compiled.estimated_tokens}"
                )

            attempt.state = ExecutionState.MODEL_EXECUTION
            request = ModelRequest(
                prompt=compiled.text,
                model=attempt.model_used,
                temperature=definition.temperature,
                max_tokens=definition.max_tokens,
                output_schema=template.output_schema if definition.structured_output else None,
                pipeline_type=pipeline,
            )
            with attempt.breakdown.stage("llm_execution"):
                response = await self._invoke(request, token)
            attempt.token_usage = response.token_usage
            attempt.model_used = response.model or request.model

            attempt.state = ExecutionState.OUTPUT_VALIDATION
            with attempt.breakdown.stage("validation"):
                data = self._validate_output(definition, response)

            attempt.state = ExecutionState.CACHE_STORE
            await self._cache_set(cache_key, data, definition, options, template, token)

            attempt.state = ExecutionState.AUDIT_COMPLETE
            metadata = self._metadata(definition, attempt, cache_hit=False)
            self._finish_audit(attempt, AuditResponse(success=True, data=data), "completed")
            logger.info(
                f"Pipeline completed pipeline={pipeline} execution_id={execution_id} "
                f"tokens={attempt.token_usage.total_tokens} duration_ms={attempt.breakdown.total_ms:.0f}"
            )
            return PipelineResult(
                success=True,
                data=data,
                metadata=metadata,
                execution_time_ms=attempt.breakdown.total_ms,
            )

        except PipelineCancelledError:
            logger.info(f"Pipeline cancelled pipeline={pipeline} execution_id={execution_id} state={attempt.state.value}")
            self._finish_audit(
                attempt,
                AuditResponse(success=False, error="Pipeline cancelled", error_code="CANCELLED"),
                "cancelled",
            )
            return PipelineResult(
                success=False,
                cancelled=True,
                metadata=self._metadata(definition, attempt, cache_hit=False),
                execution_time_ms=attempt.breakdown.total_ms,
            )

        except Exception as e:
            failed_state = attempt.state
            attempt.state = ExecutionState.AUDIT_ERROR
            error = normalize_error(e, pipeline)
            error.details.setdefault("state", failed_state.value)
            logger.error(
                f"Pipeline failed pipeline={pipeline} execution_id={execution_id} "
                f"state={failed_state.value} code={error.code.value}: {error.message}"
            )
            record_error(error.code.value, error.message)
            self._finish_audit(
                attempt,
                AuditResponse(success=False, error=error.message, error_code=error.code.value),
                "failed",
                options=options,
                definition=definition,
            )
            return PipelineResult(
                success=False,
                error=error,
                metadata=self._metadata(definition, attempt, cache_hit=False),
                execution_time_ms=attempt.breakdown.total_ms,
            )

    def _model_for(self, definition: PipelineDefinition, template: PromptTemplate) -> str:
        if template.execution.model:
            return template.execution.model
        if definition.model_role is ModelRole.REASONING:
            return self.settings.azure_openai.reasoning_deployment_name
        return self.settings.azure_openai.deployment_name

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _cache_get(self, key: str, token: Optional[CancellationToken]) -> Optional[Any]:
        check_cancelled(token)
        try:
            return await self.cache.get(key)
        except Exception as e:
            logger.warning(f"Cache read failed key={key}: {e}; continuing without cache")
            record_error(ErrorCode.CACHE_ERROR.value, str(e))
            return None

    async def _cache_set(
        self,
        key: str,
        data: Any,
        definition: PipelineDefinition,
        options: AnalyzeOptions,
        template: PromptTemplate,
        token: Optional[CancellationToken],
    ) -> None:
        check_cancelled(token)
        meta = CacheEntryInfo(
            pipeline_type=definition.pipeline_type.value,
            patient_id=options.patient_id,
            prompt_version=template.version,
            session_id=options.session_id,
        )
        try:
            await self.cache.set(key, data, meta, ttl=options.cache_ttl)
        except Exception as e:
            logger.warning(f"Cache write failed key={key}: {e}; result not cached")
            record_error(ErrorCode.CACHE_ERROR.value, str(e))

    async def _aggregate(
        self,
        definition: PipelineDefinition,
        options: AnalyzeOptions,
        token: Optional[CancellationToken],
    ) -> Dict[str, Any]:
        check_cancelled(token)
        purpose = options.purpose or definition.purpose
        try:
            work = self.context_aggregator.aggregate(options.patient_id, purpose, cancel_token=token)
            context = await token.run(work) if token is not None else await work
        except (ClinicInsightsException, PipelineServiceError):
            raise
        except Exception as e:
            raise ContextAggregationError(
                f"Context aggregation failed for patient {options.patient_id}: {e}",
                {"patient_id": options.patient_id, "purpose": purpose},
            )
        return dict(context or {})

    @staticmethod
    def _build_variables(context: Dict[str, Any], options: AnalyzeOptions) -> Dict[str, Any]:
        variables = dict(context)
        variables.update(options.variables)
        if "patient_context" not in variables:
            variables["patient_context"] = context.get("summary") or render_value(context)
        return variables

    async def _invoke(self, request: ModelRequest, token: Optional[CancellationToken]) -> ModelResponse:
        check_cancelled(token)
        if token is None:
            return await self.model_endpoint.invoke(request)
        return await token.run(self.model_endpoint.invoke(request, cancel_token=token))

    def _validate_output(self, definition: PipelineDefinition, response: ModelResponse) -> Any:
        parser = get_parser_for_pipeline(
            definition.pipeline_type, fallback=self.fallbacks.get(definition.pipeline_type)
        )
        if definition.structured_output and response.structured is not None:
            if isinstance(response.structured, parser.schema):
                return to_json_data(response.structured)
            return to_json_data(parser.validate(to_json_data(response.structured)))
        return to_json_data(parser.parse(response.text or ""))

    # ------------------------------------------------------------------
    # Results and audit
    # ------------------------------------------------------------------

    def _metadata(self, definition: PipelineDefinition, attempt: _Attempt, cache_hit: bool) -> ExecutionMetadata:
        template = attempt.template
        return ExecutionMetadata(
            execution_id=attempt.execution_id,
            pipeline_type=definition.pipeline_type.value,
            prompt_id=definition.prompt_id,
            prompt_version=template.version if template else "",
            model_used=attempt.model_used or "",
            token_usage=attempt.token_usage,
            latency=attempt.breakdown.as_dict(),
            cache_hit=cache_hit,
            retry_count=attempt.retry_count,
        )

    def _cache_hit(
        self,
        definition: PipelineDefinition,
        options: AnalyzeOptions,
        attempt: _Attempt,
        cached: Any,
    ) -> PipelineResult:
        attempt.state = ExecutionState.AUDIT_COMPLETE
        entry = self._audit_entry(definition, options, attempt)
        entry.response = AuditResponse(success=True, data=cached)
        entry.performance = self._performance(attempt, cache_hit=True)
        entry.metadata["status"] = "completed"
        self.audit.dispatch_log(entry)
        logger.info(
            f"Cache hit pipeline={definition.pipeline_type.value} execution_id={attempt.execution_id}"
        )
        return PipelineResult(
            success=True,
            data=cached,
            metadata=self._metadata(definition, attempt, cache_hit=True),
            execution_time_ms=attempt.breakdown.total_ms,
        )

    def _audit_entry(self, definition: PipelineDefinition, options: AnalyzeOptions, attempt: _Attempt) -> AuditEntry:
        template = attempt.template
        metadata = dict(options.metadata)
        metadata["retry_count"] = attempt.retry_count
        return AuditEntry(
            execution_id=attempt.execution_id,
            pipeline_type=definition.pipeline_type.value,
            patient_id=options.patient_id,
            session_id=options.session_id,
            user_id=options.user_id,
            organization_id=options.organization_id,
            request=AuditRequest(
                prompt_template=definition.prompt_id,
                prompt_version=template.version if template else options.prompt_version,
                variables=dict(options.variables),
                model=attempt.model_used,
                temperature=definition.temperature,
                max_tokens=definition.max_tokens,
            ),
            metadata=metadata,
        )

    def _start_audit(self, definition: PipelineDefinition, options: AnalyzeOptions, attempt: _Attempt) -> AuditEntry:
        entry = self._audit_entry(definition, options, attempt)
        entry.metadata["status"] = "started"
        self.audit.dispatch_log(entry)
        return entry

    @staticmethod
    def _performance(attempt: _Attempt, cache_hit: bool) -> AuditPerformance:
        stages = attempt.breakdown.stages
        usage = attempt.token_usage
        return AuditPerformance(
            total_duration_ms=attempt.breakdown.total_ms,
            context_aggregation_ms=stages.get("context_aggregation", 0.0),
            prompt_compilation_ms=stages.get("prompt_compilation", 0.0),
            llm_execution_ms=stages.get("llm_execution", 0.0),
            validation_ms=stages.get("validation", 0.0),
            cache_hit=cache_hit,
            token_usage=AuditTokenUsage(
                prompt=usage.prompt_tokens,
                completion=usage.completion_tokens,
                total=usage.total_tokens,
            ),
        )

    def _finish_audit(
        self,
        attempt: _Attempt,
        response: AuditResponse,
        status: str,
        options: Optional[AnalyzeOptions] = None,
        definition: Optional[PipelineDefinition] = None,
    ) -> None:
        performance = self._performance(attempt, cache_hit=False)
        entry = attempt.audit_entry
        if entry is None:
            # failed before the placeholder was written, record it whole
            if options is None or definition is None:
                return
            entry = self._audit_entry(definition, options, attempt)
            entry.response = response
            entry.performance = performance
            entry.metadata["status"] = status
            self.audit.dispatch_log(entry)
            return

        self.audit.dispatch_update(
            entry.execution_id,
            response=response,
            performance=performance,
            metadata={"status": status, "state": attempt.state.value},
            entry=entry,
        )


CoreAIService = PipelineExecutor
