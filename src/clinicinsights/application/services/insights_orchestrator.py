"""
Multi-pipeline coordination for one clinical session.

Every enabled pipeline is dispatched before any is awaited and the run waits
for all of them to settle: a failing, timing-out or cancelled pipeline only
affects its own slot in the unified state.
"""

import asyncio
import inspect
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple, Union

from clinicinsights.application.services.pipeline_executor import PipelineExecutor
from clinicinsights.core.cancellation import CancellationToken
from clinicinsights.core.config import InsightsSettings
from clinicinsights.domain.errors import ErrorCode, PipelineServiceError, normalize_error
from clinicinsights.domain.execution import AnalyzeOptions, PipelineResult
from clinicinsights.domain.pipeline_types import PipelineType, get_pipeline_definition

logger = logging.getLogger(__name__)


class PipelineStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"
    RETRYING = "retrying"
    CANCELLED = "cancelled"


# Orchestrator pipeline keys and the executor pipeline each one runs
PIPELINE_KEYS: Dict[str, PipelineType] = {
    "safety": PipelineType.SAFETY_CHECK,
    "billing": PipelineType.BILLING_CPT,
    "progress": PipelineType.TREATMENT_PROGRESS,
    "note": PipelineType.CLINICAL_NOTE,
}


@dataclass
class PipelineConfig:
    enabled: bool = True
    priority: int = 5
    timeout_ms: int = 30000
    retry_attempts: int = 2
    cache_ttl: Optional[int] = None


def _default_pipelines() -> Dict[str, PipelineConfig]:
    return {
        "safety": PipelineConfig(priority=10, timeout_ms=30000, retry_attempts=3, cache_ttl=3600),
        "billing": PipelineConfig(priority=8, timeout_ms=25000, retry_attempts=2, cache_ttl=7200),
        "progress": PipelineConfig(priority=6, timeout_ms=20000, retry_attempts=2, cache_ttl=1800),
        "note": PipelineConfig(priority=4, timeout_ms=35000, retry_attempts=2, cache_ttl=1800),
    }


@dataclass
class InsightsConfig:
    pipelines: Dict[str, PipelineConfig] = field(default_factory=_default_pipelines)
    global_timeout_ms: int = 45000

    def enabled_pipelines(self) -> List[str]:
        """Enabled pipeline keys, highest priority first."""
        enabled = [key for key, config in self.pipelines.items() if config.enabled and key in PIPELINE_KEYS]
        return sorted(enabled, key=lambda key: self.pipelines[key].priority, reverse=True)


@dataclass
class PipelineState:
    status: PipelineStatus = PipelineStatus.IDLE
    data: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    progress: int = 0
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    metadata: Optional[Dict[str, Any]] = None


@dataclass
class AIInsightsState:
    pipelines: Dict[str, PipelineState] = field(
        default_factory=lambda: {key: PipelineState() for key in PIPELINE_KEYS}
    )
    overall_progress: int = 0
    last_updated: datetime = field(default_factory=datetime.utcnow)

    def __getitem__(self, key: str) -> PipelineState:
        return self.pipelines[key]

    def compute_overall_progress(self, keys: List[str]) -> int:
        """Rounded mean of the per-pipeline progress over ``keys``."""
        if not keys:
            return 0
        return round(sum(self.pipelines[key].progress for key in keys) / len(keys))

    def successful(self) -> List[str]:
        return [key for key, state in self.pipelines.items() if state.status is PipelineStatus.SUCCESS]

    def failed(self) -> List[str]:
        return [key for key, state in self.pipelines.items() if state.status is PipelineStatus.ERROR]


@dataclass
class InsightsContext:
    session_id: str
    patient_id: str
    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    transcript: str = ""
    variables: Dict[str, Any] = field(default_factory=dict)
    config: Optional[InsightsConfig] = None


@dataclass
class PipelineUpdate:
    pipeline: str
    status: PipelineStatus
    progress: int
    data: Any = None
    error: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class OrchestrationMetrics:
    total_execution_time_ms: float
    parallel_execution_time_ms: float
    pipeline_execution_times: Dict[str, float]
    cache_hits: Dict[str, bool]
    retry_count: int
    success_rate: float
    error_rate: float


UpdateCallback = Callable[[PipelineUpdate], Union[None, Awaitable[None]]]


def new_execution_id(prefix: str, session_id: str) -> str:
    return f"{prefix}-{session_id}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


class InsightsOrchestrator:
    """Runs the configured pipelines of one session concurrently."""

    def __init__(
        self,
        executor: PipelineExecutor,
        config: Optional[InsightsConfig] = None,
        settings: Optional[InsightsSettings] = None,
    ) -> None:
        settings = settings or InsightsSettings()
        self.executor = executor
        self.config = config or InsightsConfig(global_timeout_ms=settings.global_timeout_ms)
        # execution id -> (session id, token)
        self._active: Dict[str, Tuple[str, CancellationToken]] = {}
        self._history: Deque[OrchestrationMetrics] = deque(maxlen=settings.history_size)

    # ------------------------------------------------------------------
    # Coordination
    # ------------------------------------------------------------------

    async def coordinate_analysis(self, context: InsightsContext) -> AIInsightsState:
        """Run every enabled pipeline and fold the settled results into one state."""
        config = context.config or self.config
        execution_id = new_execution_id("coord", context.session_id)
        keys = config.enabled_pipelines()
        logger.info(
            f"Starting pipeline coordination execution_id={execution_id} "
            f"session_id={context.session_id} pipelines={keys}"
        )

        outcomes, total_ms = await self._run_pipelines(execution_id, context, config, keys)
        state = self._fold(outcomes, keys)
        metrics = self._record_metrics(outcomes, total_ms)

        logger.info(
            f"Coordination completed execution_id={execution_id} overall_progress={state.overall_progress} "
            f"succeeded={state.successful()} failed={state.failed()} "
            f"total_ms={metrics.total_execution_time_ms:.0f}"
        )
        return state

    async def stream_analysis(self, context: InsightsContext, on_update: UpdateCallback) -> AIInsightsState:
        """Like coordinate_analysis, but reports each pipeline at dispatch and at completion."""
        config = context.config or self.config
        execution_id = new_execution_id("stream", context.session_id)
        keys = config.enabled_pipelines()
        logger.info(
            f"Starting streaming analysis execution_id={execution_id} "
            f"session_id={context.session_id} pipelines={keys}"
        )

        async def on_dispatch(key: str) -> None:
            await self._notify(on_update, PipelineUpdate(key, PipelineStatus.LOADING, 10))

        async def on_settled(key: str, result: PipelineResult) -> None:
            pipeline_state = self._state_for(result)
            await self._notify(
                on_update,
                PipelineUpdate(
                    key,
                    pipeline_state.status,
                    pipeline_state.progress,
                    data=pipeline_state.data,
                    error=pipeline_state.error,
                    metadata=pipeline_state.metadata,
                ),
            )

        outcomes, total_ms = await self._run_pipelines(
            execution_id, context, config, keys, on_dispatch=on_dispatch, on_settled=on_settled
        )
        state = self._fold(outcomes, keys)
        self._record_metrics(outcomes, total_ms)
        logger.info(f"Streaming analysis completed execution_id={execution_id} total_ms={total_ms:.0f}")
        return state

    async def retry_pipeline(self, pipeline: str, context: InsightsContext) -> PipelineResult:
        """Re-run one pipeline with the cache bypassed."""
        if pipeline not in PIPELINE_KEYS:
            raise ValueError(f"Unknown pipeline '{pipeline}'. Expected one of {sorted(PIPELINE_KEYS)}")
        config = context.config or self.config
        execution_id = new_execution_id(f"retry-{pipeline}", context.session_id)
        token = CancellationToken(execution_id)
        self._active[execution_id] = (context.session_id, token)
        logger.info(f"Retrying pipeline={pipeline} execution_id={execution_id}")
        try:
            result = await self._execute(pipeline, context, config, token, execution_id, skip_cache=True)
        finally:
            self._active.pop(execution_id, None)
        logger.info(f"Pipeline retry completed pipeline={pipeline} success={result.success}")
        return result

    def cancel_analysis(self, session_id: str) -> int:
        """Signal every in-flight execution of ``session_id``; returns how many were signalled."""
        cancelled = 0
        for execution_id, (owner, token) in list(self._active.items()):
            if owner == session_id:
                token.cancel(f"Analysis cancelled for session {session_id}")
                self._active.pop(execution_id, None)
                cancelled += 1
        logger.info(f"Cancelled {cancelled} execution(s) for session_id={session_id}")
        return cancelled

    def get_active_executions(self) -> List[str]:
        return list(self._active)

    async def get_health(self) -> Dict[str, Any]:
        """Per-pipeline readiness plus rolling performance over recent runs."""
        try:
            executor_health = await self.executor.health_check()
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return {
                "healthy": False,
                "pipelines": {key: False for key in PIPELINE_KEYS},
                "components": {},
                "performance": {},
            }

        pipelines: Dict[str, bool] = {}
        for key, pipeline_type in PIPELINE_KEYS.items():
            prompt_id = get_pipeline_definition(pipeline_type).prompt_id
            pipelines[key] = executor_health["healthy"] and self.executor.registry.has(prompt_id)

        return {
            "healthy": all(pipelines.values()),
            "pipelines": pipelines,
            "components": executor_health["components"],
            "performance": self._average_performance(),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run_pipelines(
        self,
        execution_id: str,
        context: InsightsContext,
        config: InsightsConfig,
        keys: List[str],
        on_dispatch: Optional[Callable[[str], Awaitable[None]]] = None,
        on_settled: Optional[Callable[[str, PipelineResult], Awaitable[None]]] = None,
    ) -> Tuple[Dict[str, PipelineResult], float]:
        started = time.perf_counter()
        token = CancellationToken(execution_id)
        self._active[execution_id] = (context.session_id, token)

        async def run_one(key: str) -> PipelineResult:
            if on_dispatch is not None:
                await on_dispatch(key)
            result = await self._execute(key, context, config, token, execution_id)
            if on_settled is not None:
                await on_settled(key, result)
            return result

        tasks = {key: asyncio.create_task(run_one(key)) for key in keys}
        outcomes: Dict[str, PipelineResult] = {}
        try:
            if tasks:
                _, pending = await asyncio.wait(
                    tasks.values(), timeout=config.global_timeout_ms / 1000.0
                )
                for task in pending:
                    task.cancel()
                if pending:
                    await asyncio.gather(*pending, return_exceptions=True)

            for key, task in tasks.items():
                outcomes[key] = self._settle(key, task, config.global_timeout_ms)
                if task.cancelled() and on_settled is not None:
                    await on_settled(key, outcomes[key])
        finally:
            self._active.pop(execution_id, None)

        return outcomes, (time.perf_counter() - started) * 1000.0

    @staticmethod
    def _settle(key: str, task: asyncio.Task, global_timeout_ms: int) -> PipelineResult:
        pipeline = PIPELINE_KEYS[key].value
        if task.cancelled():
            logger.error(f"Pipeline {key} exceeded the global timeout of {global_timeout_ms}ms")
            return PipelineResult(
                success=False,
                error=PipelineServiceError(
                    ErrorCode.LLM_TIMEOUT,
                    f"Coordination timed out after {global_timeout_ms}ms",
                    pipeline_type=pipeline,
                ),
            )
        error = task.exception()
        if error is not None:
            logger.error(f"Pipeline {key} crashed: {error}")
            return PipelineResult(success=False, error=normalize_error(error, pipeline))
        return task.result()

    async def _execute(
        self,
        key: str,
        context: InsightsContext,
        config: InsightsConfig,
        token: CancellationToken,
        execution_id: str,
        skip_cache: bool = False,
    ) -> PipelineResult:
        pipeline_type = PIPELINE_KEYS[key]
        pipeline_config = config.pipelines.get(key, PipelineConfig())
        variables = dict(context.variables)
        variables.setdefault("transcript", context.transcript)
        options = AnalyzeOptions(
            patient_id=context.patient_id,
            session_id=context.session_id,
            user_id=context.user_id,
            organization_id=context.organization_id,
            variables=variables,
            skip_cache=skip_cache,
            cache_ttl=pipeline_config.cache_ttl,
            max_retries=pipeline_config.retry_attempts,
            cancel_token=token,
            metadata={"orchestration_id": execution_id, "pipeline_key": key},
        )

        if token.is_cancelled:
            return PipelineResult(success=False, cancelled=True)

        timeout_ms = pipeline_config.timeout_ms
        try:
            return await asyncio.wait_for(
                self.executor.analyze(pipeline_type, options), timeout=timeout_ms / 1000.0
            )
        except asyncio.TimeoutError:
            logger.error(f"Pipeline {key} timed out after {timeout_ms}ms execution_id={execution_id}")
            return PipelineResult(
                success=False,
                error=PipelineServiceError(
                    ErrorCode.LLM_TIMEOUT,
                    f"Pipeline timed out after {timeout_ms}ms",
                    pipeline_type=pipeline_type.value,
                ),
            )

    @staticmethod
    def _state_for(result: PipelineResult) -> PipelineState:
        now = time.time()
        metadata = result.metadata.to_dict() if result.metadata else None
        if metadata is not None:
            metadata["execution_time_ms"] = round(result.execution_time_ms, 2)
        if result.success:
            return PipelineState(
                status=PipelineStatus.SUCCESS, data=result.data, progress=100, end_time=now, metadata=metadata
            )
        if result.cancelled:
            return PipelineState(
                status=PipelineStatus.CANCELLED, error="Pipeline cancelled", end_time=now, metadata=metadata
            )
        return PipelineState(
            status=PipelineStatus.ERROR,
            error=result.error.message if result.error else "Pipeline execution failed",
            error_code=result.error.code.value if result.error else None,
            end_time=now,
            metadata=metadata,
        )

    def _fold(self, outcomes: Dict[str, PipelineResult], keys: List[str]) -> AIInsightsState:
        state = AIInsightsState()
        for key, result in outcomes.items():
            state.pipelines[key] = self._state_for(result)
        state.overall_progress = state.compute_overall_progress(keys)
        return state

    def _record_metrics(self, outcomes: Dict[str, PipelineResult], total_ms: float) -> OrchestrationMetrics:
        count = len(outcomes)
        successes = sum(1 for result in outcomes.values() if result.success)
        times = {key: result.execution_time_ms for key, result in outcomes.items()}
        metrics = OrchestrationMetrics(
            total_execution_time_ms=total_ms,
            parallel_execution_time_ms=max(times.values(), default=0.0),
            pipeline_execution_times=times,
            cache_hits={key: result.cache_hit for key, result in outcomes.items()},
            retry_count=sum(result.metadata.retry_count for result in outcomes.values() if result.metadata),
            success_rate=successes / count if count else 0.0,
            error_rate=(count - successes) / count if count else 0.0,
        )
        self._history.append(metrics)
        return metrics

    def _average_performance(self) -> Dict[str, float]:
        if not self._history:
            return {}
        runs = len(self._history)
        return {
            "average_execution_time_ms": round(sum(m.total_execution_time_ms for m in self._history) / runs),
            "average_success_rate": round(sum(m.success_rate for m in self._history) / runs * 100),
            "average_error_rate": round(sum(m.error_rate for m in self._history) / runs * 100),
            "runs": runs,
        }

    @staticmethod
    async def _notify(on_update: UpdateCallback, update: PipelineUpdate) -> None:
        try:
            outcome = on_update(update)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.warning(f"Update callback failed for pipeline={update.pipeline}: {e}")
