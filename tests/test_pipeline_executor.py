"""
Pipeline executor tests: the execution state machine, caching, retry policy,
cancellation and degradation when cache or audit misbehave.
"""

import asyncio

import pytest

from clinicinsights.adapters.cache import MemoryAICache
from clinicinsights.adapters.db.memory.context_aggregator import InMemoryContextAggregator
from clinicinsights.application.services.pipeline_executor import PipelineExecutor
from clinicinsights.core.cancellation import CancellationToken
from clinicinsights.core.exceptions import CacheError, ModelRateLimitError, ModelTimeoutError
from clinicinsights.domain.audit import AuditFilter
from clinicinsights.domain.errors import ErrorCode
from clinicinsights.domain.execution import AnalyzeOptions
from clinicinsights.domain.pipeline_types import PipelineType

from fakes import TRANSCRIPT


def options(**overrides) -> AnalyzeOptions:
    values = {
        "patient_id": "patient-1",
        "session_id": "session-1",
        "user_id": "clinician-7",
        "organization_id": "org-1",
        "variables": {"transcript": TRANSCRIPT},
    }
    values.update(overrides)
    return AnalyzeOptions(**values)


class BrokenCache(MemoryAICache):
    async def get(self, key):
        raise CacheError("cache backend unreachable")

    async def set(self, key, value, meta, ttl=None):
        raise CacheError("cache backend unreachable")


class FlakyAggregator(InMemoryContextAggregator):
    async def aggregate(self, patient_id, purpose, cancel_token=None):
        raise RuntimeError("chart database went away")


# -----------------------------------------------------------------------------
# Happy path and caching
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_billing_cpt_end_to_end(executor, model_endpoint, audit_service):
    first = await executor.analyze("billing_cpt", options())

    assert first.success
    assert first.error is None
    assert first.data["cpt_codes"][0]["code"] == "90834"
    assert first.metadata.cache_hit is False
    assert first.metadata.model_used == "chat-deployment"
    assert first.metadata.prompt_version == "1.0.0"
    assert first.metadata.token_usage.total_tokens == 200
    assert "llm_execution" in first.metadata.latency

    second = await executor.analyze(PipelineType.BILLING_CPT, options())
    assert second.success
    assert second.cache_hit
    assert second.data == first.data
    assert model_endpoint.calls == 1

    await audit_service.flush()
    result = await audit_service.get_executions(AuditFilter(patient_id="patient-1"))
    assert result.total == 2
    assert {entry.metadata["status"] for entry in result.entries} == {"completed"}
    assert sorted(entry.performance.cache_hit for entry in result.entries) == [False, True]


@pytest.mark.asyncio
async def test_reasoning_pipelines_use_the_reasoning_deployment(executor, model_endpoint):
    result = await executor.analyze("safety_check", options())
    assert result.success
    assert model_endpoint.requests[0].model == "reasoning-deployment"
    assert model_endpoint.requests[0].output_schema is not None
    assert TRANSCRIPT in model_endpoint.requests[0].prompt


@pytest.mark.asyncio
async def test_skip_cache_still_stores_fresh_result(executor, model_endpoint):
    await executor.analyze("billing_cpt", options())
    fresh = await executor.analyze("billing_cpt", options(skip_cache=True))
    assert fresh.success
    assert fresh.cache_hit is False
    assert model_endpoint.calls == 2

    cached = await executor.analyze("billing_cpt", options())
    assert cached.cache_hit
    assert model_endpoint.calls == 2


@pytest.mark.asyncio
async def test_different_variables_miss_the_cache(executor, model_endpoint):
    await executor.analyze("billing_cpt", options())
    await executor.analyze("billing_cpt", options(variables={"transcript": "A different session."}))
    assert model_endpoint.calls == 2


@pytest.mark.asyncio
async def test_invalidate_patient(executor, model_endpoint):
    await executor.analyze("billing_cpt", options())
    await executor.analyze("safety_check", options())

    assert await executor.invalidate_patient("patient-1", "billing_cpt") == 1
    await executor.analyze("billing_cpt", options())
    assert model_endpoint.calls_for("billing_cpt") == 2

    assert await executor.invalidate_patient("patient-1") == 2
    stats = await executor.get_cache_stats()
    assert stats.total_keys == 0


# -----------------------------------------------------------------------------
# Failures and retries
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_unknown_pipeline_type(executor, model_endpoint):
    result = await executor.analyze("horoscope", options())
    assert not result.success
    assert result.error.code is ErrorCode.CONFIG_ERROR
    assert model_endpoint.calls == 0


@pytest.mark.asyncio
async def test_timeouts_back_off_exponentially_up_to_the_code_limit(executor, model_endpoint, sleeps):
    model_endpoint.failures["billing_cpt"] = ModelTimeoutError()

    result = await executor.analyze("billing_cpt", options(max_retries=5))

    assert not result.success
    assert result.error.code is ErrorCode.LLM_TIMEOUT
    assert result.metadata.retry_count == 3
    assert model_endpoint.calls == 4
    assert sleeps == [1.0, 2.0, 4.0]


@pytest.mark.asyncio
async def test_retry_budget_caps_attempts(executor, model_endpoint, sleeps):
    model_endpoint.failures["billing_cpt"] = ModelTimeoutError()

    result = await executor.analyze("billing_cpt", options(max_retries=1))

    assert result.error.code is ErrorCode.LLM_TIMEOUT
    assert model_endpoint.calls == 2
    assert sleeps == [1.0]


@pytest.mark.asyncio
async def test_success_after_one_timeout(executor, model_endpoint, sleeps, audit_service):
    model_endpoint.script = [ModelTimeoutError()]

    result = await executor.analyze("billing_cpt", options(execution_id="exec-1"))

    assert result.success
    assert result.metadata.retry_count == 1
    assert result.metadata.execution_id == "exec-1-retry1"
    assert sleeps == [1.0]

    await audit_service.flush()
    failed = await audit_service.get_executions(AuditFilter(execution_id="exec-1"))
    assert failed.entries[0].response.error_code == "LLM_001"
    assert failed.entries[0].metadata["status"] == "failed"
    retried = await audit_service.get_executions(AuditFilter(execution_id="exec-1-retry1"))
    assert retried.entries[0].response.success
    assert retried.entries[0].metadata["retry_count"] == 1


@pytest.mark.asyncio
async def test_rate_limit_waits_for_retry_after(executor, model_endpoint, sleeps):
    model_endpoint.script = [ModelRateLimitError(retry_after_ms=1500)]

    result = await executor.analyze("billing_cpt", options())

    assert result.success
    assert sleeps == [1.5]


@pytest.mark.asyncio
async def test_missing_patient_fails_without_retry(executor, model_endpoint, sleeps):
    result = await executor.analyze("billing_cpt", options(patient_id="unknown"))

    assert not result.success
    assert result.error.code is ErrorCode.CONTEXT_NOT_FOUND
    assert result.error.details["state"] == "context_aggregation"
    assert result.error.pipeline_type == "billing_cpt"
    assert sleeps == []
    assert model_endpoint.calls == 0


@pytest.mark.asyncio
async def test_context_source_errors_retry_linearly(
    registry, cache, audit_service, model_endpoint, settings, fake_sleep, sleeps
):
    executor = PipelineExecutor(
        registry, cache, audit_service, FlakyAggregator(), model_endpoint, settings=settings, sleep=fake_sleep
    )

    result = await executor.analyze("billing_cpt", options())

    assert result.error.code is ErrorCode.CONTEXT_AGGREGATION_FAILED
    assert "chart database went away" in result.error.message
    assert sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_insufficient_context(executor, model_endpoint):
    result = await executor.analyze("treatment_progress", options(patient_id="patient-no-plan"))
    assert result.error.code is ErrorCode.INSUFFICIENT_CONTEXT
    assert model_endpoint.calls == 0


@pytest.mark.asyncio
async def test_unknown_prompt_version(executor):
    result = await executor.analyze("billing_cpt", options(prompt_version="9.9.9"))
    assert result.error.code is ErrorCode.PROMPT_NOT_FOUND
    assert result.error.details["state"] == "cache_check"


@pytest.mark.asyncio
async def test_unparseable_output_is_not_retried(executor, model_endpoint, sleeps):
    model_endpoint.script = ["I could not write a note for this session."]

    result = await executor.analyze("clinical_note", options())

    assert result.error.code is ErrorCode.OUTPUT_VALIDATION_FAILED
    assert result.error.details["state"] == "output_validation"
    assert model_endpoint.calls == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_configured_fallback_replaces_unparseable_output(
    registry, cache, audit_service, context_aggregator, model_endpoint, settings, fake_sleep
):
    fallback = {"sections": [], "confidence": 0.0}
    executor = PipelineExecutor(
        registry,
        cache,
        audit_service,
        context_aggregator,
        model_endpoint,
        settings=settings,
        fallbacks={PipelineType.CLINICAL_NOTE: fallback},
        sleep=fake_sleep,
    )
    model_endpoint.script = ["I could not write a note for this session."]

    result = await executor.analyze("clinical_note", options())

    assert result.success
    assert result.data == fallback


# -----------------------------------------------------------------------------
# Cancellation
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cancelled_before_start(executor, model_endpoint):
    token = CancellationToken()
    token.cancel()

    result = await executor.analyze("billing_cpt", options(cancel_token=token))

    assert result.cancelled
    assert not result.success
    assert result.error is None
    assert model_endpoint.calls == 0


@pytest.mark.asyncio
async def test_cancelled_during_model_call(executor, model_endpoint, cache, audit_service):
    model_endpoint.delay = 5
    token = CancellationToken()

    task = asyncio.create_task(executor.analyze("billing_cpt", options(cancel_token=token, execution_id="exec-c")))
    await model_endpoint.started.wait()
    token.cancel()
    result = await task

    assert result.cancelled
    assert result.error is None
    assert await cache.keys() == []

    await audit_service.flush()
    entry = (await audit_service.get_executions(AuditFilter(execution_id="exec-c"))).entries[0]
    assert entry.metadata["status"] == "cancelled"
    assert entry.response.error_code == "CANCELLED"


# -----------------------------------------------------------------------------
# Degradation
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_broken_cache_degrades_to_direct_execution(
    registry, audit_service, context_aggregator, model_endpoint, settings, fake_sleep
):
    executor = PipelineExecutor(
        registry,
        BrokenCache(cleanup_interval_seconds=0),
        audit_service,
        context_aggregator,
        model_endpoint,
        settings=settings,
        sleep=fake_sleep,
    )

    first = await executor.analyze("billing_cpt", options())
    second = await executor.analyze("billing_cpt", options())

    assert first.success and second.success
    assert not second.cache_hit
    assert model_endpoint.calls == 2


@pytest.mark.asyncio
async def test_unavailable_audit_store_does_not_fail_the_pipeline(executor, audit_store, audit_service):
    audit_store.available = False

    result = await executor.analyze("billing_cpt", options())
    await audit_service.flush()

    assert result.success
    assert (await audit_service.health_check()).healthy is False


@pytest.mark.asyncio
async def test_batch_isolates_failures(executor):
    results = await executor.analyze_batch(
        {
            "cpt": ("billing_cpt", options()),
            "bogus": ("not_a_pipeline", options()),
            "missing": ("safety_check", options(patient_id="unknown")),
        }
    )

    assert results["cpt"].success
    assert results["bogus"].error.code is ErrorCode.CONFIG_ERROR
    assert results["missing"].error.code is ErrorCode.CONTEXT_NOT_FOUND


@pytest.mark.asyncio
async def test_health_check(executor, model_endpoint):
    health = await executor.health_check()
    assert health == {
        "healthy": True,
        "components": {"cache": True, "audit": True, "context_aggregator": True, "model_endpoint": True},
    }

    model_endpoint.healthy = False
    health = await executor.health_check()
    assert health["healthy"] is False
    assert health["components"]["model_endpoint"] is False
