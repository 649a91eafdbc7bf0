"""
Insights orchestrator tests: concurrent coordination, streaming updates,
per-pipeline and global timeouts, cancellation and health.
"""

import asyncio

import pytest

from clinicinsights.application.services.insights_orchestrator import (
    InsightsConfig,
    InsightsContext,
    InsightsOrchestrator,
    PipelineStatus,
)
from clinicinsights.core.exceptions import ModelInvalidResponseError

from fakes import TRANSCRIPT

ALL_KEYS = ["safety", "billing", "progress", "note"]


@pytest.fixture
def orchestrator(executor, settings):
    return InsightsOrchestrator(executor, settings=settings.insights)


def session_context(config=None, session_id="session-1") -> InsightsContext:
    return InsightsContext(
        session_id=session_id,
        patient_id="patient-1",
        user_id="clinician-7",
        organization_id="org-1",
        transcript=TRANSCRIPT,
        config=config,
    )


# -----------------------------------------------------------------------------
# Coordination
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_all_pipelines_succeed(orchestrator, model_endpoint):
    state = await orchestrator.coordinate_analysis(session_context())

    assert sorted(state.successful()) == sorted(ALL_KEYS)
    assert state.overall_progress == 100
    assert state["billing"].data["cpt_codes"][0]["code"] == "90834"
    assert state["billing"].metadata["execution_time_ms"] >= 0
    assert model_endpoint.calls == 4
    assert orchestrator.get_active_executions() == []


@pytest.mark.asyncio
async def test_one_failure_does_not_affect_the_others(orchestrator, model_endpoint):
    model_endpoint.failures["safety_check"] = ModelInvalidResponseError("Model returned an empty response")

    state = await orchestrator.coordinate_analysis(session_context())

    assert state["safety"].status is PipelineStatus.ERROR
    assert state["safety"].error_code == "LLM_003"
    assert state["safety"].progress == 0
    assert state.failed() == ["safety"]
    assert sorted(state.successful()) == ["billing", "note", "progress"]
    assert state.overall_progress == 75
    # the invalid-response retry allowance is two
    assert model_endpoint.calls_for("safety_check") == 3


@pytest.mark.asyncio
async def test_disabled_pipeline_stays_idle(orchestrator, model_endpoint):
    config = InsightsConfig()
    config.pipelines["progress"].enabled = False

    state = await orchestrator.coordinate_analysis(session_context(config))

    assert state["progress"].status is PipelineStatus.IDLE
    assert state.overall_progress == 100
    assert model_endpoint.calls_for("treatment_progress") == 0


def test_enabled_pipelines_are_ordered_by_priority():
    assert InsightsConfig().enabled_pipelines() == ["safety", "billing", "progress", "note"]


@pytest.mark.asyncio
async def test_pipeline_timeout(orchestrator, model_endpoint):
    config = InsightsConfig()
    config.pipelines["note"].timeout_ms = 50
    model_endpoint.delays["clinical_note"] = 5

    state = await orchestrator.coordinate_analysis(session_context(config))

    assert state["note"].status is PipelineStatus.ERROR
    assert state["note"].error_code == "LLM_001"
    assert state["note"].error == "Pipeline timed out after 50ms"
    assert sorted(state.successful()) == ["billing", "progress", "safety"]


@pytest.mark.asyncio
async def test_global_timeout(orchestrator, model_endpoint):
    config = InsightsConfig(global_timeout_ms=50)
    model_endpoint.delays["safety_check"] = 5

    state = await orchestrator.coordinate_analysis(session_context(config))

    assert state["safety"].status is PipelineStatus.ERROR
    assert state["safety"].error == "Coordination timed out after 50ms"
    assert state["safety"].error_code == "LLM_001"
    assert sorted(state.successful()) == ["billing", "note", "progress"]
    assert orchestrator.get_active_executions() == []


# -----------------------------------------------------------------------------
# Streaming
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_stream_reports_dispatch_and_completion(orchestrator):
    updates = []

    state = await orchestrator.stream_analysis(session_context(), updates.append)

    for key in ALL_KEYS:
        mine = [update for update in updates if update.pipeline == key]
        assert [update.status for update in mine] == [PipelineStatus.LOADING, PipelineStatus.SUCCESS]
        assert [update.progress for update in mine] == [10, 100]
        assert mine[1].data is not None
    assert state.overall_progress == 100


@pytest.mark.asyncio
async def test_stream_accepts_async_callbacks(orchestrator):
    updates = []

    async def on_update(update):
        updates.append((update.pipeline, update.status))

    await orchestrator.stream_analysis(session_context(), on_update)

    assert len(updates) == 8
    assert ("note", PipelineStatus.SUCCESS) in updates


@pytest.mark.asyncio
async def test_failing_callback_does_not_break_the_run(orchestrator):
    def on_update(update):
        raise RuntimeError("websocket closed")

    state = await orchestrator.stream_analysis(session_context(), on_update)

    assert sorted(state.successful()) == sorted(ALL_KEYS)


@pytest.mark.asyncio
async def test_stream_reports_global_timeout(orchestrator, model_endpoint):
    config = InsightsConfig(global_timeout_ms=50)
    model_endpoint.delays["clinical_note"] = 5
    updates = []

    await orchestrator.stream_analysis(session_context(config), updates.append)

    final = [update for update in updates if update.pipeline == "note"][-1]
    assert final.status is PipelineStatus.ERROR
    assert final.error == "Coordination timed out after 50ms"


# -----------------------------------------------------------------------------
# Retry and cancellation
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_retry_pipeline_bypasses_the_cache(orchestrator, model_endpoint):
    await orchestrator.coordinate_analysis(session_context())

    result = await orchestrator.retry_pipeline("billing", session_context())

    assert result.success
    assert not result.cache_hit
    assert model_endpoint.calls_for("billing_cpt") == 2
    assert orchestrator.get_active_executions() == []


@pytest.mark.asyncio
async def test_retry_unknown_pipeline(orchestrator):
    with pytest.raises(ValueError):
        await orchestrator.retry_pipeline("horoscope", session_context())


@pytest.mark.asyncio
async def test_cancel_analysis(orchestrator, model_endpoint):
    model_endpoint.delay = 5

    task = asyncio.create_task(orchestrator.coordinate_analysis(session_context()))
    await model_endpoint.started.wait()

    assert len(orchestrator.get_active_executions()) == 1
    assert orchestrator.cancel_analysis("session-1") == 1
    assert orchestrator.get_active_executions() == []

    state = await task
    for key in ALL_KEYS:
        assert state[key].status is PipelineStatus.CANCELLED
    assert state.overall_progress == 0


def test_cancel_unknown_session(orchestrator):
    assert orchestrator.cancel_analysis("session-404") == 0


@pytest.mark.asyncio
async def test_cancel_matches_the_session_id_exactly(orchestrator, model_endpoint):
    model_endpoint.delay = 0.3

    short = asyncio.create_task(orchestrator.coordinate_analysis(session_context(session_id="s1")))
    longer = asyncio.create_task(orchestrator.coordinate_analysis(session_context(session_id="s10")))
    while model_endpoint.calls < 8:
        await asyncio.sleep(0.01)

    assert orchestrator.cancel_analysis("s1") == 1
    assert len(orchestrator.get_active_executions()) == 1

    short_state, longer_state = await asyncio.gather(short, longer)
    for key in ALL_KEYS:
        assert short_state[key].status is PipelineStatus.CANCELLED
        assert longer_state[key].status is PipelineStatus.SUCCESS


@pytest.mark.asyncio
async def test_concurrent_runs_of_one_session_are_tracked_separately(orchestrator, model_endpoint):
    model_endpoint.delay = 0.3

    first = asyncio.create_task(orchestrator.coordinate_analysis(session_context()))
    second = asyncio.create_task(orchestrator.coordinate_analysis(session_context()))
    while model_endpoint.calls < 8:
        await asyncio.sleep(0.01)

    active = orchestrator.get_active_executions()
    assert len(active) == 2
    assert len(set(active)) == 2

    assert orchestrator.cancel_analysis("session-1") == 2
    for state in await asyncio.gather(first, second):
        assert state.overall_progress == 0


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_health_includes_rolling_performance(orchestrator, model_endpoint):
    health = await orchestrator.get_health()
    assert health["healthy"] is True
    assert health["performance"] == {}

    model_endpoint.failures["safety_check"] = ModelInvalidResponseError("empty")
    await orchestrator.coordinate_analysis(session_context())
    del model_endpoint.failures["safety_check"]
    await orchestrator.coordinate_analysis(session_context())

    health = await orchestrator.get_health()
    assert health["pipelines"] == {key: True for key in ALL_KEYS}
    assert health["components"]["model_endpoint"] is True
    assert health["performance"]["runs"] == 2
    assert health["performance"]["average_success_rate"] == 88
    assert health["performance"]["average_error_rate"] == 12


@pytest.mark.asyncio
async def test_unhealthy_model_endpoint_marks_every_pipeline(orchestrator, model_endpoint):
    model_endpoint.healthy = False
    health = await orchestrator.get_health()
    assert health["healthy"] is False
    assert health["pipelines"] == {key: False for key in ALL_KEYS}
