"""
Patient context assembly tests.
"""

import pytest

from clinicinsights.adapters.db.memory.context_aggregator import InMemoryContextAggregator
from clinicinsights.core.exceptions import ContextNotFoundError, InsufficientContextError
from clinicinsights.domain.patient_context import (
    MAX_TRANSCRIPT_CHARS,
    TRANSCRIPT_TRUNCATION_NOTE,
    assemble_context,
)


def test_billing_keeps_latest_session_with_transcript(chart):
    sessions = sorted(chart["sessions"], key=lambda s: s["date"], reverse=True)
    context = assemble_context("patient-1", "billing", chart["patient"], sessions)

    assert [s["session_id"] for s in context["recent_sessions"]] == ["session-1"]
    assert "transcript" in context["recent_sessions"][0]
    assert context["medications"] == []
    assert context["metadata"]["purpose"] == "billing"
    assert context["metadata"]["token_count"] > 0


def test_safety_context_drops_transcripts_and_keeps_alerts(chart):
    context = assemble_context(
        "patient-1",
        "safety_assessment",
        chart["patient"],
        chart["sessions"],
        chart["assessments"],
        chart["alerts"][:1],
    )
    assert context["recent_sessions"] == []
    assert len(context["assessment_history"]) == 2
    assert context["alerts"][0]["title"] == "Missed medication refill"
    assert "Alert (medium): Missed medication refill" in context["summary"]
    assert "Medication: Sertraline 50mg" in context["summary"]


def test_treatment_progress_requires_goals(chart):
    context = assemble_context("patient-1", "treatment_progress", chart["patient"])
    assert context["treatment_goals"].startswith("Sleep at least six hours")

    with pytest.raises(InsufficientContextError) as exc_info:
        assemble_context("patient-2", "treatment_progress", {"demographics": {}})
    assert exc_info.value.error_code == "CONTEXT_003"


def test_long_transcripts_are_shortened_to_fit(chart):
    sessions = [{"session_id": "s-long", "date": "2026-10-02", "transcript": "a" * 20000}]
    context = assemble_context("patient-1", "billing", chart["patient"], sessions)

    transcript = context["recent_sessions"][0]["transcript"]
    assert context["metadata"]["truncated"] is True
    assert transcript.endswith(TRANSCRIPT_TRUNCATION_NOTE)
    assert len(transcript) == MAX_TRANSCRIPT_CHARS + len(TRANSCRIPT_TRUNCATION_NOTE)


@pytest.mark.asyncio
async def test_in_memory_aggregator(context_aggregator):
    context = await context_aggregator.aggregate("patient-1", "safety_assessment")
    assert [a["title"] for a in context["alerts"]] == ["Missed medication refill"]
    assert context["assessment_history"][0]["date"] == "2026-10-01"

    billing = await context_aggregator.aggregate("patient-1", "billing")
    assert billing["recent_sessions"][0]["session_id"] == "session-1"

    with pytest.raises(ContextNotFoundError):
        await context_aggregator.aggregate("unknown", "billing")


@pytest.mark.asyncio
async def test_aggregator_health_defaults_to_true():
    assert await InMemoryContextAggregator().health_check() is True
