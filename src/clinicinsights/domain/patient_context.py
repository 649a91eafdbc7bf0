"""
Purpose-specific patient context assembly.

Each pipeline purpose needs a different slice of the chart. Context is kept
under a per-purpose token budget: transcripts are shortened first, then older
sessions and assessments are dropped.
"""

import json
import math
from typing import Any, Dict, List, Optional

from ..core.exceptions import InsufficientContextError

CHARS_PER_TOKEN = 4
MAX_TRANSCRIPT_CHARS = 4000
TRANSCRIPT_TRUNCATION_NOTE = "... [transcript truncated for context optimization]"

REQUIRED_SECTIONS_BY_PURPOSE: Dict[str, List[str]] = {
    "safety_assessment": ["demographics", "medications", "assessment_history", "alerts"],
    "billing": ["demographics", "diagnoses", "recent_sessions"],
    "treatment_progress": ["demographics", "treatment_plan", "assessment_history", "recent_sessions"],
    "chat": ["demographics", "diagnoses", "medications", "recent_sessions"],
    "documentation": ["demographics", "diagnoses", "medications", "treatment_plan"],
}
GENERAL_SECTIONS = ["demographics", "diagnoses", "medications", "treatment_plan"]

TOKEN_LIMITS: Dict[str, int] = {
    "safety_assessment": 3000,
    "billing": 2500,
    "treatment_progress": 3500,
    "chat": 4000,
    "documentation": 4000,
}
DEFAULT_TOKEN_LIMIT = 4000

# How many sessions / assessments each purpose looks back over
SESSION_LIMITS: Dict[str, int] = {"billing": 1}
ASSESSMENT_LIMITS: Dict[str, int] = {"safety_assessment": 5}
DEFAULT_SESSION_LIMIT = 3
DEFAULT_ASSESSMENT_LIMIT = 3


def required_sections(purpose: str) -> List[str]:
    return REQUIRED_SECTIONS_BY_PURPOSE.get(purpose, GENERAL_SECTIONS)


def session_limit(purpose: str) -> int:
    return SESSION_LIMITS.get(purpose, DEFAULT_SESSION_LIMIT)


def assessment_limit(purpose: str) -> int:
    return ASSESSMENT_LIMITS.get(purpose, DEFAULT_ASSESSMENT_LIMIT)


def includes_transcripts(purpose: str) -> bool:
    return purpose in ("billing", "chat")


def estimate_context_tokens(context: Dict[str, Any]) -> int:
    return math.ceil(len(json.dumps(context, default=str)) / CHARS_PER_TOKEN)


def _truncate_transcript(session: Dict[str, Any]) -> Dict[str, Any]:
    transcript = session.get("transcript")
    if not isinstance(transcript, str) or len(transcript) <= MAX_TRANSCRIPT_CHARS:
        return session
    return {**session, "transcript": transcript[:MAX_TRANSCRIPT_CHARS] + TRANSCRIPT_TRUNCATION_NOTE}


def optimize_for_token_limit(context: Dict[str, Any], purpose: str) -> Dict[str, Any]:
    limit = TOKEN_LIMITS.get(purpose, DEFAULT_TOKEN_LIMIT)
    metadata = context["metadata"]
    metadata["token_count"] = estimate_context_tokens(context)
    if metadata["token_count"] <= limit:
        return context

    context["recent_sessions"] = [_truncate_transcript(s) for s in context.get("recent_sessions", [])]
    metadata["truncated"] = True
    metadata["token_count"] = estimate_context_tokens(context)
    if metadata["token_count"] <= limit:
        return context

    context["recent_sessions"] = context.get("recent_sessions", [])[:1]
    context["assessment_history"] = context.get("assessment_history", [])[:3]
    metadata["token_count"] = estimate_context_tokens(context)
    return context


def summarize_context(context: Dict[str, Any]) -> str:
    """Plain-text rendering used as the ``patient_context`` prompt variable."""
    lines: List[str] = []
    demographics = context.get("demographics") or {}
    if demographics:
        lines.append("Demographics: " + ", ".join(f"{k}={v}" for k, v in demographics.items()))
    for diagnosis in context.get("diagnoses", []):
        lines.append(f"Diagnosis: {diagnosis.get('code', '')} {diagnosis.get('description', '')}".rstrip())
    for medication in context.get("medications", []):
        lines.append(f"Medication: {medication.get('name', '')} {medication.get('dosage', '')}".rstrip())
    plan = context.get("treatment_plan")
    if plan:
        for goal in plan.get("goals", []):
            lines.append(f"Treatment goal: {goal.get('text', goal) if isinstance(goal, dict) else goal}")
    for assessment in context.get("assessment_history", []):
        lines.append(
            f"Assessment {assessment.get('type', '')} on {assessment.get('date', '')}: "
            f"score={assessment.get('score', '')}"
        )
    for alert in context.get("alerts", []):
        lines.append(f"Alert ({alert.get('severity', '')}): {alert.get('title', '')}")
    for session in context.get("recent_sessions", []):
        lines.append(f"Session {session.get('session_id', '')} on {session.get('date', '')}")
        if session.get("transcript"):
            lines.append(f"Transcript: {session['transcript']}")
    return "\n".join(lines)


def assemble_context(
    patient_id: str,
    purpose: str,
    patient: Dict[str, Any],
    sessions: Optional[List[Dict[str, Any]]] = None,
    assessments: Optional[List[Dict[str, Any]]] = None,
    alerts: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """Select the sections ``purpose`` needs from raw chart records.

    Raises InsufficientContextError when a treatment-progress review has no
    treatment plan goals to measure against.
    """
    sections = required_sections(purpose)
    context: Dict[str, Any] = {
        "patient_id": patient_id,
        "demographics": patient.get("demographics") or {},
        "diagnoses": list(patient.get("diagnoses") or []) if "diagnoses" in sections else [],
        "medications": list(patient.get("medications") or []) if "medications" in sections else [],
        "treatment_plan": patient.get("treatment_plan") if "treatment_plan" in sections else None,
        "recent_sessions": [],
        "assessment_history": [],
        "alerts": [],
        "metadata": {"purpose": purpose, "truncated": False, "token_count": 0},
    }

    if "recent_sessions" in sections:
        keep_transcripts = includes_transcripts(purpose)
        context["recent_sessions"] = [
            session if keep_transcripts else {k: v for k, v in session.items() if k != "transcript"}
            for session in (sessions or [])[: session_limit(purpose)]
        ]
    if "assessment_history" in sections:
        context["assessment_history"] = list(assessments or [])[: assessment_limit(purpose)]
    if "alerts" in sections:
        context["alerts"] = list(alerts or [])

    if purpose == "treatment_progress":
        plan = context["treatment_plan"] or {}
        if not plan.get("goals"):
            raise InsufficientContextError(
                f"Patient {patient_id} has no treatment plan goals to assess progress against",
                {"patient_id": patient_id, "purpose": purpose},
            )

    plan = context["treatment_plan"] or {}
    if plan.get("goals"):
        context["treatment_goals"] = "\n".join(
            goal.get("text", "") if isinstance(goal, dict) else str(goal) for goal in plan["goals"]
        )

    context = optimize_for_token_limit(context, purpose)
    context["summary"] = summarize_context(context)
    return context
