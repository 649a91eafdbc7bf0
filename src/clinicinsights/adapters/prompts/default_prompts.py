"""
Built-in prompt templates, one per pipeline type.

Every template is registered at version 1.0.0. Deployments override the
wording by registering a higher version under the same id.
"""

import logging
from typing import List

from clinicinsights.application.services.prompt_registry import PromptRegistry
from clinicinsights.domain.pipeline_types import PIPELINE_DEFINITIONS, PipelineType
from clinicinsights.domain.prompt_template import (
    ExecutionConfig,
    PromptTemplate,
    PromptVariable,
    TokenEstimate,
)
from clinicinsights.domain.schemas import get_schema_for_pipeline

logger = logging.getLogger(__name__)

DEFAULT_VERSION = "1.0.0"

TRANSCRIPT = PromptVariable("transcript", "Session transcript text")
PATIENT_CONTEXT = PromptVariable("patient_context", "Aggregated patient history and chart summary")


SAFETY_CHECK_TEMPLATE = """You are a licensed behavioral health clinician performing a safety risk assessment.

Review the session transcript and patient context below. Identify risk indicators
(suicide, self-harm, violence, abuse, substance use, medication non-compliance,
social isolation), protective factors and any alerts that require clinician action.

PATIENT CONTEXT:
{{ patient_context }}

PRIOR ASSESSMENTS:
{{ assessment_history }}

SESSION TRANSCRIPT:
{{ transcript }}

Return a JSON object with: risk_indicators, risk_assessment (overall_risk,
risk_score 0-10, imminent_danger, requires_immediate_action, confidence),
alerts, protective_factors, recommendations, follow_up_required, confidence
and warnings. Only cite evidence present in the transcript."""

BILLING_CPT_TEMPLATE = """You are a certified medical coder for outpatient behavioral health.

Suggest CPT codes supported by the documentation below. Prefer time-based
psychotherapy codes when session duration is documented.

SESSION INFORMATION:
{{ session_info }}

PATIENT CONTEXT:
{{ patient_context }}

SESSION TRANSCRIPT:
{{ transcript }}

Return a JSON object with: session_type, duration_minutes, cpt_codes (code,
description, confidence, modifiers, units, primary_code), total_units,
documentation, medical_necessity, audit_risk, confidence and warnings."""

BILLING_ICD10_TEMPLATE = """You are a certified medical coder extracting diagnoses.

List ICD-10-CM codes that are explicitly supported by the transcript and chart.
Do not infer diagnoses that are not documented.

PATIENT CONTEXT:
{{ patient_context }}

SESSION TRANSCRIPT:
{{ transcript }}

Return a JSON object with: icd10_codes (code, description, confidence,
supporting_evidence), primary_diagnosis, differential_diagnoses, confidence
and warnings."""

TREATMENT_PROGRESS_TEMPLATE = """You are a clinical supervisor reviewing treatment progress.

Assess progress toward each documented treatment goal using the session
transcript and patient history.

TREATMENT GOALS:
{{ treatment_goals }}

PATIENT CONTEXT:
{{ patient_context }}

SESSION TRANSCRIPT:
{{ transcript }}

Return a JSON object with: goal_progress, progress_indicators, barriers,
overall_effectiveness, recommendations, summary_narrative, next_review_date,
confidence and warnings."""

CHAT_WITH_CHART_TEMPLATE = """You answer clinician questions about a patient's chart.

Answer only from the chart and transcript below. If the answer is not in the
record, say so.

PATIENT CHART:
{{ patient_context }}

RECENT SESSION TRANSCRIPT:
{{ transcript }}

QUESTION:
{{ question }}

Return a JSON object with: answer, citations (source, excerpt),
follow_up_questions and confidence."""

CLINICAL_NOTE_TEMPLATE = """You are a behavioral health clinician writing a SOAP progress note.

Write the note from the session transcript and patient context. Keep each
section factual and concise.

PATIENT CONTEXT:
{{ patient_context }}

SESSION TRANSCRIPT:
{{ transcript }}

Return a JSON object with: sections (type subjective|objective|assessment|plan,
title, content, confidence), confidence and metadata."""


def _template(
    pipeline_type: PipelineType,
    name: str,
    category: str,
    text: str,
    variables: tuple,
    token_estimate: TokenEstimate,
) -> PromptTemplate:
    definition = PIPELINE_DEFINITIONS[pipeline_type]
    return PromptTemplate(
        id=definition.prompt_id,
        version=DEFAULT_VERSION,
        template=text,
        category=category,
        name=name,
        purpose=definition.purpose,
        variables=variables,
        output_schema=get_schema_for_pipeline(pipeline_type),
        execution=ExecutionConfig(
            temperature=definition.temperature,
            max_tokens=definition.max_tokens,
        ),
        token_estimate=token_estimate,
        tags=(pipeline_type.value,),
        author="clinical-ai",
    )


def build_default_prompts() -> List[PromptTemplate]:
    return [
        _template(
            PipelineType.SAFETY_CHECK,
            "Comprehensive Safety Risk Assessment",
            "safety",
            SAFETY_CHECK_TEMPLATE,
            (
                PATIENT_CONTEXT,
                TRANSCRIPT,
                PromptVariable(
                    "assessment_history",
                    "Previous risk assessments",
                    required=False,
                    default="No prior assessments on record.",
                ),
            ),
            TokenEstimate(min=800, max=6000, typical=2500),
        ),
        _template(
            PipelineType.BILLING_CPT,
            "CPT Code Suggestion",
            "billing",
            BILLING_CPT_TEMPLATE,
            (
                PATIENT_CONTEXT,
                TRANSCRIPT,
                PromptVariable(
                    "session_info",
                    "Session date, duration and modality",
                    required=False,
                    default="Not documented.",
                ),
            ),
            TokenEstimate(min=600, max=5000, typical=2000),
        ),
        _template(
            PipelineType.BILLING_ICD10,
            "ICD-10 Diagnosis Extraction",
            "billing",
            BILLING_ICD10_TEMPLATE,
            (PATIENT_CONTEXT, TRANSCRIPT),
            TokenEstimate(min=600, max=5000, typical=2000),
        ),
        _template(
            PipelineType.TREATMENT_PROGRESS,
            "Treatment Progress Assessment",
            "clinical",
            TREATMENT_PROGRESS_TEMPLATE,
            (
                PATIENT_CONTEXT,
                TRANSCRIPT,
                PromptVariable(
                    "treatment_goals",
                    "Active treatment plan goals",
                    required=False,
                    default="No treatment goals documented.",
                ),
            ),
            TokenEstimate(min=800, max=7000, typical=3000),
        ),
        _template(
            PipelineType.CHAT_WITH_CHART,
            "Chat With Chart",
            "chat",
            CHAT_WITH_CHART_TEMPLATE,
            (
                PATIENT_CONTEXT,
                PromptVariable("question", "Clinician question"),
                PromptVariable(
                    "transcript",
                    "Most recent session transcript",
                    required=False,
                    default="No recent session transcript.",
                ),
            ),
            TokenEstimate(min=400, max=6000, typical=1500),
        ),
        _template(
            PipelineType.CLINICAL_NOTE,
            "Clinical Note Generation",
            "clinical",
            CLINICAL_NOTE_TEMPLATE,
            (PATIENT_CONTEXT, TRANSCRIPT),
            TokenEstimate(min=800, max=7000, typical=3000),
        ),
    ]


def register_default_prompts(registry: PromptRegistry) -> int:
    """Register the built-in templates; returns how many were registered."""
    templates = build_default_prompts()
    for template in templates:
        warnings = registry.register(template)
        for warning in warnings:
            logger.warning(f"Default prompt {template.id}@{template.version}: {warning}")
    logger.info(f"Registered {len(templates)} default prompt template(s)")
    return len(templates)
