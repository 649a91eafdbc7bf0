"""
Pipeline types and their static execution tables.

Each pipeline type maps to one prompt id, one model role, a sampling
temperature, an output token cap and whether the model is asked for
schema-conforming structured output.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict


class PipelineType(str, Enum):
    """Independent analysis kinds run against a clinical session."""

    SAFETY_CHECK = "safety_check"
    BILLING_CPT = "billing_cpt"
    BILLING_ICD10 = "billing_icd10"
    TREATMENT_PROGRESS = "treatment_progress"
    CHAT_WITH_CHART = "chat_with_chart"
    CLINICAL_NOTE = "clinical_note"


class ModelRole(str, Enum):
    """Which configured deployment a pipeline runs on."""

    REASONING = "reasoning"
    CHAT = "chat"


@dataclass(frozen=True)
class PipelineDefinition:
    """Static execution parameters for one pipeline type."""

    pipeline_type: PipelineType
    prompt_id: str
    model_role: ModelRole
    temperature: float
    max_tokens: int
    structured_output: bool
    purpose: str


PIPELINE_DEFINITIONS: Dict[PipelineType, PipelineDefinition] = {
    PipelineType.SAFETY_CHECK: PipelineDefinition(
        PipelineType.SAFETY_CHECK,
        prompt_id="safety-check-comprehensive",
        model_role=ModelRole.REASONING,
        temperature=0.3,
        max_tokens=1500,
        structured_output=True,
        purpose="safety_assessment",
    ),
    PipelineType.BILLING_CPT: PipelineDefinition(
        PipelineType.BILLING_CPT,
        prompt_id="billing-cpt-suggestion",
        model_role=ModelRole.CHAT,
        temperature=0.2,
        max_tokens=1000,
        structured_output=True,
        purpose="billing",
    ),
    PipelineType.BILLING_ICD10: PipelineDefinition(
        PipelineType.BILLING_ICD10,
        prompt_id="billing-diagnosis-extraction",
        model_role=ModelRole.CHAT,
        temperature=0.2,
        max_tokens=1000,
        structured_output=True,
        purpose="billing",
    ),
    PipelineType.TREATMENT_PROGRESS: PipelineDefinition(
        PipelineType.TREATMENT_PROGRESS,
        prompt_id="clinical-treatment-progress",
        model_role=ModelRole.REASONING,
        temperature=0.5,
        max_tokens=2000,
        structured_output=True,
        purpose="treatment_progress",
    ),
    PipelineType.CHAT_WITH_CHART: PipelineDefinition(
        PipelineType.CHAT_WITH_CHART,
        prompt_id="chat-with-chart",
        model_role=ModelRole.CHAT,
        temperature=0.7,
        max_tokens=2000,
        structured_output=False,
        purpose="chat",
    ),
    PipelineType.CLINICAL_NOTE: PipelineDefinition(
        PipelineType.CLINICAL_NOTE,
        prompt_id="clinical-note-generation",
        model_role=ModelRole.CHAT,
        temperature=0.3,
        max_tokens=2000,
        structured_output=False,
        purpose="documentation",
    ),
}


def get_pipeline_definition(pipeline_type) -> PipelineDefinition:
    """Look up the definition for a pipeline type given as enum or string."""
    return PIPELINE_DEFINITIONS[PipelineType(pipeline_type)]
