"""
Output schemas for every pipeline type.

Each schema is a pydantic model; its ``model_fields`` map is the
field-level sub-schema table used for partial extraction.
"""

from typing import Dict, Type

from pydantic import BaseModel

from ..pipeline_types import PipelineType
from .billing import BillingCPTOutput, BillingICD10Output
from .chat import ChatWithChartOutput
from .note import ClinicalNoteOutput
from .progress import TreatmentProgressOutput
from .safety import SafetyCheckOutput

PIPELINE_SCHEMAS: Dict[PipelineType, Type[BaseModel]] = {
    PipelineType.SAFETY_CHECK: SafetyCheckOutput,
    PipelineType.BILLING_CPT: BillingCPTOutput,
    PipelineType.BILLING_ICD10: BillingICD10Output,
    PipelineType.TREATMENT_PROGRESS: TreatmentProgressOutput,
    PipelineType.CHAT_WITH_CHART: ChatWithChartOutput,
    PipelineType.CLINICAL_NOTE: ClinicalNoteOutput,
}


def get_schema_for_pipeline(pipeline_type) -> Type[BaseModel]:
    return PIPELINE_SCHEMAS[PipelineType(pipeline_type)]


__all__ = [
    "PIPELINE_SCHEMAS",
    "get_schema_for_pipeline",
    "BillingCPTOutput",
    "BillingICD10Output",
    "ChatWithChartOutput",
    "ClinicalNoteOutput",
    "SafetyCheckOutput",
    "TreatmentProgressOutput",
]
