"""
Billing output schemas: CPT suggestions and ICD-10 diagnosis extraction.
"""

from typing import List, Literal, Optional

from pydantic import Field

from .base import BaseAIOutput, CPTCode, ConfidenceScore, ICD10Code, SchemaModel


class CPTCodeSuggestion(CPTCode):
    primary_code: bool = True
    time_based_billing: Optional[bool] = None
    required_documentation: List[str] = Field(default_factory=list)
    billing_notes: Optional[str] = None


class DocumentationCompleteness(SchemaModel):
    complete: bool
    missing_elements: List[str] = Field(default_factory=list)
    compliance_score: float = Field(..., ge=0, le=100)
    recommendations: List[str] = Field(default_factory=list)


class MedicalNecessity(SchemaModel):
    justified: bool
    rationale: str
    supporting_diagnoses: List[str] = Field(default_factory=list)
    confidence: ConfidenceScore


class BillingCPTOutput(BaseAIOutput):
    session_type: Literal["initial", "follow_up", "crisis", "assessment"]
    duration_minutes: Optional[float] = Field(None, ge=0)
    cpt_codes: List[CPTCodeSuggestion]
    total_units: int = Field(1, ge=1)
    documentation: Optional[DocumentationCompleteness] = None
    medical_necessity: Optional[MedicalNecessity] = None
    audit_risk: Literal["low", "medium", "high"] = "low"
    billing_notes: Optional[str] = None


class BillingICD10Output(BaseAIOutput):
    icd10_codes: List[ICD10Code]
    primary_diagnosis: Optional[str] = None
    differential_diagnoses: List[str] = Field(default_factory=list)
    billing_notes: Optional[str] = None
