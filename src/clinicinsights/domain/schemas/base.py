"""
Shared building blocks for pipeline output schemas.
"""

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

SeverityLevel = Literal["low", "medium", "high", "critical"]

RiskCategory = Literal[
    "suicide",
    "self-harm",
    "violence",
    "abuse",
    "substance_use",
    "medication_non_compliance",
    "social_isolation",
    "other",
]


class SchemaModel(BaseModel):
    """Base for model-output schemas: unknown keys are ignored, not rejected."""

    model_config = ConfigDict(extra="ignore")


class ConfidenceScore(SchemaModel):
    score: float = Field(..., ge=0, le=1, description="Confidence score between 0 and 1")
    reasoning: Optional[str] = Field(None, description="Optional explanation for the score")


class BaseAIOutput(SchemaModel):
    success: bool = Field(True, description="Whether the model considered the task completed")
    confidence: ConfidenceScore
    warnings: List[str] = Field(default_factory=list)


class TreatmentRecommendation(SchemaModel):
    recommendation: str
    priority: Literal["immediate", "urgent", "routine", "as_needed"]
    rationale: str
    confidence: ConfidenceScore


class CPTCode(SchemaModel):
    code: str = Field(..., pattern=r"^\d{5}$", description="Five-digit CPT code")
    description: str
    confidence: ConfidenceScore
    modifiers: List[str] = Field(default_factory=list)
    units: int = Field(1, ge=1)
    supporting_documentation: Optional[str] = None


class ICD10Code(SchemaModel):
    code: str = Field(..., pattern=r"^[A-Z]\d{2}(\.\d{1,4})?$", description="ICD-10-CM code")
    description: str
    confidence: ConfidenceScore
    supporting_evidence: Optional[str] = None
