"""
Safety check output schema: risk indicators, assessment and alerts.
"""

from typing import List, Literal, Optional

from pydantic import Field

from .base import BaseAIOutput, ConfidenceScore, RiskCategory, SchemaModel, SeverityLevel, TreatmentRecommendation


class RiskIndicator(SchemaModel):
    category: RiskCategory
    indicator: str = Field(..., description="Specific risk indicator identified")
    context: str = Field(..., description="Context or quote from the session")
    confidence: ConfidenceScore
    temporal_context: Optional[Literal["past", "present", "future"]] = None
    frequency: Optional[Literal["isolated", "recurring", "escalating"]] = None


class RiskAssessment(SchemaModel):
    overall_risk: SeverityLevel
    risk_score: float = Field(..., ge=0, le=10, description="Composite risk score 0-10")
    primary_concern: Optional[RiskCategory] = None
    imminent_danger: bool
    requires_immediate_action: bool
    confidence: ConfidenceScore


class SafetyAlert(SchemaModel):
    title: str
    description: str
    severity: SeverityLevel
    category: RiskCategory
    triggering_factors: List[str] = Field(default_factory=list)
    recommended_actions: List[str] = Field(default_factory=list)
    notification_priority: Literal["immediate", "urgent", "routine"]


class ProtectiveFactor(SchemaModel):
    factor: str
    strength: Literal["weak", "moderate", "strong"]
    category: Literal["personal", "social", "environmental", "clinical"]


class SafetyCheckOutput(BaseAIOutput):
    risk_indicators: List[RiskIndicator] = Field(default_factory=list)
    risk_assessment: RiskAssessment
    alerts: List[SafetyAlert] = Field(default_factory=list)
    protective_factors: List[ProtectiveFactor] = Field(default_factory=list)
    recommendations: List[TreatmentRecommendation] = Field(default_factory=list)
    follow_up_required: bool = False
    clinical_notes: Optional[str] = None
