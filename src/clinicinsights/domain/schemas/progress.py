"""
Treatment progress output schema.
"""

from typing import List, Literal, Optional

from pydantic import Field

from .base import BaseAIOutput, ConfidenceScore, SchemaModel, TreatmentRecommendation


class GoalProgress(SchemaModel):
    goal_text: str
    category: Literal["behavioral", "cognitive", "social", "emotional", "functional"]
    progress_percentage: float = Field(..., ge=0, le=100)
    status: Literal["not_started", "in_progress", "achieved", "discontinued", "modified"]
    evidence: List[str] = Field(default_factory=list)
    barriers: List[str] = Field(default_factory=list)
    confidence: ConfidenceScore


class ProgressIndicator(SchemaModel):
    indicator: str
    type: Literal["improvement", "maintenance", "regression"]
    domain: Literal["symptoms", "functioning", "relationships", "quality_of_life", "treatment_engagement"]
    magnitude: Literal["minimal", "moderate", "significant"]


class TreatmentBarrier(SchemaModel):
    barrier: str
    category: Literal["personal", "environmental", "systemic", "clinical", "social"]
    impact: Literal["low", "medium", "high"]
    addressable: bool
    suggested_interventions: List[str] = Field(default_factory=list)


class TreatmentProgressOutput(BaseAIOutput):
    goal_progress: List[GoalProgress] = Field(default_factory=list)
    progress_indicators: List[ProgressIndicator] = Field(default_factory=list)
    barriers: List[TreatmentBarrier] = Field(default_factory=list)
    overall_effectiveness: Literal[
        "highly_effective", "moderately_effective", "minimally_effective", "ineffective"
    ]
    recommendations: List[TreatmentRecommendation] = Field(default_factory=list)
    summary_narrative: str
    next_review_date: Optional[str] = None


def needs_treatment_plan_modification(progress: TreatmentProgressOutput) -> bool:
    """Heuristic flag for plans that should be revisited."""
    high_impact_barriers = sum(1 for barrier in progress.barriers if barrier.impact == "high")
    regressing_goals = sum(
        1
        for goal in progress.goal_progress
        if goal.status == "discontinued" or goal.progress_percentage < 25
    )
    return (
        progress.overall_effectiveness == "ineffective"
        or high_impact_barriers > 1
        or regressing_goals > len(progress.goal_progress) / 2
    )
