"""
Chat-with-chart output schema.
"""

from typing import List, Optional

from pydantic import Field

from .base import SchemaModel


class ChartCitation(SchemaModel):
    source: str
    excerpt: str


class ChatWithChartOutput(SchemaModel):
    answer: str = Field(..., min_length=1)
    citations: List[ChartCitation] = Field(default_factory=list)
    follow_up_questions: List[str] = Field(default_factory=list)
    confidence: Optional[float] = Field(None, ge=0, le=1)
