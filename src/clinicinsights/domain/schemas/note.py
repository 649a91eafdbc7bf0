"""
Clinical note generation output schema (SOAP sections).
"""

from typing import List, Literal, Optional

from pydantic import Field

from .base import SchemaModel


class NoteSection(SchemaModel):
    type: Literal["subjective", "objective", "assessment", "plan"]
    title: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    confidence: float = Field(..., ge=0, le=1)


class NoteMetadata(SchemaModel):
    generated_at: Optional[str] = None
    word_count: Optional[int] = Field(None, gt=0)


class ClinicalNoteOutput(SchemaModel):
    sections: List[NoteSection] = Field(..., min_length=1)
    confidence: float = Field(..., ge=0, le=1)
    metadata: Optional[NoteMetadata] = None
