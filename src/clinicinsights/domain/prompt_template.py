"""Prompt template domain model.

Templates are immutable once registered; a new registration for the same
id and version replaces the stored entry.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}")
VERSION_PATTERN = re.compile(r"^\d+\.\d+\.\d+$")


@dataclass(frozen=True)
class PromptVariable:
    """Declared template variable."""

    name: str
    description: str = ""
    required: bool = True
    default: Optional[str] = None


@dataclass(frozen=True)
class ExecutionConfig:
    """Model parameters a template was written for."""

    model: Optional[str] = None
    temperature: float = 0.3
    max_tokens: int = 1000


@dataclass(frozen=True)
class TokenEstimate:
    min: int = 0
    max: int = 0
    typical: int = 0


@dataclass(frozen=True)
class PromptExample:
    input: Dict[str, Any]
    output: Any
    description: str = ""


@dataclass(frozen=True)
class PromptTemplate:
    """A versioned prompt template."""

    id: str
    version: str
    template: str
    category: str = "general"
    name: str = ""
    description: str = ""
    purpose: str = ""
    variables: Tuple[PromptVariable, ...] = ()
    output_schema: Optional[Type[BaseModel]] = None
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    token_estimate: Optional[TokenEstimate] = None
    examples: Tuple[PromptExample, ...] = ()
    tags: Tuple[str, ...] = ()
    author: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    deprecated_at: Optional[datetime] = None

    @property
    def is_deprecated(self) -> bool:
        return self.deprecated_at is not None

    @property
    def variable_names(self) -> List[str]:
        return [variable.name for variable in self.variables]

    def placeholders(self) -> List[str]:
        """Placeholder names used in the template text, in first-use order."""
        seen: List[str] = []
        for match in PLACEHOLDER_PATTERN.finditer(self.template):
            if match.group(1) not in seen:
                seen.append(match.group(1))
        return seen


@dataclass
class PromptRegistryEntry:
    """Stored template plus registry bookkeeping."""

    template: PromptTemplate
    registered_at: datetime = field(default_factory=datetime.utcnow)
    is_latest: bool = False
    usage_count: int = 0


def parse_version(version: str) -> Tuple[int, int, int]:
    """Order major.minor.patch as integers; no pre-release precedence."""
    major, minor, patch = version.split(".")
    return int(major), int(minor), int(patch)
