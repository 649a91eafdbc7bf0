"""
Prompt compilation: variable validation, placeholder substitution and
token estimation.
"""

import json
import math
from typing import Any, Dict, Iterable, List, Optional

from clinicinsights.core.exceptions import PromptCompilationError, PromptTooLargeError
from clinicinsights.domain.prompt_template import PLACEHOLDER_PATTERN, PromptTemplate

CHARS_PER_TOKEN = 4
TRUNCATABLE_VARIABLES = ("transcript", "patient_context")
TRUNCATION_MARKER = "\n[... truncated to fit the model context window ...]"


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def render_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if hasattr(value, "model_dump"):
        value = value.model_dump(mode="json")
    if isinstance(value, (dict, list, tuple)):
        if not value:
            return ""
        return json.dumps(value, indent=2, default=str)
    return str(value)


def resolve_variables(template: PromptTemplate, variables: Dict[str, Any]) -> Dict[str, str]:
    """Render every declared variable to text, applying defaults.

    Raises PromptCompilationError when a required variable is missing or
    renders to blank text.
    """
    resolved: Dict[str, str] = {}
    missing: List[str] = []
    for variable in template.variables:
        text = render_value(variables.get(variable.name))
        if not text.strip():
            if variable.default is not None:
                text = variable.default
            elif variable.required:
                missing.append(variable.name)
                continue
        resolved[variable.name] = text

    if missing:
        raise PromptCompilationError(
            f"Missing required variables for '{template.id}': {', '.join(missing)}",
            {"template_id": template.id, "version": template.version, "missing": missing},
        )
    return resolved


def substitute(template: PromptTemplate, resolved: Dict[str, str]) -> str:
    def replace(match):
        name = match.group(1)
        if name not in resolved:
            raise PromptCompilationError(
                f"Placeholder '{name}' in '{template.id}' has no value",
                {"template_id": template.id, "version": template.version, "placeholder": name},
            )
        return resolved[name]

    return PLACEHOLDER_PATTERN.sub(replace, template.template)


def truncate_variables(
    resolved: Dict[str, str],
    overflow_chars: int,
    names: Iterable[str] = TRUNCATABLE_VARIABLES,
) -> Dict[str, str]:
    """Shorten the largest context-bearing variables by ``overflow_chars``."""
    truncated = dict(resolved)
    for name in sorted(names, key=lambda n: len(truncated.get(n, "")), reverse=True):
        if overflow_chars <= 0:
            break
        text = truncated.get(name)
        if not text:
            continue
        keep = max(len(text) - overflow_chars - len(TRUNCATION_MARKER), 0)
        shortened = text[:keep] + TRUNCATION_MARKER
        if len(shortened) >= len(text):
            continue
        overflow_chars -= len(text) - len(shortened)
        truncated[name] = shortened
    return truncated


class CompiledPrompt:
    def __init__(self, text: str, truncated: bool = False) -> None:
        self.text = text
        self.truncated = truncated

    @property
    def estimated_tokens(self) -> int:
        return estimate_tokens(self.text)


def compile_prompt(
    template: PromptTemplate,
    variables: Dict[str, Any],
    max_tokens: Optional[int] = None,
    allow_truncation: bool = True,
) -> CompiledPrompt:
    """Compile ``template`` with ``variables``.

    A prompt estimated above ``max_tokens`` has its transcript and context
    truncated once; if it still does not fit, PromptTooLargeError is raised.
    """
    resolved = resolve_variables(template, variables)
    text = substitute(template, resolved)
    if max_tokens is None or estimate_tokens(text) <= max_tokens:
        return CompiledPrompt(text)

    if not allow_truncation:
        raise PromptTooLargeError(estimate_tokens(text), max_tokens)

    overflow = len(text) - max_tokens * CHARS_PER_TOKEN
    text = substitute(template, truncate_variables(resolved, overflow))
    if estimate_tokens(text) > max_tokens:
        raise PromptTooLargeError(estimate_tokens(text), max_tokens)
    return CompiledPrompt(text, truncated=True)
