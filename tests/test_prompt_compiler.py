"""
Prompt compilation tests: defaults, missing variables and truncation.
"""

import pytest

from clinicinsights.application.services.prompt_compiler import (
    TRUNCATION_MARKER,
    compile_prompt,
    render_value,
    resolve_variables,
)
from clinicinsights.core.exceptions import PromptCompilationError, PromptTooLargeError
from clinicinsights.domain.prompt_template import PromptTemplate, PromptVariable

CONTEXT_TEMPLATE = PromptTemplate(
    id="summary",
    version="1.0.0",
    template="Context: {{ patient_context }}\nTranscript: {{ transcript }}",
    variables=(PromptVariable("patient_context"), PromptVariable("transcript")),
)


def test_optional_variables_fall_back_to_defaults(registry):
    template = registry.get("billing-cpt-suggestion")
    compiled = compile_prompt(template, {"patient_context": "Adult, GAD", "transcript": "Session text"})
    assert "Not documented." in compiled.text
    assert "Session text" in compiled.text
    assert "{{" not in compiled.text
    assert compiled.truncated is False


def test_empty_values_use_the_default():
    template = PromptTemplate(
        id="t",
        version="1.0.0",
        template="History: {{ history }}",
        variables=(PromptVariable("history", required=False, default="None on record."),),
    )
    assert compile_prompt(template, {"history": []}).text == "History: None on record."
    assert compile_prompt(template, {}).text == "History: None on record."


def test_missing_required_variables_are_listed():
    with pytest.raises(PromptCompilationError) as exc_info:
        resolve_variables(CONTEXT_TEMPLATE, {"patient_context": "   "})
    assert exc_info.value.details["missing"] == ["patient_context", "transcript"]
    assert exc_info.value.error_code == "PROMPT_002"


def test_undeclared_placeholder_fails():
    template = PromptTemplate(
        id="t",
        version="1.0.0",
        template="{{ name }} at {{ clinic }}",
        variables=(PromptVariable("name"),),
    )
    with pytest.raises(PromptCompilationError) as exc_info:
        compile_prompt(template, {"name": "Dr. Lee", "clinic": "Northside"})
    assert exc_info.value.details["placeholder"] == "clinic"


def test_structured_values_render_as_json():
    assert render_value({"b": 1}) == '{\n  "b": 1\n}'
    assert render_value(None) == ""
    assert render_value(12) == "12"


def test_oversized_prompt_is_truncated_once():
    variables = {"patient_context": "Adult, GAD", "transcript": "word " * 2000}
    compiled = compile_prompt(CONTEXT_TEMPLATE, variables, max_tokens=500)

    assert compiled.truncated is True
    assert TRUNCATION_MARKER in compiled.text
    assert compiled.estimated_tokens <= 500
    assert compiled.text.startswith("Context: Adult, GAD\nTranscript: word")


def test_oversized_prompt_without_truncation():
    variables = {"patient_context": "Adult, GAD", "transcript": "word " * 2000}
    with pytest.raises(PromptTooLargeError) as exc_info:
        compile_prompt(CONTEXT_TEMPLATE, variables, max_tokens=500, allow_truncation=False)
    assert exc_info.value.details["limit"] == 500


def test_fixed_text_too_large_even_after_truncation():
    template = PromptTemplate(
        id="t",
        version="1.0.0",
        template="A" * 4000 + " {{ transcript }}",
        variables=(PromptVariable("transcript"),),
    )
    with pytest.raises(PromptTooLargeError):
        compile_prompt(template, {"transcript": "short"}, max_tokens=100)
