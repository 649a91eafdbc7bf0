"""
Output parser tests: the extraction waterfall, schema validation, partial
extraction and fallbacks.
"""

from typing import Dict

import pytest

from clinicinsights.application.services.output_parser import (
    OutputParser,
    extract_json,
    get_parser_for_pipeline,
)
from clinicinsights.core.exceptions import JsonParseError, OutputValidationError
from clinicinsights.domain.schemas import BillingCPTOutput, ChatWithChartOutput


@pytest.fixture
def chat_parser():
    return OutputParser(ChatWithChartOutput, pipeline_type="chat_with_chart")


def test_direct_parse(chat_parser):
    result = chat_parser.safe_parse('{"answer": "Six hours of sleep."}')
    assert result.success
    assert result.strategy == "direct"
    assert result.data.answer == "Six hours of sleep."


def test_fenced_code_block(chat_parser):
    text = 'Here is the result:\n```json\n{"answer": "Yes"}\n```\nLet me know.'
    result = chat_parser.safe_parse(text)
    assert result.success
    assert result.strategy == "fenced_block"


def test_largest_brace_span(chat_parser):
    result = chat_parser.safe_parse('Sure! {"answer": "Yes", "citations": []} Hope that helps.')
    assert result.success
    assert result.strategy == "brace_span"


def test_cleaned_text(chat_parser):
    result = chat_parser.safe_parse("{'answer': 'Yes',}")
    assert result.success
    assert result.strategy == "cleaned"
    assert result.data.answer == "Yes"


def test_unparseable_text_keeps_first_500_chars():
    with pytest.raises(JsonParseError) as exc_info:
        extract_json("x" * 800)
    assert exc_info.value.raw_response == "x" * 500 + "..."
    assert exc_info.value.error_code == "JSON_PARSE_ERROR"


def test_parse_raises_structured_error(chat_parser):
    with pytest.raises(OutputValidationError) as exc_info:
        chat_parser.parse("no json here")
    error = exc_info.value
    assert error.pipeline_type == "chat_with_chart"
    assert error.details["parse_error"]
    assert error.error_code == "VALIDATION_001"
    assert error.raw_response == "no json here"
    assert error.details["raw_response"] == "no json here"


def test_validation_error_carries_truncated_model_text(chat_parser):
    with pytest.raises(OutputValidationError) as exc_info:
        chat_parser.parse("y" * 900)
    assert exc_info.value.details["raw_response"] == "y" * 500 + "..."


def test_fallback_replaces_failure():
    parser = OutputParser(ChatWithChartOutput, fallback={"answer": "Unavailable"})
    assert parser.parse("garbage") == {"answer": "Unavailable"}
    assert parser.parse('{"answer": ""}') == {"answer": "Unavailable"}


def test_partial_extraction_keeps_conforming_keys():
    parser = get_parser_for_pipeline("billing_cpt")
    raw = """{
        "session_type": "follow_up",
        "confidence": {"score": 0.8},
        "cpt_codes": [{"code": "ABC", "description": "bad", "confidence": {"score": 2}}],
        "made_up_key": 1
    }"""
    result = parser.safe_parse(raw)

    assert not result.success
    assert result.partial_data["session_type"] == "follow_up"
    assert result.partial_data["confidence"] == {"score": 0.8, "reasoning": None}
    assert "cpt_codes" not in result.partial_data
    assert "made_up_key" not in result.partial_data

    with pytest.raises(OutputValidationError) as exc_info:
        parser.parse(raw)
    assert exc_info.value.partial_data == result.partial_data


def test_partial_extraction_can_be_disabled():
    parser = OutputParser(BillingCPTOutput, attempt_partial_extraction=False)
    result = parser.safe_parse('{"session_type": "follow_up"}')
    assert not result.success
    assert result.partial_data is None


def test_non_model_schema_checks_keys_one_at_a_time():
    parser = OutputParser(Dict[str, int])
    result = parser.safe_parse('{"a": 1, "b": "not a number"}')
    assert not result.success
    assert result.partial_data == {"a": 1}


def test_validate_already_extracted_value():
    parser = get_parser_for_pipeline("chat_with_chart")
    assert parser.validate({"answer": "ok"}).answer == "ok"
    assert parser.pipeline_type == "chat_with_chart"
