"""
Structured output extraction and validation for raw model text.

Extraction is an ordered chain of independent strategies; the first one
that yields JSON wins:

1. direct parse of the whole text
2. content of a fenced code block
3. the largest ``{...}`` span
4. the text after normalizing trailing commas, quotes and control characters

The extracted value is then validated against the pipeline schema. When
validation fails, partial extraction keeps every top-level key that
validates on its own against the schema's field map.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Annotated, Any, Callable, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from clinicinsights.core.exceptions import JsonParseError, OutputValidationError
from clinicinsights.domain.schemas import get_schema_for_pipeline

logger = logging.getLogger(__name__)

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?```")
_BRACE_SPAN = re.compile(r"\{[\s\S]*\}")
_TRAILING_OBJECT_COMMA = re.compile(r",\s*}")
_TRAILING_ARRAY_COMMA = re.compile(r",\s*]")
_CONTROL_CHARS = re.compile(r"[\x00-\x1F\x7F]")

Extraction = Tuple[bool, Any]


def extract_direct(text: str) -> Extraction:
    try:
        return True, json.loads(text.strip())
    except (json.JSONDecodeError, ValueError):
        return False, None


def extract_fenced_block(text: str) -> Extraction:
    match = _FENCED_BLOCK.search(text)
    if not match:
        return False, None
    return extract_direct(match.group(1))


def extract_brace_span(text: str) -> Extraction:
    match = _BRACE_SPAN.search(text)
    if not match:
        return False, None
    return extract_direct(match.group(0))


def clean_json_text(text: str) -> str:
    cleaned = _TRAILING_OBJECT_COMMA.sub("}", text)
    cleaned = _TRAILING_ARRAY_COMMA.sub("]", cleaned)
    cleaned = cleaned.replace("'", '"')
    cleaned = _CONTROL_CHARS.sub("", cleaned)
    return cleaned.strip()


def extract_cleaned(text: str) -> Extraction:
    cleaned = clean_json_text(text)
    ok, value = extract_direct(cleaned)
    if ok:
        return ok, value
    return extract_brace_span(cleaned)


EXTRACTION_STRATEGIES: List[Tuple[str, Callable[[str], Extraction]]] = [
    ("direct", extract_direct),
    ("fenced_block", extract_fenced_block),
    ("brace_span", extract_brace_span),
    ("cleaned", extract_cleaned),
]


def extract_json(text: str) -> Tuple[Any, str]:
    """Run the extraction chain; returns (value, strategy name) or raises JsonParseError."""
    for name, strategy in EXTRACTION_STRATEGIES:
        ok, value = strategy(text)
        if ok:
            return value, name
    raise JsonParseError("Unable to extract JSON from model response", text)


@dataclass
class ParseResult:
    success: bool
    data: Any = None
    error: Optional[str] = None
    partial_data: Optional[Dict[str, Any]] = None
    raw_response: Optional[str] = None
    strategy: Optional[str] = None


class OutputParser:
    """Parser bound to one output schema."""

    def __init__(
        self,
        schema: Type[BaseModel],
        fallback: Any = None,
        attempt_partial_extraction: bool = True,
        pipeline_type: Optional[str] = None,
    ) -> None:
        self.schema = schema
        self.fallback = fallback
        self.attempt_partial_extraction = attempt_partial_extraction
        self.pipeline_type = pipeline_type
        self._field_adapters: Dict[str, TypeAdapter] = {}
        self._schema_adapter: Optional[TypeAdapter] = None

    def safe_parse(self, raw_text: str) -> ParseResult:
        """Extract and validate without raising."""
        try:
            value, strategy = extract_json(raw_text)
        except JsonParseError as e:
            logger.warning(
                f"JSON extraction failed for pipeline={self.pipeline_type}: {e.message}"
            )
            return ParseResult(success=False, error=e.message, raw_response=e.raw_response)

        result = self.safe_validate(value)
        result.strategy = strategy
        if strategy != "direct":
            logger.debug(f"Extracted JSON via {strategy} for pipeline={self.pipeline_type}")
        return result

    def safe_validate(self, value: Any) -> ParseResult:
        """Validate an already-extracted value against the schema."""
        try:
            return ParseResult(success=True, data=self._validate(value))
        except PydanticValidationError as e:
            partial = None
            if self.attempt_partial_extraction and isinstance(value, dict):
                partial = self.extract_partial(value)
            logger.warning(
                f"Schema validation failed for pipeline={self.pipeline_type}: "
                f"{e.error_count()} error(s), partial_keys={sorted(partial) if partial else []}"
            )
            return ParseResult(success=False, error=str(e), partial_data=partial)

    def parse(self, raw_text: str) -> Any:
        """Return validated data, the configured fallback, or raise OutputValidationError."""
        return self._finish(self.safe_parse(raw_text))

    def validate(self, value: Any) -> Any:
        return self._finish(self.safe_validate(value))

    def _finish(self, result: ParseResult) -> Any:
        if result.success:
            return result.data
        if self.fallback is not None:
            logger.warning(f"Using fallback output for pipeline={self.pipeline_type}")
            return self.fallback
        raise OutputValidationError(
            f"Output validation failed for pipeline '{self.pipeline_type}'",
            pipeline_type=self.pipeline_type,
            parse_error=result.error,
            partial_data=result.partial_data,
            raw_response=result.raw_response,
        )

    def _validate(self, value: Any) -> Any:
        if isinstance(self.schema, type) and issubclass(self.schema, BaseModel):
            return self.schema.model_validate(value)
        return self._get_schema_adapter().validate_python(value)

    def _get_schema_adapter(self) -> TypeAdapter:
        if self._schema_adapter is None:
            self._schema_adapter = TypeAdapter(self.schema)
        return self._schema_adapter

    def extract_partial(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Keep the top-level keys that validate against their own field schema."""
        fields = getattr(self.schema, "model_fields", None)
        partial: Dict[str, Any] = {}

        for key, value in data.items():
            if fields is None:
                # Schemas without a field map are checked one key at a time
                try:
                    self._get_schema_adapter().validate_python({key: value})
                    partial[key] = value
                except PydanticValidationError:
                    continue
                continue

            if key not in fields:
                continue
            adapter = self._field_adapter(key, fields[key])
            try:
                validated = adapter.validate_python(value)
            except PydanticValidationError:
                continue
            partial[key] = adapter.dump_python(validated, mode="json")

        return partial

    def _field_adapter(self, name: str, field_info) -> TypeAdapter:
        adapter = self._field_adapters.get(name)
        if adapter is None:
            annotation = field_info.annotation
            if field_info.metadata:
                annotation = Annotated[(annotation, *field_info.metadata)]
            adapter = TypeAdapter(annotation)
            self._field_adapters[name] = adapter
        return adapter


def get_parser_for_pipeline(pipeline_type, fallback: Any = None) -> OutputParser:
    """Parser for a pipeline's schema with partial extraction enabled."""
    return OutputParser(
        get_schema_for_pipeline(pipeline_type),
        fallback=fallback,
        attempt_partial_extraction=True,
        pipeline_type=str(getattr(pipeline_type, "value", pipeline_type)),
    )
