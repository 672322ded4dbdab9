"""
Output Validator.

Parses generated text as JSON (tolerating one markdown fence), validates
the data portion against the output-kind schema, and validates any
`presentation` field independently. The presentation never influences
the primary outcome and is always removed from the data value.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ValidationError

from shared.errors import ParseError, SchemaError
from shared.models import SchemaValidationResult, ValidationIssue
from shared.output_schemas import PresentationModel

logger = logging.getLogger(__name__)

Outcome = Literal["valid", "schema_invalid", "unparsable"]

_FENCE_PATTERN = re.compile(r"^```(?:json|JSON)?\s*\n?(.*?)\n?```$", re.DOTALL)


@dataclass(frozen=True)
class ValidatedOutput:
    outcome: Outcome
    parsed: Any
    result: SchemaValidationResult
    presentation: dict[str, Any] | None = None
    presentation_result: SchemaValidationResult | None = None
    parse_error: str | None = None


def extract_json_text(raw_text: str) -> str:
    """Strip a single optional markdown code fence."""
    text = (raw_text or "").strip()
    match = _FENCE_PATTERN.match(text)
    if match:
        return match.group(1).strip()
    return text


def parse_output(raw_text: str) -> Any:
    text = extract_json_text(raw_text)
    try:
        return json.loads(text)
    except (TypeError, ValueError) as e:
        raise ParseError(f"Invalid JSON from model: {e}") from e


def check_schema(data: Any, schema: type[BaseModel]) -> None:
    if not isinstance(data, dict):
        raise SchemaError("Expected a JSON object", [ValidationIssue(path="", message="Expected a JSON object")])
    try:
        schema.model_validate(data)
    except ValidationError as e:
        issues = SchemaValidationResult.from_pydantic_error(e).issues
        raise SchemaError(f"Output does not match {schema.__name__} ({len(issues)} issues)", issues) from e


def _validate_presentation(value: Any) -> SchemaValidationResult:
    try:
        PresentationModel.model_validate(value)
    except ValidationError as e:
        return SchemaValidationResult.from_pydantic_error(e)
    return SchemaValidationResult(success=True)


def validate_output(raw_text: str, schema: type[BaseModel] | None) -> ValidatedOutput:
    try:
        parsed = parse_output(raw_text)
    except ParseError as e:
        logger.info("Generated output is not parseable JSON: %s", e.message)
        return ValidatedOutput(
            outcome="unparsable",
            parsed=None,
            result=SchemaValidationResult(
                success=False,
                issues=[ValidationIssue(path="", message=e.message)],
            ),
            parse_error=e.message,
        )

    presentation: dict[str, Any] | None = None
    presentation_result: SchemaValidationResult | None = None
    data = parsed
    if isinstance(parsed, dict) and "presentation" in parsed:
        data = {key: value for key, value in parsed.items() if key != "presentation"}
        raw_presentation = parsed["presentation"]
        presentation_result = _validate_presentation(raw_presentation)
        if isinstance(raw_presentation, dict):
            presentation = raw_presentation
        if not presentation_result.success:
            logger.info("Presentation failed validation (%d issues)", len(presentation_result.issues))

    if schema is None:
        result = SchemaValidationResult(success=True)
    else:
        try:
            check_schema(data, schema)
            result = SchemaValidationResult(success=True)
        except SchemaError as e:
            logger.info("%s", e.message)
            result = SchemaValidationResult(success=False, issues=e.issues)

    return ValidatedOutput(
        outcome="valid" if result.success else "schema_invalid",
        parsed=data,
        result=result,
        presentation=presentation,
        presentation_result=presentation_result,
    )
