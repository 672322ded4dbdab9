"""Fixed instruction text appended to agent prompts."""

from __future__ import annotations

import json

from shared.models import ValidationIssue
from shared.output_schemas import describe_schema, schema_for_kind

JSON_ONLY_GUARD = """IMPORTANT output format rules:
- Output valid JSON only.
- Do not output explanations or error messages.
- Do not wrap the JSON in a markdown code block.
- Output the JSON object directly."""

PRESENTATION_HINT = (
    "- Optionally include a `presentation` field for display: "
    "{ title: string, blocks: Array<{ id: string, type: 'hero'|'bullets'|'cards'|'table'|"
    "'timeline'|'copyBlocks'|'imagePrompts'|'markdown', label: string, ... }> }"
)

FIELD_CORRECTIONS = """Required corrections:
- execSummary is required (a 1-3 line conclusion, at most 500 characters).
- finalCv is required for LP structures, in the form {"finalCv": {"ctaHint": "CTA context (required)"}}.
- avoid must be an array of strings, never a string.
- lpShouldAnswer must be an array of strings, never a string.
- subElements must be an array of strings.

Required fields for LP structures:
- execSummary: what this LP must achieve, 1-3 lines
- finalCv.ctaHint: CTA context

Required fields for banner structures:
- execSummary: conclusion for the winning approach, 1-3 lines
- designNotes: visual direction (composition, subject, tone, text volume, forbidden expressions, brand fit)
- lpSplit.roleOfBanner: the role of the banner"""


def system_prompt_with_guard(system_prompt: str) -> str:
    return f"{system_prompt.rstrip()}\n\n{JSON_ONLY_GUARD}" if system_prompt.strip() else JSON_ONLY_GUARD


def technical_requirements(output_kind: str) -> str:
    """Suffix telling the model which JSON shape to return."""
    lines = ["## Technical requirements", "- Respond with a single JSON object."]
    schema = schema_for_kind(output_kind)
    if schema is not None:
        lines.append(f'- Set "type" to "{output_kind}".')
        lines.append("- The object must satisfy this JSON schema:")
        lines.append(json.dumps(describe_schema(schema), ensure_ascii=False))
    lines.append(PRESENTATION_HINT)
    return "\n".join(lines)


def schema_correction(user_prompt: str, issues: list[ValidationIssue]) -> str:
    rendered = json.dumps(
        [issue.model_dump(mode="json") for issue in issues],
        ensure_ascii=False,
        indent=2,
    )
    return (
        f"{user_prompt}\n\n"
        "IMPORTANT: the previous output failed schema validation. "
        "Fix the errors below and output correct JSON.\n\n"
        f"Validation errors:\n{rendered}\n\n"
        f"{FIELD_CORRECTIONS}\n\n"
        "Output JSON that matches the specified schema exactly. Output the JSON object only."
    )


def parse_correction(user_prompt: str, parse_error: str) -> str:
    return (
        f"{user_prompt}\n\n"
        "IMPORTANT: the previous output was not valid JSON. Fix this error:\n"
        f"{parse_error}\n\n"
        "Required fields (always include):\n"
        "- execSummary: required (a 1-3 line conclusion, at most 500 characters)\n"
        '- finalCv: required for LP structures, {"finalCv": {"ctaHint": "CTA context (required)"}}\n'
        "- designNotes: required for banner structures\n\n"
        "Output valid JSON only. Output the JSON object only."
    )
