"""
Run Normalizer.

Merges raw text, parsed JSON, validation results, quality results and
context provenance into one RunRecord. Total over any combination of
present or absent outputs; only the identity fields are mandatory.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any

from context.builder import build_context_trace_record, summarize_context
from shared.errors import InputMissingError
from shared.models import (
    AgentDefinition,
    ContextQuality,
    ContextSummary,
    ExecutionContext,
    RunRecord,
    SchemaValidationResult,
    SemanticValidationResult,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

TRUNCATED_SUFFIX = "... (truncated)"
FINAL_OUTPUT_SCHEMA_VERSION = "v2"

# Fields the UI renders as lists; models sometimes emit them as strings.
LIST_FIELDS = ("avoid", "lpShouldAnswer", "subElements")
_BULLET_PREFIX = re.compile(r"^\s*(?:[-*•・]|\d+[.)])\s*")


def new_run_id() -> str:
    return f"run-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


def truncate_raw_output(text: str | None, cap: int) -> str | None:
    if text is None:
        return None
    if len(text) <= cap:
        return text
    return text[:cap] + TRUNCATED_SUFFIX


def _as_list(value: str) -> list[str]:
    items = [_BULLET_PREFIX.sub("", line).strip() for line in value.splitlines()]
    return [item for item in items if item]


def _coerce_list_fields(value: Any) -> Any:
    if isinstance(value, dict):
        result: dict[str, Any] = {}
        for key, item in value.items():
            if key in LIST_FIELDS and isinstance(item, str):
                result[key] = _as_list(item)
            else:
                result[key] = _coerce_list_fields(item)
        return result
    if isinstance(value, list):
        return [_coerce_list_fields(item) for item in value]
    return value


def normalize_final_output(
    parsed: Any,
    output_kind: str,
    lp_run_id: str | None = None,
) -> dict[str, Any] | None:
    """Shape-normalize a parsed output regardless of schema validity."""
    if parsed is None:
        return None
    if isinstance(parsed, dict):
        output = {key: value for key, value in parsed.items() if key != "presentation"}
    elif isinstance(parsed, list):
        output = {"items": parsed}
    else:
        output = {"value": parsed}

    output = _coerce_list_fields(output)
    output.setdefault("type", output_kind)
    output.setdefault("schemaVersion", FINAL_OUTPUT_SCHEMA_VERSION)
    if output_kind == "banner_structure" and lp_run_id:
        derived = output.get("derivedFrom")
        output["derivedFrom"] = {**(derived if isinstance(derived, dict) else {}), "lpRunId": lp_run_id}
    return output


@dataclass
class RunFields:
    """Raw, possibly partial inputs to normalization."""

    workflow_id: str | None
    agent_node_id: str | None
    agent_definition_id: str | None
    started_at: str
    agent_definition: AgentDefinition | None = None
    run_id: str | None = None
    finished_at: str | None = None
    duration_ms: int | None = None
    context: ExecutionContext | None = None
    raw_output: str | None = None
    parsed_output: Any = None
    validation: SchemaValidationResult | None = None
    semantic: SemanticValidationResult | None = None
    quality: ContextQuality | None = None
    presentation: dict[str, Any] | None = None
    presentation_validation: SchemaValidationResult | None = None
    model: str | None = None
    attempts: int = 0
    error: str | None = None
    raw_output_cap: int = 10_000


def normalize_run_record(fields: RunFields) -> RunRecord:
    missing = [
        name
        for name, value in (("workflowId", fields.workflow_id), ("agentNodeId", fields.agent_node_id))
        if not (value or "").strip()
    ]
    if missing:
        raise InputMissingError(missing, f"{' and '.join(missing)} required but missing before persistence")

    definition = fields.agent_definition
    output_kind = definition.output_kind if definition else None
    lp_run_id = fields.context.lp_structure.run_id if fields.context and fields.context.lp_structure else None
    final_output = (
        normalize_final_output(fields.parsed_output, output_kind or "unknown", lp_run_id)
        if fields.parsed_output is not None
        else None
    )
    raw_output = truncate_raw_output(fields.raw_output, fields.raw_output_cap)

    finished_at = fields.finished_at or utc_now_iso()
    if fields.error:
        semantic = fields.semantic or SemanticValidationResult(
            passed=False,
            reasons=["Execution failed before output validation."],
        )
    else:
        semantic = fields.semantic or SemanticValidationResult()

    legacy_output: Any = final_output if final_output is not None else raw_output

    return RunRecord(
        run_id=fields.run_id or new_run_id(),
        workflow_id=fields.workflow_id or "",
        agent_node_id=fields.agent_node_id or "",
        agent_definition_id=fields.agent_definition_id or (definition.id if definition else ""),
        agent_definition_name=definition.name if definition else "",
        agent_definition_updated_at=definition.updated_at if definition else None,
        agent_definition_version_hash=definition.version_hash if definition else None,
        output_kind=output_kind,
        output_schema_ref=definition.output_schema_ref if definition else None,
        model=fields.model,
        status="error" if fields.error else "success",
        error=fields.error,
        started_at=fields.started_at,
        finished_at=finished_at,
        duration_ms=max(0, fields.duration_ms or 0),
        attempts=fields.attempts,
        inputs_snapshot=fields.context.to_wire() if fields.context else {},
        input_summary=summarize_context(fields.context) if fields.context else ContextSummary(),
        context_trace=build_context_trace_record(fields.context) if fields.context else None,
        llm_raw_output=raw_output,
        parsed_output=fields.parsed_output,
        final_output=final_output,
        output=legacy_output,
        presentation=fields.presentation,
        presentation_validation=fields.presentation_validation,
        zod_validation_result=fields.validation or SchemaValidationResult(success=False),
        semantic_validation_result=semantic,
        context_quality=fields.quality or ContextQuality(),
    )
