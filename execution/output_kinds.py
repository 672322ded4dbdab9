"""
Output kind table.

Maps each agent output kind to its data schema and its semantic check.
The entry is selected once per execution; unknown kinds get no schema
and no semantic rules.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from quality.semantic import (
    SemanticCheck,
    check_banner_structure,
    check_lp_structure,
    no_semantic_rules,
    run_semantic_check,
)
from shared.models import ExecutionContext, SemanticValidationResult
from shared.output_schemas import OUTPUT_SCHEMAS


@dataclass(frozen=True)
class OutputKindSpec:
    kind: str
    schema: type[BaseModel] | None
    semantic_check: SemanticCheck = no_semantic_rules

    def check_semantics(self, output: Any, context: ExecutionContext) -> SemanticValidationResult:
        return run_semantic_check(self.semantic_check, output, context)


_SEMANTIC_CHECKS: dict[str, SemanticCheck] = {
    "lp_structure": check_lp_structure,
    "banner_structure": check_banner_structure,
}

OUTPUT_KINDS: dict[str, OutputKindSpec] = {
    kind: OutputKindSpec(kind=kind, schema=schema, semantic_check=_SEMANTIC_CHECKS.get(kind, no_semantic_rules))
    for kind, schema in OUTPUT_SCHEMAS.items()
}


def output_kind_spec(kind: str | None) -> OutputKindSpec:
    key = (kind or "").strip()
    spec = OUTPUT_KINDS.get(key)
    if spec is None:
        return OutputKindSpec(kind=key, schema=None)
    return spec
