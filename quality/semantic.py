"""Post-execution structural checks layered on top of schema validation."""

from __future__ import annotations

from typing import Any, Callable

from shared.models import ExecutionContext, SemanticValidationResult

SemanticCheck = Callable[[Any, ExecutionContext], list[str]]

MIN_LP_QUESTIONS = 16
MIN_LP_SECTIONS = 6


def _blank(value: Any) -> bool:
    return not isinstance(value, str) or not value.strip()


def check_lp_structure(output: Any, context: ExecutionContext) -> list[str]:
    reasons: list[str] = []
    if isinstance(output, dict):
        questions = output.get("questions")
        if not isinstance(questions, list):
            reasons.append("The questions field is missing or is not a list.")
        elif len(questions) < MIN_LP_QUESTIONS:
            reasons.append(f"Not enough questions ({len(questions)}; at least {MIN_LP_QUESTIONS} required).")

        sections = output.get("sections")
        if not isinstance(sections, list):
            reasons.append("The sections field is missing or is not a list.")
        elif len(sections) < MIN_LP_SECTIONS:
            reasons.append(f"Not enough sections ({len(sections)}; at least {MIN_LP_SECTIONS} required).")
    else:
        reasons.append("The output is not a JSON object.")

    if context.intent is None or _blank(context.intent.goal):
        reasons.append("The intent goal is empty.")
    if not context.knowledge:
        reasons.append("No knowledge items were used as evidence.")
    return reasons


def check_banner_structure(output: Any, context: ExecutionContext) -> list[str]:
    if not isinstance(output, dict):
        return ["The output is not a JSON object."]
    reasons: list[str] = []
    ideas = output.get("bannerIdeas")
    if not isinstance(ideas, list):
        reasons.append("The bannerIdeas field is missing or is not a list.")
    elif not ideas:
        reasons.append("No banner ideas were produced.")
    if _blank(output.get("execSummary")):
        reasons.append("execSummary is empty.")
    if _blank(output.get("designNotes")):
        reasons.append("designNotes is empty.")
    return reasons


def no_semantic_rules(output: Any, context: ExecutionContext) -> list[str]:
    return []


def run_semantic_check(check: SemanticCheck, output: Any, context: ExecutionContext) -> SemanticValidationResult:
    reasons = check(output, context)
    return SemanticValidationResult(passed=not reasons, reasons=reasons)
