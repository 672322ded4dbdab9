"""
Quality gates.

Responsibility:
- Pre-execution: detect missing recommended inputs in an ExecutionContext
- Derive the three-level trust status
- Merge the post-execution semantic result into the final status

Gates never block execution. Anything that looks like an error is
demoted to a warning before the gate returns.
"""

from __future__ import annotations

import logging

from shared.models import (
    ContextQuality,
    ExecutionContext,
    QualityCheck,
    QualityStatus,
    SemanticValidationResult,
)

logger = logging.getLogger(__name__)

MISSING_INTENT = "intent"
MISSING_GOAL = "intent.goal"
MISSING_SUCCESS_CRITERIA = "intent.successCriteria"
MISSING_KNOWLEDGE = "knowledge"
MISSING_PERSONA = "persona"
MISSING_PRODUCT = "product"

INSUFFICIENT_WARNING_COUNT = 3


def check_input_quality(context: ExecutionContext) -> QualityCheck:
    """Evaluate every rule independently and return warnings only."""
    errors: list[str] = []
    warnings: list[str] = []
    missing: list[str] = []

    intent_packets = context.packets_of_kind("intent")
    if not intent_packets:
        warnings.append("No intent node is connected; the planning direction may be unclear.")
        missing.append(MISSING_INTENT)
    else:
        intent = context.intent
        if intent is None or not intent.goal.strip():
            warnings.append("The intent goal is empty; entering a goal is recommended.")
            missing.append(MISSING_GOAL)
        if intent is None or not intent.success_criteria.strip():
            warnings.append("The intent success criteria are empty; entering success criteria is recommended.")
            missing.append(MISSING_SUCCESS_CRITERIA)

    has_knowledge = bool(context.knowledge)
    if not has_knowledge:
        warnings.append("No knowledge items are connected; the output may lack supporting evidence.")
        missing.append(MISSING_KNOWLEDGE)

    if context.persona is None:
        warnings.append("No persona is connected; the target audience may be unclear.")
        missing.append(MISSING_PERSONA)

    has_product = context.product is not None
    if not has_product:
        warnings.append("No product is connected; output quality may be affected.")
        missing.append(MISSING_PRODUCT)

    if not has_product and not has_knowledge:
        warnings.append(
            "The recommended path (product -> knowledge -> agent) is broken: "
            "both product and knowledge are missing."
        )
    elif not has_product:
        warnings.append("Product is missing from the recommended path (product -> knowledge -> agent).")
    elif not has_knowledge:
        warnings.append("Knowledge is missing from the recommended path (product -> knowledge -> agent).")

    for omission in context.omissions:
        errors.append(f"Input {omission.node_id} ({omission.kind}) was dropped: {omission.reason}")

    if errors:
        logger.warning("Pre-execution gate demoting %d errors to warnings", len(errors))
        warnings.extend(errors)
        errors = []

    return QualityCheck(errors=errors, warnings=warnings, missing_inputs=missing)


def derive_quality_status(warnings: list[str], missing_inputs: list[str]) -> QualityStatus:
    if len(warnings) >= INSUFFICIENT_WARNING_COUNT or MISSING_KNOWLEDGE in missing_inputs:
        return "insufficient_evidence"
    if warnings:
        return "regenerate_recommended"
    return "usable"


def pre_execution_quality(context: ExecutionContext) -> ContextQuality:
    check = check_input_quality(context)
    status = derive_quality_status(check.warnings, check.missing_inputs)
    logger.info("Pre-execution quality: %s (%d warnings)", status, len(check.warnings))
    return ContextQuality(**check.model_dump(), status=status)


def merge_quality(pre: ContextQuality, semantic: SemanticValidationResult) -> ContextQuality:
    """Combine pre-gate warnings with semantic reasons into the final status."""
    warnings = [*pre.warnings, *semantic.reasons]
    status = derive_quality_status(warnings, pre.missing_inputs)
    if not semantic.passed and status == "usable":
        status = "regenerate_recommended"
    return ContextQuality(
        errors=list(pre.errors),
        warnings=warnings,
        missing_inputs=list(pre.missing_inputs),
        status=status,
    )
