"""
Prompt Assembler.

Responsibility:
- Render an agent's user-prompt template against an ExecutionContext
- Keep the result within a token budget (length-based estimate, no tokenizer)
- Degrade instead of failing: truncate long knowledge items, then drop
  the lowest-priority knowledge items until the prompt fits

Supported placeholders: {{product}}, {{persona}}, {{intent}},
{{knowledge}}, {{lp_structure}}, {{upstream_outputs}}, {{context}}.
A template without any of them gets the full context block appended.
"""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Any

from pydantic import BaseModel, Field

from context.builder import knowledge_priority
from shared.models import ExecutionContext, KnowledgeRef

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 2
TRUNCATION_MARKER = "\n... (truncated)"
PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([a-z_]+)\s*\}\}")
SECTION_NAMES = ("product", "persona", "intent", "knowledge", "lp_structure", "upstream_outputs")


class PromptBudget(BaseModel):
    model_config = {"frozen": True}

    max_context_tokens: int = Field(default=100_000, ge=1)
    max_knowledge_item_tokens: int = Field(default=20_000, ge=1)


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json", by_alias=True, exclude_none=True)
    try:
        return json.dumps(value, ensure_ascii=False, indent=2, default=str)
    except (TypeError, ValueError):
        return str(value)


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    limit = max_tokens * CHARS_PER_TOKEN
    if len(text) <= limit:
        return text
    keep = max(0, limit - len(TRUNCATION_MARKER))
    return text[:keep] + TRUNCATION_MARKER


def _render_knowledge_item(item: KnowledgeRef, budget: PromptBudget) -> str:
    body = truncate_to_tokens(_to_text(item.payload), budget.max_knowledge_item_tokens)
    return f"### [{item.kind}] {item.title or item.id} ({item.id})\n{body}"


def _render_sections(
    context: ExecutionContext,
    knowledge: list[KnowledgeRef],
    budget: PromptBudget,
) -> dict[str, str]:
    sections = {name: "" for name in SECTION_NAMES}
    if context.product is not None:
        product = context.product
        sections["product"] = f"## Product\nName: {product.name}\nCategory: {product.category}\n{product.description}".strip()
    if context.persona is not None:
        sections["persona"] = f"## Persona\n{context.persona.title}\n{_to_text(context.persona.payload)}".strip()
    if context.intent is not None:
        intent = context.intent
        lines = [f"Goal: {intent.goal}", f"Success criteria: {intent.success_criteria}"]
        if intent.notes:
            lines.append(f"Notes: {intent.notes}")
        sections["intent"] = "## Intent\n" + "\n".join(lines)
    if knowledge:
        rendered = "\n\n".join(_render_knowledge_item(item, budget) for item in knowledge)
        sections["knowledge"] = f"## Knowledge\n{rendered}"
    if context.lp_structure is not None:
        sections["lp_structure"] = (
            f"## LP structure (run {context.lp_structure.run_id})\n{_to_text(context.lp_structure.payload)}"
        )
    if context.upstream_outputs:
        rendered = "\n\n".join(
            f"### {key}\n{_to_text(item.output)}" for key, item in context.upstream_outputs.items()
        )
        sections["upstream_outputs"] = f"## Upstream outputs\n{rendered}"
    return sections


def _compose(template: str, sections: dict[str, str], suffix: str) -> str:
    full_block = "\n\n".join(text for text in sections.values() if text)
    values = {**sections, "context": full_block}

    found = {match.group(1) for match in PLACEHOLDER_PATTERN.finditer(template)}
    if found & set(values):
        body = PLACEHOLDER_PATTERN.sub(lambda match: values.get(match.group(1), match.group(0)), template)
    elif full_block:
        body = f"{template.rstrip()}\n\n{full_block}" if template.strip() else full_block
    else:
        body = template
    return f"{body.rstrip()}\n\n{suffix}" if suffix else body


def _drop_order(knowledge: list[KnowledgeRef]) -> list[int]:
    """Indices from lowest to highest priority; later discoveries go first within a rank."""
    indexed = list(enumerate(knowledge))
    indexed.sort(key=lambda pair: (knowledge_priority(pair[1].kind), pair[0]), reverse=True)
    return [index for index, _ in indexed]


def render_user_prompt(
    template: str,
    context: ExecutionContext,
    budget: PromptBudget | None = None,
    suffix: str = "",
) -> str:
    """Render `template` within budget. Never raises for oversize content."""
    limits = budget or PromptBudget()
    knowledge = list(context.knowledge)
    prompt = _compose(template or "", _render_sections(context, knowledge, limits), suffix)
    if estimate_tokens(prompt) <= limits.max_context_tokens:
        return prompt

    dropped: set[int] = set()
    for index in _drop_order(knowledge):
        dropped.add(index)
        kept = [item for position, item in enumerate(knowledge) if position not in dropped]
        prompt = _compose(template or "", _render_sections(context, kept, limits), suffix)
        if estimate_tokens(prompt) <= limits.max_context_tokens:
            break

    logger.warning(
        "Prompt over budget; dropped %d of %d knowledge items (estimate=%d, max=%d)",
        len(dropped),
        len(knowledge),
        estimate_tokens(prompt),
        limits.max_context_tokens,
    )
    return prompt
