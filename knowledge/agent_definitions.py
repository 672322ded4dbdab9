"""Agent definitions are stored as knowledge documents of type `agent_definition`."""

from __future__ import annotations

import logging

from knowledge.store import KnowledgeStore
from shared.errors import AgentDefinitionNotFoundError
from shared.models import AgentDefinition, KnowledgeDocument

logger = logging.getLogger(__name__)

AGENT_DEFINITION_TYPE = "agent_definition"
DEFAULT_OUTPUT_KIND = "lp_structure"


def agent_definition_from_document(document: KnowledgeDocument) -> AgentDefinition:
    payload = document.payload or {}
    output_kind = (
        str(payload.get("outputKind") or payload.get("outputSchema") or DEFAULT_OUTPUT_KIND).strip()
    )
    return AgentDefinition(
        id=document.kb_id,
        name=str(payload.get("name") or document.title or document.kb_id),
        category=str(payload.get("category") or ""),
        system_prompt=str(payload.get("systemPrompt") or ""),
        user_prompt_template=str(payload.get("userPromptTemplate") or ""),
        output_kind=output_kind,
        output_schema_ref=payload.get("outputSchemaRef") or payload.get("outputSchema"),
        updated_at=document.updated_at,
    )


def agent_definition_to_document(definition: AgentDefinition) -> KnowledgeDocument:
    return KnowledgeDocument(
        kb_id=definition.id,
        type=AGENT_DEFINITION_TYPE,
        title=definition.name or definition.id,
        folder_path="My Files/Agents",
        tags=[definition.category] if definition.category else [],
        payload={
            "type": AGENT_DEFINITION_TYPE,
            "name": definition.name,
            "category": definition.category,
            "systemPrompt": definition.system_prompt,
            "userPromptTemplate": definition.user_prompt_template,
            "outputKind": definition.output_kind,
            "outputSchemaRef": definition.output_schema_ref,
        },
    )


def load_agent_definition(store: KnowledgeStore, definition_id: str) -> AgentDefinition:
    """Fetch an agent definition or raise AgentDefinitionNotFoundError."""
    document = store.get(definition_id)
    if document is None or document.type != AGENT_DEFINITION_TYPE:
        logger.warning("Agent definition not found: %s", definition_id)
        raise AgentDefinitionNotFoundError(
            "Agent definition not found",
            {"agentDefinitionId": definition_id},
        )
    return agent_definition_from_document(document)
