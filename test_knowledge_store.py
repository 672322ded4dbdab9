from __future__ import annotations

from pathlib import Path

import pytest

from knowledge.agent_definitions import (
    AGENT_DEFINITION_TYPE,
    agent_definition_from_document,
    agent_definition_to_document,
    load_agent_definition,
)
from knowledge.store import SQLiteKnowledgeStore
from registry.db import RegistryDB
from shared.errors import AgentDefinitionNotFoundError
from shared.models import AgentDefinition, KnowledgeDocument, KnowledgeFilter, Product, Workflow


def test_knowledge_store_create_get_update_delete(tmp_path: Path):
    store = SQLiteKnowledgeStore(db_path=str(tmp_path / "kb.db"))

    try:
        store.create(
            KnowledgeDocument(
                kb_id="kb-1",
                type="market_insight",
                title="Tea market",
                tags=["beverage"],
                payload={"insights": [{"fact": "Matcha is growing"}]},
            )
        )

        fetched = store.get("kb-1")
        assert fetched is not None
        assert fetched.payload["insights"][0]["fact"] == "Matcha is growing"
        assert fetched.tags == ["beverage"]

        updated = store.update("kb-1", {"title": "Tea market 2026", "kb_id": "ignored", "type": "ignored"})
        assert updated.title == "Tea market 2026"
        assert updated.kb_id == "kb-1"
        assert updated.type == "market_insight"
        assert store.get("kb-1").title == "Tea market 2026"

        assert store.update("missing", {"title": "x"}) is None
        assert store.delete("kb-1") is True
        assert store.delete("kb-1") is False
        assert store.get("kb-1") is None
    finally:
        store.close()


def test_knowledge_store_rejects_duplicate_ids(tmp_path: Path):
    store = SQLiteKnowledgeStore(db_path=str(tmp_path / "kb.db"))

    try:
        store.create(KnowledgeDocument(kb_id="kb-1", type="note"))
        with pytest.raises(ValueError):
            store.create(KnowledgeDocument(kb_id="kb-1", type="note"))
    finally:
        store.close()


def test_knowledge_store_list_filters(tmp_path: Path):
    store = SQLiteKnowledgeStore(db_path=str(tmp_path / "kb.db"))

    try:
        store.create(KnowledgeDocument(kb_id="a", type="note", title="Alpha", updated_at="2026-01-01T00:00:00+00:00"))
        store.create(
            KnowledgeDocument(
                kb_id="b",
                type="workflow_run",
                source_project_id="wf-1",
                payload={"finalOutput": {"execSummary": "Matcha first"}},
                updated_at="2026-01-03T00:00:00+00:00",
            )
        )
        store.create(
            KnowledgeDocument(
                kb_id="c",
                type="workflow_run",
                source_project_id="wf-2",
                updated_at="2026-01-02T00:00:00+00:00",
            )
        )

        assert [doc.kb_id for doc in store.list()] == ["b", "c", "a"]
        assert [doc.kb_id for doc in store.list(KnowledgeFilter(type="workflow_run"))] == ["b", "c"]
        assert [doc.kb_id for doc in store.list(KnowledgeFilter(source_project_id="wf-2"))] == ["c"]
        assert [doc.kb_id for doc in store.list(KnowledgeFilter(q="MATCHA"))] == ["b"]
        assert len(store.list(KnowledgeFilter(limit=1))) == 1
    finally:
        store.close()


def test_agent_definition_round_trips_through_store(tmp_path: Path):
    store = SQLiteKnowledgeStore(db_path=str(tmp_path / "kb.db"))
    definition = AgentDefinition(
        id="def-banner",
        name="Banner Planner",
        category="creative",
        system_prompt="You plan banners.",
        user_prompt_template="{{context}}",
        output_kind="banner_structure",
    )

    try:
        store.create(agent_definition_to_document(definition))
        loaded = load_agent_definition(store, "def-banner")

        assert loaded.name == "Banner Planner"
        assert loaded.output_kind == "banner_structure"
        assert loaded.user_prompt_template == "{{context}}"
        assert loaded.updated_at is not None
        assert loaded.version_hash == definition.version_hash
    finally:
        store.close()


def test_agent_definition_accepts_legacy_output_schema_field():
    document = KnowledgeDocument(
        kb_id="def-legacy",
        type=AGENT_DEFINITION_TYPE,
        title="Legacy LP",
        payload={"systemPrompt": "s", "outputSchema": "lp_structure"},
    )

    definition = agent_definition_from_document(document)

    assert definition.name == "Legacy LP"
    assert definition.output_kind == "lp_structure"
    assert definition.output_schema_ref == "lp_structure"


def test_missing_agent_definition_raises(tmp_path: Path):
    store = SQLiteKnowledgeStore(db_path=str(tmp_path / "kb.db"))

    try:
        store.create(KnowledgeDocument(kb_id="not-a-def", type="note"))
        with pytest.raises(AgentDefinitionNotFoundError) as exc_info:
            load_agent_definition(store, "not-a-def")
        assert exc_info.value.http_status == 404
        with pytest.raises(AgentDefinitionNotFoundError):
            load_agent_definition(store, "nope")
    finally:
        store.close()


def test_registry_products_and_workflows(tmp_path: Path):
    registry = RegistryDB(db_path=str(tmp_path / "registry.db"))

    registry.save_product(Product(id="p1", name="Tea", category="beverage"))
    registry.save_product(Product(id="p1", name="Green Tea", category="beverage"))
    registry.save_workflow(
        Workflow.model_validate(
            {
                "id": "wf-1",
                "name": "Launch",
                "nodes": [
                    {"id": "i1", "type": "input", "kind": "product", "data": {"refId": "p1"}},
                    {"id": "a1", "type": "agent", "agentDefinitionId": "def-1"},
                ],
                "connections": [{"fromNodeId": "i1", "toNodeId": "a1"}],
            }
        )
    )

    assert registry.get_product("p1").name == "Green Tea"
    assert registry.get_product("p2") is None
    assert [product.id for product in registry.list_products()] == ["p1"]
    workflow = registry.get_workflow("wf-1")
    assert workflow.get_node("i1").data.ref_id == "p1"
    assert workflow.connections[0].to_node_id == "a1"
    assert registry.get_workflow("missing") is None
