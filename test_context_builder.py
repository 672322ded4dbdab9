from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from context.builder import ContextBuilder, build_context_trace_record, summarize_context
from knowledge.store import SQLiteKnowledgeStore
from registry.db import RegistryDB
from shared.errors import GraphError
from shared.models import (
    AgentNode,
    Connection,
    ExecuteAgentRequest,
    InputNode,
    InputNodeData,
    InputNodeRef,
    IntentPayload,
    KnowledgeDocument,
    Product,
    Workflow,
)


def _stores(tmp_path: Path) -> tuple[SQLiteKnowledgeStore, RegistryDB]:
    store = SQLiteKnowledgeStore(db_path=str(tmp_path / "kb.db"))
    registry = RegistryDB(db_path=str(tmp_path / "registry.db"))
    registry.save_product(Product(id="prod-1", name="Sparkling Tea", category="beverage"))
    store.create(
        KnowledgeDocument(
            kb_id="persona-1",
            type="persona",
            title="Busy parent",
            payload={"type": "persona", "title": "Busy parent", "age": "30s"},
        )
    )
    store.create(KnowledgeDocument(kb_id="kb-hook", type="planning_hook", title="Hooks", payload={"hooks": []}))
    store.create(KnowledgeDocument(kb_id="kb-market", type="market_insight", title="Market", payload={"insights": []}))
    store.create(KnowledgeDocument(kb_id="kb-note", type="note", title="Notes", payload={"text": "free form"}))
    store.create(
        KnowledgeDocument(
            kb_id="run-1",
            type="workflow_run",
            title="Prior run",
            payload={"finalOutput": {"type": "lp_structure", "execSummary": "Prior LP"}, "outputKind": "lp_structure"},
        )
    )
    return store, registry


def _input(node_id: str, kind: str, ref_id: str | None = None, **data) -> InputNode:
    return InputNode(id=node_id, kind=kind, data=InputNodeData(ref_id=ref_id, **data))


def _workflow() -> Workflow:
    return Workflow(
        id="wf-1",
        nodes=[
            _input("n-intent", "intent", intent=IntentPayload(goal="Lift CVR", success_criteria="+10% signups")),
            _input("n-product", "product", "prod-1"),
            _input("n-persona", "persona", "persona-1"),
            _input("n-note", "kb_item", "kb-note"),
            _input("n-hook", "kb_item", "kb-hook"),
            _input("n-market", "kb_item", "kb-market"),
            _input("n-run", "workflow_run_ref", "run-1"),
            AgentNode(id="agent", agent_definition_id="def-1"),
        ],
        connections=[
            Connection(from_node_id="n-intent", to_node_id="agent"),
            Connection(from_node_id="n-product", to_node_id="agent"),
            Connection(from_node_id="n-persona", to_node_id="agent"),
            Connection(from_node_id="n-note", to_node_id="agent"),
            Connection(from_node_id="n-hook", to_node_id="agent"),
            Connection(from_node_id="n-market", to_node_id="agent"),
            Connection(from_node_id="n-run", to_node_id="agent"),
        ],
    )


def test_build_collects_every_input_kind(tmp_path: Path):
    store, registry = _stores(tmp_path)

    async def _run() -> None:
        context = await ContextBuilder(store, registry).build(_workflow(), "agent")

        assert context.mode == "dag"
        assert context.product.name == "Sparkling Tea"
        assert context.persona.id == "persona-1"
        assert context.intent.goal == "Lift CVR"
        assert [item.kind for item in context.knowledge] == ["market_insight", "planning_hook", "note"]
        assert context.referenced_kb_item_ids == ["persona-1", "kb-note", "kb-hook", "kb-market", "run-1"]
        assert context.referenced_run_ids == ["run-1"]
        assert context.upstream_outputs["workflow_run_run-1"].output["execSummary"] == "Prior LP"
        assert len(context.packets) == 7
        assert context.omissions == []
        assert "inputs" in context.to_wire()

    try:
        asyncio.run(_run())
    finally:
        store.close()


def test_edge_ref_kind_overrides_document_type(tmp_path: Path):
    store, registry = _stores(tmp_path)
    workflow = Workflow(
        id="wf-2",
        nodes=[_input("n-note", "kb_item", "kb-note"), AgentNode(id="agent", agent_definition_id="def-1")],
        connections=[Connection(from_node_id="n-note", to_node_id="agent", ref_kind="banner_insight")],
    )

    async def _run() -> None:
        context = await ContextBuilder(store, registry).build(workflow, "agent")
        assert context.knowledge[0].kind == "banner_insight"

    try:
        asyncio.run(_run())
    finally:
        store.close()


def test_failed_fetches_are_dropped_with_omissions(tmp_path: Path):
    store, registry = _stores(tmp_path)
    store.create(KnowledgeDocument(kb_id="not-persona", type="note", payload={"type": "note"}))
    workflow = Workflow(
        id="wf-3",
        nodes=[
            _input("n-missing", "kb_item", "kb-does-not-exist"),
            _input("n-bad-persona", "persona", "not-persona"),
            _input("n-no-ref", "product"),
            _input("n-ok", "kb_item", "kb-market"),
            AgentNode(id="agent", agent_definition_id="def-1"),
        ],
        connections=[
            Connection(from_node_id="n-missing", to_node_id="agent"),
            Connection(from_node_id="n-bad-persona", to_node_id="agent"),
            Connection(from_node_id="n-no-ref", to_node_id="agent"),
            Connection(from_node_id="n-ok", to_node_id="agent"),
        ],
    )

    async def _run() -> None:
        context = await ContextBuilder(store, registry).build(workflow, "agent")
        assert context.referenced_kb_item_ids == ["kb-market"]
        assert context.persona is None
        assert context.product is None
        assert [omission.node_id for omission in context.omissions] == ["n-missing", "n-bad-persona", "n-no-ref"]
        assert len(context.packets) == 1

    try:
        asyncio.run(_run())
    finally:
        store.close()


def test_store_exception_becomes_omission(tmp_path: Path):
    store, registry = _stores(tmp_path)

    class BrokenRegistry:
        def get_product(self, product_id: str):
            raise RuntimeError("registry offline")

    workflow = Workflow(
        id="wf-4",
        nodes=[_input("n-product", "product", "prod-1"), AgentNode(id="agent", agent_definition_id="def-1")],
        connections=[Connection(from_node_id="n-product", to_node_id="agent")],
    )

    async def _run() -> None:
        context = await ContextBuilder(store, BrokenRegistry()).build(workflow, "agent")
        assert context.product is None
        assert "registry offline" in context.omissions[0].reason

    try:
        asyncio.run(_run())
    finally:
        store.close()


def test_selected_lp_run_is_merged_after_resolution(tmp_path: Path):
    store, registry = _stores(tmp_path)
    registry.save_workflow(_workflow())
    request = ExecuteAgentRequest.model_validate(
        {
            "workflowId": "wf-1",
            "agentNodeId": "agent",
            "agentDefinitionId": "def-1",
            "inputNodes": [],
            "selectedLpRunId": "run-1",
        }
    )

    async def _run() -> None:
        context = await ContextBuilder(store, registry, registry).build_for_request(request)
        assert context.lp_structure.run_id == "run-1"
        assert context.lp_structure.payload["execSummary"] == "Prior LP"
        assert context.to_wire()["lp_structure"]["runId"] == "run-1"

    try:
        asyncio.run(_run())
    finally:
        store.close()


def test_selected_run_of_other_kind_is_not_merged(tmp_path: Path):
    store, registry = _stores(tmp_path)
    store.create(
        KnowledgeDocument(
            kb_id="run-banner",
            type="workflow_run",
            payload={"output": {"type": "banner_structure"}, "outputKind": "banner_structure"},
        )
    )

    async def _run() -> None:
        builder = ContextBuilder(store, registry)
        context = await builder.build(_workflow(), "agent")
        merged = await builder.merge_selected_run(context, "run-banner")
        assert merged.lp_structure is None
        assert merged.omissions[-1].ref_id == "run-banner"

    try:
        asyncio.run(_run())
    finally:
        store.close()


def test_flat_fallback_when_workflow_is_unknown(tmp_path: Path):
    store, registry = _stores(tmp_path)
    request = ExecuteAgentRequest.model_validate(
        {
            "workflowId": "wf-unknown",
            "agentNodeId": "agent",
            "agentDefinitionId": "def-1",
            "inputNodes": [
                {"inputKind": "product", "refId": "prod-1"},
                {"inputKind": "kb_item", "refId": "kb-market"},
                {"inputKind": "intent", "intent": {"goal": "Explain pricing"}},
            ],
        }
    )

    async def _run() -> None:
        context = await ContextBuilder(store, registry, registry).build_for_request(request)
        assert context.mode == "flat"
        assert context.product.id == "prod-1"
        assert context.intent.goal == "Explain pricing"
        assert context.trace.ordered_node_ids == ["input-1", "input-2", "input-3"]

    try:
        asyncio.run(_run())
    finally:
        store.close()


def test_missing_workflow_without_inputs_raises(tmp_path: Path):
    store, registry = _stores(tmp_path)
    request = ExecuteAgentRequest(
        workflow_id="wf-unknown",
        agent_node_id="agent",
        agent_definition_id="def-1",
        input_nodes=[],
    )

    async def _run() -> None:
        with pytest.raises(GraphError):
            await ContextBuilder(store, registry, registry).build_for_request(request)

    try:
        asyncio.run(_run())
    finally:
        store.close()


def test_flat_strategy_accepts_input_node_refs(tmp_path: Path):
    store, registry = _stores(tmp_path)

    async def _run() -> None:
        context = await ContextBuilder(store, registry).build_flat(
            [InputNodeRef(node_id="p", input_kind="persona", ref_id="persona-1")]
        )
        assert context.persona.title == "Busy parent"
        assert context.packets[0].node_id == "p"

    try:
        asyncio.run(_run())
    finally:
        store.close()


def test_summary_and_trace_record(tmp_path: Path):
    store, registry = _stores(tmp_path)

    async def _run() -> None:
        context = await ContextBuilder(store, registry).build(_workflow(), "agent")
        summary = summarize_context(context)
        record = build_context_trace_record(context)

        assert summary.market_insights_count == 1
        assert summary.planning_hooks_count == 1
        assert summary.other_knowledge_count == 1
        assert summary.product_summary == {"name": "Sparkling Tea", "category": "beverage"}
        assert record.referenced_run_ids == ["run-1"]
        assert [entry["nodeId"] for entry in record.context_sections.knowledge] == ["n-note", "n-hook", "n-market"]
        assert record.context_sections.upstream_outputs[0]["nodeId"] == "n-run"
        assert len(record.context_build_log) == 7

    try:
        asyncio.run(_run())
    finally:
        store.close()
