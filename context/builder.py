"""
Context Builder.

Responsibility:
- Turn resolved input nodes into one ExecutionContext
- Fetch referenced documents concurrently; aggregate in resolution order
- Drop inputs whose fetch fails (recorded as omissions, never placeholders)
- Order knowledge by the fixed kind priority table
- Merge an operator-selected LP-structure run after automatic resolution

Two strategies produce contexts with the same invariants:
- dag:  transitive upstream walk over the workflow graph
- flat: caller-supplied input list, no graph walk (fallback)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from graph.resolver import resolve_upstream_with_trace
from knowledge.store import KnowledgeStore
from registry.db import ProductRegistry, WorkflowStore
from shared.errors import GraphError
from shared.models import (
    ContextBuildEntry,
    ContextMode,
    ContextOmission,
    ContextSections,
    ContextSummary,
    ContextTrace,
    ContextTraceRecord,
    ExecuteAgentRequest,
    ExecutionContext,
    InputNode,
    InputNodeRef,
    IntentPayload,
    KnowledgeRef,
    LpStructureRef,
    Packet,
    Persona,
    Product,
    UpstreamOutput,
    Workflow,
)

logger = logging.getLogger(__name__)

KNOWLEDGE_PRIORITY: dict[str, int] = {
    "banner_insight": 1,
    "market_insight": 2,
    "strategy_option": 3,
    "planning_hook": 4,
    "banner_auto_layout": 5,
}
UNRANKED_PRIORITY = 999

WORKFLOW_RUN_TYPE = "workflow_run"
LP_STRUCTURE_KIND = "lp_structure"


def knowledge_priority(kind: str) -> int:
    return KNOWLEDGE_PRIORITY.get(kind, UNRANKED_PRIORITY)


def sort_knowledge(items: list[KnowledgeRef]) -> list[KnowledgeRef]:
    """Stable sort: ranked kinds first, discovery order kept within a rank."""
    return sorted(items, key=lambda item: knowledge_priority(item.kind))


@dataclass(frozen=True)
class InputSpec:
    """Strategy-neutral description of one input to fetch."""

    node_id: str
    kind: str
    ref_id: str | None = None
    ref_kind: str | None = None
    title: str = ""
    intent: IntentPayload | None = None


@dataclass
class FetchedInput:
    spec: InputSpec
    packet: Packet | None = None
    product: Product | None = None
    persona: Persona | None = None
    intent: IntentPayload | None = None
    knowledge: KnowledgeRef | None = None
    upstream: UpstreamOutput | None = None
    kb_ids: list[str] = field(default_factory=list)
    run_ids: list[str] = field(default_factory=list)
    omission: ContextOmission | None = None


def _append_unique(target: list[str], values: list[str]) -> None:
    for value in values:
        if value and value not in target:
            target.append(value)


class ContextBuilder:
    """Builds execution contexts from workflow graphs or flat input lists."""

    def __init__(
        self,
        knowledge_store: KnowledgeStore,
        product_registry: ProductRegistry,
        workflow_store: WorkflowStore | None = None,
    ):
        self.knowledge_store = knowledge_store
        self.product_registry = product_registry
        self.workflow_store = workflow_store

    # ─── Strategies ───────────────────────────────────────────

    async def build(self, workflow: Workflow, target_node_id: str) -> ExecutionContext:
        """DAG strategy. Raises GraphError when the target node is missing."""
        nodes, trace = resolve_upstream_with_trace(workflow, target_node_id)
        specs = [self._spec_from_node(node, trace) for node in nodes]
        return await self._assemble(specs, trace, mode="dag")

    async def build_flat(self, input_nodes: list[InputNodeRef]) -> ExecutionContext:
        """Flat strategy over a caller-supplied list; no upstream walk."""
        specs: list[InputSpec] = []
        for index, ref in enumerate(input_nodes):
            specs.append(
                InputSpec(
                    node_id=ref.node_id or f"input-{index + 1}",
                    kind=(ref.input_kind or "").strip(),
                    ref_id=ref.ref_id,
                    ref_kind=ref.ref_kind,
                    title=ref.title,
                    intent=ref.intent,
                )
            )
        trace = ContextTrace(ordered_node_ids=[spec.node_id for spec in specs])
        return await self._assemble(specs, trace, mode="flat")

    async def build_for_request(self, request: ExecuteAgentRequest) -> ExecutionContext:
        """Primary DAG strategy with flat fallback, then the selected LP run merge."""
        try:
            workflow = await self._load_workflow(request)
            context = await self.build(workflow, request.agent_node_id or "")
        except GraphError as exc:
            if not request.input_nodes:
                raise
            logger.warning("DAG context build failed (%s); using flat input list", exc.message)
            context = await self.build_flat(request.input_nodes)

        if request.selected_prior_run_id:
            context = await self.merge_selected_run(context, request.selected_prior_run_id)
        return context

    async def merge_selected_run(self, context: ExecutionContext, run_id: str) -> ExecutionContext:
        """Attach an operator-selected prior run as `lp_structure` when it is one."""
        try:
            document = await asyncio.to_thread(self.knowledge_store.get, run_id)
        except Exception as exc:
            logger.warning("Selected run %s could not be fetched: %s", run_id, exc)
            return self._with_omission(context, run_id, f"fetch failed: {exc}")

        if document is None or document.type != WORKFLOW_RUN_TYPE:
            return self._with_omission(context, run_id, "selected run not found")

        payload = document.payload or {}
        output = payload.get("output")
        if not isinstance(output, dict):
            output = payload.get("finalOutput")
        is_lp = isinstance(output, dict) and (
            output.get("type") == LP_STRUCTURE_KIND or payload.get("outputKind") == LP_STRUCTURE_KIND
        )
        if not is_lp:
            return self._with_omission(context, run_id, "selected run is not an lp_structure output")

        referenced = list(context.referenced_kb_item_ids)
        _append_unique(referenced, [run_id])
        logger.info("Merged selected lp_structure run %s", run_id)
        return context.model_copy(
            update={
                "lp_structure": LpStructureRef(run_id=run_id, payload=output),
                "referenced_kb_item_ids": referenced,
            }
        )

    # ─── Internals ────────────────────────────────────────────

    async def _load_workflow(self, request: ExecuteAgentRequest) -> Workflow:
        if request.workflow is not None:
            return request.workflow
        workflow = None
        if self.workflow_store is not None and request.workflow_id:
            workflow = await asyncio.to_thread(self.workflow_store.get_workflow, request.workflow_id)
        if workflow is None:
            raise GraphError(
                f"Workflow not found: {request.workflow_id}",
                {"workflowId": request.workflow_id},
            )
        return workflow

    @staticmethod
    def _spec_from_node(node: InputNode, trace: ContextTrace) -> InputSpec:
        edge_kind = next(
            (edge.ref_kind for edge in trace.edges_used if edge.from_node_id == node.id and edge.ref_kind),
            None,
        )
        return InputSpec(
            node_id=node.id,
            kind=node.kind,
            ref_id=node.data.ref_id,
            ref_kind=edge_kind or node.data.ref_kind,
            title=node.data.title,
            intent=node.data.intent,
        )

    async def _assemble(
        self,
        specs: list[InputSpec],
        trace: ContextTrace,
        mode: ContextMode,
    ) -> ExecutionContext:
        fetched = await asyncio.gather(*(self._fetch(spec) for spec in specs))

        product: Product | None = None
        persona: Persona | None = None
        intent: IntentPayload | None = None
        knowledge: list[KnowledgeRef] = []
        packets: list[Packet] = []
        upstream: dict[str, UpstreamOutput] = {}
        kb_ids: list[str] = []
        run_ids: list[str] = []
        omissions: list[ContextOmission] = []

        # Later inputs are closer to the target and win single-valued slots.
        for item in fetched:
            if item.omission is not None:
                omissions.append(item.omission)
                continue
            if item.packet is not None:
                packets.append(item.packet)
            if item.product is not None:
                product = item.product
            if item.persona is not None:
                persona = item.persona
            if item.intent is not None:
                intent = item.intent
            if item.knowledge is not None:
                knowledge.append(item.knowledge)
            if item.upstream is not None:
                upstream[f"workflow_run_{item.upstream.run_id}"] = item.upstream
            _append_unique(kb_ids, item.kb_ids)
            _append_unique(run_ids, item.run_ids)

        context = ExecutionContext(
            mode=mode,
            product=product,
            persona=persona,
            intent=intent,
            knowledge=sort_knowledge(knowledge),
            packets=packets,
            trace=trace,
            referenced_kb_item_ids=kb_ids,
            referenced_run_ids=run_ids,
            upstream_outputs=upstream,
            omissions=omissions,
        )
        logger.info(
            "Built %s context: %d packets, %d knowledge, %d omissions",
            mode,
            len(packets),
            len(knowledge),
            len(omissions),
        )
        return context

    async def _fetch(self, spec: InputSpec) -> FetchedInput:
        try:
            return await self._fetch_kind(spec)
        except Exception as exc:
            logger.warning("Input %s (%s) fetch failed: %s", spec.node_id, spec.kind, exc)
            return self._omit(spec, f"fetch failed: {exc}")

    async def _fetch_kind(self, spec: InputSpec) -> FetchedInput:
        if spec.kind == "intent":
            intent = spec.intent or IntentPayload()
            return FetchedInput(
                spec=spec,
                intent=intent,
                packet=self._packet(spec, intent.model_dump(mode="json", by_alias=True)),
            )

        if spec.kind not in {"product", "persona", "kb_item", "workflow_run_ref"}:
            return self._omit(spec, f"unsupported input kind '{spec.kind}'")
        if not spec.ref_id:
            return self._omit(spec, "input has no refId")

        if spec.kind == "product":
            product = await asyncio.to_thread(self.product_registry.get_product, spec.ref_id)
            if product is None:
                return self._omit(spec, "product not found")
            return FetchedInput(spec=spec, product=product, packet=self._packet(spec, product.to_wire(), product.name))

        document = await asyncio.to_thread(self.knowledge_store.get, spec.ref_id)
        if document is None:
            return self._omit(spec, "knowledge item not found")

        if spec.kind == "persona":
            payload = document.payload or {}
            if payload.get("type") != "persona":
                return self._omit(spec, "knowledge item is not a persona")
            persona = Persona(
                id=document.kb_id,
                title=str(payload.get("title") or payload.get("summary") or document.title),
                payload=payload,
            )
            return FetchedInput(
                spec=spec,
                persona=persona,
                packet=self._packet(spec, payload, persona.title),
                kb_ids=[document.kb_id],
            )

        if spec.kind == "kb_item":
            ref = KnowledgeRef(
                kind=spec.ref_kind or document.type,
                id=document.kb_id,
                title=document.title,
                payload=document.payload,
            )
            return FetchedInput(
                spec=spec,
                knowledge=ref,
                packet=self._packet(spec, document.payload, document.title),
                kb_ids=[document.kb_id],
            )

        if document.type != WORKFLOW_RUN_TYPE:
            return self._omit(spec, "referenced item is not a workflow run")
        payload = document.payload or {}
        output = payload.get("finalOutput") or payload.get("output")
        if not output:
            return self._omit(spec, "referenced run has no output")
        upstream = UpstreamOutput(run_id=document.kb_id, output=output)
        return FetchedInput(
            spec=spec,
            upstream=upstream,
            packet=self._packet(spec, output, document.title),
            kb_ids=[document.kb_id],
            run_ids=[document.kb_id],
        )

    @staticmethod
    def _packet(spec: InputSpec, content: Any, title: str = "") -> Packet:
        return Packet(node_id=spec.node_id, kind=spec.kind, title=spec.title or title, content=content)

    @staticmethod
    def _omit(spec: InputSpec, reason: str) -> FetchedInput:
        logger.info("Omitting input %s (%s): %s", spec.node_id, spec.kind, reason)
        return FetchedInput(
            spec=spec,
            omission=ContextOmission(node_id=spec.node_id, kind=spec.kind, ref_id=spec.ref_id, reason=reason),
        )

    @staticmethod
    def _with_omission(context: ExecutionContext, run_id: str, reason: str) -> ExecutionContext:
        logger.info("Selected run %s not merged: %s", run_id, reason)
        omission = ContextOmission(node_id="selected_prior_run", kind=LP_STRUCTURE_KIND, ref_id=run_id, reason=reason)
        return context.model_copy(update={"omissions": [*context.omissions, omission]})


# ─── Audit Views ──────────────────────────────────────────────

def summarize_context(context: ExecutionContext) -> ContextSummary:
    counts = {"banner_insight": 0, "market_insight": 0, "strategy_option": 0, "planning_hook": 0}
    other = 0
    for item in context.knowledge:
        if item.kind in counts:
            counts[item.kind] += 1
        else:
            other += 1
    product_summary = None
    if context.product is not None:
        product_summary = {"name": context.product.name, "category": context.product.category}
    persona_summary = None
    if context.persona is not None:
        persona_summary = {"id": context.persona.id, "title": context.persona.title}
    return ContextSummary(
        banner_insights_count=counts["banner_insight"],
        market_insights_count=counts["market_insight"],
        strategy_options_count=counts["strategy_option"],
        planning_hooks_count=counts["planning_hook"],
        other_knowledge_count=other,
        packet_count=len(context.packets),
        product_summary=product_summary,
        persona_summary=persona_summary,
        used_kb_item_ids=list(context.referenced_kb_item_ids),
        referenced_run_ids=list(context.referenced_run_ids),
    )


_SECTION_KINDS = {
    "goal": ("intent",),
    "product": ("product",),
    "persona": ("persona",),
    "knowledge": ("kb_item",),
    "upstream_outputs": ("workflow_run_ref", "agent_output"),
}


def build_context_trace_record(context: ExecutionContext) -> ContextTraceRecord:
    """Audit view of how the context was assembled."""
    build_log = [
        ContextBuildEntry(
            node_id=packet.node_id,
            node_type=packet.node_type,
            kind=packet.kind,
            title=packet.title,
            extracted_at=packet.created_at,
        )
        for packet in context.packets
    ]
    sections = {
        name: [
            {"nodeId": packet.node_id, "content": packet.content}
            for packet in context.packets
            if packet.kind in kinds
        ]
        for name, kinds in _SECTION_KINDS.items()
    }
    return ContextTraceRecord(
        referenced_node_ids=list(context.trace.ordered_node_ids),
        referenced_run_ids=list(context.referenced_run_ids),
        context_build_log=build_log,
        context_sections=ContextSections(**sections),
        omissions=list(context.omissions),
    )
