"""
Shared Pydantic models for all layers.
All contexts are immutable (frozen) after creation.

Wire-facing models serialize with camelCase aliases so persisted run
documents and API payloads keep the shape the workflow UI reads.
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Annotated, Any, Literal

from pydantic import AliasChoices, BaseModel, Field, ValidationError
from pydantic.alias_generators import to_camel


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class WireModel(BaseModel):
    """Frozen model with camelCase wire aliases."""

    model_config = {
        "frozen": True,
        "alias_generator": to_camel,
        "populate_by_name": True,
    }

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ─── Workflow Graph ───────────────────────────────────────────

InputKind = Literal["product", "persona", "kb_item", "intent", "workflow_run_ref"]


class IntentPayload(WireModel):
    """Operator-entered purpose of an agent run."""

    model_config = {**WireModel.model_config, "extra": "allow"}

    goal: str = Field(default="")
    success_criteria: str = Field(default="")
    notes: str = Field(default="")


class InputNodeData(WireModel):
    ref_id: str | None = Field(default=None, description="Pointer into an external store")
    title: str = Field(default="")
    ref_kind: str | None = Field(default=None)
    intent: IntentPayload | None = Field(default=None)


class InputNode(WireModel):
    id: str
    type: Literal["input"] = "input"
    kind: InputKind
    data: InputNodeData = Field(default_factory=InputNodeData)


class AgentNode(WireModel):
    id: str
    type: Literal["agent"] = "agent"
    agent_definition_id: str
    label: str = Field(default="")


Node = Annotated[InputNode | AgentNode, Field(discriminator="type")]


class Connection(WireModel):
    """Directed edge; `ref_kind` optionally declares the knowledge kind carried."""

    from_node_id: str
    to_node_id: str
    ref_kind: str | None = Field(default=None)


class Workflow(WireModel):
    """Graph of input and agent nodes. Read-only during an execution."""

    id: str
    name: str = Field(default="")
    nodes: list[Node] = Field(default_factory=list)
    connections: list[Connection] = Field(default_factory=list)

    def get_node(self, node_id: str) -> InputNode | AgentNode | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None


# ─── External Collaborators ───────────────────────────────────

class Product(WireModel):
    id: str
    name: str
    category: str = Field(default="")
    description: str = Field(default="")


class KnowledgeDocument(BaseModel):
    """Knowledge store document. Field names match the store's snake_case schema."""

    model_config = {"frozen": True}

    kb_id: str
    type: str
    title: str = Field(default="")
    folder_path: str = Field(default="My Files")
    tags: list[str] = Field(default_factory=list)
    owner_id: str = Field(default="user")
    visibility: str = Field(default="private")
    source_app: str | None = Field(default=None)
    source_project_id: str | None = Field(default=None)
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)
    payload: dict[str, Any] = Field(default_factory=dict)


class KnowledgeFilter(BaseModel):
    model_config = {"frozen": True}

    q: str | None = Field(default=None, description="Case-insensitive text match on title/payload")
    type: str | None = Field(default=None)
    folder_path: str | None = Field(default=None)
    owner_id: str | None = Field(default=None)
    source_project_id: str | None = Field(default=None)
    limit: int = Field(default=200, ge=1)


class AgentDefinition(WireModel):
    """Generation template bound to one output kind."""

    id: str
    name: str = Field(default="")
    category: str = Field(default="")
    system_prompt: str = Field(default="")
    user_prompt_template: str = Field(default="")
    output_kind: str = Field(default="lp_structure")
    output_schema_ref: str | None = Field(default=None)
    updated_at: str | None = Field(default=None)

    @property
    def version_hash(self) -> str:
        content = f"{self.system_prompt}|{self.output_schema_ref or ''}|{self.output_kind}"
        return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


# ─── Execution Context ────────────────────────────────────────

class Persona(WireModel):
    id: str
    title: str = Field(default="")
    payload: dict[str, Any] = Field(default_factory=dict)


class KnowledgeRef(WireModel):
    kind: str
    id: str
    title: str = Field(default="")
    payload: Any = Field(default=None)


class Packet(WireModel):
    """Provenance record for one resolved input node."""

    node_id: str
    node_type: str = Field(default="input")
    kind: str
    title: str = Field(default="")
    content: Any = Field(default=None)
    created_at: str = Field(default_factory=utc_now_iso)


class ContextTrace(WireModel):
    ordered_node_ids: list[str] = Field(default_factory=list)
    edges_used: list[Connection] = Field(default_factory=list)


class ContextOmission(WireModel):
    """An input that was resolved but could not be fetched."""

    node_id: str
    kind: str
    ref_id: str | None = Field(default=None)
    reason: str


class LpStructureRef(WireModel):
    run_id: str
    payload: dict[str, Any] = Field(default_factory=dict)


class UpstreamOutput(WireModel):
    kind: str = Field(default="workflow_run_output")
    run_id: str
    output: Any = Field(default=None)


ContextMode = Literal["dag", "flat"]


class ExecutionContext(WireModel):
    """Resolved input bundle for exactly one agent execution."""

    mode: ContextMode = Field(default="dag")
    product: Product | None = Field(default=None)
    persona: Persona | None = Field(default=None)
    intent: IntentPayload | None = Field(default=None)
    knowledge: list[KnowledgeRef] = Field(default_factory=list)
    packets: list[Packet] = Field(default_factory=list)
    trace: ContextTrace = Field(default_factory=ContextTrace)
    referenced_kb_item_ids: list[str] = Field(default_factory=list)
    referenced_run_ids: list[str] = Field(default_factory=list)
    upstream_outputs: dict[str, UpstreamOutput] = Field(default_factory=dict, alias="inputs")
    lp_structure: LpStructureRef | None = Field(default=None, alias="lp_structure")
    omissions: list[ContextOmission] = Field(default_factory=list)

    def packets_of_kind(self, kind: str) -> list[Packet]:
        return [packet for packet in self.packets if packet.kind == kind]


class ContextSummary(WireModel):
    """Counts-only digest of an ExecutionContext."""

    banner_insights_count: int = 0
    market_insights_count: int = 0
    strategy_options_count: int = 0
    planning_hooks_count: int = 0
    other_knowledge_count: int = 0
    packet_count: int = 0
    product_summary: dict[str, str] | None = Field(default=None)
    persona_summary: dict[str, str] | None = Field(default=None)
    used_kb_item_ids: list[str] = Field(default_factory=list)
    referenced_run_ids: list[str] = Field(default_factory=list)


class ContextSections(WireModel):
    """Packet contents grouped by role, each entry `{nodeId, content}`."""

    goal: list[dict[str, Any]] = Field(default_factory=list)
    product: list[dict[str, Any]] = Field(default_factory=list)
    persona: list[dict[str, Any]] = Field(default_factory=list)
    knowledge: list[dict[str, Any]] = Field(default_factory=list)
    upstream_outputs: list[dict[str, Any]] = Field(default_factory=list)


class ContextBuildEntry(WireModel):
    node_id: str
    node_type: str
    kind: str
    title: str = Field(default="")
    extracted_at: str


class ContextTraceRecord(WireModel):
    referenced_node_ids: list[str] = Field(default_factory=list)
    referenced_run_ids: list[str] = Field(default_factory=list)
    context_build_log: list[ContextBuildEntry] = Field(default_factory=list)
    context_sections: ContextSections = Field(default_factory=ContextSections)
    omissions: list[ContextOmission] = Field(default_factory=list)


# ─── Quality & Validation ─────────────────────────────────────

QualityStatus = Literal["usable", "regenerate_recommended", "insufficient_evidence"]


class QualityCheck(WireModel):
    """Pre-execution gate result. `errors` is empty once the gate returns."""

    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    missing_inputs: list[str] = Field(default_factory=list)


class ContextQuality(QualityCheck):
    status: QualityStatus = Field(default="usable")


class ValidationIssue(WireModel):
    path: str = Field(default="")
    message: str


class SchemaValidationResult(WireModel):
    success: bool
    issues: list[ValidationIssue] = Field(default_factory=list)

    @classmethod
    def from_pydantic_error(cls, error: ValidationError) -> "SchemaValidationResult":
        issues = [
            ValidationIssue(
                path=".".join(str(part) for part in item.get("loc", ())),
                message=str(item.get("msg", "invalid value")),
            )
            for item in error.errors()
        ]
        return cls(success=False, issues=issues)


class SemanticValidationResult(WireModel):
    passed: bool = Field(default=True, alias="pass")
    reasons: list[str] = Field(default_factory=list)


# ─── Requests ─────────────────────────────────────────────────

class InputNodeRef(WireModel):
    """Caller-supplied input used by the flat (non-graph) context strategy."""

    node_id: str | None = Field(default=None)
    input_kind: str | None = Field(default=None, validation_alias=AliasChoices("inputKind", "input_kind", "kind"))
    ref_id: str | None = Field(default=None)
    ref_kind: str | None = Field(default=None)
    title: str = Field(default="")
    intent: IntentPayload | None = Field(default=None)


class ExecuteAgentRequest(WireModel):
    workflow_id: str | None = Field(default=None)
    agent_node_id: str | None = Field(default=None)
    agent_definition_id: str | None = Field(default=None)
    workflow: Workflow | None = Field(default=None)
    input_nodes: list[InputNodeRef] | None = Field(default=None)
    selected_prior_run_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("selectedPriorRunId", "selectedLpRunId", "selected_prior_run_id"),
    )

    def missing_fields(self) -> list[str]:
        missing: list[str] = []
        if not (self.workflow_id or "").strip():
            missing.append("workflowId")
        if not (self.agent_node_id or "").strip():
            missing.append("agentNodeId")
        if not (self.agent_definition_id or "").strip():
            missing.append("agentDefinitionId")
        if self.input_nodes is None:
            missing.append("inputNodes")
        return missing


# ─── Run Record ───────────────────────────────────────────────

RunStatus = Literal["success", "error"]


class RunRecord(WireModel):
    """Normalized, persisted artifact of one agent execution."""

    run_id: str
    type: Literal["workflow_run"] = "workflow_run"
    workflow_id: str
    agent_node_id: str
    agent_definition_id: str
    agent_definition_name: str = Field(default="")
    agent_definition_updated_at: str | None = Field(default=None)
    agent_definition_version_hash: str | None = Field(default=None)
    output_kind: str | None = Field(default=None)
    output_schema_ref: str | None = Field(default=None)
    model: str | None = Field(default=None)
    status: RunStatus
    error: str | None = Field(default=None)
    started_at: str
    finished_at: str
    duration_ms: int = Field(default=0, ge=0)
    attempts: int = Field(default=0, ge=0)
    inputs_snapshot: dict[str, Any] = Field(default_factory=dict)
    input_summary: ContextSummary = Field(default_factory=ContextSummary)
    context_trace: ContextTraceRecord | None = Field(default=None)
    llm_raw_output: str | None = Field(default=None)
    parsed_output: Any = Field(default=None)
    final_output: dict[str, Any] | None = Field(default=None)
    output: Any = Field(default=None, description="Legacy mirror of the best available output")
    presentation: dict[str, Any] | None = Field(default=None)
    presentation_validation: SchemaValidationResult | None = Field(default=None)
    zod_validation_result: SchemaValidationResult = Field(
        default_factory=lambda: SchemaValidationResult(success=False)
    )
    semantic_validation_result: SemanticValidationResult = Field(default_factory=SemanticValidationResult)
    context_quality: ContextQuality = Field(default_factory=ContextQuality)


# ─── Execution Events ─────────────────────────────────────────

ExecutionStep = Literal[
    "request_validated",
    "context_built",
    "pre_gate_checked",
    "prompt_rendered",
    "generation_attempt",
    "output_validated",
    "post_gate_checked",
    "run_normalized",
    "run_persisted",
    "execution_failed",
]


class ExecutionEvent(WireModel):
    execution_id: str
    step: ExecutionStep
    status: Literal["ok", "warning", "error"] = "ok"
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=utc_now_iso)


class ExecutionResponse(WireModel):
    success: bool
    run_id: str
    output: Any = Field(default=None)
    raw_output: str | None = Field(default=None)
    duration_ms: int = Field(default=0)
    model: str | None = Field(default=None)
    context_quality: ContextQuality
    zod_validation_result: SchemaValidationResult
    semantic_validation_result: SemanticValidationResult
    events: list[ExecutionEvent] = Field(default_factory=list)
