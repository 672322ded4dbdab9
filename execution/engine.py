"""Agent Execution Engine.

Runs one agent node of a workflow as a strictly sequential pipeline:

    request check -> agent definition -> context build -> pre-gate ->
    prompt render -> generation (+1 corrective retry) -> post-gate ->
    normalization -> persistence (write + read-back)

Each step is reported as an ExecutionEvent to an optional progress
callback and kept on the response. Exactly one run record is written
per execution that reaches context building. A failure after that point,
cancellation included, first writes an error record and is then re-raised.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from typing import Any, Callable

from context.builder import ContextBuilder
from execution.generation_loop import GenerationOutcome, run_generation
from execution.normalizer import RunFields, new_run_id, normalize_run_record
from execution.output_kinds import output_kind_spec
from execution.persistence import RunPersistence
from execution.validator import ValidatedOutput
from knowledge.agent_definitions import load_agent_definition
from knowledge.store import KnowledgeStore
from models.generation import GenerationClient
from observability.logger import ExecutionTracer
from prompting.assembler import PromptBudget, estimate_tokens, render_user_prompt
from prompting.instructions import technical_requirements
from quality.gates import merge_quality, pre_execution_quality
from registry.db import ProductRegistry, WorkflowStore
from shared.config import ExecutionSettings
from shared.errors import ExecutionError, InputMissingError
from shared.models import (
    AgentDefinition,
    ContextQuality,
    ExecuteAgentRequest,
    ExecutionContext,
    ExecutionEvent,
    ExecutionResponse,
    ExecutionStep,
    SemanticValidationResult,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[dict[str, Any]], Any]


def _failure_message(exc: BaseException) -> str:
    if isinstance(exc, ExecutionError):
        return exc.message
    if isinstance(exc, asyncio.CancelledError):
        return "Execution was cancelled before the run completed."
    return f"{type(exc).__name__}: {exc}"


class _EventStream:
    """Collects execution-step events and forwards them to a callback."""

    def __init__(self, execution_id: str, tracer: ExecutionTracer, callback: ProgressCallback | None):
        self.execution_id = execution_id
        self.tracer = tracer
        self.callback = callback
        self.events: list[ExecutionEvent] = []

    async def emit(self, step: ExecutionStep, payload: dict[str, Any] | None = None, status: str = "ok") -> None:
        event = ExecutionEvent(
            execution_id=self.execution_id,
            step=step,
            status=status,
            payload=payload or {},
        )
        self.events.append(event)
        self.tracer.event(
            f"execution.{step}",
            {"status": status, **event.payload},
            level=logging.ERROR if status == "error" else logging.INFO,
        )
        if self.callback is None:
            return
        try:
            maybe_result = self.callback(event.to_wire())
            if inspect.isawaitable(maybe_result):
                await maybe_result
        except Exception as exc:
            logger.warning("Failed to emit execution progress callback: %s", exc)


class AgentExecutionEngine:
    """Executes agent nodes against the knowledge store and generation service."""

    def __init__(
        self,
        settings: ExecutionSettings,
        knowledge_store: KnowledgeStore,
        product_registry: ProductRegistry,
        generation_client: GenerationClient,
        workflow_store: WorkflowStore | None = None,
    ):
        self.settings = settings
        self.knowledge_store = knowledge_store
        self.generation_client = generation_client
        self.context_builder = ContextBuilder(knowledge_store, product_registry, workflow_store)
        self.persistence = RunPersistence(knowledge_store)
        self.budget = PromptBudget(
            max_context_tokens=settings.max_context_tokens,
            max_knowledge_item_tokens=settings.max_knowledge_item_tokens,
        )

    async def execute(
        self,
        request: ExecuteAgentRequest,
        progress_callback: ProgressCallback | None = None,
    ) -> ExecutionResponse:
        execution_id = str(uuid.uuid4())
        # Generation attempts share this deadline, which ends before the outer request timeout.
        deadline = time.monotonic() + self.settings.generation_timeout_seconds
        tracer = ExecutionTracer(execution_id)
        events = _EventStream(execution_id, tracer, progress_callback)

        missing = request.missing_fields()
        if missing:
            raise InputMissingError(missing)
        self.generation_client.ensure_configured()
        await events.emit(
            "request_validated",
            {
                "workflowId": request.workflow_id,
                "agentNodeId": request.agent_node_id,
                "agentDefinitionId": request.agent_definition_id,
            },
        )

        definition = await asyncio.to_thread(
            load_agent_definition, self.knowledge_store, request.agent_definition_id or ""
        )

        started_at = utc_now_iso()
        start_time = time.perf_counter()
        run_id = new_run_id()

        with tracer.stage("context_build", {"agentNodeId": request.agent_node_id}):
            context = await self.context_builder.build_for_request(request)
        await events.emit(
            "context_built",
            {
                "mode": context.mode,
                "packets": len(context.packets),
                "knowledge": len(context.knowledge),
                "omissions": len(context.omissions),
            },
        )

        pre_quality: ContextQuality | None = None
        outcome: GenerationOutcome | None = None
        try:
            pre_quality = pre_execution_quality(context)
            await events.emit(
                "pre_gate_checked",
                {"status": pre_quality.status, "warnings": len(pre_quality.warnings)},
                status="ok" if pre_quality.status == "usable" else "warning",
            )

            kind = output_kind_spec(definition.output_kind)
            user_prompt = render_user_prompt(
                definition.user_prompt_template,
                context,
                self.budget,
                suffix=technical_requirements(kind.kind),
            )
            await events.emit("prompt_rendered", {"estimatedTokens": estimate_tokens(user_prompt)})

            async def on_attempt(attempt: int, validated: ValidatedOutput) -> None:
                await events.emit(
                    "generation_attempt",
                    {"attempt": attempt, "outcome": validated.outcome, "issues": len(validated.result.issues)},
                    status="ok" if validated.outcome == "valid" else "warning",
                )

            outcome = await run_generation(
                self.generation_client,
                definition.system_prompt,
                user_prompt,
                kind.schema,
                retry_temperature=self.settings.retry_temperature,
                on_attempt=on_attempt,
                deadline=deadline,
            )
            await events.emit(
                "output_validated",
                {"outcome": outcome.outcome, "attempts": outcome.attempts, "success": outcome.validation.success},
                status="ok" if outcome.validation.success else "warning",
            )

            semantic = kind.check_semantics(outcome.parsed, context)
            quality = merge_quality(pre_quality, semantic)
            await events.emit(
                "post_gate_checked",
                {"pass": semantic.passed, "reasons": len(semantic.reasons), "status": quality.status},
                status="ok" if semantic.passed else "warning",
            )

            record = normalize_run_record(
                self._run_fields(
                    request=request,
                    definition=definition,
                    context=context,
                    quality=quality,
                    run_id=run_id,
                    started_at=started_at,
                    start_time=start_time,
                    outcome=outcome,
                    semantic=semantic,
                )
            )
            await events.emit(
                "run_normalized", {"runId": record.run_id, "hasFinalOutput": record.final_output is not None}
            )
        except (Exception, asyncio.CancelledError) as exc:
            message = _failure_message(exc)
            recorded = await self._record_failure(
                exc,
                message,
                request=request,
                definition=definition,
                context=context,
                quality=pre_quality,
                outcome=outcome,
                run_id=run_id,
                started_at=started_at,
                start_time=start_time,
            )
            await events.emit(
                "execution_failed",
                {
                    "runId": run_id if recorded else None,
                    "kind": getattr(exc, "kind", type(exc).__name__),
                    "error": message,
                },
                status="error",
            )
            raise

        with tracer.stage("run_persist", {"runId": record.run_id}):
            await asyncio.to_thread(self.persistence.persist, record, definition)
        await events.emit("run_persisted", {"runId": record.run_id, "status": record.status})
        tracer.event("execution.completed", {"stageTimingsMs": dict(tracer.timings), "trackedMs": tracer.total_ms()})

        return ExecutionResponse(
            success=True,
            run_id=record.run_id,
            output=record.final_output if record.final_output is not None else record.output,
            raw_output=outcome.raw_text,
            duration_ms=record.duration_ms,
            model=record.model,
            context_quality=record.context_quality,
            zod_validation_result=record.zod_validation_result,
            semantic_validation_result=record.semantic_validation_result,
            events=list(events.events),
        )

    def _run_fields(
        self,
        *,
        request: ExecuteAgentRequest,
        definition: AgentDefinition,
        context: ExecutionContext,
        quality: ContextQuality | None,
        run_id: str,
        started_at: str,
        start_time: float,
        outcome: GenerationOutcome | None = None,
        semantic: SemanticValidationResult | None = None,
        error: str | None = None,
    ) -> RunFields:
        return RunFields(
            workflow_id=request.workflow_id,
            agent_node_id=request.agent_node_id,
            agent_definition_id=request.agent_definition_id,
            agent_definition=definition,
            run_id=run_id,
            started_at=started_at,
            finished_at=utc_now_iso(),
            duration_ms=int((time.perf_counter() - start_time) * 1000),
            context=context,
            raw_output=outcome.raw_text if outcome else None,
            parsed_output=outcome.parsed if outcome else None,
            validation=outcome.validation if outcome else None,
            semantic=semantic,
            quality=quality,
            presentation=outcome.presentation if outcome else None,
            presentation_validation=outcome.presentation_validation if outcome else None,
            model=outcome.model if outcome else self.settings.generation_model,
            attempts=outcome.attempts if outcome else 0,
            error=error,
            raw_output_cap=self.settings.raw_output_cap_chars,
        )

    async def _record_failure(
        self,
        exc: BaseException,
        message: str,
        *,
        request: ExecuteAgentRequest,
        definition: AgentDefinition,
        context: ExecutionContext,
        quality: ContextQuality | None,
        outcome: GenerationOutcome | None,
        run_id: str,
        started_at: str,
        start_time: float,
    ) -> bool:
        """Best-effort error record; the original failure is re-raised by the caller."""
        try:
            record = normalize_run_record(
                self._run_fields(
                    request=request,
                    definition=definition,
                    context=context,
                    quality=quality,
                    run_id=run_id,
                    started_at=started_at,
                    start_time=start_time,
                    outcome=outcome,
                    error=message,
                )
            )
            await asyncio.to_thread(self.persistence.persist, record, definition)
        except Exception as persist_exc:
            logger.error("Failed to persist error run record %s: %s", run_id, persist_exc)
            return False
        if isinstance(exc, ExecutionError):
            exc.details["runId"] = run_id
        logger.info("Persisted error run %s after %s", run_id, type(exc).__name__)
        return True
