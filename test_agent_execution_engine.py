from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from execution.engine import AgentExecutionEngine
from execution.persistence import RUN_FOLDER, RunPersistence
from knowledge.agent_definitions import agent_definition_to_document
from knowledge.store import SQLiteKnowledgeStore
from models.generation import GenerationClient
from registry.db import RegistryDB
from shared.config import ExecutionSettings
from shared.errors import AgentDefinitionNotFoundError, InputMissingError, PersistenceError, TransportError
from shared.models import AgentDefinition, ExecuteAgentRequest, KnowledgeDocument, KnowledgeFilter, Product


class DummyResponse:
    def __init__(self, status_code: int, text: str):
        self.status_code = status_code
        self.text = text

    def json(self):
        return json.loads(self.text)


class DummyAsyncClient:
    def __init__(self, responses: list[DummyResponse], delay: float = 0.0):
        self.responses = list(responses)
        self.delay = delay
        self.calls: list[dict] = []

    async def post(self, path, json=None, headers=None):
        self.calls.append({"path": path, "json": json})
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.responses.pop(0)

    async def aclose(self) -> None:
        return None


def _completion(output: dict | str) -> DummyResponse:
    content = output if isinstance(output, str) else json.dumps(output)
    return DummyResponse(200, json.dumps({"model": "test/model", "choices": [{"message": {"content": content}}]}))


def _lp_output(**overrides) -> dict:
    output = {
        "type": "lp_structure",
        "execSummary": "Sell the afternoon reset.",
        "questions": [f"Question {index}?" for index in range(16)],
        "sections": [{"name": f"Section {index}", "purpose": "Explain"} for index in range(6)],
        "finalCv": {"ctaHint": "Start a trial"},
        "avoid": ["medical claims"],
    }
    output.update(overrides)
    return output


def _engine(tmp_path: Path, responses: list[DummyResponse], store=None, delay: float = 0.0, **settings_overrides):
    settings = ExecutionSettings(generation_api_key="test-key", generation_model="test/model", **settings_overrides)
    store = store or SQLiteKnowledgeStore(db_path=str(tmp_path / "kb.db"))
    registry = RegistryDB(db_path=str(tmp_path / "registry.db"))
    registry.save_product(Product(id="prod-1", name="Sparkling Tea", category="beverage"))
    store.create(
        agent_definition_to_document(
            AgentDefinition(
                id="def-lp",
                name="LP Planner",
                category="planning",
                system_prompt="You plan landing pages.",
                user_prompt_template="Plan the landing page.\n\n{{context}}",
                output_kind="lp_structure",
            )
        )
    )
    http = DummyAsyncClient(responses, delay=delay)
    engine = AgentExecutionEngine(
        settings=settings,
        knowledge_store=store,
        product_registry=registry,
        generation_client=GenerationClient(settings, client=http),
        workflow_store=registry,
    )
    return engine, store, http


def _zero_input_request() -> ExecuteAgentRequest:
    return ExecuteAgentRequest.model_validate(
        {
            "workflowId": "wf-1",
            "agentNodeId": "agent",
            "agentDefinitionId": "def-lp",
            "inputNodes": [],
            "workflow": {
                "id": "wf-1",
                "nodes": [{"id": "agent", "type": "agent", "agentDefinitionId": "def-lp"}],
                "connections": [],
            },
        }
    )


def _full_request() -> ExecuteAgentRequest:
    return ExecuteAgentRequest.model_validate(
        {
            "workflowId": "wf-1",
            "agentNodeId": "agent",
            "agentDefinitionId": "def-lp",
            "inputNodes": [],
            "workflow": {
                "id": "wf-1",
                "nodes": [
                    {
                        "id": "n-intent",
                        "type": "input",
                        "kind": "intent",
                        "data": {"intent": {"goal": "Lift CVR", "successCriteria": "+10% signups"}},
                    },
                    {"id": "n-product", "type": "input", "kind": "product", "data": {"refId": "prod-1"}},
                    {"id": "n-persona", "type": "input", "kind": "persona", "data": {"refId": "persona-1"}},
                    {"id": "n-kb", "type": "input", "kind": "kb_item", "data": {"refId": "kb-market"}},
                    {"id": "agent", "type": "agent", "agentDefinitionId": "def-lp"},
                ],
                "connections": [
                    {"fromNodeId": "n-intent", "toNodeId": "agent"},
                    {"fromNodeId": "n-product", "toNodeId": "agent"},
                    {"fromNodeId": "n-persona", "toNodeId": "agent"},
                    {"fromNodeId": "n-kb", "toNodeId": "agent"},
                ],
            },
        }
    )


def _seed_full_context(store: SQLiteKnowledgeStore) -> None:
    store.create(
        KnowledgeDocument(kb_id="persona-1", type="persona", payload={"type": "persona", "title": "Busy parent"})
    )
    store.create(
        KnowledgeDocument(kb_id="kb-market", type="market_insight", title="Market", payload={"fact": "Matcha grows"})
    )


def test_zero_inputs_still_runs_and_records_insufficient_evidence(tmp_path: Path):
    engine, store, http = _engine(tmp_path, [_completion(_lp_output())])

    try:
        response = asyncio.run(engine.execute(_zero_input_request()))

        assert response.success is True
        assert response.context_quality.status == "insufficient_evidence"
        assert "knowledge" in response.context_quality.missing_inputs
        assert response.zod_validation_result.success is True
        assert response.semantic_validation_result.passed is False
        assert len(http.calls) == 1

        record = RunPersistence(store).get_run(response.run_id)
        assert record is not None
        assert record.status == "success"
        assert record.context_quality.status == "insufficient_evidence"
        assert record.final_output["schemaVersion"] == "v2"
        assert record.agent_definition_name == "LP Planner"

        document = store.get(response.run_id)
        assert document.folder_path == RUN_FOLDER
        assert document.source_project_id == "wf-1"
        assert document.tags == ["planning"]
    finally:
        store.close()


def test_complete_context_is_usable(tmp_path: Path):
    engine, store, http = _engine(tmp_path, [_completion(_lp_output())])
    _seed_full_context(store)

    try:
        response = asyncio.run(engine.execute(_full_request()))

        assert response.context_quality.status == "usable"
        assert response.context_quality.warnings == []
        assert response.semantic_validation_result.passed is True
        prompt = http.calls[0]["json"]["messages"][1]["content"]
        assert prompt.startswith("Plan the landing page.")
        assert "Name: Sparkling Tea" in prompt
        assert "Goal: Lift CVR" in prompt
        assert "## Technical requirements" in prompt

        record = RunPersistence(store).get_run(response.run_id)
        assert record.input_summary.market_insights_count == 1
        assert record.context_trace.referenced_node_ids == ["n-intent", "n-product", "n-persona", "n-kb"]
    finally:
        store.close()


def test_html_error_page_persists_error_record_and_raises(tmp_path: Path):
    html = DummyResponse(502, "<!DOCTYPE html><html><body>Bad gateway</body></html>")
    engine, store, _ = _engine(tmp_path, [html])

    try:
        with pytest.raises(TransportError) as exc_info:
            asyncio.run(engine.execute(_zero_input_request()))

        error = exc_info.value
        assert error.kind == "html_body"
        assert "HTML" in error.message
        run_id = error.details["runId"]

        runs = store.list(KnowledgeFilter(type="workflow_run"))
        assert [doc.kb_id for doc in runs] == [run_id]
        payload = runs[0].payload
        assert payload["status"] == "error"
        assert "HTML" in payload["error"]
        assert "llmRawOutput" not in payload
        assert payload["semanticValidationResult"]["pass"] is False
        assert runs[0].tags == ["error"]
        assert runs[0].title.startswith("Error: LP Planner")
    finally:
        store.close()


def test_missing_field_triggers_one_corrective_retry(tmp_path: Path):
    invalid = _lp_output()
    del invalid["execSummary"]
    engine, store, http = _engine(tmp_path, [_completion(invalid), _completion(_lp_output())])

    try:
        response = asyncio.run(engine.execute(_zero_input_request()))

        assert len(http.calls) == 2
        retry_prompt = http.calls[1]["json"]["messages"][1]["content"]
        assert "failed schema validation" in retry_prompt
        assert "execSummary" in retry_prompt
        assert http.calls[1]["json"]["temperature"] == 0.5
        assert response.zod_validation_result.success is True
        assert RunPersistence(store).get_run(response.run_id).attempts == 2
    finally:
        store.close()


def test_schema_failure_after_retry_is_still_a_success_record(tmp_path: Path):
    invalid = _lp_output()
    del invalid["finalCv"]
    engine, store, _ = _engine(tmp_path, [_completion(invalid), _completion(invalid)])

    try:
        response = asyncio.run(engine.execute(_zero_input_request()))

        assert response.success is True
        assert response.zod_validation_result.success is False
        record = RunPersistence(store).get_run(response.run_id)
        assert record.status == "success"
        assert record.final_output["execSummary"] == "Sell the afternoon reset."
    finally:
        store.close()


def test_missing_request_fields_fail_before_any_side_effect(tmp_path: Path):
    engine, store, http = _engine(tmp_path, [])
    request = ExecuteAgentRequest.model_validate({"workflowId": "wf-1", "agentDefinitionId": "def-lp"})

    try:
        with pytest.raises(InputMissingError) as exc_info:
            asyncio.run(engine.execute(request))

        assert exc_info.value.missing_fields == ["agentNodeId", "inputNodes"]
        assert exc_info.value.http_status == 400
        assert http.calls == []
        assert store.list(KnowledgeFilter(type="workflow_run")) == []
    finally:
        store.close()


def test_unknown_agent_definition_is_not_found(tmp_path: Path):
    engine, store, http = _engine(tmp_path, [])
    request = _zero_input_request().model_copy(update={"agent_definition_id": "def-missing"})

    try:
        with pytest.raises(AgentDefinitionNotFoundError):
            asyncio.run(engine.execute(request))
        assert http.calls == []
    finally:
        store.close()


def test_progress_events_are_emitted_in_order(tmp_path: Path):
    engine, store, _ = _engine(tmp_path, [_completion(_lp_output())])
    events: list[dict] = []

    try:
        response = asyncio.run(engine.execute(_zero_input_request(), progress_callback=events.append))

        steps = [event["step"] for event in events]
        assert steps == [
            "request_validated",
            "context_built",
            "pre_gate_checked",
            "prompt_rendered",
            "generation_attempt",
            "output_validated",
            "post_gate_checked",
            "run_normalized",
            "run_persisted",
        ]
        assert [event.step for event in response.events] == steps
        assert events[2]["status"] == "warning"
        assert len({event["executionId"] for event in events}) == 1
    finally:
        store.close()


def test_failed_persistence_surfaces_as_error(tmp_path: Path):
    class ReadOnlyStore(SQLiteKnowledgeStore):
        def create(self, document):
            if document.type == "workflow_run":
                raise RuntimeError("disk full")
            return super().create(document)

    store = ReadOnlyStore(db_path=str(tmp_path / "kb.db"))
    engine, store, _ = _engine(tmp_path, [_completion(_lp_output())], store=store)

    try:
        with pytest.raises(PersistenceError) as exc_info:
            asyncio.run(engine.execute(_zero_input_request()))
        assert "disk full" in exc_info.value.message
    finally:
        store.close()


def test_slow_retry_times_out_within_execution_deadline(tmp_path: Path):
    invalid = _lp_output()
    del invalid["execSummary"]
    engine, store, http = _engine(
        tmp_path,
        [_completion(invalid), _completion(invalid)],
        delay=0.3,
        request_timeout_seconds=2.0,
        generation_timeout_seconds=0.5,
    )

    try:
        with pytest.raises(TransportError) as exc_info:
            asyncio.run(engine.execute(_zero_input_request()))

        assert exc_info.value.kind == "timeout"
        assert len(http.calls) == 2
        record = RunPersistence(store).get_run(exc_info.value.details["runId"])
        assert record.status == "error"
        assert "timed out" in record.error
    finally:
        store.close()


def test_unexpected_failure_after_generation_still_writes_error_record(tmp_path: Path, monkeypatch):
    engine, store, _ = _engine(tmp_path, [_completion(_lp_output())])
    events: list[dict] = []

    def broken_merge(pre_quality, semantic):
        raise RuntimeError("gate exploded")

    monkeypatch.setattr("execution.engine.merge_quality", broken_merge)

    try:
        with pytest.raises(RuntimeError, match="gate exploded"):
            asyncio.run(engine.execute(_zero_input_request(), progress_callback=events.append))

        runs = store.list(KnowledgeFilter(type="workflow_run"))
        assert len(runs) == 1
        record = RunPersistence(store).get_run(runs[0].kb_id)
        assert record.status == "error"
        assert record.error == "RuntimeError: gate exploded"
        assert record.llm_raw_output is not None
        assert record.context_quality.status == "insufficient_evidence"
        assert events[-1]["step"] == "execution_failed"
        assert events[-1]["payload"]["runId"] == record.run_id
    finally:
        store.close()


def test_cancelled_execution_writes_error_record(tmp_path: Path):
    engine, store, http = _engine(tmp_path, [_completion(_lp_output())], delay=30.0)

    async def _run():
        task = asyncio.create_task(engine.execute(_zero_input_request()))
        while not http.calls:
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    try:
        asyncio.run(_run())

        runs = store.list(KnowledgeFilter(type="workflow_run"))
        assert [doc.payload["status"] for doc in runs] == ["error"]
        assert "cancelled" in runs[0].payload["error"]
    finally:
        store.close()
