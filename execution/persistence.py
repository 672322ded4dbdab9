"""
Persistence Adapter.

Writes a normalized RunRecord to the knowledge store as a `workflow_run`
document and reads it back to confirm durability.
"""

from __future__ import annotations

import logging
from datetime import datetime

from pydantic import ValidationError

from knowledge.store import KnowledgeStore
from shared.errors import PersistenceError
from shared.models import AgentDefinition, KnowledgeDocument, KnowledgeFilter, RunRecord

logger = logging.getLogger(__name__)

RUN_DOCUMENT_TYPE = "workflow_run"
RUN_FOLDER = "My Files/Workflow Runs"
SOURCE_APP = "workflow-app"


def _display_time(iso_timestamp: str) -> str:
    try:
        return datetime.fromisoformat(iso_timestamp).strftime("%Y-%m-%d %H:%M:%S")
    except ValueError:
        return iso_timestamp


def run_document(record: RunRecord, definition: AgentDefinition | None) -> KnowledgeDocument:
    name = (definition.name if definition else "") or record.agent_definition_name
    when = _display_time(record.finished_at)
    if record.status == "error":
        title = f"Error: {name or 'Unknown'} - {when}"
        tags = ["error"]
    else:
        title = f"{name or record.agent_definition_id} - {when}"
        tags = [definition.category] if definition and definition.category else []
    return KnowledgeDocument(
        kb_id=record.run_id,
        type=RUN_DOCUMENT_TYPE,
        title=title,
        folder_path=RUN_FOLDER,
        tags=tags,
        owner_id="user",
        visibility="private",
        source_app=SOURCE_APP,
        source_project_id=record.workflow_id,
        created_at=record.started_at,
        updated_at=record.finished_at,
        payload=record.to_wire(),
    )


class RunPersistence:
    """Write-then-verify persistence of run records."""

    def __init__(self, store: KnowledgeStore):
        self.store = store

    def persist(self, record: RunRecord, definition: AgentDefinition | None = None) -> KnowledgeDocument:
        document = run_document(record, definition)
        try:
            self.store.create(document)
        except Exception as e:
            logger.error("Run record write failed for %s: %s", record.run_id, e)
            raise PersistenceError(
                f"Failed to save run record: {e}",
                {"runId": record.run_id},
            ) from e

        stored = self.store.get(record.run_id)
        if stored is None:
            raise PersistenceError(
                "Run record was not found after saving.",
                {"runId": record.run_id},
            )
        if stored.type != RUN_DOCUMENT_TYPE or stored.payload != document.payload:
            raise PersistenceError(
                "Run record read back after saving does not match what was written.",
                {"runId": record.run_id},
            )
        logger.info("Persisted run %s (status=%s)", record.run_id, record.status)
        return stored

    def get_run(self, run_id: str) -> RunRecord | None:
        document = self.store.get(run_id)
        if document is None or document.type != RUN_DOCUMENT_TYPE:
            return None
        return RunRecord.model_validate(document.payload)

    def list_runs(self, workflow_id: str, agent_node_id: str | None = None) -> list[RunRecord]:
        documents = self.store.list(KnowledgeFilter(type=RUN_DOCUMENT_TYPE, source_project_id=workflow_id))
        runs: list[RunRecord] = []
        for document in documents:
            try:
                record = RunRecord.model_validate(document.payload)
            except ValidationError as e:
                logger.warning("Skipping malformed run document %s: %s", document.kb_id, e)
                continue
            if agent_node_id and record.agent_node_id != agent_node_id:
                continue
            runs.append(record)
        return runs
