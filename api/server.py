"""
HTTP API for the workflow execution core.

Endpoints:
- GET  /health
- POST /api/workflow/execute-agent
- GET  /api/workflow/{workflow_id}/runs
- GET|POST /api/kb/items
- GET|PUT|DELETE /api/kb/items/{kb_id}
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from execution.persistence import RunPersistence
from main import Pipeline, build_pipeline
from shared.errors import ExecutionError, InputMissingError
from shared.models import ExecuteAgentRequest, KnowledgeDocument, KnowledgeFilter

logger = logging.getLogger(__name__)


class KnowledgeItemCreate(BaseModel):
    kb_id: str | None = Field(default=None)
    type: str
    title: str = Field(default="")
    folder_path: str = Field(default="My Files")
    tags: list[str] = Field(default_factory=list)
    owner_id: str = Field(default="user")
    visibility: str = Field(default="private")
    source_app: str | None = Field(default=None)
    source_project_id: str | None = Field(default=None)
    payload: dict[str, Any] = Field(default_factory=dict)


class KnowledgeItemUpdate(BaseModel):
    title: str | None = Field(default=None)
    folder_path: str | None = Field(default=None)
    tags: list[str] | None = Field(default=None)
    visibility: str | None = Field(default=None)
    payload: dict[str, Any] | None = Field(default=None)


def _not_found(kb_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content={"error": "Knowledge item not found", "category": "not_found", "details": {"kbId": kb_id}},
    )


def _pipeline(request: Request) -> Pipeline:
    return request.app.state.pipeline


async def _parse_execute_request(request: Request) -> ExecuteAgentRequest:
    try:
        body = await request.json()
    except ValueError as e:
        raise InputMissingError(["body"], f"Request body must be valid JSON: {e}") from e
    if not isinstance(body, dict):
        raise InputMissingError(["body"], "Request body must be a JSON object.")
    try:
        return ExecuteAgentRequest.model_validate(body)
    except ValidationError as e:
        fields = sorted({str(item["loc"][0]) for item in e.errors() if item.get("loc")})
        raise InputMissingError(fields or ["body"], f"Invalid execute-agent request: {e.error_count()} issue(s)") from e


def create_app(pipeline: Pipeline | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        owned = getattr(_app.state, "pipeline", None) is None
        if owned:
            _app.state.pipeline = build_pipeline()
        yield
        if owned:
            await _app.state.pipeline.aclose()
            _app.state.pipeline = None

    app = FastAPI(
        title="Workflow Agent Core API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline

    @app.exception_handler(ExecutionError)
    async def execution_error_handler(_request: Request, exc: ExecutionError) -> JSONResponse:
        if exc.http_status >= 500:
            logger.error("%s: %s", exc.category, exc.message)
        else:
            logger.info("%s: %s", exc.category, exc.message)
        return JSONResponse(status_code=exc.http_status, content=exc.to_payload())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(_request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled API error: %s", exc)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "category": "internal_error"},
        )

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/api/workflow/execute-agent")
    async def execute_agent(request: Request) -> JSONResponse:
        execute_request = await _parse_execute_request(request)
        current = _pipeline(request)
        try:
            response = await asyncio.wait_for(
                current.engine.execute(execute_request),
                timeout=current.settings.request_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error(
                "Execution of %s/%s exceeded %ss",
                execute_request.workflow_id,
                execute_request.agent_node_id,
                current.settings.request_timeout_seconds,
            )
            return JSONResponse(
                status_code=504,
                content={"error": "Execution timed out", "category": "timeout"},
            )
        return JSONResponse(content=response.to_wire())

    @app.get("/api/workflow/{workflow_id}/runs")
    def list_workflow_runs(request: Request, workflow_id: str, agentNodeId: str | None = None) -> dict[str, Any]:
        runs = RunPersistence(_pipeline(request).knowledge_store).list_runs(workflow_id, agentNodeId)
        return {"runs": [run.to_wire() for run in runs]}

    @app.get("/api/kb/items")
    def list_kb_items(
        request: Request,
        q: str | None = None,
        type: str | None = None,
        folder_path: str | None = None,
        owner_id: str | None = None,
        source_project_id: str | None = None,
        limit: int = 200,
    ) -> dict[str, Any]:
        criteria = KnowledgeFilter(
            q=q,
            type=type,
            folder_path=folder_path,
            owner_id=owner_id,
            source_project_id=source_project_id,
            limit=max(1, limit),
        )
        documents = _pipeline(request).knowledge_store.list(criteria)
        return {"items": [document.model_dump(mode="json") for document in documents]}

    @app.post("/api/kb/items", status_code=201)
    def create_kb_item(request: Request, item: KnowledgeItemCreate) -> Any:
        document = KnowledgeDocument(
            **item.model_dump(exclude={"kb_id"}),
            kb_id=item.kb_id or f"kb-{uuid.uuid4().hex[:12]}",
        )
        try:
            created = _pipeline(request).knowledge_store.create(document)
        except ValueError as e:
            return JSONResponse(status_code=409, content={"error": str(e), "category": "conflict"})
        return {"item": created.model_dump(mode="json")}

    @app.get("/api/kb/items/{kb_id}")
    def get_kb_item(request: Request, kb_id: str) -> Any:
        document = _pipeline(request).knowledge_store.get(kb_id)
        if document is None:
            return _not_found(kb_id)
        return {"item": document.model_dump(mode="json")}

    @app.put("/api/kb/items/{kb_id}")
    def update_kb_item(request: Request, kb_id: str, changes: KnowledgeItemUpdate) -> Any:
        document = _pipeline(request).knowledge_store.update(kb_id, changes.model_dump(exclude_none=True))
        if document is None:
            return _not_found(kb_id)
        return {"item": document.model_dump(mode="json")}

    @app.delete("/api/kb/items/{kb_id}")
    def delete_kb_item(request: Request, kb_id: str) -> Any:
        if not _pipeline(request).knowledge_store.delete(kb_id):
            return _not_found(kb_id)
        return {"success": True}

    return app


app = create_app()
