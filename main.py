"""
Workflow Agent Core: main CLI entrypoint.

Wires the execution pipeline and exposes admin commands for the
knowledge store, the registry, and one-shot agent executions.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import ValidationError
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from execution.engine import AgentExecutionEngine
from execution.persistence import RunPersistence
from knowledge.agent_definitions import agent_definition_to_document
from knowledge.store import SQLiteKnowledgeStore
from models.generation import GenerationClient
from registry.db import RegistryDB
from shared.config import ExecutionSettings
from shared.errors import ExecutionError
from shared.models import (
    AgentDefinition,
    ExecuteAgentRequest,
    KnowledgeDocument,
    KnowledgeFilter,
    Product,
    Workflow,
)

# ─── Configuration ──────────────────────────────────────────────

logger = logging.getLogger(__name__)

# Ensure local .env is loaded before reading runtime configuration.
load_dotenv(override=False)

LOG_LEVEL = getattr(logging, os.getenv("LOG_LEVEL", "INFO").strip().upper(), logging.INFO)

# ─── Rich Console ───────────────────────────────────────────────

console = Console()


def setup_logging() -> None:
    """Configure logging."""
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


@dataclass
class Pipeline:
    settings: ExecutionSettings
    knowledge_store: SQLiteKnowledgeStore
    registry: RegistryDB
    generation_client: GenerationClient
    engine: AgentExecutionEngine

    async def aclose(self) -> None:
        await self.generation_client.close()
        self.knowledge_store.close()


def build_pipeline(settings: ExecutionSettings | None = None) -> Pipeline:
    """Wire all layers together."""
    settings = settings or ExecutionSettings.from_env(load_dotenv_file=False)
    knowledge_store = SQLiteKnowledgeStore(db_path=settings.knowledge_db_path)
    registry = RegistryDB(db_path=settings.registry_db_path)
    generation_client = GenerationClient(settings)
    engine = AgentExecutionEngine(
        settings=settings,
        knowledge_store=knowledge_store,
        product_registry=registry,
        generation_client=generation_client,
        workflow_store=registry,
    )
    logger.info(
        "Pipeline ready (model=%s, knowledge_db=%s, registry_db=%s)",
        settings.generation_model,
        settings.knowledge_db_path,
        settings.registry_db_path,
    )
    return Pipeline(
        settings=settings,
        knowledge_store=knowledge_store,
        registry=registry,
        generation_client=generation_client,
        engine=engine,
    )


# ─── Admin Commands ─────────────────────────────────────────────

def _load_json_file(path: str) -> Any:
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[bold red]Error:[/] Could not read JSON from {path}: {e}")
        return None


def _print_progress(event: dict[str, Any]) -> None:
    status = event.get("status", "ok")
    style = {"ok": "green", "warning": "yellow", "error": "red"}.get(status, "white")
    console.print(f"[{style}]●[/] {event.get('step')} [dim]{json.dumps(event.get('payload', {}), ensure_ascii=False)}[/]")


async def run_execute(request_path: str) -> int:
    body = _load_json_file(request_path)
    if body is None:
        return 1
    try:
        request = ExecuteAgentRequest.model_validate(body)
    except ValidationError as e:
        console.print(f"[bold red]Invalid request:[/] {e}")
        return 1

    pipeline = build_pipeline()
    try:
        response = await pipeline.engine.execute(request, progress_callback=_print_progress)
    except ExecutionError as e:
        console.print(
            Panel(
                json.dumps(e.to_payload(), ensure_ascii=False, indent=2),
                title=f"[bold red]{e.category}[/]",
                border_style="red",
            )
        )
        return 1
    finally:
        await pipeline.aclose()

    quality = response.context_quality
    border = {"usable": "green", "regenerate_recommended": "yellow"}.get(quality.status, "red")
    console.print(
        Panel(
            json.dumps(response.output, ensure_ascii=False, indent=2),
            title=f"[bold]{response.run_id}[/] ({response.model}, {response.duration_ms} ms)",
            subtitle=f"quality: {quality.status}",
            border_style=border,
        )
    )
    for warning in quality.warnings:
        console.print(f"[yellow]warning:[/] {warning}")
    return 0


def admin_kb_list(doc_type: str | None, query: str | None, limit: int) -> None:
    store = SQLiteKnowledgeStore(db_path=ExecutionSettings.from_env().knowledge_db_path)
    try:
        documents = store.list(KnowledgeFilter(type=doc_type, q=query, limit=limit))
    finally:
        store.close()

    table = Table(title="Knowledge Items", box=box.SIMPLE_HEAVY)
    table.add_column("ID", style="cyan")
    table.add_column("Type", style="magenta")
    table.add_column("Title")
    table.add_column("Folder", style="dim")
    table.add_column("Updated", style="green")
    for document in documents:
        table.add_row(document.kb_id, document.type, document.title, document.folder_path, document.updated_at)
    console.print(table)


def admin_kb_get(kb_id: str) -> int:
    store = SQLiteKnowledgeStore(db_path=ExecutionSettings.from_env().knowledge_db_path)
    try:
        document = store.get(kb_id)
    finally:
        store.close()
    if document is None:
        console.print(f"[bold red]Not found:[/] {kb_id}")
        return 1
    console.print(
        Panel(
            json.dumps(document.model_dump(mode="json"), ensure_ascii=False, indent=2),
            title=f"[bold cyan]{document.kb_id}[/] ({document.type})",
        )
    )
    return 0


def admin_runs(workflow_id: str, agent_node_id: str | None) -> None:
    store = SQLiteKnowledgeStore(db_path=ExecutionSettings.from_env().knowledge_db_path)
    try:
        runs = RunPersistence(store).list_runs(workflow_id, agent_node_id)
    finally:
        store.close()

    table = Table(title=f"Runs for {workflow_id}", box=box.SIMPLE_HEAVY)
    table.add_column("Run", style="cyan")
    table.add_column("Agent Node", style="magenta")
    table.add_column("Status")
    table.add_column("Quality")
    table.add_column("Finished", style="dim")
    for run in runs:
        status = "[green]success[/]" if run.status == "success" else "[red]error[/]"
        table.add_row(run.run_id, run.agent_node_id, status, run.context_quality.status, run.finished_at)
    console.print(table)


def admin_seed(bundle_path: str) -> int:
    """Load agent definitions, products, workflows and knowledge items from one JSON bundle."""
    bundle = _load_json_file(bundle_path)
    if not isinstance(bundle, dict):
        console.print("[bold red]Error:[/] Seed bundle must be a JSON object.")
        return 1

    settings = ExecutionSettings.from_env()
    store = SQLiteKnowledgeStore(db_path=settings.knowledge_db_path)
    registry = RegistryDB(db_path=settings.registry_db_path)
    counts = {"agentDefinitions": 0, "products": 0, "workflows": 0, "kbItems": 0}
    try:
        documents = [
            agent_definition_to_document(AgentDefinition.model_validate(item))
            for item in bundle.get("agentDefinitions", [])
        ]
        counts["agentDefinitions"] = len(documents)
        kb_items = [KnowledgeDocument.model_validate(item) for item in bundle.get("kbItems", [])]
        counts["kbItems"] = len(kb_items)
        for document in [*documents, *kb_items]:
            if store.get(document.kb_id) is not None:
                store.update(document.kb_id, document.model_dump(exclude={"kb_id", "type", "created_at"}))
            else:
                store.create(document)
        for item in bundle.get("products", []):
            registry.save_product(Product.model_validate(item))
            counts["products"] += 1
        for item in bundle.get("workflows", []):
            registry.save_workflow(Workflow.model_validate(item))
            counts["workflows"] += 1
    except ValidationError as e:
        console.print(f"[bold red]Invalid seed bundle:[/] {e}")
        return 1
    finally:
        store.close()

    console.print(f"[bold green]Seeded:[/] {json.dumps(counts)}")
    return 0


def run_server(host: str, port: int) -> None:
    import uvicorn

    uvicorn.run("api.server:app", host=host, port=port, log_level=logging.getLevelName(LOG_LEVEL).lower())


def main() -> None:
    """Entrypoint with CLI args."""
    setup_logging()

    parser = argparse.ArgumentParser(description="Workflow Agent Core")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    execute_parser = subparsers.add_parser("execute", help="Execute one agent node")
    execute_parser.add_argument("--request", required=True, help="Path to an execute-agent request JSON file")

    kb_list_parser = subparsers.add_parser("kb-list", help="List knowledge items")
    kb_list_parser.add_argument("--type", default=None, help="Filter by document type")
    kb_list_parser.add_argument("--q", default=None, help="Text search")
    kb_list_parser.add_argument("--limit", type=int, default=50, help="Max results")

    kb_get_parser = subparsers.add_parser("kb-get", help="Show one knowledge item")
    kb_get_parser.add_argument("kb_id", help="Knowledge item id")

    runs_parser = subparsers.add_parser("runs", help="List persisted runs for a workflow")
    runs_parser.add_argument("workflow_id", help="Workflow id")
    runs_parser.add_argument("--agent-node", default=None, help="Filter by agent node id")

    seed_parser = subparsers.add_parser("seed", help="Load a JSON seed bundle")
    seed_parser.add_argument("--file", required=True, help="Path to the bundle")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default=os.getenv("API_HOST", "127.0.0.1"))
    serve_parser.add_argument("--port", type=int, default=int(os.getenv("API_PORT", "8010")))

    args = parser.parse_args()

    exit_code = 0
    if args.command == "execute":
        exit_code = asyncio.run(run_execute(args.request))
    elif args.command == "kb-list":
        admin_kb_list(args.type, args.q, args.limit)
    elif args.command == "kb-get":
        exit_code = admin_kb_get(args.kb_id)
    elif args.command == "runs":
        admin_runs(args.workflow_id, args.agent_node)
    elif args.command == "seed":
        exit_code = admin_seed(args.file)
    elif args.command == "serve":
        try:
            run_server(args.host, args.port)
        except KeyboardInterrupt:
            pass
    else:
        parser.print_help()
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
