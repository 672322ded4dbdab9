"""
Registry Database: SQLite storage for products and workflow graphs.

Responsibility:
- Store Product records referenced by product input nodes
- Store Workflow graphs (nodes + connections) read by the execution core
- Persist registry state across restarts
"""

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from typing import Optional

from shared.models import Product, Workflow

logger = logging.getLogger(__name__)

DB_PATH = "registry.db"


class ProductRegistry(ABC):
    @abstractmethod
    def get_product(self, product_id: str) -> Optional[Product]:
        """Return a product by id, or None."""


class WorkflowStore(ABC):
    @abstractmethod
    def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        """Return a workflow graph by id, or None."""


class RegistryDB(ProductRegistry, WorkflowStore):
    """SQLite-backed registry for products and workflows."""

    def __init__(self, db_path: str = DB_PATH):
        self.db_path = db_path
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_conn() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS products (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    category TEXT DEFAULT '',
                    description TEXT DEFAULT '',
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS workflows (
                    id TEXT PRIMARY KEY,
                    name TEXT DEFAULT '',
                    graph TEXT NOT NULL, -- JSON: {nodes, connections}
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                );
            """)

    def save_product(self, product: Product) -> None:
        with self._get_conn() as conn:
            conn.execute(
                """
                INSERT INTO products (id, name, category, description)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    category = excluded.category,
                    description = excluded.description,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (product.id, product.name, product.category, product.description),
            )
        logger.info("Saved product: %s", product.id)

    def get_product(self, product_id: str) -> Optional[Product]:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT id, name, category, description FROM products WHERE id = ?",
                (product_id,),
            ).fetchone()
        if not row:
            return None
        return Product(
            id=row["id"],
            name=row["name"],
            category=row["category"] or "",
            description=row["description"] or "",
        )

    def list_products(self) -> list[Product]:
        with self._get_conn() as conn:
            rows = conn.execute("SELECT id, name, category, description FROM products ORDER BY name").fetchall()
        return [
            Product(id=row["id"], name=row["name"], category=row["category"] or "", description=row["description"] or "")
            for row in rows
        ]

    def save_workflow(self, workflow: Workflow) -> None:
        graph = workflow.to_wire()
        with self._get_conn() as conn:
            conn.execute(
                """
                INSERT INTO workflows (id, name, graph)
                VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    graph = excluded.graph,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (workflow.id, workflow.name, json.dumps(graph, ensure_ascii=False)),
            )
        logger.info("Saved workflow: %s (%d nodes)", workflow.id, len(workflow.nodes))

    def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        with self._get_conn() as conn:
            row = conn.execute("SELECT graph FROM workflows WHERE id = ?", (workflow_id,)).fetchone()
        if not row:
            return None
        try:
            return Workflow.model_validate(json.loads(row["graph"]))
        except (ValueError, TypeError) as e:
            logger.error("Stored workflow %s is invalid: %s", workflow_id, e)
            return None
