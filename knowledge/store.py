"""
Knowledge Store abstractions and SQLite implementation.

Design goals:
- Document store keyed by kb_id (get/create/update/delete/list)
- Opaque JSON payloads; the store never interprets them
- Append-only create: inserting an existing kb_id is rejected
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from typing import Any

from shared.models import KnowledgeDocument, KnowledgeFilter, utc_now_iso

logger = logging.getLogger(__name__)


class KnowledgeStore(ABC):
    """Document store used by the context builder and run persistence."""

    @abstractmethod
    def get(self, kb_id: str) -> KnowledgeDocument | None:
        """Return a document by id, or None."""

    @abstractmethod
    def create(self, document: KnowledgeDocument) -> KnowledgeDocument:
        """Insert a new document. Raises ValueError if the id already exists."""

    @abstractmethod
    def update(self, kb_id: str, changes: dict[str, Any]) -> KnowledgeDocument | None:
        """Apply changes to an existing document. Returns None when missing."""

    @abstractmethod
    def delete(self, kb_id: str) -> bool:
        """Delete a document. Returns False when missing."""

    @abstractmethod
    def list(self, criteria: KnowledgeFilter | None = None) -> list[KnowledgeDocument]:
        """List documents matching the filter, newest first."""


_UPDATABLE_FIELDS = (
    "title",
    "folder_path",
    "tags",
    "owner_id",
    "visibility",
    "source_app",
    "source_project_id",
    "payload",
)


class SQLiteKnowledgeStore(KnowledgeStore):
    """SQLite-backed knowledge store."""

    def __init__(self, db_path: str = "knowledge.db"):
        self.db_path = db_path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(
            db_path,
            check_same_thread=False,
            isolation_level="DEFERRED",
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._init_db()

    def _init_db(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS kb_items (
                kb_id TEXT PRIMARY KEY,
                type TEXT NOT NULL,
                title TEXT NOT NULL DEFAULT '',
                folder_path TEXT NOT NULL DEFAULT 'My Files',
                tags_json TEXT NOT NULL DEFAULT '[]',
                owner_id TEXT NOT NULL DEFAULT 'user',
                visibility TEXT NOT NULL DEFAULT 'private',
                source_app TEXT,
                source_project_id TEXT,
                payload_json TEXT NOT NULL,
                search_text TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_kb_items_type
            ON kb_items(type, updated_at)
            """
        )
        self._conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_kb_items_project
            ON kb_items(source_project_id)
            """
        )
        self._conn.commit()

    def get(self, kb_id: str) -> KnowledgeDocument | None:
        key = (kb_id or "").strip()
        if not key:
            return None
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM kb_items WHERE kb_id = ? LIMIT 1",
                (key,),
            ).fetchone()
        if not row:
            return None
        return self._row_to_document(row)

    def create(self, document: KnowledgeDocument) -> KnowledgeDocument:
        key = document.kb_id.strip()
        if not key:
            raise ValueError("Knowledge item id cannot be empty.")
        payload_json = json.dumps(document.payload, sort_keys=True)
        try:
            with self._lock:
                self._conn.execute(
                    """
                    INSERT INTO kb_items(
                        kb_id, type, title, folder_path, tags_json, owner_id, visibility,
                        source_app, source_project_id, payload_json, search_text,
                        created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        key,
                        document.type,
                        document.title,
                        document.folder_path,
                        json.dumps(document.tags),
                        document.owner_id,
                        document.visibility,
                        document.source_app,
                        document.source_project_id,
                        payload_json,
                        self._search_text(document.title, document.payload),
                        document.created_at,
                        document.updated_at,
                    ),
                )
                self._conn.commit()
        except sqlite3.IntegrityError as exc:
            raise ValueError(f"Knowledge item already exists: {key}") from exc
        logger.debug("Created kb item %s (type=%s)", key, document.type)
        return document

    def update(self, kb_id: str, changes: dict[str, Any]) -> KnowledgeDocument | None:
        current = self.get(kb_id)
        if current is None:
            return None
        allowed = {name: value for name, value in changes.items() if name in _UPDATABLE_FIELDS}
        updated = current.model_copy(update={**allowed, "updated_at": utc_now_iso()})
        payload_json = json.dumps(updated.payload, sort_keys=True)
        with self._lock:
            self._conn.execute(
                """
                UPDATE kb_items SET
                    title = ?, folder_path = ?, tags_json = ?, owner_id = ?, visibility = ?,
                    source_app = ?, source_project_id = ?, payload_json = ?, search_text = ?,
                    updated_at = ?
                WHERE kb_id = ?
                """,
                (
                    updated.title,
                    updated.folder_path,
                    json.dumps(list(updated.tags)),
                    updated.owner_id,
                    updated.visibility,
                    updated.source_app,
                    updated.source_project_id,
                    payload_json,
                    self._search_text(updated.title, updated.payload),
                    updated.updated_at,
                    updated.kb_id,
                ),
            )
            self._conn.commit()
        return updated

    def delete(self, kb_id: str) -> bool:
        with self._lock:
            cursor = self._conn.execute("DELETE FROM kb_items WHERE kb_id = ?", ((kb_id or "").strip(),))
            self._conn.commit()
        return cursor.rowcount > 0

    def list(self, criteria: KnowledgeFilter | None = None) -> list[KnowledgeDocument]:
        criteria = criteria or KnowledgeFilter()
        clauses: list[str] = []
        params: list[Any] = []
        if criteria.type:
            clauses.append("type = ?")
            params.append(criteria.type)
        if criteria.folder_path:
            clauses.append("folder_path = ?")
            params.append(criteria.folder_path)
        if criteria.owner_id:
            clauses.append("owner_id = ?")
            params.append(criteria.owner_id)
        if criteria.source_project_id:
            clauses.append("source_project_id = ?")
            params.append(criteria.source_project_id)
        query_text = (criteria.q or "").strip().lower()
        if query_text:
            clauses.append("search_text LIKE ?")
            params.append(f"%{query_text}%")

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT *
                FROM kb_items
                {where}
                ORDER BY updated_at DESC, kb_id ASC
                LIMIT ?
                """,
                (*params, criteria.limit),
            ).fetchall()
        return [self._row_to_document(row) for row in rows]

    def close(self) -> None:
        self._conn.close()

    @staticmethod
    def _search_text(title: str, payload: dict[str, Any]) -> str:
        readable = json.dumps(payload, ensure_ascii=False, sort_keys=True)
        # Lone surrogates cannot be encoded as UTF-8 text.
        return f"{title} {readable}".lower().encode("utf-8", "replace").decode("utf-8")

    @staticmethod
    def _row_to_document(row: sqlite3.Row) -> KnowledgeDocument:
        try:
            payload = json.loads(row["payload_json"])
        except json.JSONDecodeError:
            logger.warning("Corrupt payload for kb item %s", row["kb_id"])
            payload = {}
        return KnowledgeDocument(
            kb_id=row["kb_id"],
            type=row["type"],
            title=row["title"],
            folder_path=row["folder_path"],
            tags=json.loads(row["tags_json"] or "[]"),
            owner_id=row["owner_id"],
            visibility=row["visibility"],
            source_app=row["source_app"],
            source_project_id=row["source_project_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            payload=payload if isinstance(payload, dict) else {"value": payload},
        )
