"""Knowledge store abstractions and implementations."""

from knowledge.store import KnowledgeStore, SQLiteKnowledgeStore

__all__ = ["KnowledgeStore", "SQLiteKnowledgeStore"]
