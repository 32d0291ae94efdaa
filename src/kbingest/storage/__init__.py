"""
Persistence collaborators for documents, segments and the knowledge graph.
"""

from .base import DocumentStore, GraphStore, SegmentStore
from .memory_store import InMemoryDocumentStore, InMemoryGraphStore, InMemorySegmentStore
from .sqlite_store import SQLiteStore

__all__ = [
    "DocumentStore",
    "SegmentStore",
    "GraphStore",
    "InMemoryDocumentStore",
    "InMemorySegmentStore",
    "InMemoryGraphStore",
    "SQLiteStore",
]
