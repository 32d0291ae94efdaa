"""
SQLite-backed stores using aiosqlite.

One connection serves documents, segments and the graph. Natural keys are
enforced with UNIQUE indexes, so a racing insert surfaces as ConflictError
and is absorbed by the graph builder. Read-modify-write operations run
under a lock and inside a single transaction.
"""

import asyncio
import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import aiosqlite

from ..graph.normalization import merge_properties, reinforce_weight
from ..models.document_models import (
    Document,
    DocumentStatus,
    GraphExtractionStatus,
    ProcessingMetadata,
    Segment,
)
from ..models.errors import ConflictError, DocumentNotFoundError, PipelineError
from ..models.graph_models import EdgeType, GraphEdge, GraphNode, NodeType
from .base import DocumentStore, GraphStore, MetadataMutator, SegmentStore

logger = logging.getLogger(__name__)

SEGMENT_JSON_FIELDS = {"embedding", "entities"}
SEGMENT_ENUM_FIELDS = {"graph_extraction_status"}
SEGMENT_UPDATABLE_FIELDS = {
    "content",
    "word_count",
    "token_count",
    "content_hash",
    "embedding",
    "embedding_error",
    "entities",
    "ner_error",
    "graph_extraction_status",
    "graph_extraction_error",
}

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS documents (
        id TEXT PRIMARY KEY,
        dataset_id TEXT NOT NULL,
        name TEXT NOT NULL DEFAULT '',
        content TEXT NOT NULL,
        indexing_status TEXT NOT NULL,
        processing_metadata TEXT NOT NULL DEFAULT '{}',
        error TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS segments (
        id TEXT PRIMARY KEY,
        document_id TEXT NOT NULL,
        position INTEGER NOT NULL,
        content TEXT NOT NULL,
        word_count INTEGER NOT NULL,
        token_count INTEGER NOT NULL,
        content_hash TEXT NOT NULL,
        embedding TEXT,
        embedding_error TEXT,
        entities TEXT,
        ner_error TEXT,
        graph_extraction_status TEXT NOT NULL DEFAULT 'waiting',
        graph_extraction_error TEXT,
        UNIQUE (document_id, position)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS graph_nodes (
        id TEXT PRIMARY KEY,
        dataset_id TEXT NOT NULL,
        document_id TEXT,
        segment_id TEXT,
        node_type TEXT NOT NULL,
        label TEXT NOT NULL,
        properties TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (dataset_id, node_type, label)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS graph_edges (
        id TEXT PRIMARY KEY,
        dataset_id TEXT NOT NULL,
        source_node_id TEXT NOT NULL,
        target_node_id TEXT NOT NULL,
        edge_type TEXT NOT NULL,
        weight REAL,
        properties TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (dataset_id, source_node_id, target_node_id, edge_type)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_documents_dataset ON documents(dataset_id, indexing_status)",
    "CREATE INDEX IF NOT EXISTS idx_segments_document ON segments(document_id, position)",
    "CREATE INDEX IF NOT EXISTS idx_nodes_dataset ON graph_nodes(dataset_id)",
    "CREATE INDEX IF NOT EXISTS idx_edges_dataset ON graph_edges(dataset_id)",
]


def _dumps(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value)


def _loads(value: Optional[str]) -> Any:
    return None if value is None else json.loads(value)


class SQLiteStore(DocumentStore, SegmentStore, GraphStore):
    """
    Document, segment and graph store on a single SQLite database.

    Use as an async context manager or call ``initialize`` / ``shutdown``.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:", enable_wal_mode: bool = True):
        """
        Args:
            db_path: Database file, ``:memory:`` for a private in-memory database
            enable_wal_mode: Enable SQLite WAL mode for file databases
        """
        self.db_path = str(db_path) if db_path == ":memory:" else str(Path(db_path).expanduser())
        self.enable_wal_mode = enable_wal_mode
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        if self._db is not None:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row

        if self.enable_wal_mode and self.db_path != ":memory:":
            await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA synchronous=NORMAL")

        for statement in SCHEMA:
            await self._db.execute(statement)
        await self._db.commit()

        logger.info(f"SQLite store initialized at {self.db_path}")

    async def shutdown(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.info("SQLite store closed")

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise PipelineError("SQLite store not initialized. Call initialize() first.")
        return self._db

    # Documents

    async def create(self, document: Document) -> Document:
        async with self._lock:
            try:
                await self.db.execute(
                    """
                    INSERT INTO documents (id, dataset_id, name, content, indexing_status,
                        processing_metadata, error, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        document.id,
                        document.dataset_id,
                        document.name,
                        document.content,
                        document.indexing_status.value,
                        json.dumps(document.processing_metadata.to_dict()),
                        document.error,
                        document.created_at.isoformat(),
                        document.updated_at.isoformat(),
                    ),
                )
                await self.db.commit()
            except sqlite3.IntegrityError as e:
                await self.db.rollback()
                raise ConflictError(
                    f"Document {document.id} already exists", key=(document.id,)
                ) from e
        return document

    async def get(self, document_id: str) -> Document:
        async with self._lock:
            return await self._fetch_document(document_id)

    async def list_documents(
        self, dataset_id: str, statuses: Optional[Iterable[DocumentStatus]] = None
    ) -> List[Document]:
        query = "SELECT * FROM documents WHERE dataset_id = ?"
        params: List[Any] = [dataset_id]
        if statuses is not None:
            values = [status.value for status in statuses]
            if not values:
                return []
            query += f" AND indexing_status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        query += " ORDER BY created_at, id"

        async with self._lock:
            async with self.db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_document(row) for row in rows]

    async def update_status(
        self, document_id: str, status: DocumentStatus, error: Optional[str] = None
    ) -> Document:
        async with self._lock:
            cursor = await self.db.execute(
                "UPDATE documents SET indexing_status = ?, error = ?, updated_at = ? WHERE id = ?",
                (status.value, error, datetime.now().isoformat(), document_id),
            )
            await self.db.commit()
            if cursor.rowcount == 0:
                raise DocumentNotFoundError(f"Document {document_id} not found")
            return await self._fetch_document(document_id)

    async def update_metadata(
        self, document_id: str, mutate: MetadataMutator
    ) -> ProcessingMetadata:
        async with self._lock:
            document = await self._fetch_document(document_id)
            metadata = document.processing_metadata
            mutate(metadata)
            await self.db.execute(
                "UPDATE documents SET processing_metadata = ?, updated_at = ? WHERE id = ?",
                (json.dumps(metadata.to_dict()), datetime.now().isoformat(), document_id),
            )
            await self.db.commit()
            return metadata

    async def _fetch_document(self, document_id: str) -> Document:
        async with self.db.execute("SELECT * FROM documents WHERE id = ?", (document_id,)) as cursor:
            row = await cursor.fetchone()

        if row is None:
            raise DocumentNotFoundError(f"Document {document_id} not found")
        return self._row_to_document(row)

    def _row_to_document(self, row: aiosqlite.Row) -> Document:
        return Document(
            id=row["id"],
            dataset_id=row["dataset_id"],
            name=row["name"],
            content=row["content"],
            indexing_status=DocumentStatus(row["indexing_status"]),
            processing_metadata=ProcessingMetadata.from_dict(json.loads(row["processing_metadata"])),
            error=row["error"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    # Segments

    async def replace_segments(self, document_id: str, segments: List[Segment]) -> None:
        async with self._lock:
            try:
                await self.db.execute("DELETE FROM segments WHERE document_id = ?", (document_id,))
                await self.db.executemany(
                    """
                    INSERT INTO segments (id, document_id, position, content, word_count,
                        token_count, content_hash, embedding, embedding_error, entities,
                        ner_error, graph_extraction_status, graph_extraction_error)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            s.id,
                            s.document_id,
                            s.position,
                            s.content,
                            s.word_count,
                            s.token_count,
                            s.content_hash,
                            _dumps(s.embedding),
                            s.embedding_error,
                            _dumps(s.entities),
                            s.ner_error,
                            s.graph_extraction_status.value,
                            s.graph_extraction_error,
                        )
                        for s in segments
                    ],
                )
                await self.db.commit()
            except sqlite3.Error:
                await self.db.rollback()
                raise

        logger.debug(f"Stored {len(segments)} segments for document {document_id}")

    async def list_segments(self, document_id: str) -> List[Segment]:
        async with self._lock:
            async with self.db.execute(
                "SELECT * FROM segments WHERE document_id = ? ORDER BY position",
                (document_id,),
            ) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_segment(row) for row in rows]

    async def get_segment(self, segment_id: str) -> Optional[Segment]:
        async with self._lock:
            return await self._fetch_segment(segment_id)

    async def update_segment(self, segment_id: str, **fields: Any) -> Segment:
        unknown = set(fields) - SEGMENT_UPDATABLE_FIELDS
        if unknown:
            raise AttributeError(f"Segment fields cannot be updated: {sorted(unknown)}")

        columns = []
        values = []
        for name, value in fields.items():
            if name in SEGMENT_JSON_FIELDS:
                value = _dumps(value)
            elif name in SEGMENT_ENUM_FIELDS:
                value = value.value
            columns.append(f"{name} = ?")
            values.append(value)

        async with self._lock:
            if columns:
                await self.db.execute(
                    f"UPDATE segments SET {', '.join(columns)} WHERE id = ?",
                    (*values, segment_id),
                )
                await self.db.commit()

            segment = await self._fetch_segment(segment_id)
            if segment is None:
                raise PipelineError(f"Segment {segment_id} not found", unit_id=segment_id)
            return segment

    async def _fetch_segment(self, segment_id: str) -> Optional[Segment]:
        async with self.db.execute("SELECT * FROM segments WHERE id = ?", (segment_id,)) as cursor:
            row = await cursor.fetchone()
        return self._row_to_segment(row) if row else None

    def _row_to_segment(self, row: aiosqlite.Row) -> Segment:
        return Segment(
            id=row["id"],
            document_id=row["document_id"],
            position=row["position"],
            content=row["content"],
            word_count=row["word_count"],
            token_count=row["token_count"],
            content_hash=row["content_hash"],
            embedding=_loads(row["embedding"]),
            embedding_error=row["embedding_error"],
            entities=_loads(row["entities"]),
            ner_error=row["ner_error"],
            graph_extraction_status=GraphExtractionStatus(row["graph_extraction_status"]),
            graph_extraction_error=row["graph_extraction_error"],
        )

    # Graph

    async def find_node(
        self, dataset_id: str, node_type: NodeType, label: str
    ) -> Optional[GraphNode]:
        async with self._lock:
            async with self.db.execute(
                "SELECT * FROM graph_nodes WHERE dataset_id = ? AND node_type = ? AND label = ?",
                (dataset_id, node_type.value, label),
            ) as cursor:
                row = await cursor.fetchone()
        return self._row_to_node(row) if row else None

    async def insert_node(self, node: GraphNode) -> GraphNode:
        async with self._lock:
            try:
                await self.db.execute(
                    """
                    INSERT INTO graph_nodes (id, dataset_id, document_id, segment_id, node_type,
                        label, properties, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        node.id,
                        node.dataset_id,
                        node.document_id,
                        node.segment_id,
                        node.node_type.value,
                        node.label,
                        json.dumps(node.properties),
                        node.created_at.isoformat(),
                        node.updated_at.isoformat(),
                    ),
                )
                await self.db.commit()
            except sqlite3.IntegrityError as e:
                await self.db.rollback()
                raise ConflictError(
                    f"Node {node.node_type.value}:{node.label} already exists",
                    key=node.natural_key,
                ) from e
        return node

    async def merge_node(self, node_id: str, properties: Dict[str, Any]) -> GraphNode:
        async with self._lock:
            node = await self._fetch_node(node_id)
            node.properties = merge_properties(node.properties, properties)
            node.updated_at = datetime.now()
            await self.db.execute(
                "UPDATE graph_nodes SET properties = ?, updated_at = ? WHERE id = ?",
                (json.dumps(node.properties), node.updated_at.isoformat(), node_id),
            )
            await self.db.commit()
            return node

    async def _fetch_node(self, node_id: str) -> GraphNode:
        async with self.db.execute("SELECT * FROM graph_nodes WHERE id = ?", (node_id,)) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise PipelineError(f"Node {node_id} not found")
        return self._row_to_node(row)

    def _row_to_node(self, row: aiosqlite.Row) -> GraphNode:
        return GraphNode(
            id=row["id"],
            dataset_id=row["dataset_id"],
            document_id=row["document_id"],
            segment_id=row["segment_id"],
            node_type=NodeType(row["node_type"]),
            label=row["label"],
            properties=json.loads(row["properties"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    async def find_edge(
        self,
        dataset_id: str,
        source_node_id: str,
        target_node_id: str,
        edge_type: EdgeType,
    ) -> Optional[GraphEdge]:
        async with self._lock:
            async with self.db.execute(
                """
                SELECT * FROM graph_edges
                WHERE dataset_id = ? AND source_node_id = ? AND target_node_id = ? AND edge_type = ?
                """,
                (dataset_id, source_node_id, target_node_id, edge_type.value),
            ) as cursor:
                row = await cursor.fetchone()
        return self._row_to_edge(row) if row else None

    async def insert_edge(self, edge: GraphEdge) -> GraphEdge:
        async with self._lock:
            try:
                await self.db.execute(
                    """
                    INSERT INTO graph_edges (id, dataset_id, source_node_id, target_node_id,
                        edge_type, weight, properties, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        edge.id,
                        edge.dataset_id,
                        edge.source_node_id,
                        edge.target_node_id,
                        edge.edge_type.value,
                        edge.weight,
                        json.dumps(edge.properties),
                        edge.created_at.isoformat(),
                        edge.updated_at.isoformat(),
                    ),
                )
                await self.db.commit()
            except sqlite3.IntegrityError as e:
                await self.db.rollback()
                raise ConflictError(
                    f"Edge {edge.edge_type.value} {edge.source_node_id}->{edge.target_node_id} already exists",
                    key=edge.natural_key,
                ) from e
        return edge

    async def merge_edge(
        self,
        edge_id: str,
        properties: Dict[str, Any],
        weight: Optional[float] = None,
    ) -> GraphEdge:
        async with self._lock:
            async with self.db.execute("SELECT * FROM graph_edges WHERE id = ?", (edge_id,)) as cursor:
                row = await cursor.fetchone()
            if row is None:
                raise PipelineError(f"Edge {edge_id} not found")

            edge = self._row_to_edge(row)
            edge.properties = merge_properties(edge.properties, properties)
            edge.weight = reinforce_weight(edge.weight, weight)
            edge.updated_at = datetime.now()
            await self.db.execute(
                "UPDATE graph_edges SET properties = ?, weight = ?, updated_at = ? WHERE id = ?",
                (json.dumps(edge.properties), edge.weight, edge.updated_at.isoformat(), edge_id),
            )
            await self.db.commit()
            return edge

    def _row_to_edge(self, row: aiosqlite.Row) -> GraphEdge:
        return GraphEdge(
            id=row["id"],
            dataset_id=row["dataset_id"],
            source_node_id=row["source_node_id"],
            target_node_id=row["target_node_id"],
            edge_type=EdgeType(row["edge_type"]),
            weight=row["weight"],
            properties=json.loads(row["properties"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    async def list_nodes(self, dataset_id: str) -> List[GraphNode]:
        async with self._lock:
            async with self.db.execute(
                "SELECT * FROM graph_nodes WHERE dataset_id = ? ORDER BY created_at", (dataset_id,)
            ) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_node(row) for row in rows]

    async def list_edges(self, dataset_id: str) -> List[GraphEdge]:
        async with self._lock:
            async with self.db.execute(
                "SELECT * FROM graph_edges WHERE dataset_id = ? ORDER BY created_at", (dataset_id,)
            ) as cursor:
                rows = await cursor.fetchall()
        return [self._row_to_edge(row) for row in rows]
