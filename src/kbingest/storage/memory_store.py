"""
In-memory store implementations.

Each store guards its state with one asyncio.Lock, which makes metadata
updates and graph merges atomic for coroutines sharing an event loop.
Returned objects are copies, so callers never mutate stored state directly.
"""

import asyncio
import copy
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..graph.normalization import merge_properties, reinforce_weight
from ..models.document_models import (
    Document,
    DocumentStatus,
    ProcessingMetadata,
    Segment,
)
from ..models.errors import ConflictError, DocumentNotFoundError, PipelineError
from ..models.graph_models import EdgeType, GraphEdge, GraphNode, NodeType
from .base import DocumentStore, GraphStore, MetadataMutator, SegmentStore

logger = logging.getLogger(__name__)


class InMemoryDocumentStore(DocumentStore):
    def __init__(self):
        self._documents: Dict[str, Document] = {}
        self._lock = asyncio.Lock()

    async def create(self, document: Document) -> Document:
        async with self._lock:
            if document.id in self._documents:
                raise ConflictError(f"Document {document.id} already exists", key=(document.id,))
            self._documents[document.id] = copy.deepcopy(document)
            return copy.deepcopy(document)

    async def get(self, document_id: str) -> Document:
        async with self._lock:
            return copy.deepcopy(self._require(document_id))

    async def list_documents(
        self, dataset_id: str, statuses: Optional[Iterable[DocumentStatus]] = None
    ) -> List[Document]:
        wanted = set(statuses) if statuses is not None else None
        async with self._lock:
            documents = [
                d
                for d in self._documents.values()
                if d.dataset_id == dataset_id and (wanted is None or d.indexing_status in wanted)
            ]
            documents.sort(key=lambda d: d.created_at)
            return copy.deepcopy(documents)

    async def update_status(
        self, document_id: str, status: DocumentStatus, error: Optional[str] = None
    ) -> Document:
        async with self._lock:
            document = self._require(document_id)
            document.indexing_status = status
            document.error = error
            document.updated_at = datetime.now()
            return copy.deepcopy(document)

    async def update_metadata(
        self, document_id: str, mutate: MetadataMutator
    ) -> ProcessingMetadata:
        async with self._lock:
            document = self._require(document_id)
            metadata = copy.deepcopy(document.processing_metadata)
            mutate(metadata)
            document.processing_metadata = metadata
            document.updated_at = datetime.now()
            return copy.deepcopy(metadata)

    def _require(self, document_id: str) -> Document:
        document = self._documents.get(document_id)
        if document is None:
            raise DocumentNotFoundError(f"Document {document_id} not found")
        return document


class InMemorySegmentStore(SegmentStore):
    def __init__(self):
        self._segments: Dict[str, Segment] = {}
        self._by_document: Dict[str, List[str]] = {}
        self._lock = asyncio.Lock()

    async def replace_segments(self, document_id: str, segments: List[Segment]) -> None:
        async with self._lock:
            for segment_id in self._by_document.pop(document_id, []):
                self._segments.pop(segment_id, None)

            ordered = sorted(segments, key=lambda s: s.position)
            for segment in ordered:
                self._segments[segment.id] = copy.deepcopy(segment)
            self._by_document[document_id] = [s.id for s in ordered]

    async def list_segments(self, document_id: str) -> List[Segment]:
        async with self._lock:
            return [
                copy.deepcopy(self._segments[segment_id])
                for segment_id in self._by_document.get(document_id, [])
            ]

    async def get_segment(self, segment_id: str) -> Optional[Segment]:
        async with self._lock:
            segment = self._segments.get(segment_id)
            return copy.deepcopy(segment) if segment else None

    async def update_segment(self, segment_id: str, **fields: Any) -> Segment:
        async with self._lock:
            segment = self._segments.get(segment_id)
            if segment is None:
                raise PipelineError(f"Segment {segment_id} not found", unit_id=segment_id)

            for name, value in fields.items():
                if not hasattr(segment, name):
                    raise AttributeError(f"Segment has no field {name}")
                setattr(segment, name, value)
            return copy.deepcopy(segment)


class InMemoryGraphStore(GraphStore):
    def __init__(self):
        self._nodes: Dict[str, GraphNode] = {}
        self._node_keys: Dict[Tuple, str] = {}
        self._edges: Dict[str, GraphEdge] = {}
        self._edge_keys: Dict[Tuple, str] = {}
        self._lock = asyncio.Lock()

    async def find_node(
        self, dataset_id: str, node_type: NodeType, label: str
    ) -> Optional[GraphNode]:
        async with self._lock:
            node_id = self._node_keys.get((dataset_id, node_type.value, label))
            return copy.deepcopy(self._nodes[node_id]) if node_id else None

    async def insert_node(self, node: GraphNode) -> GraphNode:
        async with self._lock:
            if node.natural_key in self._node_keys:
                raise ConflictError(
                    f"Node {node.node_type.value}:{node.label} already exists",
                    key=node.natural_key,
                )
            self._nodes[node.id] = copy.deepcopy(node)
            self._node_keys[node.natural_key] = node.id
            return copy.deepcopy(node)

    async def merge_node(self, node_id: str, properties: Dict[str, Any]) -> GraphNode:
        async with self._lock:
            node = self._nodes[node_id]
            node.properties = merge_properties(node.properties, properties)
            node.updated_at = datetime.now()
            return copy.deepcopy(node)

    async def find_edge(
        self,
        dataset_id: str,
        source_node_id: str,
        target_node_id: str,
        edge_type: EdgeType,
    ) -> Optional[GraphEdge]:
        async with self._lock:
            edge_id = self._edge_keys.get(
                (dataset_id, source_node_id, target_node_id, edge_type.value)
            )
            return copy.deepcopy(self._edges[edge_id]) if edge_id else None

    async def insert_edge(self, edge: GraphEdge) -> GraphEdge:
        async with self._lock:
            if edge.natural_key in self._edge_keys:
                raise ConflictError(
                    f"Edge {edge.edge_type.value} {edge.source_node_id}->{edge.target_node_id} already exists",
                    key=edge.natural_key,
                )
            self._edges[edge.id] = copy.deepcopy(edge)
            self._edge_keys[edge.natural_key] = edge.id
            return copy.deepcopy(edge)

    async def merge_edge(
        self,
        edge_id: str,
        properties: Dict[str, Any],
        weight: Optional[float] = None,
    ) -> GraphEdge:
        async with self._lock:
            edge = self._edges[edge_id]
            edge.properties = merge_properties(edge.properties, properties)
            edge.weight = reinforce_weight(edge.weight, weight)
            edge.updated_at = datetime.now()
            return copy.deepcopy(edge)

    async def list_nodes(self, dataset_id: str) -> List[GraphNode]:
        async with self._lock:
            return [copy.deepcopy(n) for n in self._nodes.values() if n.dataset_id == dataset_id]

    async def list_edges(self, dataset_id: str) -> List[GraphEdge]:
        async with self._lock:
            return [copy.deepcopy(e) for e in self._edges.values() if e.dataset_id == dataset_id]
