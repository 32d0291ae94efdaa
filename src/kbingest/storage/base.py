"""
Store interfaces consumed by the pipeline.

The pipeline treats persistence as a CRUD collaborator. Implementations must
make ``update_metadata``, ``merge_node`` and ``merge_edge`` atomic with
respect to concurrent callers, and must raise ConflictError when an insert
collides with an existing natural key.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..models.document_models import (
    Document,
    DocumentStatus,
    ProcessingMetadata,
    Segment,
)
from ..models.graph_models import EdgeType, GraphEdge, GraphNode, NodeType

MetadataMutator = Callable[[ProcessingMetadata], None]


class DocumentStore(ABC):
    """Persistence for documents and their processing metadata."""

    @abstractmethod
    async def create(self, document: Document) -> Document:
        """Insert a new document. Raises ConflictError if the id exists."""

    @abstractmethod
    async def get(self, document_id: str) -> Document:
        """Fetch a document. Raises DocumentNotFoundError."""

    @abstractmethod
    async def list_documents(
        self, dataset_id: str, statuses: Optional[Iterable[DocumentStatus]] = None
    ) -> List[Document]:
        """Documents of a dataset, oldest first, optionally filtered by status."""

    @abstractmethod
    async def update_status(
        self, document_id: str, status: DocumentStatus, error: Optional[str] = None
    ) -> Document:
        """Persist status and error only."""

    @abstractmethod
    async def update_metadata(
        self, document_id: str, mutate: MetadataMutator
    ) -> ProcessingMetadata:
        """
        Apply ``mutate`` to the stored metadata atomically and persist it.

        Returns:
            A copy of the metadata after the mutation
        """


class SegmentStore(ABC):
    """Persistence for the ordered segments of each document."""

    @abstractmethod
    async def replace_segments(self, document_id: str, segments: List[Segment]) -> None:
        """Atomically replace every segment of a document."""

    @abstractmethod
    async def list_segments(self, document_id: str) -> List[Segment]:
        """Segments of a document ordered by position."""

    @abstractmethod
    async def get_segment(self, segment_id: str) -> Optional[Segment]:
        ...

    @abstractmethod
    async def update_segment(self, segment_id: str, **fields: Any) -> Segment:
        """Update named fields of one segment."""


class GraphStore(ABC):
    """Persistence for deduplicated graph nodes and edges."""

    @abstractmethod
    async def find_node(
        self, dataset_id: str, node_type: NodeType, label: str
    ) -> Optional[GraphNode]:
        ...

    @abstractmethod
    async def insert_node(self, node: GraphNode) -> GraphNode:
        """Insert a node. Raises ConflictError on a duplicate natural key."""

    @abstractmethod
    async def merge_node(self, node_id: str, properties: Dict[str, Any]) -> GraphNode:
        """Merge properties into an existing node atomically."""

    @abstractmethod
    async def find_edge(
        self,
        dataset_id: str,
        source_node_id: str,
        target_node_id: str,
        edge_type: EdgeType,
    ) -> Optional[GraphEdge]:
        ...

    @abstractmethod
    async def insert_edge(self, edge: GraphEdge) -> GraphEdge:
        """Insert an edge. Raises ConflictError on a duplicate natural key."""

    @abstractmethod
    async def merge_edge(
        self,
        edge_id: str,
        properties: Dict[str, Any],
        weight: Optional[float] = None,
    ) -> GraphEdge:
        """Merge properties and reinforce the weight of an existing edge atomically."""

    @abstractmethod
    async def list_nodes(self, dataset_id: str) -> List[GraphNode]:
        ...

    @abstractmethod
    async def list_edges(self, dataset_id: str) -> List[GraphEdge]:
        ...
