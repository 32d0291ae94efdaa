"""
Upsert of extracted entities and relationships into the graph store.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from ..models.errors import ConflictError
from ..models.graph_models import (
    ExtractedEdge,
    ExtractedNode,
    ExtractionResult,
    GraphEdge,
    GraphNode,
    NodeType,
)
from ..storage.base import GraphStore
from .entity_normalizer import EntityNormalizer
from .normalization import (
    canonicalize_label,
    clamp_weight,
    is_remapped,
    normalize_edge_type,
    normalize_node_type,
)

logger = logging.getLogger(__name__)

DEFAULT_EDGE_WEIGHT = 1.0


@dataclass
class UpsertResult:
    """Counts for one segment's upsert."""

    nodes_created: int = 0
    nodes_merged: int = 0
    edges_created: int = 0
    edges_merged: int = 0
    edges_dropped: int = 0
    node_ids: Dict[str, str] = field(default_factory=dict)


class GraphBuilder:
    """
    Deduplicating writer for extracted graphs.

    Nodes are keyed by (dataset, canonical type, trimmed label) and edges by
    (dataset, source id, target id, canonical type). An existing row is
    merged into, never duplicated. A ConflictError from a concurrent insert
    is absorbed by re-reading the winner and merging into it. With a
    normalizer, alias spellings within a segment are collapsed first.
    """

    def __init__(self, graph_store: GraphStore, normalizer: Optional[EntityNormalizer] = None):
        self.graph_store = graph_store
        self.normalizer = normalizer

    async def upsert_segment_graph(
        self,
        dataset_id: str,
        document_id: str,
        segment_id: str,
        extraction: ExtractionResult,
    ) -> UpsertResult:
        """
        Upsert one segment's extraction.

        Args:
            dataset_id: Dataset scoping the graph
            document_id: Origin document, stored on new nodes
            segment_id: Origin segment, stored on new nodes
            extraction: Validated extraction payload

        Returns:
            Created/merged counts and the label -> node id map for the segment
        """
        result = UpsertResult()
        if self.normalizer:
            extraction = self.normalizer.normalize_extraction(extraction)

        for extracted in extraction.nodes:
            label = extracted.resolved_label
            if not label:
                logger.debug(f"Skipping node without label in segment {segment_id}")
                continue

            node_type = normalize_node_type(extracted.type)
            node_id, created = await self._upsert_node(
                dataset_id, document_id, segment_id, node_type, label, extracted
            )
            if created:
                result.nodes_created += 1
            else:
                result.nodes_merged += 1

            result.node_ids.setdefault(label, node_id)
            if extracted.id and extracted.id.strip():
                result.node_ids.setdefault(extracted.id.strip(), node_id)

        for extracted_edge in extraction.edges:
            source_id = result.node_ids.get(canonicalize_label(extracted_edge.source))
            target_id = result.node_ids.get(canonicalize_label(extracted_edge.target))
            if not source_id or not target_id:
                result.edges_dropped += 1
                logger.warning(
                    f"Dropping edge {extracted_edge.source!r} -> {extracted_edge.target!r} "
                    f"in segment {segment_id}: endpoint not among extracted nodes"
                )
                continue

            created = await self._upsert_edge(dataset_id, source_id, target_id, extracted_edge)
            if created:
                result.edges_created += 1
            else:
                result.edges_merged += 1

        logger.debug(
            f"Segment {segment_id}: {result.nodes_created} nodes created, "
            f"{result.nodes_merged} merged, {result.edges_created} edges created, "
            f"{result.edges_merged} merged, {result.edges_dropped} dropped"
        )
        return result

    async def _upsert_node(
        self,
        dataset_id: str,
        document_id: str,
        segment_id: str,
        node_type: NodeType,
        label: str,
        extracted: ExtractedNode,
    ) -> Tuple[str, bool]:
        properties = dict(extracted.properties)
        if is_remapped(extracted.type, node_type):
            properties.setdefault("original_type", extracted.type)

        existing = await self.graph_store.find_node(dataset_id, node_type, label)
        if existing is None:
            node = GraphNode(
                dataset_id=dataset_id,
                node_type=node_type,
                label=label,
                document_id=document_id,
                segment_id=segment_id,
                properties=properties,
            )
            try:
                inserted = await self.graph_store.insert_node(node)
                return inserted.id, True
            except ConflictError:
                logger.debug(f"Concurrent insert of node {node_type.value}:{label}, merging")
                existing = await self.graph_store.find_node(dataset_id, node_type, label)
                if existing is None:
                    raise

        await self.graph_store.merge_node(existing.id, properties)
        return existing.id, False

    async def _upsert_edge(
        self,
        dataset_id: str,
        source_id: str,
        target_id: str,
        extracted: ExtractedEdge,
    ) -> bool:
        edge_type = normalize_edge_type(extracted.type)
        weight = clamp_weight(extracted.weight)
        if weight is None:
            weight = DEFAULT_EDGE_WEIGHT

        properties = dict(extracted.properties)
        if is_remapped(extracted.type, edge_type):
            properties.setdefault("original_type", extracted.type)

        existing = await self.graph_store.find_edge(dataset_id, source_id, target_id, edge_type)
        if existing is None:
            edge = GraphEdge(
                dataset_id=dataset_id,
                source_node_id=source_id,
                target_node_id=target_id,
                edge_type=edge_type,
                weight=weight,
                properties=properties,
            )
            try:
                await self.graph_store.insert_edge(edge)
                return True
            except ConflictError:
                logger.debug(f"Concurrent insert of edge {edge.natural_key}, merging")
                existing = await self.graph_store.find_edge(
                    dataset_id, source_id, target_id, edge_type
                )
                if existing is None:
                    raise

        await self.graph_store.merge_edge(existing.id, properties, weight)
        return False

    async def get_graph_summary(self, dataset_id: str) -> Dict[str, int]:
        nodes: List[GraphNode] = await self.graph_store.list_nodes(dataset_id)
        edges: List[GraphEdge] = await self.graph_store.list_edges(dataset_id)
        return {"nodes": len(nodes), "edges": len(edges)}
