"""
Knowledge graph extraction stage.

Each pending segment is sent to the extraction provider, the reply is
normalized and validated, and the resulting nodes and edges are upserted
into the dataset graph. Segment failures are recorded on the segment and
never fail the document.
"""

import logging
from typing import Any, Dict, Optional

from ...graph.entity_normalizer import EntityNormalizer
from ...graph.graph_builder import GraphBuilder
from ...graph.response_parser import parse_extraction
from ...llm.extraction_client import ExtractionClient
from ...models.document_models import GraphExtractionStatus, PipelineStage, Segment
from ...models.graph_models import EdgeType, ExtractionResult, NodeType
from ...storage.base import GraphStore
from .base import SegmentStageExecutor, StageContext, StageOutcome

logger = logging.getLogger(__name__)


def default_extraction_schema() -> Dict[str, Any]:
    """Schema handed to the extraction provider with every segment."""
    return {
        "node_types": [t.value for t in NodeType],
        "edge_types": [t.value for t in EdgeType],
        "node_fields": ["id", "type", "label", "properties"],
        "edge_fields": ["sourceNodeLabel", "targetNodeLabel", "type", "weight", "properties"],
    }


class GraphExtractionStage(SegmentStageExecutor):
    """Extracts entities and relations from segments into the graph store."""

    stage = PipelineStage.GRAPH_EXTRACTION
    tolerate_unit_failures = True

    def __init__(
        self,
        client: ExtractionClient,
        graph_store: GraphStore,
        schema: Optional[Dict[str, Any]] = None,
        normalizer: Optional[EntityNormalizer] = None,
    ):
        self.client = client
        self.builder = GraphBuilder(graph_store, normalizer)
        self.schema = schema or default_extraction_schema()

    async def execute(self, context: StageContext) -> StageOutcome:
        outcome = await super().execute(context)
        if outcome.completed:
            summary = await self.builder.get_graph_summary(context.document.dataset_id)
            logger.info(
                f"Graph extraction for document {context.document_id}: "
                f"{outcome.nodes_created} nodes and {outcome.edges_created} edges created, "
                f"dataset {context.document.dataset_id} now has "
                f"{summary['nodes']} nodes and {summary['edges']} edges"
            )
        return outcome

    def is_unit_done(self, segment: Segment) -> bool:
        return segment.graph_extraction_status == GraphExtractionStatus.COMPLETED

    async def before_unit(self, context: StageContext, segment: Segment) -> None:
        await context.segment_store.update_segment(
            segment.id,
            graph_extraction_status=GraphExtractionStatus.PROCESSING,
            graph_extraction_error=None,
        )

    async def process_unit(self, context: StageContext, segment: Segment) -> ExtractionResult:
        # Retries re-run the whole call, so parsing happens inside the attempt
        response = await self.client.extract(segment.content, self.schema)
        return parse_extraction(response, unit_id=segment.id)

    async def persist_unit(
        self, context: StageContext, segment: Segment, result: ExtractionResult
    ) -> Dict[str, int]:
        upsert = await self.builder.upsert_segment_graph(
            dataset_id=context.document.dataset_id,
            document_id=context.document_id,
            segment_id=segment.id,
            extraction=result,
        )
        await context.segment_store.update_segment(
            segment.id,
            graph_extraction_status=GraphExtractionStatus.COMPLETED,
            graph_extraction_error=None,
        )
        return {
            "nodes_created": upsert.nodes_created,
            "edges_created": upsert.edges_created,
        }

    async def mark_unit_failed(
        self, context: StageContext, segment: Segment, message: str
    ) -> None:
        await context.segment_store.update_segment(
            segment.id,
            graph_extraction_status=GraphExtractionStatus.ERROR,
            graph_extraction_error=message,
        )
