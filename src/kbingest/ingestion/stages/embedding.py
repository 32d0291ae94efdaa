"""
Embedding stage.
"""

import logging
from typing import Dict, List

from ...models.document_models import PipelineStage, Segment
from ...models.errors import MalformedResponseError
from ...vector.embedding_client import EmbeddingClient
from .base import SegmentStageExecutor, StageContext

logger = logging.getLogger(__name__)


class EmbeddingStage(SegmentStageExecutor):
    """Embeds every segment that has no vector yet."""

    stage = PipelineStage.EMBEDDING

    def __init__(self, client: EmbeddingClient):
        self.client = client

    def is_unit_done(self, segment: Segment) -> bool:
        return segment.is_embedded

    async def process_unit(self, context: StageContext, segment: Segment) -> List[float]:
        vectors = await self.client.embed([segment.content])
        if not isinstance(vectors, list) or len(vectors) != 1 or not vectors[0]:
            raise MalformedResponseError(
                f"Expected one embedding vector, got {type(vectors).__name__}",
                unit_id=segment.id,
            )
        return [float(value) for value in vectors[0]]

    async def persist_unit(
        self, context: StageContext, segment: Segment, result: List[float]
    ) -> Dict[str, int]:
        await context.segment_store.update_segment(
            segment.id, embedding=result, embedding_error=None
        )
        return {}

    async def mark_unit_failed(
        self, context: StageContext, segment: Segment, message: str
    ) -> None:
        await context.segment_store.update_segment(segment.id, embedding_error=message)
