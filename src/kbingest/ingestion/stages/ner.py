"""
Named entity recognition stage.
"""

from typing import Dict, List, Optional

from ...graph.entity_normalizer import EntityNormalizer
from ...models.document_models import PipelineStage, Segment
from ..entity_extractor import MAX_ENTITIES, EntityExtractor, PatternEntityExtractor
from .base import SegmentStageExecutor, StageContext


class NERStage(SegmentStageExecutor):
    """Attaches up to ``MAX_ENTITIES`` entity strings to each segment."""

    stage = PipelineStage.NER

    def __init__(
        self,
        extractor: Optional[EntityExtractor] = None,
        normalizer: Optional[EntityNormalizer] = None,
    ):
        self.extractor = extractor or PatternEntityExtractor()
        self.normalizer = normalizer

    def is_unit_done(self, segment: Segment) -> bool:
        return segment.entities is not None

    async def process_unit(self, context: StageContext, segment: Segment) -> List[str]:
        entities = list(await self.extractor.extract(segment.content))
        if self.normalizer:
            entities = self.normalizer.normalize_labels(entities)
        return entities[:MAX_ENTITIES]

    async def persist_unit(
        self, context: StageContext, segment: Segment, result: List[str]
    ) -> Dict[str, int]:
        await context.segment_store.update_segment(segment.id, entities=result, ner_error=None)
        return {}

    async def mark_unit_failed(
        self, context: StageContext, segment: Segment, message: str
    ) -> None:
        await context.segment_store.update_segment(segment.id, ner_error=message)
