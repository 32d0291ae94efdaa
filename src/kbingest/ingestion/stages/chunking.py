"""
Chunking stage.
"""

import logging
from typing import Optional

from ...models.document_models import PipelineStage, ProcessingMetadata
from ..chunking_engine import ChunkingEngine, TokenCounter
from .base import OutcomeStatus, StageContext, StageExecutor, StageOutcome

logger = logging.getLogger(__name__)


class ChunkingStage(StageExecutor):
    """
    Splits document content into segments.

    Always redone in full: the document's existing segments are replaced
    atomically, so a resumed run yields the same segment ids.
    """

    stage = PipelineStage.CHUNKING

    def __init__(self, token_counter: Optional[TokenCounter] = None):
        self.token_counter = token_counter

    def engine_for(self, context: StageContext) -> ChunkingEngine:
        return ChunkingEngine(
            chunk_size=context.config.chunk_size,
            chunk_overlap=context.config.chunk_overlap,
            token_counter=self.token_counter,
            tokenizer_model=context.config.tokenizer_model,
        )

    async def execute(self, context: StageContext) -> StageOutcome:
        engine = self.engine_for(context)
        logger.debug(f"Chunking document {context.document_id} with {engine.get_chunking_statistics()}")
        segments = engine.create_segments(context.document)
        await context.begin(total=len(segments), already_done=0)

        if context.should_stop():
            return StageOutcome(stage=self.stage, status=OutcomeStatus.STOPPED, total=len(segments))

        await context.segment_store.replace_segments(context.document_id, segments)

        def mark_done(metadata: ProcessingMetadata) -> None:
            metadata.checkpoint(self.stage).segments_processed = len(segments)

        await context.document_store.update_metadata(context.document_id, mark_done)
        if context.notifier:
            await context.notifier.report_progress(
                context.document, self.stage, current=len(segments), total=len(segments)
            )

        logger.info(f"Persisted {len(segments)} segments for document {context.document_id}")
        return StageOutcome(
            stage=self.stage,
            status=OutcomeStatus.COMPLETED,
            processed=len(segments),
            total=len(segments),
        )
