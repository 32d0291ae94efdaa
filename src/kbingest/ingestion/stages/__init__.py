"""
Pipeline stage executors.
"""

from .base import (
    CancellationToken,
    OutcomeStatus,
    SegmentStageExecutor,
    StageContext,
    StageExecutor,
    StageOutcome,
    StopReason,
)
from .chunking import ChunkingStage
from .embedding import EmbeddingStage
from .graph_extraction import GraphExtractionStage, default_extraction_schema
from .ner import NERStage

__all__ = [
    "CancellationToken",
    "OutcomeStatus",
    "SegmentStageExecutor",
    "StageContext",
    "StageExecutor",
    "StageOutcome",
    "StopReason",
    "ChunkingStage",
    "EmbeddingStage",
    "GraphExtractionStage",
    "NERStage",
    "default_extraction_schema",
]
