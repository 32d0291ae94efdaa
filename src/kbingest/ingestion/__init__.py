"""
Resumable document processing pipeline.

Key Components:
- Status state machine with a single transition path
- Deterministic chunking engine
- Stage executors for chunking, embedding, NER and graph extraction
- Stage job dispatch (inline or queued) and the explicit stage registry
- Orchestrator with resume, cancel and pause
"""

from .chunking_engine import ChunkingEngine
from .entity_extractor import EntityExtractor, PatternEntityExtractor
from .pipeline import PipelineOrchestrator
from .processing_queue import (
    InlineDispatcher,
    JobStatus,
    StageJob,
    StageJobQueue,
    StageRegistry,
)
from .stages import (
    CancellationToken,
    ChunkingStage,
    EmbeddingStage,
    GraphExtractionStage,
    NERStage,
    StageContext,
    StageExecutor,
    StageOutcome,
)
from .state_machine import ALLOWED_TRANSITIONS, DocumentStateMachine

__all__ = [
    # Orchestration
    "PipelineOrchestrator",
    "DocumentStateMachine",
    "ALLOWED_TRANSITIONS",
    # Dispatch
    "InlineDispatcher",
    "JobStatus",
    "StageJob",
    "StageJobQueue",
    "StageRegistry",
    # Stages
    "CancellationToken",
    "StageContext",
    "StageExecutor",
    "StageOutcome",
    "ChunkingStage",
    "EmbeddingStage",
    "NERStage",
    "GraphExtractionStage",
    # Processing
    "ChunkingEngine",
    "EntityExtractor",
    "PatternEntityExtractor",
]
