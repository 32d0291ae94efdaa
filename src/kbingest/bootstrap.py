"""
Assembly of a ready-to-run pipeline from settings.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from .core.concurrent_processor import WorkerPool
from .core.error_classifier import ErrorClassifier
from .core.logging_config import configure_logging
from .core.progress_reporter import ProgressNotifier
from .core.retry_policy import RetryPolicy
from .graph.entity_normalizer import EntityNormalizer
from .ingestion.chunking_engine import TokenCounter
from .ingestion.entity_extractor import EntityExtractor
from .ingestion.pipeline import PipelineOrchestrator
from .ingestion.processing_queue import InlineDispatcher, JobDispatcher, StageRegistry
from .ingestion.stages import ChunkingStage, EmbeddingStage, GraphExtractionStage, NERStage
from .llm.extraction_client import ExtractionClient, HttpExtractionClient
from .models.config_models import IngestionSettings
from .storage.base import DocumentStore, GraphStore, SegmentStore
from .storage.memory_store import InMemoryDocumentStore, InMemoryGraphStore, InMemorySegmentStore
from .storage.sqlite_store import SQLiteStore
from .vector.embedding_client import EmbeddingClient, HttpEmbeddingClient

logger = logging.getLogger(__name__)


@dataclass
class PipelineRuntime:
    """An orchestrator plus the resources it owns."""

    orchestrator: PipelineOrchestrator
    document_store: DocumentStore
    segment_store: SegmentStore
    graph_store: GraphStore
    notifier: ProgressNotifier
    closeables: List[Any] = field(default_factory=list)

    async def __aenter__(self):
        await self.orchestrator.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()

    async def shutdown(self) -> None:
        await self.orchestrator.stop()
        for resource in reversed(self.closeables):
            if hasattr(resource, "close"):
                await resource.close()
            elif hasattr(resource, "shutdown"):
                await resource.shutdown()
        logger.info("Pipeline runtime shut down")


async def create_pipeline(
    settings: Optional[IngestionSettings] = None,
    embedding_client: Optional[EmbeddingClient] = None,
    extraction_client: Optional[ExtractionClient] = None,
    entity_extractor: Optional[EntityExtractor] = None,
    dispatcher: Optional[JobDispatcher] = None,
    token_counter: Optional[TokenCounter] = None,
    setup_logging: bool = True,
) -> PipelineRuntime:
    """
    Build stores, clients and stage registry, and wire them into an orchestrator.

    Args:
        settings: Full settings, defaults when omitted
        embedding_client: Embedding capability, HTTP client from settings when omitted
        extraction_client: Extraction capability, HTTP client from settings when omitted
        entity_extractor: Entity extractor for the NER stage
        dispatcher: Job dispatcher, inline when omitted
        token_counter: Token counter for chunking, tiktoken when omitted
        setup_logging: Install the rich log handler at the configured level

    Returns:
        Runtime holding the orchestrator and the resources to close
    """
    settings = settings or IngestionSettings()
    config = settings.pipeline
    if setup_logging:
        configure_logging(settings.log_level)

    closeables: List[Any] = []

    if settings.database_path:
        store = SQLiteStore(settings.database_path)
        await store.initialize()
        closeables.append(store)
        document_store: DocumentStore = store
        segment_store: SegmentStore = store
        graph_store: GraphStore = store
    else:
        document_store = InMemoryDocumentStore()
        segment_store = InMemorySegmentStore()
        graph_store = InMemoryGraphStore()

    if embedding_client is None:
        embedding_client = HttpEmbeddingClient(
            settings.embedding, timeout=config.external_call_timeout_seconds
        )
        closeables.append(embedding_client)

    registry = StageRegistry([ChunkingStage(token_counter), EmbeddingStage(embedding_client)])
    normalizer = EntityNormalizer(config.entity_aliases)

    if config.ner_enabled:
        registry.register(NERStage(entity_extractor, normalizer))

    if config.graph_extraction_enabled:
        if extraction_client is None:
            extraction_client = HttpExtractionClient(
                settings.llm, timeout=config.external_call_timeout_seconds
            )
            closeables.append(extraction_client)
        registry.register(GraphExtractionStage(extraction_client, graph_store, normalizer=normalizer))

    notifier = ProgressNotifier(coalesce_every=config.progress_coalesce_every)
    classifier = ErrorClassifier()

    orchestrator = PipelineOrchestrator(
        document_store=document_store,
        segment_store=segment_store,
        registry=registry,
        notifier=notifier,
        config=config,
        dispatcher=dispatcher or InlineDispatcher(),
        worker_pool=WorkerPool(max_workers=config.worker_pool_size, name="external-calls"),
        retry_policy=RetryPolicy.from_config(config, classifier=classifier),
        classifier=classifier,
    )

    logger.info(
        f"Pipeline ready (stores: {'sqlite' if settings.database_path else 'memory'}, "
        f"stages: {', '.join(stage.value for stage in registry.stages())})"
    )
    return PipelineRuntime(
        orchestrator=orchestrator,
        document_store=document_store,
        segment_store=segment_store,
        graph_store=graph_store,
        notifier=notifier,
        closeables=closeables,
    )
