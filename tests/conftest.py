"""
Shared fixtures for unit and integration tests.
"""

from typing import Any, List, Optional

import pytest

from fakes import FakeEmbeddingClient, FakeExtractionClient, make_segments, no_sleep, word_count
from kbingest.core.progress_reporter import ProgressNotifier
from kbingest.core.retry_policy import RetryPolicy
from kbingest.ingestion.pipeline import PipelineOrchestrator
from kbingest.ingestion.processing_queue import StageRegistry
from kbingest.ingestion.stages import ChunkingStage, EmbeddingStage, GraphExtractionStage, NERStage
from kbingest.models.config_models import PipelineConfig
from kbingest.models.document_models import Document, DocumentStatus, Segment
from kbingest.storage.memory_store import (
    InMemoryDocumentStore,
    InMemoryGraphStore,
    InMemorySegmentStore,
)


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    return PipelineConfig(
        chunk_size=120,
        chunk_overlap=20,
        embedding_batch_size=4,
        worker_pool_size=2,
        max_retries=3,
        retry_backoff_base_ms=1,
        retry_backoff_max_ms=10,
        external_call_timeout_seconds=5,
    )


@pytest.fixture
def document_store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def segment_store() -> InMemorySegmentStore:
    return InMemorySegmentStore()


@pytest.fixture
def graph_store() -> InMemoryGraphStore:
    return InMemoryGraphStore()


@pytest.fixture
def notifier() -> ProgressNotifier:
    return ProgressNotifier()


@pytest.fixture
def event_log(notifier) -> List[Any]:
    events: List[Any] = []
    notifier.subscribe(events.append)
    return events


@pytest.fixture
def build_orchestrator(document_store, segment_store, graph_store, notifier, pipeline_config):
    """Factory building an orchestrator over the in-memory stores."""

    def build(
        embedding_client: Optional[FakeEmbeddingClient] = None,
        extraction_client: Optional[FakeExtractionClient] = None,
        entity_extractor: Any = None,
        config: Optional[PipelineConfig] = None,
        dispatcher: Any = None,
        attempt_timeout: Optional[float] = None,
    ) -> PipelineOrchestrator:
        config = config or pipeline_config
        registry = StageRegistry(
            [
                ChunkingStage(token_counter=word_count),
                EmbeddingStage(embedding_client or FakeEmbeddingClient()),
            ]
        )
        if config.ner_enabled:
            registry.register(NERStage(entity_extractor))
        if config.graph_extraction_enabled:
            registry.register(
                GraphExtractionStage(extraction_client or FakeExtractionClient(), graph_store)
            )

        policy = RetryPolicy.from_config(config, sleep=no_sleep)
        if attempt_timeout is not None:
            policy.attempt_timeout = attempt_timeout

        return PipelineOrchestrator(
            document_store=document_store,
            segment_store=segment_store,
            registry=registry,
            notifier=notifier,
            config=config,
            dispatcher=dispatcher,
            retry_policy=policy,
        )

    return build


@pytest.fixture
def seed_document(document_store, segment_store):
    """Store a document that is already chunked into ``count`` segments."""

    async def seed(
        count: int = 10,
        status: DocumentStatus = DocumentStatus.CHUNKED,
        document_id: str = "doc-1",
        dataset_id: str = "dataset-1",
    ) -> List[Segment]:
        segments = make_segments(document_id, count)
        await document_store.create(
            Document(
                id=document_id,
                dataset_id=dataset_id,
                content="\n\n".join(s.content for s in segments),
                indexing_status=status,
            )
        )
        await segment_store.replace_segments(document_id, segments)
        return segments

    return seed
