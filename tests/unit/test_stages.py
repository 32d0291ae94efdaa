"""
Unit tests for stage executors driven directly through a StageContext.
"""

import pytest

from fakes import FakeEmbeddingClient, FakeExtractionClient, no_sleep, word_count
from kbingest.core.concurrent_processor import WorkerPool
from kbingest.core.retry_policy import RetryPolicy
from kbingest.graph.entity_normalizer import EntityNormalizer
from kbingest.ingestion.stages import (
    CancellationToken,
    ChunkingStage,
    EmbeddingStage,
    GraphExtractionStage,
    NERStage,
    OutcomeStatus,
    StageContext,
    StopReason,
    default_extraction_schema,
)
from kbingest.ingestion.stages.base import describe_error
from kbingest.models.document_models import GraphExtractionStatus, PipelineStage
from kbingest.models.errors import (
    ProviderError,
    RetryExhaustedError,
    TransientExternalError,
    ValidationError,
)


@pytest.fixture
def make_context(document_store, segment_store, notifier, pipeline_config):
    """Build a StageContext for the stored document ``doc-1``."""

    async def make(stage, token=None, force=False, max_attempts=3):
        return StageContext(
            document=await document_store.get("doc-1"),
            stage=stage,
            config=pipeline_config,
            document_store=document_store,
            segment_store=segment_store,
            worker_pool=WorkerPool(max_workers=2),
            retry_policy=RetryPolicy(max_attempts=max_attempts, backoff_base=0.001, sleep=no_sleep),
            token=token or CancellationToken(),
            notifier=notifier,
            force=force,
        )

    return make


class BrokenEmbeddingClient:
    def __init__(self, vectors):
        self.vectors = vectors

    async def embed(self, texts):
        return self.vectors


class TestCancellationToken:
    def test_first_request_wins(self):
        token = CancellationToken()
        assert not token.requested

        token.request(StopReason.CANCEL)
        token.request(StopReason.PAUSE)

        assert token.requested
        assert token.reason == StopReason.CANCEL


class TestDescribeError:
    def test_retry_exhausted_names_last_error(self):
        error = RetryExhaustedError(
            "Failed after 3 attempts", attempts=3, last_error=TransientExternalError("503 from provider")
        )

        assert describe_error(error) == "503 from provider (after 3 attempts)"

    def test_plain_errors(self):
        assert describe_error(ProviderError("quota exceeded")) == "quota exceeded"
        assert describe_error(RuntimeError()) == "RuntimeError"


class TestChunkingStage:
    @pytest.mark.asyncio
    async def test_chunks_and_records_progress(self, make_context, seed_document, segment_store, document_store):
        await seed_document(count=5)
        context = await make_context(PipelineStage.CHUNKING)

        outcome = await ChunkingStage(token_counter=word_count).execute(context)

        segments = await segment_store.list_segments("doc-1")
        checkpoint = (await document_store.get("doc-1")).processing_metadata.chunking
        assert outcome.status == OutcomeStatus.COMPLETED
        assert outcome.total == len(segments)
        assert checkpoint.segments_processed == len(segments)
        assert checkpoint.is_complete

    @pytest.mark.asyncio
    async def test_rechunking_yields_same_ids(self, make_context, seed_document, segment_store):
        await seed_document(count=5)
        stage = ChunkingStage(token_counter=word_count)

        await stage.execute(await make_context(PipelineStage.CHUNKING))
        first = [s.id for s in await segment_store.list_segments("doc-1")]
        await stage.execute(await make_context(PipelineStage.CHUNKING))
        second = [s.id for s in await segment_store.list_segments("doc-1")]

        assert first == second

    @pytest.mark.asyncio
    async def test_stop_before_persisting(self, make_context, seed_document, segment_store):
        seeded = await seed_document(count=3)
        token = CancellationToken()
        token.request(StopReason.PAUSE)

        outcome = await ChunkingStage(token_counter=word_count).execute(
            await make_context(PipelineStage.CHUNKING, token=token)
        )

        assert outcome.status == OutcomeStatus.STOPPED
        assert [s.id for s in await segment_store.list_segments("doc-1")] == [s.id for s in seeded]

    @pytest.mark.asyncio
    async def test_empty_content_raises(self, make_context, seed_document):
        await seed_document(count=0)

        with pytest.raises(ValidationError):
            await ChunkingStage(token_counter=word_count).execute(await make_context(PipelineStage.CHUNKING))


class TestEmbeddingStage:
    @pytest.mark.asyncio
    async def test_embeds_only_pending_segments(self, make_context, seed_document, segment_store):
        segments = await seed_document(count=4)
        await segment_store.update_segment(segments[0].id, embedding=[1.0])
        client = FakeEmbeddingClient()

        outcome = await EmbeddingStage(client).execute(await make_context(PipelineStage.EMBEDDING))

        assert outcome.status == OutcomeStatus.COMPLETED
        assert outcome.processed == 4
        assert len(client.calls) == 3
        stored = await segment_store.list_segments("doc-1")
        assert stored[0].embedding == [1.0]
        assert all(s.is_embedded for s in stored)

    @pytest.mark.asyncio
    async def test_force_reembeds_everything(self, make_context, seed_document, segment_store):
        segments = await seed_document(count=3)
        await segment_store.update_segment(segments[0].id, embedding=[1.0])
        client = FakeEmbeddingClient()

        await EmbeddingStage(client).execute(await make_context(PipelineStage.EMBEDDING, force=True))

        assert len(client.calls) == 3
        assert (await segment_store.get_segment(segments[0].id)).embedding != [1.0]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("vectors", [[], [[]], [[0.1], [0.2]], None])
    async def test_malformed_vectors_fail_without_retry(
        self, make_context, seed_document, segment_store, vectors
    ):
        await seed_document(count=1)

        outcome = await EmbeddingStage(BrokenEmbeddingClient(vectors)).execute(
            await make_context(PipelineStage.EMBEDDING)
        )

        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.error_category == "malformed_response"
        assert outcome.retry_count == 0
        assert (await segment_store.list_segments("doc-1"))[0].embedding_error

    @pytest.mark.asyncio
    async def test_failure_message_names_first_segment(self, make_context, seed_document):
        segments = await seed_document(count=4)

        async def hook(call_number, text):
            if "number 3" in text or "number 4" in text:
                raise ProviderError("model not found")

        outcome = await EmbeddingStage(FakeEmbeddingClient(hook)).execute(
            await make_context(PipelineStage.EMBEDDING)
        )

        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.error_unit_id == segments[2].id
        assert outcome.error_message.startswith("embedding failed for 2 of 4 segments; segment 2")
        assert outcome.error_category == "provider"
        assert sorted(outcome.failed_unit_ids) == sorted([segments[2].id, segments[3].id])

    @pytest.mark.asyncio
    async def test_transient_failures_are_counted_as_retries(self, make_context, seed_document):
        await seed_document(count=2)
        failures = {"left": 2}

        async def hook(call_number, text):
            if failures["left"]:
                failures["left"] -= 1
                raise TransientExternalError("503 service unavailable")

        outcome = await EmbeddingStage(FakeEmbeddingClient(hook)).execute(
            await make_context(PipelineStage.EMBEDDING, max_attempts=3)
        )

        assert outcome.status == OutcomeStatus.COMPLETED
        assert outcome.retry_count == 2

    @pytest.mark.asyncio
    async def test_stop_request_returns_stopped(self, make_context, seed_document):
        await seed_document(count=3)
        token = CancellationToken()
        token.request(StopReason.CANCEL)
        client = FakeEmbeddingClient()

        outcome = await EmbeddingStage(client).execute(
            await make_context(PipelineStage.EMBEDDING, token=token)
        )

        assert outcome.status == OutcomeStatus.STOPPED
        assert client.calls == []


class TestNERStage:
    @pytest.mark.asyncio
    async def test_entities_are_attached(self, make_context, seed_document, segment_store):
        await seed_document(count=2)

        outcome = await NERStage().execute(await make_context(PipelineStage.NER))

        assert outcome.status == OutcomeStatus.COMPLETED
        for segment in await segment_store.list_segments("doc-1"):
            assert segment.entities == ["Acme Corp"]

    @pytest.mark.asyncio
    async def test_entities_are_capped(self, make_context, seed_document, segment_store):
        await seed_document(count=1)

        class Chatty:
            async def extract(self, text):
                return [f"Entity {i}" for i in range(20)]

        await NERStage(Chatty()).execute(await make_context(PipelineStage.NER))

        assert len((await segment_store.list_segments("doc-1"))[0].entities) == 8

    @pytest.mark.asyncio
    async def test_entities_are_normalized(self, make_context, seed_document, segment_store):
        await seed_document(count=1)

        class Fixed:
            async def extract(self, text):
                return ["BofA", "Bank of America", "ACME Corp", "Acme Corporation"]

        normalizer = EntityNormalizer({"Bank of America": ["BofA"]})
        await NERStage(Fixed(), normalizer).execute(await make_context(PipelineStage.NER))

        segment = (await segment_store.list_segments("doc-1"))[0]
        assert segment.entities == ["Bank of America", "ACME Corp"]


class TestGraphExtractionStage:
    PAYLOAD = {
        "nodes": [
            {"id": "acme", "type": "organization", "label": "Acme Corp"},
            {"id": "jane", "type": "person", "label": "Jane Smith"},
        ],
        "edges": [{"source": "Jane Smith", "target": "Acme Corp", "type": "works_with", "weight": 0.5}],
    }

    @pytest.mark.asyncio
    async def test_counts_created_rows(self, make_context, seed_document, segment_store, graph_store):
        await seed_document(count=3)
        stage = GraphExtractionStage(FakeExtractionClient(self.PAYLOAD), graph_store)

        outcome = await stage.execute(await make_context(PipelineStage.GRAPH_EXTRACTION))

        assert outcome.status == OutcomeStatus.COMPLETED
        assert (outcome.nodes_created, outcome.edges_created) == (2, 1)
        assert len(await graph_store.list_nodes("dataset-1")) == 2
        assert all(
            s.graph_extraction_status == GraphExtractionStatus.COMPLETED
            for s in await segment_store.list_segments("doc-1")
        )

    @pytest.mark.asyncio
    async def test_malformed_segment_is_tolerated(self, make_context, seed_document, segment_store, graph_store):
        await seed_document(count=2)
        stage = GraphExtractionStage(FakeExtractionClient("not json at all"), graph_store)

        outcome = await stage.execute(await make_context(PipelineStage.GRAPH_EXTRACTION))

        assert outcome.status == OutcomeStatus.COMPLETED
        assert len(outcome.failed_unit_ids) == 2
        for segment in await segment_store.list_segments("doc-1"):
            assert segment.graph_extraction_status == GraphExtractionStatus.ERROR
            assert "No valid JSON" in segment.graph_extraction_error

    def test_default_schema_lists_canonical_types(self):
        schema = default_extraction_schema()

        assert "person" in schema["node_types"]
        assert "related_to" in schema["edge_types"]
        assert schema["edge_fields"][:2] == ["sourceNodeLabel", "targetNodeLabel"]
