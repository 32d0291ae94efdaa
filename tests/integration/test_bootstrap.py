"""
Integration tests for pipeline assembly from settings.
"""

import pytest

from fakes import FakeEmbeddingClient, FakeExtractionClient, long_text, word_count
from kbingest import ConfigManager, Document, DocumentStatus, PipelineStage, create_pipeline
from kbingest.ingestion.processing_queue import StageJobQueue
from kbingest.models.config_models import IngestionSettings
from kbingest.storage.sqlite_store import SQLiteStore
from kbingest.vector.embedding_client import HttpEmbeddingClient

GRAPH = {
    "nodes": [
        {"id": "acme", "type": "company", "label": "Acme Corp"},
        {"id": "berlin", "type": "city", "label": "Berlin"},
    ],
    "edges": [{"source": "Acme Corp", "target": "Berlin", "type": "based_in", "weight": 0.9}],
}


def settings_for(tmp_path=None, **pipeline) -> IngestionSettings:
    overrides = {"pipeline": {"chunkSize": 150, "chunkOverlap": 30, **pipeline}}
    if tmp_path is not None:
        overrides["databasePath"] = str(tmp_path / "kb.db")
    return ConfigManager(environ={}).load(overrides=overrides)


class TestCreatePipeline:
    """Test wiring of stores, clients and stages."""

    @pytest.mark.asyncio
    async def test_in_memory_pipeline_runs_required_stages(self):
        runtime = await create_pipeline(
            settings_for(),
            embedding_client=FakeEmbeddingClient(),
            token_counter=word_count,
            setup_logging=False,
        )

        async with runtime:
            document = await runtime.orchestrator.submit(
                Document(id="doc-1", dataset_id="ds", content=long_text())
            )

        assert document.indexing_status == DocumentStatus.COMPLETED
        assert runtime.orchestrator.enabled_stages() == [PipelineStage.CHUNKING, PipelineStage.EMBEDDING]
        segments = await runtime.segment_store.list_segments("doc-1")
        assert segments and all(s.is_embedded for s in segments)

    @pytest.mark.asyncio
    async def test_sqlite_pipeline_with_all_stages_persists(self, tmp_path):
        settings = settings_for(tmp_path, nerEnabled=True, graphExtractionEnabled=True)

        async with await create_pipeline(
            settings,
            embedding_client=FakeEmbeddingClient(),
            extraction_client=FakeExtractionClient(GRAPH),
            token_counter=word_count,
            setup_logging=False,
        ) as runtime:
            await runtime.orchestrator.submit(
                Document(id="doc-1", dataset_id="ds", content=long_text(3))
            )

        async with SQLiteStore(tmp_path / "kb.db") as store:
            document = await store.get("doc-1")
            segments = await store.list_segments("doc-1")
            nodes = await store.list_nodes("ds")
            edges = await store.list_edges("ds")

        assert document.indexing_status == DocumentStatus.COMPLETED
        assert document.processing_metadata.graph_extraction.nodes_created == 2
        assert all(s.entities is not None for s in segments)
        assert "Acme Corp" in segments[0].entities
        assert sorted(n.label for n in nodes) == ["Acme Corp", "Berlin"]
        assert len(edges) == 1
        assert edges[0].weight == 0.9

    @pytest.mark.asyncio
    async def test_queue_dispatcher(self):
        runtime = await create_pipeline(
            settings_for(),
            embedding_client=FakeEmbeddingClient(),
            dispatcher=StageJobQueue(consumers=2),
            token_counter=word_count,
            setup_logging=False,
        )

        async with runtime:
            for i in range(3):
                await runtime.orchestrator.submit(
                    Document(id=f"doc-{i}", dataset_id="ds", content=long_text(2))
                )
            await runtime.orchestrator.wait_idle()

            statuses = [
                (await runtime.document_store.get(f"doc-{i}")).indexing_status for i in range(3)
            ]

        assert statuses == [DocumentStatus.COMPLETED] * 3

    @pytest.mark.asyncio
    async def test_default_http_clients_are_closed(self):
        runtime = await create_pipeline(
            settings_for(graphExtractionEnabled=True), token_counter=word_count, setup_logging=False
        )

        embedding_clients = [c for c in runtime.closeables if isinstance(c, HttpEmbeddingClient)]
        assert len(embedding_clients) == 1
        assert len(runtime.closeables) == 2

        await embedding_clients[0].initialize()
        await runtime.shutdown()

        assert embedding_clients[0]._client is None
