"""
Unit tests for stage job dispatch and the stage registry.
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from fakes import FakeEmbeddingClient
from kbingest.ingestion.processing_queue import (
    InlineDispatcher,
    JobStatus,
    StageJob,
    StageJobQueue,
    StageRegistry,
)
from kbingest.ingestion.stages import ChunkingStage, EmbeddingStage, NERStage
from kbingest.models.document_models import PipelineStage
from kbingest.models.errors import ConfigurationError


class TestStageJob:
    def test_priority_then_age_ordering(self):
        earlier = datetime(2024, 1, 1, 12, 0, 0)
        later = earlier + timedelta(seconds=1)
        low = StageJob(document_id="a", stage=PipelineStage.CHUNKING, priority=1)
        old = StageJob(document_id="b", stage=PipelineStage.CHUNKING, priority=5, created_at=earlier)
        new = StageJob(document_id="c", stage=PipelineStage.CHUNKING, priority=5, created_at=later)
        high = StageJob(document_id="d", stage=PipelineStage.CHUNKING, priority=9)

        assert sorted([low, new, high, old]) == [high, old, new, low]

    def test_to_dict(self):
        job = StageJob(document_id="doc-1", stage=PipelineStage.EMBEDDING, resume=True)

        data = job.to_dict()

        assert data["stage"] == "embedding"
        assert data["status"] == "queued"
        assert data["resume"] is True


class TestInlineDispatcher:
    @pytest.mark.asyncio
    async def test_runs_job_in_caller(self):
        dispatcher = InlineDispatcher()
        seen = []

        async def handler(job):
            seen.append(job.document_id)

        dispatcher.bind(handler)
        job = StageJob(document_id="doc-1", stage=PipelineStage.CHUNKING)
        await dispatcher.dispatch(job)

        assert seen == ["doc-1"]
        assert job.status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_failure_is_recorded_and_raised(self):
        dispatcher = InlineDispatcher()

        async def handler(job):
            raise RuntimeError("handler failed")

        dispatcher.bind(handler)
        job = StageJob(document_id="doc-1", stage=PipelineStage.CHUNKING)

        with pytest.raises(RuntimeError):
            await dispatcher.dispatch(job)

        assert job.status == JobStatus.FAILED
        assert job.error_message == "handler failed"

    @pytest.mark.asyncio
    async def test_unbound_dispatcher(self):
        with pytest.raises(ConfigurationError):
            await InlineDispatcher().dispatch(StageJob(document_id="doc-1", stage=PipelineStage.CHUNKING))


class TestStageJobQueue:
    @pytest.mark.asyncio
    async def test_jobs_run_on_consumers(self):
        queue = StageJobQueue(consumers=2)
        seen = []

        async def handler(job):
            await asyncio.sleep(0)
            seen.append(job.document_id)

        queue.bind(handler)
        async with queue:
            for i in range(4):
                await queue.dispatch(StageJob(document_id=f"doc-{i}", stage=PipelineStage.CHUNKING))
            await queue.join()

        assert sorted(seen) == ["doc-0", "doc-1", "doc-2", "doc-3"]
        assert queue.get_statistics()["jobs_completed"] == 4
        assert queue.get_statistics()["tracked_jobs"] == 0

    @pytest.mark.asyncio
    async def test_follow_up_jobs_are_joined(self):
        queue = StageJobQueue(consumers=1)
        seen = []

        async def handler(job):
            seen.append(job.stage)
            if job.stage == PipelineStage.CHUNKING:
                await queue.dispatch(StageJob(document_id=job.document_id, stage=PipelineStage.EMBEDDING))

        queue.bind(handler)
        async with queue:
            await queue.dispatch(StageJob(document_id="doc-1", stage=PipelineStage.CHUNKING))
            await queue.join()

        assert seen == [PipelineStage.CHUNKING, PipelineStage.EMBEDDING]

    @pytest.mark.asyncio
    async def test_failed_job_does_not_stop_consumer(self):
        queue = StageJobQueue(consumers=1)

        async def handler(job):
            if job.document_id == "bad":
                raise RuntimeError("broken")

        queue.bind(handler)
        bad = StageJob(document_id="bad", stage=PipelineStage.CHUNKING)
        good = StageJob(document_id="good", stage=PipelineStage.CHUNKING)
        async with queue:
            await queue.dispatch(bad)
            await queue.dispatch(good)
            await queue.join()

        assert bad.status == JobStatus.FAILED
        assert good.status == JobStatus.COMPLETED
        assert queue.get_statistics()["jobs_failed"] == 1
        assert queue.jobs == {}

    @pytest.mark.asyncio
    async def test_start_requires_handler(self):
        with pytest.raises(ConfigurationError):
            await StageJobQueue().start()

    @pytest.mark.asyncio
    async def test_full_queue(self):
        queue = StageJobQueue(max_size=1)
        await queue.dispatch(StageJob(document_id="a", stage=PipelineStage.CHUNKING))

        with pytest.raises(ConfigurationError):
            await queue.dispatch(StageJob(document_id="b", stage=PipelineStage.CHUNKING))

        assert list(queue.jobs) == [queue.queue[0].job_id]

    def test_consumers_must_be_positive(self):
        with pytest.raises(ValueError):
            StageJobQueue(consumers=0)


class TestStageRegistry:
    def test_stages_in_pipeline_order(self):
        registry = StageRegistry([NERStage(), EmbeddingStage(FakeEmbeddingClient()), ChunkingStage()])

        assert registry.stages() == [
            PipelineStage.CHUNKING,
            PipelineStage.EMBEDDING,
            PipelineStage.NER,
        ]
        assert PipelineStage.GRAPH_EXTRACTION not in registry
        assert len(registry) == 3

    def test_duplicate_registration(self):
        registry = StageRegistry([ChunkingStage()])

        with pytest.raises(ConfigurationError):
            registry.register(ChunkingStage())

    def test_missing_stage(self):
        with pytest.raises(ConfigurationError):
            StageRegistry().get(PipelineStage.EMBEDDING)
