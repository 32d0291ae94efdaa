"""
Unit tests for document, checkpoint and graph models.
"""

from datetime import datetime

from kbingest.models.document_models import (
    Document,
    DocumentStatus,
    LastError,
    PipelineStage,
    ProcessingMetadata,
    Segment,
    StageCheckpoint,
    content_hash,
    segment_id_for,
)
from kbingest.models.graph_models import EdgeType, GraphEdge, GraphNode, NodeType


class TestStatuses:
    def test_terminal_and_recoverable(self):
        assert DocumentStatus.COMPLETED.is_terminal
        assert DocumentStatus.CANCELLED.is_terminal
        assert DocumentStatus.ERROR.is_recoverable
        assert DocumentStatus.PAUSED.is_recoverable
        assert not DocumentStatus.EMBEDDING.is_terminal
        assert not DocumentStatus.EMBEDDING.is_recoverable

    def test_stage_statuses(self):
        assert PipelineStage.CHUNKING.active_status == DocumentStatus.CHUNKING
        assert PipelineStage.CHUNKING.done_status == DocumentStatus.CHUNKED
        assert PipelineStage.EMBEDDING.done_status == DocumentStatus.EMBEDDED
        assert PipelineStage.NER.active_status == DocumentStatus.NER_PROCESSING
        assert PipelineStage.GRAPH_EXTRACTION.done_status is None


class TestProcessingMetadata:
    def test_checkpoint_completion(self):
        assert not StageCheckpoint().is_complete
        assert StageCheckpoint(segments_processed=3, total_segments=3).is_complete
        assert not StageCheckpoint(
            segments_processed=3, total_segments=3, failed_segment_ids=["seg-1"]
        ).is_complete

    def test_roundtrip(self):
        metadata = ProcessingMetadata(current_stage=PipelineStage.NER, resume_count=2)
        metadata.ner.started_at = datetime(2024, 5, 1, 10, 30)
        metadata.ner.segments_processed = 4
        metadata.last_error = LastError(stage="ner", message="boom", category="unknown")

        restored = ProcessingMetadata.from_dict(metadata.to_dict())

        assert restored.current_stage == PipelineStage.NER
        assert restored.ner.started_at == datetime(2024, 5, 1, 10, 30)
        assert restored.ner.segments_processed == 4
        assert restored.last_error.category == "unknown"
        assert restored.resume_count == 2

    def test_empty_metadata(self):
        assert ProcessingMetadata.from_dict(None).current_stage is None
        assert ProcessingMetadata.from_dict({}).embedding.total_segments == 0

    def test_reset_checkpoint(self):
        metadata = ProcessingMetadata()
        metadata.embedding.segments_processed = 7

        fresh = metadata.reset_checkpoint(PipelineStage.EMBEDDING)

        assert fresh.segments_processed == 0
        assert metadata.checkpoint(PipelineStage.EMBEDDING) is fresh

    def test_document_to_dict(self):
        document = Document(id="doc-1", dataset_id="ds", content="secret text", name="a.md")

        data = document.to_dict()

        assert data["indexing_status"] == "waiting"
        assert "content" not in data
        assert data["processing_metadata"]["current_stage"] is None


class TestSegmentIdentity:
    def test_segment_ids_are_deterministic(self):
        digest = content_hash("hello")

        assert segment_id_for("doc-1", 0, digest) == segment_id_for("doc-1", 0, digest)
        assert segment_id_for("doc-1", 0, digest) != segment_id_for("doc-1", 1, digest)

    def test_hash_filled_in(self):
        segment = Segment(id="s", document_id="d", position=0, content="hello", word_count=1, token_count=1)

        assert segment.content_hash == content_hash("hello")
        assert not segment.is_embedded
        assert segment.to_dict()["graph_extraction_status"] == "waiting"


class TestGraphModels:
    def test_natural_keys(self):
        node = GraphNode(dataset_id="ds", node_type=NodeType.PERSON, label="Jane")
        edge = GraphEdge(
            dataset_id="ds", source_node_id="a", target_node_id="b", edge_type=EdgeType.MENTIONS
        )

        assert node.natural_key == ("ds", "person", "Jane")
        assert edge.natural_key == ("ds", "a", "b", "mentions")
        assert node.to_dict()["node_type"] == "person"
        assert edge.to_dict()["weight"] is None
