"""
Unit tests for the deterministic chunking engine.
"""

import pytest

from fakes import long_text, word_count
from kbingest.ingestion.chunking_engine import ChunkingEngine
from kbingest.models.document_models import Document
from kbingest.models.errors import ValidationError


@pytest.fixture
def engine():
    return ChunkingEngine(chunk_size=100, chunk_overlap=30, token_counter=word_count)


class TestChunkingEngine:
    """Test boundary selection and overlap."""

    def test_invalid_sizes_rejected(self):
        with pytest.raises(ValidationError):
            ChunkingEngine(chunk_size=0)

        with pytest.raises(ValidationError):
            ChunkingEngine(chunk_size=100, chunk_overlap=100)

        with pytest.raises(ValidationError):
            ChunkingEngine(chunk_size=100, chunk_overlap=-1)

    def test_short_text_is_single_chunk(self, engine):
        assert engine.split_text("  A short note.  ") == ["A short note."]

    def test_prefers_paragraph_break(self):
        engine = ChunkingEngine(chunk_size=40, chunk_overlap=0, token_counter=word_count)
        text = "First paragraph here.\n\nSecond paragraph that is longer."

        assert engine.split_text(text) == [
            "First paragraph here.",
            "Second paragraph that is longer.",
        ]

    def test_hard_cut_without_separators(self):
        engine = ChunkingEngine(chunk_size=100, chunk_overlap=0, token_counter=word_count)

        chunks = engine.split_text("a" * 250)

        assert [len(c) for c in chunks] == [100, 100, 50]

    def test_overlap_starts_on_word_boundary(self, engine):
        text = " ".join(f"word{i}" for i in range(100))

        chunks = engine.split_text(text)

        assert len(chunks) > 1
        for previous, current in zip(chunks, chunks[1:]):
            assert len(previous) <= 100
            assert current.split()[0] in previous.split()

    def test_identical_input_gives_identical_segments(self, engine):
        document = Document(id="doc-1", dataset_id="ds", content=long_text())

        first = engine.create_segments(document)
        second = engine.create_segments(document)

        assert [s.id for s in first] == [s.id for s in second]
        assert [s.content for s in first] == [s.content for s in second]

    def test_segments_carry_positions_and_counts(self, engine):
        document = Document(id="doc-1", dataset_id="ds", content=long_text())

        segments = engine.create_segments(document)

        assert [s.position for s in segments] == list(range(len(segments)))
        for segment in segments:
            assert segment.document_id == "doc-1"
            assert segment.word_count == len(segment.content.split())
            assert segment.token_count == segment.word_count
            assert len(segment.content_hash) == 16

    def test_segment_ids_differ_between_documents(self, engine):
        one = engine.create_segments(Document(id="doc-1", dataset_id="ds", content="Same text."))
        two = engine.create_segments(Document(id="doc-2", dataset_id="ds", content="Same text."))

        assert one[0].id != two[0].id

    def test_empty_content_rejected(self, engine):
        with pytest.raises(ValidationError):
            engine.create_segments(Document(id="doc-1", dataset_id="ds", content=" \n "))

    def test_statistics(self, engine):
        stats = engine.get_chunking_statistics()

        assert stats["chunk_size"] == 100
        assert stats["chunk_overlap"] == 30
        assert stats["separators"][0] == "\n\n"
