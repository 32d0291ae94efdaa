"""
Document and segment data models with processing checkpoints.

The processing metadata is the resumability contract: per-stage counters,
failed unit ids and the last error let a stage restart without redoing
completed units.
"""

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


SEGMENT_NAMESPACE = uuid.UUID("6f1c3f52-9a4e-4c1b-8d57-3c5f0c2b7e11")


class DocumentStatus(Enum):
    """Document indexing status."""

    WAITING = "waiting"
    CHUNKING = "chunking"
    CHUNKED = "chunked"
    EMBEDDING = "embedding"
    EMBEDDED = "embedded"
    NER_PROCESSING = "ner_processing"
    GRAPH_EXTRACTION_PROCESSING = "graph_extraction_processing"
    COMPLETED = "completed"
    ERROR = "error"
    PAUSED = "paused"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (DocumentStatus.COMPLETED, DocumentStatus.CANCELLED)

    @property
    def is_recoverable(self) -> bool:
        return self in (DocumentStatus.ERROR, DocumentStatus.PAUSED)


class PipelineStage(Enum):
    """Processing stages in dispatch order."""

    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    NER = "ner"
    GRAPH_EXTRACTION = "graph_extraction"

    @property
    def active_status(self) -> DocumentStatus:
        """Status held by the document while this stage runs."""
        return _STAGE_ACTIVE_STATUS[self]

    @property
    def done_status(self) -> Optional[DocumentStatus]:
        """Terminal sub-state committed when the stage finishes, if any."""
        return _STAGE_DONE_STATUS.get(self)


_STAGE_ACTIVE_STATUS = {
    PipelineStage.CHUNKING: DocumentStatus.CHUNKING,
    PipelineStage.EMBEDDING: DocumentStatus.EMBEDDING,
    PipelineStage.NER: DocumentStatus.NER_PROCESSING,
    PipelineStage.GRAPH_EXTRACTION: DocumentStatus.GRAPH_EXTRACTION_PROCESSING,
}

_STAGE_DONE_STATUS = {
    PipelineStage.CHUNKING: DocumentStatus.CHUNKED,
    PipelineStage.EMBEDDING: DocumentStatus.EMBEDDED,
}


class GraphExtractionStatus(Enum):
    """Per-segment graph extraction status, independent of the document."""

    WAITING = "waiting"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class StageCheckpoint:
    """Progress counters for one stage of one document."""

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    segments_processed: int = 0
    total_segments: int = 0
    failed_segment_ids: List[str] = field(default_factory=list)
    retry_count: int = 0
    nodes_created: int = 0
    edges_created: int = 0

    @property
    def is_complete(self) -> bool:
        return (
            self.total_segments > 0
            and self.segments_processed >= self.total_segments
            and not self.failed_segment_ids
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "segments_processed": self.segments_processed,
            "total_segments": self.total_segments,
            "failed_segment_ids": list(self.failed_segment_ids),
            "retry_count": self.retry_count,
            "nodes_created": self.nodes_created,
            "edges_created": self.edges_created,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StageCheckpoint":
        return cls(
            started_at=_parse_dt(data.get("started_at")),
            completed_at=_parse_dt(data.get("completed_at")),
            segments_processed=data.get("segments_processed", 0),
            total_segments=data.get("total_segments", 0),
            failed_segment_ids=list(data.get("failed_segment_ids", [])),
            retry_count=data.get("retry_count", 0),
            nodes_created=data.get("nodes_created", 0),
            edges_created=data.get("edges_created", 0),
        )


@dataclass
class LastError:
    """Most recent stage failure recorded on a document."""

    stage: str
    message: str
    unit_id: Optional[str] = None
    retry_count: int = 0
    category: Optional[str] = None
    occurred_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "message": self.message,
            "unit_id": self.unit_id,
            "retry_count": self.retry_count,
            "category": self.category,
            "occurred_at": self.occurred_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LastError":
        return cls(
            stage=data["stage"],
            message=data["message"],
            unit_id=data.get("unit_id"),
            retry_count=data.get("retry_count", 0),
            category=data.get("category"),
            occurred_at=_parse_dt(data.get("occurred_at")) or datetime.now(),
        )


@dataclass
class ProcessingMetadata:
    """Checkpoint state persisted alongside the document."""

    current_stage: Optional[PipelineStage] = None
    chunking: StageCheckpoint = field(default_factory=StageCheckpoint)
    embedding: StageCheckpoint = field(default_factory=StageCheckpoint)
    ner: StageCheckpoint = field(default_factory=StageCheckpoint)
    graph_extraction: StageCheckpoint = field(default_factory=StageCheckpoint)
    last_error: Optional[LastError] = None
    resume_count: int = 0
    cancel_requested: bool = False
    pause_requested: bool = False

    def checkpoint(self, stage: PipelineStage) -> StageCheckpoint:
        """Get the checkpoint for a stage."""
        return getattr(self, stage.value)

    def reset_checkpoint(self, stage: PipelineStage) -> StageCheckpoint:
        """Replace a stage checkpoint with a fresh one."""
        fresh = StageCheckpoint()
        setattr(self, stage.value, fresh)
        return fresh

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_stage": self.current_stage.value if self.current_stage else None,
            "chunking": self.chunking.to_dict(),
            "embedding": self.embedding.to_dict(),
            "ner": self.ner.to_dict(),
            "graph_extraction": self.graph_extraction.to_dict(),
            "last_error": self.last_error.to_dict() if self.last_error else None,
            "resume_count": self.resume_count,
            "cancel_requested": self.cancel_requested,
            "pause_requested": self.pause_requested,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ProcessingMetadata":
        if not data:
            return cls()

        stage = data.get("current_stage")
        last_error = data.get("last_error")
        return cls(
            current_stage=PipelineStage(stage) if stage else None,
            chunking=StageCheckpoint.from_dict(data.get("chunking") or {}),
            embedding=StageCheckpoint.from_dict(data.get("embedding") or {}),
            ner=StageCheckpoint.from_dict(data.get("ner") or {}),
            graph_extraction=StageCheckpoint.from_dict(
                data.get("graph_extraction") or {}
            ),
            last_error=LastError.from_dict(last_error) if last_error else None,
            resume_count=data.get("resume_count", 0),
            cancel_requested=data.get("cancel_requested", False),
            pause_requested=data.get("pause_requested", False),
        )


@dataclass
class Document:
    """One ingested artifact owned by the pipeline orchestrator."""

    id: str
    dataset_id: str
    content: str
    name: str = ""
    indexing_status: DocumentStatus = DocumentStatus.WAITING
    processing_metadata: ProcessingMetadata = field(default_factory=ProcessingMetadata)
    error: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "dataset_id": self.dataset_id,
            "name": self.name,
            "indexing_status": self.indexing_status.value,
            "processing_metadata": self.processing_metadata.to_dict(),
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


def content_hash(content: str) -> str:
    """Short SHA-256 digest of segment content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


def segment_id_for(document_id: str, position: int, digest: str) -> str:
    """Deterministic segment id so re-chunking yields identical ids."""
    return str(uuid.uuid5(SEGMENT_NAMESPACE, f"{document_id}:{position}:{digest}"))


@dataclass
class Segment:
    """A contiguous chunk of a document, the atomic unit of embedding and extraction."""

    id: str
    document_id: str
    position: int
    content: str
    word_count: int
    token_count: int
    content_hash: str = ""
    embedding: Optional[List[float]] = None
    embedding_error: Optional[str] = None
    entities: Optional[List[str]] = None
    ner_error: Optional[str] = None
    graph_extraction_status: GraphExtractionStatus = GraphExtractionStatus.WAITING
    graph_extraction_error: Optional[str] = None

    def __post_init__(self):
        if not self.content_hash:
            self.content_hash = content_hash(self.content)

    @property
    def is_embedded(self) -> bool:
        return self.embedding is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "position": self.position,
            "content": self.content,
            "word_count": self.word_count,
            "token_count": self.token_count,
            "content_hash": self.content_hash,
            "embedding": self.embedding,
            "embedding_error": self.embedding_error,
            "entities": self.entities,
            "ner_error": self.ner_error,
            "graph_extraction_status": self.graph_extraction_status.value,
            "graph_extraction_error": self.graph_extraction_error,
        }
