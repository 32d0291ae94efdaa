"""
Data models for the kbingest pipeline.
"""

from .config_models import (
    EmbeddingProviderConfig,
    IngestionSettings,
    LLMProviderConfig,
    PipelineConfig,
)
from .document_models import (
    Document,
    DocumentStatus,
    GraphExtractionStatus,
    LastError,
    PipelineStage,
    ProcessingMetadata,
    Segment,
    StageCheckpoint,
)
from .errors import (
    ConfigurationError,
    ConflictError,
    DocumentNotFoundError,
    InvalidStateError,
    MalformedResponseError,
    PipelineError,
    ProviderError,
    RetryExhaustedError,
    TransientExternalError,
    ValidationError,
)
from .graph_models import (
    EdgeType,
    ExtractedEdge,
    ExtractedNode,
    ExtractionResult,
    GraphEdge,
    GraphNode,
    NodeType,
    ProviderResponse,
)

__all__ = [
    # Documents
    "Document",
    "DocumentStatus",
    "GraphExtractionStatus",
    "LastError",
    "PipelineStage",
    "ProcessingMetadata",
    "Segment",
    "StageCheckpoint",
    # Graph
    "EdgeType",
    "ExtractedEdge",
    "ExtractedNode",
    "ExtractionResult",
    "GraphEdge",
    "GraphNode",
    "NodeType",
    "ProviderResponse",
    # Configuration
    "EmbeddingProviderConfig",
    "IngestionSettings",
    "LLMProviderConfig",
    "PipelineConfig",
    # Errors
    "ConfigurationError",
    "ConflictError",
    "DocumentNotFoundError",
    "InvalidStateError",
    "MalformedResponseError",
    "PipelineError",
    "ProviderError",
    "RetryExhaustedError",
    "TransientExternalError",
    "ValidationError",
]
