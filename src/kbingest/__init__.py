"""
kbingest - Knowledge-base document processing pipeline

Resumable asynchronous pipeline that chunks documents, embeds segments and
optionally extracts entities and a deduplicated knowledge graph.
"""

__version__ = "1.0.0"

from .bootstrap import PipelineRuntime, create_pipeline
from .core.config_manager import ConfigManager
from .ingestion.pipeline import PipelineOrchestrator
from .models.config_models import IngestionSettings, PipelineConfig
from .models.document_models import Document, DocumentStatus, PipelineStage

__all__ = [
    "ConfigManager",
    "IngestionSettings",
    "PipelineConfig",
    "Document",
    "DocumentStatus",
    "PipelineStage",
    "PipelineOrchestrator",
    "PipelineRuntime",
    "create_pipeline",
]
