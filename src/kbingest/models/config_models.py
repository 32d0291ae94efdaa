"""
Configuration models for the ingestion pipeline.

Options are accepted in camelCase (``chunkSize``) or snake_case
(``chunk_size``).
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PipelineConfig(_CamelModel):
    """Chunking, concurrency and retry settings."""

    chunk_size: int = Field(default=1000, ge=1, description="Target segment size in characters")
    chunk_overlap: int = Field(default=200, ge=0, description="Overlap between segments in characters")
    embedding_batch_size: int = Field(default=16, ge=1, le=2048, description="Segments per embedding batch")
    worker_pool_size: int = Field(default=4, ge=1, le=64, description="Concurrent external calls")
    max_retries: int = Field(default=3, ge=1, le=20, description="Total attempts per external call")
    retry_backoff_base_ms: int = Field(default=500, ge=0, description="Backoff before the second attempt")
    retry_backoff_max_ms: int = Field(default=30000, ge=0, description="Backoff ceiling")
    external_call_timeout_seconds: float = Field(default=60.0, gt=0, description="Per-attempt timeout")
    ner_enabled: bool = Field(default=False, description="Run the NER stage")
    graph_extraction_enabled: bool = Field(default=False, description="Run the graph extraction stage")
    progress_coalesce_every: int = Field(default=1, ge=1, description="Emit every Nth progress event")
    tokenizer_model: str = Field(default="cl100k_base", description="tiktoken encoding name")
    entity_aliases: Dict[str, List[str]] = Field(
        default_factory=dict, description="Canonical entity name -> alternative spellings"
    )

    @model_validator(mode="after")
    def validate_sizes(self):
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError(
                f"chunkOverlap ({self.chunk_overlap}) must be smaller than chunkSize ({self.chunk_size})"
            )
        if self.retry_backoff_max_ms < self.retry_backoff_base_ms:
            raise ValueError("retryBackoffMaxMs cannot be smaller than retryBackoffBaseMs")
        return self


class EmbeddingProviderConfig(_CamelModel):
    """OpenAI-compatible embedding endpoint."""

    base_url: str = Field(default="https://api.openai.com/v1", description="API base URL")
    api_key: Optional[str] = Field(default=None, description="Bearer token")
    model: str = Field(default="text-embedding-3-small", description="Embedding model")
    dimensions: Optional[int] = Field(default=None, ge=1, description="Requested vector size")

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v):
        return v.rstrip("/")


class LLMProviderConfig(_CamelModel):
    """Chat completion endpoint used for graph extraction."""

    provider: str = Field(default="openai", description="Provider id selecting the response normalizer")
    base_url: str = Field(default="https://api.openai.com/v1", description="API base URL")
    api_key: Optional[str] = Field(default=None, description="Bearer token")
    model: str = Field(default="gpt-4o-mini", description="Model name")
    temperature: float = Field(default=0.0, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, ge=1)

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v):
        supported = ["openai", "openrouter", "ollama", "dashscope", "raw"]
        v = v.lower()
        if v not in supported:
            raise ValueError(f"Unsupported provider {v}. Must be one of: {supported}")
        return v

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v):
        return v.rstrip("/")


class IngestionSettings(_CamelModel):
    """Complete configuration for the ingestion pipeline."""

    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    embedding: EmbeddingProviderConfig = Field(default_factory=EmbeddingProviderConfig)
    llm: LLMProviderConfig = Field(default_factory=LLMProviderConfig)
    database_path: Optional[str] = Field(default=None, description="SQLite file, in-memory stores when unset")
    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()
