"""
Exception hierarchy for the document processing pipeline.

Unit-level errors (one segment) are recorded into processing metadata and do
not halt sibling units; document-level errors halt the current stage.
"""

from typing import Optional


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, unit_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.unit_id = unit_id


class TransientExternalError(PipelineError):
    """Timeout, rate limit or 5xx from an external capability. Retryable."""

    def __init__(
        self,
        message: str,
        unit_id: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, unit_id)
        self.status_code = status_code


class MalformedResponseError(PipelineError):
    """Extraction output failed JSON parsing or schema validation. Not retried."""

    def __init__(
        self,
        message: str,
        unit_id: Optional[str] = None,
        raw_content: Optional[str] = None,
    ):
        super().__init__(message, unit_id)
        self.raw_content = raw_content


class ProviderError(PipelineError):
    """Non-retryable error reported by an embedding or LLM provider."""

    def __init__(
        self,
        message: str,
        unit_id: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, unit_id)
        self.status_code = status_code


class ValidationError(PipelineError):
    """Bad configuration or unparsable content. Fatal for the whole document."""


class ConflictError(PipelineError):
    """Duplicate natural key on insert. Absorbed by merging into the existing row."""

    def __init__(self, message: str, key: Optional[tuple] = None):
        super().__init__(message)
        self.key = key


class InvalidStateError(PipelineError):
    """Requested transition or operation is not allowed in the current status."""

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message)
        self.current_status = current_status


class RetryExhaustedError(PipelineError):
    """All attempts of a retryable operation failed."""

    def __init__(
        self,
        message: str,
        attempts: int,
        last_error: Optional[BaseException] = None,
        unit_id: Optional[str] = None,
    ):
        super().__init__(message, unit_id)
        self.attempts = attempts
        self.last_error = last_error


class DocumentNotFoundError(PipelineError):
    """Document id does not exist in the document store."""


class ConfigurationError(PipelineError):
    """Configuration file or environment values are invalid."""
