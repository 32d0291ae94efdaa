"""
Shared pipeline infrastructure: configuration, errors, retries, concurrency
and progress notification.
"""

from .concurrent_processor import ProcessingStats, UnitOutcome, WorkerPool
from .config_manager import ConfigManager
from .error_classifier import ErrorCategory, ErrorClassification, ErrorClassifier
from .logging_config import configure_logging
from .progress_reporter import ProgressEvent, ProgressEventType, ProgressNotifier
from .retry_policy import RetryPolicy

__all__ = [
    # Configuration
    "ConfigManager",
    "configure_logging",
    # Error handling
    "ErrorCategory",
    "ErrorClassification",
    "ErrorClassifier",
    "RetryPolicy",
    # Concurrency
    "ProcessingStats",
    "UnitOutcome",
    "WorkerPool",
    # Progress
    "ProgressEvent",
    "ProgressEventType",
    "ProgressNotifier",
]
