"""
Error classification for external calls made by the pipeline.

Maps arbitrary exceptions (typed pipeline errors, httpx failures, asyncio
timeouts, status codes embedded in messages) onto an error category and a
retryable flag consumed by the retry policy.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import httpx

from ..models.errors import (
    ConflictError,
    InvalidStateError,
    MalformedResponseError,
    ProviderError,
    TransientExternalError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """Error categories recognised by the pipeline."""

    TRANSIENT_EXTERNAL = "transient_external"
    MALFORMED_RESPONSE = "malformed_response"
    PROVIDER = "provider"
    VALIDATION = "validation"
    CONFLICT = "conflict"
    PROGRAMMING = "programming"
    UNKNOWN = "unknown"


RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


@dataclass
class ErrorClassification:
    """Outcome of classifying one exception."""

    category: ErrorCategory
    retryable: bool
    reason: str = ""
    status_code: Optional[int] = None


@dataclass
class ErrorPattern:
    """Pattern for matching and classifying errors."""

    error_types: Tuple[type, ...]
    keywords: List[str]
    category: ErrorCategory
    retryable: bool

    def matches_type(self, error: BaseException) -> bool:
        return bool(self.error_types) and isinstance(error, self.error_types)

    def matches_keywords(self, error: BaseException) -> bool:
        error_message = str(error).lower()
        return any(keyword in error_message for keyword in self.keywords)


def status_code_of(error: BaseException) -> Optional[int]:
    """Extract an HTTP status code from an exception, if it carries one."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    return getattr(error, "status_code", None)


class ErrorClassifier:
    """
    Classifies errors into categories and decides whether they are retryable.

    Patterns are checked by exception type first, then by message keywords.
    Built-in programming errors are never retried. Other errors that match
    nothing are treated as unknown and retryable.
    """

    def __init__(self) -> None:
        self.error_patterns = self._create_error_patterns()
        self.error_statistics: Dict[str, Any] = {
            "total_errors": 0,
            "by_category": {},
        }

    def _create_error_patterns(self) -> List[ErrorPattern]:
        return [
            ErrorPattern(
                error_types=(TransientExternalError,),
                keywords=[],
                category=ErrorCategory.TRANSIENT_EXTERNAL,
                retryable=True,
            ),
            ErrorPattern(
                error_types=(MalformedResponseError, json.JSONDecodeError),
                keywords=[],
                category=ErrorCategory.MALFORMED_RESPONSE,
                retryable=False,
            ),
            ErrorPattern(
                error_types=(ProviderError,),
                keywords=[],
                category=ErrorCategory.PROVIDER,
                retryable=False,
            ),
            ErrorPattern(
                error_types=(ValidationError, InvalidStateError),
                keywords=[],
                category=ErrorCategory.VALIDATION,
                retryable=False,
            ),
            ErrorPattern(
                error_types=(ConflictError,),
                keywords=[],
                category=ErrorCategory.CONFLICT,
                retryable=False,
            ),
            # Network and timeout errors
            ErrorPattern(
                error_types=(
                    httpx.TimeoutException,
                    httpx.ConnectError,
                    httpx.RemoteProtocolError,
                    asyncio.TimeoutError,
                    ConnectionError,
                ),
                keywords=[
                    "timeout",
                    "timed out",
                    "rate limit",
                    "too many requests",
                    "connection reset",
                    "service unavailable",
                    "bad gateway",
                    "internal server error",
                ],
                category=ErrorCategory.TRANSIENT_EXTERNAL,
                retryable=True,
            ),
            ErrorPattern(
                error_types=(),
                keywords=["unauthorized", "forbidden", "invalid api key", "model not found"],
                category=ErrorCategory.PROVIDER,
                retryable=False,
            ),
            ErrorPattern(
                error_types=(),
                keywords=["invalid json", "malformed", "schema"],
                category=ErrorCategory.MALFORMED_RESPONSE,
                retryable=False,
            ),
            # Programming errors
            ErrorPattern(
                error_types=(
                    TypeError,
                    AttributeError,
                    KeyError,
                    IndexError,
                    NameError,
                    AssertionError,
                    NotImplementedError,
                    ZeroDivisionError,
                    RecursionError,
                ),
                keywords=[],
                category=ErrorCategory.PROGRAMMING,
                retryable=False,
            ),
        ]

    def classify(self, error: BaseException) -> ErrorClassification:
        """
        Classify an exception.

        Args:
            error: Exception raised by an external call or a stage unit

        Returns:
            Category, retryable flag and a short reason
        """
        self.error_statistics["total_errors"] += 1

        classification = self._classify_status(error) or self._classify_patterns(error)

        by_category = self.error_statistics["by_category"]
        key = classification.category.value
        by_category[key] = by_category.get(key, 0) + 1

        logger.debug(
            f"Error classified: category={classification.category.value}, "
            f"retryable={classification.retryable}, error={type(error).__name__}"
        )
        return classification

    def is_retryable(self, error: BaseException) -> bool:
        """Whether the error should consume another attempt."""
        return self.classify(error).retryable

    def _classify_status(self, error: BaseException) -> Optional[ErrorClassification]:
        # Typed pipeline errors decide for themselves, whatever their status code
        if not isinstance(error, httpx.HTTPStatusError):
            return None

        status_code = status_code_of(error)
        if status_code in RETRYABLE_STATUS_CODES:
            return ErrorClassification(
                category=ErrorCategory.TRANSIENT_EXTERNAL,
                retryable=True,
                reason=f"HTTP {status_code}",
                status_code=status_code,
            )
        return ErrorClassification(
            category=ErrorCategory.PROVIDER,
            retryable=False,
            reason=f"HTTP {status_code}",
            status_code=status_code,
        )

    def _classify_patterns(self, error: BaseException) -> ErrorClassification:
        for pattern in self.error_patterns:
            if pattern.matches_type(error):
                return self._from_pattern(pattern, error, "type")

        for pattern in self.error_patterns:
            if pattern.matches_keywords(error):
                return self._from_pattern(pattern, error, "message")

        return ErrorClassification(
            category=ErrorCategory.UNKNOWN,
            retryable=True,
            reason=f"Unclassified {type(error).__name__}",
            status_code=status_code_of(error),
        )

    def _from_pattern(
        self, pattern: ErrorPattern, error: BaseException, matched_on: str
    ) -> ErrorClassification:
        return ErrorClassification(
            category=pattern.category,
            retryable=pattern.retryable,
            reason=f"{type(error).__name__} matched on {matched_on}",
            status_code=status_code_of(error),
        )

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "total_errors": self.error_statistics["total_errors"],
            "by_category": dict(self.error_statistics["by_category"]),
        }
