"""
Translation of httpx responses and failures into pipeline errors.
"""

import logging
from typing import Any, Optional

import httpx

from ..models.errors import MalformedResponseError, ProviderError, TransientExternalError
from .error_classifier import RETRYABLE_STATUS_CODES

logger = logging.getLogger(__name__)


def check_response(response: httpx.Response, service: str, unit_id: Optional[str] = None) -> None:
    """
    Raise the pipeline error matching a non-2xx response.

    Raises:
        TransientExternalError: Rate limit, timeout or server error
        ProviderError: Any other 4xx
    """
    status = response.status_code
    if status < 400:
        return

    body = response.text[:200]
    if status in RETRYABLE_STATUS_CODES or status >= 500:
        retry_after = response.headers.get("retry-after")
        if status == 429 and retry_after:
            logger.warning(f"{service} rate limited, retry-after {retry_after}s")
        raise TransientExternalError(
            f"{service} returned {status}: {body}", unit_id=unit_id, status_code=status
        )

    if status == 401:
        raise ProviderError(
            f"{service} authentication failed - check API key", unit_id=unit_id, status_code=status
        )
    raise ProviderError(f"{service} returned {status}: {body}", unit_id=unit_id, status_code=status)


def translate_request_error(
    error: httpx.RequestError, service: str, unit_id: Optional[str] = None
) -> TransientExternalError:
    """Connection-level failures are always worth retrying."""
    return TransientExternalError(f"{service} request failed: {error!r}", unit_id=unit_id)


def decode_json(response: httpx.Response, service: str, unit_id: Optional[str] = None) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise MalformedResponseError(
            f"{service} returned invalid JSON: {e}",
            unit_id=unit_id,
            raw_content=response.text[:500],
        ) from e
