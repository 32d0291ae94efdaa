"""
Bounded retry policy for external calls.

Every embedding, NER and extraction call goes through a RetryPolicy:
a per-attempt timeout, exponential backoff between attempts and a hard cap
on the total number of attempts. Only retryable errors (see
ErrorClassifier) consume another attempt; anything else propagates at once.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..models.config_models import PipelineConfig
from ..models.errors import RetryExhaustedError, TransientExternalError
from .error_classifier import ErrorClassifier

logger = logging.getLogger(__name__)

RetryCallback = Callable[[int, BaseException], None]


@dataclass
class RetryPolicy:
    """
    Retry configuration plus the loop that applies it.

    Attributes:
        max_attempts: Total attempts, including the first one
        backoff_base: Delay in seconds before the second attempt
        backoff_max: Ceiling for any single delay
        attempt_timeout: Per-attempt timeout in seconds, None to disable
        sleep: Awaitable used between attempts, replaced in tests
    """

    max_attempts: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 30.0
    attempt_timeout: Optional[float] = 60.0
    classifier: ErrorClassifier = field(default_factory=ErrorClassifier)
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        classifier: Optional[ErrorClassifier] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ) -> "RetryPolicy":
        """Build a policy from pipeline configuration."""
        return cls(
            max_attempts=config.max_retries,
            backoff_base=config.retry_backoff_base_ms / 1000.0,
            backoff_max=config.retry_backoff_max_ms / 1000.0,
            attempt_timeout=config.external_call_timeout_seconds,
            classifier=classifier or ErrorClassifier(),
            sleep=sleep or asyncio.sleep,
        )

    def backoff_schedule(self) -> List[float]:
        """Delays applied after each failed attempt except the last."""
        return [
            min(self.backoff_base * (2 ** i), self.backoff_max)
            for i in range(self.max_attempts - 1)
        ]

    async def run(
        self,
        operation: Callable[[], Awaitable[Any]],
        unit_id: Optional[str] = None,
        on_retry: Optional[RetryCallback] = None,
    ) -> Any:
        """
        Run an operation under this policy.

        Args:
            operation: Zero-argument coroutine factory, invoked once per attempt
            unit_id: Identifier reported in errors and logs
            on_retry: Called with (attempt_number, error) before each backoff

        Returns:
            The operation's result

        Raises:
            RetryExhaustedError: All attempts failed with retryable errors
            Exception: The first non-retryable error, unchanged
        """

        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception()
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                f"Attempt {retry_state.attempt_number}/{self.max_attempts} failed"
                f" for {unit_id or 'call'}: {error}. Retrying in {delay:.2f}s"
            )
            if on_retry:
                on_retry(retry_state.attempt_number, error)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            retry=retry_if_exception(self._should_retry),
            before_sleep=before_sleep,
            sleep=self.sleep,
        )

        try:
            return await retrying(self._attempt, operation, unit_id)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            attempts = e.last_attempt.attempt_number
            logger.error(
                f"Giving up on {unit_id or 'call'} after {attempts} attempts: {last_error}"
            )
            raise RetryExhaustedError(
                f"Failed after {attempts} attempts: {last_error}",
                attempts=attempts,
                last_error=last_error,
                unit_id=unit_id,
            ) from last_error

    async def _attempt(
        self, operation: Callable[[], Awaitable[Any]], unit_id: Optional[str]
    ) -> Any:
        if self.attempt_timeout is None:
            return await operation()

        try:
            return await asyncio.wait_for(operation(), timeout=self.attempt_timeout)
        except asyncio.TimeoutError as e:
            raise TransientExternalError(
                f"External call timed out after {self.attempt_timeout}s",
                unit_id=unit_id,
            ) from e

    def _should_retry(self, error: BaseException) -> bool:
        if not isinstance(error, Exception):
            return False
        return self.classifier.is_retryable(error)
