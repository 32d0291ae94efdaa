"""
Stage executor contract and the shared per-segment execution loop.

Executors never write document status. They do their work, keep the
stage checkpoint current through StageContext, and return a StageOutcome
that the orchestrator turns into a status transition.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from ...core.concurrent_processor import UnitOutcome, WorkerPool
from ...core.error_classifier import ErrorClassifier
from ...core.progress_reporter import ProgressNotifier
from ...core.retry_policy import RetryPolicy
from ...models.config_models import PipelineConfig
from ...models.document_models import (
    Document,
    PipelineStage,
    ProcessingMetadata,
    Segment,
    StageCheckpoint,
)
from ...models.errors import PipelineError, RetryExhaustedError
from ...storage.base import DocumentStore, SegmentStore

logger = logging.getLogger(__name__)


class StopReason(Enum):
    CANCEL = "cancel"
    PAUSE = "pause"


class CancellationToken:
    """Cooperative stop flag consulted between units."""

    def __init__(self):
        self._reason: Optional[StopReason] = None

    def request(self, reason: StopReason) -> None:
        # First request wins; a pause never downgrades a cancel
        if self._reason is None:
            self._reason = reason

    @property
    def requested(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> Optional[StopReason]:
        return self._reason


class OutcomeStatus(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass
class StageOutcome:
    """What a stage run produced, as reported to the orchestrator."""

    stage: PipelineStage
    status: OutcomeStatus
    processed: int = 0
    total: int = 0
    failed_unit_ids: List[str] = field(default_factory=list)
    error_message: Optional[str] = None
    error_unit_id: Optional[str] = None
    error_category: Optional[str] = None
    retry_count: int = 0
    nodes_created: int = 0
    edges_created: int = 0

    @property
    def completed(self) -> bool:
        return self.status == OutcomeStatus.COMPLETED

    @classmethod
    def failed(
        cls,
        stage: PipelineStage,
        message: str,
        unit_id: Optional[str] = None,
        category: Optional[str] = None,
        checkpoint: Optional[StageCheckpoint] = None,
    ) -> "StageOutcome":
        outcome = cls(
            stage=stage,
            status=OutcomeStatus.FAILED,
            error_message=message,
            error_unit_id=unit_id,
            error_category=category,
        )
        if checkpoint:
            outcome.processed = checkpoint.segments_processed
            outcome.total = checkpoint.total_segments
            outcome.failed_unit_ids = list(checkpoint.failed_segment_ids)
            outcome.retry_count = checkpoint.retry_count
        return outcome


@dataclass
class StageContext:
    """Everything a stage executor needs for one run over one document."""

    document: Document
    stage: PipelineStage
    config: PipelineConfig
    document_store: DocumentStore
    segment_store: SegmentStore
    worker_pool: WorkerPool
    retry_policy: RetryPolicy
    token: CancellationToken
    notifier: Optional[ProgressNotifier] = None
    force: bool = False
    classifier: ErrorClassifier = field(default_factory=ErrorClassifier)

    @property
    def document_id(self) -> str:
        return self.document.id

    def should_stop(self) -> bool:
        return self.token.requested

    async def begin(self, total: int, already_done: int = 0) -> StageCheckpoint:
        """Reset the checkpoint counters for a (re)started stage run."""

        def mutate(metadata: ProcessingMetadata) -> None:
            if self.force:
                checkpoint = metadata.reset_checkpoint(self.stage)
            else:
                checkpoint = metadata.checkpoint(self.stage)
            checkpoint.started_at = datetime.now()
            checkpoint.completed_at = None
            checkpoint.total_segments = total
            checkpoint.segments_processed = already_done
            checkpoint.failed_segment_ids = []
            metadata.current_stage = self.stage

        metadata = await self.document_store.update_metadata(self.document_id, mutate)
        checkpoint = metadata.checkpoint(self.stage)

        if self.notifier:
            if self.force:
                self.notifier.reset(self.document_id, self.stage)
            await self.notifier.report_stage_started(
                self.document, self.stage, total=total, current=checkpoint.segments_processed
            )
        return checkpoint

    async def record_unit_success(
        self,
        unit_id: str,
        retries: int = 0,
        nodes_created: int = 0,
        edges_created: int = 0,
    ) -> StageCheckpoint:
        """Atomically count one finished unit and emit progress."""

        def mutate(metadata: ProcessingMetadata) -> None:
            checkpoint = metadata.checkpoint(self.stage)
            checkpoint.segments_processed += 1
            checkpoint.retry_count += retries
            checkpoint.nodes_created += nodes_created
            checkpoint.edges_created += edges_created
            if unit_id in checkpoint.failed_segment_ids:
                checkpoint.failed_segment_ids.remove(unit_id)

        metadata = await self.document_store.update_metadata(self.document_id, mutate)
        checkpoint = metadata.checkpoint(self.stage)

        if self.notifier:
            await self.notifier.report_progress(
                self.document,
                self.stage,
                current=checkpoint.segments_processed,
                total=checkpoint.total_segments,
                nodes_created=checkpoint.nodes_created,
                edges_created=checkpoint.edges_created,
            )
        return checkpoint

    async def record_unit_failure(self, unit_id: str, retries: int = 0) -> StageCheckpoint:
        """Atomically record a unit that failed terminally."""

        def mutate(metadata: ProcessingMetadata) -> None:
            checkpoint = metadata.checkpoint(self.stage)
            checkpoint.retry_count += retries
            if unit_id not in checkpoint.failed_segment_ids:
                checkpoint.failed_segment_ids.append(unit_id)

        metadata = await self.document_store.update_metadata(self.document_id, mutate)
        return metadata.checkpoint(self.stage)

    async def current_checkpoint(self) -> StageCheckpoint:
        document = await self.document_store.get(self.document_id)
        return document.processing_metadata.checkpoint(self.stage)


class StageExecutor(ABC):
    """One pipeline stage."""

    stage: PipelineStage

    @abstractmethod
    async def execute(self, context: StageContext) -> StageOutcome:
        """Run the stage for one document."""


def describe_error(error: BaseException) -> str:
    """Human-readable message for a unit failure."""
    if isinstance(error, RetryExhaustedError) and error.last_error is not None:
        return f"{error.last_error} (after {error.attempts} attempts)"
    if isinstance(error, PipelineError):
        return error.message
    return str(error) or type(error).__name__


class SegmentStageExecutor(StageExecutor):
    """
    Shared loop for stages that process segments through the worker pool.

    Pending segments are grouped into batches; each batch is handed to the
    pool, one unit per segment. Each unit runs ``process_unit`` under the
    retry policy, then ``persist_unit``. Failed units are recorded without
    stopping their siblings.
    """

    # Whether failed units still let the stage complete
    tolerate_unit_failures = False

    def batch_size(self, context: StageContext) -> int:
        return context.config.embedding_batch_size

    @abstractmethod
    def is_unit_done(self, segment: Segment) -> bool:
        """Whether the segment already carries this stage's artifact."""

    @abstractmethod
    async def process_unit(self, context: StageContext, segment: Segment) -> Any:
        """External call for one segment. Retried on transient errors."""

    @abstractmethod
    async def persist_unit(
        self, context: StageContext, segment: Segment, result: Any
    ) -> Dict[str, int]:
        """Store the unit's artifact. Returns created counts (nodes/edges)."""

    @abstractmethod
    async def mark_unit_failed(
        self, context: StageContext, segment: Segment, message: str
    ) -> None:
        """Record the failure on the segment."""

    async def before_unit(self, context: StageContext, segment: Segment) -> None:
        return None

    async def execute(self, context: StageContext) -> StageOutcome:
        segments = await context.segment_store.list_segments(context.document_id)
        pending = [s for s in segments if context.force or not self.is_unit_done(s)]
        await context.begin(total=len(segments), already_done=len(segments) - len(pending))

        logger.info(
            f"{self.stage.value}: document {context.document_id}, "
            f"{len(pending)}/{len(segments)} segments pending"
        )

        outcomes: List[UnitOutcome] = []
        for batch in self._batches(pending, self.batch_size(context)):
            if context.should_stop():
                break
            outcomes.extend(
                await context.worker_pool.run(
                    batch,
                    lambda segment: self._run_unit(context, segment),
                    should_stop=context.should_stop,
                )
            )

        checkpoint = await context.current_checkpoint()
        failed = [o for o in outcomes if o.error is not None]

        outcome = StageOutcome(
            stage=self.stage,
            status=OutcomeStatus.COMPLETED,
            processed=checkpoint.segments_processed,
            total=checkpoint.total_segments,
            failed_unit_ids=[o.unit.id for o in failed],
            retry_count=checkpoint.retry_count,
            nodes_created=checkpoint.nodes_created,
            edges_created=checkpoint.edges_created,
        )

        if context.should_stop():
            outcome.status = OutcomeStatus.STOPPED
            return outcome

        if failed and not self.tolerate_unit_failures:
            first = min(failed, key=lambda o: o.unit.position)
            outcome.status = OutcomeStatus.FAILED
            outcome.error_unit_id = first.unit.id
            outcome.error_message = (
                f"{self.stage.value} failed for {len(failed)} of {len(segments)} segments; "
                f"segment {first.unit.position} ({first.unit.id}): {describe_error(first.error)}"
            )
            outcome.error_category = context.classifier.classify(
                _root_error(first.error)
            ).category.value

        return outcome

    async def _run_unit(self, context: StageContext, segment: Segment) -> Any:
        retries = 0

        def on_retry(attempt: int, error: BaseException) -> None:
            nonlocal retries
            retries += 1

        try:
            await self.before_unit(context, segment)
            result = await context.retry_policy.run(
                lambda: self.process_unit(context, segment),
                unit_id=segment.id,
                on_retry=on_retry,
            )
            counts = await self.persist_unit(context, segment, result)
        except Exception as e:
            message = describe_error(e)
            logger.warning(f"{self.stage.value}: segment {segment.id} failed: {message}")
            await self.mark_unit_failed(context, segment, message)
            await context.record_unit_failure(segment.id, retries)
            raise

        await context.record_unit_success(segment.id, retries, **counts)
        return result

    @staticmethod
    def _batches(segments: List[Segment], size: int) -> Iterator[List[Segment]]:
        for start in range(0, len(segments), size):
            yield segments[start:start + size]


def _root_error(error: BaseException) -> BaseException:
    if isinstance(error, RetryExhaustedError) and error.last_error is not None:
        return error.last_error
    return error
