"""
Pipeline orchestrator.

Drives each document through chunking, embedding and the optional NER and
graph extraction stages. Every stage runs as an independent StageJob on a
dispatcher; the orchestrator owns the per-document locks, the cooperative
cancellation tokens and every status transition request.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from ..core.concurrent_processor import WorkerPool
from ..core.error_classifier import ErrorClassifier
from ..core.progress_reporter import ProgressNotifier
from ..core.retry_policy import RetryPolicy
from ..models.config_models import PipelineConfig
from ..models.document_models import (
    Document,
    DocumentStatus,
    LastError,
    PipelineStage,
    ProcessingMetadata,
)
from ..models.errors import ConfigurationError, InvalidStateError, PipelineError
from ..storage.base import DocumentStore, SegmentStore
from .processing_queue import InlineDispatcher, JobDispatcher, StageJob, StageRegistry
from .stages.base import (
    CancellationToken,
    OutcomeStatus,
    StageContext,
    StageOutcome,
    StopReason,
    describe_error,
)
from .state_machine import (
    STAGE_BY_ACTIVE_STATUS,
    STAGE_BY_DONE_STATUS,
    DocumentStateMachine,
    resume_target,
)

logger = logging.getLogger(__name__)

REQUIRED_STAGES = (PipelineStage.CHUNKING, PipelineStage.EMBEDDING)

STOP_STATUSES = {
    StopReason.CANCEL: DocumentStatus.CANCELLED,
    StopReason.PAUSE: DocumentStatus.PAUSED,
}

# Subscriber notifications collected under a document lock, sent after release
Notification = Callable[[], Awaitable[None]]


@dataclass
class DatasetResumeResult:
    """What ``resume_dataset`` did with each document of a dataset."""

    dataset_id: str
    started: List[str] = field(default_factory=list)
    recovered: List[str] = field(default_factory=list)
    resumed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def dispatched(self) -> int:
        return len(self.started) + len(self.recovered) + len(self.resumed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dataset_id": self.dataset_id,
            "started": list(self.started),
            "recovered": list(self.recovered),
            "resumed": list(self.resumed),
            "skipped": list(self.skipped),
            "failed": dict(self.failed),
            "dispatched": self.dispatched,
        }


class PipelineOrchestrator:
    """
    Resumable document processing pipeline.

    Documents never coordinate with each other. Within a document, a
    per-document lock serializes transitions; the stage itself runs outside
    the lock so cancel and pause requests can reach it between units.
    Status and progress notifications are sent after the lock is released.
    """

    def __init__(
        self,
        document_store: DocumentStore,
        segment_store: SegmentStore,
        registry: StageRegistry,
        notifier: Optional[ProgressNotifier] = None,
        config: Optional[PipelineConfig] = None,
        dispatcher: Optional[JobDispatcher] = None,
        worker_pool: Optional[WorkerPool] = None,
        retry_policy: Optional[RetryPolicy] = None,
        classifier: Optional[ErrorClassifier] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            document_store: Document and checkpoint persistence
            segment_store: Segment persistence
            registry: Stage executors, one per stage
            notifier: Progress event fan-out
            config: Pipeline options, defaults when omitted
            dispatcher: Where stage jobs run, inline when omitted
            worker_pool: Pool shared by every stage, sized from config when omitted
            retry_policy: Retry policy for external calls, built from config when omitted
            classifier: Error classifier for recorded failures

        Raises:
            ConfigurationError: A required or enabled stage has no executor
        """
        self.document_store = document_store
        self.segment_store = segment_store
        self.registry = registry
        self.notifier = notifier
        self.config = config or PipelineConfig()
        self.classifier = classifier or ErrorClassifier()
        self.worker_pool = worker_pool or WorkerPool(
            max_workers=self.config.worker_pool_size, name="external-calls"
        )
        self.retry_policy = retry_policy or RetryPolicy.from_config(
            self.config, classifier=self.classifier
        )
        self.state_machine = DocumentStateMachine(document_store, notifier)

        self.dispatcher = dispatcher or InlineDispatcher()
        self.dispatcher.bind(self.execute_job)

        self._locks: Dict[str, asyncio.Lock] = {}
        self._running: Dict[str, CancellationToken] = {}
        # Job ids dispatched per document and not yet picked up
        self._scheduled: Dict[str, Set[str]] = {}

        self.stats = {
            "documents_submitted": 0,
            "documents_completed": 0,
            "documents_failed": 0,
            "documents_cancelled": 0,
            "documents_paused": 0,
            "documents_resumed": 0,
            "documents_recovered": 0,
            "stages_completed": 0,
            "stages_failed": 0,
            "stages_stopped": 0,
        }

        for stage in self.enabled_stages():
            if stage not in registry:
                raise ConfigurationError(f"No executor registered for enabled stage {stage.value}")

        logger.info(
            "Pipeline orchestrator initialized with stages: "
            + ", ".join(stage.value for stage in self.enabled_stages())
        )

    def enabled_stages(self) -> List[PipelineStage]:
        """Stages every document passes through, in order."""
        stages = list(REQUIRED_STAGES)
        if self.config.ner_enabled:
            stages.append(PipelineStage.NER)
        if self.config.graph_extraction_enabled:
            stages.append(PipelineStage.GRAPH_EXTRACTION)
        return stages

    def next_stage(self, stage: PipelineStage) -> Optional[PipelineStage]:
        stages = self.enabled_stages()
        if stage not in stages:
            return None
        index = stages.index(stage)
        return stages[index + 1] if index + 1 < len(stages) else None

    def is_in_flight(self, document_id: str) -> bool:
        """Whether a stage of the document is running or dispatched but not started."""
        return document_id in self._running or document_id in self._scheduled

    async def start(self) -> None:
        """Start the dispatcher if it runs its own consumers."""
        if hasattr(self.dispatcher, "start"):
            await self.dispatcher.start()

    async def stop(self) -> None:
        if hasattr(self.dispatcher, "stop"):
            await self.dispatcher.stop()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    async def wait_idle(self) -> None:
        """Wait for queued stage jobs to drain. Returns at once for inline dispatch."""
        if hasattr(self.dispatcher, "join"):
            await self.dispatcher.join()

    def _lock_for(self, document_id: str) -> asyncio.Lock:
        return self._locks.setdefault(document_id, asyncio.Lock())

    # Public operations

    async def submit(self, document: Document, start: bool = True) -> Document:
        """
        Register a new document and optionally start processing it.

        Args:
            document: Document in the ``waiting`` status
            start: Dispatch the chunking stage right away

        Returns:
            The stored document after dispatch

        Raises:
            InvalidStateError: Document is not waiting
            ConflictError: Document id already exists
        """
        if document.indexing_status != DocumentStatus.WAITING:
            raise InvalidStateError(
                f"Submitted document {document.id} must be waiting",
                current_status=document.indexing_status.value,
            )

        await self.document_store.create(document)
        self.stats["documents_submitted"] += 1
        logger.info(f"Submitted document {document.id} to dataset {document.dataset_id}")

        if start:
            await self.process_document(document.id)
        return await self.document_store.get(document.id)

    async def process_document(self, document_id: str) -> None:
        """Start a waiting document at the chunking stage."""
        pending: List[Notification] = []
        async with self._lock_for(document_id):
            document = await self.document_store.get(document_id)
            if document.indexing_status != DocumentStatus.WAITING:
                raise InvalidStateError(
                    f"Document {document_id} is {document.indexing_status.value}, not waiting",
                    current_status=document.indexing_status.value,
                )
            await self._transition(
                pending, document_id, DocumentStatus.CHUNKING, stage=PipelineStage.CHUNKING
            )

        await self._flush(pending)
        await self._dispatch(StageJob(document_id, PipelineStage.CHUNKING))

    async def run_stage(
        self, document_id: str, stage: PipelineStage, force: bool = False
    ) -> Optional[StageOutcome]:
        """
        Run one stage to completion without dispatching the next one.

        Returns:
            The stage outcome, None when the document was not runnable
        """
        return await self._run_stage(
            StageJob(document_id, stage, force=force, dispatch_next=False)
        )

    async def resume(self, document_id: str, force: bool = False) -> None:
        """
        Re-enter a failed or paused document at its recorded stage.

        Units whose artifact already exists are skipped unless ``force``.

        Raises:
            InvalidStateError: Document is neither in error nor paused
        """
        pending: List[Notification] = []
        async with self._lock_for(document_id):
            document = await self.document_store.get(document_id)
            if not document.indexing_status.is_recoverable:
                raise InvalidStateError(
                    f"Cannot resume document {document_id} in status "
                    f"{document.indexing_status.value}",
                    current_status=document.indexing_status.value,
                )

            stage, status = resume_target(document.processing_metadata)
            await self._mark_restarted(document_id, stage)
            await self._transition(
                pending, document_id, status, stage=stage, resume=True, message="resumed"
            )
            self.stats["documents_resumed"] += 1

        await self._flush(pending)
        logger.info(f"Resuming document {document_id} at {stage.value} (force: {force})")
        await self._dispatch(StageJob(document_id, stage, force=force, resume=True))

    async def recover(self, document_id: str, force: bool = False) -> Optional[PipelineStage]:
        """
        Restart a document stranded in a non-terminal processing status.

        A document left in an active status (for example ``embedding``) or
        between stages (``chunked``, ``embedded``) by a crashed worker has no
        job left to move it on. Its active stage, or the next enabled stage,
        is dispatched again: chunking is redone in full, later stages skip
        units that already carry their artifact unless ``force``.

        Returns:
            The dispatched stage, None when the document only needed to be
            marked completed

        Raises:
            InvalidStateError: A stage of the document is still in flight, or
                the document is waiting, failed, paused or terminal
        """
        pending: List[Notification] = []
        async with self._lock_for(document_id):
            document = await self.document_store.get(document_id)
            current = document.indexing_status

            if self.is_in_flight(document_id):
                raise InvalidStateError(
                    f"Document {document_id} has a stage in flight",
                    current_status=current.value,
                )

            if current in STAGE_BY_ACTIVE_STATUS:
                stage: Optional[PipelineStage] = STAGE_BY_ACTIVE_STATUS[current]
            elif current in STAGE_BY_DONE_STATUS:
                stage = self.next_stage(STAGE_BY_DONE_STATUS[current])
            else:
                raise InvalidStateError(
                    f"Cannot recover document {document_id} in status {current.value}",
                    current_status=current.value,
                )

            self.stats["documents_recovered"] += 1

            if stage is None:
                finished = STAGE_BY_DONE_STATUS[current]
                await self._transition(
                    pending, document_id, DocumentStatus.COMPLETED, stage=finished, message="recovered"
                )
                self.stats["documents_completed"] += 1
            else:
                await self._mark_restarted(document_id, stage)

        await self._flush(pending)
        if stage is None:
            logger.info(f"Recovered document {document_id}: all stages were done")
            return None

        logger.info(f"Recovering document {document_id} at {stage.value} (force: {force})")
        await self._dispatch(StageJob(document_id, stage, force=force, resume=True))
        return stage

    async def resume_dataset(
        self, dataset_id: str, include_recoverable: bool = False, force: bool = False
    ) -> DatasetResumeResult:
        """
        Restart every unfinished document of a dataset.

        Waiting documents are started, stranded documents are recovered and,
        with ``include_recoverable``, failed or paused documents are resumed.
        Terminal documents and documents with a stage in flight are skipped.

        Returns:
            Per-document record of what was dispatched
        """
        result = DatasetResumeResult(dataset_id=dataset_id)
        documents = await self.document_store.list_documents(dataset_id)
        logger.info(f"Resuming dataset {dataset_id}: {len(documents)} documents")

        for document in documents:
            document_id = document.id
            status = document.indexing_status

            if status.is_terminal or self.is_in_flight(document_id):
                result.skipped.append(document_id)
                continue
            if status.is_recoverable and not include_recoverable:
                result.skipped.append(document_id)
                continue

            try:
                if status == DocumentStatus.WAITING:
                    await self.process_document(document_id)
                    result.started.append(document_id)
                elif status.is_recoverable:
                    await self.resume(document_id, force=force)
                    result.resumed.append(document_id)
                else:
                    await self.recover(document_id, force=force)
                    result.recovered.append(document_id)
            except InvalidStateError as e:
                # Status moved on between listing and locking
                logger.warning(f"Could not restart document {document_id}: {e.message}")
                result.failed[document_id] = e.message

        logger.info(
            f"Dataset {dataset_id} resume: {result.dispatched} dispatched, "
            f"{len(result.skipped)} skipped, {len(result.failed)} failed"
        )
        return result

    async def cancel(self, document_id: str) -> bool:
        """
        Cancel a document.

        Returns:
            False when the document is already terminal, True otherwise
        """
        return await self._interrupt(document_id, StopReason.CANCEL)

    async def pause(self, document_id: str) -> bool:
        """
        Pause a document so it can be resumed later.

        Returns:
            False when the document is terminal, failed or already paused
        """
        return await self._interrupt(document_id, StopReason.PAUSE)

    async def get_status(self, document_id: str, recent_events: int = 5) -> Dict[str, Any]:
        """Status, error, checkpoint metadata and latest events of a document."""
        document = await self.document_store.get(document_id)
        status = document.to_dict()
        status["running"] = document_id in self._running
        status["in_flight"] = self.is_in_flight(document_id)
        status["recent_events"] = (
            self.notifier.get_recent_events(limit=recent_events, document_id=document_id)
            if self.notifier
            else []
        )
        return status

    async def _interrupt(self, document_id: str, reason: StopReason) -> bool:
        target = STOP_STATUSES[reason]
        pending: List[Notification] = []

        async with self._lock_for(document_id):
            document = await self.document_store.get(document_id)
            current = document.indexing_status

            if current.is_terminal:
                logger.debug(f"Ignoring {reason.value} for {current.value} document {document_id}")
                return False
            if reason == StopReason.PAUSE and current.is_recoverable:
                return False

            token = self._running.get(document_id)
            if token is not None:
                token.request(reason)

                def flag(metadata: ProcessingMetadata) -> None:
                    if reason == StopReason.CANCEL:
                        metadata.cancel_requested = True
                    else:
                        metadata.pause_requested = True

                await self.document_store.update_metadata(document_id, flag)
                logger.info(f"Requested {reason.value} of running document {document_id}")
                return True

            await self._transition(
                pending,
                document_id,
                target,
                stage=document.processing_metadata.current_stage,
                message=f"{reason.value} requested",
            )
            self._count_stop(target)

        await self._flush(pending)
        return True

    # Job execution

    async def execute_job(self, job: StageJob) -> Optional[StageOutcome]:
        """Dispatcher entry point: run the job's stage, then dispatch the next one."""
        outcome = await self._run_stage(job)
        if outcome is None or not outcome.completed or not job.dispatch_next:
            return outcome

        document = await self.document_store.get(job.document_id)
        if document.indexing_status.is_terminal or document.indexing_status.is_recoverable:
            return outcome

        next_stage = self.next_stage(job.stage)
        if next_stage is not None:
            await self._dispatch(
                StageJob(job.document_id, next_stage, force=job.force, priority=job.priority)
            )
        return outcome

    async def _dispatch(self, job: StageJob) -> None:
        self._scheduled.setdefault(job.document_id, set()).add(job.job_id)
        try:
            await self.dispatcher.dispatch(job)
        except BaseException:
            self._unschedule(job)
            raise

    def _unschedule(self, job: StageJob) -> None:
        job_ids = self._scheduled.get(job.document_id)
        if job_ids is None:
            return
        job_ids.discard(job.job_id)
        if not job_ids:
            del self._scheduled[job.document_id]

    async def _run_stage(self, job: StageJob) -> Optional[StageOutcome]:
        document_id, stage = job.document_id, job.stage
        token = CancellationToken()
        pending: List[Notification] = []

        async with self._lock_for(document_id):
            # The job stops counting as scheduled once it holds the lock
            self._unschedule(job)
            executor = self.registry.get(stage)
            document = await self.document_store.get(document_id)
            current = document.indexing_status

            if current.is_terminal or current.is_recoverable:
                logger.info(f"Skipping {stage.value} for document {document_id}: {current.value}")
                return None
            if document_id in self._running:
                raise InvalidStateError(
                    f"Document {document_id} already has a running stage",
                    current_status=current.value,
                )

            if current != stage.active_status:
                document = await self._transition(
                    pending, document_id, stage.active_status, stage=stage
                )

            def mark_started(metadata: ProcessingMetadata) -> None:
                metadata.current_stage = stage
                metadata.cancel_requested = False
                metadata.pause_requested = False

            await self.document_store.update_metadata(document_id, mark_started)
            self._running[document_id] = token

        context = StageContext(
            document=document,
            stage=stage,
            config=self.config,
            document_store=self.document_store,
            segment_store=self.segment_store,
            worker_pool=self.worker_pool,
            retry_policy=self.retry_policy,
            token=token,
            notifier=self.notifier,
            force=job.force,
            classifier=self.classifier,
        )

        logger.info(f"Running {stage.value} for document {document_id} (job {job.job_id})")
        try:
            await self._flush(pending)
            outcome = await executor.execute(context)
        except Exception as e:
            logger.error(f"{stage.value} failed for document {document_id}: {e}")
            outcome = StageOutcome.failed(
                stage,
                describe_error(e),
                unit_id=e.unit_id if isinstance(e, PipelineError) else None,
                category=self.classifier.classify(e).category.value,
                checkpoint=await context.current_checkpoint(),
            )
        except BaseException:
            self._running.pop(document_id, None)
            raise

        pending = []
        async with self._lock_for(document_id):
            self._running.pop(document_id, None)
            await self._commit(pending, document_id, job, outcome, token)

        await self._flush(pending)
        return outcome

    async def _commit(
        self,
        pending: List[Notification],
        document_id: str,
        job: StageJob,
        outcome: StageOutcome,
        token: CancellationToken,
    ) -> None:
        stage = outcome.stage
        document = await self.document_store.get(document_id)

        if outcome.status == OutcomeStatus.STOPPED or (
            token.requested and outcome.status == OutcomeStatus.FAILED
        ):
            outcome.status = OutcomeStatus.STOPPED
            self.stats["stages_stopped"] += 1
            await self._stop(pending, document_id, stage, token, outcome)
            return

        if outcome.status == OutcomeStatus.FAILED:
            self.stats["stages_failed"] += 1
            self.stats["documents_failed"] += 1

            def record_failure(metadata: ProcessingMetadata) -> None:
                metadata.last_error = LastError(
                    stage=stage.value,
                    message=outcome.error_message or "stage failed",
                    unit_id=outcome.error_unit_id,
                    retry_count=outcome.retry_count,
                    category=outcome.error_category,
                )

            await self.document_store.update_metadata(document_id, record_failure)
            updated = await self._transition(
                pending, document_id, DocumentStatus.ERROR, error=outcome.error_message, stage=stage
            )
            if self.notifier:
                notifier = self.notifier
                pending.append(
                    lambda: notifier.report_error(
                        updated,
                        stage,
                        outcome.error_message or "stage failed",
                        current=outcome.processed,
                        total=outcome.total,
                    )
                )
            return

        self.stats["stages_completed"] += 1
        next_stage = self.next_stage(stage)

        def record_completion(metadata: ProcessingMetadata) -> None:
            metadata.checkpoint(stage).completed_at = datetime.now()
            if next_stage is not None:
                metadata.current_stage = next_stage

        await self.document_store.update_metadata(document_id, record_completion)

        if self.notifier:
            notifier = self.notifier
            message = None
            if outcome.failed_unit_ids:
                message = f"{len(outcome.failed_unit_ids)} segments failed"
            pending.append(
                lambda: notifier.report_stage_completed(
                    document,
                    stage,
                    current=outcome.processed,
                    total=outcome.total,
                    nodes_created=outcome.nodes_created,
                    edges_created=outcome.edges_created,
                    message=message,
                )
            )

        if token.requested:
            await self._stop(pending, document_id, stage, token, outcome)
            return

        if stage.done_status is not None:
            await self._transition(pending, document_id, stage.done_status, stage=stage)

        if next_stage is None and job.dispatch_next:
            await self._transition(pending, document_id, DocumentStatus.COMPLETED, stage=stage)
            self.stats["documents_completed"] += 1
            logger.info(f"Document {document_id} completed")

    async def _stop(
        self,
        pending: List[Notification],
        document_id: str,
        stage: PipelineStage,
        token: CancellationToken,
        outcome: StageOutcome,
    ) -> None:
        target = STOP_STATUSES[token.reason or StopReason.CANCEL]
        await self._transition(
            pending,
            document_id,
            target,
            stage=stage,
            message=f"stopped after {outcome.processed}/{outcome.total} segments",
        )
        self._count_stop(target)

    async def _mark_restarted(self, document_id: str, stage: PipelineStage) -> None:
        def mark(metadata: ProcessingMetadata) -> None:
            metadata.resume_count += 1
            metadata.current_stage = stage
            metadata.cancel_requested = False
            metadata.pause_requested = False

        await self.document_store.update_metadata(document_id, mark)

    async def _transition(
        self,
        pending: List[Notification],
        document_id: str,
        target: DocumentStatus,
        error: Optional[str] = None,
        stage: Optional[PipelineStage] = None,
        resume: bool = False,
        message: Optional[str] = None,
    ) -> Document:
        """Transition under the caller's lock; the status event goes to ``pending``."""
        updated = await self.state_machine.transition(
            document_id, target, error=error, stage=stage, resume=resume, message=message, notify=False
        )
        pending.append(lambda: self.state_machine.announce(updated, stage, message))
        if target.is_terminal:
            pending.append(lambda: self._forget(document_id))
        return updated

    async def _flush(self, pending: List[Notification]) -> None:
        for notify in pending:
            await notify()
        pending.clear()

    async def _forget(self, document_id: str) -> None:
        """Drop per-document bookkeeping of a terminal document."""
        # Terminal documents reject every operation, so a lock still awaited elsewhere can go
        lock = self._locks.get(document_id)
        if lock is not None and not lock.locked():
            del self._locks[document_id]
        if self.notifier:
            self.notifier.reset(document_id)

    def _count_stop(self, target: DocumentStatus) -> None:
        if target == DocumentStatus.CANCELLED:
            self.stats["documents_cancelled"] += 1
        else:
            self.stats["documents_paused"] += 1

    def get_statistics(self) -> Dict[str, Any]:
        """Get orchestrator statistics."""
        return {
            **self.stats,
            "running_documents": len(self._running),
            "scheduled_documents": len(self._scheduled),
            "tracked_documents": len(self._locks),
            "enabled_stages": [stage.value for stage in self.enabled_stages()],
            "worker_pool": self.worker_pool.get_statistics(),
            "notifier": self.notifier.get_statistics() if self.notifier else None,
        }
