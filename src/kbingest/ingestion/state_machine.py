"""
Document status state machine.

``DocumentStateMachine.transition`` is the only code path that writes a
document's status. Stage executors report outcomes; the orchestrator asks
for transitions while holding the document's lock, and announces them to
subscribers once the lock is released.
"""

import logging
from typing import Dict, FrozenSet, Optional, Tuple

from ..core.progress_reporter import ProgressNotifier
from ..models.document_models import (
    Document,
    DocumentStatus,
    PipelineStage,
    ProcessingMetadata,
)
from ..models.errors import InvalidStateError
from ..storage.base import DocumentStore

logger = logging.getLogger(__name__)

S = DocumentStatus

INTERRUPT_STATUSES: FrozenSet[DocumentStatus] = frozenset({S.ERROR, S.PAUSED, S.CANCELLED})

ACTIVE_STATUSES: FrozenSet[DocumentStatus] = frozenset(
    stage.active_status for stage in PipelineStage
)

# Stage that owns each active status, and the stage that finished for each done status
STAGE_BY_ACTIVE_STATUS: Dict[DocumentStatus, PipelineStage] = {
    stage.active_status: stage for stage in PipelineStage
}
STAGE_BY_DONE_STATUS: Dict[DocumentStatus, PipelineStage] = {
    stage.done_status: stage for stage in PipelineStage if stage.done_status is not None
}

ALLOWED_TRANSITIONS: Dict[DocumentStatus, FrozenSet[DocumentStatus]] = {
    S.WAITING: frozenset({S.CHUNKING}) | INTERRUPT_STATUSES,
    S.CHUNKING: frozenset({S.CHUNKED}) | INTERRUPT_STATUSES,
    S.CHUNKED: frozenset({S.EMBEDDING}) | INTERRUPT_STATUSES,
    S.EMBEDDING: frozenset({S.EMBEDDED}) | INTERRUPT_STATUSES,
    S.EMBEDDED: frozenset({S.NER_PROCESSING, S.GRAPH_EXTRACTION_PROCESSING, S.COMPLETED})
    | INTERRUPT_STATUSES,
    S.NER_PROCESSING: frozenset({S.GRAPH_EXTRACTION_PROCESSING, S.COMPLETED})
    | INTERRUPT_STATUSES,
    S.GRAPH_EXTRACTION_PROCESSING: frozenset({S.COMPLETED}) | INTERRUPT_STATUSES,
    # Re-entry into an active status from error/paused is only allowed via resume
    S.ERROR: frozenset({S.CANCELLED}),
    S.PAUSED: frozenset({S.CANCELLED}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
}


def resume_target(metadata: ProcessingMetadata) -> Tuple[PipelineStage, DocumentStatus]:
    """Stage and status a resumed document re-enters."""
    stage = metadata.current_stage or PipelineStage.CHUNKING
    return stage, stage.active_status


class DocumentStateMachine:
    """Validates and persists document status transitions."""

    def __init__(
        self,
        document_store: DocumentStore,
        notifier: Optional[ProgressNotifier] = None,
    ):
        self.document_store = document_store
        self.notifier = notifier

    def can_transition(
        self,
        current: DocumentStatus,
        target: DocumentStatus,
        metadata: Optional[ProcessingMetadata] = None,
        resume: bool = False,
    ) -> bool:
        if target in ALLOWED_TRANSITIONS[current]:
            return True

        if resume and current.is_recoverable and target in ACTIVE_STATUSES:
            _, expected = resume_target(metadata or ProcessingMetadata())
            return target == expected

        return False

    def validate(
        self,
        current: DocumentStatus,
        target: DocumentStatus,
        metadata: Optional[ProcessingMetadata] = None,
        resume: bool = False,
    ) -> None:
        """Raise InvalidStateError unless current -> target is allowed."""
        if not self.can_transition(current, target, metadata, resume):
            raise InvalidStateError(
                f"Cannot transition from {current.value} to {target.value}"
                + (" via resume" if resume else ""),
                current_status=current.value,
            )

    async def transition(
        self,
        document_id: str,
        target: DocumentStatus,
        error: Optional[str] = None,
        stage: Optional[PipelineStage] = None,
        resume: bool = False,
        message: Optional[str] = None,
        notify: bool = True,
    ) -> Document:
        """
        Move a document to ``target`` and emit a status event.

        Only status and error are written. The error message is kept only
        for the ``error`` status and cleared otherwise. Callers holding a
        document lock pass ``notify=False`` and call ``announce`` after
        releasing it, so subscribers may call back into the pipeline.

        Raises:
            InvalidStateError: Transition not allowed
            DocumentNotFoundError: Unknown document
        """
        document = await self.document_store.get(document_id)
        self.validate(document.indexing_status, target, document.processing_metadata, resume)

        stored_error = error if target == DocumentStatus.ERROR else None
        updated = await self.document_store.update_status(document_id, target, stored_error)

        logger.info(
            f"Document {document_id}: {document.indexing_status.value} -> {target.value}"
            + (f" ({error})" if stored_error else "")
        )

        if notify:
            await self.announce(updated, stage, message)

        return updated

    async def announce(
        self,
        document: Document,
        stage: Optional[PipelineStage] = None,
        message: Optional[str] = None,
    ) -> None:
        if self.notifier:
            await self.notifier.report_status(document, stage, message)
