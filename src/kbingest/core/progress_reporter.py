"""
Progress notification for document processing.

Pushes stage transitions and per-unit progress to subscribers (callbacks
or asyncio queues). Delivery is at-least-once; consumers deduplicate on
``ProgressEvent.dedup_key``.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple, Union

from ..models.document_models import Document, PipelineStage

logger = logging.getLogger(__name__)

DOCUMENT_STAGE = "document"


class ProgressEventType(Enum):
    """Types of progress events."""

    STATUS_CHANGED = "status_changed"
    STAGE_STARTED = "stage_started"
    PROGRESS = "progress"
    STAGE_COMPLETED = "stage_completed"
    ERROR = "error"


@dataclass
class ProgressEvent:
    """Single progress event pushed to subscribers."""

    event_type: ProgressEventType
    document_id: str
    dataset_id: str
    stage: str
    status: str
    current: int = 0
    total: int = 0
    nodes_created: int = 0
    edges_created: int = 0
    error: Optional[str] = None
    message: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def percentage(self) -> float:
        if self.total <= 0:
            return 0.0
        return round(min(self.current, self.total) / self.total * 100.0, 2)

    @property
    def dedup_key(self) -> Tuple[str, str, int]:
        return (self.document_id, self.stage, self.current)

    @property
    def channel(self) -> str:
        """Broadcast channel name for this event."""
        if self.stage == PipelineStage.GRAPH_EXTRACTION.value:
            return "graph_extraction_update"
        return "document_processing_update"

    @property
    def is_final(self) -> bool:
        return self.event_type in (
            ProgressEventType.STAGE_COMPLETED,
            ProgressEventType.ERROR,
            ProgressEventType.STATUS_CHANGED,
        ) or (self.total > 0 and self.current >= self.total)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "documentId": self.document_id,
            "datasetId": self.dataset_id,
            "stage": self.stage,
            "status": self.status,
            "progress": {
                "current": self.current,
                "total": self.total,
                "percentage": self.percentage,
            },
            "countsCreated": {
                "nodes": self.nodes_created,
                "edges": self.edges_created,
            },
            "timestamp": self.timestamp.isoformat(),
        }
        if self.error is not None:
            payload["error"] = self.error
        if self.message is not None:
            payload["message"] = self.message
        return payload


ProgressCallback = Callable[[ProgressEvent], Union[None, Awaitable[None]]]


class ProgressNotifier:
    """
    Fan-out of progress events with per-stage monotonic progress.

    ``progress.current`` never decreases for a (document, stage) pair:
    a regressing value is clamped to the last one delivered. Intermediate
    progress events can be coalesced; stage starts, completions, status
    changes and errors are always delivered.
    """

    def __init__(self, coalesce_every: int = 1, history_size: int = 500):
        """
        Initialize the notifier.

        Args:
            coalesce_every: Deliver every Nth intermediate progress event
            history_size: Size of the event history buffer
        """
        if coalesce_every < 1:
            raise ValueError("coalesce_every must be >= 1")

        self.coalesce_every = coalesce_every
        self.callbacks: List[ProgressCallback] = []
        self.queues: List[asyncio.Queue] = []
        self.events: Deque[ProgressEvent] = deque(maxlen=history_size)

        self._last_current: Dict[Tuple[str, str], int] = {}
        self._pending_counts: Dict[Tuple[str, str], int] = {}
        self.statistics = {
            "events_emitted": 0,
            "events_coalesced": 0,
            "subscriber_failures": 0,
            "queue_overflows": 0,
        }

    def subscribe(self, callback: ProgressCallback) -> None:
        """Add a sync or async callback."""
        self.callbacks.append(callback)
        logger.debug(f"Added progress callback: {callback}")

    def unsubscribe(self, callback: ProgressCallback) -> None:
        if callback in self.callbacks:
            self.callbacks.remove(callback)

    def subscribe_queue(self, maxsize: int = 1000) -> asyncio.Queue:
        """Create a bounded queue that receives every delivered event."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.queues.append(queue)
        return queue

    def reset(self, document_id: str, stage: Optional[PipelineStage] = None) -> None:
        """
        Forget progress high-water marks of a document.

        Used when a stage is forcibly redone (``stage`` given) and when a
        document reaches a terminal status (all of its stages).
        """
        for key in list(self._last_current):
            if key[0] == document_id and (stage is None or key[1] == stage.value):
                self._last_current.pop(key, None)
                self._pending_counts.pop(key, None)

    async def report_status(
        self,
        document: Document,
        stage: Optional[PipelineStage] = None,
        message: Optional[str] = None,
    ) -> None:
        """Report a document status transition."""
        await self._emit(
            self._build(
                ProgressEventType.STATUS_CHANGED,
                document,
                stage,
                error=document.error,
                message=message,
            )
        )

    async def report_stage_started(
        self, document: Document, stage: PipelineStage, total: int, current: int = 0
    ) -> None:
        await self._emit(
            self._build(
                ProgressEventType.STAGE_STARTED, document, stage, current=current, total=total
            )
        )

    async def report_progress(
        self,
        document: Document,
        stage: PipelineStage,
        current: int,
        total: int,
        nodes_created: int = 0,
        edges_created: int = 0,
    ) -> None:
        """Report per-unit progress within a stage."""
        await self._emit(
            self._build(
                ProgressEventType.PROGRESS,
                document,
                stage,
                current=current,
                total=total,
                nodes_created=nodes_created,
                edges_created=edges_created,
            )
        )

    async def report_stage_completed(
        self,
        document: Document,
        stage: PipelineStage,
        current: int,
        total: int,
        nodes_created: int = 0,
        edges_created: int = 0,
        message: Optional[str] = None,
    ) -> None:
        await self._emit(
            self._build(
                ProgressEventType.STAGE_COMPLETED,
                document,
                stage,
                current=current,
                total=total,
                nodes_created=nodes_created,
                edges_created=edges_created,
                message=message,
            )
        )

    async def report_error(
        self,
        document: Document,
        stage: Optional[PipelineStage],
        error: str,
        current: int = 0,
        total: int = 0,
    ) -> None:
        """Push the terminal error event of a failed stage."""
        await self._emit(
            self._build(
                ProgressEventType.ERROR,
                document,
                stage,
                current=current,
                total=total,
                error=error,
            )
        )

    def _build(
        self,
        event_type: ProgressEventType,
        document: Document,
        stage: Optional[PipelineStage],
        **fields: Any,
    ) -> ProgressEvent:
        return ProgressEvent(
            event_type=event_type,
            document_id=document.id,
            dataset_id=document.dataset_id,
            stage=stage.value if stage else DOCUMENT_STAGE,
            status=document.indexing_status.value,
            **fields,
        )

    async def _emit(self, event: ProgressEvent) -> None:
        key = (event.document_id, event.stage)

        last = self._last_current.get(key)
        if last is not None and event.current < last:
            event.current = last
        self._last_current[key] = event.current

        if event.event_type == ProgressEventType.PROGRESS and not event.is_final:
            count = self._pending_counts.get(key, 0) + 1
            self._pending_counts[key] = count
            if count % self.coalesce_every != 0:
                self.statistics["events_coalesced"] += 1
                return

        self.events.append(event)
        self.statistics["events_emitted"] += 1

        for callback in list(self.callbacks):
            try:
                result = callback(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                self.statistics["subscriber_failures"] += 1
                logger.warning(f"Progress callback failed: {e}")

        for queue in list(self.queues):
            if queue.full():
                queue.get_nowait()
                self.statistics["queue_overflows"] += 1
            queue.put_nowait(event)

    def get_recent_events(
        self, limit: int = 10, document_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Get recent delivered events as dicts."""
        events = [e for e in self.events if document_id is None or e.document_id == document_id]
        return [e.to_dict() for e in events[-limit:]]

    def get_statistics(self) -> Dict[str, Any]:
        return {
            **self.statistics,
            "subscribers": len(self.callbacks) + len(self.queues),
            "tracked_streams": len(self._last_current),
            "history_size": len(self.events),
        }
