"""
Stage job dispatch and the stage registry.

Each stage of each document runs as an independent StageJob. A dispatcher
decides where the job runs: inline in the caller's task, or on an
in-process priority queue drained by consumer tasks. The registry is the
explicit, enumerable set of stage executors handed to the orchestrator.
"""

import asyncio
import heapq
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Protocol

from ..models.document_models import PipelineStage
from ..models.errors import ConfigurationError
from .stages.base import StageExecutor

logger = logging.getLogger(__name__)


class JobStatus(Enum):
    """Stage job status states."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class StageJob:
    """One stage of one document, dispatched as an independent unit of work."""

    document_id: str
    stage: PipelineStage
    force: bool = False
    resume: bool = False
    dispatch_next: bool = True
    priority: int = 5
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=datetime.now)
    status: JobStatus = JobStatus.QUEUED
    error_message: Optional[str] = None

    def __lt__(self, other: "StageJob") -> bool:
        """Higher priority first, then older jobs first."""
        if self.priority != other.priority:
            return self.priority > other.priority
        return self.created_at < other.created_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "document_id": self.document_id,
            "stage": self.stage.value,
            "force": self.force,
            "resume": self.resume,
            "priority": self.priority,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "error_message": self.error_message,
        }


JobHandler = Callable[[StageJob], Awaitable[Any]]


class JobDispatcher(Protocol):
    """Where stage jobs run."""

    def bind(self, handler: JobHandler) -> None:
        """Set the coroutine that executes a job."""

    async def dispatch(self, job: StageJob) -> None:
        """Hand a job over for execution."""


class InlineDispatcher:
    """Runs each job to completion in the dispatching task."""

    def __init__(self):
        self._handler: Optional[JobHandler] = None

    def bind(self, handler: JobHandler) -> None:
        self._handler = handler

    async def dispatch(self, job: StageJob) -> None:
        if self._handler is None:
            raise ConfigurationError("Dispatcher has no job handler bound")

        job.status = JobStatus.PROCESSING
        try:
            await self._handler(job)
            job.status = JobStatus.COMPLETED
        except Exception as e:
            job.status = JobStatus.FAILED
            job.error_message = str(e)
            raise


class StageJobQueue:
    """
    Priority queue of stage jobs drained by consumer tasks.

    Stands in for a durable external job queue: jobs of different documents
    run concurrently, one consumer task per slot.
    """

    def __init__(self, consumers: int = 2, max_size: int = 10000):
        """
        Args:
            consumers: Number of consumer tasks
            max_size: Maximum queued jobs
        """
        if consumers < 1:
            raise ValueError("consumers must be >= 1")

        self.consumers = consumers
        self.max_size = max_size
        self.queue: List[StageJob] = []
        # Queued and in-flight jobs; finished jobs are dropped
        self.jobs: Dict[str, StageJob] = {}

        self._handler: Optional[JobHandler] = None
        self._not_empty = asyncio.Condition()
        self._workers: Dict[str, asyncio.Task] = {}
        self._unfinished = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self.stats = {
            "jobs_queued": 0,
            "jobs_completed": 0,
            "jobs_failed": 0,
        }

    def bind(self, handler: JobHandler) -> None:
        self._handler = handler

    async def start(self) -> None:
        if self._workers:
            logger.warning("Stage job queue already started")
            return
        if self._handler is None:
            raise ConfigurationError("Stage job queue has no job handler bound")

        for i in range(self.consumers):
            worker_id = f"stage-consumer-{i}"
            self._workers[worker_id] = asyncio.create_task(self._worker_loop(worker_id))

        logger.info(f"Stage job queue started with {self.consumers} consumers")

    async def stop(self) -> None:
        for task in self._workers.values():
            task.cancel()
        await asyncio.gather(*self._workers.values(), return_exceptions=True)
        self._workers.clear()
        logger.info("Stage job queue stopped")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    async def dispatch(self, job: StageJob) -> None:
        async with self._not_empty:
            if len(self.queue) >= self.max_size:
                raise ConfigurationError(f"Stage job queue is full (size: {len(self.queue)})")

            heapq.heappush(self.queue, job)
            self.jobs[job.job_id] = job
            self._unfinished += 1
            self._idle.clear()
            self.stats["jobs_queued"] += 1
            self._not_empty.notify()

        logger.debug(f"Queued {job.stage.value} job {job.job_id} for document {job.document_id}")

    async def join(self) -> None:
        """Wait until every dispatched job, including follow-up stages, has finished."""
        await self._idle.wait()

    async def _worker_loop(self, worker_id: str) -> None:
        logger.debug(f"Consumer {worker_id} started")

        while True:
            async with self._not_empty:
                while not self.queue:
                    await self._not_empty.wait()
                job = heapq.heappop(self.queue)

            job.status = JobStatus.PROCESSING
            try:
                await self._handler(job)
                job.status = JobStatus.COMPLETED
                self.stats["jobs_completed"] += 1
            except Exception as e:
                job.status = JobStatus.FAILED
                job.error_message = str(e)
                self.stats["jobs_failed"] += 1
                logger.error(f"Consumer {worker_id}: job {job.job_id} failed: {e}")
            finally:
                self.jobs.pop(job.job_id, None)
                self._unfinished -= 1
                if self._unfinished == 0:
                    self._idle.set()

    def get_statistics(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "queue_size": len(self.queue),
            "tracked_jobs": len(self.jobs),
            "in_flight": self._unfinished - len(self.queue),
            "consumers": len(self._workers),
        }


class StageRegistry:
    """Explicit mapping of pipeline stages to their executors."""

    def __init__(self, executors: Optional[List[StageExecutor]] = None):
        self._executors: Dict[PipelineStage, StageExecutor] = {}
        for executor in executors or []:
            self.register(executor)

    def register(self, executor: StageExecutor) -> None:
        stage = executor.stage
        if stage in self._executors:
            raise ConfigurationError(f"Stage {stage.value} already registered")
        self._executors[stage] = executor
        logger.debug(f"Registered {type(executor).__name__} for stage {stage.value}")

    def get(self, stage: PipelineStage) -> StageExecutor:
        try:
            return self._executors[stage]
        except KeyError:
            raise ConfigurationError(f"No executor registered for stage {stage.value}") from None

    def stages(self) -> List[PipelineStage]:
        """Registered stages in pipeline order."""
        return [stage for stage in PipelineStage if stage in self._executors]

    def __contains__(self, stage: PipelineStage) -> bool:
        return stage in self._executors

    def __iter__(self) -> Iterator[PipelineStage]:
        return iter(self.stages())

    def __len__(self) -> int:
        return len(self._executors)
