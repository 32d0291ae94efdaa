"""
Worker pool bounding concurrent external calls with a shared semaphore.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Generic, Iterable, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ProcessingStats:
    """Cumulative statistics for a worker pool."""

    total_units: int = 0
    completed_units: int = 0
    failed_units: int = 0
    skipped_units: int = 0
    total_processing_time: float = 0.0
    peak_concurrency: int = 0
    start_time: Optional[datetime] = None

    @property
    def success_rate(self) -> float:
        """Success rate as percentage of attempted units."""
        attempted = self.completed_units + self.failed_units
        if attempted == 0:
            return 0.0
        return (self.completed_units / attempted) * 100.0

    @property
    def average_processing_time(self) -> float:
        if self.completed_units == 0:
            return 0.0
        return self.total_processing_time / self.completed_units


@dataclass
class UnitOutcome(Generic[T]):
    """Result of handing one unit to the pool."""

    unit: T
    result: Any = None
    error: Optional[Exception] = None
    skipped: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.skipped and self.error is None


class WorkerPool:
    """
    Bounded pool of cooperative workers for rate-limited external calls.

    One semaphore is shared by every ``run`` call, so the limit holds across
    stage executors and documents. Each run spawns at most ``max_workers``
    worker coroutines that pull units from a shared iterator; a worker
    checks ``should_stop`` before taking a unit and again once it holds a
    slot, so a stop request lets in-flight calls finish and leaves the rest
    untouched.
    """

    def __init__(self, max_workers: int = 4, name: str = "worker-pool"):
        """
        Initialize the pool.

        Args:
            max_workers: Maximum concurrent handler invocations (1-64)
            name: Name used in log messages
        """
        if not (1 <= max_workers <= 64):
            raise ValueError(f"max_workers must be between 1 and 64, got {max_workers}")

        self.max_workers = max_workers
        self.name = name
        self.semaphore = asyncio.Semaphore(max_workers)
        self.stats = ProcessingStats(start_time=datetime.now())
        self._active = 0

        logger.info(f"Initialized {name} with {max_workers} slots")

    async def run(
        self,
        units: Iterable[T],
        handler: Callable[[T], Awaitable[Any]],
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> List[UnitOutcome[T]]:
        """
        Process units through the pool.

        Args:
            units: Units to process, consumed lazily
            handler: Async function invoked once per unit
            should_stop: Checked between units; True stops taking new units

        Returns:
            One outcome per unit in input order. Units never started are
            reported as skipped.
        """
        items = list(units)
        if not items:
            return []

        self.stats.total_units += len(items)
        outcomes: List[Optional[UnitOutcome[T]]] = [None] * len(items)
        pending = iter(enumerate(items))

        def stop_requested() -> bool:
            return bool(should_stop and should_stop())

        async def worker(worker_id: int) -> None:
            while not stop_requested():
                try:
                    index, unit = next(pending)
                except StopIteration:
                    return

                async with self.semaphore:
                    if stop_requested():
                        outcomes[index] = UnitOutcome(unit=unit, skipped=True)
                        return
                    outcomes[index] = await self._invoke(unit, handler, worker_id)

        worker_count = min(self.max_workers, len(items))
        await asyncio.gather(*(worker(i) for i in range(worker_count)))

        results: List[UnitOutcome[T]] = []
        skipped = 0
        for index, outcome in enumerate(outcomes):
            if outcome is None:
                outcome = UnitOutcome(unit=items[index], skipped=True)
            if outcome.skipped:
                skipped += 1
            results.append(outcome)

        self.stats.skipped_units += skipped
        if skipped:
            logger.info(f"{self.name}: stopped early, {skipped}/{len(items)} units skipped")

        return results

    async def _invoke(
        self, unit: T, handler: Callable[[T], Awaitable[Any]], worker_id: int
    ) -> UnitOutcome[T]:
        self._active += 1
        self.stats.peak_concurrency = max(self.stats.peak_concurrency, self._active)
        start_time = time.time()

        try:
            result = await handler(unit)
            self.stats.completed_units += 1
            self.stats.total_processing_time += time.time() - start_time
            return UnitOutcome(unit=unit, result=result)

        except Exception as e:
            self.stats.failed_units += 1
            logger.debug(f"{self.name} worker {worker_id} unit failed: {e}")
            return UnitOutcome(unit=unit, error=e)

        finally:
            self._active -= 1

    def get_statistics(self) -> Dict[str, Any]:
        """Get pool statistics."""
        return {
            "name": self.name,
            "max_workers": self.max_workers,
            "active": self._active,
            "total_units": self.stats.total_units,
            "completed_units": self.stats.completed_units,
            "failed_units": self.stats.failed_units,
            "skipped_units": self.stats.skipped_units,
            "peak_concurrency": self.stats.peak_concurrency,
            "success_rate": self.stats.success_rate,
            "average_processing_time": self.stats.average_processing_time,
        }
