"""
Scheduler Loop

Runs reconciliation on a bounded worker pool:
- Workers pull from the coalescing WorkQueue, so distinct resources reconcile
  in parallel while one resource is never reconciled twice at once
- A periodic tick enqueues every resource to catch drift nobody reported
- The tracker's poller runs alongside and feeds external-drift tasks

No exception escapes a worker; one resource's failure never blocks others.
"""

import asyncio
import logging
from typing import List, Optional

from ..models import ReconcileReason
from .desired_state import DesiredStateStore
from .observed_state import ObservedStateTracker
from .reconciler import Reconciler
from .work_queue import WorkQueue

logger = logging.getLogger(__name__)


class SchedulerLoop:
    """Worker pool + periodic tick + poller."""

    def __init__(
        self,
        queue: WorkQueue,
        store: DesiredStateStore,
        reconciler: Reconciler,
        tracker: Optional[ObservedStateTracker] = None,
        worker_count: int = 4,
        resync_period_seconds: float = 30.0,
        enable_poller: bool = True,
    ):
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        self.queue = queue
        self.store = store
        self.reconciler = reconciler
        self.tracker = tracker
        self.worker_count = worker_count
        self.resync_period_seconds = resync_period_seconds
        self.enable_poller = enable_poller
        self._tasks: List[asyncio.Task] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start workers, the periodic tick and the poller."""
        if self._running:
            return
        self._running = True

        for index in range(self.worker_count):
            self._tasks.append(asyncio.create_task(self._worker(index), name=f"converge-worker-{index}"))

        if self.resync_period_seconds and self.resync_period_seconds > 0:
            self._tasks.append(asyncio.create_task(self._tick_loop(), name="converge-resync"))

        if self.enable_poller and self.tracker is not None:
            self._tasks.append(asyncio.create_task(self.tracker.run_poller(), name="converge-poller"))

        logger.info(
            f"[SCHEDULER] Started {self.worker_count} worker(s), "
            f"resync every {self.resync_period_seconds}s"
        )

    async def stop(self) -> None:
        """Stop everything. In-flight reconciles are cancelled."""
        if not self._running:
            return
        self._running = False
        self.queue.shutdown()

        for task in self._tasks:
            task.cancel()
        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
                logger.error(f"[SCHEDULER] Background task ended with error: {result}")
        self._tasks = []
        logger.info("[SCHEDULER] Stopped")

    def enqueue_all(self, reason: ReconcileReason = ReconcileReason.PERIODIC) -> int:
        """Queue every managed resource. Returns how many new tasks were created."""
        created = 0
        for resource_id in self.store.ids():
            if self.queue.add(resource_id, reason):
                created += 1
        return created

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.resync_period_seconds)
            created = self.enqueue_all(ReconcileReason.PERIODIC)
            logger.debug(f"[SCHEDULER] Periodic resync queued {created} resource(s), depth {self.queue.depth}")

    async def _worker(self, index: int) -> None:
        logger.debug(f"[SCHEDULER] Worker {index} started")
        while True:
            task = await self.queue.get()
            if task is None:
                logger.debug(f"[SCHEDULER] Worker {index} exiting")
                return
            try:
                await self.reconciler.reconcile(task)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    f"[SCHEDULER] Worker {index} failed reconciling {task.resource_id}: {e}",
                    exc_info=True,
                )
            finally:
                self.queue.done(task.resource_id)
