"""
Coalescing Work Queue

Per-resource queue feeding the scheduler's worker pool.

Guarantees:
- A resource has at most one pending task; repeated triggers coalesce into it
  and can only raise its priority (spec-changed > external-drift > periodic)
- A resource handed to a worker is not handed out again until done() is
  called; triggers arriving meanwhile are parked and re-queued on done()
- A spec-changed trigger for a resource whose in-flight task is periodic or
  drift sets that task's `superseded` event
"""

import asyncio
import heapq
import itertools
import logging
import time
from typing import Dict, List, Optional, Tuple

from ..models import ReconcileReason, ReconcileTask, ResourceId

logger = logging.getLogger(__name__)


class WorkQueue:
    """Coalescing priority queue keyed by ResourceId."""

    def __init__(self):
        self._heap: List[Tuple[int, int, ResourceId]] = []
        self._pending: Dict[ResourceId, ReconcileTask] = {}
        self._processing: Dict[ResourceId, ReconcileTask] = {}
        self._parked: Dict[ResourceId, ReconcileTask] = {}
        self._seq = itertools.count()
        self._ready = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._shutting_down = False

    # =========================================================================
    # PRODUCERS
    # =========================================================================

    def add(self, resource_id: ResourceId, reason: ReconcileReason) -> bool:
        """
        Queue reconcile work for a resource.

        Returns:
            True if a new task was created, False if coalesced into an existing one
        """
        if self._shutting_down:
            logger.debug(f"[QUEUE] Ignoring {reason.value} for {resource_id}: queue is shut down")
            return False

        in_flight = self._processing.get(resource_id)
        if in_flight is not None:
            if (
                reason == ReconcileReason.SPEC_CHANGED
                and in_flight.reason != ReconcileReason.SPEC_CHANGED
                and not in_flight.superseded.is_set()
            ):
                logger.info(f"[QUEUE] Superseding in-flight {in_flight.reason.value} reconcile of {resource_id}")
                in_flight.superseded.set()

            parked = self._parked.get(resource_id)
            if parked is not None:
                self._upgrade(parked, reason)
                return False
            self._parked[resource_id] = self._new_task(resource_id, reason)
            self._idle.clear()
            return True

        pending = self._pending.get(resource_id)
        if pending is not None:
            if self._upgrade(pending, reason):
                # Re-push with the higher priority; the stale heap entry is skipped on pop
                pending.seq = next(self._seq)
                heapq.heappush(self._heap, (pending.reason.priority, pending.seq, resource_id))
            return False

        self._push(self._new_task(resource_id, reason))
        return True

    def _new_task(self, resource_id: ResourceId, reason: ReconcileReason) -> ReconcileTask:
        return ReconcileTask(
            resource_id=resource_id,
            reason=reason,
            enqueued_at=time.monotonic(),
            seq=next(self._seq),
        )

    @staticmethod
    def _upgrade(task: ReconcileTask, reason: ReconcileReason) -> bool:
        if reason.priority < task.reason.priority:
            task.reason = reason
            return True
        return False

    def _push(self, task: ReconcileTask) -> None:
        self._pending[task.resource_id] = task
        heapq.heappush(self._heap, (task.reason.priority, task.seq, task.resource_id))
        self._idle.clear()
        self._ready.set()

    # =========================================================================
    # CONSUMERS
    # =========================================================================

    async def get(self) -> Optional[ReconcileTask]:
        """
        Wait for the next task and mark its resource as in flight.

        Returns:
            The task, or None once the queue has been shut down
        """
        while True:
            if self._shutting_down:
                return None

            while self._heap:
                _, seq, resource_id = heapq.heappop(self._heap)
                task = self._pending.get(resource_id)
                if task is None or task.seq != seq:
                    continue
                del self._pending[resource_id]
                self._processing[resource_id] = task
                return task

            self._ready.clear()
            await self._ready.wait()

    def done(self, resource_id: ResourceId) -> None:
        """Release a resource after its reconcile finished (successfully or not)."""
        self._processing.pop(resource_id, None)
        parked = self._parked.pop(resource_id, None)
        if parked is not None and not self._shutting_down:
            self._push(parked)
        elif not self._pending and not self._processing and not self._parked:
            self._idle.set()

    def discard(self, resource_id: ResourceId) -> None:
        """Drop pending and parked work for a resource that is no longer managed."""
        self._pending.pop(resource_id, None)
        self._parked.pop(resource_id, None)
        if not self._pending and not self._processing and not self._parked:
            self._idle.set()

    def shutdown(self) -> None:
        """Wake all consumers; get() returns None from now on."""
        self._shutting_down = True
        self._ready.set()

    async def wait_idle(self) -> None:
        """Wait until nothing is pending, parked or in flight."""
        await self._idle.wait()

    # =========================================================================
    # INTROSPECTION
    # =========================================================================

    @property
    def depth(self) -> int:
        """Number of resources waiting for a worker (pending + parked)."""
        return len(self._pending) + len(self._parked)

    @property
    def in_flight(self) -> int:
        return len(self._processing)

    def is_pending(self, resource_id: ResourceId) -> bool:
        return resource_id in self._pending or resource_id in self._parked

    def is_processing(self, resource_id: ResourceId) -> bool:
        return resource_id in self._processing

    def pending_reason(self, resource_id: ResourceId) -> Optional[ReconcileReason]:
        task = self._pending.get(resource_id) or self._parked.get(resource_id)
        return task.reason if task else None
