"""
Observed-State Tracker

Mirrors the live state of managed resources. Statuses are written by the
reconciler (after actions) and by the poller (after reading the managed
system); both go through the resource's ownership token so writes for one
identifier never interleave.
"""

import asyncio
import logging
import time
from collections import defaultdict
from typing import Callable, Dict, List, Optional

from ..errors import TrackerStaleError
from ..models import (
    HealthState,
    ObservedAttributes,
    ReconcileReason,
    ResourceId,
    ResourceStatus,
    utcnow,
)
from .backends.base import ManagedSystem
from .work_queue import WorkQueue

logger = logging.getLogger(__name__)


def health_from_observation(observed: ObservedAttributes) -> HealthState:
    """Derive health from what the managed system reports."""
    if not observed.exists or observed.replicas is None:
        return HealthState.UNKNOWN
    if (observed.ready_replicas or 0) >= observed.replicas:
        return HealthState.HEALTHY
    return HealthState.DEGRADED


class ObservedStateTracker:
    """
    Last known ResourceStatus per resource, refreshed by polling.

    Poll failures keep the previous status; after `failure_threshold`
    consecutive failures health becomes Unknown and TrackerStaleError is
    raised. Reconciliation keeps using the last known status meanwhile.
    """

    def __init__(
        self,
        managed_system: ManagedSystem,
        queue: Optional[WorkQueue] = None,
        failure_threshold: int = 3,
        default_poll_interval: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.managed_system = managed_system
        self.failure_threshold = failure_threshold
        self.default_poll_interval = default_poll_interval
        self._queue = queue
        self._clock = clock
        self._statuses: Dict[ResourceId, ResourceStatus] = {}
        self._ownership: Dict[ResourceId, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._poll_intervals: Dict[ResourceId, float] = {}
        self._next_poll: Dict[ResourceId, float] = {}

    # =========================================================================
    # READ / WRITE
    # =========================================================================

    def ownership(self, resource_id: ResourceId) -> asyncio.Lock:
        """The token serializing status writes for one resource."""
        return self._ownership[resource_id]

    def get(self, resource_id: ResourceId) -> Optional[ResourceStatus]:
        """Get a copy of the last known status, or None."""
        status = self._statuses.get(resource_id)
        return status.model_copy() if status is not None else None

    def record(self, resource_id: ResourceId, status: ResourceStatus) -> bool:
        """
        Overwrite the status of a resource.

        Monotonic on last_reconciled_generation: a status carrying an older
        generation than the stored one is ignored.

        Returns:
            True if stored, False if rejected as stale
        """
        current = self._statuses.get(resource_id)
        if current is not None and status.last_reconciled_generation < current.last_reconciled_generation:
            logger.warning(
                f"[TRACKER] Ignoring status for {resource_id}: generation "
                f"{status.last_reconciled_generation} < {current.last_reconciled_generation}"
            )
            return False
        self._statuses[resource_id] = status.model_copy(update={"updated_at": utcnow()})
        return True

    def update(self, resource_id: ResourceId, **changes) -> ResourceStatus:
        """Record the current status with some fields changed."""
        current = self._statuses.get(resource_id) or ResourceStatus.empty(resource_id)
        updated = current.model_copy(update=changes)
        self.record(resource_id, updated)
        return self._statuses.get(resource_id, updated)

    def forget(self, resource_id: ResourceId) -> None:
        """Drop everything known about a resource."""
        self.untrack(resource_id)
        self._statuses.pop(resource_id, None)
        lock = self._ownership.get(resource_id)
        # A held token stays with its holder
        if lock is not None and not lock.locked():
            del self._ownership[resource_id]

    def health_by_resource(self) -> Dict[str, str]:
        return {rid.key: status.health.value for rid, status in self._statuses.items()}

    # =========================================================================
    # POLLING
    # =========================================================================

    def track(self, resource_id: ResourceId, poll_interval: Optional[float] = None) -> None:
        """Poll a resource every `poll_interval` seconds (default interval if None)."""
        interval = poll_interval or self.default_poll_interval
        first_poll = self._clock() if resource_id not in self._poll_intervals else self._next_poll[resource_id]
        self._poll_intervals[resource_id] = interval
        self._next_poll[resource_id] = min(first_poll, self._clock() + interval)

    def untrack(self, resource_id: ResourceId) -> None:
        self._poll_intervals.pop(resource_id, None)
        self._next_poll.pop(resource_id, None)

    def is_tracked(self, resource_id: ResourceId) -> bool:
        return resource_id in self._poll_intervals

    async def poll_once(self, resource_id: ResourceId) -> Optional[ResourceStatus]:
        """
        Refresh one resource from the managed system.

        Returns:
            The new status, or None if the poll was skipped (a reconcile holds
            the ownership token) or failed below the staleness threshold

        Raises:
            TrackerStaleError: When this failure reaches the threshold
        """
        lock = self.ownership(resource_id)
        if lock.locked():
            logger.debug(f"[TRACKER] Skipping poll of {resource_id}: reconcile in progress")
            return None

        async with lock:
            previous = self._statuses.get(resource_id) or ResourceStatus.empty(resource_id)
            try:
                observed = await self.managed_system.poll_status(resource_id)
            except Exception as e:
                failures = previous.consecutive_poll_failures + 1
                stale = failures >= self.failure_threshold
                changes = {"consecutive_poll_failures": failures}
                if stale:
                    changes["health"] = HealthState.UNKNOWN
                self.record(resource_id, previous.model_copy(update=changes))

                if stale:
                    raise TrackerStaleError(
                        f"Polling {resource_id} failed {failures} times in a row: {e}",
                        consecutive_failures=failures,
                    ) from e
                logger.warning(f"[TRACKER] Poll of {resource_id} failed ({failures}/{self.failure_threshold}): {e}")
                return None

            updated = previous.model_copy(update={
                "observed": observed,
                "health": health_from_observation(observed),
                "consecutive_poll_failures": 0,
            })
            self.record(resource_id, updated)

        if not previous.observed.same_shape(observed):
            logger.info(f"[TRACKER] Observed change on {resource_id}")
            if self._queue is not None:
                self._queue.add(resource_id, ReconcileReason.EXTERNAL_DRIFT)

        return self.get(resource_id)

    async def _poll_safely(self, resource_id: ResourceId) -> None:
        try:
            await self.poll_once(resource_id)
        except TrackerStaleError as e:
            logger.warning(f"[TRACKER] {e}")
        except Exception as e:
            logger.error(f"[TRACKER] Unexpected error polling {resource_id}: {e}", exc_info=True)

    def _due(self) -> List[ResourceId]:
        now = self._clock()
        due = [rid for rid, at in self._next_poll.items() if at <= now]
        for rid in due:
            self._next_poll[rid] = now + self._poll_intervals[rid]
        return due

    async def run_poller(self, tick_seconds: float = 1.0) -> None:
        """Poll tracked resources on their own intervals until cancelled."""
        logger.info("[TRACKER] Poller started")
        try:
            while True:
                due = self._due()
                if due:
                    await asyncio.gather(*(self._poll_safely(rid) for rid in due))

                sleep_for = tick_seconds
                if self._next_poll:
                    sleep_for = max(0.0, min(tick_seconds, min(self._next_poll.values()) - self._clock()))
                await asyncio.sleep(sleep_for)
        finally:
            logger.info("[TRACKER] Poller stopped")
