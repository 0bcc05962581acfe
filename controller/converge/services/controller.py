"""
Controller

Wires the store, tracker, reconciler and scheduler together and exposes the
caller-facing operations (submit, get_status, remove, metrics).
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from ..errors import ResourceNotFoundError
from ..models import (
    HealthState,
    ReconcilePhase,
    ResourceId,
    ResourceSpec,
    ResourceStatus,
)
from .backends import BackendMode, ManagedSystem, get_managed_system
from .desired_state import DesiredStateStore
from .metrics import ControllerMetrics
from .observed_state import ObservedStateTracker
from .reconciler import Reconciler
from .scheduler import SchedulerLoop
from .work_queue import WorkQueue

logger = logging.getLogger(__name__)


class Controller:
    """A complete reconciliation controller for one managed system."""

    def __init__(
        self,
        managed_system: Optional[ManagedSystem] = None,
        settings=None,
        sleep=None,
        enable_poller: bool = True,
    ):
        if settings is None:
            from ..config import get_settings
            settings = get_settings()
        if managed_system is None:
            managed_system = get_managed_system(BackendMode.from_string(settings.backend))

        self.settings = settings
        self.managed_system = managed_system
        self.queue = WorkQueue()
        self.metrics_registry = ControllerMetrics()
        self.store = DesiredStateStore(self.queue)
        self.tracker = ObservedStateTracker(
            managed_system,
            queue=self.queue,
            failure_threshold=settings.poll_failure_threshold,
            default_poll_interval=settings.poll_interval_seconds,
        )
        self.reconciler = Reconciler(
            self.store,
            self.tracker,
            managed_system,
            metrics=self.metrics_registry,
            settings=settings,
            sleep=sleep,
        )
        self.scheduler = SchedulerLoop(
            self.queue,
            self.store,
            self.reconciler,
            tracker=self.tracker,
            worker_count=settings.worker_count,
            resync_period_seconds=settings.resync_period_seconds,
            enable_poller=enable_poller,
        )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        logger.info(f"[CONTROLLER] Starting with {self.managed_system.backend_mode} backend")
        await self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.managed_system.close()
        logger.info("[CONTROLLER] Stopped")

    async def wait_idle(self) -> None:
        """Wait until no reconcile work is pending or in flight."""
        await self.queue.wait_idle()

    # =========================================================================
    # CALLER INTERFACE
    # =========================================================================

    async def submit(self, spec: Union[ResourceSpec, Mapping[str, Any]]) -> ResourceSpec:
        """
        Submit desired state for a resource.

        Returns:
            The accepted spec with its generation

        Raises:
            ValidationError: If the submission is rejected
        """
        accepted = await self.store.submit(spec)
        self.tracker.track(accepted.id, accepted.poll_interval_seconds)
        return accepted

    def get_spec(self, resource_id: ResourceId) -> ResourceSpec:
        spec = self.store.get(resource_id)
        if spec is None:
            raise ResourceNotFoundError(f"Resource {resource_id} is not managed")
        return spec

    def get_status(self, resource_id: ResourceId) -> ResourceStatus:
        """
        Current status of a managed resource.

        Permanent failures surface here (phase/health Degraded plus message);
        they are never raised to the caller.

        Raises:
            ResourceNotFoundError: If the resource is not managed
        """
        spec = self.get_spec(resource_id)
        status = self.tracker.get(resource_id) or ResourceStatus.empty(resource_id)
        record = self.reconciler.get_record(resource_id)

        phase = self._effective_phase(resource_id, spec, record)
        health = status.health
        message = status.message
        if phase == ReconcilePhase.DEGRADED:
            health = HealthState.DEGRADED
            message = record.last_error or message

        return status.model_copy(update={"phase": phase, "health": health, "message": message})

    def _effective_phase(self, resource_id: ResourceId, spec: ResourceSpec, record) -> ReconcilePhase:
        if record is None:
            return ReconcilePhase.PENDING
        if record.phase == ReconcilePhase.IN_PROGRESS:
            return ReconcilePhase.IN_PROGRESS
        halted = record.halted_generation == spec.generation
        if self.queue.is_pending(resource_id) and not halted:
            return ReconcilePhase.PENDING
        return record.phase

    def list_statuses(self) -> List[ResourceStatus]:
        return [self.get_status(resource_id) for resource_id in self.store.ids()]

    async def remove(self, resource_id: ResourceId) -> ResourceSpec:
        """
        Stop managing a resource. The workload itself is left in place.

        Raises:
            ResourceNotFoundError: If the resource is not managed
        """
        removed = await self.store.remove(resource_id)
        if removed is None:
            raise ResourceNotFoundError(f"Resource {resource_id} is not managed")
        self.tracker.forget(resource_id)
        self.reconciler.forget(resource_id)
        return removed

    def metrics(self) -> Dict[str, Any]:
        """Read-only snapshot of queue depth, health and action latency."""
        phases = {}
        for resource_id in self.store.ids():
            spec = self.store.get(resource_id)
            record = self.reconciler.get_record(resource_id)
            phases[resource_id.key] = self._effective_phase(resource_id, spec, record).value
        return self.metrics_registry.snapshot(
            queue_depth=self.queue.depth,
            in_flight=self.queue.in_flight,
            health=self.tracker.health_by_resource(),
            phases=phases,
        )


# Global controller instance
_controller: Optional[Controller] = None


def get_controller() -> Controller:
    """Get the global controller instance"""
    global _controller
    if _controller is None:
        _controller = Controller()
    return _controller
