"""
Reconciler

Drives observed state toward desired state for one resource at a time.

Per-resource state machine:
    Pending -> InProgress -> {Converged, Degraded}
    Degraded -> Pending on the next spec change or the next scheduled retry

Failure handling:
- Transient failures are retried with jittered exponential backoff
  (see retry_policy); unlimited attempts unless configured otherwise
- A permanent failure marks the resource Degraded, surfaces the cause on its
  status, and halts periodic/drift retries until the resource generation changes
- Actions are re-issued after transient failures, so every backend action
  must be idempotent (at-least-once execution)
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from ..errors import (
    PermanentActionError,
    ReconcileSuperseded,
    TransientActionError,
)
from ..models import (
    Action,
    ActionOutcome,
    ActionResult,
    HealthState,
    ReconcilePhase,
    ReconcileReason,
    ReconcileTask,
    ResourceId,
    ResourceSpec,
    ResourceStatus,
    utcnow,
)
from .backends.base import ManagedSystem
from .desired_state import DesiredStateStore
from .differ import apply_action, diff
from .metrics import ControllerMetrics
from .observed_state import ObservedStateTracker
from .retry_policy import create_action_retrying, is_transient_error

logger = logging.getLogger(__name__)


@dataclass
class ReconcileRecord:
    """Reconcile bookkeeping for one resource."""
    resource_id: ResourceId
    phase: ReconcilePhase = ReconcilePhase.PENDING
    halted_generation: Optional[int] = None  # Set by a permanent failure
    last_error: Optional[str] = None
    last_reason: Optional[ReconcileReason] = None
    reconcile_count: int = 0
    action_attempts: int = 0
    retry_count: int = 0
    total_backoff_seconds: float = 0.0
    last_started_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource": self.resource_id.key,
            "phase": self.phase.value,
            "halted_generation": self.halted_generation,
            "last_error": self.last_error,
            "last_reason": self.last_reason.value if self.last_reason else None,
            "reconcile_count": self.reconcile_count,
            "action_attempts": self.action_attempts,
            "retry_count": self.retry_count,
            "total_backoff_seconds": round(self.total_backoff_seconds, 3),
            "last_started_at": self.last_started_at.isoformat() if self.last_started_at else None,
            "last_finished_at": self.last_finished_at.isoformat() if self.last_finished_at else None,
        }


class Reconciler:
    """Applies the differ's actions for one resource per call."""

    def __init__(
        self,
        store: DesiredStateStore,
        tracker: ObservedStateTracker,
        managed_system: ManagedSystem,
        metrics: Optional[ControllerMetrics] = None,
        settings=None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        if settings is None:
            from ..config import get_settings
            settings = get_settings()

        self.store = store
        self.tracker = tracker
        self.managed_system = managed_system
        self.metrics = metrics or ControllerMetrics()
        self.max_attempts = settings.max_transient_attempts
        self.backoff_base = settings.backoff_base_seconds
        self.backoff_cap = settings.backoff_cap_seconds
        self.backoff_jitter = settings.backoff_jitter
        self._sleep = sleep
        self._records: Dict[ResourceId, ReconcileRecord] = {}

    # =========================================================================
    # RECORDS
    # =========================================================================

    def record_for(self, resource_id: ResourceId) -> ReconcileRecord:
        record = self._records.get(resource_id)
        if record is None:
            record = ReconcileRecord(resource_id=resource_id)
            self._records[resource_id] = record
        return record

    def get_record(self, resource_id: ResourceId) -> Optional[ReconcileRecord]:
        return self._records.get(resource_id)

    def forget(self, resource_id: ResourceId) -> None:
        self._records.pop(resource_id, None)

    # =========================================================================
    # RECONCILE
    # =========================================================================

    async def reconcile(self, task: ReconcileTask) -> Optional[ReconcilePhase]:
        """
        Reconcile one resource.

        Never raises for action failures; the outcome is recorded on the
        resource's ReconcileRecord and status.

        Returns:
            Resulting phase, or None if the resource is no longer managed
        """
        resource_id = task.resource_id
        spec = self.store.get(resource_id)
        if spec is None:
            logger.debug(f"[RECONCILE] {resource_id} is no longer managed, dropping {task.reason.value} task")
            return None

        record = self.record_for(resource_id)
        if task.reason != ReconcileReason.SPEC_CHANGED and record.halted_generation == spec.generation:
            logger.debug(
                f"[RECONCILE] {resource_id} halted at generation {spec.generation} "
                f"after a permanent failure, skipping {task.reason.value} task"
            )
            return record.phase

        async with self.tracker.ownership(resource_id):
            # A newer generation may have arrived while waiting for the token
            spec = self.store.get(resource_id)
            if spec is None:
                return None

            record.phase = ReconcilePhase.IN_PROGRESS
            record.reconcile_count += 1
            record.last_reason = task.reason
            record.last_started_at = utcnow()
            logger.info(
                f"[RECONCILE] {resource_id} generation {spec.generation} ({task.reason.value})"
            )

            try:
                await self._converge(task, spec, record)
            except ReconcileSuperseded:
                record.phase = ReconcilePhase.PENDING
                logger.info(f"[RECONCILE] {resource_id} superseded by a newer spec")
            except PermanentActionError as e:
                self._degrade(resource_id, record, str(e), halt_generation=spec.generation)
            except TransientActionError as e:
                # Attempts exhausted; periodic ticks will try again
                self._degrade(resource_id, record, str(e), halt_generation=None)
            except Exception as e:
                logger.error(f"[RECONCILE] Unexpected error reconciling {resource_id}: {e}", exc_info=True)
                self._degrade(resource_id, record, f"{type(e).__name__}: {e}", halt_generation=spec.generation)
            else:
                record.phase = ReconcilePhase.CONVERGED
                record.last_error = None
                record.halted_generation = None
            finally:
                record.last_finished_at = utcnow()

        self.metrics.observe_reconcile(record.phase)
        if self.store.get(resource_id) is None:
            # Removed while reconciling
            self.tracker.forget(resource_id)
            self.forget(resource_id)
            return None
        return record.phase

    def _degrade(
        self,
        resource_id: ResourceId,
        record: ReconcileRecord,
        message: str,
        halt_generation: Optional[int],
    ) -> None:
        record.phase = ReconcilePhase.DEGRADED
        record.last_error = message
        record.halted_generation = halt_generation
        self.tracker.update(resource_id, health=HealthState.DEGRADED, message=message)
        if halt_generation is not None:
            logger.error(f"[RECONCILE] {resource_id} degraded, halting retries until a new generation is submitted: {message}")
        else:
            logger.warning(f"[RECONCILE] {resource_id} degraded after exhausting retries: {message}")

    async def _converge(self, task: ReconcileTask, spec: ResourceSpec, record: ReconcileRecord) -> None:
        resource_id = spec.id
        status = self.tracker.get(resource_id) or ResourceStatus.empty(resource_id)
        actions = diff(spec, status)

        if actions:
            logger.info(
                f"[RECONCILE] {resource_id}: {len(actions)} action(s): "
                + ", ".join(action.describe() for action in actions)
            )

        observed = status.observed
        destructive_applied = False

        for action in actions:
            # Cancellation is only allowed while nothing irreversible has happened
            if task.superseded.is_set() and not destructive_applied:
                raise ReconcileSuperseded(f"{resource_id} superseded before {action.describe()}")

            abortable = not destructive_applied
            result = await self._apply_with_retry(resource_id, action, task, record, abortable)

            observed = result.observed if result.observed is not None else apply_action(observed, action)
            self.tracker.update(resource_id, observed=observed)
            destructive_applied = destructive_applied or action.destructive

        if self.store.get(resource_id) is None:
            logger.info(f"[RECONCILE] {resource_id} removed while reconciling generation {spec.generation}")
            return

        self.tracker.update(
            resource_id,
            observed=observed,
            last_reconciled_generation=spec.generation,
            health=HealthState.HEALTHY,
            message=None,
        )
        logger.info(f"[RECONCILE] ✅ {resource_id} converged at generation {spec.generation}")

    # =========================================================================
    # ACTIONS
    # =========================================================================

    async def _apply_with_retry(
        self,
        resource_id: ResourceId,
        action: Action,
        task: ReconcileTask,
        record: ReconcileRecord,
        abortable: bool,
    ) -> ActionResult:
        cancel_event = task.superseded if abortable else None

        async def backoff(delay: float) -> None:
            record.total_backoff_seconds += delay
            await self._wait(delay, cancel_event)

        retrying = create_action_retrying(
            max_attempts=self.max_attempts,
            base=self.backoff_base,
            cap=self.backoff_cap,
            jitter=self.backoff_jitter,
            sleep=backoff,
        )

        result = None
        async for attempt in retrying:
            with attempt:
                record.action_attempts += 1
                if attempt.retry_state.attempt_number > 1:
                    record.retry_count += 1
                result = await self._apply_once(resource_id, action)
        return result

    async def _apply_once(self, resource_id: ResourceId, action: Action) -> ActionResult:
        started = time.monotonic()
        try:
            result = await self.managed_system.apply_action(resource_id, action)
        except (TransientActionError, PermanentActionError) as e:
            outcome = (
                ActionOutcome.TRANSIENT_FAILURE
                if isinstance(e, TransientActionError)
                else ActionOutcome.PERMANENT_FAILURE
            )
            self.metrics.observe_action(action.type, time.monotonic() - started, outcome)
            raise
        except Exception as e:
            transient = is_transient_error(e)
            outcome = ActionOutcome.TRANSIENT_FAILURE if transient else ActionOutcome.PERMANENT_FAILURE
            self.metrics.observe_action(action.type, time.monotonic() - started, outcome)
            message = f"{action.describe()} on {resource_id} failed: {type(e).__name__}: {e}"
            if transient:
                raise TransientActionError(message, action=action) from e
            raise PermanentActionError(message, action=action) from e

        latency = result.latency_seconds or (time.monotonic() - started)
        self.metrics.observe_action(action.type, latency, result.outcome)

        if result.outcome == ActionOutcome.TRANSIENT_FAILURE:
            raise TransientActionError(
                result.message or f"{action.describe()} on {resource_id} failed transiently",
                action=action,
            )
        if result.outcome == ActionOutcome.PERMANENT_FAILURE:
            raise PermanentActionError(
                result.message or f"{action.describe()} on {resource_id} failed permanently",
                action=action,
            )
        return result

    async def _wait(self, delay: float, cancel_event: Optional[asyncio.Event]) -> None:
        """Backoff delay that a newer spec can interrupt."""
        if self._sleep is not None:
            await self._sleep(delay)
            if cancel_event is not None and cancel_event.is_set():
                raise ReconcileSuperseded("superseded during backoff")
            return

        if cancel_event is None:
            await asyncio.sleep(delay)
            return

        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise ReconcileSuperseded("superseded during backoff")
