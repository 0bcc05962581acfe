"""
In-Memory Managed System

A process-local stand-in for a cluster. Workloads become ready as soon as
they are scaled. Used for local runs (CONVERGE_BACKEND=memory) and tests.
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional, Tuple

from ...models import Action, ActionResult, ActionType, ObservedAttributes, ResourceId
from ..differ import apply_action
from .backend_mode import BackendMode
from .base import ManagedSystem

logger = logging.getLogger(__name__)


class InMemoryManagedSystem(ManagedSystem):
    """Managed system backed by a dict of ObservedAttributes."""

    def __init__(self, latency_seconds: float = 0.0):
        self._workloads: Dict[ResourceId, ObservedAttributes] = {}
        self._lock = asyncio.Lock()
        self.latency_seconds = latency_seconds
        self.history: List[Tuple[ResourceId, Action]] = []  # Successfully applied actions, in order

        logger.info("[MEMORY] In-memory managed system initialized")

    @property
    def backend_mode(self) -> BackendMode:
        return BackendMode.MEMORY

    async def apply_action(self, resource_id: ResourceId, action: Action) -> ActionResult:
        started = time.monotonic()
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)

        async with self._lock:
            current = self._workloads.get(resource_id)

            if action.type == ActionType.CREATE:
                if current is not None and current.exists:
                    # Idempotent: an earlier attempt already created it
                    return ActionResult.success(observed=current, message="already exists")
            elif current is None or not current.exists:
                return ActionResult.permanent(f"{resource_id} does not exist")

            updated = apply_action(current or ObservedAttributes(), action)
            # Everything scheduled is immediately ready here
            updated = updated.model_copy(update={"ready_replicas": updated.replicas})
            self._workloads[resource_id] = updated
            self.history.append((resource_id, action))

        logger.debug(f"[MEMORY] Applied {action.describe()} to {resource_id}")
        result = ActionResult.success(observed=updated)
        result.latency_seconds = time.monotonic() - started
        return result

    async def poll_status(self, resource_id: ResourceId) -> ObservedAttributes:
        async with self._lock:
            return self._workloads.get(resource_id, ObservedAttributes())

    # =========================================================================
    # OUT-OF-BAND CHANGES
    # =========================================================================

    def seed(self, resource_id: ResourceId, observed: ObservedAttributes) -> None:
        """Install a pre-existing workload, as if created outside the controller."""
        self._workloads[resource_id] = observed

    def mutate(self, resource_id: ResourceId, **changes) -> ObservedAttributes:
        """Change a workload behind the controller's back (external drift)."""
        current = self._workloads.get(resource_id)
        if current is None:
            raise KeyError(f"{resource_id} does not exist")
        updated = current.model_copy(update=changes)
        self._workloads[resource_id] = updated
        logger.info(f"[MEMORY] External change to {resource_id}: {changes}")
        return updated

    def get(self, resource_id: ResourceId) -> Optional[ObservedAttributes]:
        return self._workloads.get(resource_id)
