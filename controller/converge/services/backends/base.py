"""
Abstract Managed System

Defines the interface the reconciler and tracker use to act on and observe a
managed system. Every backend must implement it so the core stays identical
whether it drives the in-process cluster or a real Kubernetes API server.
"""

from abc import ABC, abstractmethod

from ...models import Action, ActionResult, ObservedAttributes, ResourceId
from .backend_mode import BackendMode


class ManagedSystem(ABC):
    """
    Abstract base class for managed systems.

    Implementations must make every action idempotent: the reconciler has
    at-least-once semantics and may re-issue an action after a transient
    failure whose effect actually landed.
    """

    @property
    @abstractmethod
    def backend_mode(self) -> BackendMode:
        """Return the backend this managed system represents."""
        pass

    @abstractmethod
    async def apply_action(self, resource_id: ResourceId, action: Action) -> ActionResult:
        """
        Apply one corrective action.

        Args:
            resource_id: Target resource
            action: Action produced by the differ

        Returns:
            ActionResult. Implementations report failures through the result's
            outcome; they may also raise TransientActionError or
            PermanentActionError directly.
        """
        pass

    @abstractmethod
    async def poll_status(self, resource_id: ResourceId) -> ObservedAttributes:
        """
        Read the live attributes of a resource.

        Returns:
            ObservedAttributes (exists=False when the resource is absent)

        Raises:
            Exception: Any error; the tracker counts it as a poll failure
        """
        pass

    async def close(self) -> None:
        """Release backend resources. Optional."""
        return None
