"""
Managed System Backends

The reconciler and tracker talk to the managed system only through the
ManagedSystem interface:
- apply_action(resource_id, action) -> ActionResult
- poll_status(resource_id) -> ObservedAttributes

Backends:
- InMemoryManagedSystem: process-local cluster (CONVERGE_BACKEND=memory)
- KubernetesManagedSystem: Kubernetes API server (CONVERGE_BACKEND=kubernetes)

Usage:
    from converge.services.backends import get_managed_system

    managed_system = get_managed_system()
    result = await managed_system.apply_action(resource_id, action)
"""

from .backend_mode import BackendMode
from .base import ManagedSystem
from .factory import ManagedSystemFactory, get_backend_mode, get_managed_system
from .memory import InMemoryManagedSystem

__all__ = [
    "BackendMode",
    "ManagedSystem",
    "ManagedSystemFactory",
    "get_backend_mode",
    "get_managed_system",
    "InMemoryManagedSystem",
]
