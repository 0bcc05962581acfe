"""
Managed System Factory

Provides centralized creation and caching of managed system backends based on
the configured backend mode.
"""

import logging
from typing import Dict, Optional

from .backend_mode import BackendMode
from .base import ManagedSystem

logger = logging.getLogger(__name__)

# Cached backend instances (singleton pattern)
_backends: Dict[BackendMode, ManagedSystem] = {}


class ManagedSystemFactory:
    """
    Factory for creating managed system instances.

    Uses lazy initialization and singleton pattern - backends are created on
    first use and cached for subsequent calls.
    """

    @staticmethod
    def get_backend_mode() -> BackendMode:
        """Get the current backend mode from config."""
        from ...config import get_settings
        settings = get_settings()
        return BackendMode.from_string(settings.backend)

    @staticmethod
    def create_managed_system(mode: Optional[BackendMode] = None) -> ManagedSystem:
        """
        Create or get cached managed system for the specified backend.

        Args:
            mode: Backend mode (default: from config)

        Returns:
            Instance implementing ManagedSystem

        Raises:
            ValueError: If the backend is not supported
        """
        if mode is None:
            mode = ManagedSystemFactory.get_backend_mode()

        # Return cached instance if available
        if mode in _backends:
            return _backends[mode]

        managed_system: ManagedSystem

        if mode == BackendMode.MEMORY:
            from .memory import InMemoryManagedSystem
            managed_system = InMemoryManagedSystem()
            logger.info("[BACKEND] Created in-memory managed system")

        elif mode == BackendMode.KUBERNETES:
            from .kubernetes import get_k8s_managed_system
            managed_system = get_k8s_managed_system()
            logger.info("[BACKEND] Created Kubernetes managed system")

        else:
            raise ValueError(f"Unsupported backend: {mode}")

        _backends[mode] = managed_system
        return managed_system

    @staticmethod
    def clear_cache() -> None:
        """Clear cached backend instances (for testing)."""
        _backends.clear()
        logger.info("[BACKEND] Cleared managed system cache")


def get_managed_system(mode: Optional[BackendMode] = None) -> ManagedSystem:
    """
    Get a managed system instance.

    Example:
        # Backend for current config
        managed_system = get_managed_system()

        # Specific backend
        k8s = get_managed_system(BackendMode.KUBERNETES)
    """
    return ManagedSystemFactory.create_managed_system(mode)


def get_backend_mode() -> BackendMode:
    """Get the current backend mode."""
    return ManagedSystemFactory.get_backend_mode()
