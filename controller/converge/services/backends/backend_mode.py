"""
Backend Mode Enumeration

Defines the managed systems the controller can reconcile against.
"""

from enum import Enum


class BackendMode(str, Enum):
    """
    Supported managed system backends.

    Attributes:
        MEMORY: In-process cluster (local runs, tests, dry experiments)
        KUBERNETES: A real cluster through the Kubernetes API server
    """

    MEMORY = "memory"
    KUBERNETES = "kubernetes"

    @classmethod
    def from_string(cls, value: str) -> "BackendMode":
        """
        Convert a string to BackendMode enum.

        Raises:
            ValueError: If value is not a valid backend
        """
        value_lower = value.lower().strip()
        for mode in cls:
            if mode.value == value_lower:
                return mode
        valid_modes = ", ".join([m.value for m in cls])
        raise ValueError(
            f"Invalid backend: '{value}'. Valid backends: {valid_modes}"
        )

    def __str__(self) -> str:
        return self.value
