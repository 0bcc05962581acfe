"""
Controller Errors

The core only raises these; the HTTP layer maps them to status codes.
"""

from typing import Optional


class ConvergeError(Exception):
    """Base error for the controller."""
    pass


class ValidationError(ConvergeError):
    """A submitted spec was rejected. Never retried."""

    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(message)
        self.errors = errors or []


class ResourceNotFoundError(ConvergeError):
    """No spec is stored for the requested identifier."""
    pass


class BackendError(ConvergeError):
    """The managed system backend is misconfigured or unavailable."""
    pass


class ActionError(ConvergeError):
    """Base for failures reported while applying a corrective action."""

    def __init__(self, message: str, action=None):
        super().__init__(message)
        self.action = action


class TransientActionError(ActionError):
    """Action failed but may succeed later. Absorbed by the retry loop."""
    pass


class PermanentActionError(ActionError):
    """Action can never succeed for this spec generation."""
    pass


class TrackerStaleError(ConvergeError):
    """Polling failed too many times in a row; health is Unknown."""

    def __init__(self, message: str, consecutive_failures: int = 0):
        super().__init__(message)
        self.consecutive_failures = consecutive_failures


class ReconcileSuperseded(ConvergeError):
    """An in-flight reconcile was cancelled in favour of a newer spec."""
    pass
