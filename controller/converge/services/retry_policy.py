"""
Retry Strategy for Corrective Actions

Implements the reconciler's backoff using the tenacity library:
- Transient failures are retried with exponential backoff (base 1s, cap 60s)
- Every delay is jittered by +/-20% so resources that failed together spread out
- Permanent failures are never retried
- Attempts are unlimited by default; set max_attempts to bound them
"""

import logging
import random
from typing import Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    stop_never,
)
from tenacity.wait import wait_base

from ..errors import PermanentActionError, TransientActionError

logger = logging.getLogger(__name__)


# Transient errors that should be retried automatically
# Note: FileNotFoundError and PermissionError are OSError subclasses but
# indicate problems a retry cannot fix
_RETRYABLE_EXCEPTION_TYPES = (
    TransientActionError,
    ConnectionError,      # Network issues
    TimeoutError,         # Request timeouts
)

_NON_RETRYABLE_EXCEPTION_TYPES = (
    PermanentActionError,
    FileNotFoundError,
    PermissionError,
)


def is_transient_error(exception: BaseException) -> bool:
    """
    Check if an exception should trigger a retry.

    Example:
        >>> is_transient_error(TransientActionError("409 conflict"))
        True
        >>> is_transient_error(ConnectionError())
        True
        >>> is_transient_error(PermanentActionError("422 invalid"))
        False
        >>> is_transient_error(ValueError("bad param"))
        False
    """
    if isinstance(exception, _NON_RETRYABLE_EXCEPTION_TYPES):
        return False
    return isinstance(exception, _RETRYABLE_EXCEPTION_TYPES)


class wait_jittered_exponential(wait_base):
    """
    Exponential backoff with symmetric jitter.

    delay(n) = min(cap, base * 2 ** (n - 1)) * uniform(1 - jitter, 1 + jitter)

    - 1st retry: ~1 second
    - 2nd retry: ~2 seconds
    - 3rd retry: ~4 seconds
    - ...capped at ~60 seconds
    """

    def __init__(
        self,
        base: float = 1.0,
        cap: float = 60.0,
        jitter: float = 0.2,
        rng: Optional[random.Random] = None,
    ):
        if base <= 0 or cap <= 0:
            raise ValueError("backoff base and cap must be positive")
        if not 0 <= jitter < 1:
            raise ValueError("backoff jitter must be in [0, 1)")
        self.base = base
        self.cap = cap
        self.jitter = jitter
        self.rng = rng or random.Random()

    def delay_for(self, attempt_number: int) -> float:
        exponent = max(attempt_number - 1, 0)
        # Avoid float overflow on very long outages
        raw = self.cap if exponent >= 64 else min(self.cap, self.base * (2 ** exponent))
        return raw * self.rng.uniform(1 - self.jitter, 1 + self.jitter)

    def __call__(self, retry_state) -> float:
        return self.delay_for(retry_state.attempt_number)


def create_action_retrying(
    max_attempts: Optional[int] = None,
    base: float = 1.0,
    cap: float = 60.0,
    jitter: float = 0.2,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> AsyncRetrying:
    """
    Create the retry controller used for one corrective action.

    Args:
        max_attempts: Total attempts including the first (None = unlimited)
        base: First retry delay in seconds
        cap: Maximum delay in seconds before jitter
        jitter: +/- fraction applied to every delay
        sleep: Awaitable sleep used between attempts (defaults to asyncio.sleep)

    Returns:
        tenacity.AsyncRetrying that re-raises the last error when it gives up

    Example:
        >>> async for attempt in create_action_retrying(max_attempts=5):
        ...     with attempt:
        ...         await apply()
    """
    kwargs = dict(
        stop=stop_never if max_attempts is None else stop_after_attempt(max_attempts),
        wait=wait_jittered_exponential(base=base, cap=cap, jitter=jitter),
        # Only retry on transient exceptions
        retry=retry_if_exception(is_transient_error),
        # Log before each retry attempt
        before_sleep=before_sleep_log(logger, logging.WARNING),
        # Re-raise the exception if all retries fail
        reraise=True,
    )
    if sleep is not None:
        kwargs["sleep"] = sleep
    return AsyncRetrying(**kwargs)


def create_action_retrying_from_settings(settings, sleep=None) -> AsyncRetrying:
    """Build the retry controller from converge.config.Settings."""
    return create_action_retrying(
        max_attempts=settings.max_transient_attempts,
        base=settings.backoff_base_seconds,
        cap=settings.backoff_cap_seconds,
        jitter=settings.backoff_jitter,
        sleep=sleep,
    )
