"""
Bounded retry with exponential backoff for transient chain/RPC errors.
"""

import time
import logging
from typing import Callable, TypeVar

from .errors import ResolverError

log = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_retry(fn: Callable[..., T], *args,
                    attempts: int = 3,
                    backoff: float = 1.0,
                    factor: float = 2.0,
                    max_backoff: float = 30.0,
                    sleep: Callable[[float], None] = time.sleep,
                    **kwargs) -> T:
    """
    Call fn, retrying only ResolverErrors flagged retryable.

    Args:
        fn: Callable to invoke
        attempts: Total attempts (>= 1)
        backoff: Initial delay in seconds
        factor: Delay multiplier per attempt
        max_backoff: Upper bound on a single delay
        sleep: Sleep function (injectable for tests)

    Returns:
        Whatever fn returns

    Raises:
        The last error once attempts are exhausted, or any non-retryable
        error immediately.
    """
    attempts = max(1, attempts)
    delay = backoff
    for attempt in range(1, attempts + 1):
        try:
            return fn(*args, **kwargs)
        except ResolverError as e:
            if not e.retryable or attempt == attempts:
                raise
            name = getattr(fn, "__name__", repr(fn))
            log.warning(f"{name} failed ({e.kind}: {e.message}), "
                        f"retry {attempt}/{attempts - 1} in {delay:.1f}s")
            sleep(delay)
            delay = min(delay * factor, max_backoff)
    raise AssertionError("unreachable")
