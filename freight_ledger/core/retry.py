"""
Bounded and unbounded retry of identifier-minting operations.

Used wherever uniqueness is finally decided by the store: a sequential
code that collides with a row the counter did not know about, or a
random code that is already taken.
"""

import logging
from typing import Callable, Optional, TypeVar

from .errors import ContentionError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def with_retry(
    operation: Callable[[int], T],
    is_retryable: Callable[[Exception], bool],
    attempts: Optional[int] = None,
    on_exhausted: Optional[Callable[[Exception], Exception]] = None,
    label: str = "operation"
) -> T:
    """Run `operation` until it succeeds or fails with a non-retryable error.

    Args:
        operation: Callable receiving the 1-based attempt number
        is_retryable: Predicate selecting the errors that trigger another attempt
        attempts: Maximum number of attempts, or None to retry without bound
        on_exhausted: Builds the error raised once `attempts` retryable
            failures have occurred; defaults to ContentionError
        label: Name used in log messages

    Returns:
        The first successful result of `operation`

    Raises:
        Any error for which `is_retryable` is false, untouched.
        The `on_exhausted` error when the attempt bound is reached.
    """
    if attempts is not None and attempts < 1:
        raise ValueError("attempts must be >= 1")

    attempt = 0
    while True:
        attempt += 1
        try:
            return operation(attempt)
        except Exception as e:
            if not is_retryable(e):
                raise
            if attempts is not None and attempt >= attempts:
                logger.warning(f"[RETRY] {label}: giving up after {attempt} attempts ({e})")
                if on_exhausted is not None:
                    raise on_exhausted(e) from e
                raise ContentionError(
                    f"{label} failed after {attempt} attempts due to concurrent contention"
                ) from e
            logger.warning(f"[RETRY] {label}: attempt {attempt} collided ({e}), retrying")
