"""
Tests for the retry combinator.
"""

import pytest

from freight_ledger.core.errors import ConflictError, ContentionError, NotFoundError
from freight_ledger.core.retry import with_retry


def _is_conflict(error):
    return isinstance(error, ConflictError)


class FlakyOperation:
    """Fails with ConflictError a set number of times, then returns the attempt."""

    def __init__(self, failures: int):
        self.failures = failures
        self.calls = []

    def __call__(self, attempt: int) -> int:
        self.calls.append(attempt)
        if len(self.calls) <= self.failures:
            raise ConflictError("taken")
        return attempt


class TestWithRetry:
    """Test bounded and unbounded retry behavior."""

    def test_succeeds_after_retryable_failures(self):
        operation = FlakyOperation(failures=2)
        assert with_retry(operation, _is_conflict, attempts=5) == 3
        assert operation.calls == [1, 2, 3]

    def test_non_retryable_error_propagates_immediately(self):
        def operation(attempt):
            raise NotFoundError("gone")

        with pytest.raises(NotFoundError):
            with_retry(operation, _is_conflict, attempts=5)

    def test_exhaustion_raises_contention(self):
        operation = FlakyOperation(failures=100)
        with pytest.raises(ContentionError) as exc_info:
            with_retry(operation, _is_conflict, attempts=4)
        assert len(operation.calls) == 4
        assert exc_info.value.reason == "contention"
        assert isinstance(exc_info.value.__cause__, ConflictError)

    def test_custom_exhaustion_error(self):
        operation = FlakyOperation(failures=100)
        with pytest.raises(ContentionError, match="busy"):
            with_retry(
                operation,
                _is_conflict,
                attempts=2,
                on_exhausted=lambda e: ContentionError("busy")
            )

    def test_unbounded_retries_until_success(self):
        operation = FlakyOperation(failures=250)
        assert with_retry(operation, _is_conflict) == 251

    def test_invalid_attempt_bound(self):
        with pytest.raises(ValueError):
            with_retry(lambda attempt: attempt, _is_conflict, attempts=0)
