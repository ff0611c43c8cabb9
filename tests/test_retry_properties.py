"""Property-based tests for retry logic with exponential backoff.

Feature: roster-change-tracking
"""

from unittest.mock import Mock

import pytest
import structlog
from hypothesis import given, settings
from hypothesis import strategies as st

from roster_changes.errors import StorageError
from roster_changes.utils.retry import exponential_backoff_retry

log = structlog.stdlib.get_logger()


@given(
    st.integers(min_value=1, max_value=6),
    st.floats(min_value=0.01, max_value=2.0),
    st.floats(min_value=0.5, max_value=10.0),
)
@settings(max_examples=100)
def test_property_19_exponential_backoff_behavior(
    num_failures: int, base_delay: float, max_delay: float
):
    """Property 19: Exponential backoff behavior.

    For any run of transient failures, the waits between attempts double
    each time until they reach max_delay.

    **Feature: roster-change-tracking, Property 19: Exponential backoff behavior**
    """
    sleep = Mock()
    call_count = 0

    @exponential_backoff_retry(
        max_retries=num_failures,
        base_delay=base_delay,
        max_delay=max_delay,
        exceptions=(ValueError,),
        sleep=sleep,
    )
    def flaky():
        nonlocal call_count
        call_count += 1
        if call_count <= num_failures:
            raise ValueError(f"Simulated failure {call_count}")
        return "success"

    assert flaky() == "success"
    assert call_count == num_failures + 1

    delays = [c.args[0] for c in sleep.call_args_list]
    assert delays == [min(base_delay * (2**i), max_delay) for i in range(num_failures)]
    log.info("exponential_backoff_verified", delays=delays)


@given(st.integers(min_value=0, max_value=10))
@settings(max_examples=50)
def test_backoff_respects_max_retries(max_retries: int):
    sleep = Mock()
    call_count = 0

    @exponential_backoff_retry(
        max_retries=max_retries, base_delay=0.01, exceptions=(ValueError,), sleep=sleep
    )
    def always_failing():
        nonlocal call_count
        call_count += 1
        raise ValueError("Always fails")

    with pytest.raises(ValueError):
        always_failing()

    assert call_count == max_retries + 1
    assert sleep.call_count == max_retries


def test_non_retryable_errors_raise_immediately():
    sleep = Mock()
    func = Mock(side_effect=StorageError("constraint violated", retryable=False))
    func.__name__ = "write_chunk"

    wrapped = exponential_backoff_retry(
        max_retries=3,
        exceptions=(StorageError,),
        retry_if=lambda e: e.retryable,
        sleep=sleep,
    )(func)

    with pytest.raises(StorageError):
        wrapped()

    assert func.call_count == 1
    sleep.assert_not_called()


def test_unlisted_exceptions_are_not_retried():
    sleep = Mock()
    func = Mock(side_effect=KeyError("missing"))
    func.__name__ = "lookup"

    with pytest.raises(KeyError):
        exponential_backoff_retry(exceptions=(ValueError,), sleep=sleep)(func)()

    assert func.call_count == 1
    sleep.assert_not_called()
