"""Tests for the bounded retry driver."""

from unittest.mock import Mock

import pytest

from vpnpool.common.errors import FatalProviderError, TransientProviderError
from vpnpool.common.retry import Outcome, RetryPolicy, is_transient, run_with_retry


def flaky(*outcomes):
    """Operation that raises or returns each outcome in turn."""
    calls = list(outcomes)

    def operation(attempt):
        result = calls.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    return operation


@pytest.fixture
def policy():
    return RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=30.0, jitter=False)


@pytest.mark.parametrize(
    "attempt, expected",
    [(1, 1.0), (2, 2.0), (3, 4.0), (5, 16.0), (6, 30.0), (10, 30.0)],
)
def test_delay_after(policy, attempt, expected):
    assert policy.delay_after(attempt) == expected


def test_delay_with_jitter_is_bounded():
    policy = RetryPolicy(max_attempts=3, base_delay=2.0, max_delay=30.0, jitter=True)
    for _ in range(50):
        assert 0 <= policy.delay_after(3) <= 8.0


@pytest.mark.parametrize(
    "error, expected",
    [
        (TransientProviderError("busy"), True),
        (TimeoutError("slow"), True),
        (ConnectionError("reset"), True),
        (FatalProviderError("bad image"), False),
        (ValueError("bug"), False),
    ],
)
def test_is_transient(error, expected):
    assert is_transient(error) is expected


def test_success_first_try(policy):
    sleep = Mock()
    result = run_with_retry(flaky("ok"), policy, sleep=sleep)

    assert result.outcome == Outcome.SUCCEEDED
    assert result.succeeded
    assert result.value == "ok"
    assert result.attempts == 1
    sleep.assert_not_called()


def test_success_after_transient_failures(policy):
    sleeps = []
    result = run_with_retry(
        flaky(TransientProviderError("a"), TransientProviderError("b"), "ok"),
        policy,
        sleep=sleeps.append,
    )

    assert result.outcome == Outcome.SUCCEEDED
    assert result.attempts == 3
    assert sleeps == [1.0, 2.0]
    assert result.delays == [1.0, 2.0]


def test_exhausted_after_max_attempts(policy):
    sleeps = []
    operation = Mock(side_effect=TransientProviderError("quota"))

    result = run_with_retry(operation, policy, sleep=sleeps.append)

    assert result.outcome == Outcome.EXHAUSTED
    assert result.attempts == 3
    assert operation.call_count == 3
    assert sleeps == [1.0, 2.0]
    assert result.last_error == "quota"


def test_fatal_error_stops_immediately(policy):
    sleeps = []
    operation = Mock(side_effect=FatalProviderError("no such image"))

    result = run_with_retry(operation, policy, sleep=sleeps.append)

    assert result.outcome == Outcome.FATAL
    assert result.attempts == 1
    assert operation.call_count == 1
    assert sleeps == []
    assert isinstance(result.error, FatalProviderError)


def test_custom_classifier(policy):
    operation = Mock(side_effect=KeyError("x"))
    result = run_with_retry(
        operation, policy, classifier=lambda e: isinstance(e, KeyError), sleep=lambda _: None
    )
    assert result.outcome == Outcome.EXHAUSTED
    assert operation.call_count == 3


def test_before_attempt_can_abort(policy):
    operation = Mock(side_effect=TransientProviderError("busy"))
    seen = []

    def before_attempt(attempt):
        seen.append(attempt)
        return attempt < 2

    result = run_with_retry(operation, policy, before_attempt=before_attempt, sleep=lambda _: None)

    assert result.outcome == Outcome.ABORTED
    assert result.attempts == 1
    assert operation.call_count == 1
    assert seen == [1, 2]


def test_operation_receives_attempt_number(policy):
    seen = []

    def operation(attempt):
        seen.append(attempt)
        if attempt < 3:
            raise TransientProviderError("again")
        return attempt

    result = run_with_retry(operation, policy, sleep=lambda _: None)
    assert seen == [1, 2, 3]
    assert result.value == 3


def test_single_attempt_policy_never_sleeps():
    sleeps = []
    result = run_with_retry(
        Mock(side_effect=TransientProviderError("busy")),
        RetryPolicy(max_attempts=1, base_delay=1.0, max_delay=1.0, jitter=False),
        sleep=sleeps.append,
    )
    assert result.outcome == Outcome.EXHAUSTED
    assert sleeps == []
