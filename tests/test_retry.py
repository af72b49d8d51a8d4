from __future__ import annotations

import pytest

from mobile_flow.errors import RetryExhaustedError
from mobile_flow.models import BuildAttempt
from mobile_flow.retry import RetryController, RetryState


def test_three_failures_exhaust_the_budget() -> None:
    controller = RetryController(max_attempts=3)
    attempt = controller.start()
    decisions = []

    for _ in range(3):
        attempt = controller.record_failure(controller.begin_attempt(attempt), "compile error")
        decisions.append(controller.state_after(attempt, succeeded=False))

    assert decisions == [RetryState.RECOVERING, RetryState.RECOVERING, RetryState.EXHAUSTED]
    assert attempt.attempt_number == 3
    assert attempt.last_error == "compile error"
    with pytest.raises(RetryExhaustedError):
        controller.begin_attempt(attempt)


def test_success_on_second_attempt_records_attempt_number() -> None:
    controller = RetryController(max_attempts=3)
    attempt = controller.record_failure(controller.begin_attempt(controller.start()), "flaky")

    attempt = controller.record_success(controller.begin_attempt(attempt))

    assert attempt.attempt_number == 2
    assert attempt.last_error is None
    assert controller.state_after(attempt, succeeded=True) == RetryState.SUCCEEDED


def test_unknown_outcome_reports_attempting_until_exhausted() -> None:
    assert RetryController.state_after(BuildAttempt(attempt_number=1), None) == RetryState.ATTEMPTING
    assert RetryController.state_after(BuildAttempt(attempt_number=3), None) == RetryState.EXHAUSTED


def test_load_restores_or_starts_fresh() -> None:
    controller = RetryController(max_attempts=5)

    assert controller.load(None) == BuildAttempt(attempt_number=0, max_attempts=5)
    assert controller.load({"attempt_number": 2, "max_attempts": 3}).attempt_number == 2


def test_attempt_model_enforces_budget() -> None:
    with pytest.raises(ValueError):
        BuildAttempt(attempt_number=4, max_attempts=3)
    with pytest.raises(ValueError):
        RetryController(max_attempts=0)
