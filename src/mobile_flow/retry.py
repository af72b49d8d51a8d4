from __future__ import annotations

import logging
from collections.abc import Mapping
from enum import Enum
from typing import Any

from .errors import RetryExhaustedError
from .models import BuildAttempt

logger = logging.getLogger(__name__)


class RetryState(str, Enum):
    ATTEMPTING = "attempting"
    RECOVERING = "recovering"
    EXHAUSTED = "exhausted"
    SUCCEEDED = "succeeded"


class RetryController:
    """Bounded attempt/recover loop over an immutable ``BuildAttempt``.

    ``start`` opens a new build request at attempt zero. Every attempt calls
    ``begin_attempt`` first, then ``record_failure`` or ``record_success``.
    ``state_after`` tells the router where to go: recovery while budget
    remains, exhaustion once ``attempt_number`` reaches ``max_attempts``.
    """

    def __init__(self, max_attempts: int = 3) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got: {max_attempts}")
        self.max_attempts = max_attempts

    def start(self) -> BuildAttempt:
        return BuildAttempt(attempt_number=0, max_attempts=self.max_attempts)

    def begin_attempt(self, attempt: BuildAttempt) -> BuildAttempt:
        if attempt.exhausted:
            raise RetryExhaustedError(
                f"Attempt budget used up ({attempt.attempt_number}/{attempt.max_attempts})"
            )
        started = attempt.model_copy(update={"attempt_number": attempt.attempt_number + 1})
        logger.info("Starting attempt %d of %d", started.attempt_number, started.max_attempts)
        return started

    @staticmethod
    def record_failure(attempt: BuildAttempt, error: str) -> BuildAttempt:
        return attempt.model_copy(update={"last_error": error})

    @staticmethod
    def record_success(attempt: BuildAttempt) -> BuildAttempt:
        return attempt.model_copy(update={"last_error": None})

    @staticmethod
    def state_after(attempt: BuildAttempt, succeeded: bool | None) -> RetryState:
        """``succeeded=None`` means the attempt outcome is not known yet."""
        if succeeded:
            return RetryState.SUCCEEDED
        if succeeded is None:
            return RetryState.EXHAUSTED if attempt.exhausted else RetryState.ATTEMPTING
        if attempt.exhausted:
            logger.warning(
                "Giving up after %d of %d attempts: %s",
                attempt.attempt_number,
                attempt.max_attempts,
                attempt.last_error,
            )
            return RetryState.EXHAUSTED
        return RetryState.RECOVERING

    def load(self, raw: Mapping[str, Any] | None) -> BuildAttempt:
        """Rebuild a ``BuildAttempt`` from state, starting fresh when absent."""
        if raw is None:
            return self.start()
        return BuildAttempt.model_validate(raw)
