"""Circuit breaker guarding calls to one target platform.

closed -> open after ``failure_threshold`` consecutive transient failures;
open -> half_open once ``reset_timeout`` seconds have passed;
half_open -> closed after ``success_threshold`` successes, or back to open
on the first failure. While open, calls fail fast with CircuitOpenError so
a struggling platform is not hammered by every worker.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from enum import Enum

import structlog

from src.retail_sync.core.monitoring import circuit_breaker_open
from src.retail_sync.sync.errors import CircuitOpenError

logger = structlog.get_logger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    def __init__(
        self,
        platform: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        success_threshold: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.platform = platform
        self._failure_threshold = failure_threshold
        self._reset_timeout = reset_timeout
        self._success_threshold = success_threshold
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._opened_at: float | None = None

    @property
    def state(self) -> CircuitState:
        if (
            self._state == CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self._reset_timeout
        ):
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    def before_call(self) -> None:
        """Raise CircuitOpenError when calls must fail fast."""
        if self.state == CircuitState.OPEN:
            raise CircuitOpenError(self.platform)

    def record_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._successes += 1
            if self._successes >= self._success_threshold:
                self._transition(CircuitState.CLOSED)
        else:
            self._failures = 0

    def record_failure(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
            return
        self._failures += 1
        if self._failures >= self._failure_threshold:
            self._transition(CircuitState.OPEN)

    def _transition(self, state: CircuitState) -> None:
        previous = self._state
        self._state = state
        self._failures = 0
        self._successes = 0
        self._opened_at = self._clock() if state == CircuitState.OPEN else None
        circuit_breaker_open.labels(platform=self.platform).set(1 if state == CircuitState.OPEN else 0)
        logger.info(
            "circuit.transition",
            platform=self.platform,
            previous=previous.value,
            state=state.value,
        )
