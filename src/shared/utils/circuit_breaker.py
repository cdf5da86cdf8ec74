"""
Circuit breaker for outbound calls.

After ``failure_threshold`` consecutive failures the circuit opens and calls
are refused without touching the remote side. Once ``half_open_after_ms``
has passed, one trial call is let through: success closes the circuit, a
failure reopens it for another full cooldown.
"""

import time
from typing import Callable, Optional

from shared.utils.logger import logger
from shared.utils.metrics import Metrics
from shared.utils.types import CircuitState


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    Callers ask ``allow()`` before each call and report the outcome with
    ``record_success()`` or ``record_failure()``.

    Attributes:
        name (str): Identifier used in logs and metric labels.
        failure_threshold (int): Consecutive failures that open the circuit.
        half_open_after_ms (int): Cooldown before a trial call is allowed.
        state (CircuitState): Current state.
        failures (int): Consecutive failures seen while closed.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        half_open_after_ms: int = 30000,
        metrics: Optional[Metrics] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.half_open_after_ms = half_open_after_ms
        self.metrics = metrics
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.failures = 0
        self._changed_at = clock()
        self._trial_started_at: Optional[float] = None

    def _cooled_down(self, since: float) -> bool:
        return (self._clock() - since) * 1000 >= self.half_open_after_ms

    def _transition(self, state: CircuitState) -> None:
        if self.state == state:
            return
        logger.warning(f"Circuit {self.name}: {self.state.value} -> {state.value}")
        self.state = state
        self._changed_at = self._clock()
        if state == CircuitState.CLOSED:
            self.failures = 0
        if self.metrics is not None:
            self.metrics.circuit_transitions_total.labels(
                circuit=self.name, state=state.value
            ).inc()

    def allow(self) -> bool:
        """Whether a call may go out now. Counts a refusal when it may not."""
        if self.state == CircuitState.OPEN and self._cooled_down(self._changed_at):
            self._transition(CircuitState.HALF_OPEN)
            self._trial_started_at = None

        if self.state == CircuitState.CLOSED:
            return True
        if self.state == CircuitState.HALF_OPEN:
            # One trial at a time; a trial that never reported is replaced
            # after another cooldown
            if self._trial_started_at is None or self._cooled_down(
                self._trial_started_at
            ):
                self._trial_started_at = self._clock()
                return True

        if self.metrics is not None:
            self.metrics.circuit_short_circuited_total.labels(circuit=self.name).inc()
        return False

    def record_success(self) -> None:
        self.failures = 0
        self._trial_started_at = None
        self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        self.failures += 1
        self._trial_started_at = None
        if self.state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
        elif (
            self.state == CircuitState.CLOSED
            and self.failures >= self.failure_threshold
        ):
            logger.error(
                f"Circuit {self.name} opened after {self.failures} consecutive failures"
            )
            self._transition(CircuitState.OPEN)
