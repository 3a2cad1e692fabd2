"""
PhiloGraph - Circuit Breaker

Process-wide judgment about the reasoning service's health. One instance is
owned by the ReasoningGateway and shared by all of its callers.

STATES:
- closed:    calls pass; failures are counted
- open:      calls fast-fail without touching the network
- half_open: exactly one trial call is admitted

TRANSITIONS:
- closed -> open        failure_threshold consecutive failures, all inside
                        failure_window seconds
- open -> half_open     reset_timeout seconds after opening
- half_open -> closed   trial call succeeded
- half_open -> open     trial call failed

Only UNAVAILABLE failures count. A 4xx-style rejection of one request says
nothing about the service's health.
"""

from typing import Callable, List, Optional
from enum import Enum
import threading
import time

import structlog

logger = structlog.get_logger(__name__)


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Lock-guarded three-state circuit breaker.

    Usage:
        if not breaker.allow_request():
            raise CircuitOpenError(...)
        try:
            response = call()
        except UnavailableError:
            breaker.record_failure()
            raise
        breaker.record_success()
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        failure_window: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Args:
            failure_threshold: Consecutive failures that open the circuit
            reset_timeout: Seconds spent open before a trial is admitted
            failure_window: Failures older than this no longer count
            clock: Monotonic clock (injectable for tests)
        """
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")

        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.failure_window = failure_window
        self._clock = clock

        self._lock = threading.Lock()
        self._state = BreakerState.CLOSED
        self._failures: List[float] = []
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

    @property
    def state(self) -> BreakerState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def _maybe_half_open(self) -> None:
        # Caller holds the lock
        if self._state == BreakerState.OPEN and self._clock() - self._opened_at >= self.reset_timeout:
            self._state = BreakerState.HALF_OPEN
            self._trial_in_flight = False
            logger.info("reasoning.breaker.half_open")

    def _open(self) -> None:
        self._state = BreakerState.OPEN
        self._opened_at = self._clock()
        self._failures = []
        self._trial_in_flight = False
        logger.warning("reasoning.breaker.opened", reset_timeout=self.reset_timeout)

    def allow_request(self) -> bool:
        """
        Decide whether a call may go out now.

        In half_open, the first caller takes the trial slot and every other
        caller is rejected until the trial reports back.
        """
        with self._lock:
            self._maybe_half_open()

            if self._state == BreakerState.CLOSED:
                return True

            if self._state == BreakerState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                return True

            return False

    def record_success(self) -> None:
        with self._lock:
            if self._state != BreakerState.CLOSED:
                logger.info("reasoning.breaker.closed")
            self._state = BreakerState.CLOSED
            self._failures = []
            self._opened_at = None
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()

            if self._state == BreakerState.HALF_OPEN:
                self._open()
                return

            if self._state == BreakerState.OPEN:
                return

            self._failures = [t for t in self._failures if now - t < self.failure_window]
            self._failures.append(now)

            if len(self._failures) >= self.failure_threshold:
                self._open()

    def release_trial(self) -> None:
        """Give back a half-open trial slot whose call ended without a verdict."""
        with self._lock:
            self._trial_in_flight = False

    def retry_after(self) -> float:
        """Seconds until a trial would be admitted (0 when not open)."""
        with self._lock:
            if self._state != BreakerState.OPEN:
                return 0.0
            return max(0.0, self.reset_timeout - (self._clock() - self._opened_at))
