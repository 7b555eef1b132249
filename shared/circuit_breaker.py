"""
Circuit breaker pattern implementation for resilient service calls.

One breaker instance guards one external dependency and is shared by
reference between every caller of that dependency. State transitions
happen under a lock and never across an ``await``, so concurrent
callers observe them in a single order.
"""

import asyncio
import threading
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

from shared.clock import Clock, MonotonicClock
from shared.config import CircuitBreakerSettings
from shared.logging import get_logger


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, requests blocked
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitBreakerOpenException(Exception):
    """Exception raised when circuit breaker is open."""

    def __init__(self, name: str, retry_after: float):
        super().__init__(f"Circuit breaker '{name}' is OPEN - blocking call")
        self.name = name
        self.retry_after = retry_after


StateListener = Callable[[str, CircuitBreakerState, CircuitBreakerState], None]


class CircuitBreaker:
    """Circuit breaker with CLOSED / OPEN / HALF_OPEN states.

    - CLOSED -> OPEN after ``failure_threshold`` consecutive failures.
    - OPEN rejects without calling until ``recovery_timeout`` has elapsed;
      the next call then moves the breaker to HALF_OPEN and goes through.
    - HALF_OPEN -> CLOSED after ``success_threshold`` consecutive
      successes, HALF_OPEN -> OPEN on any failure.

    Only exceptions matching ``expected_exception`` count as failures.
    Anything else is the caller's problem and counts as a success for the
    dependency (it answered).
    """

    def __init__(self,
                 failure_threshold: int = 5,
                 success_threshold: int = 3,
                 recovery_timeout: float = 5.0,
                 expected_exception: Tuple[Type[BaseException], ...] | Type[BaseException] = Exception,
                 name: str = "default",
                 clock: Optional[Clock] = None,
                 on_state_change: Optional[StateListener] = None):
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.name = name
        self.clock = clock or MonotonicClock()
        self.logger = get_logger(f"circuit_breaker.{name}")
        self._on_state_change = on_state_change

        self._lock = threading.Lock()
        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at = 0.0

    @classmethod
    def from_settings(cls, settings: CircuitBreakerSettings, **kwargs) -> "CircuitBreaker":
        return cls(
            failure_threshold=settings.failure_threshold,
            success_threshold=settings.success_threshold,
            recovery_timeout=settings.recovery_timeout,
            **kwargs
        )

    @property
    def state(self) -> CircuitBreakerState:
        with self._lock:
            return self._state

    def is_open(self) -> bool:
        """Check if circuit breaker is in OPEN state."""
        return self.state == CircuitBreakerState.OPEN

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Execute ``func`` under breaker protection.

        The call runs as its own task. If the awaiting caller is cancelled
        the task keeps running and its outcome still lands in the counters.
        """
        self._acquire_permission()

        task = asyncio.ensure_future(func(*args, **kwargs))
        task.add_done_callback(self._record_outcome)
        return await asyncio.shield(task)

    def _acquire_permission(self) -> None:
        with self._lock:
            if self._state == CircuitBreakerState.OPEN:
                elapsed = self.clock.now() - self._opened_at
                if elapsed < self.recovery_timeout:
                    raise CircuitBreakerOpenException(self.name, self.recovery_timeout - elapsed)
                self._transition(CircuitBreakerState.HALF_OPEN)

    def _record_outcome(self, task: "asyncio.Future[Any]") -> None:
        if task.cancelled():
            self.record_failure()
            return
        error = task.exception()
        if error is not None and isinstance(error, self.expected_exception):
            self.record_failure()
        else:
            self.record_success()

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitBreakerState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.success_threshold:
                    self._transition(CircuitBreakerState.CLOSED)
            elif self._state == CircuitBreakerState.CLOSED:
                self._failure_count = 0

    def record_failure(self) -> None:
        with self._lock:
            if self._state == CircuitBreakerState.HALF_OPEN:
                self._transition(CircuitBreakerState.OPEN)
            elif self._state == CircuitBreakerState.CLOSED:
                self._failure_count += 1
                if self._failure_count >= self.failure_threshold:
                    self._transition(CircuitBreakerState.OPEN)

    def _transition(self, new_state: CircuitBreakerState) -> None:
        # caller holds self._lock
        old_state = self._state
        self._state = new_state
        self._failure_count = 0
        self._success_count = 0
        if new_state == CircuitBreakerState.OPEN:
            self._opened_at = self.clock.now()

        self.logger.warning(
            "Circuit breaker state changed",
            old_state=old_state.value,
            new_state=new_state.value
        )
        if self._on_state_change is not None:
            self._on_state_change(self.name, old_state, new_state)

    def get_state(self) -> Dict[str, Any]:
        """Get current circuit breaker state."""
        with self._lock:
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "success_count": self._success_count,
                "opened_at": self._opened_at,
                "failure_threshold": self.failure_threshold,
                "success_threshold": self.success_threshold,
                "recovery_timeout": self.recovery_timeout
            }
