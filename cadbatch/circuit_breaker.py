"""Circuit breaker that stops work after repeated failures."""

from __future__ import annotations

import enum
import threading
import time
from dataclasses import dataclass


class CircuitState(enum.Enum):
    """State of a circuit breaker."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """Thresholds for a circuit breaker; ``timeout`` is in seconds."""

    failure_threshold: int = 5
    success_threshold: int = 2
    timeout: float = 30.0
    max_probes_in_half_open: int = 3


class CircuitBreaker:
    """Thread-safe circuit breaker with a limited half-open probe budget."""

    def __init__(self, config: CircuitBreakerConfig | None = None) -> None:
        self.config = config or CircuitBreakerConfig()
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._probes = 0
        self._opened_at: float | None = None

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = time.monotonic()

    def _reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0

    def record_success(self) -> None:
        """Record a success; enough of them while half-open close the circuit."""
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._successes += 1
                if self._successes >= self.config.success_threshold:
                    self._reset()
            self._failures = 0

    def record_failure(self) -> None:
        """Record a failure; reopens immediately when half-open."""
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._open()
                return
            self._failures += 1
            if (
                self._failures >= self.config.failure_threshold
                and self._state is not CircuitState.OPEN
            ):
                self._open()

    def allow_request(self) -> bool:
        """Whether a request may proceed now."""
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._probes += 1
                return self._probes <= self.config.max_probes_in_half_open
            if self._state is CircuitState.CLOSED:
                return True
            if (
                self._opened_at is not None
                and time.monotonic() - self._opened_at >= self.config.timeout
            ):
                self._state = CircuitState.HALF_OPEN
                self._successes = 0
                self._probes = 1
                return True
            return False

    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def failure_count(self) -> int:
        with self._lock:
            return self._failures