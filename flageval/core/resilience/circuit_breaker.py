"""
Circuit Breaker Pattern Implementation
Stops hammering a failing flag provider and lets one probe through after a cool-down.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from flageval.core.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Breaker states"""
    CLOSED = "closed"        # calls pass through
    OPEN = "open"            # calls fail fast
    HALF_OPEN = "half_open"  # a single probe call is allowed


@dataclass
class CircuitBreakerState:
    """Point-in-time view of a breaker."""
    state: CircuitState
    is_open: bool
    failures: int
    last_failure_time: Optional[float]
    next_attempt_time: Optional[float]


@dataclass
class CircuitBreakerStats:
    """Cumulative counters"""
    success_count: int = 0
    failure_count: int = 0
    rejected_count: int = 0
    total_calls: int = 0
    state_transitions: List[Dict[str, Any]] = field(default_factory=list)
    error_distribution: Dict[str, int] = field(default_factory=dict)


class CircuitBreaker:
    """
    Per-provider circuit breaker.

    CLOSED -> OPEN after ``failure_threshold`` consecutive failures.
    OPEN -> HALF_OPEN once ``recovery_timeout`` seconds have elapsed.
    HALF_OPEN -> CLOSED on a successful probe, back to OPEN on a failed one.
    Only one probe is in flight at a time; other calls fail fast meanwhile.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        metrics_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
    ):
        """
        Args:
            name: provider name the breaker protects
            failure_threshold: consecutive failures that open the circuit
            recovery_timeout: seconds to stay open before allowing a probe
            clock: monotonic time source, injectable for tests
            metrics_callback: receives a dict per success/failure/rejection/state change
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.metrics_callback = metrics_callback
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_time: Optional[float] = None
        self._next_attempt_time: Optional[float] = None
        self._probe_in_flight = False
        self._stats = CircuitBreakerStats()
        self._lock = threading.RLock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def stats(self) -> CircuitBreakerStats:
        return self._stats

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``operation`` through the breaker.

        Raises:
            CircuitOpenError: the circuit is open, or a probe is already running
        """
        with self._lock:
            self._acquire_permission()

        try:
            result = await operation()
        except asyncio.CancelledError:
            with self._lock:
                self._probe_in_flight = False
            raise
        except Exception as e:
            with self._lock:
                self._on_failure(e)
            raise

        with self._lock:
            self._on_success()
        return result

    def _acquire_permission(self) -> None:
        """Let the call through or raise. Caller holds the lock."""
        if self._state == CircuitState.OPEN:
            if self._clock() < (self._next_attempt_time or 0):
                self._reject(f"Circuit breaker '{self.name}' is OPEN")
            self._transition_to_half_open()

        if self._state == CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                self._reject(f"Circuit breaker '{self.name}' is HALF_OPEN with a probe in flight")
            self._probe_in_flight = True

    def _reject(self, message: str) -> None:
        self._stats.rejected_count += 1
        self._emit_metrics("rejected")
        raise CircuitOpenError(message, provider_name=self.name)

    def _transition_to_half_open(self) -> None:
        logger.info(f"Circuit breaker '{self.name}' transitioning OPEN -> HALF_OPEN")
        self._state = CircuitState.HALF_OPEN
        self._probe_in_flight = False
        self._record_state_transition(CircuitState.OPEN, CircuitState.HALF_OPEN)

    def _transition_to_open(self) -> None:
        prev_state = self._state
        self._state = CircuitState.OPEN
        self._next_attempt_time = self._clock() + self.recovery_timeout
        self._probe_in_flight = False
        logger.warning(
            f"Circuit breaker '{self.name}' transitioning to OPEN "
            f"after {self._failures} failures"
        )
        self._record_state_transition(prev_state, CircuitState.OPEN)

    def _transition_to_closed(self) -> None:
        prev_state = self._state
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._next_attempt_time = None
        self._probe_in_flight = False
        if prev_state != CircuitState.CLOSED:
            logger.info(f"Circuit breaker '{self.name}' transitioning to CLOSED")
            self._record_state_transition(prev_state, CircuitState.CLOSED)

    def _on_success(self) -> None:
        self._stats.success_count += 1
        self._stats.total_calls += 1
        self._failures = 0
        if self._state != CircuitState.CLOSED:
            self._transition_to_closed()
        self._emit_metrics("success")

    def _on_failure(self, exception: Exception) -> None:
        self._stats.failure_count += 1
        self._stats.total_calls += 1
        self._failures += 1
        self._last_failure_time = self._clock()

        error_type = type(exception).__name__
        self._stats.error_distribution[error_type] = \
            self._stats.error_distribution.get(error_type, 0) + 1

        if self._state == CircuitState.HALF_OPEN:
            self._transition_to_open()
        elif self._state == CircuitState.CLOSED and self._failures >= self.failure_threshold:
            self._transition_to_open()

        self._emit_metrics("failure", error_type)

    def _record_state_transition(self, from_state: CircuitState, to_state: CircuitState) -> None:
        self._stats.state_transitions.append({
            "timestamp": time.time(),
            "from": from_state.value,
            "to": to_state.value,
        })
        self._emit_metrics("state_change", f"{from_state.value}_to_{to_state.value}")

    def _emit_metrics(self, event_type: str, detail: str = "") -> None:
        if self.metrics_callback:
            self.metrics_callback({
                "circuit_breaker": self.name,
                "state": self._state.value,
                "event": event_type,
                "detail": detail,
                "timestamp": time.time(),
            })

    def get_state(self) -> CircuitBreakerState:
        with self._lock:
            return CircuitBreakerState(
                state=self._state,
                is_open=self._state == CircuitState.OPEN,
                failures=self._failures,
                last_failure_time=self._last_failure_time,
                next_attempt_time=self._next_attempt_time,
            )

    def reset(self) -> None:
        """Force the breaker closed and forget its history."""
        with self._lock:
            self._stats = CircuitBreakerStats()
            self._last_failure_time = None
            self._transition_to_closed()

    def get_health(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "name": self.name,
                "state": self._state.value,
                "failures": self._failures,
                "success_count": self._stats.success_count,
                "failure_count": self._stats.failure_count,
                "rejected_count": self._stats.rejected_count,
                "total_calls": self._stats.total_calls,
                "failure_rate": (
                    self._stats.failure_count / self._stats.total_calls
                    if self._stats.total_calls > 0 else 0
                ),
                "error_distribution": dict(self._stats.error_distribution),
                "recent_transitions": self._stats.state_transitions[-5:],
            }


__all__ = [
    "CircuitBreaker",
    "CircuitBreakerState",
    "CircuitBreakerStats",
    "CircuitState",
]
