"""
Circuit Breaker Pattern
========================
Excludes unhealthy providers/models from ranking until they recover.

State Machine:
  CLOSED    ──[N consecutive failures within window]──►  OPEN
  OPEN      ──[cool-down elapsed]─────────────────────►  HALF_OPEN
  HALF_OPEN ──[success]───────────────────────────────►  CLOSED
  HALF_OPEN ──[failure]───────────────────────────────►  OPEN  (cool-down doubles, capped)

Each provider or model key gets its own breaker. The ranking path only reads
(`is_open`); the executor that actually calls providers reports outcomes via
`record_success` / `record_failure`.
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


class CBState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerStats:
    """Observable stats for monitoring."""
    total_successes: int = 0
    total_failures: int = 0
    consecutive_failures: int = 0
    first_failure_time: Optional[float] = None   # Start of the current failure streak
    last_failure_time: Optional[float] = None
    last_success_time: Optional[float] = None
    opened_at: Optional[float] = None
    reopen_count: int = 0                        # Reopens since last CLOSED (drives backoff)
    state_changes: int = 0

    def to_dict(self) -> dict:
        total = self.total_successes + self.total_failures
        return {
            "total_successes": self.total_successes,
            "total_failures": self.total_failures,
            "consecutive_failures": self.consecutive_failures,
            "reopen_count": self.reopen_count,
            "success_rate": round(self.total_successes / total, 3) if total > 0 else 1.0,
        }


class CircuitBreaker:
    """
    Per-key circuit breaker.

    Not thread-safe on its own; CircuitBreakerRegistry serializes access.

    Usage:
        cb = CircuitBreaker("openai", failure_threshold=5)
        cb.record_failure()
        cb.is_open()
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        failure_window_s: float = 120,
        recovery_timeout_s: float = 60,
        max_recovery_timeout_s: float = 1800,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.failure_window_s = failure_window_s
        self.recovery_timeout_s = recovery_timeout_s
        self.max_recovery_timeout_s = max_recovery_timeout_s
        self._clock = clock

        self._state = CBState.CLOSED
        self._stats = CircuitBreakerStats()

    @property
    def stats(self) -> CircuitBreakerStats:
        return self._stats

    @property
    def cooldown_s(self) -> float:
        """Current cool-down: exponential in the number of reopens, capped."""
        backoff = self.recovery_timeout_s * (2 ** self._stats.reopen_count)
        return min(backoff, self.max_recovery_timeout_s)

    @property
    def next_retry_at(self) -> Optional[float]:
        if self._state != CBState.OPEN or self._stats.opened_at is None:
            return None
        return self._stats.opened_at + self.cooldown_s

    @property
    def state(self) -> CBState:
        """Effective state at the current time. Pure read — never mutates."""
        if self._state == CBState.OPEN:
            retry_at = self.next_retry_at
            if retry_at is not None and self._clock() >= retry_at:
                return CBState.HALF_OPEN
        return self._state

    def is_open(self) -> bool:
        return self.state == CBState.OPEN

    def _transition(self, new_state: CBState):
        old = self._state
        self._state = new_state
        self._stats.state_changes += 1

        if new_state == CBState.OPEN:
            self._stats.opened_at = self._clock()

        if new_state == CBState.CLOSED:
            self._stats.consecutive_failures = 0
            self._stats.first_failure_time = None
            self._stats.opened_at = None
            self._stats.reopen_count = 0

        logger.info(
            f"🔌 Circuit breaker [{self.name}]: {old.value} → {new_state.value} "
            f"(failures={self._stats.consecutive_failures})"
        )

    def record_success(self) -> CBState:
        """Record a successful call. Returns the resulting state."""
        self._stats.total_successes += 1
        self._stats.last_success_time = self._clock()

        effective = self.state
        if effective == CBState.HALF_OPEN:
            self._transition(CBState.CLOSED)
        elif effective == CBState.CLOSED:
            self._stats.consecutive_failures = 0
            self._stats.first_failure_time = None
        return self._state

    def record_failure(self) -> bool:
        """
        Record a failed call.
        Returns True only when this call tripped the breaker open.
        """
        now = self._clock()
        self._stats.total_failures += 1
        self._stats.last_failure_time = now

        effective = self.state
        if effective == CBState.OPEN:
            # Already open: no second trip, no extended penalty
            return False

        if effective == CBState.HALF_OPEN:
            self._stats.reopen_count += 1
            self._stats.consecutive_failures += 1
            self._transition(CBState.OPEN)
            return True

        # CLOSED: failures outside the rolling window restart the streak
        first = self._stats.first_failure_time
        if first is None or now - first > self.failure_window_s:
            self._stats.first_failure_time = now
            self._stats.consecutive_failures = 0
        self._stats.consecutive_failures += 1

        if self._stats.consecutive_failures >= self.failure_threshold:
            self._transition(CBState.OPEN)
            return True
        return False

    def reset(self):
        """Manual reset (admin action)."""
        self._transition(CBState.CLOSED)
        logger.info(f"🔄 Circuit breaker [{self.name}] manually reset")

    def to_dict(self) -> dict:
        retry_at = self.next_retry_at
        return {
            "key": self.name,
            "state": self.state.value,
            "consecutive_failures": self._stats.consecutive_failures,
            "last_failure_at": self._stats.last_failure_time,
            "next_retry_in_s": (
                round(max(0.0, retry_at - self._clock()), 1) if retry_at is not None else None
            ),
            "stats": self._stats.to_dict(),
            "config": {
                "failure_threshold": self.failure_threshold,
                "failure_window_s": self.failure_window_s,
                "recovery_timeout_s": self.recovery_timeout_s,
                "max_recovery_timeout_s": self.max_recovery_timeout_s,
            },
        }


class CircuitBreakerRegistry:
    """
    Manages circuit breakers for every provider/model key.
    Thread-safe, creates breakers on first write. Reads of unknown keys never create one.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        failure_window_s: float = 120,
        recovery_timeout_s: float = 60,
        max_recovery_timeout_s: float = 1800,
        clock: Callable[[], float] = time.monotonic,
        on_trip: Optional[Callable[[str], None]] = None,
    ):
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()
        self._failure_threshold = failure_threshold
        self._failure_window_s = failure_window_s
        self._recovery_timeout_s = recovery_timeout_s
        self._max_recovery_timeout_s = max_recovery_timeout_s
        self._clock = clock
        self._on_trip = on_trip

    def _get_or_create(self, key: str) -> CircuitBreaker:
        breaker = self._breakers.get(key)
        if breaker is None:
            breaker = CircuitBreaker(
                name=key,
                failure_threshold=self._failure_threshold,
                failure_window_s=self._failure_window_s,
                recovery_timeout_s=self._recovery_timeout_s,
                max_recovery_timeout_s=self._max_recovery_timeout_s,
                clock=self._clock,
            )
            self._breakers[key] = breaker
        return breaker

    def get(self, key: str) -> CircuitBreaker:
        """Get or create a circuit breaker for a key."""
        with self._lock:
            return self._get_or_create(key)

    def is_open(self, key: str) -> bool:
        """Informational read for the constraint gate. Never raises."""
        try:
            breaker = self._breakers.get(key)
            return breaker.is_open() if breaker is not None else False
        except Exception as e:
            logger.warning(f"Circuit breaker read failed for {key}: {e}")
            return False

    def state(self, key: str) -> CBState:
        breaker = self._breakers.get(key)
        return breaker.state if breaker is not None else CBState.CLOSED

    def record_success(self, key: str) -> CBState:
        with self._lock:
            return self._get_or_create(key).record_success()

    def record_failure(self, key: str) -> CBState:
        with self._lock:
            breaker = self._get_or_create(key)
            tripped = breaker.record_failure()
            state = breaker.state
        if tripped:
            logger.warning(f"⚡ Circuit breaker [{key}] opened for {breaker.cooldown_s:.0f}s")
            if self._on_trip:
                self._on_trip(key)
        return state

    def reset(self, key: str) -> CBState:
        with self._lock:
            breaker = self._get_or_create(key)
            breaker.reset()
            return breaker.state

    def clear_all(self) -> int:
        """Reset every breaker to closed with zero failures. Returns how many were reset."""
        with self._lock:
            for cb in self._breakers.values():
                cb.reset()
            count = len(self._breakers)
        logger.info(f"🔄 All circuit breakers cleared ({count} keys)")
        return count

    def all_status(self) -> Dict[str, dict]:
        """Get status of all circuit breakers."""
        with self._lock:
            return {name: cb.to_dict() for name, cb in self._breakers.items()}
