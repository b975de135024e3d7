"""
Per-dependency circuit breakers.

A breaker counts consecutive failures of one downstream collaborator. Once the
threshold is reached the breaker opens and every call is short-circuited with a
``CircuitOpenError`` until the recovery timeout elapses; then a single probe is
let through (half-open). A successful probe closes the breaker, a failed probe
reopens it.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from .errors import CircuitOpenError
from .events import EventStore
from .models import CircuitBreakerState, CircuitState, EventSeverity, utcnow

logger = logging.getLogger(__name__)

TransitionCallback = Callable[[str, CircuitState, CircuitState, int], None]


class CircuitBreaker:
    """Circuit breaker guarding calls to a single dependency key."""

    def __init__(
        self,
        key: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        on_transition: Optional[TransitionCallback] = None,
    ) -> None:
        """
        Initialize circuit breaker.

        Args:
            key: Dependency key guarded by this breaker
            failure_threshold: Consecutive failures before opening
            recovery_timeout: Seconds to stay open before allowing a probe
            clock: Monotonic clock, injectable for tests
            on_transition: Called with (key, old, new, consecutive_failures)
        """
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if recovery_timeout <= 0:
            raise ValueError("recovery_timeout must be positive")

        self.key = key
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._on_transition = on_transition

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None
        self._opened_at_wall: Optional[datetime] = None
        self._last_failure_at: Optional[datetime] = None
        self._probe_in_flight = False

    @property
    def current_state(self) -> CircuitState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def retry_after(self) -> float:
        """Seconds until an open breaker admits a probe."""
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self._opened_at + self.recovery_timeout - self._clock())

    def allow_request(self) -> bool:
        """
        Decide whether a call may go through right now.

        An open breaker becomes half-open once the recovery timeout has
        elapsed; while half-open, exactly one probe is admitted.
        """
        if self._state == CircuitState.CLOSED:
            return True

        if self._state == CircuitState.OPEN:
            if self.retry_after() > 0:
                return False
            self._transition(CircuitState.HALF_OPEN)

        if self._probe_in_flight:
            return False
        self._probe_in_flight = True
        return True

    def record_success(self) -> None:
        # An open breaker only closes through a half-open probe
        if self._state == CircuitState.OPEN:
            return
        self._probe_in_flight = False
        self._consecutive_failures = 0
        if self._state == CircuitState.HALF_OPEN:
            self._opened_at = None
            self._opened_at_wall = None
            self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        self._probe_in_flight = False
        self._consecutive_failures += 1
        self._last_failure_at = utcnow()

        if self._state == CircuitState.HALF_OPEN:
            self._open()
        elif (
            self._state == CircuitState.CLOSED
            and self._consecutive_failures >= self.failure_threshold
        ):
            self._open()

    async def call(self, fn: Callable[[], Awaitable[Any]]) -> Any:
        """
        Invoke ``fn`` through the breaker.

        Raises:
            CircuitOpenError: If the breaker rejects the call without invoking fn
        """
        if not self.allow_request():
            raise CircuitOpenError(self.key, self.retry_after())

        try:
            result = await fn()
        except asyncio.CancelledError:
            self._probe_in_flight = False
            raise
        except Exception:
            self.record_failure()
            raise

        self.record_success()
        return result

    def state(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            key=self.key,
            state=self._state,
            consecutive_failures=self._consecutive_failures,
            opened_at=self._opened_at_wall,
            last_failure_at=self._last_failure_at,
        )

    def _open(self) -> None:
        self._opened_at = self._clock()
        self._opened_at_wall = utcnow()
        self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state

        if new_state == CircuitState.OPEN:
            logger.warning(
                f"Circuit '{self.key}' opened after "
                f"{self._consecutive_failures} consecutive failures"
            )
        else:
            logger.info(f"Circuit '{self.key}' {old_state.value} -> {new_state.value}")

        if self._on_transition:
            self._on_transition(self.key, old_state, new_state, self._consecutive_failures)


_TRANSITION_EVENTS = {
    CircuitState.OPEN: ("circuit_breaker.opened", EventSeverity.WARNING),
    CircuitState.HALF_OPEN: ("circuit_breaker.half_open", EventSeverity.INFO),
    CircuitState.CLOSED: ("circuit_breaker.closed", EventSeverity.INFO),
}


class CircuitBreakerRegistry:
    """
    Owns one breaker per dependency key.

    Breakers are created lazily with the registry defaults and publish their
    transitions to the event store.
    """

    def __init__(
        self,
        event_store: Optional[EventStore] = None,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.event_store = event_store
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, key: str) -> CircuitBreaker:
        breaker = self._breakers.get(key)
        if breaker is None:
            breaker = CircuitBreaker(
                key,
                failure_threshold=self.failure_threshold,
                recovery_timeout=self.recovery_timeout,
                clock=self._clock,
                on_transition=self._publish,
            )
            self._breakers[key] = breaker
        return breaker

    def __contains__(self, key: str) -> bool:
        return key in self._breakers

    def status(self) -> Dict[str, CircuitBreakerState]:
        return {key: breaker.state() for key, breaker in self._breakers.items()}

    def _publish(
        self, key: str, old: CircuitState, new: CircuitState, failures: int
    ) -> None:
        if self.event_store is None:
            return
        event_type, severity = _TRANSITION_EVENTS[new]
        self.event_store.append(
            event_type,
            {"key": key, "from": old.value, "to": new.value, "consecutive_failures": failures},
            source="circuit_breaker",
            entity_id=key,
            severity=severity,
        )
