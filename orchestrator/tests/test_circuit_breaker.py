"""
Tests for circuit breakers.

Module: tests/test_circuit_breaker.py
"""

from unittest.mock import AsyncMock

import pytest

from orchestrator.service.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from orchestrator.service.errors import CircuitOpenError, ErrorCategory
from orchestrator.service.events import EventStore
from orchestrator.service.models import CircuitState


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def breaker(clock: FakeClock) -> CircuitBreaker:
    return CircuitBreaker("payments", failure_threshold=3, recovery_timeout=60.0, clock=clock)


async def _fail_times(breaker: CircuitBreaker, times: int) -> None:
    failing = AsyncMock(side_effect=ConnectionError("down"))
    for _ in range(times):
        with pytest.raises(ConnectionError):
            await breaker.call(failing)


def test_invalid_parameters() -> None:
    with pytest.raises(ValueError):
        CircuitBreaker("x", failure_threshold=0)
    with pytest.raises(ValueError):
        CircuitBreaker("x", recovery_timeout=0)


@pytest.mark.asyncio
async def test_opens_after_threshold_and_short_circuits(breaker: CircuitBreaker) -> None:
    """Three consecutive failures open the breaker; the next call is not attempted."""
    await _fail_times(breaker, 3)
    assert breaker.current_state == CircuitState.OPEN

    dependency = AsyncMock(return_value="ok")
    with pytest.raises(CircuitOpenError) as exc_info:
        await breaker.call(dependency)

    dependency.assert_not_called()
    assert exc_info.value.category == ErrorCategory.CIRCUIT_OPEN
    assert exc_info.value.retry_after == pytest.approx(60.0)


@pytest.mark.asyncio
async def test_success_resets_failure_count(breaker: CircuitBreaker) -> None:
    await _fail_times(breaker, 2)
    assert await breaker.call(AsyncMock(return_value="ok")) == "ok"
    await _fail_times(breaker, 2)

    assert breaker.current_state == CircuitState.CLOSED
    assert breaker.consecutive_failures == 2


@pytest.mark.asyncio
async def test_half_open_admits_exactly_one_probe(
    breaker: CircuitBreaker, clock: FakeClock
) -> None:
    await _fail_times(breaker, 3)
    clock.advance(60.0)

    assert breaker.allow_request() is True
    assert breaker.current_state == CircuitState.HALF_OPEN
    # A second caller is rejected while the probe is in flight
    assert breaker.allow_request() is False

    breaker.record_success()
    assert breaker.current_state == CircuitState.CLOSED
    assert breaker.allow_request() is True


@pytest.mark.asyncio
async def test_successful_probe_closes(breaker: CircuitBreaker, clock: FakeClock) -> None:
    await _fail_times(breaker, 3)
    clock.advance(61.0)

    assert await breaker.call(AsyncMock(return_value="recovered")) == "recovered"
    assert breaker.current_state == CircuitState.CLOSED
    assert breaker.consecutive_failures == 0


@pytest.mark.asyncio
async def test_success_while_open_keeps_breaker_open(
    breaker: CircuitBreaker, clock: FakeClock
) -> None:
    await _fail_times(breaker, 3)

    breaker.record_success()

    assert breaker.current_state == CircuitState.OPEN
    assert breaker.retry_after() == pytest.approx(60.0)
    clock.advance(60.0)
    assert breaker.allow_request() is True
    assert breaker.current_state == CircuitState.HALF_OPEN


@pytest.mark.asyncio
async def test_failed_probe_reopens(breaker: CircuitBreaker, clock: FakeClock) -> None:
    await _fail_times(breaker, 3)
    clock.advance(60.0)

    await _fail_times(breaker, 1)

    assert breaker.current_state == CircuitState.OPEN
    assert breaker.retry_after() == pytest.approx(60.0)


@pytest.mark.asyncio
async def test_registry_publishes_transitions(clock: FakeClock) -> None:
    store = EventStore()
    registry = CircuitBreakerRegistry(store, failure_threshold=1, recovery_timeout=10.0, clock=clock)

    breaker = registry.get("inventory")
    assert registry.get("inventory") is breaker
    assert "inventory" in registry

    await _fail_times(breaker, 1)
    clock.advance(10.0)
    await breaker.call(AsyncMock(return_value=None))

    events = store.history(event_type="circuit_breaker", entity_id="inventory")
    assert [e.type for e in events] == [
        "circuit_breaker.opened",
        "circuit_breaker.half_open",
        "circuit_breaker.closed",
    ]
    assert registry.status()["inventory"].state == CircuitState.CLOSED
