"""
Tests for instance health checking.

Module: tests/test_health.py
"""

import sys
from unittest.mock import AsyncMock

import anyio
import httpx
import pytest

from orchestrator.service.events import EventStore
from orchestrator.service.scaling import (
    HealthCheckConfig,
    HealthCheckManager,
    LoadBalancer,
    ServiceInstance,
)
from orchestrator.service.scaling.models import HealthCheckMethod, ProbeResult


@pytest.fixture
def store() -> EventStore:
    return EventStore()


@pytest.fixture
def balancer(store: EventStore) -> LoadBalancer:
    balancer = LoadBalancer(store)
    balancer.register_instance(ServiceInstance(id="instance-1", host="10.0.0.1", port=8080))
    balancer.register_instance(ServiceInstance(id="instance-2", host="10.0.0.2", port=8080))
    return balancer


def _rpc_manager(
    store: EventStore, balancer: LoadBalancer, probe: AsyncMock, **config
) -> HealthCheckManager:
    settings = HealthCheckConfig(
        method=HealthCheckMethod.RPC, healthy_threshold=2, unhealthy_threshold=3, **config
    )
    return HealthCheckManager(store, balancer, settings, rpc_probe=probe)


def _result(instance_id: str, success: bool) -> ProbeResult:
    return ProbeResult(instance_id=instance_id, success=success, message="probe")


def test_single_failure_is_absorbed(store: EventStore, balancer: LoadBalancer) -> None:
    manager = _rpc_manager(store, balancer, AsyncMock())

    state = manager.record_result(_result("instance-1", False))

    assert state.healthy is True
    assert state.consecutive_failures == 1
    assert balancer.get_instance("instance-1").healthy is True


def test_unhealthy_after_threshold_and_back(store: EventStore, balancer: LoadBalancer) -> None:
    """Three failures remove an instance from routing; two successes restore it."""
    manager = _rpc_manager(store, balancer, AsyncMock())

    for _ in range(3):
        manager.record_result(_result("instance-1", False))

    assert balancer.get_instance("instance-1").healthy is False
    assert {i.id for i in balancer.healthy_instances()} == {"instance-2"}
    assert store.latest("health").type == "health.instance-unhealthy"

    manager.record_result(_result("instance-1", True))
    assert balancer.get_instance("instance-1").healthy is False

    manager.record_result(_result("instance-1", True))
    assert balancer.get_instance("instance-1").healthy is True
    assert store.latest("health").type == "health.instance-healthy"
    assert len(store.history(event_type="health")) == 2


def test_success_resets_failure_streak(store: EventStore, balancer: LoadBalancer) -> None:
    manager = _rpc_manager(store, balancer, AsyncMock())

    manager.record_result(_result("instance-1", False))
    manager.record_result(_result("instance-1", False))
    manager.record_result(_result("instance-1", True))
    state = manager.record_result(_result("instance-1", False))

    assert state.healthy is True
    assert state.consecutive_failures == 1


@pytest.mark.asyncio
async def test_check_all_with_rpc_probe(store: EventStore, balancer: LoadBalancer) -> None:
    async def probe(instance: ServiceInstance) -> bool:
        return instance.id == "instance-1"

    manager = _rpc_manager(store, balancer, AsyncMock(side_effect=probe))

    for _ in range(3):
        states = await manager.check_all()

    assert {s.instance_id: s.healthy for s in states} == {
        "instance-1": True,
        "instance-2": False,
    }
    assert manager.get_health_state("instance-2").last_result.message == "RPC reported unhealthy"


@pytest.mark.asyncio
async def test_probe_timeout_is_a_failure(store: EventStore, balancer: LoadBalancer) -> None:
    async def slow(instance: ServiceInstance) -> bool:
        await anyio.sleep(1)
        return True

    manager = _rpc_manager(store, balancer, AsyncMock(side_effect=slow), timeout_seconds=0.05)

    result = await manager.probe(balancer.get_instance("instance-1"))

    assert result.success is False
    assert "timed out" in result.message


@pytest.mark.asyncio
async def test_rpc_without_probe_fails(store: EventStore, balancer: LoadBalancer) -> None:
    manager = HealthCheckManager(store, balancer, HealthCheckConfig(method=HealthCheckMethod.RPC))

    result = await manager.probe(balancer.get_instance("instance-1"))

    assert result.success is False
    assert "without an RPC probe" in result.message


@pytest.mark.asyncio
async def test_raising_rpc_call_counts_as_failure(store: EventStore, balancer: LoadBalancer) -> None:
    manager = _rpc_manager(store, balancer, AsyncMock(side_effect=RuntimeError("boom")))

    for _ in range(3):
        states = await manager.check_all()

    assert all(s.healthy is False for s in states)
    assert manager.get_health_state("instance-1").last_result.message == "Probe failed: boom"
    assert balancer.healthy_instances() == []


@pytest.mark.asyncio
async def test_http_probe(store: EventStore, balancer: LoadBalancer) -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        if request.url.host == "10.0.0.1":
            return httpx.Response(200, json={"status": "healthy"})
        return httpx.Response(503)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    manager = HealthCheckManager(
        store, balancer, HealthCheckConfig(path="/healthz"), http_client=client
    )

    healthy = await manager.probe(balancer.get_instance("instance-1"))
    unhealthy = await manager.probe(balancer.get_instance("instance-2"))
    await manager.stop()
    await client.aclose()

    assert healthy.success is True
    assert unhealthy.success is False
    assert unhealthy.message == "HTTP 503"
    assert seen[0] == "http://10.0.0.1:8080/healthz"


@pytest.mark.asyncio
async def test_http_transport_error_is_a_failure(store: EventStore, balancer: LoadBalancer) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    manager = HealthCheckManager(store, balancer, HealthCheckConfig(), http_client=client)

    result = await manager.probe(balancer.get_instance("instance-1"))
    await client.aclose()

    assert result.success is False
    assert "connection refused" in result.message


@pytest.mark.asyncio
async def test_command_probe(store: EventStore, balancer: LoadBalancer) -> None:
    config = HealthCheckConfig(
        method=HealthCheckMethod.COMMAND,
        command=[sys.executable, "-c", "import sys; sys.exit(0 if sys.argv[1] == '8080' else 1)", "{port}"],
    )
    manager = HealthCheckManager(store, balancer, config)

    result = await manager.probe(balancer.get_instance("instance-1"))

    assert result.success is True
    assert result.message == "Command exited with 0"


def test_invalid_health_check_path() -> None:
    with pytest.raises(ValueError):
        HealthCheckConfig(path="health")


@pytest.mark.asyncio
async def test_disabled_checks_do_not_start(store: EventStore, balancer: LoadBalancer) -> None:
    manager = HealthCheckManager(store, balancer, HealthCheckConfig(enabled=False))

    await manager.start()

    assert manager._task is None
    await manager.stop()


@pytest.mark.asyncio
async def test_forget_drops_state(store: EventStore, balancer: LoadBalancer) -> None:
    manager = _rpc_manager(store, balancer, AsyncMock(return_value=True))
    await manager.check_instance("instance-1")

    manager.forget("instance-1")

    assert manager.get_health_state("instance-1") is None
    assert manager.get_all_states() == []
