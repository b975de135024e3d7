"""
Tests for the load balancer.

Module: tests/test_load_balancer.py
"""

import random
from collections import Counter

import pytest

from orchestrator.service.errors import NotFoundError
from orchestrator.service.events import EventStore
from orchestrator.service.scaling import (
    LoadBalancer,
    LoadBalancerConfig,
    LoadBalancingAlgorithm,
    ScalingMetrics,
    ServiceInstance,
)


def _instance(index: int, **kwargs) -> ServiceInstance:
    return ServiceInstance(id=f"instance-{index}", host=f"10.0.0.{index}", port=8080, **kwargs)


@pytest.fixture
def store() -> EventStore:
    return EventStore()


def _balancer(store: EventStore, algorithm: LoadBalancingAlgorithm, count: int = 3, **kwargs) -> LoadBalancer:
    balancer = LoadBalancer(store, LoadBalancerConfig(algorithm=algorithm), **kwargs)
    for index in range(1, count + 1):
        balancer.register_instance(_instance(index))
    return balancer


def test_round_robin_cycles_in_registration_order(store: EventStore) -> None:
    balancer = _balancer(store, LoadBalancingAlgorithm.ROUND_ROBIN)

    picks = [balancer.select_instance().id for _ in range(4)]

    assert picks == ["instance-1", "instance-2", "instance-3", "instance-1"]


def test_round_robin_skips_unhealthy(store: EventStore) -> None:
    balancer = _balancer(store, LoadBalancingAlgorithm.ROUND_ROBIN)
    balancer.set_instance_health("instance-2", False)

    picks = {balancer.select_instance().id for _ in range(6)}

    assert picks == {"instance-1", "instance-3"}


def test_round_robin_cursor_is_per_component(store: EventStore) -> None:
    balancer = LoadBalancer(store)
    for name in ("a1", "a2", "a3"):
        balancer.register_instance(
            ServiceInstance(id=name, component_id="a", host="10.0.0.1", port=8080)
        )
    balancer.register_instance(
        ServiceInstance(id="b1", component_id="b", host="10.0.1.1", port=8080)
    )

    picks = []
    for component_id in ("a", "b", "a", "b", "a"):
        instance = balancer.select_instance(component_id=component_id)
        if component_id == "a":
            picks.append(instance.id)

    assert picks == ["a1", "a2", "a3"]


def test_least_connections(store: EventStore) -> None:
    balancer = _balancer(store, LoadBalancingAlgorithm.LEAST_CONNECTIONS)

    first = balancer.handle_request()
    second = balancer.handle_request()
    third = balancer.handle_request()
    assert [first.id, second.id, third.id] == ["instance-1", "instance-2", "instance-3"]

    balancer.complete_request("instance-2")
    assert balancer.handle_request().id == "instance-2"

    balancer.update_instance_metrics("instance-3", ScalingMetrics(active_connections=0))
    assert balancer.select_instance().id == "instance-3"


def test_weighted_distribution_follows_weights(store: EventStore) -> None:
    balancer = LoadBalancer(
        store, LoadBalancerConfig(algorithm=LoadBalancingAlgorithm.WEIGHTED), rng=random.Random(42)
    )
    balancer.register_instance(_instance(1, weight=2.0))
    balancer.register_instance(_instance(2, weight=1.0))

    counts = Counter(balancer.select_instance().id for _ in range(10000))

    ratio = counts["instance-1"] / counts["instance-2"]
    assert 1.8 < ratio < 2.2


def test_ip_hash_is_sticky(store: EventStore) -> None:
    balancer = _balancer(store, LoadBalancingAlgorithm.IP_HASH, count=5)

    first = balancer.select_instance(client_id="192.168.1.10")
    repeats = {balancer.select_instance(client_id="192.168.1.10").id for _ in range(20)}

    assert repeats == {first.id}
    spread = {balancer.select_instance(client_id=f"10.1.0.{i}").id for i in range(50)}
    assert len(spread) > 1


def test_no_healthy_instances(store: EventStore) -> None:
    balancer = _balancer(store, LoadBalancingAlgorithm.ROUND_ROBIN, count=2)
    balancer.set_instance_health("instance-1", False)
    balancer.set_instance_health("instance-2", False)

    assert balancer.select_instance() is None
    assert balancer.handle_request() is None

    event = store.latest("load_balancer.no-healthy-instances")
    assert event is not None
    assert event.payload["total_instances"] == 2
    assert balancer.get_state().failed_routings == 2


def test_component_scoped_routing(store: EventStore) -> None:
    balancer = LoadBalancer(store)
    balancer.register_instance(_instance(1, component_id="api"))
    balancer.register_instance(_instance(2, component_id="worker"))

    assert balancer.select_instance(component_id="worker").id == "instance-2"
    assert balancer.get_total_instance_count("api") == 1
    assert balancer.select_instance(component_id="billing") is None


def test_handle_request_updates_stats(store: EventStore) -> None:
    balancer = _balancer(store, LoadBalancingAlgorithm.ROUND_ROBIN, count=1)

    balancer.handle_request(client_id="c1")
    balancer.handle_request(client_id="c2")
    balancer.complete_request("instance-1")

    stats = balancer.get_instance_stats("instance-1")
    assert stats.total_requests == 2
    assert stats.active_connections == 1
    assert stats.last_selected_at is not None
    assert balancer.get_state().total_requests == 2
    assert store.latest("load_balancer.request-routed").entity_id == "instance-1"


def test_registry(store: EventStore) -> None:
    balancer = _balancer(store, LoadBalancingAlgorithm.ROUND_ROBIN, count=2)

    removed = balancer.unregister_instance("instance-1")

    assert removed.id == "instance-1"
    assert balancer.unregister_instance("instance-1") is None
    assert balancer.get_total_instance_count() == 1
    with pytest.raises(NotFoundError):
        balancer.get_instance("instance-1")
    assert store.latest("load_balancer.instance-unregistered").entity_id == "instance-1"


def test_update_config_switches_algorithm(store: EventStore) -> None:
    balancer = _balancer(store, LoadBalancingAlgorithm.ROUND_ROBIN)
    balancer.select_instance()

    balancer.update_config(LoadBalancerConfig(algorithm=LoadBalancingAlgorithm.LEAST_CONNECTIONS))
    assert balancer.get_state().algorithm == LoadBalancingAlgorithm.LEAST_CONNECTIONS

    balancer.update_config(LoadBalancerConfig(algorithm=LoadBalancingAlgorithm.ROUND_ROBIN))
    assert balancer.select_instance().id == "instance-1"
