"""
Load balancer over registered service instances.

Only healthy instances are eligible for routing. When none is healthy a
routing call returns None and records a ``load_balancer.no-healthy-instances``
event.
"""

import hashlib
import logging
import random
from datetime import datetime
from typing import Callable, Dict, List, Optional

from ..errors import NotFoundError
from ..events import EventStore
from ..models import EventSeverity, utcnow
from .models import (
    InstanceStats,
    LoadBalancerConfig,
    LoadBalancerState,
    LoadBalancingAlgorithm,
    ScalingMetrics,
    ServiceInstance,
)

logger = logging.getLogger(__name__)


class LoadBalancer:
    """Routes requests to healthy instances with a configurable algorithm."""

    def __init__(
        self,
        event_store: EventStore,
        config: Optional[LoadBalancerConfig] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """
        Initialize the load balancer.

        Args:
            event_store: Store receiving routing events
            config: Algorithm and health check settings
            rng: Random source for weighted selection
            clock: Clock used for selection timestamps
        """
        self.event_store = event_store
        self.config = config or LoadBalancerConfig()
        self._rng = rng or random.Random()
        self._clock = clock

        # Insertion order is registration order
        self._instances: Dict[str, ServiceInstance] = {}
        self._stats: Dict[str, InstanceStats] = {}
        # Round-robin cursor per component; None is the unscoped pool
        self._round_robin_counters: Dict[Optional[str], int] = {}
        self._total_requests = 0
        self._failed_routings = 0

    def _emit(
        self,
        event_type: str,
        payload: dict,
        entity_id: Optional[str] = None,
        severity: EventSeverity = EventSeverity.INFO,
    ) -> None:
        self.event_store.append(
            f"load_balancer.{event_type}",
            payload,
            source="load_balancer",
            entity_id=entity_id,
            severity=severity,
        )

    # ========================================================================
    # Registry
    # ========================================================================

    def register_instance(self, instance: ServiceInstance) -> None:
        """Register (or re-register) an instance."""
        self._instances[instance.id] = instance
        self._stats.setdefault(
            instance.id,
            InstanceStats(instance_id=instance.id, healthy=instance.healthy),
        )
        self._stats[instance.id].active_connections = instance.metrics.active_connections
        logger.info(f"Registered instance {instance.id} at {instance.address}")
        self._emit(
            "instance-registered",
            {"address": instance.address, "component_id": instance.component_id},
            instance.id,
        )

    def unregister_instance(self, instance_id: str) -> Optional[ServiceInstance]:
        instance = self._instances.pop(instance_id, None)
        self._stats.pop(instance_id, None)
        if instance is None:
            logger.warning(f"Cannot unregister unknown instance {instance_id}")
            return None
        logger.info(f"Unregistered instance {instance_id}")
        self._emit("instance-unregistered", {"address": instance.address}, instance_id)
        return instance

    def get_instance(self, instance_id: str) -> ServiceInstance:
        """
        Raises:
            NotFoundError: If the instance is not registered
        """
        instance = self._instances.get(instance_id)
        if instance is None:
            raise NotFoundError(f"Instance {instance_id} not found")
        return instance

    def update_instance_metrics(self, instance_id: str, metrics: ScalingMetrics) -> None:
        instance = self.get_instance(instance_id)
        instance.metrics = metrics
        self._stats[instance_id].active_connections = metrics.active_connections

    def set_instance_health(self, instance_id: str, healthy: bool) -> None:
        """Change routing eligibility; takes effect on the next routing decision."""
        instance = self.get_instance(instance_id)
        instance.healthy = healthy
        instance.last_health_check = self._clock()
        self._stats[instance_id].healthy = healthy

    def update_config(self, config: LoadBalancerConfig) -> None:
        if config.algorithm != self.config.algorithm:
            logger.info(
                f"Load balancing algorithm changed from {self.config.algorithm.value} "
                f"to {config.algorithm.value}"
            )
            self._round_robin_counters.clear()
        self.config = config
        self._emit("config-updated", {"algorithm": config.algorithm.value})

    def instances(self, component_id: Optional[str] = None) -> List[ServiceInstance]:
        return [
            i for i in self._instances.values()
            if component_id is None or i.component_id == component_id
        ]

    def healthy_instances(self, component_id: Optional[str] = None) -> List[ServiceInstance]:
        return [i for i in self.instances(component_id) if i.healthy]

    def get_healthy_instance_count(self, component_id: Optional[str] = None) -> int:
        return len(self.healthy_instances(component_id))

    def get_total_instance_count(self, component_id: Optional[str] = None) -> int:
        return len(self.instances(component_id))

    # ========================================================================
    # Routing
    # ========================================================================

    def select_instance(
        self, client_id: Optional[str] = None, component_id: Optional[str] = None
    ) -> Optional[ServiceInstance]:
        """
        Pick an instance with the configured algorithm.

        Args:
            client_id: Client identifier, used by ip-hash
            component_id: Restrict routing to one component's instances

        Returns:
            The selected instance, or None if no healthy instance exists
        """
        healthy = self.healthy_instances(component_id)
        if not healthy:
            self._failed_routings += 1
            logger.warning("No healthy instances available for routing")
            self._emit(
                "no-healthy-instances",
                {
                    "component_id": component_id,
                    "total_instances": self.get_total_instance_count(component_id),
                },
                severity=EventSeverity.WARNING,
            )
            return None

        algorithm = self.config.algorithm
        if algorithm == LoadBalancingAlgorithm.ROUND_ROBIN:
            return self._round_robin(healthy, component_id)
        if algorithm == LoadBalancingAlgorithm.LEAST_CONNECTIONS:
            return self._least_connections(healthy)
        if algorithm == LoadBalancingAlgorithm.WEIGHTED:
            return self._weighted(healthy)
        return self._ip_hash(healthy, client_id)

    def _round_robin(
        self, healthy: List[ServiceInstance], component_id: Optional[str]
    ) -> ServiceInstance:
        counter = self._round_robin_counters.get(component_id, 0)
        self._round_robin_counters[component_id] = counter + 1
        return healthy[counter % len(healthy)]

    def _least_connections(self, healthy: List[ServiceInstance]) -> ServiceInstance:
        # min() keeps the first of equal candidates, i.e. registration order
        return min(healthy, key=lambda i: self._stats[i.id].active_connections)

    def _weighted(self, healthy: List[ServiceInstance]) -> ServiceInstance:
        return self._rng.choices(healthy, weights=[i.weight for i in healthy], k=1)[0]

    def _ip_hash(self, healthy: List[ServiceInstance], client_id: Optional[str]) -> ServiceInstance:
        digest = hashlib.sha256((client_id or "").encode("utf-8")).digest()
        return healthy[int.from_bytes(digest[:8], "big") % len(healthy)]

    def handle_request(
        self, client_id: Optional[str] = None, component_id: Optional[str] = None
    ) -> Optional[ServiceInstance]:
        """Route a request and count it as an active connection."""
        instance = self.select_instance(client_id, component_id)
        if instance is None:
            return None

        stats = self._stats[instance.id]
        stats.active_connections += 1
        stats.total_requests += 1
        stats.last_selected_at = self._clock()
        self._total_requests += 1

        logger.debug(f"Routed request from {client_id or 'anonymous'} to {instance.id}")
        self._emit(
            "request-routed",
            {"client_id": client_id, "algorithm": self.config.algorithm.value},
            instance.id,
        )
        return instance

    def complete_request(self, instance_id: str) -> None:
        """Release the connection opened by ``handle_request``."""
        stats = self._stats.get(instance_id)
        if stats is not None and stats.active_connections > 0:
            stats.active_connections -= 1

    # ========================================================================
    # State
    # ========================================================================

    def get_instance_stats(self, instance_id: str) -> InstanceStats:
        self.get_instance(instance_id)
        return self._stats[instance_id].model_copy()

    def get_state(self) -> LoadBalancerState:
        return LoadBalancerState(
            algorithm=self.config.algorithm,
            instances=[i.model_copy(deep=True) for i in self._instances.values()],
            healthy_instances=self.get_healthy_instance_count(),
            total_requests=self._total_requests,
            failed_routings=self._failed_routings,
        )
