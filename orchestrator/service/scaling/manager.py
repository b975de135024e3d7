"""
Scaling manager.

Composes the autoscaler, the load balancer and the health checker behind one
interface and relays metrics to both the autoscaler and the load balancer.
"""

import logging
import random
import time
from statistics import mean
from typing import Any, Callable, Dict, List, Literal, Optional

import httpx
from pydantic import BaseModel, Field

from ..config import OrchestratorConfig
from ..events import EventStore
from .autoscaler import AutoScaler
from .health import HealthCheckManager, RpcProbe
from .load_balancer import LoadBalancer
from .models import (
    Bottleneck,
    CostOptimization,
    LoadBalancerConfig,
    LoadBalancerState,
    ScalingMetrics,
    ScalingPolicy,
    ScalingResult,
    ServiceInstance,
)

logger = logging.getLogger(__name__)


class ScalingInfo(BaseModel):
    instances: int
    policies: List[ScalingPolicy] = Field(default_factory=list)
    history: List[ScalingResult] = Field(default_factory=list)
    bottlenecks: List[Bottleneck] = Field(default_factory=list)


class LoadBalancingInfo(BaseModel):
    state: LoadBalancerState
    healthy_instances: int = 0
    total_instances: int = 0


class ResourceInfo(BaseModel):
    pool: Dict[str, Any] = Field(default_factory=dict)
    utilization: Dict[str, float] = Field(default_factory=dict)


class PerformanceInfo(BaseModel):
    latest: Optional[ScalingMetrics] = None
    averages: Dict[str, float] = Field(default_factory=dict)
    alerts: List[str] = Field(default_factory=list)


class ScalingStatus(BaseModel):
    """Combined scaling view of one component."""

    component_id: str
    scaling: ScalingInfo
    load_balancing: LoadBalancingInfo
    resources: ResourceInfo
    performance: PerformanceInfo


class SystemHealth(BaseModel):
    overall: Literal["healthy", "warning", "critical"]
    components: int = 0
    active_alerts: int = 0
    bottlenecks: int = 0
    healthy_instances: int = 0
    total_instances: int = 0
    resource_utilization: Dict[str, float] = Field(default_factory=dict)


_UTILIZATION_METRICS = ("cpu", "memory")
_PERFORMANCE_METRICS = ("request_rate", "response_time", "error_rate")


class ScalingManager:
    """Facade over auto-scaling, load balancing and health checking."""

    def __init__(
        self,
        event_store: EventStore,
        settings: OrchestratorConfig,
        policies: Optional[List[ScalingPolicy]] = None,
        load_balancer_config: Optional[LoadBalancerConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        rpc_probe: Optional[RpcProbe] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.event_store = event_store
        self.settings = settings

        if load_balancer_config is None:
            load_balancer_config = LoadBalancerConfig()
            load_balancer_config.health_check.interval_seconds = (
                settings.health_check_interval_seconds
            )

        self.autoscaler = AutoScaler(
            event_store,
            policies=policies,
            metrics_window_seconds=settings.metrics_window_seconds,
            evaluation_interval_seconds=settings.autoscaler_evaluation_interval_seconds,
            cost_per_instance_hour=settings.cost_per_instance_hour,
            clock=clock,
        )
        self.load_balancer = LoadBalancer(event_store, load_balancer_config, rng=rng)
        self.health = HealthCheckManager(
            event_store,
            self.load_balancer,
            http_client=http_client,
            rpc_probe=rpc_probe,
        )
        self._latest: Dict[str, ScalingMetrics] = {}
        self._running = False

    async def start(self) -> None:
        if self._running:
            return
        await self.autoscaler.start()
        await self.health.start()
        self._running = True
        logger.info("Scaling manager started")

    async def stop(self) -> None:
        if not self._running:
            return
        await self.health.stop()
        await self.autoscaler.stop()
        self._running = False
        logger.info("Scaling manager stopped")

    @property
    def running(self) -> bool:
        return self._running

    # ========================================================================
    # Instances and metrics
    # ========================================================================

    def register_instance(self, instance: ServiceInstance) -> None:
        self.load_balancer.register_instance(instance)

    def unregister_instance(self, instance_id: str) -> Optional[ServiceInstance]:
        self.health.forget(instance_id)
        return self.load_balancer.unregister_instance(instance_id)

    def add_metrics(
        self, component_id: str, metrics: ScalingMetrics, instance_id: Optional[str] = None
    ) -> None:
        """
        Record a metrics sample.

        Args:
            component_id: Component the sample belongs to
            metrics: The sample
            instance_id: Instance that reported it; its load balancer entry is updated
        """
        self._latest[component_id] = metrics
        self.autoscaler.add_metrics(component_id, metrics)
        if instance_id is not None:
            self.load_balancer.update_instance_metrics(instance_id, metrics)

    def route_request(
        self, client_id: Optional[str] = None, component_id: Optional[str] = None
    ) -> Optional[ServiceInstance]:
        return self.load_balancer.handle_request(client_id, component_id)

    # ========================================================================
    # Scaling
    # ========================================================================

    def manual_scale(self, component_id: str, target_instances: int, reason: str) -> ScalingResult:
        return self.autoscaler.manual_scale(component_id, target_instances, reason)

    def evaluate(self) -> List[ScalingResult]:
        """Run one autoscaler evaluation outside the periodic tick."""
        return self.autoscaler.evaluate_all()

    def get_system_bottlenecks(self) -> List[Bottleneck]:
        return self.autoscaler.detect_bottlenecks()

    def optimize_costs(self, component_id: Optional[str] = None) -> CostOptimization:
        return self.autoscaler.optimize_costs(component_id)

    # ========================================================================
    # Status
    # ========================================================================

    def _averages(self, component_id: str, metrics) -> Dict[str, float]:
        averages = {}
        for metric in metrics:
            value = self.autoscaler.aggregate(component_id, metric)
            if value is not None:
                averages[metric] = value
        return averages

    def get_scaling_status(self, component_id: str) -> ScalingStatus:
        """Scaling, load balancing, resource and performance view of a component."""
        bottlenecks = self.autoscaler.detect_bottlenecks(component_id)
        instances = self.autoscaler.get_instance_count(component_id)
        component_instances = self.load_balancer.instances(component_id)

        state = self.load_balancer.get_state()
        state.instances = [i for i in state.instances if i.component_id == component_id]
        state.healthy_instances = sum(1 for i in state.instances if i.healthy)

        minimum, maximum = self.autoscaler.bounds(component_id)
        hourly = instances * self.settings.cost_per_instance_hour

        return ScalingStatus(
            component_id=component_id,
            scaling=ScalingInfo(
                instances=instances,
                policies=self.autoscaler.policies_for(component_id),
                history=self.autoscaler.get_scaling_history(component_id),
                bottlenecks=bottlenecks,
            ),
            load_balancing=LoadBalancingInfo(
                state=state,
                healthy_instances=state.healthy_instances,
                total_instances=len(component_instances),
            ),
            resources=ResourceInfo(
                pool={
                    "allocated_instances": instances,
                    "min_instances": minimum,
                    "max_instances": maximum,
                    "hourly_cost": hourly,
                },
                utilization=self._averages(component_id, _UTILIZATION_METRICS),
            ),
            performance=PerformanceInfo(
                latest=self._latest.get(component_id),
                averages=self._averages(component_id, _PERFORMANCE_METRICS),
                alerts=[b.description for b in bottlenecks],
            ),
        )

    def get_system_health(self) -> SystemHealth:
        """
        Summarize health across all components.

        The system is critical when a critical bottleneck exists or no
        registered instance is healthy, and warning when any bottleneck
        exists or some instance is unhealthy.
        """
        bottlenecks = self.autoscaler.detect_bottlenecks()
        total = self.load_balancer.get_total_instance_count()
        healthy = self.load_balancer.get_healthy_instance_count()
        unhealthy = total - healthy

        if any(b.severity == "critical" for b in bottlenecks) or (total and not healthy):
            overall = "critical"
        elif bottlenecks or unhealthy:
            overall = "warning"
        else:
            overall = "healthy"

        components = self.autoscaler.components()
        utilization = {}
        for metric in _UTILIZATION_METRICS:
            values = [
                v for v in (self.autoscaler.aggregate(c, metric) for c in components)
                if v is not None
            ]
            utilization[metric] = mean(values) if values else 0.0

        return SystemHealth(
            overall=overall,
            components=len(components),
            active_alerts=len(bottlenecks) + unhealthy,
            bottlenecks=len(bottlenecks),
            healthy_instances=healthy,
            total_instances=total,
            resource_utilization=utilization,
        )
