"""Auto-scaling, load balancing and instance health checking."""

from .autoscaler import AutoScaler
from .health import HealthCheckManager
from .load_balancer import LoadBalancer
from .manager import ScalingManager, ScalingStatus, SystemHealth
from .models import (
    HealthCheckConfig,
    LoadBalancerConfig,
    LoadBalancingAlgorithm,
    ScalingMetrics,
    ScalingPolicy,
    ScalingResult,
    ServiceInstance,
)

__all__ = [
    "AutoScaler",
    "HealthCheckConfig",
    "HealthCheckManager",
    "LoadBalancer",
    "LoadBalancerConfig",
    "LoadBalancingAlgorithm",
    "ScalingManager",
    "ScalingMetrics",
    "ScalingPolicy",
    "ScalingResult",
    "ScalingStatus",
    "ServiceInstance",
    "SystemHealth",
]
