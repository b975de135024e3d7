"""
Data models for the scaling subsystem.

Policies, metric samples, instances and the result types returned by the
autoscaler, load balancer and health checker.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..models import OperationResult, utcnow


# ============================================================================
# Metrics
# ============================================================================


class ScalingMetrics(BaseModel):
    """One metrics sample for a component or instance."""

    cpu: float = Field(default=0.0, ge=0, description="CPU utilization percent")
    memory: float = Field(default=0.0, ge=0, description="Memory utilization percent")
    request_rate: float = Field(default=0.0, ge=0, description="Requests per second")
    response_time: float = Field(default=0.0, ge=0, description="Response time in ms")
    error_rate: float = Field(default=0.0, ge=0, description="Error rate percent")
    active_connections: int = Field(default=0, ge=0)
    queue_length: int = Field(default=0, ge=0)
    timestamp: datetime = Field(default_factory=utcnow)


MetricName = Literal[
    "cpu",
    "memory",
    "request_rate",
    "response_time",
    "error_rate",
    "active_connections",
    "queue_length",
]


# ============================================================================
# Auto-scaling
# ============================================================================


class ScalingPolicy(BaseModel):
    """Threshold policy driving automatic scaling of a component."""

    id: str = Field(default_factory=lambda: f"policy-{uuid4().hex[:8]}")
    name: str = Field(default="default")
    component_id: Optional[str] = Field(
        default=None, description="Component this policy applies to; None applies to all"
    )
    enabled: bool = True
    target_metric: MetricName = "cpu"
    scale_up_threshold: float = Field(default=70.0, ge=0)
    scale_down_threshold: float = Field(default=30.0, ge=0)
    min_instances: int = Field(default=1, ge=0)
    max_instances: int = Field(default=10, ge=1)
    cooldown_seconds: float = Field(default=60.0, ge=0)
    scale_up_step: int = Field(default=1, ge=1)
    scale_down_step: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def validate_bounds(self) -> "ScalingPolicy":
        if self.min_instances > self.max_instances:
            raise ValueError("min_instances must not exceed max_instances")
        if self.scale_down_threshold >= self.scale_up_threshold:
            raise ValueError("scale_down_threshold must be below scale_up_threshold")
        return self

    def applies_to(self, component_id: str) -> bool:
        return self.component_id is None or self.component_id == component_id


class ScalingDirection(str, Enum):
    UP = "up"
    DOWN = "down"
    MANUAL = "manual"
    NONE = "none"


class ScalingResult(OperationResult):
    """Outcome of a scaling decision or manual scale request."""

    component_id: str
    previous_instances: int
    new_instances: int
    direction: ScalingDirection = ScalingDirection.NONE
    reason: str = ""
    policy_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class Bottleneck(BaseModel):
    """A resource dimension whose utilization calls for attention."""

    component_id: str
    type: str = Field(..., description="cpu, memory, response_time, error_rate or queue")
    severity: Literal["warning", "critical"]
    value: float
    threshold: float
    description: str
    recommendations: List[str] = Field(default_factory=list)
    detected_at: datetime = Field(default_factory=utcnow)


class CostRecommendation(BaseModel):
    component_id: str
    current_instances: int
    recommended_instances: int
    average_utilization: float
    estimated_monthly_savings: float = Field(..., ge=0)
    description: str


class CostOptimization(BaseModel):
    """Current and projected cost of the running allocation."""

    current_cost: float = Field(..., ge=0, description="Monthly cost of the current allocation")
    projected_cost: float = Field(..., ge=0, description="Monthly cost after recommendations")
    savings: float = Field(..., ge=0)
    recommendations: List[CostRecommendation] = Field(default_factory=list)


# ============================================================================
# Load balancing
# ============================================================================


class LoadBalancingAlgorithm(str, Enum):
    ROUND_ROBIN = "round-robin"
    LEAST_CONNECTIONS = "least-connections"
    WEIGHTED = "weighted"
    IP_HASH = "ip-hash"


class HealthCheckMethod(str, Enum):
    HTTP = "http"
    TCP = "tcp"
    COMMAND = "command"
    RPC = "rpc"


class HealthCheckConfig(BaseModel):
    """How and how often instances are probed."""

    enabled: bool = True
    method: HealthCheckMethod = HealthCheckMethod.HTTP
    path: str = "/health"
    command: List[str] = Field(default_factory=list, description="Argv for command probes")
    expected_status: int = Field(default=200, ge=100, le=599)
    interval_seconds: float = Field(default=30.0, gt=0)
    timeout_seconds: float = Field(default=5.0, gt=0)
    healthy_threshold: int = Field(default=2, ge=1)
    unhealthy_threshold: int = Field(default=3, ge=1)

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("Health check path must start with '/'")
        return v


class LoadBalancerConfig(BaseModel):
    algorithm: LoadBalancingAlgorithm = LoadBalancingAlgorithm.ROUND_ROBIN
    health_check: HealthCheckConfig = Field(default_factory=HealthCheckConfig)
    timeout_seconds: float = Field(default=30.0, gt=0)


class ServiceInstance(BaseModel):
    """A routable instance of a component."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(..., min_length=1)
    component_id: str = Field(default="default")
    host: str = Field(..., min_length=1)
    port: int = Field(..., ge=1, le=65535)
    weight: float = Field(default=1.0, gt=0)
    healthy: bool = True
    last_health_check: Optional[datetime] = None
    metrics: ScalingMetrics = Field(default_factory=ScalingMetrics)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


class InstanceStats(BaseModel):
    instance_id: str
    healthy: bool
    active_connections: int = 0
    total_requests: int = 0
    last_selected_at: Optional[datetime] = None


class LoadBalancerState(BaseModel):
    algorithm: LoadBalancingAlgorithm
    instances: List[ServiceInstance] = Field(default_factory=list)
    healthy_instances: int = 0
    total_requests: int = 0
    failed_routings: int = 0


class ProbeResult(BaseModel):
    instance_id: str
    success: bool
    latency_ms: float = 0.0
    message: str = ""
    checked_at: datetime = Field(default_factory=utcnow)


class HealthState(BaseModel):
    """Consecutive probe counters of one instance."""

    instance_id: str
    healthy: bool = True
    consecutive_successes: int = 0
    consecutive_failures: int = 0
    last_result: Optional[ProbeResult] = None
