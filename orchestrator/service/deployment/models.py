"""
Deployment models.

Configuration supplied by callers, the deployment record owned by the
DeploymentOrchestrator, and the structured results of every deployment
operation.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from ..models import OperationResult, utcnow


# ============================================================================
# Enums and state machine
# ============================================================================


class StrategyType(str, Enum):
    """Supported rollout strategies."""

    BLUE_GREEN = "blue-green"
    CANARY = "canary"
    ROLLING = "rolling"


class DeploymentStatus(str, Enum):
    """Deployment lifecycle states."""

    PENDING = "pending"
    VALIDATING = "validating"
    EXECUTING = "executing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled-back"


TERMINAL_STATUSES = {
    DeploymentStatus.COMPLETED,
    DeploymentStatus.FAILED,
    DeploymentStatus.ROLLED_BACK,
}

# A manual rollback may still move a completed or failed deployment to rolled-back.
ALLOWED_TRANSITIONS: Dict[DeploymentStatus, set] = {
    DeploymentStatus.PENDING: {DeploymentStatus.VALIDATING, DeploymentStatus.FAILED},
    DeploymentStatus.VALIDATING: {DeploymentStatus.EXECUTING, DeploymentStatus.FAILED},
    DeploymentStatus.EXECUTING: {
        DeploymentStatus.PAUSED,
        DeploymentStatus.COMPLETED,
        DeploymentStatus.FAILED,
        DeploymentStatus.ROLLED_BACK,
    },
    DeploymentStatus.PAUSED: {
        DeploymentStatus.EXECUTING,
        DeploymentStatus.FAILED,
        DeploymentStatus.ROLLED_BACK,
    },
    DeploymentStatus.COMPLETED: {DeploymentStatus.ROLLED_BACK},
    DeploymentStatus.FAILED: {DeploymentStatus.ROLLED_BACK},
    DeploymentStatus.ROLLED_BACK: set(),
}


class ValidationPhase(str, Enum):
    """Phases of the validation pipeline."""

    CONFIGURATION = "configuration"
    PRE_DEPLOYMENT = "pre-deployment"
    POST_DEPLOYMENT = "post-deployment"
    HEALTH = "health"
    PERFORMANCE = "performance"
    SECURITY = "security"


# ============================================================================
# Configuration Models
# ============================================================================


class MetricThreshold(BaseModel):
    """A bound a collected metric must respect, e.g. error_rate < 0.05."""

    metric: str = Field(..., min_length=1)
    operator: Literal["lt", "lte", "gt", "gte"] = "lt"
    value: float

    def evaluate(self, observed: float) -> bool:
        if self.operator == "lt":
            return observed < self.value
        if self.operator == "lte":
            return observed <= self.value
        if self.operator == "gt":
            return observed > self.value
        return observed >= self.value

    def describe(self) -> str:
        symbols = {"lt": "<", "lte": "<=", "gt": ">", "gte": ">="}
        return f"{self.metric} {symbols[self.operator]} {self.value}"


class ComponentSpec(BaseModel):
    """A deployable component referenced by name and version."""

    name: str = Field(..., min_length=1)
    version: str = Field(..., min_length=1)
    previous_version: Optional[str] = Field(
        default=None, description="Version restored on rollback"
    )
    replicas: int = Field(default=1, ge=1)
    data_migration: bool = Field(
        default=False, description="Whether this version migrates persistent data"
    )


class ValidationRule(BaseModel):
    """A single validation check."""

    name: str = Field(..., min_length=1)
    required: bool = True
    timeout_seconds: float = Field(default=30.0, gt=0)
    retries: int = Field(default=0, ge=0)
    threshold: Optional[MetricThreshold] = Field(
        default=None, description="Metric bound; without one the check is delegated to infrastructure"
    )


class ValidationConfig(BaseModel):
    """Validation rules per pipeline phase."""

    pre_deployment: List[ValidationRule] = Field(default_factory=list)
    post_deployment: List[ValidationRule] = Field(default_factory=list)
    health_checks: List[ValidationRule] = Field(default_factory=list)
    performance: List[ValidationRule] = Field(default_factory=list)
    security: List[ValidationRule] = Field(default_factory=list)


class RollbackPolicy(BaseModel):
    """Rollback behaviour of a deployment."""

    automatic: bool = Field(
        default=True, description="Roll back automatically when the strategy fails"
    )
    timeout_seconds: Optional[float] = Field(
        default=None, gt=0, description="Rollback timeout (service default if unset)"
    )


class AnalyticsConfig(BaseModel):
    """Analytics collected for a deployment."""

    enabled: bool = True
    metrics: List[str] = Field(
        default_factory=lambda: ["response_time", "throughput", "error_rate", "availability"]
    )


class ApprovalGate(BaseModel):
    """Approval required before promoting into a stage."""

    stage: str = Field(..., min_length=1)
    approvers: List[str] = Field(..., min_length=1)
    required_approvals: int = Field(default=1, ge=1)
    expires_in_seconds: Optional[int] = Field(default=None, ge=1)


class BlueGreenConfig(BaseModel):
    """Blue-green strategy parameters."""

    warmup_seconds: float = 0.0
    warmup_check_interval_seconds: float = 5.0
    cutover: Literal["immediate", "gradual"] = "immediate"
    cutover_steps: List[float] = Field(
        default_factory=lambda: [25.0, 50.0, 100.0],
        description="Traffic percentages of a gradual cut-over",
    )
    rollback_thresholds: List[MetricThreshold] = Field(default_factory=list)


class CanaryStage(BaseModel):
    """One traffic step of a canary rollout."""

    name: str = Field(..., min_length=1)
    percentage: float
    duration_seconds: float = 0.0
    auto_promote: bool = True


class CanaryConfig(BaseModel):
    """Canary strategy parameters."""

    stages: List[CanaryStage] = Field(default_factory=list)
    metrics: List[MetricThreshold] = Field(default_factory=list)
    analysis_interval_seconds: float = 30.0


class RollingConfig(BaseModel):
    """Rolling strategy parameters."""

    batch_size: Union[int, str] = Field(
        default=1, description="Replicas per batch, absolute or a percentage like '25%'"
    )
    max_unavailable: int = 1
    max_surge: int = 0
    pause_between_batches_seconds: float = 0.0
    progress_deadline_seconds: float = 600.0


class DeploymentConfig(BaseModel):
    """Deployment request. Read-only once execution starts."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str = Field(..., min_length=1)
    version: str = Field(..., min_length=1)
    strategy: str = Field(..., description="blue-green, canary or rolling")
    environment: str = Field(..., min_length=1)
    components: List[ComponentSpec] = Field(..., min_length=1)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    rollback: RollbackPolicy = Field(default_factory=RollbackPolicy)
    analytics: AnalyticsConfig = Field(default_factory=AnalyticsConfig)
    approvals: List[ApprovalGate] = Field(default_factory=list)
    prerequisites: Dict[str, List[str]] = Field(
        default_factory=dict,
        description="Environments that must hold a completed deployment before promoting into a key",
    )
    blue_green: Optional[BlueGreenConfig] = None
    canary: Optional[CanaryConfig] = None
    rolling: Optional[RollingConfig] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Record Models
# ============================================================================


class DeploymentLog(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    level: Literal["debug", "info", "warning", "error"] = "info"
    component: str
    message: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class DeploymentFailure(BaseModel):
    """An error recorded against a deployment."""

    timestamp: datetime = Field(default_factory=utcnow)
    component: str
    type: str
    message: str
    recoverable: bool = False


class DeploymentProgress(BaseModel):
    total_steps: int = 0
    completed_steps: int = 0
    current_step: str = "Initializing deployment"
    percentage: float = 0.0
    estimated_time_remaining_seconds: float = 0.0


class ResourceUsage(BaseModel):
    cpu: float = 0.0
    memory: float = 0.0
    network: float = 0.0
    storage: float = 0.0


class PerformanceSnapshot(BaseModel):
    response_time: float = 0.0
    throughput: float = 0.0
    error_rate: float = 0.0
    availability: float = 0.0


class DeploymentMetrics(BaseModel):
    """Per-deployment analytics sample."""

    duration_seconds: float = 0.0
    resource_usage: ResourceUsage = Field(default_factory=ResourceUsage)
    performance: PerformanceSnapshot = Field(default_factory=PerformanceSnapshot)
    success: bool = False
    rollback_count: int = 0


class AppliedChange(BaseModel):
    """A change made to infrastructure, undone in reverse order on rollback."""

    action: str
    component: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    applied_at: datetime = Field(default_factory=utcnow)


class CheckResult(BaseModel):
    """Outcome of a single validation check."""

    name: str
    phase: ValidationPhase
    success: bool
    score: float = Field(default=0.0, ge=0.0, le=1.0)
    required: bool = True
    message: str = ""
    attempts: int = 1
    duration_seconds: float = 0.0


class ValidationResult(OperationResult):
    """Aggregated outcome of a validation phase."""

    results: List[CheckResult] = Field(default_factory=list)
    overall_score: float = 1.0
    recommendations: List[str] = Field(default_factory=list)


class DeploymentRecord(BaseModel):
    """Mutable execution state of a deployment."""

    id: str
    config: DeploymentConfig
    status: DeploymentStatus = DeploymentStatus.PENDING
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    current_stage: str = "initialization"
    progress: DeploymentProgress = Field(default_factory=DeploymentProgress)
    logs: List[DeploymentLog] = Field(default_factory=list)
    metrics: DeploymentMetrics = Field(default_factory=DeploymentMetrics)
    errors: List[DeploymentFailure] = Field(default_factory=list)
    applied_changes: List[AppliedChange] = Field(default_factory=list)
    strategy_state: Dict[str, Any] = Field(default_factory=dict)
    validation: Optional[ValidationResult] = None
    rollback_count: int = 0


# ============================================================================
# Result Models
# ============================================================================


class DeploymentResult(OperationResult):
    """Outcome of create/rollback/pause/resume/cancel."""

    deployment_id: str
    status: Optional[DeploymentStatus] = None
    metrics: Optional[DeploymentMetrics] = None
    validation: Optional[ValidationResult] = None


class RollbackStep(BaseModel):
    name: str
    action: str
    order: int
    timeout_seconds: float
    component: Optional[str] = None
    continue_on_failure: bool = Field(
        default=False, description="Keep going when this step fails"
    )
    details: Dict[str, Any] = Field(default_factory=dict)


class RollbackRisk(BaseModel):
    type: Literal["data-loss", "downtime", "performance", "compatibility"]
    severity: Literal["low", "medium", "high"]
    description: str
    mitigation: str


class RollbackPlan(BaseModel):
    """Ordered rollback steps. Consumed at most once."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    deployment_id: str
    steps: List[RollbackStep] = Field(default_factory=list)
    estimated_duration_seconds: float = 0.0
    risks: List[RollbackRisk] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


class RollbackRecord(BaseModel):
    """History entry of an executed rollback."""

    plan_id: str
    deployment_id: str
    success: bool
    message: str = ""
    steps_completed: int = 0
    started_at: datetime
    completed_at: datetime


class PromotionResult(OperationResult):
    deployment_id: str
    from_environment: str
    to_environment: str
    new_deployment_id: Optional[str] = None
    approval_id: Optional[str] = None
    status: Optional[DeploymentStatus] = None


class ThresholdResult(BaseModel):
    metric: str
    condition: str
    observed: Optional[float] = None
    passed: bool


class CanaryAnalysis(BaseModel):
    """Metric analysis of a canary stage."""

    stage: str
    percentage: float
    metrics: Dict[str, float] = Field(default_factory=dict)
    thresholds: List[ThresholdResult] = Field(default_factory=list)
    confidence: float = 1.0
    recommendation: Literal["promote", "continue", "rollback"]
    reasons: List[str] = Field(default_factory=list)
    analyzed_at: datetime = Field(default_factory=utcnow)
