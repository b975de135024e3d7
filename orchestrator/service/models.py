"""
Pydantic models shared across the orchestration core.

Defines work requests and results, system events, circuit breaker state and the
API envelopes used by the HTTP layer. Deployment and scaling models live in
their own subpackages.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from .errors import ErrorCategory


def utcnow() -> datetime:
    """Current UTC time as a naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============================================================================
# Enums
# ============================================================================


class WorkKind(str, Enum):
    """Kinds of work accepted by the workflow orchestrator."""

    DEPLOYMENT = "deployment"
    COMPONENT_OP = "component-op"
    MAINTENANCE = "maintenance"
    GENERATION = "generation"


class Priority(str, Enum):
    """Work request priority tiers."""

    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Lower rank is dequeued first."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.CRITICAL: 0,
    Priority.HIGH: 1,
    Priority.NORMAL: 2,
    Priority.LOW: 3,
}


class EventSeverity(str, Enum):
    """Severity attached to system events."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


# ============================================================================
# Event Models
# ============================================================================


class SystemEvent(BaseModel):
    """An immutable entry of the append-only event log."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    sequence: int = Field(default=0, ge=0, description="Position in the event log")
    type: str = Field(..., min_length=1, description="Dotted event type")
    timestamp: datetime = Field(default_factory=utcnow)
    source: str = Field(default="orchestrator", description="Emitting component")
    entity_id: Optional[str] = Field(
        default=None, description="Deployment, breaker key, instance or request id"
    )
    severity: EventSeverity = Field(default=EventSeverity.INFO)
    payload: Dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Work Models
# ============================================================================


class WorkRequest(BaseModel):
    """A unit of work submitted to the workflow orchestrator."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    kind: WorkKind = Field(..., description="Kind of work")
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Field(default=Priority.NORMAL)
    submitted_at: datetime = Field(default_factory=utcnow)
    dependency: Optional[str] = Field(
        default=None,
        description="Circuit breaker key of the downstream collaborator (defaults to kind)",
    )
    trace_id: str = Field(default_factory=lambda: str(uuid4()))

    @property
    def dependency_key(self) -> str:
        return self.dependency or self.kind.value


class WorkMetrics(BaseModel):
    """Execution metrics of a single work request."""

    attempts: int = Field(default=0, ge=0)
    queue_wait_seconds: float = Field(default=0.0, ge=0)
    execution_seconds: float = Field(default=0.0, ge=0)


class WorkResult(BaseModel):
    """Outcome of a work request, produced exactly once."""

    request_id: str
    success: bool
    data: Any = None
    metrics: WorkMetrics = Field(default_factory=WorkMetrics)
    trace_id: str
    message: str = ""
    category: Optional[ErrorCategory] = None
    completed_at: datetime = Field(default_factory=utcnow)


class OperationResult(BaseModel):
    """Structured outcome returned by every public operation."""

    success: bool
    message: str = ""
    category: Optional[ErrorCategory] = None


class SubmissionReceipt(OperationResult):
    """Immediate answer to a work submission."""

    request_id: str
    trace_id: str
    accepted: bool = False
    queue_position: Optional[int] = None


class QueueStatus(BaseModel):
    """Snapshot of the work queue."""

    size: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    rejected: int = 0


class CircuitBreakerState(BaseModel):
    """Observable state of one circuit breaker."""

    key: str
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    opened_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None


# ============================================================================
# API Request/Response Models
# ============================================================================


class WorkRequestCreate(BaseModel):
    """Request body for submitting work over HTTP."""

    kind: WorkKind
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Priority.NORMAL
    dependency: Optional[str] = None


class PromoteRequest(BaseModel):
    """Request body for promoting a deployment between environments."""

    from_environment: str = Field(..., min_length=1)
    to_environment: str = Field(..., min_length=1)


class ApprovalDecisionRequest(BaseModel):
    """Request body for recording an approval decision."""

    approver_id: str = Field(..., min_length=1)
    approved: bool
    comment: Optional[str] = None


class ManualScaleRequest(BaseModel):
    """Request body for a manual scaling action."""

    target_instances: int = Field(..., ge=0)
    reason: str = Field(..., min_length=1)


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Human-readable error message")
    category: Optional[ErrorCategory] = Field(default=None)
    details: Optional[Dict[str, Any]] = Field(default=None)
    timestamp: datetime = Field(default_factory=utcnow)


class HealthCheckResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Overall health status")
    version: str = Field(..., description="Service version")
    components: Dict[str, str] = Field(default_factory=dict)
    uptime_seconds: float = Field(..., ge=0.0)


class EventListResponse(BaseModel):
    """Event history page."""

    events: List[SystemEvent] = Field(default_factory=list)
    count: int = 0
