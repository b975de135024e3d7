"""
Orchestration core.

This package provides the automation orchestration core responsible for:
- Prioritized work execution with circuit breakers, retries and overload shedding
- Blue-green, canary and rolling deployments with validation and rollback
- Promotion gates, approvals and deployment analytics
- Auto-scaling, load balancing and instance health checking
- An append-only event store with per-subscriber channels
"""

__version__ = "1.0.0"

from .service.config import OrchestratorConfig, config
from .service.core import OrchestrationCore
from .service.deployment import DeploymentConfig, DeploymentOrchestrator, DeploymentStatus
from .service.errors import ErrorCategory, OrchestratorError
from .service.events import EventStore
from .service.models import Priority, SystemEvent, WorkKind, WorkRequest, WorkResult
from .service.scaling import ScalingManager, ScalingMetrics, ScalingPolicy
from .service.workflow_orchestrator import WorkflowOrchestrator

__all__ = [
    "OrchestratorConfig",
    "config",
    "OrchestrationCore",
    "DeploymentConfig",
    "DeploymentOrchestrator",
    "DeploymentStatus",
    "ErrorCategory",
    "OrchestratorError",
    "EventStore",
    "Priority",
    "SystemEvent",
    "WorkKind",
    "WorkRequest",
    "WorkResult",
    "ScalingManager",
    "ScalingMetrics",
    "ScalingPolicy",
    "WorkflowOrchestrator",
]
