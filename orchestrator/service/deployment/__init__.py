"""Deployment orchestration: strategies, validation, rollback, promotion and analytics."""

from .analytics import AnalyticsManager
from .models import (
    DeploymentConfig,
    DeploymentRecord,
    DeploymentResult,
    DeploymentStatus,
    PromotionResult,
    RollbackPlan,
    StrategyType,
    ValidationResult,
)
from .orchestrator import DeploymentOrchestrator
from .providers import SimulatedInfrastructure, StaticMetricsProvider
from .rollback import RollbackManager

__all__ = [
    "AnalyticsManager",
    "DeploymentConfig",
    "DeploymentOrchestrator",
    "DeploymentRecord",
    "DeploymentResult",
    "DeploymentStatus",
    "PromotionResult",
    "RollbackManager",
    "RollbackPlan",
    "SimulatedInfrastructure",
    "StaticMetricsProvider",
    "StrategyType",
    "ValidationResult",
]
