"""
Orchestration core service implementation.

Contains the FastAPI application, the orchestration core and all component logic.
"""

from .config import OrchestratorConfig, config
from .core import OrchestrationCore
from .main import app
from .models import (
    OperationResult,
    SubmissionReceipt,
    WorkRequest,
    WorkRequestCreate,
    WorkResult,
)

__all__ = [
    "app",
    "config",
    "OrchestratorConfig",
    "OrchestrationCore",
    "OperationResult",
    "SubmissionReceipt",
    "WorkRequest",
    "WorkRequestCreate",
    "WorkResult",
]
