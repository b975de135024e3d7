"""
Error taxonomy for the orchestration core.

Every failure that crosses a component boundary is one of the exceptions below.
Each carries a machine-readable ``ErrorCategory`` so public operations can turn
it into a structured result instead of letting it escape to the caller.
"""

from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    """Machine-readable failure categories."""

    VALIDATION = "validation"
    TRANSIENT = "transient"
    CIRCUIT_OPEN = "circuit_open"
    OVERLOAD = "overload"
    STRATEGY_EXECUTION = "strategy_execution"
    ROLLBACK_FAILURE = "rollback_failure"
    HEALTH_CHECK = "health_check"
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    APPROVAL_REQUIRED = "approval_required"


class OrchestratorError(Exception):
    """Base exception for orchestration core errors."""

    category: ErrorCategory = ErrorCategory.VALIDATION

    def __init__(self, message: str, category: Optional[ErrorCategory] = None) -> None:
        super().__init__(message)
        self.message = message
        if category is not None:
            self.category = category


class ConfigValidationError(OrchestratorError):
    """Raised for malformed or unsupported configuration."""

    category = ErrorCategory.VALIDATION


class TransientDependencyError(OrchestratorError):
    """Raised by collaborators for failures that are worth retrying."""

    category = ErrorCategory.TRANSIENT


class CircuitOpenError(OrchestratorError):
    """Raised when a call is short-circuited by an open breaker."""

    category = ErrorCategory.CIRCUIT_OPEN

    def __init__(self, key: str, retry_after: float) -> None:
        self.key = key
        self.retry_after = retry_after
        super().__init__(f"Circuit '{key}' is open. Retry in {retry_after:.1f}s")


class OverloadError(OrchestratorError):
    """Raised when a request is shed because the queue is saturated."""

    category = ErrorCategory.OVERLOAD


class StrategyExecutionError(OrchestratorError):
    """Raised when a deployment strategy cannot complete."""

    category = ErrorCategory.STRATEGY_EXECUTION


class RollbackError(OrchestratorError):
    """Raised when a rollback itself cannot complete."""

    category = ErrorCategory.ROLLBACK_FAILURE


class HealthCheckError(OrchestratorError):
    """Raised by a health probe that could not reach its instance."""

    category = ErrorCategory.HEALTH_CHECK


class NotFoundError(OrchestratorError):
    """Raised when an entity lookup fails."""

    category = ErrorCategory.NOT_FOUND


class InvalidTransitionError(OrchestratorError):
    """Raised when a state change is not allowed from the current state."""

    category = ErrorCategory.INVALID_STATE
