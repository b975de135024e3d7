"""
Configuration module for the Orchestrator service.

Uses pydantic-settings for environment variable management with type validation.
"""

from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class OrchestratorConfig(BaseSettings):
    """Configuration for the orchestration core."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service Configuration
    host: str = Field(default="0.0.0.0", description="Host to bind the service")
    port: int = Field(default=8000, description="Port to bind the service")
    reload: bool = Field(default=False, description="Enable auto-reload for development")
    log_level: str = Field(
        default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )

    # Work Queue Configuration
    queue_max_depth: int = Field(
        default=100, ge=1, description="Queue depth above which requests are shed"
    )
    shed_priorities: List[str] = Field(
        default_factory=lambda: ["normal", "low"],
        description="Priorities rejected while the queue is saturated",
    )
    max_concurrent_work: int = Field(
        default=4, ge=1, description="Maximum work requests processed at once"
    )
    queue_tick_interval_seconds: float = Field(
        default=0.1, gt=0, description="Interval between queue processing ticks"
    )

    # Retry Configuration
    retry_max_attempts: int = Field(
        default=3, ge=1, description="Attempts per downstream call, including the first"
    )
    retry_base_delay_seconds: float = Field(
        default=0.5, ge=0, description="Backoff delay before the first retry"
    )
    retry_multiplier: float = Field(
        default=2.0, ge=1.0, description="Backoff multiplier between retries"
    )
    retry_max_delay_seconds: float = Field(
        default=30.0, ge=0, description="Upper bound for a single backoff delay"
    )

    # Circuit Breaker Configuration
    circuit_breaker_failure_threshold: int = Field(
        default=5, ge=1, description="Consecutive failures before a breaker opens"
    )
    circuit_breaker_recovery_timeout_seconds: float = Field(
        default=60.0, gt=0, description="Time a breaker stays open before probing"
    )

    # Deployment Configuration
    rollback_timeout_seconds: float = Field(
        default=600.0, gt=0, description="Rollback execution timeout"
    )
    approval_expiry_seconds: int = Field(
        default=3600, ge=1, description="Default approval request lifetime"
    )
    approval_cleanup_interval_seconds: float = Field(
        default=60.0, gt=0, description="Interval of the approval expiry sweep"
    )

    # Scaling Configuration
    autoscaler_evaluation_interval_seconds: float = Field(
        default=30.0, gt=0, description="Interval between autoscaler evaluations"
    )
    metrics_window_seconds: float = Field(
        default=300.0, gt=0, description="Rolling window for scaling metrics"
    )
    health_check_interval_seconds: float = Field(
        default=30.0, gt=0, description="Interval between instance health probes"
    )
    cost_per_instance_hour: float = Field(
        default=0.10, ge=0, description="Hourly cost of a single instance"
    )
    scaling_policies_file: Optional[str] = Field(
        default=None, description="YAML file with scaling policies loaded at startup"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the allowed values."""
        allowed_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in allowed_levels:
            raise ValueError(f"log_level must be one of {allowed_levels}")
        return v_upper

    @field_validator("shed_priorities")
    @classmethod
    def validate_shed_priorities(cls, v: List[str]) -> List[str]:
        """Validate shed priorities never include critical work."""
        allowed = {"high", "normal", "low"}
        normalized = [p.lower() for p in v]
        for priority in normalized:
            if priority not in allowed:
                raise ValueError(f"shed_priorities must be a subset of {allowed}")
        return normalized


# Global config instance
config = OrchestratorConfig()
