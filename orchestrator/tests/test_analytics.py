"""
Tests for deployment analytics.

Module: tests/test_analytics.py
"""

from typing import List
from unittest.mock import AsyncMock

import pytest

from orchestrator.service.config import OrchestratorConfig
from orchestrator.service.deployment import (
    AnalyticsManager,
    DeploymentConfig,
    DeploymentOrchestrator,
    DeploymentRecord,
    StaticMetricsProvider,
)
from orchestrator.service.deployment.models import DeploymentMetrics, PerformanceSnapshot
from orchestrator.service.errors import NotFoundError


def _record(deployment_id: str, environment: str, strategy: str, components: List[str]) -> DeploymentRecord:
    config = DeploymentConfig(
        id=deployment_id,
        name="api",
        version="1.0.0",
        strategy=strategy,
        environment=environment,
        components=[{"name": c, "version": "1.0.0"} for c in components],
    )
    return DeploymentRecord(id=deployment_id, config=config)


def _metrics(success: bool, response_time: float = 100.0, duration: float = 10.0) -> DeploymentMetrics:
    return DeploymentMetrics(
        success=success,
        duration_seconds=duration,
        performance=PerformanceSnapshot(response_time=response_time),
    )


@pytest.fixture
def analytics() -> AnalyticsManager:
    manager = AnalyticsManager()
    manager.track_deployment(_record("d1", "staging", "rolling", ["api"]), _metrics(True, 100, 10))
    manager.track_deployment(_record("d2", "staging", "canary", ["api", "worker"]), _metrics(False, 100, 30))
    manager.track_deployment(_record("d3", "production", "rolling", ["api"]), _metrics(True, 50, 20))
    manager.track_deployment(_record("d4", "production", "rolling", ["worker"]), _metrics(True, 50, 20))
    return manager


def test_success_rate_overall_and_grouped(analytics: AnalyticsManager) -> None:
    assert analytics.success_rate() == {"all": 0.75}
    assert analytics.success_rate("environment") == {"staging": 0.5, "production": 1.0}
    assert analytics.success_rate("strategy") == {"rolling": 1.0, "canary": 0.0}
    assert analytics.success_rate("component")["worker"] == 0.5


def test_performance_trend_direction(analytics: AnalyticsManager) -> None:
    [overall] = analytics.performance_trends("response_time")

    assert [p.deployment_id for p in overall.points] == ["d1", "d2", "d3", "d4"]
    assert overall.average == 75.0
    assert overall.direction == "improving"

    durations = analytics.performance_trends("duration_seconds", group_by="environment")
    by_group = {t.group: t for t in durations}
    assert by_group["production"].direction == "stable"
    assert by_group["staging"].direction == "degrading"


def test_summary(analytics: AnalyticsManager) -> None:
    summary = analytics.summary()

    assert summary.total_deployments == 4
    assert summary.successful_deployments == 3
    assert summary.failed_deployments == 1
    assert summary.average_duration_seconds == 20.0
    assert summary.by_strategy["canary"].deployments == 1
    assert summary.by_component["api"].deployments == 3


def test_tracking_replaces_previous_sample(analytics: AnalyticsManager) -> None:
    analytics.track_deployment(_record("d2", "staging", "canary", ["api"]), _metrics(True))

    assert analytics.get_deployment_metrics("d2").success is True
    assert analytics.summary().total_deployments == 4
    assert analytics.get_deployment_metrics("missing") is None


def test_empty_analytics() -> None:
    manager = AnalyticsManager()

    assert manager.success_rate() == {"all": 0.0}
    assert manager.summary().total_deployments == 0
    assert manager.performance_trends()[0].points == []


@pytest.mark.asyncio
async def test_orchestrator_tracks_finished_deployments() -> None:
    metrics = StaticMetricsProvider({"response_time": 120.0, "cpu": 35.0})
    orchestrator = DeploymentOrchestrator(
        settings=OrchestratorConfig(), metrics=metrics, sleep=AsyncMock()
    )
    base = {
        "name": "api",
        "version": "1.0.0",
        "environment": "staging",
        "components": [{"name": "api", "version": "1.0.0"}],
    }

    await orchestrator.create_deployment({**base, "id": "ok", "strategy": "rolling"})
    await orchestrator.create_deployment({**base, "id": "bad", "strategy": "big-bang"})
    await orchestrator.create_deployment(
        {**base, "id": "untracked", "strategy": "rolling", "analytics": {"enabled": False}}
    )

    summary = orchestrator.get_analytics_summary()
    assert summary.total_deployments == 2
    assert summary.success_rate == 0.5

    tracked = await orchestrator.get_deployment_analytics("ok")
    assert tracked.success is True
    assert tracked.performance.response_time == 120.0
    assert tracked.resource_usage.cpu == 35.0

    computed = await orchestrator.get_deployment_analytics("untracked")
    assert computed.success is True

    with pytest.raises(NotFoundError):
        await orchestrator.get_deployment_analytics("missing")
