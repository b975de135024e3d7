"""
Deployment analytics.

Keeps one metrics sample per deployment and aggregates success rates and
performance trends across deployments, grouped by environment, strategy or
component.
"""

import logging
from datetime import datetime
from statistics import mean
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from ..models import utcnow
from .models import DeploymentMetrics, DeploymentRecord

logger = logging.getLogger(__name__)

GroupBy = Literal["environment", "strategy", "component"]


class AnalyticsEntry(BaseModel):
    deployment_id: str
    environment: str
    strategy: str
    components: List[str]
    metrics: DeploymentMetrics
    recorded_at: datetime = Field(default_factory=utcnow)


class TrendPoint(BaseModel):
    deployment_id: str
    recorded_at: datetime
    value: float


class PerformanceTrend(BaseModel):
    metric: str
    group: Optional[str] = None
    points: List[TrendPoint] = Field(default_factory=list)
    average: float = 0.0
    direction: Literal["improving", "degrading", "stable"] = "stable"


class GroupStats(BaseModel):
    deployments: int = 0
    successful: int = 0
    success_rate: float = 0.0
    average_duration_seconds: float = 0.0
    rollbacks: int = 0


class AnalyticsSummary(BaseModel):
    total_deployments: int = 0
    successful_deployments: int = 0
    failed_deployments: int = 0
    success_rate: float = 0.0
    average_duration_seconds: float = 0.0
    total_rollbacks: int = 0
    by_environment: Dict[str, GroupStats] = Field(default_factory=dict)
    by_strategy: Dict[str, GroupStats] = Field(default_factory=dict)
    by_component: Dict[str, GroupStats] = Field(default_factory=dict)


# Metrics where a lower value is better
_LOWER_IS_BETTER = {"response_time", "error_rate", "duration_seconds"}


class AnalyticsManager:
    """Aggregates per-deployment metrics."""

    def __init__(self) -> None:
        self._entries: Dict[str, AnalyticsEntry] = {}

    def track_deployment(self, record: DeploymentRecord, metrics: DeploymentMetrics) -> AnalyticsEntry:
        """Record (or replace) the metrics sample of a deployment."""
        entry = AnalyticsEntry(
            deployment_id=record.id,
            environment=record.config.environment,
            strategy=record.config.strategy,
            components=[c.name for c in record.config.components],
            metrics=metrics,
        )
        self._entries[record.id] = entry
        logger.debug(
            f"Tracked analytics for {record.id}: success={metrics.success}, "
            f"duration={metrics.duration_seconds:.2f}s"
        )
        return entry

    def get_deployment_metrics(self, deployment_id: str) -> Optional[DeploymentMetrics]:
        entry = self._entries.get(deployment_id)
        return entry.metrics if entry else None

    def _groups(self, entry: AnalyticsEntry, group_by: GroupBy) -> List[str]:
        if group_by == "component":
            return entry.components
        return [getattr(entry, group_by)]

    def _grouped(self, group_by: GroupBy) -> Dict[str, List[AnalyticsEntry]]:
        groups: Dict[str, List[AnalyticsEntry]] = {}
        for entry in self._entries.values():
            for group in self._groups(entry, group_by):
                groups.setdefault(group, []).append(entry)
        return groups

    @staticmethod
    def _stats(entries: List[AnalyticsEntry]) -> GroupStats:
        if not entries:
            return GroupStats()
        successful = sum(1 for e in entries if e.metrics.success)
        return GroupStats(
            deployments=len(entries),
            successful=successful,
            success_rate=successful / len(entries),
            average_duration_seconds=mean(e.metrics.duration_seconds for e in entries),
            rollbacks=sum(e.metrics.rollback_count for e in entries),
        )

    def success_rate(self, group_by: Optional[GroupBy] = None) -> Dict[str, float]:
        """
        Success rate overall (key ``"all"``) or per group.

        Args:
            group_by: environment, strategy or component
        """
        if group_by is None:
            return {"all": self._stats(list(self._entries.values())).success_rate}
        return {
            group: self._stats(entries).success_rate
            for group, entries in self._grouped(group_by).items()
        }

    def performance_trends(
        self, metric: str = "response_time", group_by: Optional[GroupBy] = None
    ) -> List[PerformanceTrend]:
        """
        Chronological values of a performance metric.

        The direction compares the mean of the older half with the mean of
        the newer half of the samples.
        """
        if group_by is None:
            groups = {None: list(self._entries.values())}
        else:
            groups = self._grouped(group_by)

        trends = []
        for group, entries in groups.items():
            points = [
                TrendPoint(
                    deployment_id=e.deployment_id,
                    recorded_at=e.recorded_at,
                    value=self._metric_value(e.metrics, metric),
                )
                for e in sorted(entries, key=lambda e: e.recorded_at)
            ]
            trends.append(
                PerformanceTrend(
                    metric=metric,
                    group=group,
                    points=points,
                    average=mean(p.value for p in points) if points else 0.0,
                    direction=self._direction(metric, [p.value for p in points]),
                )
            )
        return trends

    @staticmethod
    def _metric_value(metrics: DeploymentMetrics, metric: str) -> float:
        if metric == "duration_seconds":
            return metrics.duration_seconds
        if hasattr(metrics.performance, metric):
            return getattr(metrics.performance, metric)
        return getattr(metrics.resource_usage, metric, 0.0)

    @staticmethod
    def _direction(metric: str, values: List[float]) -> str:
        if len(values) < 2:
            return "stable"
        half = len(values) // 2
        older, newer = mean(values[:half]), mean(values[half:])
        if abs(newer - older) <= 0.05 * max(abs(older), 1e-9):
            return "stable"
        better = newer < older if metric in _LOWER_IS_BETTER else newer > older
        return "improving" if better else "degrading"

    def summary(self) -> AnalyticsSummary:
        entries = list(self._entries.values())
        overall = self._stats(entries)
        return AnalyticsSummary(
            total_deployments=overall.deployments,
            successful_deployments=overall.successful,
            failed_deployments=overall.deployments - overall.successful,
            success_rate=overall.success_rate,
            average_duration_seconds=overall.average_duration_seconds,
            total_rollbacks=overall.rollbacks,
            by_environment={k: self._stats(v) for k, v in self._grouped("environment").items()},
            by_strategy={k: self._stats(v) for k, v in self._grouped("strategy").items()},
            by_component={k: self._stats(v) for k, v in self._grouped("component").items()},
        )
