"""
Threshold-based auto-scaling.

The autoscaler keeps a rolling window of metric samples per component and, on
every evaluation tick, compares the window mean of each enabled policy's
target metric against the policy thresholds. Scaling actions respect the
policy cooldown and are clamped to the policy's instance bounds.
"""

import asyncio
import logging
import math
import time
from collections import deque
from statistics import mean
from typing import Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple

from ..errors import ErrorCategory
from ..events import EventStore
from ..models import EventSeverity
from .models import (
    Bottleneck,
    CostOptimization,
    CostRecommendation,
    ScalingDirection,
    ScalingMetrics,
    ScalingPolicy,
    ScalingResult,
)

logger = logging.getLogger(__name__)

HOURS_PER_MONTH = 730

# (warning, critical) thresholds per metric
BOTTLENECK_THRESHOLDS: Dict[str, Tuple[float, float]] = {
    "cpu": (75.0, 90.0),
    "memory": (80.0, 90.0),
    "response_time": (1000.0, 2000.0),
    "error_rate": (5.0, 10.0),
    "queue_length": (50.0, 100.0),
}

BOTTLENECK_RECOMMENDATIONS: Dict[str, List[str]] = {
    "cpu": [
        "Scale out the component to spread CPU load",
        "Profile hot code paths for CPU-heavy work",
    ],
    "memory": [
        "Increase the memory allocation per instance",
        "Check for memory leaks or oversized caches",
    ],
    "response_time": [
        "Scale out the component to reduce request latency",
        "Review slow downstream calls and database queries",
    ],
    "error_rate": [
        "Inspect recent deployments and consider a rollback",
        "Check the health of downstream dependencies",
    ],
    "queue_length": [
        "Add workers to drain the backlog",
        "Apply back-pressure or shed low-priority work",
    ],
}

# Sustained utilization below this percentage triggers a downsizing proposal
LOW_UTILIZATION_PERCENT = 30.0
# Utilization the downsized allocation is sized for
TARGET_UTILIZATION_PERCENT = 60.0


class AutoScaler:
    """
    Evaluates scaling policies against windowed component metrics.

    Instance counts are tracked per component; a component seen for the first
    time starts at the minimum of its first applicable policy.
    """

    def __init__(
        self,
        event_store: EventStore,
        policies: Optional[Iterable[ScalingPolicy]] = None,
        metrics_window_seconds: float = 300.0,
        evaluation_interval_seconds: float = 30.0,
        cost_per_instance_hour: float = 0.10,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the autoscaler.

        Args:
            event_store: Store receiving scaling events
            policies: Initial scaling policies
            metrics_window_seconds: Age after which samples leave the window
            evaluation_interval_seconds: Interval of the background evaluation
            cost_per_instance_hour: Hourly price of one instance
            clock: Monotonic clock used for windows and cooldowns
        """
        self.event_store = event_store
        self.policies: List[ScalingPolicy] = list(policies or [])
        self.metrics_window_seconds = metrics_window_seconds
        self.evaluation_interval_seconds = evaluation_interval_seconds
        self.cost_per_instance_hour = cost_per_instance_hour
        self._clock = clock

        self._samples: Dict[str, Deque[Tuple[float, ScalingMetrics]]] = {}
        self._instances: Dict[str, int] = {}
        self._last_action: Dict[str, float] = {}
        self._history: Dict[str, List[ScalingResult]] = {}
        # (component, metric) pairs currently at critical level
        self._critical: Set[Tuple[str, str]] = set()
        self._task: Optional[asyncio.Task] = None

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> None:
        """Start the periodic evaluation task."""
        if self._task is None:
            self._task = asyncio.create_task(self._evaluation_loop())
            logger.info(
                f"Auto-scaler started (interval={self.evaluation_interval_seconds}s, "
                f"{len(self.policies)} policies)"
            )

    async def stop(self) -> None:
        """Stop the periodic evaluation task."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Auto-scaler stopped")

    async def _evaluation_loop(self) -> None:
        while True:
            await asyncio.sleep(self.evaluation_interval_seconds)
            try:
                self.evaluate_all()
                self.detect_bottlenecks()
            except Exception as e:
                logger.error(f"Auto-scaler evaluation failed: {e}", exc_info=True)

    # ========================================================================
    # Metrics and policies
    # ========================================================================

    def add_metrics(self, component_id: str, metrics: ScalingMetrics) -> None:
        """Add a metrics sample to a component's rolling window."""
        window = self._samples.setdefault(component_id, deque())
        window.append((self._clock(), metrics))
        self._prune(component_id)
        if component_id not in self._instances:
            self._instances[component_id] = self._initial_instances(component_id)

    def _prune(self, component_id: str) -> None:
        window = self._samples.get(component_id)
        if not window:
            return
        cutoff = self._clock() - self.metrics_window_seconds
        while window and window[0][0] < cutoff:
            window.popleft()

    def window(self, component_id: str) -> List[ScalingMetrics]:
        """Samples currently inside the metrics window."""
        self._prune(component_id)
        return [sample for _, sample in self._samples.get(component_id, ())]

    def aggregate(self, component_id: str, metric: str) -> Optional[float]:
        """Mean of a metric over the window, or None without samples."""
        samples = self.window(component_id)
        if not samples:
            return None
        return mean(getattr(sample, metric) for sample in samples)

    def reload_policies(self, policies: Iterable[ScalingPolicy]) -> None:
        """Replace the policy set; takes effect on the next evaluation."""
        self.policies = list(policies)
        logger.info(f"Reloaded {len(self.policies)} scaling policies")
        self.event_store.append(
            "scaling.policies_reloaded",
            {"policies": [p.id for p in self.policies]},
            source="autoscaler",
        )

    def policies_for(self, component_id: str) -> List[ScalingPolicy]:
        return [p for p in self.policies if p.applies_to(component_id)]

    def bounds(self, component_id: str) -> Tuple[int, Optional[int]]:
        """Instance bounds of a component from its enabled policies."""
        policies = [p for p in self.policies_for(component_id) if p.enabled]
        if not policies:
            return 0, None
        return (
            max(p.min_instances for p in policies),
            min(p.max_instances for p in policies),
        )

    def _initial_instances(self, component_id: str) -> int:
        policies = self.policies_for(component_id)
        return policies[0].min_instances if policies else 1

    def get_instance_count(self, component_id: str) -> int:
        if component_id not in self._instances:
            return self._initial_instances(component_id)
        return self._instances[component_id]

    def set_instance_count(self, component_id: str, count: int) -> None:
        """Record the externally observed instance count of a component."""
        self._instances[component_id] = count

    def components(self) -> List[str]:
        return sorted(set(self._samples) | set(self._instances))

    def get_scaling_history(self, component_id: str) -> List[ScalingResult]:
        return list(self._history.get(component_id, []))

    # ========================================================================
    # Evaluation
    # ========================================================================

    def in_cooldown(self, component_id: str, policy: ScalingPolicy) -> bool:
        last = self._last_action.get(component_id)
        return last is not None and self._clock() - last < policy.cooldown_seconds

    def evaluate(self, component_id: str) -> Optional[ScalingResult]:
        """
        Evaluate the policies of one component and apply the first action.

        Returns:
            The scaling result, or None when no policy calls for a change
        """
        current = self.get_instance_count(component_id)

        for policy in self.policies_for(component_id):
            if not policy.enabled:
                continue
            value = self.aggregate(component_id, policy.target_metric)
            if value is None:
                continue

            if value > policy.scale_up_threshold and current < policy.max_instances:
                target = min(current + policy.scale_up_step, policy.max_instances)
                direction = ScalingDirection.UP
                reason = (
                    f"{policy.target_metric} {value:.1f} above scale-up threshold "
                    f"{policy.scale_up_threshold:g}"
                )
            elif value < policy.scale_down_threshold and current > policy.min_instances:
                target = max(current - policy.scale_down_step, policy.min_instances)
                direction = ScalingDirection.DOWN
                reason = (
                    f"{policy.target_metric} {value:.1f} below scale-down threshold "
                    f"{policy.scale_down_threshold:g}"
                )
            else:
                continue

            if self.in_cooldown(component_id, policy):
                logger.debug(f"Scaling of {component_id} skipped: policy {policy.id} in cooldown")
                return None

            return self._apply(component_id, current, target, direction, reason, policy.id)

        return None

    def evaluate_all(self) -> List[ScalingResult]:
        """Evaluate every component with metrics; one tick of the loop."""
        results = []
        for component_id in list(self._samples):
            result = self.evaluate(component_id)
            if result is not None:
                results.append(result)
        return results

    def manual_scale(self, component_id: str, target_instances: int, reason: str) -> ScalingResult:
        """
        Scale a component to an explicit instance count.

        Targets outside the bounds of the component's enabled policies are
        rejected. Manual scaling starts a new cooldown period.
        """
        current = self.get_instance_count(component_id)
        minimum, maximum = self.bounds(component_id)

        if target_instances < minimum or (maximum is not None and target_instances > maximum):
            upper = maximum if maximum is not None else "unbounded"
            message = (
                f"Manual scale of {component_id} to {target_instances} rejected: "
                f"outside policy bounds [{minimum}, {upper}]"
            )
            logger.warning(message)
            return ScalingResult(
                success=False,
                message=message,
                category=ErrorCategory.VALIDATION,
                component_id=component_id,
                previous_instances=current,
                new_instances=current,
                direction=ScalingDirection.MANUAL,
                reason=reason,
            )

        return self._apply(
            component_id,
            current,
            target_instances,
            ScalingDirection.MANUAL,
            f"Manual scaling: {reason}",
        )

    def _apply(
        self,
        component_id: str,
        previous: int,
        target: int,
        direction: ScalingDirection,
        reason: str,
        policy_id: Optional[str] = None,
    ) -> ScalingResult:
        self._instances[component_id] = target
        self._last_action[component_id] = self._clock()

        result = ScalingResult(
            success=True,
            message=f"Scaled {component_id} from {previous} to {target} instances",
            component_id=component_id,
            previous_instances=previous,
            new_instances=target,
            direction=direction,
            reason=reason,
            policy_id=policy_id,
        )
        self._history.setdefault(component_id, []).append(result)

        logger.info(f"{result.message} ({reason})")
        event_type = {
            ScalingDirection.UP: "scaling.scaled_up",
            ScalingDirection.DOWN: "scaling.scaled_down",
        }.get(direction, "scaling.manual")
        self.event_store.append(
            event_type,
            {
                "previous_instances": previous,
                "new_instances": target,
                "reason": reason,
                "policy_id": policy_id,
            },
            source="autoscaler",
            entity_id=component_id,
        )
        return result

    # ========================================================================
    # Bottlenecks and cost
    # ========================================================================

    def detect_bottlenecks(self, component_id: Optional[str] = None) -> List[Bottleneck]:
        """Flag metrics whose window mean crosses a warning or critical level."""
        components = [component_id] if component_id else list(self._samples)
        bottlenecks = []

        for component in components:
            for metric, (warning, critical) in BOTTLENECK_THRESHOLDS.items():
                value = self.aggregate(component, metric)
                if value is None or value < warning:
                    continue
                severity = "critical" if value >= critical else "warning"
                threshold = critical if severity == "critical" else warning
                bottlenecks.append(
                    Bottleneck(
                        component_id=component,
                        type=metric,
                        severity=severity,
                        value=value,
                        threshold=threshold,
                        description=f"{metric} at {value:.1f} reached {severity} level {threshold:g}",
                        recommendations=list(BOTTLENECK_RECOMMENDATIONS[metric]),
                    )
                )

        self._publish_critical(components, bottlenecks)
        return bottlenecks

    def _publish_critical(self, components: List[str], bottlenecks: List[Bottleneck]) -> None:
        """Publish a component metric entering or leaving the critical level once."""
        critical = {
            (b.component_id, b.type): b for b in bottlenecks if b.severity == "critical"
        }
        for key, bottleneck in critical.items():
            if key in self._critical:
                continue
            self._critical.add(key)
            self.event_store.append(
                "scaling.bottleneck",
                bottleneck.model_dump(mode="json"),
                source="autoscaler",
                entity_id=bottleneck.component_id,
                severity=EventSeverity.WARNING,
            )

        for key in [k for k in self._critical if k[0] in components and k not in critical]:
            self._critical.discard(key)
            logger.info(f"Bottleneck on {key[1]} of {key[0]} cleared")
            self.event_store.append(
                "scaling.bottleneck_cleared",
                {"component_id": key[0], "type": key[1]},
                source="autoscaler",
                entity_id=key[0],
            )

    def optimize_costs(self, component_id: Optional[str] = None) -> CostOptimization:
        """
        Propose downsizing for components with sustained low CPU utilization.

        A component averaging below 30% CPU over the window is resized so the
        same load would run at 60%, never below its policy minimum.
        """
        components = [component_id] if component_id else self.components()
        monthly_rate = self.cost_per_instance_hour * HOURS_PER_MONTH
        current_cost = 0.0
        projected_cost = 0.0
        recommendations = []

        for component in components:
            current = self.get_instance_count(component)
            current_cost += current * monthly_rate
            utilization = self.aggregate(component, "cpu")
            recommended = current

            if utilization is not None and utilization < LOW_UTILIZATION_PERCENT:
                minimum = max(self.bounds(component)[0], 1)
                recommended = max(
                    minimum, math.ceil(current * utilization / TARGET_UTILIZATION_PERCENT)
                )
                if recommended < current:
                    savings = (current - recommended) * monthly_rate
                    recommendations.append(
                        CostRecommendation(
                            component_id=component,
                            current_instances=current,
                            recommended_instances=recommended,
                            average_utilization=utilization,
                            estimated_monthly_savings=savings,
                            description=(
                                f"Reduce {component} from {current} to {recommended} instances; "
                                f"average CPU is {utilization:.1f}%"
                            ),
                        )
                    )
                else:
                    recommended = current
            projected_cost += recommended * monthly_rate

        return CostOptimization(
            current_cost=current_cost,
            projected_cost=projected_cost,
            savings=max(current_cost - projected_cost, 0.0),
            recommendations=recommendations,
        )
