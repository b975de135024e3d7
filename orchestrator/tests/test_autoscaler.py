"""
Tests for the auto-scaler.

Tests cover:
- Threshold evaluation over the metrics window
- Cooldown and instance bounds
- Manual scaling
- Bottleneck detection and cost optimization
"""

import pytest

from orchestrator.service.errors import ErrorCategory
from orchestrator.service.events import EventStore
from orchestrator.service.scaling import AutoScaler, ScalingMetrics, ScalingPolicy
from orchestrator.service.scaling.autoscaler import HOURS_PER_MONTH
from orchestrator.service.scaling.models import ScalingDirection


class FakeClock:
    def __init__(self) -> None:
        self.now = 500.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> EventStore:
    return EventStore()


@pytest.fixture
def policy() -> ScalingPolicy:
    return ScalingPolicy(
        id="cpu-policy",
        component_id="api",
        target_metric="cpu",
        scale_up_threshold=70,
        scale_down_threshold=30,
        min_instances=2,
        max_instances=10,
        cooldown_seconds=60,
        scale_up_step=2,
    )


@pytest.fixture
def autoscaler(store: EventStore, policy: ScalingPolicy, clock: FakeClock) -> AutoScaler:
    return AutoScaler(
        store, [policy], metrics_window_seconds=300, cost_per_instance_hour=0.10, clock=clock
    )


def test_policy_bounds_validation() -> None:
    with pytest.raises(ValueError):
        ScalingPolicy(min_instances=5, max_instances=2)
    with pytest.raises(ValueError):
        ScalingPolicy(scale_up_threshold=30, scale_down_threshold=30)


def test_new_component_starts_at_policy_minimum(autoscaler: AutoScaler) -> None:
    autoscaler.add_metrics("api", ScalingMetrics(cpu=50))
    autoscaler.add_metrics("worker", ScalingMetrics(cpu=50))

    assert autoscaler.get_instance_count("api") == 2
    assert autoscaler.get_instance_count("worker") == 1


def test_window_mean_drives_evaluation(autoscaler: AutoScaler, clock: FakeClock) -> None:
    autoscaler.add_metrics("api", ScalingMetrics(cpu=95))
    clock.advance(400)
    autoscaler.add_metrics("api", ScalingMetrics(cpu=50))

    # The 95% sample left the 300s window
    assert autoscaler.aggregate("api", "cpu") == 50
    assert autoscaler.evaluate("api") is None
    assert autoscaler.aggregate("unknown", "cpu") is None


def test_scale_up_above_threshold(autoscaler: AutoScaler, store: EventStore) -> None:
    autoscaler.add_metrics("api", ScalingMetrics(cpu=80))
    autoscaler.add_metrics("api", ScalingMetrics(cpu=90))

    result = autoscaler.evaluate("api")

    assert result.success is True
    assert result.direction == ScalingDirection.UP
    assert (result.previous_instances, result.new_instances) == (2, 4)
    assert result.policy_id == "cpu-policy"
    assert "cpu 85.0 above scale-up threshold 70" in result.reason
    event = store.latest("scaling")
    assert event.type == "scaling.scaled_up"
    assert event.entity_id == "api"


def test_scale_up_is_capped_at_max(autoscaler: AutoScaler) -> None:
    autoscaler.set_instance_count("api", 9)
    autoscaler.add_metrics("api", ScalingMetrics(cpu=85))

    result = autoscaler.evaluate("api")

    assert result.new_instances == 10


def test_no_scale_up_at_max(autoscaler: AutoScaler) -> None:
    autoscaler.set_instance_count("api", 10)
    autoscaler.add_metrics("api", ScalingMetrics(cpu=99))

    assert autoscaler.evaluate("api") is None


def test_scale_down_respects_minimum(autoscaler: AutoScaler, clock: FakeClock) -> None:
    autoscaler.set_instance_count("api", 3)
    autoscaler.add_metrics("api", ScalingMetrics(cpu=10))

    result = autoscaler.evaluate("api")
    assert result.direction == ScalingDirection.DOWN
    assert result.new_instances == 2

    clock.advance(61)
    assert autoscaler.evaluate("api") is None


def test_cooldown_blocks_consecutive_actions(autoscaler: AutoScaler, clock: FakeClock) -> None:
    autoscaler.add_metrics("api", ScalingMetrics(cpu=90))
    assert autoscaler.evaluate("api").new_instances == 4

    clock.advance(30)
    assert autoscaler.evaluate("api") is None
    assert autoscaler.get_instance_count("api") == 4

    clock.advance(31)
    autoscaler.add_metrics("api", ScalingMetrics(cpu=90))
    assert autoscaler.evaluate("api").new_instances == 6
    assert len(autoscaler.get_scaling_history("api")) == 2


def test_disabled_policy_is_ignored(store: EventStore, clock: FakeClock) -> None:
    policy = ScalingPolicy(enabled=False)
    autoscaler = AutoScaler(store, [policy], clock=clock)
    autoscaler.add_metrics("api", ScalingMetrics(cpu=99))

    assert autoscaler.evaluate("api") is None
    assert autoscaler.bounds("api") == (0, None)


def test_evaluate_all(autoscaler: AutoScaler) -> None:
    autoscaler.add_metrics("api", ScalingMetrics(cpu=90))
    autoscaler.add_metrics("worker", ScalingMetrics(cpu=90))

    results = autoscaler.evaluate_all()

    assert [r.component_id for r in results] == ["api"]


def test_reload_policies(autoscaler: AutoScaler, store: EventStore) -> None:
    autoscaler.reload_policies([ScalingPolicy(id="p2", min_instances=1, max_instances=3)])

    assert autoscaler.bounds("worker") == (1, 3)
    assert store.latest("scaling.policies_reloaded").payload["policies"] == ["p2"]


# ============================================================================
# Manual scaling
# ============================================================================


def test_manual_scale_within_bounds(autoscaler: AutoScaler, store: EventStore) -> None:
    result = autoscaler.manual_scale("api", 7, "traffic spike expected")

    assert result.success is True
    assert result.direction == ScalingDirection.MANUAL
    assert result.reason == "Manual scaling: traffic spike expected"
    assert autoscaler.get_instance_count("api") == 7
    assert store.latest("scaling").type == "scaling.manual"


def test_manual_scale_outside_bounds_is_rejected(autoscaler: AutoScaler) -> None:
    too_many = autoscaler.manual_scale("api", 11, "burst")
    too_few = autoscaler.manual_scale("api", 1, "save money")

    assert too_many.success is False
    assert too_many.category == ErrorCategory.VALIDATION
    assert "[2, 10]" in too_many.message
    assert too_few.success is False
    assert autoscaler.get_instance_count("api") == 2


def test_manual_scale_starts_cooldown(autoscaler: AutoScaler) -> None:
    autoscaler.manual_scale("api", 5, "prewarm")
    autoscaler.add_metrics("api", ScalingMetrics(cpu=95))

    assert autoscaler.evaluate("api") is None


# ============================================================================
# Bottlenecks and costs
# ============================================================================


def test_detect_bottlenecks(autoscaler: AutoScaler, store: EventStore) -> None:
    autoscaler.add_metrics("api", ScalingMetrics(cpu=95, memory=82, response_time=300))
    autoscaler.add_metrics("worker", ScalingMetrics(queue_length=120))

    bottlenecks = autoscaler.detect_bottlenecks()
    by_type = {(b.component_id, b.type): b for b in bottlenecks}

    assert by_type[("api", "cpu")].severity == "critical"
    assert by_type[("api", "memory")].severity == "warning"
    assert ("api", "response_time") not in by_type
    assert by_type[("worker", "queue_length")].threshold == 100
    assert by_type[("api", "cpu")].recommendations
    assert len(store.history(event_type="scaling.bottleneck")) == 2

    assert {b.component_id for b in autoscaler.detect_bottlenecks("worker")} == {"worker"}


def test_bottleneck_events_only_on_change(autoscaler: AutoScaler, store: EventStore) -> None:
    autoscaler.add_metrics("api", ScalingMetrics(cpu=95))

    for _ in range(5):
        autoscaler.detect_bottlenecks()
    assert len(store.history(event_type="scaling.bottleneck")) == 1

    autoscaler.add_metrics("api", ScalingMetrics(cpu=5))
    assert autoscaler.detect_bottlenecks("api") == []
    assert store.latest("scaling.bottleneck_cleared").payload == {"component_id": "api", "type": "cpu"}

    for _ in range(10):
        autoscaler.add_metrics("api", ScalingMetrics(cpu=100))
    autoscaler.detect_bottlenecks()
    assert len(store.history(event_type="scaling.bottleneck")) == 2


def test_optimize_costs_downsizes_idle_component(autoscaler: AutoScaler) -> None:
    autoscaler.set_instance_count("api", 10)
    autoscaler.add_metrics("api", ScalingMetrics(cpu=12))

    report = autoscaler.optimize_costs()

    monthly = 0.10 * HOURS_PER_MONTH
    [recommendation] = report.recommendations
    assert recommendation.recommended_instances == 2
    assert report.current_cost == pytest.approx(10 * monthly)
    assert report.projected_cost == pytest.approx(2 * monthly)
    assert report.savings == pytest.approx(8 * monthly)
    assert recommendation.estimated_monthly_savings == pytest.approx(8 * monthly)


def test_optimize_costs_keeps_busy_component(autoscaler: AutoScaler) -> None:
    autoscaler.set_instance_count("api", 4)
    autoscaler.add_metrics("api", ScalingMetrics(cpu=55))

    report = autoscaler.optimize_costs("api")

    assert report.recommendations == []
    assert report.savings == 0.0
    assert report.projected_cost == report.current_cost
