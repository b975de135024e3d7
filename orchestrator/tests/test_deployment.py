"""
Tests for the deployment orchestrator and its strategies.

Tests cover:
- Configuration and pre-deployment validation
- Blue-green, canary and rolling execution
- Automatic rollback on strategy failure
- Pause, resume and cancel
"""

import asyncio
from typing import Any, Dict
from unittest.mock import AsyncMock

import pytest

from orchestrator.service.config import OrchestratorConfig
from orchestrator.service.deployment import (
    DeploymentConfig,
    DeploymentOrchestrator,
    DeploymentStatus,
    SimulatedInfrastructure,
    StaticMetricsProvider,
)
from orchestrator.service.deployment.models import CanaryStage, MetricThreshold
from orchestrator.service.deployment.strategies import analyze_canary, resolve_batch_size
from orchestrator.service.errors import ConfigValidationError, ErrorCategory, NotFoundError
from orchestrator.service.events import EventStore


def make_config(**overrides: Any) -> DeploymentConfig:
    data: Dict[str, Any] = {
        "name": "api",
        "version": "2.0.0",
        "strategy": "rolling",
        "environment": "staging",
        "components": [{"name": "api", "version": "2.0.0", "previous_version": "1.0.0"}],
    }
    data.update(overrides)
    return DeploymentConfig.model_validate(data)


CANARY = {
    "stages": [
        {"name": "ten", "percentage": 10},
        {"name": "fifty", "percentage": 50},
    ],
    "metrics": [{"metric": "error_rate", "operator": "lt", "value": 0.05}],
}


class GatedSleep:
    """Blocks the first sleep until released; later sleeps return at once."""

    def __init__(self) -> None:
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.calls = 0

    async def __call__(self, seconds: float) -> None:
        self.calls += 1
        if self.calls == 1:
            self.entered.set()
            await self.release.wait()


@pytest.fixture
def store() -> EventStore:
    return EventStore()


@pytest.fixture
def infrastructure() -> SimulatedInfrastructure:
    return SimulatedInfrastructure()


@pytest.fixture
def metrics() -> StaticMetricsProvider:
    return StaticMetricsProvider()


@pytest.fixture
def orchestrator(
    store: EventStore, infrastructure: SimulatedInfrastructure, metrics: StaticMetricsProvider
) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(
        store,
        OrchestratorConfig(),
        infrastructure=infrastructure,
        metrics=metrics,
        sleep=AsyncMock(),
    )


# ============================================================================
# Validation
# ============================================================================


@pytest.mark.asyncio
async def test_unknown_strategy_fails_without_side_effects(
    orchestrator: DeploymentOrchestrator, infrastructure: SimulatedInfrastructure
) -> None:
    result = await orchestrator.create_deployment(make_config(strategy="big-bang"))

    assert result.success is False
    assert result.status == DeploymentStatus.FAILED
    assert result.category == ErrorCategory.VALIDATION
    assert "validation" in result.message.lower()
    assert "big-bang" in result.message
    assert infrastructure.calls == []


@pytest.mark.asyncio
async def test_invalid_dict_config_is_rejected(orchestrator: DeploymentOrchestrator) -> None:
    result = await orchestrator.create_deployment({"id": "broken", "name": "api"})

    assert result.success is False
    assert result.deployment_id == "broken"
    assert result.category == ErrorCategory.VALIDATION
    assert "version" in result.message


@pytest.mark.asyncio
async def test_duplicate_deployment_id_is_rejected(orchestrator: DeploymentOrchestrator) -> None:
    config = make_config(id="dup")
    assert (await orchestrator.create_deployment(config)).success

    again = await orchestrator.create_deployment(config)

    assert again.success is False
    assert again.category == ErrorCategory.VALIDATION
    assert again.status == DeploymentStatus.COMPLETED


@pytest.mark.asyncio
async def test_canary_config_requires_stages_and_metrics(
    orchestrator: DeploymentOrchestrator,
) -> None:
    result = await orchestrator.create_deployment(
        make_config(strategy="canary", canary={"stages": [], "metrics": []})
    )

    assert result.success is False
    assert "at least one stage" in result.message
    assert "metric threshold" in result.message


@pytest.mark.asyncio
async def test_failed_pre_deployment_check_blocks_execution(
    orchestrator: DeploymentOrchestrator, infrastructure: SimulatedInfrastructure
) -> None:
    infrastructure.failed_checks.add("registry-reachable")
    config = make_config(validation={"pre_deployment": [{"name": "registry-reachable"}]})

    result = await orchestrator.create_deployment(config)

    assert result.status == DeploymentStatus.FAILED
    assert result.category == ErrorCategory.VALIDATION
    assert result.validation.results[0].name == "registry-reachable"
    assert {action for action, _ in infrastructure.calls} == {"run_check"}


@pytest.mark.asyncio
async def test_raising_pre_deployment_check_fails_deployment(
    orchestrator: DeploymentOrchestrator, infrastructure: SimulatedInfrastructure
) -> None:
    infrastructure.fail_on("run_check")
    config = make_config(
        id="check-raises", validation={"pre_deployment": [{"name": "registry-reachable"}]}
    )

    result = await orchestrator.create_deployment(config)

    assert result.success is False
    assert result.status == DeploymentStatus.FAILED
    assert result.category == ErrorCategory.VALIDATION
    check = result.validation.results[0]
    assert check.success is False
    assert "Infrastructure action run_check failed" in check.message
    assert orchestrator.get_deployment_status("check-raises").status == DeploymentStatus.FAILED


@pytest.mark.asyncio
async def test_raising_post_deployment_check_rolls_back(
    orchestrator: DeploymentOrchestrator, infrastructure: SimulatedInfrastructure
) -> None:
    config = make_config(
        id="smoke-raises", validation={"post_deployment": [{"name": "smoke", "retries": 1}]}
    )
    infrastructure.fail_on("run_check")

    result = await orchestrator.create_deployment(config)

    assert result.status == DeploymentStatus.ROLLED_BACK
    assert result.category == ErrorCategory.VALIDATION
    assert result.validation.results[0].attempts == 2

    validation = await orchestrator.validate_deployment("smoke-raises")
    assert validation.success is True


def test_resolve_batch_size() -> None:
    assert resolve_batch_size(2, 10) == 2
    assert resolve_batch_size("25%", 10) == 3
    assert resolve_batch_size("1%", 5) == 1
    with pytest.raises(ConfigValidationError):
        resolve_batch_size("a quarter", 10)


# ============================================================================
# Blue-green
# ============================================================================


@pytest.mark.asyncio
async def test_blue_green_alternates_colors(
    orchestrator: DeploymentOrchestrator, infrastructure: SimulatedInfrastructure
) -> None:
    first = await orchestrator.create_deployment(make_config(id="bg-1", strategy="blue-green"))
    second = await orchestrator.create_deployment(
        make_config(id="bg-2", strategy="blue-green", version="2.1.0")
    )

    assert first.status == DeploymentStatus.COMPLETED
    assert second.status == DeploymentStatus.COMPLETED
    assert orchestrator.get_deployment_status("bg-1").strategy_state["active_color"] == "green"
    assert orchestrator.get_deployment_status("bg-2").strategy_state["active_color"] == "blue"
    assert infrastructure.traffic[("api", "staging")]["blue"] == 100.0


@pytest.mark.asyncio
async def test_blue_green_gradual_cutover(
    orchestrator: DeploymentOrchestrator, store: EventStore
) -> None:
    config = make_config(
        id="bg-gradual",
        strategy="blue-green",
        blue_green={"cutover": "gradual", "cutover_steps": [10, 50, 100]},
    )

    result = await orchestrator.create_deployment(config)

    assert result.success is True
    switched = store.history(event_type="deployment.traffic_switched", entity_id="bg-gradual")
    assert [e.payload["percentage"] for e in switched] == [10, 50, 100]


@pytest.mark.asyncio
async def test_blue_green_threshold_breach_reverts_traffic(
    orchestrator: DeploymentOrchestrator,
    metrics: StaticMetricsProvider,
    infrastructure: SimulatedInfrastructure,
    store: EventStore,
) -> None:
    metrics.set({"error_rate": 0.2})
    config = make_config(
        id="bg-bad",
        strategy="blue-green",
        blue_green={"rollback_thresholds": [{"metric": "error_rate", "value": 0.05}]},
    )

    result = await orchestrator.create_deployment(config)

    assert result.success is False
    assert result.status == DeploymentStatus.ROLLED_BACK
    assert store.latest("deployment.traffic_reverted").payload["color"] == "blue"
    assert infrastructure.traffic[("api", "staging")]["blue"] == 100.0


# ============================================================================
# Canary
# ============================================================================


def test_canary_analysis_recommends_rollback_on_breach() -> None:
    stage = CanaryStage(name="ten", percentage=10)
    threshold = MetricThreshold(metric="error_rate", operator="lt", value=0.05)

    analysis = analyze_canary(stage, {"error_rate": 0.10}, [threshold])

    assert analysis.recommendation == "rollback"
    assert analysis.confidence == 0.0
    assert "error_rate=0.1 breaches error_rate < 0.05" in analysis.reasons[0]


def test_canary_analysis_promotes_or_continues() -> None:
    threshold = MetricThreshold(metric="error_rate", value=0.05)

    auto = analyze_canary(CanaryStage(name="a", percentage=10), {"error_rate": 0.01}, [threshold])
    manual = analyze_canary(
        CanaryStage(name="b", percentage=10, auto_promote=False), {"error_rate": 0.01}, [threshold]
    )
    missing = analyze_canary(CanaryStage(name="c", percentage=10), {}, [threshold])

    assert auto.recommendation == "promote"
    assert manual.recommendation == "continue"
    assert missing.recommendation == "rollback"


@pytest.mark.asyncio
async def test_canary_completes_at_full_traffic(
    orchestrator: DeploymentOrchestrator, infrastructure: SimulatedInfrastructure
) -> None:
    result = await orchestrator.create_deployment(
        make_config(id="canary-ok", strategy="canary", canary=CANARY)
    )

    assert result.status == DeploymentStatus.COMPLETED
    assert infrastructure.canary_traffic[("canary-ok", "api")] == 100.0
    record = orchestrator.get_deployment_status("canary-ok")
    assert [a["recommendation"] for a in record.strategy_state["analyses"]] == [
        "promote",
        "promote",
    ]


@pytest.mark.asyncio
async def test_canary_error_rate_breach_rolls_back(
    orchestrator: DeploymentOrchestrator,
    metrics: StaticMetricsProvider,
    infrastructure: SimulatedInfrastructure,
    store: EventStore,
) -> None:
    metrics.set({"error_rate": 0.10}, deployment_id="canary-bad")

    result = await orchestrator.create_deployment(
        make_config(id="canary-bad", strategy="canary", canary=CANARY)
    )

    assert result.success is False
    assert result.status == DeploymentStatus.ROLLED_BACK
    assert result.category == ErrorCategory.STRATEGY_EXECUTION
    analysis = store.latest("deployment.canary_analysis")
    assert analysis.payload["recommendation"] == "rollback"
    assert infrastructure.canary_traffic[("canary-bad", "api")] == 10.0
    rollback_actions = [action for action, _ in infrastructure.calls]
    assert "reset_canary_traffic" in rollback_actions
    assert rollback_actions[-1] == "validate_rollback"


@pytest.mark.asyncio
async def test_canary_manual_stage_waits_for_resume(
    orchestrator: DeploymentOrchestrator,
) -> None:
    canary = {
        "stages": [{"name": "ten", "percentage": 10, "auto_promote": False}],
        "metrics": CANARY["metrics"],
    }
    started = await orchestrator.create_deployment(
        make_config(id="canary-manual", strategy="canary", canary=canary), wait=False
    )
    assert started.success is True

    for _ in range(100):
        if orchestrator.get_deployment_status("canary-manual").status == DeploymentStatus.PAUSED:
            break
        await asyncio.sleep(0.01)
    assert orchestrator.get_deployment_status("canary-manual").status == DeploymentStatus.PAUSED

    assert (await orchestrator.resume_deployment("canary-manual")).success
    result = await orchestrator.wait_for_deployment("canary-manual", timeout=5)

    assert result.status == DeploymentStatus.COMPLETED


# ============================================================================
# Rolling
# ============================================================================


@pytest.mark.asyncio
async def test_rolling_respects_max_unavailable(
    orchestrator: DeploymentOrchestrator, infrastructure: SimulatedInfrastructure
) -> None:
    config = make_config(
        id="rolling-5",
        components=[{"name": "api", "version": "2.0.0", "replicas": 5}],
        rolling={"batch_size": 1, "max_unavailable": 1},
    )

    result = await orchestrator.create_deployment(config)

    assert result.status == DeploymentStatus.COMPLETED
    assert infrastructure.unavailable_samples["api"] == [1, 1, 1, 1, 1]
    assert max(infrastructure.unavailable_samples["api"]) <= 1
    assert infrastructure.replicas[("rolling-5", "api")] == {"old": 0, "new": 5}


@pytest.mark.asyncio
async def test_rolling_surge_keeps_replicas_available(
    orchestrator: DeploymentOrchestrator, infrastructure: SimulatedInfrastructure
) -> None:
    config = make_config(
        id="rolling-surge",
        components=[{"name": "api", "version": "2.0.0", "replicas": 4}],
        rolling={"batch_size": "50%", "max_unavailable": 0, "max_surge": 2},
    )

    result = await orchestrator.create_deployment(config)

    assert result.success is True
    assert infrastructure.unavailable_samples["api"] == [0, 0]


@pytest.mark.asyncio
async def test_rolling_rejects_zero_unavailable_and_surge(
    orchestrator: DeploymentOrchestrator,
) -> None:
    result = await orchestrator.create_deployment(
        make_config(rolling={"max_unavailable": 0, "max_surge": 0})
    )

    assert result.category == ErrorCategory.VALIDATION


@pytest.mark.asyncio
async def test_rolling_progress_deadline(
    store: EventStore, infrastructure: SimulatedInfrastructure
) -> None:
    infrastructure.delay("replace_replicas", 1.0)
    orchestrator = DeploymentOrchestrator(store, OrchestratorConfig(), infrastructure=infrastructure)
    config = make_config(
        id="rolling-slow",
        rollback={"automatic": False},
        rolling={"progress_deadline_seconds": 0.05},
    )

    result = await orchestrator.create_deployment(config)

    assert result.status == DeploymentStatus.FAILED
    assert "progress deadline" in result.message
    assert "awaiting manual rollback" in result.message


# ============================================================================
# Failure handling and lifecycle control
# ============================================================================


@pytest.mark.asyncio
async def test_strategy_failure_triggers_automatic_rollback(
    orchestrator: DeploymentOrchestrator,
    infrastructure: SimulatedInfrastructure,
    store: EventStore,
) -> None:
    infrastructure.fail_on("replace_replicas")

    result = await orchestrator.create_deployment(make_config(id="auto-rb"))

    assert result.success is False
    assert result.status == DeploymentStatus.ROLLED_BACK
    assert result.category == ErrorCategory.STRATEGY_EXECUTION
    types = [e.type for e in store.history(entity_id="auto-rb")]
    assert "deployment.strategy_failed" in types
    assert "deployment.rollback_started" in types
    assert types[-1] == "deployment.rolled-back"
    assert orchestrator.get_deployment_status("auto-rb").rollback_count == 1


@pytest.mark.asyncio
async def test_failed_automatic_rollback_reports_rollback_failure(
    orchestrator: DeploymentOrchestrator, infrastructure: SimulatedInfrastructure
) -> None:
    infrastructure.fail_on("replace_replicas")
    infrastructure.fail_on("restore_previous_version")

    result = await orchestrator.create_deployment(make_config(id="rb-fails"))

    assert result.status == DeploymentStatus.FAILED
    assert result.category == ErrorCategory.ROLLBACK_FAILURE


@pytest.mark.asyncio
async def test_pause_and_resume_rolling_deployment(
    store: EventStore, infrastructure: SimulatedInfrastructure
) -> None:
    sleep = GatedSleep()
    orchestrator = DeploymentOrchestrator(
        store, OrchestratorConfig(), infrastructure=infrastructure, sleep=sleep
    )
    config = make_config(
        id="pausable",
        components=[{"name": "api", "version": "2.0.0", "replicas": 3}],
        rolling={"pause_between_batches_seconds": 1},
    )

    await orchestrator.create_deployment(config, wait=False)
    await asyncio.wait_for(sleep.entered.wait(), timeout=5)

    paused = await orchestrator.pause_deployment("pausable")
    assert paused.success is True
    assert paused.status == DeploymentStatus.PAUSED
    assert (await orchestrator.pause_deployment("pausable")).category == ErrorCategory.INVALID_STATE

    sleep.release.set()
    await asyncio.sleep(0.05)
    assert infrastructure.replicas[("pausable", "api")]["new"] == 1
    assert orchestrator.get_deployment_status("pausable").status == DeploymentStatus.PAUSED

    resumed = await orchestrator.resume_deployment("pausable")
    assert resumed.status == DeploymentStatus.EXECUTING

    result = await orchestrator.wait_for_deployment("pausable", timeout=5)
    assert result.status == DeploymentStatus.COMPLETED
    assert infrastructure.replicas[("pausable", "api")]["new"] == 3


@pytest.mark.asyncio
async def test_blue_green_cannot_be_paused(orchestrator: DeploymentOrchestrator) -> None:
    await orchestrator.create_deployment(make_config(id="bg", strategy="blue-green"))

    result = await orchestrator.pause_deployment("bg")

    assert result.success is False
    assert result.category == ErrorCategory.INVALID_STATE


@pytest.mark.asyncio
async def test_cancel_running_deployment(
    store: EventStore, infrastructure: SimulatedInfrastructure
) -> None:
    sleep = GatedSleep()
    orchestrator = DeploymentOrchestrator(
        store, OrchestratorConfig(), infrastructure=infrastructure, sleep=sleep
    )
    config = make_config(
        id="to-cancel",
        components=[{"name": "api", "version": "2.0.0", "replicas": 3}],
        rolling={"pause_between_batches_seconds": 1},
    )
    await orchestrator.create_deployment(config, wait=False)
    await asyncio.wait_for(sleep.entered.wait(), timeout=5)

    result = await orchestrator.cancel_deployment("to-cancel")

    assert result.success is True
    assert result.status == DeploymentStatus.FAILED
    again = await orchestrator.cancel_deployment("to-cancel")
    assert again.category == ErrorCategory.INVALID_STATE


@pytest.mark.asyncio
async def test_manual_rollback_interrupts_waited_deployment(
    store: EventStore, infrastructure: SimulatedInfrastructure
) -> None:
    sleep = GatedSleep()
    orchestrator = DeploymentOrchestrator(
        store, OrchestratorConfig(), infrastructure=infrastructure, sleep=sleep
    )
    config = make_config(
        id="mid-flight",
        components=[{"name": "api", "version": "2.0.0", "previous_version": "1.0.0", "replicas": 3}],
        rolling={"pause_between_batches_seconds": 1},
    )
    waiter = asyncio.create_task(orchestrator.create_deployment(config, wait=True))
    await asyncio.wait_for(sleep.entered.wait(), timeout=5)

    rollback = await orchestrator.rollback_deployment("mid-flight")
    sleep.release.set()
    result = await asyncio.wait_for(waiter, timeout=5)

    assert rollback.success is True
    assert rollback.status == DeploymentStatus.ROLLED_BACK
    assert result.success is False
    assert result.status == DeploymentStatus.ROLLED_BACK
    actions = [action for action, _ in infrastructure.calls]
    assert actions.count("replace_replicas") == 1
    assert actions.index("replace_replicas") < actions.index("restore_previous_version")
    assert infrastructure.replicas[("mid-flight", "api")]["new"] == 1


@pytest.mark.asyncio
async def test_unknown_deployment(orchestrator: DeploymentOrchestrator) -> None:
    assert (await orchestrator.rollback_deployment("nope")).category == ErrorCategory.NOT_FOUND
    assert (await orchestrator.pause_deployment("nope")).category == ErrorCategory.NOT_FOUND
    assert (await orchestrator.validate_deployment("nope")).category == ErrorCategory.NOT_FOUND
    with pytest.raises(NotFoundError):
        orchestrator.get_deployment_status("nope")


@pytest.mark.asyncio
async def test_list_deployments_filters(orchestrator: DeploymentOrchestrator) -> None:
    await orchestrator.create_deployment(make_config(id="a"))
    await orchestrator.create_deployment(make_config(id="b", environment="production"))
    await orchestrator.create_deployment(make_config(id="c", strategy="unknown"))

    assert [r.id for r in orchestrator.list_deployments(environment="production")] == ["b"]
    assert [r.id for r in orchestrator.list_deployments(status=DeploymentStatus.FAILED)] == ["c"]
    assert [r.id for r in orchestrator.list_deployments(limit=1, offset=1)] == ["b"]
    assert orchestrator.list_deployments(component="worker") == []


@pytest.mark.asyncio
async def test_lifecycle_events_in_order(
    orchestrator: DeploymentOrchestrator, store: EventStore
) -> None:
    await orchestrator.create_deployment(make_config(id="events"))

    statuses = [
        e.type
        for e in store.history(event_type="deployment", entity_id="events")
        if e.type in {"deployment.validating", "deployment.executing", "deployment.completed"}
    ]
    assert statuses == ["deployment.validating", "deployment.executing", "deployment.completed"]
    assert store.history(event_type="deployment", entity_id="events")[0].type == "deployment.created"
