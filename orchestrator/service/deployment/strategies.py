"""
Deployment strategies.

Each strategy is a single coroutine taking a ``StrategyContext``; the registry
below maps every ``StrategyType`` to its executor and its configuration
validator. An executor returns normally when the rollout completed and raises
``StrategyExecutionError`` when it could not.

Pausable strategies (canary, rolling) call ``ctx.checkpoint()`` at safe points
between stages or batches; a paused deployment waits there until resumed.
"""

import asyncio
import logging
import math
import re
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import anyio

from ..errors import ConfigValidationError, StrategyExecutionError
from ..models import EventSeverity
from .models import (
    AppliedChange,
    BlueGreenConfig,
    CanaryAnalysis,
    CanaryConfig,
    CanaryStage,
    DeploymentConfig,
    DeploymentRecord,
    MetricThreshold,
    RollingConfig,
    StrategyType,
    ThresholdResult,
)
from .providers import InfrastructureProvider, MetricsProvider

logger = logging.getLogger(__name__)

EmitFn = Callable[[str, Dict[str, Any], EventSeverity], None]

_PERCENT = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*%\s*$")


class StrategyContext:
    """Everything a strategy needs to drive one deployment."""

    def __init__(
        self,
        record: DeploymentRecord,
        infrastructure: InfrastructureProvider,
        metrics: MetricsProvider,
        emit: EmitFn,
        log: Callable[[str, str], None],
        request_pause: Callable[[str], None],
        active_colors: Dict[Tuple[str, str], str],
        sleep: Callable[[float], Awaitable[Any]] = anyio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.record = record
        self.infrastructure = infrastructure
        self.metrics = metrics
        self.emit = emit
        self.log = log
        self.request_pause = request_pause
        self.active_colors = active_colors
        self.sleep = sleep
        self.clock = clock
        self.resume_gate = asyncio.Event()
        self.resume_gate.set()
        self.paused_seconds = 0.0

    @property
    def config(self) -> DeploymentConfig:
        return self.record.config

    @property
    def deployment_id(self) -> str:
        return self.record.id

    async def checkpoint(self) -> None:
        """Block while the deployment is paused."""
        if self.resume_gate.is_set():
            return
        paused_at = self.clock()
        self.log("info", "Deployment paused at checkpoint")
        await self.resume_gate.wait()
        self.paused_seconds += self.clock() - paused_at
        self.log("info", "Deployment resumed from checkpoint")

    def apply(self, action: str, component: Optional[str] = None, **details: Any) -> None:
        self.record.applied_changes.append(
            AppliedChange(action=action, component=component, details=details)
        )

    def advance(self, step: str, percentage: float) -> None:
        progress = self.record.progress
        progress.current_step = step
        progress.percentage = max(progress.percentage, min(100.0, percentage))


# ============================================================================
# Configuration validation
# ============================================================================


def resolve_batch_size(batch_size: Any, replicas: int) -> int:
    """Turn an absolute or percentage batch size into a replica count."""
    if isinstance(batch_size, str):
        match = _PERCENT.match(batch_size)
        if not match:
            raise ConfigValidationError(f"Invalid batch size: {batch_size!r}")
        return max(1, math.ceil(replicas * float(match.group(1)) / 100.0))
    return max(1, int(batch_size))


def validate_blue_green_config(config: DeploymentConfig) -> List[str]:
    cfg = config.blue_green or BlueGreenConfig()
    errors = []
    if cfg.warmup_seconds < 0:
        errors.append("Blue-green warmup_seconds must be >= 0")
    if cfg.warmup_check_interval_seconds <= 0:
        errors.append("Blue-green warmup_check_interval_seconds must be > 0")
    if cfg.cutover == "gradual":
        steps = cfg.cutover_steps
        if not steps:
            errors.append("Gradual cut-over requires at least one step")
        elif any(not 0 < s <= 100 for s in steps):
            errors.append("Cut-over steps must be within (0, 100]")
        elif any(b <= a for a, b in zip(steps, steps[1:])):
            errors.append("Cut-over steps must be in ascending order")
        elif steps[-1] != 100:
            errors.append("Gradual cut-over must end at 100%")
    return errors


def validate_canary_config(config: DeploymentConfig) -> List[str]:
    cfg = config.canary
    if cfg is None:
        return ["Canary strategy requires a canary configuration"]

    errors = []
    if not cfg.stages:
        errors.append("Canary strategy requires at least one stage")
    percentages = [s.percentage for s in cfg.stages]
    if any(not 0 < p <= 100 for p in percentages):
        errors.append("Canary stage percentages must be within (0, 100]")
    if any(b <= a for a, b in zip(percentages, percentages[1:])):
        errors.append("Canary stage percentages must be in ascending order")
    if any(s.duration_seconds < 0 for s in cfg.stages):
        errors.append("Canary stage durations must be >= 0")
    if cfg.analysis_interval_seconds <= 0:
        errors.append("Canary analysis_interval_seconds must be > 0")
    if not cfg.metrics:
        errors.append("Canary strategy requires at least one metric threshold")
    return errors


def validate_rolling_config(config: DeploymentConfig) -> List[str]:
    cfg = config.rolling or RollingConfig()
    errors = []
    if isinstance(cfg.batch_size, str):
        match = _PERCENT.match(cfg.batch_size)
        if not match or not 0 < float(match.group(1)) <= 100:
            errors.append("Rolling batch_size percentage must be within (0%, 100%]")
    elif cfg.batch_size < 1:
        errors.append("Rolling batch_size must be >= 1")
    if cfg.max_unavailable < 0 or cfg.max_surge < 0:
        errors.append("Rolling max_unavailable and max_surge must be >= 0")
    if cfg.max_unavailable == 0 and cfg.max_surge == 0:
        errors.append("Rolling max_unavailable and max_surge cannot both be 0")
    if cfg.pause_between_batches_seconds < 0:
        errors.append("Rolling pause_between_batches_seconds must be >= 0")
    if cfg.progress_deadline_seconds <= 0:
        errors.append("Rolling progress_deadline_seconds must be > 0")
    return errors


# ============================================================================
# Canary analysis
# ============================================================================


def analyze_canary(
    stage: CanaryStage,
    metrics: Dict[str, float],
    thresholds: List[MetricThreshold],
) -> CanaryAnalysis:
    """
    Compare collected metrics with the canary thresholds.

    Any breached (or missing) metric recommends ``rollback``. When every
    threshold holds the stage is promoted if it auto-promotes, otherwise the
    recommendation is ``continue`` and the rollout waits for a manual resume.
    """
    results = []
    reasons = []
    for threshold in thresholds:
        observed = metrics.get(threshold.metric)
        passed = observed is not None and threshold.evaluate(observed)
        results.append(
            ThresholdResult(
                metric=threshold.metric,
                condition=threshold.describe(),
                observed=observed,
                passed=passed,
            )
        )
        if observed is None:
            reasons.append(f"Metric {threshold.metric} was not reported")
        elif not passed:
            reasons.append(f"{threshold.metric}={observed} breaches {threshold.describe()}")

    passed_count = sum(1 for r in results if r.passed)
    confidence = passed_count / len(results) if results else 1.0

    if reasons:
        recommendation = "rollback"
    elif stage.auto_promote:
        recommendation = "promote"
        reasons.append("All metrics within acceptable thresholds")
    else:
        recommendation = "continue"
        reasons.append("All metrics within thresholds; waiting for manual promotion")

    return CanaryAnalysis(
        stage=stage.name,
        percentage=stage.percentage,
        metrics=dict(metrics),
        thresholds=results,
        confidence=confidence,
        recommendation=recommendation,
        reasons=reasons,
    )


def _breaches(metrics: Dict[str, float], thresholds: List[MetricThreshold]) -> List[str]:
    breached = []
    for threshold in thresholds:
        observed = metrics.get(threshold.metric)
        if observed is not None and not threshold.evaluate(observed):
            breached.append(f"{threshold.metric}={observed} breaches {threshold.describe()}")
    return breached


# ============================================================================
# Executors
# ============================================================================


async def execute_blue_green(ctx: StrategyContext) -> None:
    """Provision the idle colour, validate it, then move traffic onto it."""
    config = ctx.config
    cfg = config.blue_green or BlueGreenConfig()
    key = (config.name, config.environment)
    previous = ctx.active_colors.get(key)
    target = "blue" if previous == "green" else "green"
    ctx.record.strategy_state.update({"previous_color": previous, "target_color": target})

    ctx.advance(f"Provisioning {target} environment", 10)
    await ctx.infrastructure.provision_environment(
        ctx.deployment_id, config.environment, target, config.components
    )
    ctx.apply("provision_environment", color=target, environment=config.environment)
    ctx.emit(
        "deployment.environment_provisioned",
        {"color": target, "environment": config.environment},
        EventSeverity.INFO,
    )

    ctx.advance(f"Validating {target} environment", 30)
    ready = await ctx.infrastructure.run_check(
        ctx.deployment_id, "blue-green", f"{target}-environment-ready"
    )
    if not ready:
        raise StrategyExecutionError(f"{target.capitalize()} environment failed readiness checks")

    steps = cfg.cutover_steps if cfg.cutover == "gradual" else [100.0]
    ctx.apply("switch_traffic", color=target, previous_color=previous, environment=config.environment)
    for percentage in steps:
        await ctx.infrastructure.switch_traffic(config.name, config.environment, target, percentage)
        ctx.record.strategy_state["traffic_percentage"] = percentage
        ctx.emit(
            "deployment.traffic_switched",
            {"color": target, "percentage": percentage},
            EventSeverity.INFO,
        )
        ctx.advance(f"Routing {percentage:g}% of traffic to {target}", 40 + percentage * 0.3)
        if percentage < 100:
            await _guard_blue_green(ctx, cfg, target, previous)

    await _warm_up(ctx, cfg, target, previous)

    ctx.active_colors[key] = target
    ctx.record.strategy_state["active_color"] = target
    ctx.advance("Blue-green cut-over complete", 100)


async def _warm_up(
    ctx: StrategyContext, cfg: BlueGreenConfig, target: str, previous: Optional[str]
) -> None:
    elapsed = 0.0
    while elapsed < cfg.warmup_seconds:
        interval = min(cfg.warmup_check_interval_seconds, cfg.warmup_seconds - elapsed)
        await ctx.sleep(interval)
        elapsed += interval
        await _guard_blue_green(ctx, cfg, target, previous)
        ctx.advance(f"Warming up {target}", 70 + 30 * elapsed / cfg.warmup_seconds)
    if cfg.warmup_seconds <= 0:
        await _guard_blue_green(ctx, cfg, target, previous)


async def _guard_blue_green(
    ctx: StrategyContext, cfg: BlueGreenConfig, target: str, previous: Optional[str]
) -> None:
    if not cfg.rollback_thresholds:
        return
    metrics = await ctx.metrics.collect(ctx.deployment_id)
    breached = _breaches(metrics, cfg.rollback_thresholds)
    if not breached:
        return

    config = ctx.config
    restore = previous or "blue"
    await ctx.infrastructure.switch_traffic(config.name, config.environment, restore, 100.0)
    ctx.record.strategy_state["traffic_percentage"] = 0.0
    ctx.emit(
        "deployment.traffic_reverted",
        {"color": restore, "breaches": breached},
        EventSeverity.WARNING,
    )
    raise StrategyExecutionError(
        f"Blue-green warm-up breached thresholds: {'; '.join(breached)}"
    )


async def execute_canary(ctx: StrategyContext) -> None:
    """Shift traffic stage by stage, analysing metrics during and after each stage."""
    cfg: CanaryConfig = ctx.config.canary
    analyses: List[Dict[str, Any]] = ctx.record.strategy_state.setdefault("analyses", [])
    total = len(cfg.stages)

    for index, stage in enumerate(cfg.stages):
        await ctx.checkpoint()
        for component in ctx.config.components:
            await ctx.infrastructure.set_canary_traffic(ctx.deployment_id, component, stage.percentage)
        if index == 0:
            ctx.apply("set_canary_traffic", percentage=stage.percentage)
        ctx.record.strategy_state.update({"stage": stage.name, "percentage": stage.percentage})
        ctx.emit(
            "deployment.canary_stage_started",
            {"stage": stage.name, "percentage": stage.percentage, "index": index},
            EventSeverity.INFO,
        )
        ctx.advance(f"Canary stage {stage.name} at {stage.percentage:g}%", 100 * index / total)

        elapsed = 0.0
        while elapsed < stage.duration_seconds:
            interval = min(cfg.analysis_interval_seconds, stage.duration_seconds - elapsed)
            await ctx.sleep(interval)
            elapsed += interval
            if elapsed < stage.duration_seconds:
                analysis = await _analyze(ctx, stage, cfg, analyses)
                if analysis.recommendation == "rollback":
                    raise StrategyExecutionError(_canary_failure(stage, analysis))

        analysis = await _analyze(ctx, stage, cfg, analyses)
        if analysis.recommendation == "rollback":
            raise StrategyExecutionError(_canary_failure(stage, analysis))
        if analysis.recommendation == "continue":
            ctx.request_pause(f"Canary stage {stage.name} awaiting manual promotion")
            await ctx.checkpoint()

    await ctx.checkpoint()
    for component in ctx.config.components:
        await ctx.infrastructure.set_canary_traffic(ctx.deployment_id, component, 100.0)
    ctx.record.strategy_state["percentage"] = 100.0
    ctx.emit("deployment.canary_finalized", {"percentage": 100.0}, EventSeverity.INFO)
    ctx.advance("Canary finalized at 100%", 100)


async def _analyze(
    ctx: StrategyContext,
    stage: CanaryStage,
    cfg: CanaryConfig,
    analyses: List[Dict[str, Any]],
) -> CanaryAnalysis:
    metrics = await ctx.metrics.collect(ctx.deployment_id)
    analysis = analyze_canary(stage, metrics, cfg.metrics)
    analyses.append(analysis.model_dump(mode="json"))
    ctx.emit(
        "deployment.canary_analysis",
        {
            "stage": stage.name,
            "recommendation": analysis.recommendation,
            "confidence": analysis.confidence,
            "reasons": analysis.reasons,
        },
        EventSeverity.WARNING if analysis.recommendation == "rollback" else EventSeverity.INFO,
    )
    return analysis


def _canary_failure(stage: CanaryStage, analysis: CanaryAnalysis) -> str:
    return f"Canary stage {stage.name} failed analysis: {'; '.join(analysis.reasons)}"


async def execute_rolling(ctx: StrategyContext) -> None:
    """Replace replicas in batches bounded by max_unavailable and max_surge."""
    cfg = ctx.config.rolling or RollingConfig()
    started = ctx.clock()
    total_replicas = sum(c.replicas for c in ctx.config.components)
    replaced_total = 0
    max_observed = 0
    batch_number = 0

    def remaining_deadline() -> float:
        elapsed = ctx.clock() - started - ctx.paused_seconds
        return cfg.progress_deadline_seconds - elapsed

    def deadline_exceeded() -> StrategyExecutionError:
        return StrategyExecutionError(
            f"Rolling deployment exceeded its progress deadline of "
            f"{cfg.progress_deadline_seconds:g}s"
        )

    for component in ctx.config.components:
        batch_size = resolve_batch_size(cfg.batch_size, component.replicas)
        step = min(batch_size, cfg.max_unavailable + cfg.max_surge)
        replaced = 0
        ctx.apply(
            "replace_replicas",
            component=component.name,
            version=component.version,
            previous_version=component.previous_version,
        )

        while replaced < component.replicas:
            await ctx.checkpoint()
            remaining = remaining_deadline()
            if remaining <= 0:
                raise deadline_exceeded()

            count = min(step, component.replicas - replaced)
            try:
                with anyio.fail_after(remaining):
                    unavailable = await ctx.infrastructure.replace_replicas(
                        ctx.deployment_id, component, count, cfg.max_surge
                    )
            except TimeoutError:
                raise deadline_exceeded()

            replaced += count
            replaced_total += count
            batch_number += 1
            max_observed = max(max_observed, unavailable)
            ctx.record.strategy_state.update(
                {
                    "component": component.name,
                    "replaced": replaced_total,
                    "total": total_replicas,
                    "max_unavailable_observed": max_observed,
                }
            )
            ctx.emit(
                "deployment.batch_completed",
                {
                    "component": component.name,
                    "batch": batch_number,
                    "replaced": replaced,
                    "replicas": component.replicas,
                    "unavailable": unavailable,
                },
                EventSeverity.INFO,
            )
            ctx.advance(
                f"Replaced {replaced}/{component.replicas} replicas of {component.name}",
                100 * replaced_total / total_replicas,
            )

            if replaced < component.replicas and cfg.pause_between_batches_seconds > 0:
                await ctx.sleep(cfg.pause_between_batches_seconds)
                if remaining_deadline() <= 0:
                    raise deadline_exceeded()


# ============================================================================
# Registry
# ============================================================================

STRATEGY_EXECUTORS: Dict[StrategyType, Callable[[StrategyContext], Awaitable[None]]] = {
    StrategyType.BLUE_GREEN: execute_blue_green,
    StrategyType.CANARY: execute_canary,
    StrategyType.ROLLING: execute_rolling,
}

CONFIG_VALIDATORS: Dict[StrategyType, Callable[[DeploymentConfig], List[str]]] = {
    StrategyType.BLUE_GREEN: validate_blue_green_config,
    StrategyType.CANARY: validate_canary_config,
    StrategyType.ROLLING: validate_rolling_config,
}

PAUSABLE_STRATEGIES = {StrategyType.CANARY, StrategyType.ROLLING}


def resolve_strategy(name: str) -> StrategyType:
    """
    Map a strategy identifier to its type.

    Raises:
        ConfigValidationError: If the identifier is unknown
    """
    try:
        return StrategyType(name)
    except ValueError:
        supported = ", ".join(s.value for s in StrategyType)
        raise ConfigValidationError(
            f"Unknown deployment strategy '{name}' (supported: {supported})"
        )


def validate_strategy_config(config: DeploymentConfig) -> List[str]:
    """Return the configuration errors of the deployment's strategy."""
    try:
        strategy = resolve_strategy(config.strategy)
    except ConfigValidationError as e:
        return [e.message]
    return CONFIG_VALIDATORS[strategy](config)


async def execute_strategy(ctx: StrategyContext) -> None:
    strategy = resolve_strategy(ctx.config.strategy)
    logger.info(f"Executing {strategy.value} strategy for deployment {ctx.deployment_id}")
    await STRATEGY_EXECUTORS[strategy](ctx)
