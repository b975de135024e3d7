"""
Deployment validation pipeline.

Runs configuration, pre-deployment, post-deployment, health, performance and
security checks. Every check has its own timeout and retry count and yields a
pass/fail flag plus a score in [0, 1]; a phase succeeds when all of its
required checks pass.
"""

import logging
import time
from typing import Callable, List

import anyio

from ..errors import ErrorCategory
from .models import (
    CheckResult,
    DeploymentConfig,
    MetricThreshold,
    ValidationPhase,
    ValidationResult,
    ValidationRule,
)
from .providers import InfrastructureProvider, MetricsProvider
from .strategies import validate_strategy_config

logger = logging.getLogger(__name__)


def _threshold_score(threshold: MetricThreshold, observed: float) -> float:
    """Partial credit for a breached threshold, full credit when it holds."""
    if threshold.evaluate(observed):
        return 1.0
    if observed == 0 or threshold.value == 0:
        return 0.0
    if threshold.operator in ("lt", "lte"):
        return max(0.0, min(1.0, threshold.value / observed))
    return max(0.0, min(1.0, observed / threshold.value))


class DeploymentValidator:
    """Executes validation rules against infrastructure and metrics."""

    def __init__(
        self,
        infrastructure: InfrastructureProvider,
        metrics: MetricsProvider,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.infrastructure = infrastructure
        self.metrics = metrics
        self._clock = clock

    def validate_configuration(self, config: DeploymentConfig) -> ValidationResult:
        """Validate the strategy identifier and strategy-specific settings."""
        errors = validate_strategy_config(config)

        names = [c.name for c in config.components]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            errors.append(f"Duplicate component names: {', '.join(duplicates)}")

        results = [
            CheckResult(
                name="configuration",
                phase=ValidationPhase.CONFIGURATION,
                success=not errors,
                score=0.0 if errors else 1.0,
                message="; ".join(errors) or "Configuration is valid",
            )
        ]
        if errors:
            return ValidationResult(
                success=False,
                message=f"Configuration validation failed: {'; '.join(errors)}",
                category=ErrorCategory.VALIDATION,
                results=results,
                overall_score=0.0,
                recommendations=[
                    "Use one of the supported strategies: blue-green, canary, rolling",
                    "Review the strategy-specific configuration",
                ],
            )
        return ValidationResult(
            success=True, message="Configuration is valid", results=results
        )

    async def validate_phase(
        self, deployment_id: str, phase: ValidationPhase, rules: List[ValidationRule]
    ) -> ValidationResult:
        """
        Run every rule of a phase.

        Args:
            deployment_id: Deployment under validation
            phase: Pipeline phase, used in results and messages
            rules: Checks to run in order

        Returns:
            Aggregated result; ``success`` requires every required check to pass
        """
        results = [await self.run_check(deployment_id, phase, rule) for rule in rules]
        return self.aggregate(phase.value, results)

    async def run_check(
        self, deployment_id: str, phase: ValidationPhase, rule: ValidationRule
    ) -> CheckResult:
        """Run a single check with its timeout and retries."""
        attempts = 0
        started = self._clock()
        message = ""
        score = 0.0
        success = False

        while attempts <= rule.retries:
            attempts += 1
            try:
                with anyio.fail_after(rule.timeout_seconds):
                    success, score, message = await self._evaluate(deployment_id, phase, rule)
            except TimeoutError:
                success, score = False, 0.0
                message = f"Check {rule.name} timed out after {rule.timeout_seconds:g}s"
            except Exception as e:
                success, score = False, 0.0
                message = f"Check {rule.name} raised: {e}"
            if success:
                break
            logger.info(
                f"Check {rule.name} ({phase.value}) failed attempt {attempts}/"
                f"{rule.retries + 1}: {message}"
            )

        return CheckResult(
            name=rule.name,
            phase=phase,
            success=success,
            score=score,
            required=rule.required,
            message=message,
            attempts=attempts,
            duration_seconds=max(0.0, self._clock() - started),
        )

    async def _evaluate(self, deployment_id: str, phase: ValidationPhase, rule: ValidationRule):
        if rule.threshold is not None:
            metrics = await self.metrics.collect(deployment_id)
            observed = metrics.get(rule.threshold.metric)
            if observed is None:
                return False, 0.0, f"Metric {rule.threshold.metric} was not reported"
            passed = rule.threshold.evaluate(observed)
            verdict = "satisfies" if passed else "breaches"
            return (
                passed,
                _threshold_score(rule.threshold, observed),
                f"{rule.threshold.metric}={observed} {verdict} {rule.threshold.describe()}",
            )

        passed = await self.infrastructure.run_check(deployment_id, phase.value, rule.name)
        return passed, 1.0 if passed else 0.0, "passed" if passed else "failed"

    @staticmethod
    def aggregate(label: str, results: List[CheckResult]) -> ValidationResult:
        failed_required = [r for r in results if r.required and not r.success]
        failed_optional = [r for r in results if not r.required and not r.success]
        score = sum(r.score for r in results) / len(results) if results else 1.0

        recommendations = [f"Investigate failing check {r.name}: {r.message}" for r in failed_required]
        recommendations += [f"Optional check {r.name} failed: {r.message}" for r in failed_optional]

        if failed_required:
            return ValidationResult(
                success=False,
                message=(
                    f"{label.capitalize()} validation failed: "
                    f"{', '.join(r.name for r in failed_required)}"
                ),
                category=ErrorCategory.VALIDATION,
                results=results,
                overall_score=score,
                recommendations=recommendations,
            )
        return ValidationResult(
            success=True,
            message=f"{label.capitalize()} validation passed",
            results=results,
            overall_score=score,
            recommendations=recommendations,
        )

    async def validate_deployment(
        self, deployment_id: str, config: DeploymentConfig
    ) -> ValidationResult:
        """Run health, performance and security checks of a deployment."""
        results: List[CheckResult] = []
        for phase, rules in (
            (ValidationPhase.HEALTH, config.validation.health_checks),
            (ValidationPhase.PERFORMANCE, config.validation.performance),
            (ValidationPhase.SECURITY, config.validation.security),
        ):
            phase_result = await self.validate_phase(deployment_id, phase, rules)
            results.extend(phase_result.results)
        return self.aggregate("deployment", results)
