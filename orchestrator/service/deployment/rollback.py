"""
Rollback planning and execution.

A plan undoes the changes a deployment applied, newest first, then validates
the result. Plans are consumed at most once; every execution, successful or
not, is kept in the rollback history.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

import anyio

from ..errors import ErrorCategory, RollbackError
from ..models import utcnow
from .models import (
    AppliedChange,
    CheckResult,
    DeploymentRecord,
    RollbackPlan,
    RollbackRecord,
    RollbackRisk,
    RollbackStep,
    ValidationPhase,
    ValidationResult,
)
from .providers import InfrastructureProvider

logger = logging.getLogger(__name__)


def _undo_steps(change: AppliedChange) -> List[RollbackStep]:
    details = change.details
    if change.action == "switch_traffic":
        restore = details.get("previous_color") or "none"
        return [
            RollbackStep(
                name=f"Restore traffic routing to {restore}",
                action="restore_traffic",
                order=0,
                timeout_seconds=30.0,
                details={"color": restore, "environment": details.get("environment")},
            )
        ]
    if change.action == "provision_environment":
        return [
            RollbackStep(
                name=f"Tear down {details.get('color')} environment",
                action="teardown_environment",
                order=0,
                timeout_seconds=60.0,
                continue_on_failure=True,
                details=dict(details),
            )
        ]
    if change.action == "set_canary_traffic":
        return [
            RollbackStep(
                name="Route all traffic back to the stable version",
                action="reset_canary_traffic",
                order=0,
                timeout_seconds=30.0,
            )
        ]
    if change.action == "replace_replicas":
        target = details.get("previous_version") or "previous release"
        return [
            RollbackStep(
                name=f"Restore {change.component} to {target}",
                action="restore_previous_version",
                order=0,
                timeout_seconds=120.0,
                component=change.component,
                details=dict(details),
            )
        ]
    return [
        RollbackStep(
            name=f"Revert {change.action}",
            action=f"revert_{change.action}",
            order=0,
            timeout_seconds=60.0,
            component=change.component,
            details=dict(details),
        )
    ]


class RollbackManager:
    """
    Builds, validates and executes rollback plans.

    Rollback history is kept in memory for the lifetime of the manager.
    """

    def __init__(
        self,
        infrastructure: InfrastructureProvider,
        default_timeout_seconds: float = 600.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.infrastructure = infrastructure
        self.default_timeout_seconds = default_timeout_seconds
        self._clock = clock
        self._plans: Dict[str, RollbackPlan] = {}
        self._consumed: Set[str] = set()
        self._history: Dict[str, List[RollbackRecord]] = {}

    def create_rollback_plan(self, record: DeploymentRecord) -> RollbackPlan:
        """
        Build an ordered plan reversing the deployment's applied changes.

        Args:
            record: Deployment to roll back

        Returns:
            Plan with steps, estimated duration and risks
        """
        steps: List[RollbackStep] = []
        for change in reversed(record.applied_changes):
            steps.extend(_undo_steps(change))

        for component in record.config.components:
            if component.data_migration:
                steps.append(
                    RollbackStep(
                        name=f"Roll back data migration of {component.name}",
                        action="rollback_data_migration",
                        order=0,
                        timeout_seconds=180.0,
                        component=component.name,
                    )
                )

        steps.append(
            RollbackStep(
                name="Validate rollback",
                action="validate_rollback",
                order=0,
                timeout_seconds=60.0,
            )
        )
        for index, step in enumerate(steps, start=1):
            step.order = index

        plan = RollbackPlan(
            deployment_id=record.id,
            steps=steps,
            estimated_duration_seconds=sum(s.timeout_seconds for s in steps),
            risks=self._assess_risks(record, steps),
            created_at=self._clock(),
        )
        self._plans[plan.id] = plan
        logger.info(
            f"Rollback plan {plan.id} created for {record.id}: {len(steps)} steps, "
            f"estimated {plan.estimated_duration_seconds:g}s"
        )
        return plan

    def _assess_risks(self, record: DeploymentRecord, steps: List[RollbackStep]) -> List[RollbackRisk]:
        risks = []
        if any(s.action == "rollback_data_migration" for s in steps):
            risks.append(
                RollbackRisk(
                    type="data-loss",
                    severity="high",
                    description="Rolling back data migration may result in data loss",
                    mitigation="Create data backup before rollback execution",
                )
            )
        if record.config.strategy != "blue-green":
            risks.append(
                RollbackRisk(
                    type="downtime",
                    severity="medium",
                    description="Service may be unavailable during rollback execution",
                    mitigation="Use blue-green deployment for zero-downtime rollback",
                )
            )
        risks.append(
            RollbackRisk(
                type="performance",
                severity="low",
                description="Previous version may have lower performance",
                mitigation="Monitor performance metrics after rollback",
            )
        )
        risks.append(
            RollbackRisk(
                type="compatibility",
                severity="medium",
                description="Previous version may not be compatible with current dependencies",
                mitigation="Validate dependency compatibility before rollback",
            )
        )
        return risks

    def validate_rollback(self, record: DeploymentRecord) -> ValidationResult:
        """Check that every component's previous version is still available."""
        results = []
        for component in record.config.components:
            previous = component.previous_version
            if previous is None:
                results.append(
                    CheckResult(
                        name=f"previous-version:{component.name}",
                        phase=ValidationPhase.PRE_DEPLOYMENT,
                        success=True,
                        score=1.0,
                        message="No previous version recorded; changes are reverted only",
                    )
                )
                continue
            available = self.infrastructure.is_version_available(component.name, previous)
            results.append(
                CheckResult(
                    name=f"previous-version:{component.name}",
                    phase=ValidationPhase.PRE_DEPLOYMENT,
                    success=available,
                    score=1.0 if available else 0.0,
                    message=(
                        f"Version {previous} of {component.name} is available"
                        if available
                        else f"Version {previous} of {component.name} is no longer available"
                    ),
                )
            )

        failed = [r for r in results if not r.success]
        score = sum(r.score for r in results) / len(results) if results else 1.0
        if failed:
            return ValidationResult(
                success=False,
                message=f"Rollback validation failed: {', '.join(r.message for r in failed)}",
                category=ErrorCategory.ROLLBACK_FAILURE,
                results=results,
                overall_score=score,
                recommendations=["Restore the previous artifacts before rolling back"],
            )
        return ValidationResult(
            success=True, message="Rollback is feasible", results=results, overall_score=score
        )

    async def execute_rollback(
        self, record: DeploymentRecord, plan: RollbackPlan, timeout_seconds: Optional[float] = None
    ) -> RollbackRecord:
        """
        Execute a plan within the rollback timeout.

        Raises:
            RollbackError: If the plan was already consumed, a critical step
                fails, or the timeout elapses
        """
        if plan.id in self._consumed:
            raise RollbackError(f"Rollback plan {plan.id} was already executed")
        self._consumed.add(plan.id)

        timeout = timeout_seconds or self.default_timeout_seconds
        started_at = self._clock()
        completed = 0

        try:
            with anyio.fail_after(timeout):
                for step in plan.steps:
                    logger.info(
                        f"Executing rollback step {step.order}/{len(plan.steps)}: {step.name}"
                    )
                    try:
                        await self.infrastructure.execute_rollback_step(record.id, step)
                    except Exception as e:
                        if not step.continue_on_failure:
                            raise RollbackError(f"Critical rollback step failed: {step.name}: {e}")
                        logger.warning(f"Non-critical rollback step failed, continuing: {step.name}")
                    completed += 1
        except TimeoutError:
            error = RollbackError(f"Rollback timed out after {timeout:g}s")
            self._record(plan, record, False, error.message, completed, started_at)
            raise error
        except RollbackError as e:
            self._record(plan, record, False, e.message, completed, started_at)
            raise

        return self._record(
            plan, record, True, "Rollback completed successfully", completed, started_at
        )

    def _record(
        self,
        plan: RollbackPlan,
        record: DeploymentRecord,
        success: bool,
        message: str,
        completed: int,
        started_at: datetime,
    ) -> RollbackRecord:
        entry = RollbackRecord(
            plan_id=plan.id,
            deployment_id=record.id,
            success=success,
            message=message,
            steps_completed=completed,
            started_at=started_at,
            completed_at=self._clock(),
        )
        self._history.setdefault(record.id, []).append(entry)
        if success:
            logger.info(f"Rollback of {record.id} completed ({completed} steps)")
        else:
            logger.error(f"Rollback of {record.id} failed: {message}")
        return entry

    def get_rollback_history(self, deployment_id: str) -> List[RollbackRecord]:
        return list(self._history.get(deployment_id, []))
