"""
Deployment orchestrator.

Drives a deployment through pending -> validating -> executing ->
completed/failed/rolled-back, with executing <-> paused for pausable
strategies. Owns every DeploymentRecord; all state changes go through
``_transition`` and publish a ``deployment.<status>`` event.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

import anyio
from pydantic import ValidationError

from ..approvals import ApprovalManager
from ..config import OrchestratorConfig, config
from ..errors import (
    ErrorCategory,
    InvalidTransitionError,
    NotFoundError,
    OrchestratorError,
    RollbackError,
)
from ..events import EventStore
from ..models import EventSeverity, utcnow
from .analytics import AnalyticsManager, AnalyticsSummary
from .models import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    DeploymentConfig,
    DeploymentFailure,
    DeploymentLog,
    DeploymentMetrics,
    DeploymentProgress,
    DeploymentRecord,
    DeploymentResult,
    DeploymentStatus,
    PerformanceSnapshot,
    PromotionResult,
    ResourceUsage,
    RollbackRecord,
    StrategyType,
    ValidationPhase,
    ValidationResult,
)
from .promotion import PromotionManager
from .providers import (
    InfrastructureProvider,
    MetricsProvider,
    SimulatedInfrastructure,
    StaticMetricsProvider,
)
from .rollback import RollbackManager
from .strategies import PAUSABLE_STRATEGIES, StrategyContext, execute_strategy
from .validator import DeploymentValidator

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class DeploymentOrchestrator:
    """
    Coordinates deployment strategies, validation, rollback and promotion.

    Responsibilities:
    - Validate configuration before any side effect
    - Execute the selected strategy as an asyncio task
    - Roll back automatically when the policy asks for it
    - Track analytics for every finished deployment
    """

    def __init__(
        self,
        event_store: Optional[EventStore] = None,
        settings: Optional[OrchestratorConfig] = None,
        infrastructure: Optional[InfrastructureProvider] = None,
        metrics: Optional[MetricsProvider] = None,
        approvals: Optional[ApprovalManager] = None,
        sleep: Callable[[float], Awaitable[Any]] = anyio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize deployment orchestrator.

        Args:
            event_store: Shared event store (created if not provided)
            settings: Configuration (module config if not provided)
            infrastructure: Infrastructure collaborator (simulated if not provided)
            metrics: Metrics collaborator (static if not provided)
            approvals: Approval manager for promotion gates
            sleep: Sleep used for stage and batch waits, injectable for tests
            clock: Monotonic clock used for deadlines
        """
        self.settings = settings or config
        self.event_store = event_store or EventStore()
        self.infrastructure = infrastructure or SimulatedInfrastructure()
        self.metrics = metrics or StaticMetricsProvider()
        self.approvals = approvals or ApprovalManager(
            self.event_store,
            default_expiry_seconds=self.settings.approval_expiry_seconds,
            cleanup_interval_seconds=self.settings.approval_cleanup_interval_seconds,
        )
        self.validator = DeploymentValidator(self.infrastructure, self.metrics)
        self.rollback_manager = RollbackManager(
            self.infrastructure, default_timeout_seconds=self.settings.rollback_timeout_seconds
        )
        self.analytics = AnalyticsManager()
        self.promotion = PromotionManager(
            self.approvals, self.create_deployment, lambda: list(self._records.values())
        )
        self._sleep = sleep
        self._clock = clock

        self._records: Dict[str, DeploymentRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._contexts: Dict[str, StrategyContext] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._settled: Dict[str, asyncio.Event] = {}
        self._results: Dict[str, DeploymentResult] = {}
        self._rolling_back: set = set()
        self._active_colors: Dict[Tuple[str, str], str] = {}

    async def stop(self) -> None:
        """Cancel deployments still executing."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for settled in self._settled.values():
            settled.set()

    # ------------------------------------------------------------------
    # Creation and execution
    # ------------------------------------------------------------------

    async def create_deployment(
        self, deployment: Union[DeploymentConfig, Dict[str, Any]], wait: bool = True
    ) -> DeploymentResult:
        """
        Create and execute a deployment.

        Args:
            deployment: Configuration model or its dict form
            wait: Wait for completion; otherwise execution continues as a task
                and the pending record's result is returned immediately

        Returns:
            Deployment result; an invalid configuration fails immediately with
            a validation category and no side effects
        """
        if isinstance(deployment, dict):
            try:
                deployment = DeploymentConfig.model_validate(deployment)
            except ValidationError as e:
                fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
                return DeploymentResult(
                    success=False,
                    deployment_id=str(deployment.get("id", "unknown")),
                    status=DeploymentStatus.FAILED,
                    message=f"Configuration validation failed: invalid fields {fields}",
                    category=ErrorCategory.VALIDATION,
                )

        if deployment.id in self._records:
            return DeploymentResult(
                success=False,
                deployment_id=deployment.id,
                status=self._records[deployment.id].status,
                message=f"Validation failed: deployment {deployment.id} already exists",
                category=ErrorCategory.VALIDATION,
            )

        record = DeploymentRecord(
            id=deployment.id,
            config=deployment,
            progress=DeploymentProgress(total_steps=self._total_steps(deployment)),
        )
        self._records[record.id] = record
        self._locks[record.id] = asyncio.Lock()
        self._settled[record.id] = asyncio.Event()
        self._emit(
            record,
            "deployment.created",
            {
                "name": deployment.name,
                "version": deployment.version,
                "strategy": deployment.strategy,
                "environment": deployment.environment,
            },
        )
        self._log(record, "info", "orchestrator", f"Deployment {record.id} created")

        config_check = self.validator.validate_configuration(deployment)
        if not config_check.success:
            record.validation = config_check
            return await self._fail(record, config_check.message, ErrorCategory.VALIDATION, config_check)

        task = asyncio.create_task(self._run(record))
        self._tasks[record.id] = task
        if not wait:
            return DeploymentResult(
                success=True,
                deployment_id=record.id,
                status=record.status,
                message="Deployment started",
            )

        try:
            completed = await self._settle(record, task)
        except asyncio.CancelledError:
            await self.cancel_deployment(record.id)
            raise
        return task.result() if completed else self._result_from_record(record)

    async def _settle(self, record: DeploymentRecord, task: asyncio.Task) -> bool:
        """Wait for an execution task; False when a rollback or cancel interrupted it."""
        await asyncio.wait({task})
        if not task.cancelled():
            return True
        await self._settled[record.id].wait()
        return False

    async def _run(self, record: DeploymentRecord) -> DeploymentResult:
        config = record.config
        try:
            self._transition(record, DeploymentStatus.VALIDATING)
            pre = await self.validator.validate_phase(
                record.id, ValidationPhase.PRE_DEPLOYMENT, config.validation.pre_deployment
            )
            self._step(record, "Pre-deployment validation")
            if not pre.success:
                record.validation = pre
                return await self._fail(record, pre.message, ErrorCategory.VALIDATION, pre)

            self._transition(record, DeploymentStatus.EXECUTING)
            ctx = StrategyContext(
                record,
                self.infrastructure,
                self.metrics,
                emit=lambda t, p, s: self._emit(record, t, p, s),
                log=lambda level, message: self._log(record, level, "strategy", message),
                request_pause=lambda reason: self._pause_from_strategy(record, reason),
                active_colors=self._active_colors,
                sleep=self._sleep,
                clock=self._clock,
            )
            self._contexts[record.id] = ctx

            try:
                await execute_strategy(ctx)
                await ctx.checkpoint()
            except OrchestratorError as e:
                return await self._handle_strategy_failure(record, e.message)
            except Exception as e:
                logger.error(f"Strategy of {record.id} raised: {e}", exc_info=True)
                return await self._handle_strategy_failure(record, f"Strategy execution failed: {e}")
            self._step(record, "Strategy execution")

            post = await self.validator.validate_phase(
                record.id, ValidationPhase.POST_DEPLOYMENT, config.validation.post_deployment
            )
            self._step(record, "Post-deployment validation")
            if not post.success:
                record.validation = post
                return await self._handle_strategy_failure(
                    record, post.message, ErrorCategory.VALIDATION, post
                )

            checks = await self.validator.validate_deployment(record.id, config)
            record.validation = checks
            if not checks.success:
                return await self._handle_strategy_failure(
                    record, checks.message, ErrorCategory.VALIDATION, checks
                )

            self._transition(record, DeploymentStatus.COMPLETED)
            record.progress.completed_steps = record.progress.total_steps
            record.progress.percentage = 100.0
            record.progress.current_step = "Completed"
            metrics = await self._track(record)
            return self._remember(
                record,
                DeploymentResult(
                    success=True,
                    deployment_id=record.id,
                    status=record.status,
                    message="Deployment completed successfully",
                    metrics=metrics,
                    validation=checks,
                ),
            )
        except InvalidTransitionError as e:
            # Cancelled or rolled back concurrently
            logger.warning(f"Deployment {record.id} stopped: {e.message}")
            return self._result_from_record(record, e.message, e.category)
        except Exception as e:
            logger.error(f"Deployment {record.id} raised: {e}", exc_info=True)
            message = f"Deployment execution failed: {e}"
            if record.status == DeploymentStatus.VALIDATING:
                return await self._fail(record, message, ErrorCategory.VALIDATION)
            if record.status in (DeploymentStatus.EXECUTING, DeploymentStatus.PAUSED):
                return await self._handle_strategy_failure(record, message)
            return await self._fail(record, message, ErrorCategory.STRATEGY_EXECUTION)

    async def _handle_strategy_failure(
        self,
        record: DeploymentRecord,
        message: str,
        category: ErrorCategory = ErrorCategory.STRATEGY_EXECUTION,
        validation: Optional[ValidationResult] = None,
    ) -> DeploymentResult:
        self._record_error(record, "strategy-execution", message)
        self._emit(
            record, "deployment.strategy_failed", {"message": message}, EventSeverity.ERROR
        )

        if not record.config.rollback.automatic:
            return await self._fail(
                record, f"{message}; awaiting manual rollback", category, validation
            )

        self._log(record, "warning", "rollback", f"Triggering automatic rollback: {message}")
        rollback = await self._rollback(record, f"Automatic rollback: {message}")
        if not rollback.success:
            return self._remember(
                record,
                DeploymentResult(
                    success=False,
                    deployment_id=record.id,
                    status=record.status,
                    message=f"{message}; {rollback.message}",
                    category=ErrorCategory.ROLLBACK_FAILURE,
                    validation=validation,
                ),
            )
        return self._remember(
            record,
            DeploymentResult(
                success=False,
                deployment_id=record.id,
                status=record.status,
                message=f"{message}; rolled back automatically",
                category=category,
                metrics=rollback.metrics,
                validation=validation,
            ),
        )

    async def _fail(
        self,
        record: DeploymentRecord,
        message: str,
        category: ErrorCategory,
        validation: Optional[ValidationResult] = None,
    ) -> DeploymentResult:
        self._record_error(record, category.value, message)
        if record.status not in TERMINAL_STATUSES:
            self._transition(record, DeploymentStatus.FAILED, message=message)
        metrics = await self._track(record)
        return self._remember(
            record,
            DeploymentResult(
                success=False,
                deployment_id=record.id,
                status=record.status,
                message=message,
                category=category,
                metrics=metrics,
                validation=validation,
            ),
        )

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    async def rollback_deployment(self, deployment_id: str) -> DeploymentResult:
        """Roll a deployment back to its previous state."""
        record = self._records.get(deployment_id)
        if record is None:
            return self._not_found(deployment_id)
        if deployment_id in self._rolling_back:
            return self._invalid(record, "A rollback is already in progress")
        if DeploymentStatus.ROLLED_BACK not in ALLOWED_TRANSITIONS[record.status]:
            return self._invalid(record, f"Cannot roll back deployment in status {record.status.value}")

        await self._cancel_task(deployment_id)
        return await self._rollback(record, "Manual rollback")

    async def _rollback(self, record: DeploymentRecord, reason: str) -> DeploymentResult:
        async with self._locks[record.id]:
            if DeploymentStatus.ROLLED_BACK not in ALLOWED_TRANSITIONS[record.status]:
                return self._invalid(
                    record, f"Cannot roll back deployment in status {record.status.value}"
                )

            self._rolling_back.add(record.id)
            try:
                self._emit(record, "deployment.rollback_started", {"reason": reason})
                feasibility = self.rollback_manager.validate_rollback(record)
                if not feasibility.success:
                    return await self._rollback_failed(record, feasibility.message)

                plan = self.rollback_manager.create_rollback_plan(record)
                try:
                    await self.rollback_manager.execute_rollback(
                        record, plan, timeout_seconds=record.config.rollback.timeout_seconds
                    )
                except RollbackError as e:
                    return await self._rollback_failed(record, e.message)

                record.rollback_count += 1
                self._restore_active_color(record)
                self._transition(record, DeploymentStatus.ROLLED_BACK, message=reason)
                self._log(record, "info", "rollback", "Rollback completed successfully")
                metrics = await self._track(record)
                return self._remember(
                    record,
                    DeploymentResult(
                        success=True,
                        deployment_id=record.id,
                        status=record.status,
                        message="Rollback completed successfully",
                        metrics=metrics,
                    ),
                )
            finally:
                self._rolling_back.discard(record.id)

    async def _rollback_failed(self, record: DeploymentRecord, message: str) -> DeploymentResult:
        self._record_error(record, "rollback", message)
        self._emit(
            record, "deployment.rollback_failed", {"message": message}, EventSeverity.CRITICAL
        )
        if record.status not in TERMINAL_STATUSES:
            self._transition(record, DeploymentStatus.FAILED, message=message)
        await self._track(record)
        return self._remember(
            record,
            DeploymentResult(
                success=False,
                deployment_id=record.id,
                status=record.status,
                message=message,
                category=ErrorCategory.ROLLBACK_FAILURE,
            ),
        )

    def _restore_active_color(self, record: DeploymentRecord) -> None:
        state = record.strategy_state
        if record.config.strategy != StrategyType.BLUE_GREEN.value:
            return
        key = (record.config.name, record.config.environment)
        if self._active_colors.get(key) != state.get("target_color"):
            return
        previous = state.get("previous_color")
        if previous:
            self._active_colors[key] = previous
        else:
            self._active_colors.pop(key, None)

    def get_rollback_history(self, deployment_id: str) -> List[RollbackRecord]:
        return self.rollback_manager.get_rollback_history(deployment_id)

    # ------------------------------------------------------------------
    # Pause / resume / cancel
    # ------------------------------------------------------------------

    async def pause_deployment(self, deployment_id: str) -> DeploymentResult:
        record = self._records.get(deployment_id)
        if record is None:
            return self._not_found(deployment_id)
        if not self._is_pausable(record):
            return self._invalid(record, f"Strategy {record.config.strategy} does not support pause")

        async with self._locks[deployment_id]:
            if record.status != DeploymentStatus.EXECUTING:
                return self._invalid(
                    record, f"Cannot pause deployment in status {record.status.value}"
                )
            self._contexts[deployment_id].resume_gate.clear()
            self._transition(record, DeploymentStatus.PAUSED, message="Paused by request")

        return DeploymentResult(
            success=True, deployment_id=deployment_id, status=record.status, message="Deployment paused"
        )

    async def resume_deployment(self, deployment_id: str) -> DeploymentResult:
        record = self._records.get(deployment_id)
        if record is None:
            return self._not_found(deployment_id)
        if not self._is_pausable(record):
            return self._invalid(record, f"Strategy {record.config.strategy} does not support resume")

        async with self._locks[deployment_id]:
            if record.status != DeploymentStatus.PAUSED:
                return self._invalid(
                    record, f"Cannot resume deployment in status {record.status.value}"
                )
            self._transition(record, DeploymentStatus.EXECUTING, message="Resumed by request")
            self._contexts[deployment_id].resume_gate.set()

        return DeploymentResult(
            success=True, deployment_id=deployment_id, status=record.status, message="Deployment resumed"
        )

    def _pause_from_strategy(self, record: DeploymentRecord, reason: str) -> None:
        if record.status != DeploymentStatus.EXECUTING:
            return
        self._contexts[record.id].resume_gate.clear()
        self._transition(record, DeploymentStatus.PAUSED, message=reason)

    def _is_pausable(self, record: DeploymentRecord) -> bool:
        try:
            return StrategyType(record.config.strategy) in PAUSABLE_STRATEGIES
        except ValueError:
            return False

    async def cancel_deployment(self, deployment_id: str) -> DeploymentResult:
        """Stop a running deployment and mark it failed."""
        record = self._records.get(deployment_id)
        if record is None:
            return self._not_found(deployment_id)
        if record.status in TERMINAL_STATUSES or deployment_id in self._rolling_back:
            return self._invalid(record, f"Cannot cancel deployment in status {record.status.value}")

        await self._cancel_task(deployment_id)
        if record.status not in TERMINAL_STATUSES:
            self._record_error(record, "cancelled", "Deployment cancelled")
            self._transition(record, DeploymentStatus.FAILED, message="Deployment cancelled")
            await self._track(record)
        return self._remember(
            record,
            DeploymentResult(
                success=True,
                deployment_id=deployment_id,
                status=record.status,
                message="Deployment cancelled",
            ),
        )

    async def _cancel_task(self, deployment_id: str) -> None:
        task = self._tasks.get(deployment_id)
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_deployment_status(self, deployment_id: str) -> DeploymentRecord:
        """
        Return the live record of a deployment.

        Raises:
            NotFoundError: If the deployment is unknown
        """
        record = self._records.get(deployment_id)
        if record is None:
            raise NotFoundError(f"Deployment not found: {deployment_id}")

        progress = record.progress
        if record.status not in TERMINAL_STATUSES and progress.percentage > 0:
            elapsed = (utcnow() - record.started_at).total_seconds()
            total = elapsed / (progress.percentage / 100.0)
            progress.estimated_time_remaining_seconds = max(0.0, total - elapsed)
        else:
            progress.estimated_time_remaining_seconds = 0.0
        return record

    async def validate_deployment(self, deployment_id: str) -> ValidationResult:
        """Run health, performance and security checks against a deployment."""
        record = self._records.get(deployment_id)
        if record is None:
            return ValidationResult(
                success=False,
                message=f"Deployment not found: {deployment_id}",
                category=ErrorCategory.NOT_FOUND,
                overall_score=0.0,
            )
        result = await self.validator.validate_deployment(deployment_id, record.config)
        record.validation = result
        self._emit(
            record,
            "deployment.validated",
            {"success": result.success, "score": result.overall_score},
            EventSeverity.INFO if result.success else EventSeverity.WARNING,
        )
        return result

    async def promote_deployment(
        self, deployment_id: str, from_environment: str, to_environment: str
    ) -> PromotionResult:
        record = self._records.get(deployment_id)
        if record is None:
            return PromotionResult(
                success=False,
                message=f"Deployment not found: {deployment_id}",
                category=ErrorCategory.NOT_FOUND,
                deployment_id=deployment_id,
                from_environment=from_environment,
                to_environment=to_environment,
            )

        self._log(record, "info", "promotion", f"Promoting from {from_environment} to {to_environment}")
        result = await self.promotion.promote(record, from_environment, to_environment)
        self._emit(
            record,
            "deployment.promoted" if result.success else "deployment.promotion_blocked",
            {
                "from": from_environment,
                "to": to_environment,
                "new_deployment_id": result.new_deployment_id,
                "approval_id": result.approval_id,
                "message": result.message,
            },
            EventSeverity.INFO if result.success else EventSeverity.WARNING,
        )
        return result

    def list_deployments(
        self,
        environment: Optional[str] = None,
        status: Optional[DeploymentStatus] = None,
        component: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[DeploymentRecord]:
        records = list(self._records.values())
        if environment:
            records = [r for r in records if r.config.environment == environment]
        if status:
            records = [r for r in records if r.status == status]
        if component:
            records = [r for r in records if any(c.name == component for c in r.config.components)]
        records = records[offset:]
        if limit is not None:
            records = records[:limit]
        return records

    async def get_deployment_analytics(self, deployment_id: str) -> DeploymentMetrics:
        """
        Raises:
            NotFoundError: If the deployment is unknown
        """
        record = self._records.get(deployment_id)
        if record is None:
            raise NotFoundError(f"Deployment not found: {deployment_id}")
        tracked = self.analytics.get_deployment_metrics(deployment_id)
        return tracked or await self._compute_metrics(record)

    def get_analytics_summary(self) -> AnalyticsSummary:
        return self.analytics.summary()

    async def wait_for_deployment(
        self, deployment_id: str, timeout: Optional[float] = None
    ) -> DeploymentResult:
        """
        Wait until a deployment started with ``wait=False`` finishes.

        Raises:
            NotFoundError: If the deployment is unknown
            TimeoutError: If it does not finish within ``timeout`` seconds
        """
        record = self._records.get(deployment_id)
        if record is None:
            raise NotFoundError(f"Deployment not found: {deployment_id}")

        task = self._tasks.get(deployment_id)
        if task is not None:
            with anyio.fail_after(timeout):
                await self._settle(record, task)
        return self._results.get(deployment_id) or self._result_from_record(record)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transition(
        self, record: DeploymentRecord, status: DeploymentStatus, message: str = ""
    ) -> None:
        if status not in ALLOWED_TRANSITIONS[record.status]:
            raise InvalidTransitionError(
                f"Deployment {record.id} cannot move from {record.status.value} to {status.value}"
            )
        previous = record.status
        record.status = status
        record.current_stage = status.value
        if status in TERMINAL_STATUSES:
            record.ended_at = utcnow()
            self._settled[record.id].set()

        severity = EventSeverity.INFO
        if status == DeploymentStatus.FAILED:
            severity = EventSeverity.ERROR
        elif status == DeploymentStatus.ROLLED_BACK:
            severity = EventSeverity.WARNING
        self._emit(
            record,
            f"deployment.{status.value}",
            {"from": previous.value, "to": status.value, "message": message},
            severity,
        )
        self._log(
            record,
            "error" if status == DeploymentStatus.FAILED else "info",
            "orchestrator",
            f"Status {previous.value} -> {status.value}" + (f": {message}" if message else ""),
        )

    def _emit(
        self,
        record: DeploymentRecord,
        event_type: str,
        payload: Dict[str, Any],
        severity: EventSeverity = EventSeverity.INFO,
    ) -> None:
        self.event_store.append(
            event_type,
            {"deployment_id": record.id, **payload},
            source="deployment_orchestrator",
            entity_id=record.id,
            severity=severity,
        )

    def _log(self, record: DeploymentRecord, level: str, component: str, message: str) -> None:
        record.logs.append(DeploymentLog(level=level, component=component, message=message))
        logger.log(_LOG_LEVELS.get(level, logging.INFO), f"[{record.id}] {message}")

    def _record_error(self, record: DeploymentRecord, error_type: str, message: str) -> None:
        record.errors.append(
            DeploymentFailure(component="orchestrator", type=error_type, message=message)
        )

    def _step(self, record: DeploymentRecord, step: str) -> None:
        progress = record.progress
        progress.completed_steps = min(progress.total_steps, progress.completed_steps + 1)
        progress.current_step = step

    @staticmethod
    def _total_steps(deployment: DeploymentConfig) -> int:
        # validation, pre-deployment, execution, post-deployment, completion
        return (
            5
            + len(deployment.approvals)
            + len(deployment.components)
            + len(deployment.validation.pre_deployment)
            + len(deployment.validation.post_deployment)
        )

    async def _compute_metrics(self, record: DeploymentRecord) -> DeploymentMetrics:
        end = record.ended_at or utcnow()
        observed = await self.metrics.collect(record.id)
        return DeploymentMetrics(
            duration_seconds=max(0.0, (end - record.started_at).total_seconds()),
            resource_usage=ResourceUsage(
                **{k: observed[k] for k in ("cpu", "memory", "network", "storage") if k in observed}
            ),
            performance=PerformanceSnapshot(
                **{
                    k: observed[k]
                    for k in ("response_time", "throughput", "error_rate", "availability")
                    if k in observed
                }
            ),
            success=record.status == DeploymentStatus.COMPLETED,
            rollback_count=record.rollback_count,
        )

    async def _track(self, record: DeploymentRecord) -> DeploymentMetrics:
        metrics = await self._compute_metrics(record)
        record.metrics = metrics
        if record.config.analytics.enabled:
            self.analytics.track_deployment(record, metrics)
        return metrics

    def _remember(self, record: DeploymentRecord, result: DeploymentResult) -> DeploymentResult:
        self._results[record.id] = result
        return result

    def _result_from_record(
        self,
        record: DeploymentRecord,
        message: str = "",
        category: Optional[ErrorCategory] = None,
    ) -> DeploymentResult:
        success = record.status == DeploymentStatus.COMPLETED
        return DeploymentResult(
            success=success,
            deployment_id=record.id,
            status=record.status,
            message=message or f"Deployment is {record.status.value}",
            category=category,
            metrics=record.metrics,
            validation=record.validation,
        )

    def _not_found(self, deployment_id: str) -> DeploymentResult:
        return DeploymentResult(
            success=False,
            deployment_id=deployment_id,
            message=f"Deployment not found: {deployment_id}",
            category=ErrorCategory.NOT_FOUND,
        )

    def _invalid(self, record: DeploymentRecord, message: str) -> DeploymentResult:
        logger.warning(f"[{record.id}] {message}")
        return DeploymentResult(
            success=False,
            deployment_id=record.id,
            status=record.status,
            message=message,
            category=ErrorCategory.INVALID_STATE,
        )
