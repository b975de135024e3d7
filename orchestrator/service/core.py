"""
Orchestration core.

Owns one instance of every component, wires them to a single shared event
store and ties their background tasks to one start/stop lifecycle.
"""

import logging
import time
from typing import Any, Dict, List, Optional

from .approvals import ApprovalManager
from .config import OrchestratorConfig, config
from .deployment.orchestrator import DeploymentOrchestrator
from .deployment.providers import InfrastructureProvider, MetricsProvider
from .events import EventStore
from .loader import load_scaling_policies
from .models import WorkKind, WorkRequest
from .scaling.manager import ScalingManager
from .scaling.models import ScalingPolicy
from .workflow_orchestrator import WorkflowOrchestrator

logger = logging.getLogger(__name__)


class OrchestrationCore:
    """
    Composition root of the orchestration core.

    Component and maintenance work submitted to the workflow orchestrator is
    executed against the scaling manager and the approval manager owned here.
    """

    def __init__(
        self,
        settings: Optional[OrchestratorConfig] = None,
        infrastructure: Optional[InfrastructureProvider] = None,
        metrics: Optional[MetricsProvider] = None,
        policies: Optional[List[ScalingPolicy]] = None,
    ) -> None:
        self.settings = settings or config
        if policies is None and self.settings.scaling_policies_file:
            policies = load_scaling_policies(self.settings.scaling_policies_file)
        self.event_store = EventStore()
        self.approvals = ApprovalManager(
            self.event_store,
            default_expiry_seconds=self.settings.approval_expiry_seconds,
            cleanup_interval_seconds=self.settings.approval_cleanup_interval_seconds,
        )
        self.deployments = DeploymentOrchestrator(
            self.event_store,
            self.settings,
            infrastructure=infrastructure,
            metrics=metrics,
            approvals=self.approvals,
        )
        self.scaling = ScalingManager(self.event_store, self.settings, policies=policies)
        self.workflows = WorkflowOrchestrator(
            self.event_store,
            self.settings,
            deployments=self.deployments,
        )
        self.workflows.register_handler(WorkKind.COMPONENT_OP, self._handle_component_op)
        self.workflows.register_handler(WorkKind.MAINTENANCE, self._handle_maintenance)

        self.started_at: Optional[float] = None

    async def start(self) -> None:
        if self.started_at is not None:
            return
        await self.approvals.start()
        await self.scaling.start()
        await self.workflows.start()
        self.started_at = time.time()
        logger.info("Orchestration core started")

    async def stop(self) -> None:
        if self.started_at is None:
            return
        await self.workflows.stop()
        await self.deployments.stop()
        await self.scaling.stop()
        await self.approvals.stop()
        self.event_store.close()
        self.started_at = None
        logger.info("Orchestration core stopped")

    @property
    def uptime_seconds(self) -> float:
        return time.time() - self.started_at if self.started_at else 0.0

    # ========================================================================
    # Work handlers
    # ========================================================================

    async def _handle_component_op(self, request: WorkRequest) -> Any:
        payload = request.payload
        action = payload.get("action")
        component_id = payload.get("component_id")
        if not component_id:
            raise ValueError("component-op work requires a component_id")

        if action == "scale":
            return self.scaling.manual_scale(
                component_id,
                int(payload["target_instances"]),
                payload.get("reason", f"requested by work {request.id}"),
            )
        if action == "status":
            return self.scaling.get_scaling_status(component_id).model_dump(mode="json")
        raise ValueError(f"Unsupported component-op action: {action}")

    async def _handle_maintenance(self, request: WorkRequest) -> Dict[str, Any]:
        action = request.payload.get("action")

        if action == "expire_approvals":
            return {"expired": self.approvals.expire_stale()}
        if action == "evaluate_scaling":
            results = self.scaling.evaluate()
            return {"scaled": [r.component_id for r in results]}
        if action == "reload_policies":
            path = request.payload.get("path") or self.settings.scaling_policies_file
            if not path:
                raise ValueError("reload_policies requires a path or a configured policies file")
            policies = load_scaling_policies(path)
            self.scaling.autoscaler.reload_policies(policies)
            return {"policies": [p.id for p in policies]}
        if action == "detect_bottlenecks":
            return {
                "bottlenecks": [
                    b.model_dump(mode="json") for b in self.scaling.get_system_bottlenecks()
                ]
            }
        raise ValueError(f"Unsupported maintenance action: {action}")
