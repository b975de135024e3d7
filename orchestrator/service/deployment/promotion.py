"""
Promotion of deployments between environments.

A promotion re-runs a completed deployment's configuration in the target
environment once the target's prerequisites hold and, when an approval gate is
configured for the target stage, the gate has been approved.
"""

import logging
from typing import Awaitable, Callable, List
from uuid import uuid4

from ..errors import ErrorCategory
from ..approvals import ApprovalManager, ApprovalStatus
from .models import (
    DeploymentConfig,
    DeploymentRecord,
    DeploymentResult,
    DeploymentStatus,
    PromotionResult,
)

logger = logging.getLogger(__name__)

CreateDeployment = Callable[[DeploymentConfig], Awaitable[DeploymentResult]]


class PromotionManager:
    """Checks promotion gates and creates the target-environment deployment."""

    def __init__(
        self,
        approvals: ApprovalManager,
        create_deployment: CreateDeployment,
        list_records: Callable[[], List[DeploymentRecord]],
    ) -> None:
        """
        Initialize promotion manager.

        Args:
            approvals: Approval manager holding the promotion gates
            create_deployment: Creates and runs a deployment (the orchestrator's)
            list_records: Returns every known deployment record
        """
        self.approvals = approvals
        self._create_deployment = create_deployment
        self._list_records = list_records

    def check_prerequisites(
        self, record: DeploymentRecord, from_environment: str, to_environment: str
    ) -> List[str]:
        """Return the unmet prerequisites of promoting into ``to_environment``."""
        unmet = []
        if record.config.environment != from_environment:
            unmet.append(
                f"Deployment {record.id} runs in {record.config.environment}, "
                f"not {from_environment}"
            )
        if record.status != DeploymentStatus.COMPLETED:
            unmet.append(f"Deployment {record.id} is {record.status.value}, not completed")

        required = record.config.prerequisites.get(to_environment, [])
        completed_envs = {
            r.config.environment
            for r in self._list_records()
            if r.config.name == record.config.name
            and r.config.version == record.config.version
            and r.status == DeploymentStatus.COMPLETED
        }
        for environment in required:
            if environment not in completed_envs:
                unmet.append(
                    f"{record.config.name} {record.config.version} has no completed "
                    f"deployment in {environment}"
                )
        return unmet

    async def promote(
        self, record: DeploymentRecord, from_environment: str, to_environment: str
    ) -> PromotionResult:
        """
        Promote a deployment.

        When the target stage has an approval gate and no request exists yet,
        one is created and the promotion reports ``approval_required``; call
        again once the request is approved.
        """
        base = dict(
            deployment_id=record.id,
            from_environment=from_environment,
            to_environment=to_environment,
        )

        unmet = self.check_prerequisites(record, from_environment, to_environment)
        if unmet:
            return PromotionResult(
                success=False,
                message=f"Promotion prerequisites not met: {'; '.join(unmet)}",
                category=ErrorCategory.VALIDATION,
                **base,
            )

        gate = next((g for g in record.config.approvals if g.stage == to_environment), None)
        approval_id = None
        if gate is not None:
            request = await self.approvals.get_approval_status(record.id, to_environment)
            if request is None or request.status in (
                ApprovalStatus.EXPIRED,
                ApprovalStatus.CANCELLED,
            ):
                request = await self.approvals.request_approval(
                    record.id,
                    to_environment,
                    gate.approvers,
                    required_approvals=gate.required_approvals,
                    expires_in_seconds=gate.expires_in_seconds,
                )
            approval_id = request.id
            if request.status == ApprovalStatus.REJECTED:
                return PromotionResult(
                    success=False,
                    message=f"Promotion to {to_environment} was rejected: {request.rejection_reason}",
                    category=ErrorCategory.APPROVAL_REQUIRED,
                    approval_id=approval_id,
                    **base,
                )
            if request.status != ApprovalStatus.APPROVED:
                return PromotionResult(
                    success=False,
                    message=f"Promotion to {to_environment} is awaiting approval {request.id}",
                    category=ErrorCategory.APPROVAL_REQUIRED,
                    approval_id=approval_id,
                    **base,
                )

        promoted = record.config.model_copy(
            update={
                "id": f"{record.config.id}-{to_environment}-{uuid4().hex[:8]}",
                "environment": to_environment,
            }
        )
        logger.info(f"Promoting {record.id} from {from_environment} to {to_environment}")
        result = await self._create_deployment(promoted)

        return PromotionResult(
            success=result.success,
            message=(
                f"Promoted to {to_environment}"
                if result.success
                else f"Promotion to {to_environment} failed: {result.message}"
            ),
            category=result.category,
            new_deployment_id=result.deployment_id,
            approval_id=approval_id,
            status=result.status,
            **base,
        )
