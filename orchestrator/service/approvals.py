"""
Human Approval Workflows for deployment promotions.

Module: orchestrator/service/approvals.py

Handles approval gates for deployment stages: a request lists the approvers
allowed to decide, records their decisions and expires when nobody decides
within the configured window.
"""

from typing import Callable, Dict, List, Optional
from datetime import datetime, timedelta
from enum import Enum
from uuid import uuid4
from pydantic import BaseModel, Field
import asyncio
import logging

from .events import EventStore
from .models import EventSeverity, utcnow

logger = logging.getLogger(__name__)


class ApprovalStatus(str, Enum):
    """Approval request status."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class ApprovalDecision(BaseModel):
    """A single approver's decision."""

    approver_id: str
    approved: bool
    comment: Optional[str] = None
    decided_at: datetime = Field(default_factory=utcnow)


class ApprovalRequest(BaseModel):
    """Model for approval request."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    deployment_id: str
    stage: str = Field(..., description="Environment or stage the gate protects")
    approvers: List[str] = Field(..., min_length=1)
    required_approvals: int = Field(default=1, ge=1)
    requested_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    status: ApprovalStatus = ApprovalStatus.PENDING
    decisions: List[ApprovalDecision] = Field(default_factory=list)
    decided_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None

    @property
    def approvals(self) -> int:
        return sum(1 for d in self.decisions if d.approved)


class ApprovalResponse(BaseModel):
    """Model for approval response."""

    approval_id: str
    status: ApprovalStatus
    approvals: int = 0
    required_approvals: int = 1
    decided_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None


_TERMINAL = {
    ApprovalStatus.APPROVED,
    ApprovalStatus.REJECTED,
    ApprovalStatus.EXPIRED,
    ApprovalStatus.CANCELLED,
}


class ApprovalManager:
    """
    Manages approval gates of deployment stages.

    Features:
    - Create approval requests with an approver list
    - Record approve/reject decisions from listed approvers
    - Automatic expiry handling
    - Query pending approvals and the latest gate status per stage
    """

    def __init__(
        self,
        event_store: Optional[EventStore] = None,
        default_expiry_seconds: int = 3600,
        cleanup_interval_seconds: float = 60.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """
        Initialize approval manager.

        Args:
            event_store: Store receiving approval lifecycle events
            default_expiry_seconds: Lifetime of a request when none is given
            cleanup_interval_seconds: Interval of the background expiry sweep
            clock: Wall clock, injectable for tests
        """
        self.event_store = event_store
        self.default_expiry_seconds = default_expiry_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self._clock = clock
        self.pending_approvals: Dict[str, ApprovalRequest] = {}
        self.approval_history: List[ApprovalRequest] = []
        self._decided: Dict[str, asyncio.Event] = {}
        self._cleanup_task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        """Start background cleanup task."""
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_expired_approvals())
        logger.info("Approval manager started")

    async def stop(self) -> None:
        """Stop background tasks."""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        logger.info("Approval manager stopped")

    async def request_approval(
        self,
        deployment_id: str,
        stage: str,
        approvers: List[str],
        required_approvals: int = 1,
        expires_in_seconds: Optional[int] = None,
    ) -> ApprovalRequest:
        """
        Create a new approval request.

        Args:
            deployment_id: Deployment the gate belongs to
            stage: Stage or environment being gated
            approvers: IDs allowed to decide
            required_approvals: Approvals needed, capped at the number of approvers
            expires_in_seconds: Expiration time in seconds

        Returns:
            Created approval request

        Raises:
            ValueError: If no approvers are given
        """
        if not approvers:
            raise ValueError("Approval request requires at least one approver")

        now = self._clock()
        expiry = expires_in_seconds or self.default_expiry_seconds
        request = ApprovalRequest(
            deployment_id=deployment_id,
            stage=stage,
            approvers=list(approvers),
            required_approvals=min(required_approvals, len(approvers)),
            requested_at=now,
            expires_at=now + timedelta(seconds=expiry),
        )

        self.pending_approvals[request.id] = request
        self._decided[request.id] = asyncio.Event()

        logger.info(
            f"Created approval request {request.id} for deployment {deployment_id}, "
            f"stage: {stage}, approvers: {', '.join(approvers)}"
        )
        self._emit("approval.requested", request)

        return request

    async def get_approval_request(self, approval_id: str) -> Optional[ApprovalRequest]:
        """
        Get approval request by ID.

        Args:
            approval_id: Approval request ID

        Returns:
            Approval request or None if not found
        """
        # Check pending
        if approval_id in self.pending_approvals:
            self._expire_if_due(self.pending_approvals[approval_id])
            if approval_id in self.pending_approvals:
                return self.pending_approvals[approval_id]

        # Check history
        for request in self.approval_history:
            if request.id == approval_id:
                return request

        return None

    async def get_approval_status(
        self, deployment_id: str, stage: str
    ) -> Optional[ApprovalRequest]:
        """Return the most recent approval request for a deployment stage."""
        candidates = [
            r
            for r in list(self.pending_approvals.values()) + self.approval_history
            if r.deployment_id == deployment_id and r.stage == stage
        ]
        if not candidates:
            return None
        latest = max(candidates, key=lambda r: r.requested_at)
        self._expire_if_due(latest)
        return latest

    async def list_pending_approvals(
        self,
        deployment_id: Optional[str] = None,
        approver_id: Optional[str] = None,
    ) -> List[ApprovalRequest]:
        """
        List pending approval requests.

        Args:
            deployment_id: Filter by deployment ID
            approver_id: Only requests this approver may decide

        Returns:
            List of pending approval requests, oldest first
        """
        self.expire_stale()
        requests = list(self.pending_approvals.values())

        # Apply filters
        if deployment_id:
            requests = [r for r in requests if r.deployment_id == deployment_id]

        if approver_id:
            requests = [r for r in requests if approver_id in r.approvers]

        requests.sort(key=lambda r: r.requested_at)

        return requests

    async def submit_approval(
        self,
        approval_id: str,
        approver_id: str,
        approved: bool,
        comment: Optional[str] = None,
    ) -> ApprovalResponse:
        """
        Record an approver's decision.

        A single rejection rejects the request; it is approved once the
        required number of listed approvers have approved.

        Args:
            approval_id: Approval request ID
            approver_id: ID of approver
            approved: Decision
            comment: Optional comment, used as the rejection reason

        Returns:
            Approval response

        Raises:
            ValueError: If approval not found, already processed, expired, or
                the approver is not listed
        """
        request = self.pending_approvals.get(approval_id)

        if not request:
            for past in self.approval_history:
                if past.id == approval_id:
                    raise ValueError(f"Approval request {approval_id} already {past.status.value}")
            raise ValueError(f"Approval request {approval_id} not found")

        # Check expiry
        if self._expire_if_due(request):
            raise ValueError(f"Approval request {approval_id} has expired")

        if approver_id not in request.approvers:
            raise ValueError(
                f"{approver_id} is not an approver of request {approval_id}"
            )

        if any(d.approver_id == approver_id for d in request.decisions):
            raise ValueError(f"{approver_id} already decided on request {approval_id}")

        now = self._clock()
        request.decisions.append(
            ApprovalDecision(
                approver_id=approver_id, approved=approved, comment=comment, decided_at=now
            )
        )

        if not approved:
            request.status = ApprovalStatus.REJECTED
            request.rejection_reason = comment or f"Rejected by {approver_id}"
        elif request.approvals >= request.required_approvals:
            request.status = ApprovalStatus.APPROVED

        if request.status != ApprovalStatus.PENDING:
            request.decided_at = now
            self._move_to_history(approval_id)
            self._emit(f"approval.{request.status.value}", request)
            logger.info(
                f"Approval request {approval_id} {request.status.value} by {approver_id} "
                f"for deployment {request.deployment_id}"
            )
        else:
            logger.info(
                f"Approval request {approval_id} has {request.approvals}/"
                f"{request.required_approvals} approvals"
            )

        return self._response(request)

    async def cancel_request(self, approval_id: str) -> ApprovalResponse:
        """
        Cancel a pending request.

        Raises:
            ValueError: If approval not found or already processed
        """
        request = self.pending_approvals.get(approval_id)

        if not request:
            raise ValueError(f"Approval request {approval_id} not found")

        request.status = ApprovalStatus.CANCELLED
        request.decided_at = self._clock()
        self._move_to_history(approval_id)
        self._emit("approval.cancelled", request)

        logger.info(f"Approval request {approval_id} cancelled")

        return self._response(request)

    async def wait_for_approval(
        self, approval_id: str, timeout_seconds: Optional[float] = None
    ) -> ApprovalResponse:
        """
        Wait for an approval decision.

        Raises:
            TimeoutError: If approval not decided within timeout
            ValueError: If approval not found
        """
        request = await self.get_approval_request(approval_id)
        if not request:
            raise ValueError(f"Approval request {approval_id} not found")

        if request.status == ApprovalStatus.PENDING:
            decided = self._decided[approval_id]
            remaining = (request.expires_at - self._clock()).total_seconds()
            wait = remaining if timeout_seconds is None else min(timeout_seconds, remaining)
            try:
                await asyncio.wait_for(decided.wait(), timeout=max(0.0, wait))
            except asyncio.TimeoutError:
                if not self._expire_if_due(request) and request.status == ApprovalStatus.PENDING:
                    raise TimeoutError(
                        f"Approval request {approval_id} undecided after {timeout_seconds}s"
                    )

        return self._response(request)

    def expire_stale(self) -> int:
        """Expire every pending request past its deadline. Returns the count."""
        expired = 0
        for request in list(self.pending_approvals.values()):
            if self._expire_if_due(request):
                expired += 1
        return expired

    async def _cleanup_expired_approvals(self) -> None:
        """Background task to cleanup expired approvals."""
        while True:
            await asyncio.sleep(self.cleanup_interval_seconds)
            expired = self.expire_stale()
            if expired:
                logger.info(f"Expired {expired} approval requests")

    def _expire_if_due(self, request: ApprovalRequest) -> bool:
        if request.status != ApprovalStatus.PENDING or request.expires_at is None:
            return False
        if self._clock() <= request.expires_at:
            return False
        request.status = ApprovalStatus.EXPIRED
        request.decided_at = self._clock()
        self._move_to_history(request.id)
        self._emit("approval.expired", request, EventSeverity.WARNING)
        logger.warning(
            f"Approval request {request.id} for deployment {request.deployment_id} expired"
        )
        return True

    def _response(self, request: ApprovalRequest) -> ApprovalResponse:
        return ApprovalResponse(
            approval_id=request.id,
            status=request.status,
            approvals=request.approvals,
            required_approvals=request.required_approvals,
            decided_at=request.decided_at,
            rejection_reason=request.rejection_reason,
        )

    def _emit(
        self,
        event_type: str,
        request: ApprovalRequest,
        severity: EventSeverity = EventSeverity.INFO,
    ) -> None:
        if self.event_store is None:
            return
        self.event_store.append(
            event_type,
            {
                "approval_id": request.id,
                "deployment_id": request.deployment_id,
                "stage": request.stage,
                "status": request.status.value,
                "approvers": request.approvers,
            },
            source="approval_manager",
            entity_id=request.deployment_id,
            severity=severity,
        )

    def _move_to_history(self, approval_id: str) -> None:
        """Move approval from pending to history."""
        if approval_id in self.pending_approvals:
            request = self.pending_approvals.pop(approval_id)
            self.approval_history.append(request)
            decided = self._decided.pop(approval_id, None)
            if decided is not None:
                decided.set()

            # Limit history size
            if len(self.approval_history) > 10000:
                self.approval_history = self.approval_history[-5000:]
