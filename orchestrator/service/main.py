"""
Orchestration Core Service - Main FastAPI Application.

Provides API endpoints for:
- Submitting prioritized work requests
- Creating, validating, rolling back, promoting, pausing and resuming deployments
- Deciding approval requests
- Reporting metrics, manual scaling and scaling status
- Event history, circuit breaker and queue status
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncGenerator, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .approvals import ApprovalRequest, ApprovalResponse
from .config import config
from .core import OrchestrationCore
from .deployment.analytics import AnalyticsSummary
from .deployment.models import DeploymentRecord, DeploymentStatus
from .errors import ErrorCategory, NotFoundError, OrchestratorError
from .models import (
    ApprovalDecisionRequest,
    CircuitBreakerState,
    CircuitState,
    ErrorResponse,
    EventListResponse,
    HealthCheckResponse,
    ManualScaleRequest,
    OperationResult,
    PromoteRequest,
    QueueStatus,
    WorkRequest,
    WorkRequestCreate,
    WorkResult,
)
from .scaling.manager import ScalingStatus, SystemHealth
from .scaling.models import Bottleneck, CostOptimization, ScalingMetrics

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

SERVICE_VERSION = "1.0.0"

# HTTP status per failure category
CATEGORY_STATUS: Dict[ErrorCategory, int] = {
    ErrorCategory.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorCategory.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCategory.INVALID_STATE: status.HTTP_409_CONFLICT,
    ErrorCategory.APPROVAL_REQUIRED: status.HTTP_409_CONFLICT,
    ErrorCategory.OVERLOAD: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCategory.CIRCUIT_OPEN: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCategory.TRANSIENT: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCategory.HEALTH_CHECK: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCategory.STRATEGY_EXECUTION: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCategory.ROLLBACK_FAILURE: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Lifespan context manager for FastAPI application.

    Builds the orchestration core on startup and stops it on shutdown.
    """
    logger.info("Starting Orchestration Core service...")
    logger.info(
        f"Configuration: queue_max_depth={config.queue_max_depth}, "
        f"max_concurrent_work={config.max_concurrent_work}"
    )

    app.state.core = OrchestrationCore(config)
    await app.state.core.start()

    logger.info("Orchestration Core service started successfully")
    yield

    logger.info("Shutting down Orchestration Core service...")
    await app.state.core.stop()
    logger.info("Orchestration Core service shutdown complete")


app = FastAPI(
    title="Orchestration Core Service",
    description="Prioritized work execution, deployment orchestration and scaling",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)


def get_core() -> OrchestrationCore:
    return app.state.core


def result_response(result: OperationResult, success_status: int = status.HTTP_200_OK) -> JSONResponse:
    """Serialize a structured result with a status code matching its category."""
    if result.success:
        status_code = success_status
    else:
        status_code = CATEGORY_STATUS.get(result.category, status.HTTP_400_BAD_REQUEST)
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))


# ============================================================================
# Exception Handlers
# ============================================================================


@app.exception_handler(OrchestratorError)
async def orchestrator_exception_handler(request: Request, exc: OrchestratorError) -> JSONResponse:
    """Handle orchestration errors with the status of their category."""
    logger.warning(f"{type(exc).__name__} ({exc.category.value}): {exc.message}")
    return JSONResponse(
        status_code=CATEGORY_STATUS.get(exc.category, status.HTTP_400_BAD_REQUEST),
        content=ErrorResponse(
            error=type(exc).__name__,
            message=exc.message,
            category=exc.category,
        ).model_dump(mode="json"),
    )


@app.exception_handler(ValidationError)
async def validation_exception_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Handle Pydantic validation errors."""
    errors = [f"{err['loc']}: {err['msg']}" for err in exc.errors()]
    logger.warning(f"Validation error: {errors}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=ErrorResponse(
            error="ValidationError",
            message="Invalid request data",
            category=ErrorCategory.VALIDATION,
            details={"errors": errors},
        ).model_dump(mode="json"),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTP exceptions."""
    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error="HTTPException",
            message=exc.detail or "An error occurred",
        ).model_dump(mode="json"),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle all other exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error="InternalServerError",
            message="An internal server error occurred",
            details={"exception": str(exc)},
        ).model_dump(mode="json"),
    )


# ============================================================================
# Service Endpoints
# ============================================================================


@app.get("/", response_model=Dict[str, str])
async def root() -> Dict[str, str]:
    """Root endpoint with service information."""
    return {
        "service": "Orchestration Core",
        "version": SERVICE_VERSION,
        "status": "running",
        "docs": "/docs",
    }


@app.get("/health", response_model=HealthCheckResponse)
async def health_check() -> HealthCheckResponse:
    """
    Health check endpoint.

    The service is degraded while any circuit breaker is not closed or the
    scaling view reports anything but healthy.
    """
    core = get_core()
    breakers = core.workflows.get_circuit_breaker_status()
    open_breakers = [k for k, s in breakers.items() if s.state != CircuitState.CLOSED]
    system = core.scaling.get_system_health()

    components = {
        "workflows": "running",
        "deployments": "running",
        "scaling": system.overall,
        "circuit_breakers": "open: " + ", ".join(open_breakers) if open_breakers else "closed",
    }
    overall = "healthy" if not open_breakers and system.overall == "healthy" else "degraded"

    return HealthCheckResponse(
        status=overall,
        version=SERVICE_VERSION,
        components=components,
        uptime_seconds=core.uptime_seconds,
    )


# ============================================================================
# Work Requests
# ============================================================================


@app.post("/work-requests")
async def submit_work_request(request: WorkRequestCreate) -> JSONResponse:
    """
    Submit a work request.

    The correlation id is returned immediately; the result is available from
    ``GET /work-requests/{id}`` once processed.
    """
    work = WorkRequest(
        kind=request.kind,
        payload=request.payload,
        priority=request.priority,
        dependency=request.dependency,
    )
    receipt = get_core().workflows.submit(work)
    return result_response(receipt, status.HTTP_202_ACCEPTED)


@app.get("/work-requests/{request_id}", response_model=WorkResult)
async def get_work_result(request_id: str) -> Any:
    """Return the result of a work request, or 202 while it is pending."""
    workflows = get_core().workflows
    if workflows.get_request(request_id) is None:
        raise NotFoundError(f"Work request {request_id} not found")

    result = workflows.get_result(request_id)
    if result is None:
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content={"request_id": request_id, "status": "pending"},
        )
    return result


@app.delete("/work-requests/{request_id}")
async def cancel_work_request(request_id: str) -> JSONResponse:
    return result_response(get_core().workflows.cancel(request_id))


# ============================================================================
# Deployments
# ============================================================================


@app.post("/deployments")
async def create_deployment(deployment: Dict[str, Any], wait: bool = False) -> JSONResponse:
    """
    Create a deployment.

    Args:
        deployment: Deployment configuration
        wait: Wait for the deployment to finish instead of returning once it started
    """
    result = await get_core().deployments.create_deployment(deployment, wait=wait)
    return result_response(result, status.HTTP_201_CREATED)


@app.get("/deployments", response_model=List[DeploymentRecord])
async def list_deployments(
    environment: Optional[str] = None,
    deployment_status: Optional[DeploymentStatus] = None,
    component: Optional[str] = None,
    limit: Optional[int] = None,
    offset: int = 0,
) -> List[DeploymentRecord]:
    return get_core().deployments.list_deployments(
        environment=environment,
        status=deployment_status,
        component=component,
        limit=limit,
        offset=offset,
    )


@app.get("/deployments/analytics", response_model=AnalyticsSummary)
async def deployment_analytics_summary() -> AnalyticsSummary:
    return get_core().deployments.get_analytics_summary()


@app.get("/deployments/{deployment_id}", response_model=DeploymentRecord)
async def get_deployment(deployment_id: str) -> DeploymentRecord:
    return get_core().deployments.get_deployment_status(deployment_id)


@app.post("/deployments/{deployment_id}/validate")
async def validate_deployment(deployment_id: str) -> JSONResponse:
    return result_response(await get_core().deployments.validate_deployment(deployment_id))


@app.post("/deployments/{deployment_id}/rollback")
async def rollback_deployment(deployment_id: str) -> JSONResponse:
    return result_response(await get_core().deployments.rollback_deployment(deployment_id))


@app.post("/deployments/{deployment_id}/promote")
async def promote_deployment(deployment_id: str, request: PromoteRequest) -> JSONResponse:
    result = await get_core().deployments.promote_deployment(
        deployment_id, request.from_environment, request.to_environment
    )
    return result_response(result)


@app.post("/deployments/{deployment_id}/pause")
async def pause_deployment(deployment_id: str) -> JSONResponse:
    return result_response(await get_core().deployments.pause_deployment(deployment_id))


@app.post("/deployments/{deployment_id}/resume")
async def resume_deployment(deployment_id: str) -> JSONResponse:
    return result_response(await get_core().deployments.resume_deployment(deployment_id))


@app.post("/deployments/{deployment_id}/cancel")
async def cancel_deployment(deployment_id: str) -> JSONResponse:
    return result_response(await get_core().deployments.cancel_deployment(deployment_id))


# ============================================================================
# Approvals
# ============================================================================


@app.get("/approvals", response_model=List[ApprovalRequest])
async def list_pending_approvals(
    deployment_id: Optional[str] = None,
    approver_id: Optional[str] = None,
) -> List[ApprovalRequest]:
    return await get_core().approvals.list_pending_approvals(deployment_id, approver_id)


@app.post("/approvals/{approval_id}/decision", response_model=ApprovalResponse)
async def decide_approval(approval_id: str, request: ApprovalDecisionRequest) -> ApprovalResponse:
    """
    Record an approver's decision.

    Raises:
        HTTPException: If the request is unknown, already decided or expired,
            or the approver may not decide it
    """
    try:
        return await get_core().approvals.submit_approval(
            approval_id, request.approver_id, request.approved, request.comment
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        )


# ============================================================================
# Scaling
# ============================================================================


@app.post("/scaling/{component_id}/metrics", status_code=status.HTTP_202_ACCEPTED)
async def add_metrics(
    component_id: str, metrics: ScalingMetrics, instance_id: Optional[str] = None
) -> Dict[str, str]:
    get_core().scaling.add_metrics(component_id, metrics, instance_id=instance_id)
    return {"component_id": component_id, "status": "accepted"}


@app.post("/scaling/{component_id}/scale")
async def manual_scale(component_id: str, request: ManualScaleRequest) -> JSONResponse:
    result = get_core().scaling.manual_scale(component_id, request.target_instances, request.reason)
    return result_response(result)


@app.get("/scaling/{component_id}", response_model=ScalingStatus)
async def get_scaling_status(component_id: str) -> ScalingStatus:
    return get_core().scaling.get_scaling_status(component_id)


# ============================================================================
# System Status
# ============================================================================


@app.get("/system/health", response_model=SystemHealth)
async def system_health() -> SystemHealth:
    return get_core().scaling.get_system_health()


@app.get("/system/bottlenecks", response_model=List[Bottleneck])
async def system_bottlenecks() -> List[Bottleneck]:
    return get_core().scaling.get_system_bottlenecks()


@app.get("/system/costs", response_model=CostOptimization)
async def cost_optimization(component_id: Optional[str] = None) -> CostOptimization:
    return get_core().scaling.optimize_costs(component_id)


@app.get("/events", response_model=EventListResponse)
async def event_history(
    since: Optional[datetime] = None,
    event_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    limit: Optional[int] = None,
) -> EventListResponse:
    events = get_core().workflows.get_event_history(
        since=since, event_type=event_type, entity_id=entity_id, limit=limit
    )
    return EventListResponse(events=events, count=len(events))


@app.get("/circuit-breakers", response_model=Dict[str, CircuitBreakerState])
async def circuit_breakers() -> Dict[str, CircuitBreakerState]:
    return get_core().workflows.get_circuit_breaker_status()


@app.get("/queue", response_model=QueueStatus)
async def queue_status() -> QueueStatus:
    return get_core().workflows.get_queue_status()


def main() -> None:
    """Main entry point for running the service."""
    import uvicorn

    logger.info("Starting Orchestration Core service with uvicorn...")

    uvicorn.run(
        "orchestrator.service.main:app",
        host=config.host,
        port=config.port,
        reload=config.reload,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
