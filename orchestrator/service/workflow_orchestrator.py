"""
Workflow orchestrator.

Accepts work requests, orders them by priority and dispatches each one to the
handler registered for its kind. Every handler call goes through the circuit
breaker of the request's dependency key and the retry policy. Under overload,
non-critical submissions are shed instead of queued.

Deployment requests are delegated to the DeploymentOrchestrator when one is
attached.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import anyio

from .circuit_breaker import CircuitBreakerRegistry
from .config import OrchestratorConfig, config
from .errors import (
    CircuitOpenError,
    ErrorCategory,
    NotFoundError,
    OrchestratorError,
)
from .events import EventStore
from .models import (
    CircuitBreakerState,
    EventSeverity,
    OperationResult,
    Priority,
    QueueStatus,
    SubmissionReceipt,
    SystemEvent,
    WorkKind,
    WorkMetrics,
    WorkRequest,
    WorkResult,
)
from .retry import RetryPolicy, retry_async
from .work_queue import PriorityWorkQueue

logger = logging.getLogger(__name__)

Handler = Callable[[WorkRequest], Awaitable[Any]]


class WorkflowOrchestrator:
    """
    Priority-aware work scheduler with per-dependency circuit breakers.

    Responsibilities:
    - Queue work by priority tier, FIFO within a tier
    - Shed non-critical work when the queue is saturated
    - Retry transient downstream failures with exponential backoff
    - Record every state change in the event store
    """

    def __init__(
        self,
        event_store: Optional[EventStore] = None,
        settings: Optional[OrchestratorConfig] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        handlers: Optional[Dict[WorkKind, Handler]] = None,
        deployments: Optional[Any] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = anyio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize workflow orchestrator.

        Args:
            event_store: Shared event store (created if not provided)
            settings: Configuration (module config if not provided)
            breakers: Circuit breaker registry (created from settings if not provided)
            handlers: Initial handler per work kind
            deployments: DeploymentOrchestrator receiving deployment requests
            retry_policy: Backoff parameters (built from settings if not provided)
            sleep: Backoff sleep, injectable for tests
            clock: Monotonic clock used for queue wait and execution timings
        """
        self.settings = settings or config
        self.event_store = event_store or EventStore()
        self.breakers = breakers or CircuitBreakerRegistry(
            self.event_store,
            failure_threshold=self.settings.circuit_breaker_failure_threshold,
            recovery_timeout=self.settings.circuit_breaker_recovery_timeout_seconds,
        )
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=self.settings.retry_max_attempts,
            base_delay=self.settings.retry_base_delay_seconds,
            multiplier=self.settings.retry_multiplier,
            max_delay=self.settings.retry_max_delay_seconds,
        )
        self.deployments = deployments
        self._handlers: Dict[WorkKind, Handler] = dict(handlers or {})
        self._sleep = sleep
        self._clock = clock

        self._queue = PriorityWorkQueue()
        self._requests: Dict[str, WorkRequest] = {}
        self._enqueued_at: Dict[str, float] = {}
        self._results: Dict[str, WorkResult] = {}
        self._done: Dict[str, asyncio.Event] = {}
        self._running: Dict[str, asyncio.Task] = {}
        self._processing = 0
        self._completed = 0
        self._failed = 0
        self._rejected = 0
        self._loop_task: Optional[asyncio.Task[None]] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background queue processing loop."""
        if self._loop_task is not None:
            return
        self._loop_task = asyncio.create_task(self._process_loop())
        logger.info("Workflow orchestrator started")

    async def stop(self) -> None:
        """Stop the processing loop and cancel in-flight work."""
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        tasks = list(self._running.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Workflow orchestrator stopped")

    async def _process_loop(self) -> None:
        interval = self.settings.queue_tick_interval_seconds
        while True:
            while len(self._queue) and len(self._running) < self.settings.max_concurrent_work:
                request = self._queue.pop()
                if request is None:
                    break
                task = asyncio.create_task(self._execute(request))
                self._running[request.id] = task
                task.add_done_callback(
                    lambda _t, request_id=request.id: self._running.pop(request_id, None)
                )
                await anyio.sleep(0)
            await anyio.sleep(interval)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def register_handler(self, kind: WorkKind, handler: Handler) -> None:
        self._handlers[kind] = handler
        logger.info(f"Registered handler for {kind.value} work")

    def submit(self, request: WorkRequest) -> SubmissionReceipt:
        """
        Submit a work request.

        The correlation id is returned immediately; the result is available
        through ``wait_for_result``/``get_result`` and the event store.

        Args:
            request: Work request to enqueue

        Returns:
            Submission receipt; ``accepted`` is False when the request was shed
            or cannot be handled
        """
        if request.id in self._requests:
            return self._reject(
                request,
                f"Work request {request.id} was already submitted",
                ErrorCategory.VALIDATION,
            )

        if self._resolve_handler(request.kind) is None:
            return self._reject(
                request,
                f"Validation failed: no handler registered for {request.kind.value} work",
                ErrorCategory.VALIDATION,
            )

        depth = len(self._queue)
        if depth >= self.settings.queue_max_depth and self._is_sheddable(request.priority):
            self._rejected += 1
            self.event_store.append(
                "system.overload",
                {
                    "request_id": request.id,
                    "priority": request.priority.value,
                    "queue_size": depth,
                    "max_depth": self.settings.queue_max_depth,
                },
                source="workflow_orchestrator",
                entity_id=request.id,
                severity=EventSeverity.WARNING,
            )
            logger.warning(
                f"Queue saturated ({depth}/{self.settings.queue_max_depth}), "
                f"rejected {request.priority.value} request {request.id}"
            )
            return SubmissionReceipt(
                success=False,
                accepted=False,
                request_id=request.id,
                trace_id=request.trace_id,
                message=f"System overloaded: queue depth {depth} reached its limit",
                category=ErrorCategory.OVERLOAD,
            )

        self._requests[request.id] = request
        self._enqueued_at[request.id] = self._clock()
        self._done[request.id] = asyncio.Event()
        position = self._queue.push(request)

        self.event_store.append(
            "queued",
            {
                "request_id": request.id,
                "kind": request.kind.value,
                "priority": request.priority.value,
                "queue_position": position,
                "trace_id": request.trace_id,
            },
            source="workflow_orchestrator",
            entity_id=request.id,
        )
        logger.info(
            f"Queued {request.priority.value} {request.kind.value} request {request.id} "
            f"at position {position}"
        )

        return SubmissionReceipt(
            success=True,
            accepted=True,
            request_id=request.id,
            trace_id=request.trace_id,
            queue_position=position,
            message="Work request queued",
        )

    def _reject(
        self, request: WorkRequest, message: str, category: ErrorCategory
    ) -> SubmissionReceipt:
        self._rejected += 1
        logger.warning(f"Rejected work request {request.id}: {message}")
        return SubmissionReceipt(
            success=False,
            accepted=False,
            request_id=request.id,
            trace_id=request.trace_id,
            message=message,
            category=category,
        )

    def _is_sheddable(self, priority: Priority) -> bool:
        if priority == Priority.CRITICAL:
            return False
        return priority.value in self.settings.shed_priorities

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process_next(self) -> Optional[WorkResult]:
        """Dequeue and execute the highest-priority request inline."""
        request = self._queue.pop()
        if request is None:
            return None
        return await self._execute(request)

    async def drain(self) -> List[WorkResult]:
        """Process queued requests until the queue is empty."""
        results = []
        while len(self._queue):
            result = await self.process_next()
            if result is not None:
                results.append(result)
        return results

    async def _execute(self, request: WorkRequest) -> WorkResult:
        started = self._clock()
        queue_wait = max(0.0, started - self._enqueued_at.get(request.id, started))
        metrics = WorkMetrics(queue_wait_seconds=queue_wait)
        breaker = self.breakers.get(request.dependency_key)
        handler = self._resolve_handler(request.kind)

        self._processing += 1
        self.event_store.append(
            "started",
            {"request_id": request.id, "kind": request.kind.value, "trace_id": request.trace_id},
            source="workflow_orchestrator",
            entity_id=request.id,
        )

        async def attempt() -> Any:
            metrics.attempts += 1
            try:
                return await breaker.call(lambda: handler(request))
            except CircuitOpenError:
                raise
            except Exception as e:
                self._record_component_failure(request, e, metrics.attempts)
                raise

        try:
            data = await retry_async(attempt, self.retry_policy, sleep=self._sleep)
        except asyncio.CancelledError:
            metrics.execution_seconds = max(0.0, self._clock() - started)
            self._finish(
                request,
                WorkResult(
                    request_id=request.id,
                    success=False,
                    metrics=metrics,
                    trace_id=request.trace_id,
                    message="Work request cancelled",
                    category=ErrorCategory.INVALID_STATE,
                ),
                event_type="cancelled",
            )
            raise
        except OrchestratorError as e:
            result = self._failure(request, metrics, started, e.message, e.category)
        except (asyncio.TimeoutError, TimeoutError) as e:
            result = self._failure(
                request, metrics, started, f"Timed out: {e}", ErrorCategory.TRANSIENT
            )
        except ValueError as e:
            result = self._failure(request, metrics, started, str(e), ErrorCategory.VALIDATION)
        except Exception as e:
            logger.error(f"Work request {request.id} failed: {e}", exc_info=True)
            result = self._failure(request, metrics, started, str(e), ErrorCategory.TRANSIENT)
        else:
            metrics.execution_seconds = max(0.0, self._clock() - started)
            result = self._success(request, metrics, data)
        finally:
            self._processing -= 1

        return self._finish(request, result)

    def _success(self, request: WorkRequest, metrics: WorkMetrics, data: Any) -> WorkResult:
        # Handlers may report an expected failure as a structured result
        if isinstance(data, OperationResult):
            return WorkResult(
                request_id=request.id,
                success=data.success,
                data=data.model_dump(mode="json"),
                metrics=metrics,
                trace_id=request.trace_id,
                message=data.message,
                category=data.category,
            )
        return WorkResult(
            request_id=request.id,
            success=True,
            data=data,
            metrics=metrics,
            trace_id=request.trace_id,
            message="Work request completed",
        )

    def _failure(
        self,
        request: WorkRequest,
        metrics: WorkMetrics,
        started: float,
        message: str,
        category: Optional[ErrorCategory],
    ) -> WorkResult:
        metrics.execution_seconds = max(0.0, self._clock() - started)
        return WorkResult(
            request_id=request.id,
            success=False,
            metrics=metrics,
            trace_id=request.trace_id,
            message=message,
            category=category,
        )

    def _finish(
        self, request: WorkRequest, result: WorkResult, event_type: Optional[str] = None
    ) -> WorkResult:
        if request.id in self._results:
            return self._results[request.id]

        self._results[request.id] = result
        self._enqueued_at.pop(request.id, None)
        if result.success:
            self._completed += 1
        else:
            self._failed += 1

        event_type = event_type or ("completed" if result.success else "failed")
        self.event_store.append(
            event_type,
            {
                "request_id": request.id,
                "kind": request.kind.value,
                "success": result.success,
                "message": result.message,
                "category": result.category.value if result.category else None,
                "attempts": result.metrics.attempts,
                "trace_id": request.trace_id,
            },
            source="workflow_orchestrator",
            entity_id=request.id,
            severity=EventSeverity.INFO if result.success else EventSeverity.ERROR,
        )
        if result.success:
            logger.info(f"Work request {request.id} completed")
        else:
            logger.error(f"Work request {request.id} {event_type}: {result.message}")

        done = self._done.get(request.id)
        if done is not None:
            done.set()
        return result

    def _record_component_failure(
        self, request: WorkRequest, error: Exception, attempt: int
    ) -> None:
        self.event_store.append(
            "component.failure",
            {
                "component": request.dependency_key,
                "request_id": request.id,
                "attempt": attempt,
                "error": str(error),
                "error_type": type(error).__name__,
            },
            source="workflow_orchestrator",
            entity_id=request.dependency_key,
            severity=EventSeverity.WARNING,
        )

    def _resolve_handler(self, kind: WorkKind) -> Optional[Handler]:
        handler = self._handlers.get(kind)
        if handler is None and kind == WorkKind.DEPLOYMENT and self.deployments is not None:
            return self._run_deployment
        return handler

    async def _run_deployment(self, request: WorkRequest) -> Any:
        return await self.deployments.create_deployment(request.payload)

    # ------------------------------------------------------------------
    # Results and cancellation
    # ------------------------------------------------------------------

    def get_request(self, request_id: str) -> Optional[WorkRequest]:
        return self._requests.get(request_id)

    def get_result(self, request_id: str) -> Optional[WorkResult]:
        return self._results.get(request_id)

    async def wait_for_result(
        self, request_id: str, timeout: Optional[float] = None
    ) -> WorkResult:
        """
        Wait until a submitted request has produced its result.

        Raises:
            NotFoundError: If the request was never accepted
            TimeoutError: If no result arrives within ``timeout`` seconds
        """
        done = self._done.get(request_id)
        if done is None:
            raise NotFoundError(f"Work request {request_id} not found")
        with anyio.fail_after(timeout):
            await done.wait()
        return self._results[request_id]

    def cancel(self, request_id: str) -> OperationResult:
        """Drop a queued request or cancel a running one."""
        request = self._requests.get(request_id)
        if request is None:
            return OperationResult(
                success=False,
                message=f"Work request {request_id} not found",
                category=ErrorCategory.NOT_FOUND,
            )

        if request_id in self._results:
            return OperationResult(
                success=False,
                message=f"Work request {request_id} already finished",
                category=ErrorCategory.INVALID_STATE,
            )

        if self._queue.remove(request_id):
            self._finish(
                request,
                WorkResult(
                    request_id=request_id,
                    success=False,
                    trace_id=request.trace_id,
                    message="Work request cancelled",
                    category=ErrorCategory.INVALID_STATE,
                ),
                event_type="cancelled",
            )
            return OperationResult(success=True, message="Queued work request cancelled")

        task = self._running.get(request_id)
        if task is not None:
            task.cancel()
            return OperationResult(success=True, message="Running work request cancelled")

        return OperationResult(
            success=False,
            message=f"Work request {request_id} is not cancellable",
            category=ErrorCategory.INVALID_STATE,
        )

    # ------------------------------------------------------------------
    # Events and status
    # ------------------------------------------------------------------

    def handle_event(self, event: SystemEvent) -> SystemEvent:
        """
        Record an externally observed event.

        ``component.failure``/``component.recovered`` events naming a component
        count against/for that dependency's circuit breaker.
        """
        stored = self.event_store.record(event)
        component = event.payload.get("component")
        if component:
            if event.type == "component.failure":
                self.breakers.get(component).record_failure()
            elif event.type == "component.recovered":
                self.breakers.get(component).record_success()
        return stored

    def get_queue_status(self) -> QueueStatus:
        return QueueStatus(
            size=len(self._queue),
            processing=self._processing,
            completed=self._completed,
            failed=self._failed,
            rejected=self._rejected,
        )

    def get_circuit_breaker_status(self) -> Dict[str, CircuitBreakerState]:
        return self.breakers.status()

    def get_event_history(
        self,
        since: Optional[datetime] = None,
        event_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[SystemEvent]:
        return self.event_store.history(
            since=since, event_type=event_type, entity_id=entity_id, limit=limit
        )
