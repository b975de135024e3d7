"""
Periodic health checking of load balancer instances.

A single failed probe is absorbed. An instance turns unhealthy after
``unhealthy_threshold`` consecutive failures and healthy again after
``healthy_threshold`` consecutive successes; each transition is published
and applied to the load balancer immediately.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import anyio
import httpx

from ..errors import HealthCheckError
from ..events import EventStore
from ..models import EventSeverity, utcnow
from .load_balancer import LoadBalancer
from .models import HealthCheckConfig, HealthCheckMethod, HealthState, ProbeResult, ServiceInstance

logger = logging.getLogger(__name__)

RpcProbe = Callable[[ServiceInstance], Awaitable[bool]]


class HealthCheckManager:
    """Probes instances and drives their routing eligibility."""

    def __init__(
        self,
        event_store: EventStore,
        load_balancer: LoadBalancer,
        config: Optional[HealthCheckConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        rpc_probe: Optional[RpcProbe] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """
        Initialize health check manager.

        Args:
            event_store: Store receiving health transition events
            load_balancer: Load balancer whose instances are probed
            config: Probe method, thresholds and timing
            http_client: Client for HTTP probes (created on demand if omitted)
            rpc_probe: Coroutine performing an RPC health call
            clock: Clock used for probe timestamps
        """
        self.event_store = event_store
        self.load_balancer = load_balancer
        self.config = config or load_balancer.config.health_check
        self.rpc_probe = rpc_probe
        self._http_client = http_client
        self._owns_client = http_client is None
        self._clock = clock
        self._states: Dict[str, HealthState] = {}
        self._task: Optional[asyncio.Task] = None

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> None:
        """Start periodic probing, if enabled."""
        if not self.config.enabled:
            logger.info("Health checks disabled")
            return
        if self._task is None:
            self._task = asyncio.create_task(self._check_loop())
            logger.info(
                f"Health checks started ({self.config.method.value}, "
                f"every {self.config.interval_seconds}s)"
            )

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None
        logger.info("Health checks stopped")

    async def _check_loop(self) -> None:
        while True:
            try:
                await self.check_all()
            except Exception as e:
                logger.error(f"Health check round failed: {e}", exc_info=True)
            await asyncio.sleep(self.config.interval_seconds)

    # ========================================================================
    # Probing
    # ========================================================================

    async def probe(self, instance: ServiceInstance) -> ProbeResult:
        """
        Run one probe against an instance.

        Probe errors and timeouts are reported as failed results.
        """
        started = time.perf_counter()
        try:
            with anyio.fail_after(self.config.timeout_seconds):
                success, message = await self._run_probe(instance)
        except TimeoutError:
            success = False
            message = f"Probe timed out after {self.config.timeout_seconds}s"
        except Exception as e:
            success = False
            message = f"Probe failed: {e}"

        return ProbeResult(
            instance_id=instance.id,
            success=success,
            latency_ms=(time.perf_counter() - started) * 1000,
            message=message,
            checked_at=self._clock(),
        )

    async def _run_probe(self, instance: ServiceInstance) -> Tuple[bool, str]:
        method = self.config.method

        if method == HealthCheckMethod.HTTP:
            if self._http_client is None:
                self._http_client = httpx.AsyncClient(timeout=self.config.timeout_seconds)
            response = await self._http_client.get(f"http://{instance.address}{self.config.path}")
            return (
                response.status_code == self.config.expected_status,
                f"HTTP {response.status_code}",
            )

        if method == HealthCheckMethod.TCP:
            stream = await anyio.connect_tcp(instance.host, instance.port)
            await stream.aclose()
            return True, "TCP connect succeeded"

        if method == HealthCheckMethod.COMMAND:
            if not self.config.command:
                raise HealthCheckError("Command health check configured without a command")
            argv = [arg.format(host=instance.host, port=instance.port) for arg in self.config.command]
            result = await anyio.run_process(argv, check=False)
            return result.returncode == 0, f"Command exited with {result.returncode}"

        if self.rpc_probe is None:
            raise HealthCheckError("RPC health check configured without an RPC probe")
        healthy = await self.rpc_probe(instance)
        return bool(healthy), "RPC health call succeeded" if healthy else "RPC reported unhealthy"

    async def check_instance(self, instance_id: str) -> HealthState:
        """Probe one instance and apply the result."""
        instance = self.load_balancer.get_instance(instance_id)
        result = await self.probe(instance)
        return self.record_result(result)

    async def check_all(self) -> List[HealthState]:
        """Probe every registered instance concurrently."""
        instances = self.load_balancer.instances()
        results = await asyncio.gather(*(self.probe(i) for i in instances))
        # Instances may be unregistered while their probe runs
        registered = {i.id for i in self.load_balancer.instances()}
        return [self.record_result(r) for r in results if r.instance_id in registered]

    # ========================================================================
    # State
    # ========================================================================

    def record_result(self, result: ProbeResult) -> HealthState:
        """
        Apply a probe result to the instance's consecutive counters.

        Returns:
            Updated health state of the instance
        """
        instance = self.load_balancer.get_instance(result.instance_id)
        state = self._states.get(result.instance_id)
        if state is None:
            state = HealthState(instance_id=result.instance_id, healthy=instance.healthy)
            self._states[result.instance_id] = state

        state.last_result = result
        if result.success:
            state.consecutive_successes += 1
            state.consecutive_failures = 0
            if not state.healthy and state.consecutive_successes >= self.config.healthy_threshold:
                self._transition(state, True)
        else:
            state.consecutive_failures += 1
            state.consecutive_successes = 0
            logger.debug(
                f"Health probe of {result.instance_id} failed "
                f"({state.consecutive_failures}/{self.config.unhealthy_threshold}): {result.message}"
            )
            if state.healthy and state.consecutive_failures >= self.config.unhealthy_threshold:
                self._transition(state, False)
        return state

    def _transition(self, state: HealthState, healthy: bool) -> None:
        state.healthy = healthy
        self.load_balancer.set_instance_health(state.instance_id, healthy)

        if healthy:
            logger.info(
                f"Instance {state.instance_id} is healthy after "
                f"{state.consecutive_successes} successful probes"
            )
        else:
            logger.warning(
                f"Instance {state.instance_id} is unhealthy after "
                f"{state.consecutive_failures} failed probes"
            )
        self.event_store.append(
            "health.instance-healthy" if healthy else "health.instance-unhealthy",
            {
                "consecutive_successes": state.consecutive_successes,
                "consecutive_failures": state.consecutive_failures,
                "message": state.last_result.message if state.last_result else "",
            },
            source="health_check",
            entity_id=state.instance_id,
            severity=EventSeverity.INFO if healthy else EventSeverity.WARNING,
        )

    def get_health_state(self, instance_id: str) -> Optional[HealthState]:
        return self._states.get(instance_id)

    def get_all_states(self) -> List[HealthState]:
        return list(self._states.values())

    def forget(self, instance_id: str) -> None:
        """Drop counters of an unregistered instance."""
        self._states.pop(instance_id, None)
