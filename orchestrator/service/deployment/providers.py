"""
External collaborators of the deployment subsystem.

Infrastructure changes and metric collection are behind two protocols so the
strategies never talk to a cloud SDK directly. The simulated implementations
keep everything in memory and are used by default and in tests.
"""

import logging
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple, Type

import anyio

from ..errors import OrchestratorError, StrategyExecutionError
from .models import ComponentSpec, RollbackStep

logger = logging.getLogger(__name__)


class InfrastructureProvider(Protocol):
    """Applies deployment changes to the runtime environment."""

    async def provision_environment(
        self, deployment_id: str, environment: str, color: str, components: List[ComponentSpec]
    ) -> None: ...

    async def teardown_environment(self, deployment_id: str, environment: str, color: str) -> None: ...

    async def switch_traffic(
        self, name: str, environment: str, color: str, percentage: float
    ) -> None: ...

    async def set_canary_traffic(
        self, deployment_id: str, component: ComponentSpec, percentage: float
    ) -> None: ...

    async def replace_replicas(
        self, deployment_id: str, component: ComponentSpec, count: int, surge: int
    ) -> int: ...

    async def run_check(self, deployment_id: str, phase: str, check_name: str) -> bool: ...

    async def execute_rollback_step(self, deployment_id: str, step: RollbackStep) -> None: ...

    def is_version_available(self, component: str, version: str) -> bool: ...


class MetricsProvider(Protocol):
    """Collects runtime metrics of a deployment."""

    async def collect(self, deployment_id: str) -> Dict[str, float]: ...


DEFAULT_METRICS: Dict[str, float] = {
    "response_time": 80.0,
    "throughput": 1000.0,
    "error_rate": 0.01,
    "availability": 99.9,
    "cpu": 40.0,
    "memory": 50.0,
}


class StaticMetricsProvider:
    """Returns configured metric values, optionally per deployment."""

    def __init__(self, metrics: Optional[Dict[str, float]] = None) -> None:
        self.metrics: Dict[str, float] = dict(DEFAULT_METRICS)
        if metrics:
            self.metrics.update(metrics)
        self._overrides: Dict[str, Dict[str, float]] = {}

    def set(self, metrics: Dict[str, float], deployment_id: Optional[str] = None) -> None:
        if deployment_id is None:
            self.metrics.update(metrics)
        else:
            self._overrides.setdefault(deployment_id, {}).update(metrics)

    async def collect(self, deployment_id: str) -> Dict[str, float]:
        values = dict(self.metrics)
        values.update(self._overrides.get(deployment_id, {}))
        return values


class SimulatedInfrastructure:
    """
    In-memory infrastructure.

    Records every call, tracks replica availability per component and can be
    told to fail or slow down specific actions.
    """

    def __init__(self) -> None:
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.environments: Dict[Tuple[str, str, str], List[ComponentSpec]] = {}
        self.traffic: Dict[Tuple[str, str], Dict[str, float]] = {}
        self.canary_traffic: Dict[Tuple[str, str], float] = {}
        self.replicas: Dict[Tuple[str, str], Dict[str, int]] = {}
        self.unavailable_samples: Dict[str, List[int]] = {}
        self.failed_checks: Set[str] = set()
        self.removed_versions: Set[Tuple[str, str]] = set()
        self._failures: Dict[str, Tuple[Optional[int], Type[OrchestratorError]]] = {}
        self._delays: Dict[str, float] = {}

    def fail_on(
        self,
        action: str,
        times: Optional[int] = None,
        error: Type[OrchestratorError] = StrategyExecutionError,
    ) -> None:
        """Make ``action`` raise ``error``; ``times=None`` fails it forever."""
        self._failures[action] = (times, error)

    def delay(self, action: str, seconds: float) -> None:
        self._delays[action] = seconds

    def remove_version(self, component: str, version: str) -> None:
        self.removed_versions.add((component, version))

    def is_version_available(self, component: str, version: str) -> bool:
        return (component, version) not in self.removed_versions

    async def _apply(self, action: str, **details: Any) -> None:
        self.calls.append((action, details))
        if action in self._delays:
            await anyio.sleep(self._delays[action])

        failure = self._failures.get(action)
        if failure is not None:
            remaining, error = failure
            if remaining is None or remaining > 0:
                if remaining is not None:
                    self._failures[action] = (remaining - 1, error)
                raise error(f"Infrastructure action {action} failed")

    async def provision_environment(
        self, deployment_id: str, environment: str, color: str, components: List[ComponentSpec]
    ) -> None:
        await self._apply(
            "provision_environment", deployment_id=deployment_id, environment=environment, color=color
        )
        self.environments[(deployment_id, environment, color)] = list(components)

    async def teardown_environment(self, deployment_id: str, environment: str, color: str) -> None:
        await self._apply(
            "teardown_environment", deployment_id=deployment_id, environment=environment, color=color
        )
        self.environments.pop((deployment_id, environment, color), None)

    async def switch_traffic(
        self, name: str, environment: str, color: str, percentage: float
    ) -> None:
        await self._apply(
            "switch_traffic", name=name, environment=environment, color=color, percentage=percentage
        )
        split = self.traffic.setdefault((name, environment), {})
        split[color] = percentage
        for other in list(split):
            if other != color:
                split[other] = 100.0 - percentage

    async def set_canary_traffic(
        self, deployment_id: str, component: ComponentSpec, percentage: float
    ) -> None:
        await self._apply(
            "set_canary_traffic",
            deployment_id=deployment_id,
            component=component.name,
            percentage=percentage,
        )
        self.canary_traffic[(deployment_id, component.name)] = percentage

    async def replace_replicas(
        self, deployment_id: str, component: ComponentSpec, count: int, surge: int
    ) -> int:
        """
        Replace ``count`` old replicas with new ones.

        Up to ``surge`` new replicas come up before old ones are stopped; the
        remainder are unavailable while they restart.

        Returns:
            Replicas unavailable while the batch was in flight
        """
        await self._apply(
            "replace_replicas",
            deployment_id=deployment_id,
            component=component.name,
            count=count,
            surge=surge,
        )
        state = self.replicas.setdefault(
            (deployment_id, component.name), {"old": component.replicas, "new": 0}
        )
        unavailable = count - min(count, surge)
        self.unavailable_samples.setdefault(component.name, []).append(unavailable)
        state["old"] -= count
        state["new"] += count
        return unavailable

    async def run_check(self, deployment_id: str, phase: str, check_name: str) -> bool:
        await self._apply("run_check", deployment_id=deployment_id, phase=phase, check=check_name)
        return check_name not in self.failed_checks

    async def execute_rollback_step(self, deployment_id: str, step: RollbackStep) -> None:
        await self._apply(step.action, deployment_id=deployment_id, step=step.name)
        logger.debug(f"Rollback step '{step.name}' applied for {deployment_id}")
