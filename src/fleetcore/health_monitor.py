"""
Health Monitoring for Service Instances

Probes every registered instance on a fixed interval, independent of call
traffic, and writes the resulting status back into the registry.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import structlog

from fleetcore.collaborators import HealthProbe
from fleetcore.config import HealthCheckConfig
from fleetcore.exceptions import NotFoundError
from fleetcore.models import InstanceStatus, ProbeResult, ServiceInstance
from fleetcore.service_registry import ServiceRegistry

logger = structlog.get_logger(__name__)

# Instances leaving or out of rotation are not probed
_SKIPPED_STATUSES = frozenset({InstanceStatus.DRAINING, InstanceStatus.STOPPED})
_RECOVERABLE_STATUSES = frozenset(
    {InstanceStatus.RUNNING, InstanceStatus.ERRORED, InstanceStatus.STARTING}
)


class HealthMonitor:
    """Monitor instance health with periodic probes."""

    def __init__(
        self,
        registry: ServiceRegistry,
        probe: HealthProbe,
        config: HealthCheckConfig | None = None,
    ) -> None:
        """Initialize health monitor.

        Args:
            registry: Registry whose instances are probed and updated
            probe: Async callable returning the health of one instance
            config: Health check configuration
        """
        self.registry = registry
        self.probe = probe
        self.config = config or HealthCheckConfig()
        self._consecutive_successes: dict[tuple[str, str], int] = {}
        self._consecutive_failures: dict[tuple[str, str], int] = {}
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Check if the probe loop is active."""
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background probe loop."""
        if self.running:
            logger.warning("health_monitor_already_running")
            return

        self._task = asyncio.create_task(self._monitor_loop())
        logger.info(
            "health_monitor_started",
            interval_seconds=self.config.interval_seconds,
            probe_timeout_seconds=self.config.probe_timeout_seconds,
        )

    async def stop(self) -> None:
        """Stop the background probe loop."""
        task, self._task = self._task, None
        if task is None:
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

        logger.info("health_monitor_stopped")

    async def run_once(self) -> dict[str, ProbeResult]:
        """Probe every eligible instance once, concurrently.

        Returns:
            Probe result per instance id
        """
        registered = self.registry.all_instances()
        self._prune({(i.service_id, i.instance_id) for i in registered})

        instances = [i for i in registered if i.status not in _SKIPPED_STATUSES]
        if not instances:
            return {}

        results = await asyncio.gather(*(self._check_instance(i) for i in instances))
        return {i.instance_id: result for i, result in zip(instances, results)}

    async def _monitor_loop(self) -> None:
        """Run probe cycles until cancelled."""
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("health_monitor_cycle_error")
            await asyncio.sleep(self.config.interval_seconds)

    async def _check_instance(self, instance: ServiceInstance) -> ProbeResult:
        """Run one bounded probe and record its outcome."""
        try:
            outcome = await asyncio.wait_for(
                self.probe(instance), timeout=self.config.probe_timeout_seconds
            )
            result = _as_probe_result(outcome)
            error = None if result == ProbeResult.HEALTHY else "probe reported unhealthy"
        except asyncio.TimeoutError:
            result, error = ProbeResult.UNHEALTHY, "probe timeout"
        except Exception as e:
            result, error = ProbeResult.UNHEALTHY, str(e)

        if result == ProbeResult.HEALTHY:
            await self._record_success(instance)
        else:
            await self._record_failure(instance, error or "unhealthy")
        return result

    async def _record_success(self, instance: ServiceInstance) -> None:
        key = (instance.service_id, instance.instance_id)
        self._consecutive_failures.pop(key, None)
        successes = self._consecutive_successes.get(key, 0) + 1
        self._consecutive_successes[key] = successes

        if successes >= self.config.healthy_threshold:
            await self._write_status(
                instance,
                InstanceStatus.RUNNING,
                only_from=_RECOVERABLE_STATUSES,
                heartbeat=datetime.now(UTC),
            )

    async def _record_failure(self, instance: ServiceInstance, error: str) -> None:
        key = (instance.service_id, instance.instance_id)
        self._consecutive_successes.pop(key, None)
        failures = self._consecutive_failures.get(key, 0) + 1
        self._consecutive_failures[key] = failures

        logger.warning(
            "health_probe_failed",
            service_id=instance.service_id,
            instance_id=instance.instance_id,
            error=error,
            consecutive_failures=failures,
        )

        if failures >= self.config.unhealthy_threshold:
            await self._write_status(
                instance,
                InstanceStatus.ERRORED,
                only_from=frozenset({InstanceStatus.RUNNING}),
            )

    async def _write_status(
        self,
        instance: ServiceInstance,
        status: InstanceStatus,
        only_from: frozenset[InstanceStatus],
        heartbeat: datetime | None = None,
    ) -> None:
        try:
            # A drain started while the probe was in flight takes precedence
            await self.registry.set_instance_status(
                instance.service_id,
                instance.instance_id,
                status,
                heartbeat=heartbeat,
                only_from=only_from,
            )
        except NotFoundError:
            # Removed while the probe was in flight
            self._forget(instance)
            logger.debug(
                "health_probe_target_gone",
                service_id=instance.service_id,
                instance_id=instance.instance_id,
            )

    @property
    def tracked_instances(self) -> int:
        """Number of instances with consecutive probe outcomes on record."""
        return len(self._consecutive_successes.keys() | self._consecutive_failures.keys())

    def _prune(self, live: set[tuple[str, str]]) -> None:
        """Drop counters of instances no longer registered."""
        for counters in (self._consecutive_successes, self._consecutive_failures):
            for key in [k for k in counters if k not in live]:
                del counters[key]

    def _forget(self, instance: ServiceInstance) -> None:
        key = (instance.service_id, instance.instance_id)
        self._consecutive_successes.pop(key, None)
        self._consecutive_failures.pop(key, None)


def _as_probe_result(outcome: ProbeResult | bool) -> ProbeResult:
    if isinstance(outcome, ProbeResult):
        return outcome
    return ProbeResult.HEALTHY if outcome else ProbeResult.UNHEALTHY
