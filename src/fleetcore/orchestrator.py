"""
Service Orchestrator

Facade composing the service registry, per-service load balancers and
circuit breakers, and the health monitor. Routes calls to healthy
instances and scales services with a two-phase drain.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

import structlog

from fleetcore import events, metrics
from fleetcore.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from fleetcore.collaborators import HealthProbe, InstanceProvisioner, ServiceTransport
from fleetcore.config import OrchestratorSettings, get_settings
from fleetcore.events import Event, EventBus, Subscription
from fleetcore.exceptions import (
    CircuitOpenError,
    NoHealthyInstanceError,
    ScalingError,
    ServiceCallError,
    ServiceCallTimeoutError,
    ServiceNotFoundError,
)
from fleetcore.health_monitor import HealthMonitor
from fleetcore.load_balancer import LoadBalancer
from fleetcore.models import (
    ActionParams,
    ActionRequest,
    CircuitState,
    DependencyHealth,
    HealthReport,
    HealthStatus,
    InstanceStatus,
    LoadBalancingAlgorithm,
    ScaleResult,
    ServiceDescriptor,
    ServiceInstance,
    coerce_params,
)
from fleetcore.service_registry import RegistrySnapshot, ServiceRegistry

logger = structlog.get_logger(__name__)

# Instances on their way out do not count towards capacity or health
_LEAVING_STATUSES = frozenset({InstanceStatus.DRAINING, InstanceStatus.STOPPED})


class Orchestrator:
    """
    Process-local service orchestrator.

    Owns one load balancer and one circuit breaker per registered service
    and keeps them in step with the registry through registry events, so
    services removed directly through the registry are torn down too.
    """

    def __init__(
        self,
        transport: ServiceTransport,
        registry: ServiceRegistry | None = None,
        provisioner: InstanceProvisioner | None = None,
        probe: HealthProbe | None = None,
        settings: OrchestratorSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize orchestrator.

        Args:
            transport: Delivers calls to instances
            registry: Service registry, created if omitted
            provisioner: Starts and stops instances for scaling
            probe: Health probe; enables the health monitor when given
            settings: Orchestrator settings
            clock: Monotonic time source for circuit breakers
        """
        self.settings = settings or get_settings()
        self.transport = transport
        self.provisioner = provisioner
        self.registry = registry or ServiceRegistry()
        self.event_bus: EventBus = self.registry.event_bus
        self.circuit_breakers = CircuitBreakerRegistry(
            self.settings.circuit_breaker,
            clock=clock,
            on_state_change=self._on_circuit_state_change,
        )
        self.health_monitor = (
            HealthMonitor(self.registry, probe, self.settings.health_check)
            if probe is not None
            else None
        )

        self._balancers: dict[str, LoadBalancer] = {}
        self._algorithms: dict[str, LoadBalancingAlgorithm] = {}
        self._scaling_locks: dict[str, asyncio.Lock] = {}
        self._subscriptions: list[Subscription] = [
            self.event_bus.subscribe(events.SERVICE_REGISTERED, self._on_service_registered),
            self.event_bus.subscribe(
                events.SERVICE_UNREGISTERED, self._on_service_unregistered
            ),
            self.event_bus.subscribe(events.INSTANCE_ADDED, self._on_membership_changed),
            self.event_bus.subscribe(events.INSTANCE_REMOVED, self._on_membership_changed),
            self.event_bus.subscribe(
                events.INSTANCE_STATUS_CHANGED, self._on_instance_changed
            ),
            self.event_bus.subscribe(events.INSTANCE_UPDATED, self._on_instance_changed),
        ]

        # Services registered before this orchestrator was attached
        for descriptor in self.registry.list_services():
            self._attach(descriptor.service_id, self.registry.get_instances(descriptor.service_id))

    async def start(self) -> None:
        """Start background health monitoring."""
        if self.health_monitor is not None:
            await self.health_monitor.start()

    async def shutdown(self) -> None:
        """Stop monitoring and detach from the registry."""
        if self.health_monitor is not None:
            await self.health_monitor.stop()
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()
        logger.info("orchestrator_shutdown")

    async def register_service(
        self,
        descriptor: ServiceDescriptor,
        instances: Iterable[ServiceInstance] = (),
        algorithm: LoadBalancingAlgorithm | None = None,
    ) -> None:
        """Register a service with its initial instances.

        Args:
            descriptor: Service descriptor
            instances: Initial instances
            algorithm: Instance selection policy for this service

        Raises:
            DuplicateServiceError: If the service id is already registered
        """
        service_id = descriptor.service_id
        added_algorithm = algorithm is not None and not self.registry.contains(service_id)
        if added_algorithm:
            self._algorithms[service_id] = algorithm
        try:
            await self.registry.register(descriptor, instances)
        except Exception:
            if added_algorithm:
                self._algorithms.pop(service_id, None)
            raise

    async def unregister_service(self, service_id: str) -> None:
        """Unregister a service and tear down its routing state.

        Raises:
            ServiceNotFoundError: If the service is not registered
        """
        await self.registry.unregister(service_id)

    def list_services(self) -> RegistrySnapshot:
        """Snapshot of registered services."""
        return self.registry.list_services()

    def get_load_balancer(self, service_id: str) -> LoadBalancer:
        """Get the load balancer for a service.

        Raises:
            ServiceNotFoundError: If the service is not registered
        """
        balancer = self._balancers.get(service_id)
        if balancer is None:
            raise ServiceNotFoundError(service_id)
        return balancer

    def get_circuit_breaker(self, service_id: str) -> CircuitBreaker:
        """Get the circuit breaker for a service.

        Raises:
            ServiceNotFoundError: If the service is not registered
        """
        breaker = self.circuit_breakers.find(service_id)
        if breaker is None:
            raise ServiceNotFoundError(service_id)
        return breaker

    async def call_service(
        self,
        service_id: str,
        action: str,
        params: ActionParams | Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
        bypass_circuit_breaker: bool = False,
    ) -> Any:
        """Route one call to a healthy instance of a service.

        The call is not retried.

        Args:
            service_id: Target service
            action: Action name
            params: Typed params or a mapping
            timeout: Call deadline in seconds, defaults to settings
            bypass_circuit_breaker: Attempt the call even if the circuit is open

        Returns:
            Result returned by the transport

        Raises:
            ServiceNotFoundError: If the service is not registered
            CircuitOpenError: If the circuit rejects the call
            NoHealthyInstanceError: If no instance is running
            ServiceCallError: If the call fails or times out
        """
        balancer = self._balancers.get(service_id)
        if balancer is None or not self.registry.contains(service_id):
            raise ServiceNotFoundError(service_id)

        breaker = self.circuit_breakers.get(service_id)
        permitted = breaker.is_call_permitted(record_rejection=not bypass_circuit_breaker)
        if not permitted and not bypass_circuit_breaker:
            retry_after = breaker.retry_after()
            logger.debug(
                "call_rejected_circuit_open",
                service_id=service_id,
                action=action,
                retry_after=retry_after,
            )
            if self.settings.enable_metrics:
                metrics.record_rejection(service_id)
            raise CircuitOpenError(service_id, retry_after)

        try:
            instance = balancer.select_instance()
        except NoHealthyInstanceError:
            if permitted:
                breaker.release_permit()
            raise

        deadline = timeout if timeout is not None else self.settings.call_timeout_seconds
        request = ActionRequest(
            service_id=service_id,
            instance_id=instance.instance_id,
            action=action,
            params=coerce_params(params),
            timeout_seconds=deadline,
        )

        balancer.record_request_start(instance.instance_id)
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                self.transport.invoke(instance, request), timeout=deadline
            )
        except asyncio.TimeoutError as e:
            breaker.record_failure(holds_permit=permitted)
            self._record_call(service_id, "timeout", started)
            logger.warning(
                "service_call_timeout",
                service_id=service_id,
                instance_id=instance.instance_id,
                action=action,
                timeout=deadline,
            )
            raise ServiceCallTimeoutError(
                service_id, action, deadline, instance.instance_id
            ) from e
        except asyncio.CancelledError:
            if permitted:
                breaker.release_permit()
            raise
        except Exception as e:
            breaker.record_failure(holds_permit=permitted)
            self._record_call(service_id, "failure", started)
            logger.warning(
                "service_call_failed",
                service_id=service_id,
                instance_id=instance.instance_id,
                action=action,
                error=str(e),
            )
            raise ServiceCallError(service_id, action, str(e), instance.instance_id) from e
        finally:
            balancer.record_request_end(instance.instance_id)

        breaker.record_success(holds_permit=permitted)
        self._record_call(service_id, "success", started)
        logger.debug(
            "service_call_succeeded",
            service_id=service_id,
            instance_id=instance.instance_id,
            action=action,
            request_id=request.request_id,
        )
        return result

    async def scale_service(self, service_id: str, target_count: int) -> ScaleResult:
        """Scale a service to a target number of active instances.

        Growth provisions new instances concurrently. Each joins rotation once
        running; one still starting is registered as starting and promoted by
        the health monitor.

        Shrinkage drains excess instances: they leave rotation at once,
        in-flight calls get up to the drain grace period, then the instances
        are stopped and removed.

        Args:
            service_id: Service identifier
            target_count: Desired number of active instances

        Returns:
            Summary of instances added, removed and failed

        Raises:
            ServiceNotFoundError: If the service is not registered
            ScalingError: If growth is needed and no provisioner is configured
            ValueError: If target_count is negative
        """
        if target_count < 0:
            raise ValueError(f"target_count must be >= 0, got {target_count}")

        descriptor = self.registry.get(service_id)
        lock = self._scaling_locks.setdefault(service_id, asyncio.Lock())

        async with lock:
            active = [
                i
                for i in self.registry.get_instances(service_id)
                if i.status not in _LEAVING_STATUSES
            ]
            result = ScaleResult(
                service_id=service_id,
                previous_count=len(active),
                target_count=target_count,
            )

            if target_count > len(active):
                await self._scale_up(descriptor, target_count - len(active), result)
            elif target_count < len(active):
                await self._scale_down(descriptor, active, len(active) - target_count, result)

        logger.info(
            "service_scaled",
            service_id=service_id,
            previous_count=result.previous_count,
            target_count=target_count,
            added=len(result.added),
            removed=len(result.removed),
            failed=len(result.failed),
        )
        return result

    def get_service_health(self, service_id: str) -> HealthReport:
        """Compute the health of a service and its direct dependencies.

        Dependencies are looked up one hop deep only, so dependency cycles
        cannot cause unbounded recursion.

        Raises:
            ServiceNotFoundError: If the service is not registered
        """
        descriptor = self.registry.get(service_id)
        report = self._health_of(service_id)

        for dependency_id in sorted(descriptor.dependencies):
            if not self.registry.contains(dependency_id):
                report.dependencies.append(
                    DependencyHealth(
                        service_id=dependency_id,
                        registered=False,
                        status=HealthStatus.UNKNOWN,
                    )
                )
                continue
            dependency = self._health_of(dependency_id)
            report.dependencies.append(
                DependencyHealth(
                    service_id=dependency_id,
                    registered=True,
                    status=dependency.status,
                    healthy_ratio=dependency.healthy_ratio,
                    circuit_state=dependency.circuit_state,
                )
            )

        if report.status == HealthStatus.HEALTHY and any(
            d.status != HealthStatus.HEALTHY for d in report.dependencies
        ):
            report.status = HealthStatus.DEGRADED

        return report

    def _health_of(self, service_id: str) -> HealthReport:
        """Health of one service, ignoring its dependencies."""
        instances = self.registry.get_instances(service_id)
        counts = self.registry.instance_counts(service_id)
        considered = [i for i in instances if i.status not in _LEAVING_STATUSES]
        running = sum(1 for i in considered if i.is_running)
        ratio = running / len(considered) if considered else 0.0

        breaker = self.circuit_breakers.find(service_id)
        circuit_state = breaker.get_state() if breaker else CircuitState.CLOSED
        failure_rate = breaker.failure_rate() if breaker else 0.0

        if not instances:
            status = HealthStatus.UNKNOWN
        elif running == 0 or circuit_state == CircuitState.OPEN:
            status = HealthStatus.UNHEALTHY
        elif running < len(considered) or circuit_state == CircuitState.HALF_OPEN:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY

        return HealthReport(
            service_id=service_id,
            status=status,
            total_instances=len(instances),
            instance_counts=counts,
            healthy_ratio=ratio,
            circuit_state=circuit_state,
            failure_rate=failure_rate,
        )

    async def _scale_up(
        self, descriptor: ServiceDescriptor, count: int, result: ScaleResult
    ) -> None:
        if self.provisioner is None:
            raise ScalingError(
                f"Cannot scale up {descriptor.service_id}: no provisioner configured"
            )

        outcomes = await asyncio.gather(
            *(self._provision(descriptor) for _ in range(count))
        )
        for instance_id, ok in outcomes:
            (result.added if ok else result.failed).append(instance_id)

    async def _provision(self, descriptor: ServiceDescriptor) -> tuple[str, bool]:
        """Start one instance and register it with its reported status."""
        assert self.provisioner is not None
        instance = ServiceInstance(
            instance_id=f"{descriptor.service_id}-{uuid4().hex[:8]}",
            service_id=descriptor.service_id,
            status=InstanceStatus.STARTING,
        )

        try:
            started = await self.provisioner.start(descriptor, instance)
        except Exception as e:
            logger.warning(
                "instance_provision_failed",
                service_id=descriptor.service_id,
                instance_id=instance.instance_id,
                error=str(e),
            )
            return instance.instance_id, False

        if started.status not in (InstanceStatus.STARTING, InstanceStatus.RUNNING):
            logger.warning(
                "instance_not_running_after_start",
                service_id=descriptor.service_id,
                instance_id=started.instance_id,
                status=started.status.value,
            )
            return started.instance_id, False

        update: dict[str, Any] = {"service_id": descriptor.service_id}
        if started.status == InstanceStatus.RUNNING:
            update["last_heartbeat"] = datetime.now(UTC)
        else:
            # Kept out of rotation until a health probe promotes it
            logger.info(
                "instance_registered_starting",
                service_id=descriptor.service_id,
                instance_id=started.instance_id,
            )
        added = started.model_copy(update=update)

        try:
            await self.registry.add_instance(descriptor.service_id, added)
        except Exception as e:
            logger.warning(
                "instance_registration_failed",
                service_id=descriptor.service_id,
                instance_id=added.instance_id,
                error=str(e),
            )
            return added.instance_id, False
        return added.instance_id, True

    async def _scale_down(
        self,
        descriptor: ServiceDescriptor,
        active: list[ServiceInstance],
        count: int,
        result: ScaleResult,
    ) -> None:
        # Non-running instances go first, then the most recently added
        ordered = sorted(enumerate(active), key=lambda p: (p[1].is_running, -p[0]))
        victims = [instance for _, instance in ordered[:count]]

        # Phase 1: out of rotation immediately
        for instance in victims:
            await self.registry.set_instance_status(
                descriptor.service_id, instance.instance_id, InstanceStatus.DRAINING
            )

        # Phase 2: wait for in-flight calls, then stop and remove
        outcomes = await asyncio.gather(
            *(self._drain(descriptor, instance) for instance in victims)
        )
        for instance_id, ok in outcomes:
            (result.removed if ok else result.failed).append(instance_id)

    async def _drain(
        self, descriptor: ServiceDescriptor, instance: ServiceInstance
    ) -> tuple[str, bool]:
        """Wait out in-flight calls on a draining instance, then remove it."""
        service_id = descriptor.service_id
        balancer = self._balancers.get(service_id)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.drain_grace_seconds

        while balancer is not None and balancer.in_flight(instance.instance_id) > 0:
            if loop.time() >= deadline:
                logger.warning(
                    "drain_grace_expired",
                    service_id=service_id,
                    instance_id=instance.instance_id,
                    in_flight=balancer.in_flight(instance.instance_id),
                )
                break
            await asyncio.sleep(self.settings.drain_poll_interval_seconds)

        if self.provisioner is not None:
            try:
                await self.provisioner.stop(descriptor, instance)
            except Exception as e:
                # Left draining: out of rotation and not probed
                logger.warning(
                    "instance_stop_failed",
                    service_id=service_id,
                    instance_id=instance.instance_id,
                    error=str(e),
                )
                return instance.instance_id, False

        await self.registry.set_instance_status(
            service_id, instance.instance_id, InstanceStatus.STOPPED
        )
        await self.registry.remove_instance(service_id, instance.instance_id)
        return instance.instance_id, True

    def _attach(self, service_id: str, instances: Iterable[ServiceInstance]) -> None:
        algorithm = self._algorithms.get(
            service_id, self.settings.load_balancing_algorithm
        )
        self._balancers[service_id] = LoadBalancer(service_id, instances, algorithm)
        self.circuit_breakers.get(service_id)
        self._record_instances(service_id)

    def _on_service_registered(self, event: Event) -> None:
        self._attach(event.payload["service_id"], event.payload["instances"])

    def _on_service_unregistered(self, event: Event) -> None:
        service_id = event.payload["service_id"]
        self._balancers.pop(service_id, None)
        self._algorithms.pop(service_id, None)
        self._scaling_locks.pop(service_id, None)
        self.circuit_breakers.remove(service_id)
        logger.info("routing_state_removed", service_id=service_id)

    def _on_membership_changed(self, event: Event) -> None:
        service_id = event.payload["service_id"]
        balancer = self._balancers.get(service_id)
        if balancer is not None:
            balancer.update_instances(event.payload["instances"])
        self._record_instances(service_id)

    def _on_instance_changed(self, event: Event) -> None:
        service_id = event.payload["service_id"]
        balancer = self._balancers.get(service_id)
        if balancer is not None:
            balancer.update_instance(event.payload["instance"])
        self._record_instances(service_id)

    def _on_circuit_state_change(self, service_id: str, state: CircuitState) -> None:
        if self.settings.enable_metrics:
            metrics.record_circuit_state(service_id, state.value)

    def _record_call(self, service_id: str, outcome: str, started: float) -> None:
        if self.settings.enable_metrics:
            metrics.record_call(service_id, outcome, time.perf_counter() - started)

    def _record_instances(self, service_id: str) -> None:
        if not self.settings.enable_metrics or not self.registry.contains(service_id):
            return
        counts = self.registry.instance_counts(service_id)
        metrics.record_instance_counts(
            service_id, {status.value: counts.get(status, 0) for status in InstanceStatus}
        )
