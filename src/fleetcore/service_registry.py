"""
Service Registry

In-memory catalog of declared services and their instances. Pure
bookkeeping: no network calls and no blocking I/O.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Collection, Iterable, Iterator
from datetime import datetime

import structlog

from fleetcore import events
from fleetcore.events import EventBus
from fleetcore.exceptions import (
    DuplicateInstanceError,
    DuplicateServiceError,
    InstanceNotFoundError,
    ServiceNotFoundError,
)
from fleetcore.models import (
    InstanceStatus,
    ResourceUsage,
    ServiceDescriptor,
    ServiceInstance,
)

logger = structlog.get_logger(__name__)


class RegistrySnapshot:
    """Point-in-time view of the registry.

    Iteration is lazy and restartable: every ``iter()`` starts over the
    same frozen contents, regardless of registry changes made after the
    snapshot was taken.
    """

    def __init__(
        self,
        services: tuple[ServiceDescriptor, ...],
        instances: dict[str, tuple[ServiceInstance, ...]],
    ) -> None:
        self._services = services
        self._instances = instances

    def __iter__(self) -> Iterator[ServiceDescriptor]:
        return iter(self._services)

    def __len__(self) -> int:
        return len(self._services)

    def __contains__(self, service_id: object) -> bool:
        return any(s.service_id == service_id for s in self._services)

    def instances(self, service_id: str) -> tuple[ServiceInstance, ...]:
        """Instances of a service as they were when the snapshot was taken."""
        return self._instances.get(service_id, ())


class ServiceRegistry:
    """Registry for services and their instances.

    Mutations of one service's instance list are serialized by a
    per-service lock; register/unregister are serialized registry-wide.
    Every mutation swaps in a new tuple, so readers always see a complete
    list.
    """

    def __init__(self, event_bus: EventBus | None = None) -> None:
        """Initialize service registry.

        Args:
            event_bus: Bus receiving registry change notifications
        """
        self.event_bus = event_bus or EventBus()
        self._services: dict[str, ServiceDescriptor] = {}
        self._instances: dict[str, tuple[ServiceInstance, ...]] = {}
        self._service_locks: dict[str, asyncio.Lock] = {}
        self._lock = asyncio.Lock()

    async def register(
        self,
        descriptor: ServiceDescriptor,
        instances: Iterable[ServiceInstance] = (),
    ) -> None:
        """Register a service with optional initial instances.

        Args:
            descriptor: Service descriptor
            instances: Initial instances, all owned by ``descriptor``

        Raises:
            DuplicateServiceError: If the service id is already registered
            DuplicateInstanceError: If two initial instances share an id
            ValueError: If an instance belongs to another service
        """
        initial = tuple(instances)
        seen: set[str] = set()
        for instance in initial:
            self._check_owner(descriptor.service_id, instance)
            if instance.instance_id in seen:
                raise DuplicateInstanceError(descriptor.service_id, instance.instance_id)
            seen.add(instance.instance_id)

        async with self._lock:
            if descriptor.service_id in self._services:
                raise DuplicateServiceError(descriptor.service_id)

            self._services[descriptor.service_id] = descriptor
            self._instances[descriptor.service_id] = initial
            self._service_locks[descriptor.service_id] = asyncio.Lock()

        logger.info(
            "service_registered",
            service_id=descriptor.service_id,
            name=descriptor.name,
            version=descriptor.version,
            instance_count=len(initial),
        )
        self.event_bus.publish(
            events.SERVICE_REGISTERED,
            service_id=descriptor.service_id,
            descriptor=descriptor,
            instances=initial,
        )

    async def unregister(self, service_id: str) -> None:
        """Unregister a service and remove all of its instances.

        Args:
            service_id: Service identifier

        Raises:
            ServiceNotFoundError: If the service is not registered
        """
        async with self._lock:
            service_lock = self._service_locks.get(service_id)
            if service_lock is None:
                raise ServiceNotFoundError(service_id)

            # Wait for any in-progress instance mutation to finish
            async with service_lock:
                descriptor = self._services.pop(service_id)
                removed = self._instances.pop(service_id, ())
                del self._service_locks[service_id]

        logger.info(
            "service_unregistered",
            service_id=service_id,
            name=descriptor.name,
            removed_instances=len(removed),
        )
        self.event_bus.publish(
            events.SERVICE_UNREGISTERED,
            service_id=service_id,
            descriptor=descriptor,
            instances=removed,
        )

    async def add_instance(self, service_id: str, instance: ServiceInstance) -> None:
        """Add an instance to a registered service.

        Raises:
            ServiceNotFoundError: If the service is not registered
            DuplicateInstanceError: If the instance id already exists
            ValueError: If the instance belongs to another service
        """
        self._check_owner(service_id, instance)

        async with self._locked(service_id):
            current = self._instances[service_id]
            if any(i.instance_id == instance.instance_id for i in current):
                raise DuplicateInstanceError(service_id, instance.instance_id)
            updated = (*current, instance)
            self._instances[service_id] = updated

        logger.info(
            "instance_added",
            service_id=service_id,
            instance_id=instance.instance_id,
            endpoint=instance.endpoint,
            status=instance.status.value,
        )
        self.event_bus.publish(
            events.INSTANCE_ADDED,
            service_id=service_id,
            instance=instance,
            instances=updated,
        )

    async def remove_instance(self, service_id: str, instance_id: str) -> ServiceInstance:
        """Remove an instance from a service.

        Returns:
            The removed instance

        Raises:
            ServiceNotFoundError: If the service is not registered
            InstanceNotFoundError: If the instance is not registered
        """
        async with self._locked(service_id):
            current = self._instances[service_id]
            removed = self._find(service_id, instance_id, current)
            updated = tuple(i for i in current if i.instance_id != instance_id)
            self._instances[service_id] = updated

        logger.info("instance_removed", service_id=service_id, instance_id=instance_id)
        self.event_bus.publish(
            events.INSTANCE_REMOVED,
            service_id=service_id,
            instance=removed,
            instances=updated,
        )
        return removed

    async def set_instance_status(
        self,
        service_id: str,
        instance_id: str,
        status: InstanceStatus,
        heartbeat: datetime | None = None,
        only_from: Collection[InstanceStatus] | None = None,
    ) -> ServiceInstance:
        """Update an instance's operational status.

        Args:
            service_id: Service identifier
            instance_id: Instance identifier
            status: New status
            heartbeat: Heartbeat timestamp to record, if any
            only_from: Apply only if the current status is one of these

        Returns:
            The updated instance, or the unchanged one if ``only_from``
            did not match

        Raises:
            ServiceNotFoundError: If the service is not registered
            InstanceNotFoundError: If the instance is not registered
        """
        async with self._locked(service_id):
            current = self._find(service_id, instance_id, self._instances[service_id])
            if only_from is not None and current.status not in only_from:
                return current
            changes: dict[str, object] = {"status": status}
            if heartbeat is not None:
                changes["last_heartbeat"] = heartbeat
            updated = current.model_copy(update=changes)
            self._replace(service_id, updated)

        if current.status != status:
            logger.info(
                "instance_status_changed",
                service_id=service_id,
                instance_id=instance_id,
                previous=current.status.value,
                status=status.value,
            )
            self.event_bus.publish(
                events.INSTANCE_STATUS_CHANGED,
                service_id=service_id,
                instance=updated,
                previous=current.status,
            )
        return updated

    async def update_resource_usage(
        self, service_id: str, instance_id: str, usage: ResourceUsage
    ) -> ServiceInstance:
        """Record an advisory resource snapshot for an instance.

        Raises:
            ServiceNotFoundError: If the service is not registered
            InstanceNotFoundError: If the instance is not registered
        """
        async with self._locked(service_id):
            current = self._find(service_id, instance_id, self._instances[service_id])
            updated = current.model_copy(update={"resource_usage": usage})
            self._replace(service_id, updated)

        self.event_bus.publish(
            events.INSTANCE_UPDATED, service_id=service_id, instance=updated
        )
        return updated

    def get(self, service_id: str) -> ServiceDescriptor:
        """Get a service descriptor.

        Raises:
            ServiceNotFoundError: If the service is not registered
        """
        descriptor = self._services.get(service_id)
        if descriptor is None:
            raise ServiceNotFoundError(service_id)
        return descriptor

    def contains(self, service_id: str) -> bool:
        """Check if a service is registered."""
        return service_id in self._services

    def get_instances(self, service_id: str) -> tuple[ServiceInstance, ...]:
        """Get the current instances of a service.

        Raises:
            ServiceNotFoundError: If the service is not registered
        """
        instances = self._instances.get(service_id)
        if instances is None:
            raise ServiceNotFoundError(service_id)
        return instances

    def get_instance(self, service_id: str, instance_id: str) -> ServiceInstance:
        """Get a single instance.

        Raises:
            ServiceNotFoundError: If the service is not registered
            InstanceNotFoundError: If the instance is not registered
        """
        return self._find(service_id, instance_id, self.get_instances(service_id))

    def all_instances(self) -> list[ServiceInstance]:
        """Get every instance of every registered service."""
        return [i for instances in list(self._instances.values()) for i in instances]

    def instance_counts(self, service_id: str) -> dict[InstanceStatus, int]:
        """Count a service's instances by status."""
        return dict(Counter(i.status for i in self.get_instances(service_id)))

    def list_services(self) -> RegistrySnapshot:
        """Take a snapshot of all registered services.

        Returns:
            Lazy, restartable snapshot unaffected by later mutation
        """
        return RegistrySnapshot(tuple(self._services.values()), dict(self._instances))

    def __len__(self) -> int:
        """Get number of registered services."""
        return len(self._services)

    def _locked(self, service_id: str) -> _ServiceLock:
        return _ServiceLock(self, service_id)

    def _replace(self, service_id: str, instance: ServiceInstance) -> None:
        self._instances[service_id] = tuple(
            instance if i.instance_id == instance.instance_id else i
            for i in self._instances[service_id]
        )

    @staticmethod
    def _find(
        service_id: str, instance_id: str, instances: tuple[ServiceInstance, ...]
    ) -> ServiceInstance:
        for instance in instances:
            if instance.instance_id == instance_id:
                return instance
        raise InstanceNotFoundError(service_id, instance_id)

    @staticmethod
    def _check_owner(service_id: str, instance: ServiceInstance) -> None:
        if instance.service_id != service_id:
            raise ValueError(
                f"Instance {instance.instance_id} belongs to "
                f"{instance.service_id}, not {service_id}"
            )


class _ServiceLock:
    """Acquire a service's writer lock, failing if the service is gone."""

    def __init__(self, registry: ServiceRegistry, service_id: str) -> None:
        self._registry = registry
        self._service_id = service_id
        self._lock: asyncio.Lock | None = None

    async def __aenter__(self) -> None:
        lock = self._registry._service_locks.get(self._service_id)
        if lock is None:
            raise ServiceNotFoundError(self._service_id)
        await lock.acquire()
        # Service may have been unregistered while we waited
        if self._registry._service_locks.get(self._service_id) is not lock:
            lock.release()
            raise ServiceNotFoundError(self._service_id)
        self._lock = lock

    async def __aexit__(self, *exc_info: object) -> None:
        if self._lock is not None:
            self._lock.release()
            self._lock = None
