"""
External Collaborators

Protocols for the transport, health probe and provisioning mechanisms the
orchestration core consumes but does not implement.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

from fleetcore.models import (
    ActionRequest,
    ProbeResult,
    ServiceDescriptor,
    ServiceInstance,
)


@runtime_checkable
class ServiceTransport(Protocol):
    """Delivers an action request to a service instance."""

    async def invoke(self, instance: ServiceInstance, request: ActionRequest) -> Any:
        """Invoke the action on the instance and return its result.

        Any exception is treated as a call failure.
        """
        ...


@runtime_checkable
class InstanceProvisioner(Protocol):
    """Starts and stops service instances."""

    async def start(
        self, service: ServiceDescriptor, instance: ServiceInstance
    ) -> ServiceInstance:
        """Start a synthesized instance.

        Returns:
            The started instance, typically with its endpoint filled in
        """
        ...

    async def stop(self, service: ServiceDescriptor, instance: ServiceInstance) -> None:
        """Stop and release an instance."""
        ...


HealthProbe = Callable[[ServiceInstance], Awaitable[ProbeResult | bool]]
