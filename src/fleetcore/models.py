"""
Orchestration Core Models

Data models for service registration, instance tracking, call routing and
health reporting.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, SerializeAsAny


class InstanceStatus(str, Enum):
    """Operational status of a service instance."""

    STARTING = "starting"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"
    ERRORED = "errored"


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Service is failing, reject calls
    HALF_OPEN = "half_open"  # Testing if service recovered


class HealthStatus(str, Enum):
    """Computed health of a service."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class ProbeResult(str, Enum):
    """Outcome of a single health probe."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class LoadBalancingAlgorithm(str, Enum):
    """Instance selection policies."""

    ROUND_ROBIN = "round_robin"
    RANDOM = "random"
    LEAST_LOAD = "least_load"


class ResourceUsage(BaseModel):
    """Advisory resource snapshot reported for an instance."""

    model_config = ConfigDict(frozen=True)

    cpu_percent: float = Field(default=0.0, ge=0.0, le=100.0)
    memory_percent: float = Field(default=0.0, ge=0.0, le=100.0)

    @property
    def load(self) -> float:
        """Estimated load as the busier of the two resources."""
        return max(self.cpu_percent, self.memory_percent)


class ServiceDescriptor(BaseModel):
    """Declared identity of a logical service."""

    model_config = ConfigDict(frozen=True)

    service_id: str = Field(..., min_length=1, description="Unique service identifier")
    name: str = Field(..., description="Service name")
    version: str = Field(default="0.0.0", description="Service version")
    dependencies: frozenset[str] = Field(
        default_factory=frozenset, description="Service ids this service calls"
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict, description="Tags, environment, region, etc."
    )


class ServiceInstance(BaseModel):
    """A running copy of a service, owned by the registry.

    Instances are immutable values; the registry swaps in updated copies.
    """

    model_config = ConfigDict(frozen=True)

    instance_id: str = Field(..., min_length=1)
    service_id: str = Field(..., min_length=1)
    endpoint: str = Field(default="", description="Network endpoint")
    status: InstanceStatus = InstanceStatus.STARTING
    last_heartbeat: datetime | None = None
    resource_usage: ResourceUsage = Field(default_factory=ResourceUsage)

    @property
    def is_running(self) -> bool:
        """Check if instance can receive calls."""
        return self.status == InstanceStatus.RUNNING


class ActionParams(BaseModel):
    """Base class for typed action parameter structs.

    Subclass per action to declare its parameters. Plain mappings are
    accepted wherever params are expected and become an ``ActionParams``
    carrying the keys as extra fields.
    """

    model_config = ConfigDict(extra="allow", frozen=True)


def coerce_params(params: ActionParams | Mapping[str, Any] | None) -> ActionParams:
    """Normalize caller-supplied params into an ``ActionParams`` model."""
    if params is None:
        return ActionParams()
    if isinstance(params, ActionParams):
        return params
    return ActionParams.model_validate(dict(params))


class ActionRequest(BaseModel):
    """A routed call as handed to the transport."""

    model_config = ConfigDict(frozen=True)

    request_id: str = Field(default_factory=lambda: uuid4().hex)
    service_id: str
    instance_id: str
    action: str
    params: SerializeAsAny[ActionParams] = Field(default_factory=ActionParams)
    timeout_seconds: float

    def payload(self) -> dict[str, Any]:
        """Serialize params for the wire."""
        return self.params.model_dump(mode="json")


class DependencyHealth(BaseModel):
    """One-hop health view of a declared dependency."""

    service_id: str
    registered: bool
    status: HealthStatus
    healthy_ratio: float = 0.0
    circuit_state: CircuitState | None = None


class HealthReport(BaseModel):
    """Computed health of a service."""

    service_id: str
    status: HealthStatus
    total_instances: int = 0
    instance_counts: dict[InstanceStatus, int] = Field(default_factory=dict)
    healthy_ratio: float = 0.0
    circuit_state: CircuitState = CircuitState.CLOSED
    failure_rate: float = 0.0
    dependencies: list[DependencyHealth] = Field(default_factory=list)
    checked_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ScaleResult(BaseModel):
    """Outcome of a scaling operation."""

    service_id: str
    previous_count: int
    target_count: int
    added: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
