"""
FleetCore

Process-local orchestration core for a fleet of microservices: service
registry, load balancing, circuit breaking, health monitoring and saga
workflows.
"""

from fleetcore.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from fleetcore.config import (
    CircuitBreakerConfig,
    HealthCheckConfig,
    OrchestratorSettings,
    WorkflowSettings,
)
from fleetcore.events import Event, EventBus, Subscription
from fleetcore.exceptions import (
    CircuitOpenError,
    CompensationFailure,
    DuplicateInstanceError,
    DuplicateServiceError,
    FleetCoreError,
    InstanceNotFoundError,
    NoHealthyInstanceError,
    NotFoundError,
    ScalingError,
    ServiceCallError,
    ServiceCallTimeoutError,
    ServiceNotFoundError,
    WorkflowNotFoundError,
    WorkflowStepFailure,
)
from fleetcore.health_monitor import HealthMonitor
from fleetcore.load_balancer import LoadBalancer
from fleetcore.models import (
    ActionParams,
    ActionRequest,
    CircuitState,
    HealthReport,
    HealthStatus,
    InstanceStatus,
    LoadBalancingAlgorithm,
    ProbeResult,
    ResourceUsage,
    ScaleResult,
    ServiceDescriptor,
    ServiceInstance,
)
from fleetcore.orchestrator import Orchestrator
from fleetcore.service_registry import RegistrySnapshot, ServiceRegistry

__version__ = "0.1.0"

__all__ = [
    "ActionParams",
    "ActionRequest",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitOpenError",
    "CircuitState",
    "CompensationFailure",
    "DuplicateInstanceError",
    "DuplicateServiceError",
    "Event",
    "EventBus",
    "FleetCoreError",
    "HealthCheckConfig",
    "HealthMonitor",
    "HealthReport",
    "HealthStatus",
    "InstanceNotFoundError",
    "InstanceStatus",
    "LoadBalancer",
    "LoadBalancingAlgorithm",
    "NoHealthyInstanceError",
    "NotFoundError",
    "Orchestrator",
    "OrchestratorSettings",
    "ProbeResult",
    "RegistrySnapshot",
    "ResourceUsage",
    "ScaleResult",
    "ScalingError",
    "ServiceCallError",
    "ServiceCallTimeoutError",
    "ServiceDescriptor",
    "ServiceInstance",
    "ServiceNotFoundError",
    "ServiceRegistry",
    "Subscription",
    "WorkflowNotFoundError",
    "WorkflowSettings",
    "WorkflowStepFailure",
]
