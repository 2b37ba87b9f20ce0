"""Orchestration core exceptions.

Exception hierarchy for registry lookups, routing, circuit breaking and
workflow execution failures.
"""

from __future__ import annotations


class FleetCoreError(Exception):
    """Base exception for all orchestration core errors."""

    def __init__(self, message: str) -> None:
        """Initialize the exception.

        Args:
            message: Error message describing what went wrong
        """
        self.message = message
        super().__init__(message)


class NotFoundError(FleetCoreError):
    """A service or instance is not registered."""


class ServiceNotFoundError(NotFoundError):
    """Service not found in the registry."""

    def __init__(self, service_id: str) -> None:
        super().__init__(f"Service not found: {service_id}")
        self.service_id = service_id


class InstanceNotFoundError(NotFoundError):
    """Instance not found for a registered service."""

    def __init__(self, service_id: str, instance_id: str) -> None:
        super().__init__(f"Instance not found: {service_id}/{instance_id}")
        self.service_id = service_id
        self.instance_id = instance_id


class DuplicateServiceError(FleetCoreError):
    """Service id is already registered."""

    def __init__(self, service_id: str) -> None:
        super().__init__(f"Service already registered: {service_id}")
        self.service_id = service_id


class DuplicateInstanceError(FleetCoreError):
    """Instance id is already registered for the service."""

    def __init__(self, service_id: str, instance_id: str) -> None:
        super().__init__(f"Instance already registered: {service_id}/{instance_id}")
        self.service_id = service_id
        self.instance_id = instance_id


class CircuitOpenError(FleetCoreError):
    """Raised when the circuit breaker for a service rejects a call."""

    def __init__(self, service_id: str, retry_after: float) -> None:
        """Initialize circuit open error.

        Args:
            service_id: Service identifier
            retry_after: Seconds until a trial call is allowed
        """
        super().__init__(
            f"Circuit breaker is open for service '{service_id}'. "
            f"Retry after {retry_after:.1f} seconds."
        )
        self.service_id = service_id
        self.retry_after = retry_after


class NoHealthyInstanceError(FleetCoreError):
    """No running instance is available for the service."""

    def __init__(self, service_id: str) -> None:
        super().__init__(f"No healthy instance available for service: {service_id}")
        self.service_id = service_id


class ServiceCallError(FleetCoreError):
    """A remote call to a service instance failed.

    The underlying transport exception is chained as ``__cause__``.
    """

    def __init__(
        self,
        service_id: str,
        action: str,
        reason: str,
        instance_id: str | None = None,
    ) -> None:
        """Initialize the call error.

        Args:
            service_id: Target service
            action: Action that was invoked
            reason: Description of the failure
            instance_id: Instance the call was routed to, if any
        """
        super().__init__(f"Call to {service_id}.{action} failed: {reason}")
        self.service_id = service_id
        self.action = action
        self.reason = reason
        self.instance_id = instance_id


class ServiceCallTimeoutError(ServiceCallError):
    """A remote call exceeded its deadline."""

    def __init__(
        self,
        service_id: str,
        action: str,
        timeout: float,
        instance_id: str | None = None,
    ) -> None:
        super().__init__(
            service_id, action, f"timed out after {timeout:.2f}s", instance_id
        )
        self.timeout = timeout


class ScalingError(FleetCoreError):
    """Scaling cannot be performed."""


class WorkflowNotFoundError(FleetCoreError):
    """No workflow is tracked for the given handle."""

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow not found: {workflow_id}")
        self.workflow_id = workflow_id


class WorkflowStepFailure(FleetCoreError):
    """A workflow step failed terminally after exhausting its retries."""

    def __init__(self, step_name: str, attempts: int, reason: str) -> None:
        super().__init__(
            f"Step '{step_name}' failed after {attempts} attempt(s): {reason}"
        )
        self.step_name = step_name
        self.attempts = attempts
        self.reason = reason


class CompensationFailure(FleetCoreError):
    """A compensating action failed. Recorded, never fatal."""

    def __init__(self, step_name: str, reason: str) -> None:
        super().__init__(f"Compensation for step '{step_name}' failed: {reason}")
        self.step_name = step_name
        self.reason = reason
