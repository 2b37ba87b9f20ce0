"""
Prometheus Metrics

Metrics for service calls, circuit breakers, instance fleet and workflow
execution. Collectors live on a package-owned registry so repeated imports
and test runs never collide with the process default registry.
"""

from __future__ import annotations

from typing import Any

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

REGISTRY = CollectorRegistry()

_metrics_cache: dict[str, Any] = {}

_CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


def _get_or_create_counter(
    name: str, documentation: str, labelnames: list[str] | None = None
) -> Counter:
    """Get existing Counter metric or create new one."""
    if name not in _metrics_cache:
        _metrics_cache[name] = Counter(
            name, documentation, labelnames or [], registry=REGISTRY
        )
    return _metrics_cache[name]


def _get_or_create_gauge(
    name: str, documentation: str, labelnames: list[str] | None = None
) -> Gauge:
    """Get existing Gauge metric or create new one."""
    if name not in _metrics_cache:
        _metrics_cache[name] = Gauge(
            name, documentation, labelnames or [], registry=REGISTRY
        )
    return _metrics_cache[name]


def _get_or_create_histogram(
    name: str,
    documentation: str,
    labelnames: list[str] | None = None,
    buckets: tuple[float, ...] | None = None,
) -> Histogram:
    """Get existing Histogram metric or create new one."""
    if name not in _metrics_cache:
        kwargs: dict[str, Any] = {"registry": REGISTRY}
        if buckets:
            kwargs["buckets"] = buckets
        _metrics_cache[name] = Histogram(
            name, documentation, labelnames or [], **kwargs
        )
    return _metrics_cache[name]


service_calls_total = _get_or_create_counter(
    "fleetcore_service_calls_total",
    "Total routed service calls",
    ["service_id", "outcome"],
)

service_call_duration_seconds = _get_or_create_histogram(
    "fleetcore_service_call_duration_seconds",
    "Routed service call latency in seconds",
    ["service_id"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

circuit_breaker_state = _get_or_create_gauge(
    "fleetcore_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=half_open, 2=open)",
    ["service_id"],
)

circuit_breaker_rejections_total = _get_or_create_counter(
    "fleetcore_circuit_breaker_rejections_total",
    "Calls rejected by an open circuit breaker",
    ["service_id"],
)

service_instances = _get_or_create_gauge(
    "fleetcore_service_instances",
    "Registered instances by status",
    ["service_id", "status"],
)

workflows_total = _get_or_create_counter(
    "fleetcore_workflows_total",
    "Workflows finished by terminal status",
    ["status"],
)

compensations_total = _get_or_create_counter(
    "fleetcore_compensations_total",
    "Compensating actions attempted by outcome",
    ["outcome"],
)


def record_call(service_id: str, outcome: str, duration_seconds: float) -> None:
    """Record a routed call outcome and latency."""
    service_calls_total.labels(service_id=service_id, outcome=outcome).inc()
    service_call_duration_seconds.labels(service_id=service_id).observe(
        duration_seconds
    )


def record_circuit_state(service_id: str, state: str) -> None:
    """Record current circuit state for a service."""
    circuit_breaker_state.labels(service_id=service_id).set(
        _CIRCUIT_STATE_VALUES.get(state, 0)
    )


def record_rejection(service_id: str) -> None:
    """Record a call rejected by an open circuit."""
    circuit_breaker_rejections_total.labels(service_id=service_id).inc()


def record_instance_counts(service_id: str, counts: dict[str, int]) -> None:
    """Record instance counts by status for a service."""
    for status, count in counts.items():
        service_instances.labels(service_id=service_id, status=status).set(count)


def record_workflow(status: str) -> None:
    """Record a finished workflow."""
    workflows_total.labels(status=status).inc()


def record_compensation(outcome: str) -> None:
    """Record a compensation attempt."""
    compensations_total.labels(outcome=outcome).inc()
