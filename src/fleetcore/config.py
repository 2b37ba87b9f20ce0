"""
Orchestration Core Configuration

Environment-based configuration for routing, circuit breaking, health
monitoring and workflow execution.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from fleetcore.models import LoadBalancingAlgorithm


class CircuitBreakerConfig(BaseModel):
    """Circuit breaker configuration."""

    failure_threshold: int = Field(
        default=5, ge=1, description="Consecutive failures before opening"
    )
    required_successes: int = Field(
        default=3, ge=1, description="Half-open successes before closing"
    )
    reset_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Open duration before a trial call"
    )
    half_open_max_calls: int = Field(
        default=1, ge=1, description="Concurrent trial calls allowed in half-open"
    )


class HealthCheckConfig(BaseModel):
    """Health probe configuration."""

    interval_seconds: float = Field(default=10.0, gt=0, description="Probe cycle interval")
    probe_timeout_seconds: float = Field(
        default=5.0, gt=0, description="Deadline for a single probe"
    )
    healthy_threshold: int = Field(
        default=1, ge=1, description="Consecutive successes to mark running"
    )
    unhealthy_threshold: int = Field(
        default=1, ge=1, description="Consecutive failures to mark errored"
    )


class OrchestratorSettings(BaseSettings):
    """Orchestrator settings loaded from ``FLEETCORE_*`` environment variables.

    Nested values use a double underscore, e.g.
    ``FLEETCORE_CIRCUIT_BREAKER__FAILURE_THRESHOLD=3``.
    """

    model_config = SettingsConfigDict(
        env_prefix="FLEETCORE_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    call_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Default deadline for a remote call"
    )
    drain_grace_seconds: float = Field(
        default=30.0, ge=0, description="Max wait for in-flight calls when draining"
    )
    drain_poll_interval_seconds: float = Field(
        default=0.1, gt=0, description="In-flight check interval while draining"
    )
    load_balancing_algorithm: LoadBalancingAlgorithm = Field(
        default=LoadBalancingAlgorithm.ROUND_ROBIN,
        description="Instance selection policy for new services",
    )
    enable_metrics: bool = Field(default=True, description="Record Prometheus metrics")

    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    health_check: HealthCheckConfig = Field(default_factory=HealthCheckConfig)


class WorkflowSettings(BaseSettings):
    """Workflow engine settings loaded from ``FLEETCORE_WORKFLOW_*`` variables."""

    model_config = SettingsConfigDict(
        env_prefix="FLEETCORE_WORKFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    default_step_timeout_seconds: float = Field(default=30.0, gt=0)
    default_max_retries: int = Field(default=3, ge=0)
    retry_base_delay_seconds: float = Field(
        default=1.0, ge=0, description="First backoff delay; doubles per attempt"
    )
    retry_max_delay_seconds: float = Field(default=60.0, ge=0)
    compensation_timeout_seconds: float = Field(default=30.0, gt=0)
    compensation_bypass_circuit_breaker: bool = Field(
        default=False,
        description="Attempt compensations even when the target circuit is open",
    )


@lru_cache
def get_settings() -> OrchestratorSettings:
    """Get cached orchestrator settings."""
    return OrchestratorSettings()


@lru_cache
def get_workflow_settings() -> WorkflowSettings:
    """Get cached workflow settings."""
    return WorkflowSettings()
