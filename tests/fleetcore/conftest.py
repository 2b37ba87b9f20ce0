"""
Pytest configuration for orchestration core tests.

Provides in-memory collaborators, a manual clock and settings tuned for
fast tests.
"""

from __future__ import annotations

import pytest

from fleetcore.config import (
    CircuitBreakerConfig,
    HealthCheckConfig,
    OrchestratorSettings,
    WorkflowSettings,
)
from tests.fleetcore.fakes import FakeClock, FakeProbe, FakeProvisioner, FakeTransport


@pytest.fixture
def clock() -> FakeClock:
    """Create a manual clock."""
    return FakeClock()


@pytest.fixture
def transport() -> FakeTransport:
    """Create a scripted transport."""
    return FakeTransport()


@pytest.fixture
def provisioner() -> FakeProvisioner:
    """Create an instant provisioner."""
    return FakeProvisioner()


@pytest.fixture
def probe() -> FakeProbe:
    """Create a scripted health probe."""
    return FakeProbe()


@pytest.fixture
def settings() -> OrchestratorSettings:
    """Create orchestrator settings with short deadlines."""
    return OrchestratorSettings(
        call_timeout_seconds=1.0,
        drain_grace_seconds=0.5,
        drain_poll_interval_seconds=0.01,
        circuit_breaker=CircuitBreakerConfig(
            failure_threshold=2,
            required_successes=1,
            reset_timeout_seconds=30.0,
            half_open_max_calls=1,
        ),
        health_check=HealthCheckConfig(interval_seconds=0.05, probe_timeout_seconds=0.1),
    )


@pytest.fixture
def workflow_settings() -> WorkflowSettings:
    """Create workflow settings without backoff delays."""
    return WorkflowSettings(
        default_step_timeout_seconds=1.0,
        default_max_retries=2,
        retry_base_delay_seconds=0.0,
        retry_max_delay_seconds=0.0,
        compensation_timeout_seconds=1.0,
    )
