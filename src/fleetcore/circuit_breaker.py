"""
Circuit Breaker

Circuit breaker pattern for calls routed to a service. Fails fast while a
service is failing and admits trial calls after a cooldown.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from fleetcore.config import CircuitBreakerConfig
from fleetcore.models import CircuitState

logger = structlog.get_logger(__name__)


@dataclass
class CircuitBreakerStats:
    """Circuit breaker state and counters."""

    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    """Consecutive failures while closed"""
    success_count: int = 0
    """Successes while half-open"""
    half_open_trials: int = 0
    """Trial calls admitted and not yet reported while half-open"""
    last_failure_time: float | None = None
    last_state_change: float = field(default_factory=time.monotonic)
    total_calls: int = 0
    total_failures: int = 0
    total_successes: int = 0
    total_rejections: int = 0


class CircuitBreaker:
    """
    Circuit breaker for one service.

    States:
    - CLOSED: Normal operation, calls pass through
    - OPEN: Service is failing, calls are rejected
    - HALF_OPEN: Testing recovery, limited trial calls allowed

    All transitions happen under a lock, so concurrent permission checks
    and outcome reports for the same service are atomic.
    """

    def __init__(
        self,
        service_id: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: Callable[[str, CircuitState], None] | None = None,
    ) -> None:
        """
        Initialize circuit breaker.

        Args:
            service_id: Service the breaker guards
            config: Circuit breaker configuration
            clock: Monotonic time source in seconds
            on_state_change: Called with (service_id, new_state) on transition
        """
        self.service_id = service_id
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._on_state_change = on_state_change
        self._lock = threading.Lock()
        self.stats = CircuitBreakerStats(last_state_change=clock())

    @property
    def state(self) -> CircuitState:
        """Get current circuit state."""
        return self.stats.state

    def get_state(self) -> CircuitState:
        """Get current circuit state."""
        return self.stats.state

    def is_call_permitted(self, record_rejection: bool = True) -> bool:
        """Check whether a call may proceed now.

        An open breaker whose reset timeout has elapsed moves to half-open
        here. A permitted half-open call occupies a trial slot until its
        outcome is recorded or the permit is released.

        Args:
            record_rejection: Count a refusal in the rejection total
        """
        with self._lock:
            if self.stats.state == CircuitState.OPEN:
                if self._elapsed_since_failure() >= self.config.reset_timeout_seconds:
                    self._transition(CircuitState.HALF_OPEN)
                else:
                    if record_rejection:
                        self.stats.total_rejections += 1
                    return False

            if self.stats.state == CircuitState.HALF_OPEN:
                if self.stats.half_open_trials >= self.config.half_open_max_calls:
                    if record_rejection:
                        self.stats.total_rejections += 1
                    return False
                self.stats.half_open_trials += 1

            self.stats.total_calls += 1
            return True

    def record_success(self, holds_permit: bool = True) -> None:
        """Record a successful call.

        Args:
            holds_permit: False for a call made without a permit, which
                counts in the totals but never decides a half-open breaker
        """
        with self._lock:
            self.stats.total_successes += 1

            if self.stats.state == CircuitState.HALF_OPEN:
                if holds_permit:
                    self._release_trial()
                    self.stats.success_count += 1
                    if self.stats.success_count >= self.config.required_successes:
                        self._transition(CircuitState.CLOSED)
            elif self.stats.state == CircuitState.CLOSED:
                self.stats.failure_count = 0

            logger.debug(
                "circuit_breaker_call_succeeded",
                service_id=self.service_id,
                state=self.stats.state.value,
                success_count=self.stats.success_count,
            )

    def record_failure(self, holds_permit: bool = True) -> None:
        """Record a failed or timed-out call.

        Args:
            holds_permit: False for a call made without a permit, which
                counts in the totals but never decides a half-open breaker
        """
        with self._lock:
            self.stats.total_failures += 1

            if self.stats.state == CircuitState.HALF_OPEN:
                if holds_permit:
                    self.stats.last_failure_time = self._clock()
                    self._release_trial()
                    # Any trial failure in half-open reopens immediately
                    self._transition(CircuitState.OPEN)
            else:
                self.stats.last_failure_time = self._clock()
                if self.stats.state == CircuitState.CLOSED:
                    self.stats.failure_count += 1
                    if self.stats.failure_count >= self.config.failure_threshold:
                        self._transition(CircuitState.OPEN)

            logger.warning(
                "circuit_breaker_call_failed",
                service_id=self.service_id,
                state=self.stats.state.value,
                failure_count=self.stats.failure_count,
                threshold=self.config.failure_threshold,
            )

    def release_permit(self) -> None:
        """Return a permit for a call that was never attempted."""
        with self._lock:
            self.stats.total_calls = max(0, self.stats.total_calls - 1)
            if self.stats.state == CircuitState.HALF_OPEN:
                self._release_trial()

    def retry_after(self) -> float:
        """Seconds until an open breaker admits a trial call."""
        if self.stats.state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self.config.reset_timeout_seconds - self._elapsed_since_failure())

    def reset(self) -> None:
        """Manually reset circuit breaker to closed state."""
        logger.info("circuit_breaker_manually_reset", service_id=self.service_id)
        with self._lock:
            self._transition(CircuitState.CLOSED)

    def failure_rate(self) -> float:
        """Lifetime failure ratio over attempted calls."""
        attempted = self.stats.total_successes + self.stats.total_failures
        return self.stats.total_failures / attempted if attempted else 0.0

    def get_stats(self) -> dict[str, Any]:
        """
        Get circuit breaker statistics.

        Returns:
            Dictionary of statistics
        """
        return {
            "service_id": self.service_id,
            "state": self.stats.state.value,
            "failure_count": self.stats.failure_count,
            "success_count": self.stats.success_count,
            "total_calls": self.stats.total_calls,
            "total_failures": self.stats.total_failures,
            "total_successes": self.stats.total_successes,
            "total_rejections": self.stats.total_rejections,
            "failure_rate": self.failure_rate(),
            "retry_after_seconds": self.retry_after(),
            "state_uptime_seconds": self._clock() - self.stats.last_state_change,
            "config": self.config.model_dump(),
        }

    def _elapsed_since_failure(self) -> float:
        if self.stats.last_failure_time is None:
            return float("inf")
        return self._clock() - self.stats.last_failure_time

    def _release_trial(self) -> None:
        self.stats.half_open_trials = max(0, self.stats.half_open_trials - 1)

    def _transition(self, new_state: CircuitState) -> None:
        """Move to a new state and reset the counters it owns. Lock held."""
        old_state = self.stats.state
        self.stats.state = new_state
        self.stats.last_state_change = self._clock()

        if new_state == CircuitState.OPEN:
            self.stats.half_open_trials = 0
            self.stats.success_count = 0
            logger.error(
                "circuit_breaker_opened",
                service_id=self.service_id,
                old_state=old_state.value,
                failure_count=self.stats.failure_count,
                reset_timeout=self.config.reset_timeout_seconds,
            )
        elif new_state == CircuitState.HALF_OPEN:
            self.stats.half_open_trials = 0
            self.stats.success_count = 0
            logger.info(
                "circuit_breaker_half_opened",
                service_id=self.service_id,
                old_state=old_state.value,
            )
        else:
            self.stats.failure_count = 0
            self.stats.success_count = 0
            self.stats.half_open_trials = 0
            logger.info(
                "circuit_breaker_closed",
                service_id=self.service_id,
                old_state=old_state.value,
            )

        if self._on_state_change is not None:
            self._on_state_change(self.service_id, new_state)


class CircuitBreakerRegistry:
    """Registry for managing one circuit breaker per service."""

    def __init__(
        self,
        default_config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: Callable[[str, CircuitState], None] | None = None,
    ) -> None:
        """
        Initialize circuit breaker registry.

        Args:
            default_config: Default configuration for new circuit breakers
            clock: Time source handed to new breakers
            on_state_change: Transition callback handed to new breakers
        """
        self.default_config = default_config or CircuitBreakerConfig()
        self._clock = clock
        self._on_state_change = on_state_change
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(
        self, service_id: str, config: CircuitBreakerConfig | None = None
    ) -> CircuitBreaker:
        """Get or create circuit breaker for service."""
        if service_id not in self._breakers:
            self._breakers[service_id] = CircuitBreaker(
                service_id,
                config or self.default_config,
                clock=self._clock,
                on_state_change=self._on_state_change,
            )
        return self._breakers[service_id]

    def find(self, service_id: str) -> CircuitBreaker | None:
        """Get circuit breaker for service if one exists."""
        return self._breakers.get(service_id)

    def remove(self, service_id: str) -> None:
        """Discard the breaker for a service."""
        self._breakers.pop(service_id, None)

    def get_all_stats(self) -> list[dict[str, Any]]:
        """Get statistics for all circuit breakers."""
        return [breaker.get_stats() for breaker in self._breakers.values()]

    def reset_all(self) -> None:
        """Reset all circuit breakers."""
        for breaker in self._breakers.values():
            breaker.reset()

        logger.info("all_circuit_breakers_reset")

    def __len__(self) -> int:
        return len(self._breakers)
