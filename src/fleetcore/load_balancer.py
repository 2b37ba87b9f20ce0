"""
Load Balancing

Per-service instance selection with pluggable strategies. The healthy
subset is recomputed on every selection.
"""

from __future__ import annotations

import random
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping, Sequence

import structlog

from fleetcore.exceptions import NoHealthyInstanceError
from fleetcore.models import LoadBalancingAlgorithm, ServiceInstance

logger = structlog.get_logger(__name__)


class SelectionStrategy(ABC):
    """Abstract base class for instance selection strategies."""

    @abstractmethod
    def select(
        self, instances: Sequence[ServiceInstance], in_flight: Mapping[str, int]
    ) -> ServiceInstance | None:
        """Select an instance from the healthy subset.

        Args:
            instances: Running instances, in registration order
            in_flight: Active call count per instance id

        Returns:
            Selected instance or None if none available
        """

    def reset(self) -> None:
        """Forget positional state after the instance set changes."""


class RoundRobinStrategy(SelectionStrategy):
    """Round-robin over the healthy subset."""

    def __init__(self) -> None:
        """Initialize round-robin strategy."""
        self._counter = 0

    def select(
        self, instances: Sequence[ServiceInstance], in_flight: Mapping[str, int]
    ) -> ServiceInstance | None:
        """Select next instance in round-robin order."""
        if not instances:
            return None

        selected = instances[self._counter % len(instances)]
        self._counter += 1
        return selected

    def reset(self) -> None:
        self._counter = 0


class RandomStrategy(SelectionStrategy):
    """Uniform random selection."""

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    def select(
        self, instances: Sequence[ServiceInstance], in_flight: Mapping[str, int]
    ) -> ServiceInstance | None:
        """Select random instance."""
        if not instances:
            return None

        return self._rng.choice(instances)


class LeastLoadStrategy(SelectionStrategy):
    """Least estimated load from the advisory cpu/memory snapshot.

    Ties go to the instance with fewer in-flight calls, then to the lowest
    instance id.
    """

    def select(
        self, instances: Sequence[ServiceInstance], in_flight: Mapping[str, int]
    ) -> ServiceInstance | None:
        """Select the least loaded instance."""
        if not instances:
            return None

        return min(
            instances,
            key=lambda i: (
                i.resource_usage.load,
                in_flight.get(i.instance_id, 0),
                i.instance_id,
            ),
        )


_STRATEGIES: dict[LoadBalancingAlgorithm, type[SelectionStrategy]] = {
    LoadBalancingAlgorithm.ROUND_ROBIN: RoundRobinStrategy,
    LoadBalancingAlgorithm.RANDOM: RandomStrategy,
    LoadBalancingAlgorithm.LEAST_LOAD: LeastLoadStrategy,
}


def create_strategy(algorithm: LoadBalancingAlgorithm) -> SelectionStrategy:
    """Create strategy instance for algorithm."""
    return _STRATEGIES[algorithm]()


class LoadBalancer:
    """Load balancer for the instances of one service."""

    def __init__(
        self,
        service_id: str,
        instances: Iterable[ServiceInstance] = (),
        algorithm: LoadBalancingAlgorithm = LoadBalancingAlgorithm.ROUND_ROBIN,
        strategy: SelectionStrategy | None = None,
    ) -> None:
        """Initialize load balancer.

        Args:
            service_id: Service the instances belong to
            instances: Current instance list
            algorithm: Selection policy, ignored when ``strategy`` is given
            strategy: Explicit strategy instance
        """
        self.service_id = service_id
        self.algorithm = algorithm
        self._strategy = strategy or create_strategy(algorithm)
        self._instances: tuple[ServiceInstance, ...] = tuple(instances)
        self._in_flight: dict[str, int] = {}
        self._lock = threading.Lock()

    @property
    def instances(self) -> tuple[ServiceInstance, ...]:
        """Current instance set, healthy or not."""
        return self._instances

    def healthy_instances(self) -> list[ServiceInstance]:
        """Compute the running subset."""
        return [i for i in self._instances if i.is_running]

    def select_instance(self) -> ServiceInstance:
        """Select a running instance for a call.

        Returns:
            Selected instance

        Raises:
            NoHealthyInstanceError: If no instance is running
        """
        with self._lock:
            healthy = self.healthy_instances()
            selected = self._strategy.select(healthy, self._in_flight)

        if selected is None:
            logger.warning(
                "no_healthy_instances",
                service_id=self.service_id,
                total_instances=len(self._instances),
            )
            raise NoHealthyInstanceError(self.service_id)

        logger.debug(
            "instance_selected",
            service_id=self.service_id,
            instance_id=selected.instance_id,
            algorithm=self.algorithm.value,
        )
        return selected

    def update_instances(self, instances: Iterable[ServiceInstance]) -> None:
        """Replace the instance set and reset positional state.

        Args:
            instances: New instance list
        """
        new_instances = tuple(instances)
        with self._lock:
            self._instances = new_instances
            self._strategy.reset()
            live = {i.instance_id for i in new_instances}
            self._in_flight = {k: v for k, v in self._in_flight.items() if k in live}

        logger.debug(
            "instances_updated",
            service_id=self.service_id,
            instance_count=len(new_instances),
        )

    def update_instance(self, instance: ServiceInstance) -> None:
        """Apply a status or usage change to one instance, keeping the cursor."""
        with self._lock:
            self._instances = tuple(
                instance if i.instance_id == instance.instance_id else i
                for i in self._instances
            )

    def record_request_start(self, instance_id: str) -> None:
        """Record start of a call routed to an instance."""
        with self._lock:
            self._in_flight[instance_id] = self._in_flight.get(instance_id, 0) + 1

    def record_request_end(self, instance_id: str) -> None:
        """Record end of a call routed to an instance."""
        with self._lock:
            remaining = self._in_flight.get(instance_id, 0) - 1
            if remaining > 0:
                self._in_flight[instance_id] = remaining
            else:
                self._in_flight.pop(instance_id, None)

    def in_flight(self, instance_id: str) -> int:
        """Get active call count for an instance."""
        return self._in_flight.get(instance_id, 0)
