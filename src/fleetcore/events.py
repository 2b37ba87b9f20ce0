"""
In-process Event Bus

Publish/subscribe notifications for registry and workflow changes, with
explicit unsubscribe handles.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

# Event names
SERVICE_REGISTERED = "service.registered"
SERVICE_UNREGISTERED = "service.unregistered"
INSTANCE_ADDED = "instance.added"
INSTANCE_REMOVED = "instance.removed"
INSTANCE_STATUS_CHANGED = "instance.status_changed"
INSTANCE_UPDATED = "instance.updated"
WORKFLOW_STARTED = "workflow.started"
WORKFLOW_STEP_COMPLETED = "workflow.step.completed"
WORKFLOW_STEP_FAILED = "workflow.step.failed"
WORKFLOW_FINISHED = "workflow.finished"

WILDCARD = "*"


@dataclass(frozen=True)
class Event:
    """A published notification."""

    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


EventHandler = Callable[[Event], None]


class Subscription:
    """Handle returned by :meth:`EventBus.subscribe`."""

    def __init__(self, bus: EventBus, event_name: str, handler: EventHandler) -> None:
        self._bus = bus
        self.event_name = event_name
        self.handler = handler
        self.active = True

    def unsubscribe(self) -> None:
        """Stop receiving events. Safe to call more than once."""
        if self.active:
            self._bus._remove(self)
            self.active = False


class EventBus:
    """Synchronous in-memory event bus.

    Handlers run inline in the publisher's task, in subscription order.
    Handler errors are logged and do not reach the publisher.
    """

    def __init__(self) -> None:
        """Initialize event bus."""
        self._subscriptions: dict[str, list[Subscription]] = {}

    def subscribe(self, event_name: str, handler: EventHandler) -> Subscription:
        """Subscribe a handler to an event name, or ``"*"`` for all events.

        Args:
            event_name: Event name to subscribe to
            handler: Callable receiving the event

        Returns:
            Subscription handle
        """
        subscription = Subscription(self, event_name, handler)
        self._subscriptions.setdefault(event_name, []).append(subscription)
        return subscription

    def publish(self, name: str, **payload: Any) -> Event:
        """Publish an event to all matching subscribers.

        Args:
            name: Event name
            **payload: Event payload

        Returns:
            The published event
        """
        event = Event(name=name, payload=payload)
        subscriptions = [
            *self._subscriptions.get(name, ()),
            *self._subscriptions.get(WILDCARD, ()),
        ]

        for subscription in subscriptions:
            try:
                subscription.handler(event)
            except Exception as exc:
                logger.error(
                    "event_handler_error",
                    event_name=name,
                    handler=repr(subscription.handler),
                    error=str(exc),
                    exc_info=True,
                )

        return event

    def subscriber_count(self, event_name: str | None = None) -> int:
        """Count active subscriptions, optionally for one event name."""
        if event_name is not None:
            return len(self._subscriptions.get(event_name, ()))
        return sum(len(subs) for subs in self._subscriptions.values())

    def _remove(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.event_name)
        if subs and subscription in subs:
            subs.remove(subscription)
            if not subs:
                del self._subscriptions[subscription.event_name]
