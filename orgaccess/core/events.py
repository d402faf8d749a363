"""
Event system for the access layer.

Membership mutations are announced on the bus so that other components
(the credential lifecycle manager, audit sinks) can react without the
membership store knowing about them.
"""

from __future__ import annotations

import fnmatch
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

# Type for event handlers
EventHandler = Callable[["Event"], Awaitable[list["Event"]]]

# Membership event kinds
ENROLLED = "enrolled"
VERIFIED = "verified"
ROLE_CHANGED = "role_changed"
REMOVED = "removed"
LEFT = "left"
PRESIDENCY_TRANSFERRED = "presidency_transferred"

MEMBERSHIP_EVENT_KINDS = frozenset({
    ENROLLED,
    VERIFIED,
    ROLE_CHANGED,
    REMOVED,
    LEFT,
    PRESIDENCY_TRANSFERRED,
})


@dataclass
class Event:
    """
    An event in the system.
    
    Events are immutable records of something that happened.
    """
    
    event_type: str  # e.g., "membership.role_changed", "credential.refreshed"
    organization_id: int | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    
    # Principal the event is about
    principal_id: str | None = None
    
    # Tracing
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str | None = None
    causation_id: str | None = None
    
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    
    def caused_by(self, parent: Event) -> Event:
        """Return a copy of this event caused by `parent`, inheriting correlation."""
        return Event(
            event_type=self.event_type,
            organization_id=self.organization_id,
            payload=self.payload,
            principal_id=self.principal_id,
            correlation_id=parent.correlation_id or parent.id,
            causation_id=parent.id,
        )


@dataclass
class Subscription:
    """A subscription to events matching a pattern."""
    
    pattern: str  # e.g., "membership.*"
    handler: EventHandler
    
    def matches(self, event: Event) -> bool:
        return fnmatch.fnmatch(event.event_type, self.pattern)


class EventBus:
    """
    In-memory event bus implementation.
    
    Suitable for a single instance. A multi-instance deployment would swap
    this for Redis pub/sub behind the same interface.
    """
    
    def __init__(self, max_history: int = 10000):
        self._subscriptions: list[Subscription] = []
        self._event_history: list[Event] = []
        self._max_history = max_history
    
    def subscribe(
        self,
        pattern: str,
        handler: EventHandler,
    ) -> Subscription:
        """
        Subscribe to events matching a pattern.
        
        Args:
            pattern: Event type pattern (supports wildcards like "membership.*")
            handler: Async function to handle matching events
        
        Returns:
            The subscription object (can be used to unsubscribe)
        """
        subscription = Subscription(pattern=pattern, handler=handler)
        self._subscriptions.append(subscription)
        return subscription
    
    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
    
    async def publish(self, event: Event) -> list[Event]:
        """
        Publish an event and return any events produced by handlers.
        
        Handlers can return new events, which are then also published.
        """
        self._event_history.append(event)
        if len(self._event_history) > self._max_history:
            self._event_history = self._event_history[-self._max_history:]
        
        matching = [s for s in self._subscriptions if s.matches(event)]
        
        all_resulting_events: list[Event] = []
        for subscription in matching:
            try:
                resulting_events = await subscription.handler(event)
                all_resulting_events.extend(resulting_events)
            except Exception:
                # One failing handler must not stop the others
                logger.exception(
                    "Error in event handler",
                    extra={"event_type": event.event_type, "event_id": event.id},
                )
        
        for resulting_event in list(all_resulting_events):
            cascade_events = await self.publish(resulting_event)
            all_resulting_events.extend(cascade_events)
        
        return all_resulting_events
    
    def get_history(
        self,
        event_type: str | None = None,
        organization_id: int | None = None,
        limit: int = 100,
    ) -> list[Event]:
        """Query event history with optional filters."""
        results = self._event_history
        
        if event_type:
            results = [e for e in results if fnmatch.fnmatch(e.event_type, event_type)]
        
        if organization_id is not None:
            results = [e for e in results if e.organization_id == organization_id]
        
        return results[-limit:]


# Singleton event bus for the application
_default_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    """Get the default event bus instance."""
    global _default_bus
    if _default_bus is None:
        _default_bus = EventBus()
    return _default_bus


def reset_event_bus() -> None:
    """Reset the default event bus (useful for testing)."""
    global _default_bus
    _default_bus = None


def membership_changed(
    kind: str,
    organization_id: int,
    principal_id: str,
    **extra_payload,
) -> Event:
    """Create a membership.<kind> event."""
    if kind not in MEMBERSHIP_EVENT_KINDS:
        raise ValueError(f"Unknown membership event kind: {kind}")
    return Event(
        event_type=f"membership.{kind}",
        organization_id=organization_id,
        principal_id=principal_id,
        payload={"kind": kind, **extra_payload},
    )


def credential_refreshed(principal_id: str, credential_id: str, **extra_payload) -> Event:
    """Create a credential.refreshed event."""
    return Event(
        event_type="credential.refreshed",
        principal_id=principal_id,
        payload={"credential_id": credential_id, **extra_payload},
    )
