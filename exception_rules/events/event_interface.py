"""
Event interface for the exception rule engine.

This module defines the rule lifecycle events and the emitter the rule
manager publishes them on, so UI and orchestration code can react to rule
changes without polling.
"""

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from exception_rules.config.logging_config import get_logger
from exception_rules.utils.error_handling import safe_execute

logger = get_logger(__name__)


class EventType(Enum):
    """Rule lifecycle and maintenance events."""

    RULE_CREATED = "rule.created"
    RULE_UPDATED = "rule.updated"
    RULE_DELETED = "rule.deleted"
    RULE_USED = "rule.used"
    RULES_IMPORTED = "rules.imported"
    USAGE_RECORDS_CLEANED = "usage.cleaned"


@dataclass
class Event:
    """Something that happened in the rule engine."""

    type: EventType
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        """Convert the event to a dictionary."""
        return {
            "type": self.type.value,
            "data": self.data,
            "created_at": self.created_at
        }

    def to_json(self) -> str:
        """Convert the event to a JSON string."""
        return json.dumps(self.to_dict(), default=str)


@dataclass
class RuleEvent(Event):
    """An event about a single rule, or a batch of rules when rule_id is None."""

    rule_id: Optional[str] = None
    chain_id: Optional[str] = None


EventHandlerType = Callable[[Event], None]

# None as the event type subscribes to every event
Subscription = Tuple[Optional[EventType], EventHandlerType]


class EventEmitter:
    """
    Publishes rule events to subscribed handlers.

    Handlers subscribed to an event's type run first, then catch-all
    handlers, each group in subscription order. A raising handler is logged
    and the remaining handlers still run.
    """

    def __init__(self):
        self._subscriptions: List[Subscription] = []

    def on(self, event_type: EventType, handler: EventHandlerType) -> Callable[[], None]:
        """
        Subscribe a handler to one event type.

        Args:
            event_type: Event type to receive
            handler: Called with each matching event

        Returns:
            A function that removes the subscription
        """
        return self._subscribe((event_type, handler))

    def on_any(self, handler: EventHandlerType) -> Callable[[], None]:
        """Subscribe a handler to every event. Returns the unsubscribe function."""
        return self._subscribe((None, handler))

    def handler_count(self, event_type: Optional[EventType] = None) -> int:
        """Number of handlers an event of ``event_type`` would reach."""
        return sum(
            1 for subscribed, _ in self._subscriptions
            if subscribed is None or event_type is None or subscribed is event_type
        )

    def emit(self, event: Event) -> None:
        """Deliver an event to every matching handler."""
        typed = [h for subscribed, h in self._subscriptions if subscribed is event.type]
        catch_all = [h for subscribed, h in self._subscriptions if subscribed is None]

        for handler in typed + catch_all:
            safe_execute(handler, event, error_message=f"Handler for {event.type.value} failed")

    def _subscribe(self, subscription: Subscription) -> Callable[[], None]:
        self._subscriptions.append(subscription)
        event_type = subscription[0]
        logger.debug(f"Subscribed handler to {event_type.value if event_type else 'all events'}")

        def unsubscribe() -> None:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

        return unsubscribe


# Global event emitter instance
event_bus = EventEmitter()
