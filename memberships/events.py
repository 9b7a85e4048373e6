"""
Produced events.

The engine publishes a fixed set of events for observability hooks and
cache invalidation. Subscribers are plain callables; a failing subscriber is
logged and never breaks the operation that produced the event.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping

logger = logging.getLogger(__name__)


class EventName(str, Enum):
    SUBSCRIPTION_STATE_CHANGED = "subscription.state_changed"
    INVOICE_SETTLED = "invoice.settled"
    ACCESS_DENIED = "access.denied"


_REQUIRED_FIELDS = {
    EventName.SUBSCRIPTION_STATE_CHANGED: ("subscription_id", "member_id", "old", "new"),
    EventName.INVOICE_SETTLED: ("invoice_id", "status"),
    EventName.ACCESS_DENIED: ("member_id", "content_id", "reason"),
}


@dataclass(frozen=True)
class Event:
    name: EventName
    payload: Mapping[str, Any]
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        name = EventName(self.name)
        missing = [key for key in _REQUIRED_FIELDS[name] if key not in self.payload]
        if missing:
            raise ValueError(f"{name.value} event is missing {', '.join(missing)}")
        object.__setattr__(self, "name", name)
        object.__setattr__(self, "payload", MappingProxyType(dict(self.payload)))


Handler = Callable[[Event], None]


def log_event(event: Event) -> None:
    logger.info("Membership event", extra={"event": event.name.value, **event.payload})


class EventDispatcher:
    """Synchronous in-process publisher for the membership events."""

    def __init__(self, log_events: bool = True):
        self._handlers: Dict[EventName, List[Handler]] = defaultdict(list)
        if log_events:
            for name in EventName:
                self._handlers[name].append(log_event)

    def subscribe(self, name: EventName, handler: Handler) -> None:
        self._handlers[EventName(name)].append(handler)

    def emit(self, name: EventName, **payload: Any) -> Event:
        event = Event(name=name, payload=payload)
        for handler in list(self._handlers[event.name]):
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler failed", extra={
                    "event": event.name.value,
                    "handler": getattr(handler, "__qualname__", repr(handler)),
                })
        return event


class RecordingDispatcher(EventDispatcher):
    """Dispatcher that keeps every emitted event in memory."""

    def __init__(self):
        super().__init__(log_events=False)
        self.events: List[Event] = []

    def emit(self, name: EventName, **payload: Any) -> Event:
        event = super().emit(name, **payload)
        self.events.append(event)
        return event

    def named(self, name: EventName) -> List[Event]:
        return [event for event in self.events if event.name is EventName(name)]
