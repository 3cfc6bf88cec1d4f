from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


WILDCARD = "*"


@dataclass(frozen=True)
class DomainEvent:
    name: str
    envelope: dict[str, Any]

    @property
    def family(self) -> str:
        """`leadscope.lead.closed` belongs to the `leadscope.lead` family."""
        return self.name.rpartition(".")[0]


EventHandler = Callable[[DomainEvent], None]


class DomainEventBus:
    """Synchronous in-process dispatch.

    Handlers subscribe to an exact event name or to a whole family with a
    trailing wildcard, e.g. `leadscope.lead.*`. Exact handlers run first.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        self._subscribers[pattern].append(handler)

    def unsubscribe(self, pattern: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(pattern, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event_name: str, envelope: dict[str, Any]) -> DomainEvent:
        event = DomainEvent(name=event_name, envelope=envelope)
        family_pattern = f"{event.family}.{WILDCARD}" if event.family else WILDCARD
        for pattern in (event_name, family_pattern):
            for handler in list(self._subscribers.get(pattern, [])):
                handler(event)
        return event


event_bus = DomainEventBus()
