from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pmo.context import get_correlation_id, get_tenant_id


logger = logging.getLogger("pmo.events")


@dataclass
class InternalEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        self._subscribers[event_name].append(handler)

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = InternalEvent(name=event_name, payload=payload)
        for handler in list(self._subscribers.get(event_name, [])):
            handler(event)


event_bus = InProcessEventBus()
published_events: list[dict[str, Any]] = []


def publish(envelope: dict[str, Any]) -> None:
    """Publish a domain event envelope after the producing transaction committed.

    Missing ``correlation_id``/``tenant_id`` keys are filled from the request
    context so subscribers can correlate events with logs.
    """
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()
    if envelope.get("tenant_id") is None:
        envelope["tenant_id"] = get_tenant_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        logger.debug("event.published", extra={"status": event_type})
        event_bus.publish(event_type, envelope)
