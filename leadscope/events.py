from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from leadscope.context import get_correlation_id
from leadscope.core.events import event_bus

EVENT_PREFIX = "leadscope"

published_events: list[dict[str, Any]] = []


def event_name(entity: str, verb: str) -> str:
    return f"{EVENT_PREFIX}.{entity}.{verb}"


def build_envelope(event_type: str, actor_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "actor_id": actor_id,
        "version": 1,
        "payload": payload,
    }


def publish(envelope: dict[str, Any]) -> None:
    """Record the envelope and dispatch it on the in-process bus.

    Envelopes carry record ids and states only, never payload contents, so
    subscribers cannot leak lead data outside the actor's scope.
    """

    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type.startswith(f"{EVENT_PREFIX}."):
        event_bus.publish(event_type, envelope)
