from __future__ import annotations

import uuid
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Protocol

from leadscope.context import get_correlation_id


class AuditSink(Protocol):
    """Persistence collaborator for audit events; the engine only builds the payload."""

    def write(self, event: dict[str, Any]) -> None:
        ...


class InMemoryAuditSink:
    def __init__(self) -> None:
        self.entries: list[dict[str, Any]] = []

    def write(self, event: dict[str, Any]) -> None:
        self.entries.append(event)

    def clear(self) -> None:
        self.entries.clear()


def build_event(
    action: str,
    actor_id: str,
    actor_name: str,
    target_id: str | None,
    target_type: str,
    metadata: dict[str, Any] | None = None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    return {
        "id": str(uuid.uuid4()),
        "action": action,
        "actor_id": actor_id,
        "actor_name": actor_name,
        "target_id": target_id,
        "target_type": target_type,
        "metadata": metadata or {},
        "correlation_id": correlation_id or get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }


def record(
    action: str,
    actor_id: str,
    actor_name: str,
    target_id: str | None,
    target_type: str,
    metadata: dict[str, Any] | None = None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    event = build_event(
        action=action,
        actor_id=actor_id,
        actor_name=actor_name,
        target_id=target_id,
        target_type=target_type,
        metadata=metadata,
        correlation_id=correlation_id,
    )
    get_audit_sink().write(event)
    return event


_AUDIT_SINK: AuditSink = InMemoryAuditSink()
_AUDIT_LOCK = Lock()


def get_audit_sink() -> AuditSink:
    """Get the active audit sink."""

    return _AUDIT_SINK


def set_audit_sink(sink: AuditSink) -> None:
    """Set the active audit sink."""

    global _AUDIT_SINK
    with _AUDIT_LOCK:
        _AUDIT_SINK = sink
