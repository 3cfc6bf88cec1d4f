from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from leadscope.metrics import observe_invalid_transition
from leadscope.security.errors import InvalidTransitionError, MissingFieldError, ReadOnlyLeadError
from leadscope.security.grants import ChainOfCommand, Grant, compute_lead_grants


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LeadState(StrEnum):
    ACTIVE = "active"
    CLOSED = "closed"


class Transition(StrEnum):
    CREATE = "create"
    ASSIGN = "assign"
    CLOSE = "close"
    REOPEN = "reopen"


@dataclass(frozen=True, slots=True)
class LeadSnapshot:
    """Ownership and lifecycle facts of a lead; the payload is not needed here."""

    id: str
    owner_id: str
    status: str
    assigned_to_id: str | None = None
    branch_id: str | None = None
    is_closed: bool = False
    closed_at: datetime | None = None

    @property
    def state(self) -> LeadState:
        return LeadState.CLOSED if self.is_closed else LeadState.ACTIVE

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> LeadSnapshot:
        return cls(
            id=str(document["id"]),
            owner_id=str(document["owner_id"]),
            status=str(document.get("status") or ""),
            assigned_to_id=document.get("assigned_to_id"),
            branch_id=document.get("branch_id"),
            is_closed=bool(document.get("is_closed")),
            closed_at=document.get("closed_at"),
        )


@dataclass(frozen=True, slots=True)
class TransitionResult:
    transition: Transition
    lead: LeadSnapshot
    changes: dict[str, Any]
    grants: frozenset[Grant]


def _result(transition: Transition, lead: LeadSnapshot, changes: dict[str, Any], chain: ChainOfCommand) -> TransitionResult:
    grants = compute_lead_grants(lead, chain)
    return TransitionResult(transition=transition, lead=lead, changes=changes, grants=grants)


def create(lead: LeadSnapshot, chain: ChainOfCommand) -> TransitionResult:
    opened = replace(lead, is_closed=False, closed_at=None)
    return _result(Transition.CREATE, opened, {}, chain)


def close(lead: LeadSnapshot, status: str, chain: ChainOfCommand, *, now: datetime | None = None) -> TransitionResult:
    """Active -> Closed. Records ``closed_at`` and drops assignee/chain to read only."""

    if lead.is_closed:
        observe_invalid_transition(Transition.CLOSE.value)
        raise InvalidTransitionError(lead.id, Transition.CLOSE.value, lead.state.value)
    if not status or not status.strip():
        raise MissingFieldError("status")

    closed_at = now or utcnow()
    closed = replace(lead, is_closed=True, closed_at=closed_at, status=status)
    changes = {"is_closed": True, "closed_at": closed_at, "status": status}
    return _result(Transition.CLOSE, closed, changes, chain)


def reopen(lead: LeadSnapshot, chain: ChainOfCommand) -> TransitionResult:
    """Closed -> Active. ``closed_at`` is kept as the historical close timestamp."""

    if not lead.is_closed:
        observe_invalid_transition(Transition.REOPEN.value)
        raise InvalidTransitionError(lead.id, Transition.REOPEN.value, lead.state.value)

    reopened = replace(lead, is_closed=False)
    return _result(Transition.REOPEN, reopened, {"is_closed": False}, chain)


def assign(lead: LeadSnapshot, assignee_id: str, chain: ChainOfCommand) -> TransitionResult:
    """Change the assignee in either state; grants follow the current state."""

    if not assignee_id:
        raise MissingFieldError("assigned_to_id")
    assigned = replace(lead, assigned_to_id=assignee_id)
    return _result(Transition.ASSIGN, assigned, {"assigned_to_id": assignee_id}, chain)


def ensure_editable(lead: LeadSnapshot) -> None:
    if lead.is_closed:
        raise ReadOnlyLeadError(lead.id)
