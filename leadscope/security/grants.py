"""Permission grants attached to lead and user documents.

Grants are a projection of (owner, assignee, chain of command, lifecycle
state). They are always recomputed as a complete replacement set and never
patched in place, so a former assignee cannot keep residual access.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol

from leadscope.security.roles import Role, parse_role


class Capability(StrEnum):
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"


FULL_ACCESS = frozenset({Capability.READ, Capability.UPDATE, Capability.DELETE})
READ_WRITE = frozenset({Capability.READ, Capability.UPDATE})
READ_DELETE = frozenset({Capability.READ, Capability.DELETE})
READ_ONLY = frozenset({Capability.READ})


@dataclass(frozen=True, slots=True, order=True)
class Grant:
    subject_id: str
    capability: Capability


@dataclass(frozen=True, slots=True)
class ChainOfCommand:
    """Supervisors above an assignee: its team lead, then that team lead's manager."""

    team_lead_id: str | None = None
    manager_id: str | None = None

    def members(self) -> tuple[str, ...]:
        return tuple(item for item in (self.team_lead_id, self.manager_id) if item)


class GrantedLead(Protocol):
    owner_id: str
    assigned_to_id: str | None
    is_closed: bool


def _value(record: Any, field: str) -> Any:
    if isinstance(record, Mapping):
        return record.get(field)
    return getattr(record, field, None)


def resolve_chain_of_command(assignee: Mapping[str, Any] | Any | None) -> ChainOfCommand:
    if assignee is None:
        return ChainOfCommand()
    role = parse_role(_value(assignee, "role"))
    if role == Role.AGENT:
        return ChainOfCommand(
            team_lead_id=_value(assignee, "team_lead_id"),
            manager_id=_value(assignee, "manager_id"),
        )
    if role == Role.TEAM_LEAD:
        return ChainOfCommand(manager_id=_value(assignee, "manager_id"))
    return ChainOfCommand()


def _grant(subject_id: str, capabilities: Iterable[Capability]) -> set[Grant]:
    return {Grant(subject_id, capability) for capability in capabilities}


def compute_lead_grants(lead: GrantedLead | Mapping[str, Any], chain: ChainOfCommand) -> frozenset[Grant]:
    """Compute the complete grant set for a lead in its current lifecycle state.

    Owner keeps full access. The assignee gets read/update while active and
    read only while closed; the assignee's chain of command gets full access
    while active and read only while closed.
    """

    owner_id = _value(lead, "owner_id")
    assigned_to_id = _value(lead, "assigned_to_id")
    is_closed = bool(_value(lead, "is_closed"))

    grants: set[Grant] = set()
    if owner_id:
        grants |= _grant(owner_id, FULL_ACCESS)

    if not assigned_to_id:
        return frozenset(grants)

    grants |= _grant(assigned_to_id, READ_ONLY if is_closed else READ_WRITE)
    for member_id in chain.members():
        grants |= _grant(member_id, READ_ONLY if is_closed else FULL_ACCESS)
    return frozenset(grants)


def compute_user_grants(
    user_id: str,
    role: Role | str,
    *,
    manager_id: str | None = None,
    team_lead_id: str | None = None,
) -> frozenset[Grant]:
    """Grants on a subordinate's own user document, fixed at creation."""

    grants = _grant(user_id, READ_WRITE)
    resolved = parse_role(role)
    if resolved == Role.TEAM_LEAD and manager_id:
        grants |= _grant(manager_id, FULL_ACCESS)
    elif resolved == Role.AGENT:
        if team_lead_id:
            grants |= _grant(team_lead_id, READ_WRITE)
        if manager_id:
            grants |= _grant(manager_id, READ_DELETE)
    return frozenset(grants)


def capabilities_for(grants: Iterable[Grant], subject_id: str) -> frozenset[Capability]:
    return frozenset(grant.capability for grant in grants if grant.subject_id == subject_id)


def has_capability(grants: Iterable[Grant], subject_id: str, capability: Capability) -> bool:
    return any(grant.subject_id == subject_id and grant.capability == capability for grant in grants)
