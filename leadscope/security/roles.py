from __future__ import annotations

from enum import StrEnum

from leadscope.security.errors import InvalidRoleError


class Role(StrEnum):
    ADMIN = "admin"
    MANAGER = "manager"
    TEAM_LEAD = "team_lead"
    AGENT = "agent"


VALID_ROLES: tuple[Role, ...] = tuple(Role)

_RANK = {
    Role.ADMIN: 3,
    Role.MANAGER: 2,
    Role.TEAM_LEAD: 1,
    Role.AGENT: 0,
}

# creator role -> the single role it may create
_SUBORDINATE_ROLE = {
    Role.ADMIN: Role.MANAGER,
    Role.MANAGER: Role.TEAM_LEAD,
    Role.TEAM_LEAD: Role.AGENT,
}

BRANCH_SCOPED_ROLES = frozenset({Role.MANAGER, Role.TEAM_LEAD})


def valid_role(value: object) -> bool:
    return isinstance(value, str) and value in {role.value for role in VALID_ROLES}


def parse_role(value: object) -> Role:
    if not valid_role(value):
        raise InvalidRoleError(value)
    return Role(str(value))


def outranks(a: Role | str, b: Role | str) -> bool:
    """Strict ordering: admin > manager > team_lead > agent."""

    return _RANK[parse_role(a)] > _RANK[parse_role(b)]


def subordinate_role_for(creator_role: Role | str) -> Role | None:
    return _SUBORDINATE_ROLE.get(parse_role(creator_role))


def can_create(creator_role: Role | str, target_role: Role | str) -> bool:
    return subordinate_role_for(creator_role) == parse_role(target_role)
