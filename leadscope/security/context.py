from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from leadscope.security.errors import PermissionDeniedError
from leadscope.security.roles import Role, parse_role


@dataclass(slots=True)
class Actor:
    """Authenticated identity performing an operation."""

    id: str
    role: Role
    branch_ids: list[str] = field(default_factory=list)
    name: str = ""
    correlation_id: str | None = None

    def __post_init__(self) -> None:
        self.role = parse_role(self.role)
        self.branch_ids = [str(item) for item in self.branch_ids if item]

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def display_name(self) -> str:
        return self.name or self.id


def require_role(actor: Actor, roles: Iterable[Role], action: str) -> None:
    if actor.role not in set(roles):
        raise PermissionDeniedError(actor.id, action)
