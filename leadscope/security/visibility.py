from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from leadscope.metrics import observe_visibility_filter
from leadscope.security.context import Actor
from leadscope.security.predicates import (
    Equal,
    IsNotNull,
    MatchAll,
    Predicate,
    all_of,
    any_of,
    in_,
    overlaps,
)
from leadscope.security.roles import BRANCH_SCOPED_ROLES, Role, outranks, parse_role


logger = logging.getLogger("leadscope.security.visibility")

LEADS = "leads"
USERS = "users"


def resolve_lead_filter(actor: Actor) -> Predicate:
    """Build the query predicate selecting the leads ``actor`` may list.

    admin sees everything; a manager or team lead sees leads in its branches,
    or only the leads it owns when it has no branch; an agent sees the leads
    assigned to it.
    """

    if actor.role == Role.ADMIN:
        observe_visibility_filter(LEADS, actor.role, "all")
        return MatchAll()

    if actor.role == Role.AGENT:
        observe_visibility_filter(LEADS, actor.role, "assigned")
        return Equal("assigned_to_id", actor.id)

    if actor.role in BRANCH_SCOPED_ROLES and actor.branch_ids:
        observe_visibility_filter(LEADS, actor.role, "branch")
        return all_of(IsNotNull("branch_id"), in_("branch_id", actor.branch_ids))

    observe_visibility_filter(LEADS, actor.role, "owner")
    return Equal("owner_id", actor.id)


def resolve_user_filter(actor: Actor) -> Predicate:
    """Build the query predicate selecting the user records ``actor`` may list.

    Same shape as the lead filter, evaluated against the target user's
    ``branch_ids``. A manager always sees its own record.
    """

    if actor.role == Role.ADMIN:
        observe_visibility_filter(USERS, actor.role, "all")
        return MatchAll()

    if actor.role == Role.AGENT:
        observe_visibility_filter(USERS, actor.role, "self")
        return Equal("id", actor.id)

    if actor.role in BRANCH_SCOPED_ROLES and actor.branch_ids:
        observe_visibility_filter(USERS, actor.role, "branch")
        scoped = overlaps("branch_ids", actor.branch_ids)
        if actor.role == Role.MANAGER:
            return any_of(scoped, Equal("id", actor.id))
        return scoped

    observe_visibility_filter(USERS, actor.role, "owner")
    link_field = "manager_id" if actor.role == Role.MANAGER else "team_lead_id"
    return any_of(Equal("id", actor.id), Equal(link_field, actor.id))


@dataclass(frozen=True, slots=True)
class BranchVisibility:
    visible: tuple[str, ...]
    hidden_count: int


def resolve_visible_branches(
    target_branch_ids: Sequence[str],
    viewer_role: Role | str,
    viewer_branch_ids: Iterable[str],
) -> BranchVisibility:
    """Intersect another user's branch assignments with what the viewer may see.

    Only the count of hidden branches is reported, never their ids. An admin
    view and a non-admin view with nothing hidden are indistinguishable.
    """

    if parse_role(viewer_role) == Role.ADMIN:
        return BranchVisibility(visible=tuple(target_branch_ids), hidden_count=0)

    viewer_set = set(viewer_branch_ids)
    visible = tuple(branch_id for branch_id in target_branch_ids if branch_id in viewer_set)
    hidden_count = len(target_branch_ids) - len(visible)
    if hidden_count:
        logger.debug(
            "branch.visibility_mismatch",
            extra={"role": str(viewer_role), "hidden_count": hidden_count},
        )
    return BranchVisibility(visible=visible, hidden_count=hidden_count)


# managers are never lead assignees
_ASSIGNEE_ROLES = (Role.TEAM_LEAD, Role.AGENT)


def assignable_roles(role: Role | str) -> frozenset[Role]:
    resolved = parse_role(role)
    return frozenset(candidate for candidate in _ASSIGNEE_ROLES if outranks(resolved, candidate))


def resolve_assignable_filter(actor: Actor) -> Predicate | None:
    """Predicate for users ``actor`` may assign leads to, or None when nobody qualifies."""

    roles = assignable_roles(actor.role)
    if not roles:
        return None
    role_clause = in_("role", sorted(role.value for role in roles))
    if actor.role == Role.ADMIN:
        return role_clause
    if not actor.branch_ids:
        return None
    return all_of(role_clause, overlaps("branch_ids", actor.branch_ids))


def filter_assignable_users(actor: Actor, users: Iterable[Mapping[str, Any]]) -> list[Mapping[str, Any]]:
    predicate = resolve_assignable_filter(actor)
    if predicate is None:
        return []
    return [user for user in users if predicate.matches(user)]
