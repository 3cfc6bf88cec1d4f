from __future__ import annotations

import pytest
from prometheus_client import REGISTRY

from leadscope.security.branches import normalize_branch_ids, require_branches, validate_subordinate_branches
from leadscope.security.context import Actor, require_role
from leadscope.security.errors import (
    BranchNotOwnedError,
    EmptyBranchSetError,
    InvalidRoleError,
    PermissionDeniedError,
    ValidationError,
)
from leadscope.security.roles import Role, can_create, outranks, parse_role, subordinate_role_for, valid_role


def _failures(reason: str) -> float:
    return REGISTRY.get_sample_value("branch_validation_failures_total", {"reason": reason}) or 0.0


@pytest.mark.parametrize(
    ("higher", "lower"),
    [
        (Role.ADMIN, Role.MANAGER),
        (Role.ADMIN, Role.AGENT),
        (Role.MANAGER, Role.TEAM_LEAD),
        (Role.TEAM_LEAD, Role.AGENT),
    ],
)
def test_outranks_is_strict(higher: Role, lower: Role) -> None:
    assert outranks(higher, lower)
    assert not outranks(lower, higher)
    assert not outranks(higher, higher)


def test_valid_role_accepts_only_the_four_roles() -> None:
    for role in ("admin", "manager", "team_lead", "agent"):
        assert valid_role(role)
    for value in ("Admin", "user", "", None, 3):
        assert not valid_role(value)

    with pytest.raises(InvalidRoleError):
        parse_role("supervisor")


def test_creation_follows_single_hierarchy() -> None:
    assert subordinate_role_for("admin") == Role.MANAGER
    assert subordinate_role_for("manager") == Role.TEAM_LEAD
    assert subordinate_role_for("team_lead") == Role.AGENT
    assert subordinate_role_for("agent") is None

    assert can_create(Role.MANAGER, Role.TEAM_LEAD)
    assert not can_create(Role.MANAGER, Role.MANAGER)
    assert not can_create(Role.ADMIN, Role.AGENT)
    assert not can_create(Role.AGENT, Role.AGENT)


def test_actor_normalizes_role_and_drops_blank_branches() -> None:
    actor = Actor(id="m1", role="manager", branch_ids=["b1", "", "b2"])  # type: ignore[arg-type]

    assert actor.role is Role.MANAGER
    assert actor.branch_ids == ["b1", "b2"]
    assert actor.display_name == "m1"
    assert not actor.is_admin

    with pytest.raises(PermissionDeniedError):
        require_role(actor, [Role.ADMIN], "create branch")


def test_normalize_branch_ids_keeps_first_seen_order() -> None:
    assert normalize_branch_ids(["b2", "b1", "b2", None, "", "b3"]) == ["b2", "b1", "b3"]
    assert normalize_branch_ids(None) == []


def test_empty_branch_set_is_rejected() -> None:
    before = _failures("empty")

    with pytest.raises(EmptyBranchSetError) as exc_info:
        validate_subordinate_branches([], ["b1"])

    assert isinstance(exc_info.value, ValidationError)
    assert _failures("empty") == before + 1

    with pytest.raises(EmptyBranchSetError):
        require_branches(["", None])


def test_first_offending_branch_is_reported_in_given_order() -> None:
    before = _failures("not_owned")

    with pytest.raises(BranchNotOwnedError) as exc_info:
        validate_subordinate_branches(["b1", "b3", "b4"], ["b1", "b2"])

    assert exc_info.value.branch_id == "b3"
    assert str(exc_info.value) == "Branch b3 is not in your assigned branches"
    assert _failures("not_owned") == before + 1

    with pytest.raises(BranchNotOwnedError) as exc_info:
        validate_subordinate_branches(["b4", "b3"], ["b1", "b2"])
    assert exc_info.value.branch_id == "b4"


@pytest.mark.parametrize(
    "proposed",
    [["b1"], ["b2"], ["b1", "b2"], ["b2", "b1", "b2"]],
)
def test_subset_of_creator_branches_is_accepted(proposed: list[str]) -> None:
    result = validate_subordinate_branches(proposed, {"b1", "b2"})

    assert set(result) <= {"b1", "b2"}
    assert result == normalize_branch_ids(proposed)
