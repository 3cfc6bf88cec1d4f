from __future__ import annotations

from collections.abc import Iterable

from leadscope.metrics import observe_branch_validation_failure
from leadscope.security.errors import BranchNotOwnedError, EmptyBranchSetError


def normalize_branch_ids(values: Iterable[str | None] | None) -> list[str]:
    """Drop blank ids and duplicates while keeping first-seen order."""

    seen: set[str] = set()
    output: list[str] = []
    for value in values or []:
        if not value:
            continue
        branch_id = str(value)
        if branch_id in seen:
            continue
        seen.add(branch_id)
        output.append(branch_id)
    return output


def require_branches(proposed: Iterable[str | None] | None) -> list[str]:
    branch_ids = normalize_branch_ids(proposed)
    if not branch_ids:
        observe_branch_validation_failure("empty")
        raise EmptyBranchSetError()
    return branch_ids


def validate_subordinate_branches(proposed: Iterable[str | None], creator_branches: Iterable[str]) -> list[str]:
    """Check that a subordinate's branch set is a non-empty subset of its creator's.

    The first offending id, in the order ``proposed`` was given, is reported.
    Returns the normalized branch list on success.
    """

    branch_ids = require_branches(proposed)
    owned = set(creator_branches)
    for branch_id in branch_ids:
        if branch_id not in owned:
            observe_branch_validation_failure("not_owned")
            raise BranchNotOwnedError(branch_id)
    return branch_ids
