from __future__ import annotations


class EngineError(Exception):
    """Base error for scoping, grant and lifecycle enforcement failures."""


class ValidationError(EngineError):
    """Input the caller can correct; never retried automatically."""


class EmptyBranchSetError(ValidationError):
    def __init__(self) -> None:
        super().__init__("At least one branch is required for non-admin accounts")


class BranchNotOwnedError(ValidationError):
    def __init__(self, branch_id: str) -> None:
        self.branch_id = branch_id
        super().__init__(f"Branch {branch_id} is not in your assigned branches")


class MissingFieldError(ValidationError):
    def __init__(self, field: str) -> None:
        self.field = field
        super().__init__(f"Missing required field '{field}'")


class InvalidRoleError(ValidationError):
    def __init__(self, role: object) -> None:
        self.role = role
        super().__init__(f"Invalid role: {role!r}")


class ReadOnlyLeadError(ValidationError):
    def __init__(self, lead_id: str) -> None:
        self.lead_id = lead_id
        super().__init__(f"Lead {lead_id} is closed and cannot be edited")


class AssigneeOutOfScopeError(ValidationError):
    def __init__(self, assignee_id: str, branch_id: str | None) -> None:
        self.assignee_id = assignee_id
        self.branch_id = branch_id
        super().__init__(f"User {assignee_id} cannot be assigned leads in branch {branch_id}")


class ConflictError(EngineError):
    """Uniqueness conflicts surfaced verbatim to the end user."""


class DuplicateLeadError(ConflictError):
    def __init__(self, field: str, existing_lead_id: str, existing_branch_id: str | None = None) -> None:
        self.field = field
        self.existing_lead_id = existing_lead_id
        self.existing_branch_id = existing_branch_id
        message = f"Duplicate {field} found in lead {existing_lead_id}"
        if existing_branch_id:
            message += f" (branch: {existing_branch_id})"
        super().__init__(message)


class DuplicateBranchNameError(ConflictError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__("A branch with this name already exists")


class AccountExistsError(ConflictError):
    def __init__(self, email: str) -> None:
        self.email = email
        super().__init__("A user with this email already exists")


class BranchInUseError(ConflictError):
    def __init__(self, branch_id: str, reason: str) -> None:
        self.branch_id = branch_id
        self.reason = reason
        super().__init__(f"Cannot delete branch with {reason}")


class UserInUseError(ConflictError):
    def __init__(self, user_id: str, reason: str) -> None:
        self.user_id = user_id
        self.reason = reason
        super().__init__(f"Cannot delete user with {reason}")


class NotFoundError(EngineError):
    def __init__(self, collection: str, record_id: str) -> None:
        self.collection = collection
        self.record_id = record_id
        super().__init__(f"{collection} record {record_id} not found")


class InvalidTransitionError(EngineError):
    def __init__(self, lead_id: str, transition: str, state: str) -> None:
        self.lead_id = lead_id
        self.transition = transition
        self.state = state
        super().__init__(f"Cannot {transition} lead {lead_id} while it is {state}")


class PermissionDeniedError(EngineError):
    def __init__(self, actor_id: str, action: str) -> None:
        self.actor_id = actor_id
        self.action = action
        super().__init__(f"Permission denied: {action}")
