"""Identity provider collaborator.

Accounts live outside the document store. User creation provisions the
account first and deletes it again when the user document cannot be written.
"""

from __future__ import annotations

import uuid
from typing import Protocol

from opentelemetry import trace

from leadscope.context import get_correlation_id
from leadscope.security.errors import AccountExistsError, MissingFieldError, NotFoundError


tracer = trace.get_tracer("leadscope.identity")


class IdentityProvider(Protocol):
    def create_account(self, account_id: str, email: str, password: str, display_name: str) -> str: ...

    def delete_account(self, subject_id: str) -> None: ...


class InMemoryIdentityProvider:
    """Keeps accounts in memory; passwords are validated but never retained."""

    def __init__(self) -> None:
        self.accounts: dict[str, dict[str, str]] = {}

    def create_account(self, account_id: str, email: str, password: str, display_name: str) -> str:
        with tracer.start_as_current_span("identity.create_account") as span:
            span.set_attribute("correlation_id", get_correlation_id() or "")
            if not password:
                raise MissingFieldError("password")
            normalized = email.strip().lower()
            if any(account["email"] == normalized for account in self.accounts.values()):
                raise AccountExistsError(email)
            subject_id = account_id or str(uuid.uuid4())
            self.accounts[subject_id] = {"email": normalized, "name": display_name}
            span.set_attribute("subject_id", subject_id)
            return subject_id

    def delete_account(self, subject_id: str) -> None:
        with tracer.start_as_current_span("identity.delete_account") as span:
            span.set_attribute("subject_id", subject_id)
            if self.accounts.pop(subject_id, None) is None:
                raise NotFoundError("accounts", subject_id)
