from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from leadscope import audit, events
from leadscope.identity import IdentityProvider, InMemoryIdentityProvider
from leadscope.metrics import observe_grant_denial
from leadscope.otel import annotate_span
from leadscope.schemas import (
    BranchVisibilityRead,
    CreateAgentInput,
    CreateManagerInput,
    CreateTeamLeadInput,
    ManagerBranchesUpdate,
    UserCreateBase,
    UserRead,
    UserUpdate,
)
from leadscope.security.branches import require_branches, validate_subordinate_branches
from leadscope.security.cascade import BranchCascadeRunner
from leadscope.security.context import Actor, require_role
from leadscope.security.errors import (
    EngineError,
    NotFoundError,
    PermissionDeniedError,
    UserInUseError,
    ValidationError,
)
from leadscope.security.grants import Capability, compute_user_grants, has_capability
from leadscope.security.predicates import Equal, all_of, any_of
from leadscope.security.roles import Role, can_create
from leadscope.security.visibility import (
    resolve_assignable_filter,
    resolve_user_filter,
    resolve_visible_branches,
)
from leadscope.store.document_store import LEADS, USERS, SqlDocumentStore
from leadscope.store.models import BranchRecord, new_id


logger = logging.getLogger("leadscope.services.users")
tracer = trace.get_tracer("leadscope.services.users")


def require_active_branches(session: Session, branch_ids: Sequence[str]) -> None:
    """Every id must name an active branch; the first unknown id is reported."""

    found = set(
        session.scalars(
            select(BranchRecord.id).where(
                BranchRecord.id.in_(list(branch_ids)),
                BranchRecord.is_active.is_(True),
            )
        ).all()
    )
    for branch_id in branch_ids:
        if branch_id not in found:
            raise NotFoundError("branches", branch_id)


def require_capability(
    store: SqlDocumentStore,
    actor: Actor,
    collection: str,
    record_id: str,
    capability: Capability,
) -> None:
    """Admins bypass grants; everyone else needs ``capability`` on the record."""

    if actor.is_admin:
        return
    if not has_capability(store.grants(collection, record_id), actor.id, capability):
        observe_grant_denial(collection, capability.value)
        logger.info(
            "grant.denied",
            extra={"actor_id": actor.id, "collection": collection, "role": actor.role.value},
        )
        raise PermissionDeniedError(actor.id, f"{capability.value} {collection}")


def to_user_read(document: dict[str, Any]) -> UserRead:
    return UserRead.model_validate(document)


@dataclass
class UserService:
    identity: IdentityProvider = field(default_factory=InMemoryIdentityProvider)
    cascade: BranchCascadeRunner = field(default_factory=BranchCascadeRunner)

    def create_manager(self, session: Session, actor: Actor, dto: CreateManagerInput) -> UserRead:
        with tracer.start_as_current_span("users.create_manager") as span:
            annotate_span(span, actor)
            self._require_creator(actor, Role.MANAGER)
            branch_ids = require_branches(dto.branch_ids)
            require_active_branches(session, branch_ids)
            return self._create_user(session, actor, dto, Role.MANAGER, branch_ids)

    def create_team_lead(self, session: Session, actor: Actor, dto: CreateTeamLeadInput) -> UserRead:
        with tracer.start_as_current_span("users.create_team_lead") as span:
            annotate_span(span, actor)
            self._require_creator(actor, Role.TEAM_LEAD)
            branch_ids = validate_subordinate_branches(dto.branch_ids, actor.branch_ids)
            return self._create_user(session, actor, dto, Role.TEAM_LEAD, branch_ids, manager_id=actor.id)

    def create_agent(self, session: Session, actor: Actor, dto: CreateAgentInput) -> UserRead:
        with tracer.start_as_current_span("users.create_agent") as span:
            annotate_span(span, actor)
            self._require_creator(actor, Role.AGENT)
            branch_ids = validate_subordinate_branches(dto.branch_ids, actor.branch_ids)
            # an agent reports to its team lead's manager, not to the team lead
            creator = SqlDocumentStore(session).get(USERS, actor.id)
            return self._create_user(
                session,
                actor,
                dto,
                Role.AGENT,
                branch_ids,
                manager_id=creator.get("manager_id"),
                team_lead_id=actor.id,
            )

    def list_users(self, session: Session, actor: Actor, limit: int | None = None, offset: int = 0) -> list[UserRead]:
        with tracer.start_as_current_span("users.list") as span:
            annotate_span(span, actor)
            store = SqlDocumentStore(session)
            documents = store.find(USERS, resolve_user_filter(actor), limit=limit, offset=offset)
            return [to_user_read(item) for item in documents]

    def get_user(self, session: Session, actor: Actor, user_id: str) -> UserRead:
        return to_user_read(self._load_visible(session, actor, user_id))

    def get_user_branches(self, session: Session, actor: Actor, user_id: str) -> BranchVisibilityRead:
        with tracer.start_as_current_span("users.branches") as span:
            annotate_span(span, actor)
            target = self._load_visible(session, actor, user_id)
            visibility = resolve_visible_branches(target["branch_ids"], actor.role, actor.branch_ids)
            return BranchVisibilityRead(
                user_id=user_id,
                visible_branch_ids=list(visibility.visible),
                hidden_count=visibility.hidden_count,
            )

    def list_assignable_users(self, session: Session, actor: Actor) -> list[UserRead]:
        with tracer.start_as_current_span("users.assignable") as span:
            annotate_span(span, actor)
            predicate = resolve_assignable_filter(actor)
            if predicate is None:
                return []
            documents = SqlDocumentStore(session).find(USERS, predicate)
            return [to_user_read(item) for item in documents if item["id"] != actor.id]

    def update_user(self, session: Session, actor: Actor, user_id: str, dto: UserUpdate) -> UserRead:
        """Rename a user or change its contact email; requires ``update`` on the user record."""

        with tracer.start_as_current_span("users.update") as span:
            annotate_span(span, actor)
            span.set_attribute("user_id", user_id)
            store = SqlDocumentStore(session)
            current = self._load_visible(session, actor, user_id)
            require_capability(store, actor, USERS, user_id, Capability.UPDATE)

            changes: dict[str, Any] = {}
            if dto.name is not None and dto.name != current["name"]:
                changes["name"] = dto.name
            if dto.email is not None and str(dto.email).lower() != current["email"]:
                changes["email"] = str(dto.email).lower()
            if not changes:
                return to_user_read(current)

            updated = store.update(USERS, user_id, changes)
            audit.record(
                action="USER_UPDATE",
                actor_id=actor.id,
                actor_name=actor.display_name,
                target_id=user_id,
                target_type="user",
                metadata={"fields": sorted(changes)},
                correlation_id=actor.correlation_id,
            )
            events.publish(events.build_envelope(events.event_name("user", "updated"), actor.id, {"user_id": user_id}))
            logger.info("user.updated", extra={"actor_id": actor.id, "user_id": user_id})
            return to_user_read(updated)

    def delete_user(self, session: Session, actor: Actor, user_id: str) -> None:
        """Delete a user record and its identity account.

        Requires ``delete`` on the user record, so a manager may remove its
        agents while team leads and agents themselves may not. Users that
        still have subordinates or open assigned leads are kept.
        """

        with tracer.start_as_current_span("users.delete") as span:
            annotate_span(span, actor)
            span.set_attribute("user_id", user_id)
            store = SqlDocumentStore(session)
            target = self._load_visible(session, actor, user_id)
            require_capability(store, actor, USERS, user_id, Capability.DELETE)

            if store.count(USERS, any_of(Equal("manager_id", user_id), Equal("team_lead_id", user_id))):
                raise UserInUseError(user_id, "subordinates")
            if store.count(LEADS, all_of(Equal("assigned_to_id", user_id), Equal("is_closed", False))):
                raise UserInUseError(user_id, "open assigned leads")

            store.delete(USERS, user_id)
            if target.get("external_subject_id"):
                self.identity.delete_account(target["external_subject_id"])

            audit.record(
                action="USER_DELETE",
                actor_id=actor.id,
                actor_name=actor.display_name,
                target_id=user_id,
                target_type="user",
                metadata={"role": target["role"]},
                correlation_id=actor.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    events.event_name("user", "deleted"),
                    actor.id,
                    {"user_id": user_id, "role": target["role"]},
                )
            )
            logger.info("user.deleted", extra={"actor_id": actor.id, "user_id": user_id, "role": target["role"]})

    def update_manager_branches(
        self,
        session: Session,
        actor: Actor,
        manager_id: str,
        dto: ManagerBranchesUpdate,
    ) -> UserRead:
        """Replace a manager's branches and propagate the change to its subordinates.

        The manager write and the pending cascade run commit together; the
        cascade is then applied and can be resumed if applying is interrupted.
        """

        with tracer.start_as_current_span("users.update_manager_branches") as span:
            annotate_span(span, actor)
            require_role(actor, [Role.ADMIN], "update manager branches")
            branch_ids = require_branches(dto.branch_ids)
            require_active_branches(session, branch_ids)

            store = SqlDocumentStore(session)
            manager = store.get(USERS, manager_id)
            if manager["role"] != Role.MANAGER.value:
                raise ValidationError(f"User {manager_id} is not a manager")

            store.update(USERS, manager_id, {"branch_ids": branch_ids}, commit=False)
            run = self.cascade.plan(session, manager_id, branch_ids)
            cascade_id = run.id
            session.commit()
            span.set_attribute("cascade_id", cascade_id)

            audit.record(
                action="USER_BRANCHES_UPDATE",
                actor_id=actor.id,
                actor_name=actor.display_name,
                target_id=manager_id,
                target_type="user",
                metadata={
                    "previous_branch_ids": manager["branch_ids"],
                    "branch_ids": branch_ids,
                    "cascade_id": cascade_id,
                },
                correlation_id=actor.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    events.event_name("user", "branches_updated"),
                    actor.id,
                    {"user_id": manager_id, "branch_ids": branch_ids, "cascade_id": cascade_id},
                )
            )

            self.cascade.apply_all(session, cascade_id)
            return to_user_read(store.get(USERS, manager_id))

    def _require_creator(self, actor: Actor, target: Role) -> None:
        if not can_create(actor.role, target):
            logger.info(
                "user.create_denied",
                extra={"actor_id": actor.id, "role": actor.role.value},
            )
            raise PermissionDeniedError(actor.id, f"create {target.value}")

    def _load_visible(self, session: Session, actor: Actor, user_id: str) -> dict[str, Any]:
        target = SqlDocumentStore(session).get(USERS, user_id)
        if not resolve_user_filter(actor).matches(target):
            raise NotFoundError(USERS, user_id)
        return target

    def _create_user(
        self,
        session: Session,
        actor: Actor,
        dto: UserCreateBase,
        role: Role,
        branch_ids: list[str],
        *,
        manager_id: str | None = None,
        team_lead_id: str | None = None,
    ) -> UserRead:
        store = SqlDocumentStore(session)
        user_id = new_id()
        email = str(dto.email).lower()

        subject_id = self.identity.create_account(user_id, email, dto.password, dto.name)
        grants = compute_user_grants(user_id, role, manager_id=manager_id, team_lead_id=team_lead_id)
        try:
            document = store.create(
                USERS,
                user_id,
                {
                    "name": dto.name,
                    "email": email,
                    "role": role.value,
                    "manager_id": manager_id,
                    "team_lead_id": team_lead_id,
                    "external_subject_id": subject_id,
                    "branch_ids": branch_ids,
                },
                grants,
            )
        except (EngineError, SQLAlchemyError) as exc:
            logger.warning(
                "user.create_rolled_back",
                extra={"actor_id": actor.id, "user_id": user_id, "error": type(exc).__name__},
            )
            self.identity.delete_account(subject_id)
            raise

        audit.record(
            action="USER_CREATE",
            actor_id=actor.id,
            actor_name=actor.display_name,
            target_id=user_id,
            target_type="user",
            metadata={"role": role.value, "branch_ids": branch_ids, "manager_id": manager_id, "team_lead_id": team_lead_id},
            correlation_id=actor.correlation_id,
        )
        events.publish(
            events.build_envelope(
                events.event_name("user", "created"),
                actor.id,
                {"user_id": user_id, "role": role.value, "branch_ids": branch_ids},
            )
        )
        logger.info("user.created", extra={"actor_id": actor.id, "user_id": user_id, "role": role.value})
        return to_user_read(document)
