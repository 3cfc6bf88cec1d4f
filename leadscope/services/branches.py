from __future__ import annotations

import logging
from typing import Any

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.orm import Session

from leadscope import audit, events
from leadscope.otel import annotate_span
from leadscope.schemas import BranchCreate, BranchRead, BranchStatsRead, BranchUpdate
from leadscope.security.context import Actor, require_role
from leadscope.security.errors import BranchInUseError, DuplicateBranchNameError
from leadscope.security.predicates import Equal, MatchAll, all_of, in_, overlaps
from leadscope.security.roles import Role
from leadscope.store.document_store import BRANCHES, LEADS, USERS, SqlDocumentStore
from leadscope.store.models import BranchRecord, new_id


logger = logging.getLogger("leadscope.services.branches")
tracer = trace.get_tracer("leadscope.services.branches")


class BranchService:
    entity_type = "branch"

    def create_branch(self, session: Session, actor: Actor, dto: BranchCreate) -> BranchRead:
        with tracer.start_as_current_span("branches.create") as span:
            annotate_span(span, actor)
            require_role(actor, [Role.ADMIN], "create branch")
            name = dto.name.strip()
            self._ensure_name_available(session, name)

            store = SqlDocumentStore(session)
            document = store.create(BRANCHES, new_id(), {"name": name, "is_active": True})
            self._emit(actor, "BRANCH_CREATE", "created", document, {"name": name})
            return BranchRead.model_validate(document)

    def update_branch(self, session: Session, actor: Actor, branch_id: str, dto: BranchUpdate) -> BranchRead:
        with tracer.start_as_current_span("branches.update") as span:
            annotate_span(span, actor)
            require_role(actor, [Role.ADMIN], "update branch")
            store = SqlDocumentStore(session)
            current = store.get(BRANCHES, branch_id)

            changes: dict[str, Any] = {}
            if dto.name is not None and dto.name.strip() != current["name"]:
                changes["name"] = dto.name.strip()
            if dto.is_active is not None and dto.is_active != current["is_active"]:
                changes["is_active"] = dto.is_active
            if not changes:
                return BranchRead.model_validate(current)

            will_be_active = changes.get("is_active", current["is_active"])
            if will_be_active:
                self._ensure_name_available(session, changes.get("name", current["name"]), exclude_id=branch_id)

            document = store.update(BRANCHES, branch_id, changes)
            self._emit(actor, "BRANCH_UPDATE", "updated", document, {"fields": sorted(changes)})
            return BranchRead.model_validate(document)

    def delete_branch(self, session: Session, actor: Actor, branch_id: str) -> None:
        with tracer.start_as_current_span("branches.delete") as span:
            annotate_span(span, actor)
            require_role(actor, [Role.ADMIN], "delete branch")
            store = SqlDocumentStore(session)
            document = store.get(BRANCHES, branch_id)

            if store.count(USERS, all_of(Equal("role", Role.MANAGER.value), overlaps("branch_ids", [branch_id]))):
                raise BranchInUseError(branch_id, "assigned managers")
            if store.count(LEADS, all_of(Equal("branch_id", branch_id), Equal("is_closed", False))):
                raise BranchInUseError(branch_id, "active leads")

            store.delete(BRANCHES, branch_id)
            self._emit(actor, "BRANCH_DELETE", "deleted", document, {"name": document["name"]})

    def list_branches(self, session: Session, actor: Actor, include_inactive: bool = False) -> list[BranchStatsRead]:
        """Branches with manager and active-lead counts; non-admins only see their own branches."""

        with tracer.start_as_current_span("branches.list") as span:
            annotate_span(span, actor)
            store = SqlDocumentStore(session)
            scope = MatchAll() if actor.is_admin else in_("id", actor.branch_ids)
            active = MatchAll() if include_inactive else Equal("is_active", True)

            output: list[BranchStatsRead] = []
            for document in store.find(BRANCHES, all_of(scope, active)):
                manager_count = store.count(
                    USERS,
                    all_of(Equal("role", Role.MANAGER.value), overlaps("branch_ids", [document["id"]])),
                )
                active_lead_count = store.count(
                    LEADS,
                    all_of(Equal("branch_id", document["id"]), Equal("is_closed", False)),
                )
                output.append(
                    BranchStatsRead(
                        **document,
                        manager_count=manager_count,
                        active_lead_count=active_lead_count,
                    )
                )
            return output

    def _ensure_name_available(self, session: Session, name: str, exclude_id: str | None = None) -> None:
        stmt = select(BranchRecord.id).where(BranchRecord.name == name, BranchRecord.is_active.is_(True))
        if exclude_id is not None:
            stmt = stmt.where(BranchRecord.id != exclude_id)
        if session.scalar(stmt) is not None:
            raise DuplicateBranchNameError(name)

    def _emit(
        self,
        actor: Actor,
        action: str,
        verb: str,
        document: dict[str, Any],
        metadata: dict[str, Any],
    ) -> None:
        audit.record(
            action=action,
            actor_id=actor.id,
            actor_name=actor.display_name,
            target_id=document["id"],
            target_type=self.entity_type,
            metadata=metadata,
            correlation_id=actor.correlation_id,
        )
        events.publish(
            events.build_envelope(
                events.event_name(self.entity_type, verb),
                actor.id,
                {"branch_id": document["id"], "name": document["name"]},
            )
        )
        logger.info("branch.%s", action.lower(), extra={"actor_id": actor.id, "branch_id": document["id"]})
