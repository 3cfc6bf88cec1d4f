from __future__ import annotations

import logging
from typing import Any

from opentelemetry import trace
from sqlalchemy.orm import Session

from leadscope import audit, events
from leadscope.core.config import get_settings
from leadscope.metrics import observe_grant_recompute
from leadscope.otel import annotate_span
from leadscope.schemas import LeadAssign, LeadClose, LeadCreate, LeadListFilters, LeadRead, LeadUpdate
from leadscope.security import lifecycle
from leadscope.security.context import Actor, require_role
from leadscope.security.errors import (
    AssigneeOutOfScopeError,
    BranchNotOwnedError,
    NotFoundError,
    PermissionDeniedError,
)
from leadscope.security.grants import (
    Capability,
    ChainOfCommand,
    has_capability,
    resolve_chain_of_command,
)
from leadscope.security.lifecycle import LeadSnapshot, TransitionResult
from leadscope.security.predicates import AtLeast, AtMost, Contains, Equal, all_of
from leadscope.security.roles import Role
from leadscope.security.uniqueness import UniquenessChecker, decode_payload
from leadscope.security.visibility import resolve_assignable_filter, resolve_lead_filter
from leadscope.services.users import require_active_branches, require_capability
from leadscope.store.document_store import LEADS, USERS, SqlDocumentStore
from leadscope.store.models import new_id


logger = logging.getLogger("leadscope.services.leads")
tracer = trace.get_tracer("leadscope.services.leads")


def to_lead_read(document: dict[str, Any]) -> LeadRead:
    return LeadRead(
        id=document["id"],
        payload=decode_payload(document["payload"]) or {},
        status=document["status"],
        owner_id=document["owner_id"],
        assigned_to_id=document["assigned_to_id"],
        branch_id=document["branch_id"],
        is_closed=document["is_closed"],
        closed_at=document["closed_at"],
        created_at=document["created_at"],
        updated_at=document["updated_at"],
    )


def _payload_matches(document: dict[str, Any], needle: str) -> bool:
    payload = decode_payload(document["payload"]) or {}
    lowered = needle.lower()
    return any(lowered in str(value).lower() for value in payload.values() if value is not None)


class LeadService:
    entity_type = "lead"

    def create_lead(self, session: Session, actor: Actor, dto: LeadCreate) -> LeadRead:
        with tracer.start_as_current_span("leads.create") as span:
            annotate_span(span, actor)
            store = SqlDocumentStore(session)

            branch_id = dto.branch_id or (actor.branch_ids[0] if actor.branch_ids else None)
            if branch_id is not None:
                if not actor.is_admin and branch_id not in actor.branch_ids:
                    raise BranchNotOwnedError(branch_id)
                require_active_branches(session, [branch_id])

            UniquenessChecker(store).validate_payload(dto.payload)

            assigned_to_id = dto.assigned_to_id
            chain = ChainOfCommand()
            if actor.role == Role.AGENT:
                # agents only ever see what is assigned to them
                if assigned_to_id not in (None, actor.id):
                    raise PermissionDeniedError(actor.id, "assign lead")
                assigned_to_id = actor.id
                chain = resolve_chain_of_command(store.get(USERS, actor.id))
            elif assigned_to_id:
                chain = resolve_chain_of_command(self._resolve_assignee(store, actor, assigned_to_id, branch_id))

            snapshot = LeadSnapshot(
                id=new_id(),
                owner_id=actor.id,
                status=dto.status or get_settings().default_lead_status,
                assigned_to_id=assigned_to_id,
                branch_id=branch_id,
            )
            result = lifecycle.create(snapshot, chain)
            document = store.create(
                LEADS,
                snapshot.id,
                {
                    "payload": dto.payload,
                    "status": result.lead.status,
                    "owner_id": result.lead.owner_id,
                    "assigned_to_id": result.lead.assigned_to_id,
                    "branch_id": result.lead.branch_id,
                    "is_closed": False,
                    "closed_at": None,
                },
                result.grants,
            )
            observe_grant_recompute(result.transition.value)
            span.set_attribute("lead_id", snapshot.id)

            self._emit(actor, "LEAD_CREATE", "created", document, {"branch_id": branch_id})
            return to_lead_read(document)

    def update_lead(self, session: Session, actor: Actor, lead_id: str, dto: LeadUpdate) -> LeadRead:
        with tracer.start_as_current_span("leads.update") as span:
            annotate_span(span, actor)
            span.set_attribute("lead_id", lead_id)
            store = SqlDocumentStore(session)
            document = self._load(store, actor, lead_id)
            lifecycle.ensure_editable(LeadSnapshot.from_document(document))
            require_capability(store, actor, LEADS, lead_id, Capability.UPDATE)

            changes: dict[str, Any] = {}
            if dto.payload is not None:
                merged = {**(decode_payload(document["payload"]) or {}), **dto.payload}
                UniquenessChecker(store).validate_payload(merged, exclude_id=lead_id)
                changes["payload"] = merged
            if dto.status:
                changes["status"] = dto.status
            if not changes:
                return to_lead_read(document)

            updated = store.update(LEADS, lead_id, changes)
            self._emit(actor, "LEAD_UPDATE", "updated", updated, {"fields": sorted(changes)})
            return to_lead_read(updated)

    def assign_lead(self, session: Session, actor: Actor, lead_id: str, dto: LeadAssign) -> LeadRead:
        with tracer.start_as_current_span("leads.assign") as span:
            annotate_span(span, actor)
            span.set_attribute("lead_id", lead_id)
            store = SqlDocumentStore(session)
            document = self._load(store, actor, lead_id)
            require_capability(store, actor, LEADS, lead_id, Capability.UPDATE)

            assignee = self._resolve_assignee(store, actor, dto.assigned_to_id, document["branch_id"])
            result = lifecycle.assign(
                LeadSnapshot.from_document(document),
                dto.assigned_to_id,
                resolve_chain_of_command(assignee),
            )
            updated = self._apply(store, result)
            self._emit(
                actor,
                "LEAD_ASSIGN",
                "assigned",
                updated,
                {"previous_assignee_id": document["assigned_to_id"], "assigned_to_id": dto.assigned_to_id},
            )
            return to_lead_read(updated)

    def close_lead(self, session: Session, actor: Actor, lead_id: str, dto: LeadClose) -> LeadRead:
        with tracer.start_as_current_span("leads.close") as span:
            annotate_span(span, actor)
            span.set_attribute("lead_id", lead_id)
            store = SqlDocumentStore(session)
            document = self._load(store, actor, lead_id)
            snapshot = LeadSnapshot.from_document(document)

            result = lifecycle.close(snapshot, dto.status, self._chain_for(store, snapshot.assigned_to_id))
            require_capability(store, actor, LEADS, lead_id, Capability.UPDATE)
            updated = self._apply(store, result)
            self._emit(actor, "LEAD_CLOSE", "closed", updated, {"status": dto.status})
            return to_lead_read(updated)

    def reopen_lead(self, session: Session, actor: Actor, lead_id: str) -> LeadRead:
        """Closed -> Active. Closed leads are read only for the chain, so reopen is role gated."""

        with tracer.start_as_current_span("leads.reopen") as span:
            annotate_span(span, actor)
            span.set_attribute("lead_id", lead_id)
            require_role(actor, [Role.ADMIN, Role.MANAGER], "reopen lead")
            store = SqlDocumentStore(session)
            document = self._load(store, actor, lead_id)
            snapshot = LeadSnapshot.from_document(document)

            result = lifecycle.reopen(snapshot, self._chain_for(store, snapshot.assigned_to_id))
            updated = self._apply(store, result)
            self._emit(actor, "LEAD_REOPEN", "reopened", updated, {})
            return to_lead_read(updated)

    def list_leads(self, session: Session, actor: Actor, filters: LeadListFilters | None = None) -> list[LeadRead]:
        filters = filters or LeadListFilters()
        with tracer.start_as_current_span("leads.list") as span:
            annotate_span(span, actor)
            clauses = [resolve_lead_filter(actor)]
            if filters.status:
                clauses.append(Equal("status", filters.status))
            if filters.assigned_to_id:
                clauses.append(Equal("assigned_to_id", filters.assigned_to_id))
            if filters.is_closed is not None:
                clauses.append(Equal("is_closed", filters.is_closed))
            if filters.created_from:
                clauses.append(AtLeast("created_at", filters.created_from))
            if filters.created_to:
                clauses.append(AtMost("created_at", filters.created_to))

            store = SqlDocumentStore(session)
            if not filters.search:
                documents = store.find(LEADS, all_of(*clauses), limit=filters.limit, offset=filters.offset)
                return [to_lead_read(item) for item in documents]

            # the payload column narrows, decoded values confirm
            clauses.append(Contains("payload", filters.search))
            documents = [item for item in store.find(LEADS, all_of(*clauses)) if _payload_matches(item, filters.search)]
            window = documents[filters.offset : filters.offset + filters.limit]
            return [to_lead_read(item) for item in window]

    def get_lead(self, session: Session, actor: Actor, lead_id: str) -> LeadRead:
        with tracer.start_as_current_span("leads.get") as span:
            annotate_span(span, actor)
            span.set_attribute("lead_id", lead_id)
            return to_lead_read(self._load(SqlDocumentStore(session), actor, lead_id))

    def delete_lead(self, session: Session, actor: Actor, lead_id: str) -> None:
        with tracer.start_as_current_span("leads.delete") as span:
            annotate_span(span, actor)
            span.set_attribute("lead_id", lead_id)
            store = SqlDocumentStore(session)
            document = self._load(store, actor, lead_id)
            require_capability(store, actor, LEADS, lead_id, Capability.DELETE)
            store.delete(LEADS, lead_id)
            self._emit(actor, "LEAD_DELETE", "deleted", document, {})

    def _load(self, store: SqlDocumentStore, actor: Actor, lead_id: str) -> dict[str, Any]:
        document = store.get(LEADS, lead_id)
        if resolve_lead_filter(actor).matches(document):
            return document
        if has_capability(store.grants(LEADS, lead_id), actor.id, Capability.READ):
            return document
        raise NotFoundError(LEADS, lead_id)

    def _resolve_assignee(
        self,
        store: SqlDocumentStore,
        actor: Actor,
        assignee_id: str,
        branch_id: str | None,
    ) -> dict[str, Any]:
        if actor.role == Role.AGENT:
            raise PermissionDeniedError(actor.id, "assign lead")
        assignee = store.get(USERS, assignee_id)
        predicate = resolve_assignable_filter(actor)
        if predicate is None or not predicate.matches(assignee):
            raise AssigneeOutOfScopeError(assignee_id, branch_id)
        if branch_id is not None and branch_id not in assignee["branch_ids"]:
            raise AssigneeOutOfScopeError(assignee_id, branch_id)
        return assignee

    def _chain_for(self, store: SqlDocumentStore, assigned_to_id: str | None) -> ChainOfCommand:
        if not assigned_to_id:
            return ChainOfCommand()
        return resolve_chain_of_command(store.get(USERS, assigned_to_id))

    def _apply(self, store: SqlDocumentStore, result: TransitionResult) -> dict[str, Any]:
        # field changes and the full replacement grant set land in one commit
        updated = store.update(LEADS, result.lead.id, result.changes, result.grants)
        observe_grant_recompute(result.transition.value)
        return updated

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
                {"lead_id": document["id"], "status": document["status"], "is_closed": document["is_closed"]},
            )
        )
        logger.info("lead.%s", action.lower(), extra={"actor_id": actor.id, "lead_id": document["id"]})
