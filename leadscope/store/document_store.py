"""SQL-backed document store with per-record grant sets.

Records are exposed as plain dicts. Visibility predicates are compiled into
SQLAlchemy clauses, so filtering always happens in the query and never after
loading. Grant sets are replaced wholesale inside the same transaction as the
field write they accompany.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from typing import Any, Protocol

from sqlalchemy import ColumnElement, Select, and_, delete, false, func, or_, select, true
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from leadscope.core.config import get_settings
from leadscope.metrics import observe_duplicate_rejection
from leadscope.security.errors import (
    AccountExistsError,
    DuplicateBranchNameError,
    DuplicateLeadError,
    NotFoundError,
)
from leadscope.security.grants import Capability, Grant
from leadscope.security.predicates import (
    AllOf,
    AnyOf,
    AtLeast,
    AtMost,
    Contains,
    Equal,
    In,
    IsNotNull,
    MatchAll,
    Overlaps,
    Predicate,
)
from leadscope.security.uniqueness import PayloadCandidate, decode_payload
from leadscope.store.models import (
    BranchRecord,
    LeadContactKey,
    LeadRecord,
    RecordGrant,
    UserBranch,
    UserRecord,
)


logger = logging.getLogger("leadscope.store")

LEADS = "leads"
USERS = "users"
BRANCHES = "branches"

_MODELS: dict[str, type[Any]] = {
    LEADS: LeadRecord,
    USERS: UserRecord,
    BRANCHES: BranchRecord,
}


class DocumentStore(Protocol):
    def find(self, collection: str, predicate: Predicate) -> list[dict[str, Any]]: ...

    def get(self, collection: str, record_id: str) -> dict[str, Any]: ...

    def create(
        self,
        collection: str,
        record_id: str,
        fields: Mapping[str, Any],
        grants: Iterable[Grant] | None = None,
    ) -> dict[str, Any]: ...

    def update(
        self,
        collection: str,
        record_id: str,
        fields: Mapping[str, Any],
        grants: Iterable[Grant] | None = None,
    ) -> dict[str, Any]: ...


def serialize_payload(payload: Mapping[str, Any]) -> str:
    return json.dumps(dict(payload), ensure_ascii=False, sort_keys=True, default=str)


class SqlDocumentStore:
    def __init__(self, session: Session, unique_fields: Iterable[str] | None = None) -> None:
        self.session = session
        self.unique_fields = tuple(unique_fields) if unique_fields is not None else tuple(get_settings().unique_lead_fields)

    # -- query compilation -------------------------------------------------

    @staticmethod
    def _model(collection: str) -> type[Any]:
        try:
            return _MODELS[collection]
        except KeyError as exc:
            raise ValueError(f"Unknown collection '{collection}'") from exc

    @staticmethod
    def _column(model: type[Any], field: str) -> Any:
        column = getattr(model, field, None)
        if column is None:
            raise ValueError(f"Unknown field '{field}' on {model.__tablename__}")
        return column

    def compile(self, collection: str, predicate: Predicate) -> ColumnElement[bool]:
        model = self._model(collection)
        return self._compile(model, predicate)

    def _compile(self, model: type[Any], predicate: Predicate) -> ColumnElement[bool]:
        if isinstance(predicate, MatchAll):
            return true()
        if isinstance(predicate, Equal):
            column = self._column(model, predicate.field)
            return column.is_(None) if predicate.value is None else column == predicate.value
        if isinstance(predicate, In):
            if not predicate.values:
                return false()
            return self._column(model, predicate.field).in_(predicate.values)
        if isinstance(predicate, Overlaps):
            if model is not UserRecord or predicate.field != "branch_ids":
                raise ValueError(f"Overlaps is not supported for {model.__tablename__}.{predicate.field}")
            if not predicate.values:
                return false()
            return UserRecord.id.in_(
                select(UserBranch.user_id).where(UserBranch.branch_id.in_(predicate.values))
            )
        if isinstance(predicate, IsNotNull):
            return self._column(model, predicate.field).is_not(None)
        if isinstance(predicate, AtLeast):
            return self._column(model, predicate.field) >= predicate.value
        if isinstance(predicate, AtMost):
            return self._column(model, predicate.field) <= predicate.value
        if isinstance(predicate, Contains):
            return self._column(model, predicate.field).icontains(predicate.value, autoescape=True)
        if isinstance(predicate, AllOf):
            return and_(*(self._compile(model, clause) for clause in predicate.clauses))
        if isinstance(predicate, AnyOf):
            if not predicate.clauses:
                return false()
            return or_(*(self._compile(model, clause) for clause in predicate.clauses))
        raise TypeError(f"Unsupported predicate {predicate!r}")

    def _select(self, collection: str, predicate: Predicate) -> Select[Any]:
        model = self._model(collection)
        return select(model).where(self._compile(model, predicate))

    # -- reads -------------------------------------------------------------

    def find(
        self,
        collection: str,
        predicate: Predicate,
        *,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        model = self._model(collection)
        stmt = self._select(collection, predicate).order_by(model.created_at.desc(), model.id)
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        rows = self.session.scalars(stmt).all()
        return self._documents(collection, rows)

    def count(self, collection: str, predicate: Predicate) -> int:
        model = self._model(collection)
        stmt = select(func.count()).select_from(model).where(self._compile(model, predicate))
        return int(self.session.scalar(stmt) or 0)

    def get(self, collection: str, record_id: str) -> dict[str, Any]:
        row = self._row(collection, record_id)
        return self._documents(collection, [row])[0]

    def grants(self, collection: str, record_id: str) -> frozenset[Grant]:
        rows = self.session.scalars(
            select(RecordGrant).where(
                RecordGrant.collection == collection,
                RecordGrant.record_id == record_id,
            )
        ).all()
        return frozenset(Grant(row.subject_id, Capability(row.capability)) for row in rows)

    def find_payload_candidates(self, field: str, value: str) -> list[PayloadCandidate]:
        """Coarse containment scan; callers verify the decoded payload exactly."""

        rows = self.session.scalars(
            select(LeadRecord).where(LeadRecord.payload.contains(value, autoescape=True))
        ).all()
        return [PayloadCandidate(id=row.id, payload=row.payload, branch_id=row.branch_id) for row in rows]

    def _row(self, collection: str, record_id: str) -> Any:
        row = self.session.get(self._model(collection), record_id)
        if row is None:
            raise NotFoundError(collection, record_id)
        return row

    def _branch_ids_by_user(self, user_ids: list[str]) -> dict[str, list[str]]:
        output: dict[str, list[str]] = {user_id: [] for user_id in user_ids}
        if not user_ids:
            return output
        links = self.session.scalars(
            select(UserBranch)
            .where(UserBranch.user_id.in_(user_ids))
            .order_by(UserBranch.user_id, UserBranch.position)
        ).all()
        for link in links:
            output[link.user_id].append(link.branch_id)
        return output

    def _documents(self, collection: str, rows: Iterable[Any]) -> list[dict[str, Any]]:
        rows = list(rows)
        if collection == LEADS:
            return [self._lead_document(row) for row in rows]
        if collection == USERS:
            branch_map = self._branch_ids_by_user([row.id for row in rows])
            return [self._user_document(row, branch_map[row.id]) for row in rows]
        return [self._branch_document(row) for row in rows]

    @staticmethod
    def _lead_document(row: LeadRecord) -> dict[str, Any]:
        return {
            "id": row.id,
            "payload": row.payload,
            "status": row.status,
            "owner_id": row.owner_id,
            "assigned_to_id": row.assigned_to_id,
            "branch_id": row.branch_id,
            "is_closed": row.is_closed,
            "closed_at": row.closed_at,
            "created_at": row.created_at,
            "updated_at": row.updated_at,
        }

    @staticmethod
    def _user_document(row: UserRecord, branch_ids: list[str]) -> dict[str, Any]:
        return {
            "id": row.id,
            "name": row.name,
            "email": row.email,
            "role": row.role,
            "manager_id": row.manager_id,
            "team_lead_id": row.team_lead_id,
            "branch_ids": list(branch_ids),
            "external_subject_id": row.external_subject_id,
            "created_at": row.created_at,
            "updated_at": row.updated_at,
        }

    @staticmethod
    def _branch_document(row: BranchRecord) -> dict[str, Any]:
        return {
            "id": row.id,
            "name": row.name,
            "is_active": row.is_active,
            "created_at": row.created_at,
            "updated_at": row.updated_at,
        }

    # -- writes ------------------------------------------------------------

    def create(
        self,
        collection: str,
        record_id: str,
        fields: Mapping[str, Any],
        grants: Iterable[Grant] | None = None,
        *,
        commit: bool = True,
    ) -> dict[str, Any]:
        model = self._model(collection)
        values = dict(fields)
        branch_ids = values.pop("branch_ids", None)
        if collection == LEADS and isinstance(values.get("payload"), Mapping):
            values["payload"] = serialize_payload(values["payload"])

        try:
            row = model(id=record_id, **values)
            self.session.add(row)
            self.session.flush()
            if collection == USERS and branch_ids is not None:
                self._replace_branch_links(record_id, branch_ids)
            if collection == LEADS:
                self._replace_contact_keys(record_id, row.payload)
            if grants is not None:
                self._replace_grants(collection, record_id, grants)
            self.session.flush()
        except IntegrityError as exc:
            self.session.rollback()
            self._raise_conflict(collection, record_id, values, exc)
        if commit:
            self.session.commit()
        return self.get(collection, record_id)

    def update(
        self,
        collection: str,
        record_id: str,
        fields: Mapping[str, Any],
        grants: Iterable[Grant] | None = None,
        *,
        commit: bool = True,
    ) -> dict[str, Any]:
        """Write ``fields`` and, when given, replace the full grant set atomically."""

        row = self._row(collection, record_id)
        values = dict(fields)
        branch_ids = values.pop("branch_ids", None)
        if collection == LEADS and isinstance(values.get("payload"), Mapping):
            values["payload"] = serialize_payload(values["payload"])

        try:
            for key, value in values.items():
                self._column(type(row), key)
                setattr(row, key, value)
            self.session.flush()
            if collection == USERS and branch_ids is not None:
                self._replace_branch_links(record_id, branch_ids)
            if collection == LEADS and "payload" in values:
                self._replace_contact_keys(record_id, row.payload)
            if grants is not None:
                self._replace_grants(collection, record_id, grants)
            self.session.flush()
        except IntegrityError as exc:
            self.session.rollback()
            self._raise_conflict(collection, record_id, values, exc)
        if commit:
            self.session.commit()
        return self.get(collection, record_id)

    def delete(self, collection: str, record_id: str, *, commit: bool = True) -> None:
        row = self._row(collection, record_id)
        self.session.execute(
            delete(RecordGrant).where(
                RecordGrant.collection == collection,
                RecordGrant.record_id == record_id,
            )
        )
        if collection == LEADS:
            self.session.execute(delete(LeadContactKey).where(LeadContactKey.lead_id == record_id))
        if collection == USERS:
            self.session.execute(delete(UserBranch).where(UserBranch.user_id == record_id))
        self.session.delete(row)
        self.session.flush()
        if commit:
            self.session.commit()

    def _replace_grants(self, collection: str, record_id: str, grants: Iterable[Grant]) -> None:
        self.session.execute(
            delete(RecordGrant).where(
                RecordGrant.collection == collection,
                RecordGrant.record_id == record_id,
            )
        )
        for grant in sorted(set(grants)):
            self.session.add(
                RecordGrant(
                    collection=collection,
                    record_id=record_id,
                    subject_id=grant.subject_id,
                    capability=grant.capability.value,
                )
            )

    def _replace_branch_links(self, user_id: str, branch_ids: Iterable[str]) -> None:
        self.session.execute(delete(UserBranch).where(UserBranch.user_id == user_id))
        for position, branch_id in enumerate(branch_ids):
            self.session.add(UserBranch(user_id=user_id, branch_id=branch_id, position=position))

    def _replace_contact_keys(self, lead_id: str, raw_payload: str) -> None:
        self.session.execute(delete(LeadContactKey).where(LeadContactKey.lead_id == lead_id))
        payload = decode_payload(raw_payload) or {}
        for field in self.unique_fields:
            value = payload.get(field)
            if isinstance(value, str) and value:
                self.session.add(LeadContactKey(lead_id=lead_id, field=field, value=value))

    def _raise_conflict(self, collection: str, record_id: str, values: Mapping[str, Any], exc: IntegrityError) -> None:
        if collection == LEADS:
            payload = decode_payload(values.get("payload")) or {}
            for field in self.unique_fields:
                value = payload.get(field)
                if not isinstance(value, str) or not value:
                    continue
                existing = self.session.scalar(
                    select(LeadContactKey).where(
                        LeadContactKey.field == field,
                        LeadContactKey.value == value,
                        LeadContactKey.lead_id != record_id,
                    )
                )
                if existing is not None:
                    other = self.session.get(LeadRecord, existing.lead_id)
                    observe_duplicate_rejection(field)
                    logger.info("lead.duplicate_rejected", extra={"lead_id": record_id, "field": field})
                    raise DuplicateLeadError(field, existing.lead_id, other.branch_id if other else None) from exc
        if collection == BRANCHES and "name" in values:
            raise DuplicateBranchNameError(str(values["name"])) from exc
        if collection == USERS and "email" in values:
            raise AccountExistsError(str(values["email"])) from exc
        raise exc
