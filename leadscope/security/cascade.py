from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from enum import StrEnum

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.orm import Session

from leadscope.context import get_correlation_id
from leadscope.core.config import get_settings
from leadscope.metrics import observe_cascade_items_applied, observe_cascade_run
from leadscope.security.branches import normalize_branch_ids
from leadscope.security.errors import NotFoundError
from leadscope.security.predicates import Equal
from leadscope.security.roles import Role
from leadscope.store.document_store import USERS, SqlDocumentStore
from leadscope.store.models import BranchCascadeItem, BranchCascadeRun, new_id, utcnow


logger = logging.getLogger("leadscope.security.cascade")
tracer = trace.get_tracer("leadscope.security.cascade")


class CascadeStatus(StrEnum):
    PENDING = "pending"
    APPLIED = "applied"


def cascade_branch_ids(subordinate_branch_ids: Iterable[str], manager_branch_ids: Iterable[str]) -> list[str]:
    """Branch set a subordinate ends up with after its manager's set changes.

    The subordinate keeps the branches it shares with the manager's new set.
    When nothing is shared it inherits the manager's whole set, so no
    subordinate is left without a branch.
    """

    manager = normalize_branch_ids(manager_branch_ids)
    allowed = set(manager)
    kept = [branch_id for branch_id in normalize_branch_ids(subordinate_branch_ids) if branch_id in allowed]
    return kept or manager


class BranchCascadeRunner:
    """Propagates a manager's branch change to its linked subordinates.

    A run and its items are recorded in the same transaction as the manager
    update. Items are then applied one at a time and marked applied, so a
    crashed run can be resumed and re-running never reapplies an item.
    """

    def __init__(self, batch_size: int | None = None) -> None:
        self.batch_size = batch_size or get_settings().branch_cascade_batch_size

    def plan(self, session: Session, manager_id: str, manager_branch_ids: Sequence[str]) -> BranchCascadeRun:
        """Record the target branch set of every subordinate of ``manager_id``.

        Team leads are narrowed against the manager's new set and each agent
        against its team lead's planned set, so an agent never ends up in a
        branch its team lead lost. Team lead items precede agent items.
        """

        store = SqlDocumentStore(session)
        subordinates = sorted(store.find(USERS, Equal("manager_id", manager_id)), key=lambda item: item["id"])
        run = BranchCascadeRun(
            id=new_id(),
            manager_id=manager_id,
            branch_ids=list(manager_branch_ids),
            status=CascadeStatus.PENDING.value,
        )

        planned: dict[str, list[str]] = {}
        for subordinate in subordinates:
            if subordinate["role"] == Role.TEAM_LEAD.value:
                planned[subordinate["id"]] = cascade_branch_ids(subordinate["branch_ids"], manager_branch_ids)
        for subordinate in subordinates:
            if subordinate["role"] == Role.AGENT.value:
                ceiling = planned.get(subordinate["team_lead_id"], list(manager_branch_ids))
                planned[subordinate["id"]] = cascade_branch_ids(subordinate["branch_ids"], ceiling)

        for user_id, target_branch_ids in planned.items():
            run.items.append(
                BranchCascadeItem(
                    user_id=user_id,
                    target_branch_ids=target_branch_ids,
                    status=CascadeStatus.PENDING.value,
                )
            )
        session.add(run)
        session.flush()
        logger.info(
            "cascade.planned",
            extra={"cascade_id": run.id, "user_id": manager_id, "status": run.status},
        )
        return run

    def apply(self, session: Session, cascade_id: str) -> int:
        """Apply the pending items of one run; returns how many were applied now."""

        with tracer.start_as_current_span("cascade.apply") as span:
            span.set_attribute("cascade_id", cascade_id)
            span.set_attribute("correlation_id", get_correlation_id() or "")
            run = session.get(BranchCascadeRun, cascade_id)
            if run is None:
                raise NotFoundError("branch_cascades", cascade_id)
            if run.status == CascadeStatus.APPLIED.value:
                return 0

            store = SqlDocumentStore(session)
            applied = 0
            for item in run.items:
                if item.status == CascadeStatus.APPLIED.value:
                    continue
                store.update(USERS, item.user_id, {"branch_ids": list(item.target_branch_ids)}, commit=False)
                item.status = CascadeStatus.APPLIED.value
                item.applied_at = utcnow()
                session.commit()
                applied += 1
                if applied >= self.batch_size:
                    break

            if all(item.status == CascadeStatus.APPLIED.value for item in run.items):
                run.status = CascadeStatus.APPLIED.value
                run.applied_at = utcnow()
                session.commit()
                observe_cascade_run(CascadeStatus.APPLIED.value)
            else:
                observe_cascade_run(CascadeStatus.PENDING.value)

            observe_cascade_items_applied(applied)
            span.set_attribute("items_applied", applied)
            logger.info("cascade.applied", extra={"cascade_id": run.id, "status": run.status})
            return applied

    def apply_all(self, session: Session, cascade_id: str) -> int:
        """Apply a run to completion, committing one batch at a time."""

        total = 0
        while True:
            applied = self.apply(session, cascade_id)
            if not applied:
                return total
            total += applied

    def resume_pending(self, session: Session) -> list[str]:
        run_ids = list(
            session.scalars(
                select(BranchCascadeRun.id)
                .where(BranchCascadeRun.status == CascadeStatus.PENDING.value)
                .order_by(BranchCascadeRun.created_at, BranchCascadeRun.id)
            ).all()
        )
        for run_id in run_ids:
            self.apply_all(session, run_id)
        return run_ids
