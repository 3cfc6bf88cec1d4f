from __future__ import annotations

from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadscope import audit, events
from leadscope.audit import InMemoryAuditSink
from leadscope.core.celery_app import resume_branch_cascades
from leadscope.core.database import Base
from leadscope.schemas import (
    CreateAgentInput,
    CreateManagerInput,
    CreateTeamLeadInput,
    ManagerBranchesUpdate,
    UserRead,
)
from leadscope.security.cascade import BranchCascadeRunner, CascadeStatus, cascade_branch_ids
from leadscope.security.context import Actor
from leadscope.security.errors import PermissionDeniedError, ValidationError
from leadscope.security.roles import Role
from leadscope.services.users import UserService
from leadscope.store.document_store import BRANCHES, USERS, SqlDocumentStore
from leadscope.store.models import BranchCascadeItem, BranchCascadeRun


ADMIN = Actor(id="admin", role=Role.ADMIN, name="Admin")


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    store = SqlDocumentStore(session)
    for branch_id in ("b1", "b2", "b3", "b4"):
        store.create(BRANCHES, branch_id, {"name": branch_id.upper(), "is_active": True})
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def audit_sink() -> Generator[InMemoryAuditSink, None, None]:
    sink = InMemoryAuditSink()
    previous = audit.get_audit_sink()
    audit.set_audit_sink(sink)
    events.published_events.clear()
    yield sink
    audit.set_audit_sink(previous)
    events.published_events.clear()


def _actor(user: UserRead) -> Actor:
    return Actor(id=user.id, role=Role(user.role), branch_ids=list(user.branch_ids), name=user.name)


def _build_team(service: UserService, session: Session) -> dict[str, UserRead]:
    manager = service.create_manager(
        session,
        ADMIN,
        CreateManagerInput(name="Maya", email="maya@example.com", password="secret-123", branch_ids=["b1", "b2", "b3"]),
    )
    tl_one = service.create_team_lead(
        session,
        _actor(manager),
        CreateTeamLeadInput(name="Tess", email="tess@example.com", password="secret-123", branch_ids=["b1", "b2"]),
    )
    tl_two = service.create_team_lead(
        session,
        _actor(manager),
        CreateTeamLeadInput(name="Theo", email="theo@example.com", password="secret-123", branch_ids=["b3"]),
    )

    def agent(creator: UserRead, name: str, branch_ids: list[str]) -> UserRead:
        dto = CreateAgentInput(name=name, email=f"{name}@example.com", password="secret-123", branch_ids=branch_ids)
        return service.create_agent(session, _actor(creator), dto)

    return {
        "manager": manager,
        "tl_one": tl_one,
        "tl_two": tl_two,
        "a1": agent(tl_one, "ann", ["b1"]),
        "a2": agent(tl_one, "ben", ["b2"]),
        "a3": agent(tl_two, "cat", ["b3"]),
    }


def _branches(session: Session, user: UserRead) -> list[str]:
    return SqlDocumentStore(session).get(USERS, user.id)["branch_ids"]


@pytest.mark.parametrize(
    ("subordinate", "manager", "expected"),
    [
        (["b1", "b2"], ["b1", "b4"], ["b1"]),
        (["b2"], ["b1", "b4"], ["b1", "b4"]),
        ([], ["b4"], ["b4"]),
        (["b3", "b1"], ["b1", "b3"], ["b3", "b1"]),
    ],
)
def test_cascade_branch_rule(subordinate: list[str], manager: list[str], expected: list[str]) -> None:
    assert cascade_branch_ids(subordinate, manager) == expected


def test_manager_branch_change_propagates_to_subordinates(
    db_session: Session,
    audit_sink: InMemoryAuditSink,
) -> None:
    service = UserService()
    team = _build_team(service, db_session)

    updated = service.update_manager_branches(
        db_session,
        ADMIN,
        team["manager"].id,
        ManagerBranchesUpdate(branch_ids=["b1", "b4"]),
    )

    assert updated.branch_ids == ["b1", "b4"]
    assert _branches(db_session, team["tl_one"]) == ["b1"]
    assert _branches(db_session, team["tl_two"]) == ["b1", "b4"]
    assert _branches(db_session, team["a1"]) == ["b1"]
    # ben shared nothing with tess's narrowed set, so he inherits hers, not the manager's
    assert _branches(db_session, team["a2"]) == ["b1"]
    assert _branches(db_session, team["a3"]) == ["b1", "b4"]

    run = db_session.scalars(select(BranchCascadeRun)).one()
    assert run.status == CascadeStatus.APPLIED.value
    assert run.applied_at is not None
    assert len(run.items) == 5
    assert audit_sink.entries[-1]["action"] == "USER_BRANCHES_UPDATE"
    assert audit_sink.entries[-1]["metadata"]["cascade_id"] == run.id


@pytest.mark.parametrize(
    "branch_ids",
    [["b1", "b4"], ["b4"], ["b2", "b3"], ["b3", "b1"]],
)
def test_agents_stay_within_their_team_lead_branches(db_session: Session, branch_ids: list[str]) -> None:
    service = UserService()
    team = _build_team(service, db_session)

    service.update_manager_branches(db_session, ADMIN, team["manager"].id, ManagerBranchesUpdate(branch_ids=branch_ids))

    for agent_key, lead_key in (("a1", "tl_one"), ("a2", "tl_one"), ("a3", "tl_two")):
        agent_branches = set(_branches(db_session, team[agent_key]))
        assert agent_branches
        assert agent_branches <= set(_branches(db_session, team[lead_key]))
    for lead_key in ("tl_one", "tl_two"):
        assert set(_branches(db_session, team[lead_key])) <= set(branch_ids)


def test_small_batches_still_finish_the_cascade(db_session: Session) -> None:
    service = UserService(cascade=BranchCascadeRunner(batch_size=2))
    team = _build_team(service, db_session)

    service.update_manager_branches(db_session, ADMIN, team["manager"].id, ManagerBranchesUpdate(branch_ids=["b4"]))

    run = db_session.scalars(select(BranchCascadeRun)).one()
    assert run.status == CascadeStatus.APPLIED.value
    assert all(item.status == CascadeStatus.APPLIED.value for item in run.items)
    for key in ("tl_one", "tl_two", "a1", "a2", "a3"):
        assert _branches(db_session, team[key]) == ["b4"]


def test_interrupted_cascade_is_resumed_and_rerun_is_noop(db_session: Session) -> None:
    team = _build_team(UserService(), db_session)
    runner = BranchCascadeRunner(batch_size=2)

    # a worker that planned the run and applied one batch before dying
    run = runner.plan(db_session, team["manager"].id, ["b4"])
    db_session.commit()
    assert runner.apply(db_session, run.id) == 2

    assert [item.user_id for item in run.items[:2]] == sorted([team["tl_one"].id, team["tl_two"].id])
    pending = db_session.scalars(
        select(BranchCascadeItem).where(BranchCascadeItem.status == CascadeStatus.PENDING.value)
    ).all()
    assert len(pending) == 3
    db_session.commit()

    factory = sessionmaker(bind=db_session.get_bind(), autocommit=False, autoflush=False)
    assert resume_branch_cascades(factory) == [run.id]

    db_session.expire_all()
    run = db_session.scalars(select(BranchCascadeRun)).one()
    assert run.status == CascadeStatus.APPLIED.value
    for key in ("tl_one", "tl_two", "a1", "a2", "a3"):
        assert _branches(db_session, team[key]) == ["b4"]

    assert resume_branch_cascades(factory) == []
    assert BranchCascadeRunner().apply(db_session, run.id) == 0


def test_only_admin_updates_manager_branches(db_session: Session) -> None:
    service = UserService()
    team = _build_team(service, db_session)

    with pytest.raises(PermissionDeniedError):
        service.update_manager_branches(
            db_session,
            _actor(team["manager"]),
            team["manager"].id,
            ManagerBranchesUpdate(branch_ids=["b1"]),
        )
    with pytest.raises(ValidationError):
        service.update_manager_branches(db_session, ADMIN, team["tl_one"].id, ManagerBranchesUpdate(branch_ids=["b1"]))
