from __future__ import annotations

from collections.abc import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from leadscope import audit, events
from leadscope.audit import InMemoryAuditSink
from leadscope.core.database import Base
from leadscope.schemas import BranchCreate, BranchUpdate, CreateManagerInput, LeadClose, LeadCreate
from leadscope.security.context import Actor
from leadscope.security.errors import BranchInUseError, DuplicateBranchNameError, NotFoundError, PermissionDeniedError
from leadscope.security.roles import Role
from leadscope.services.branches import BranchService
from leadscope.services.leads import LeadService
from leadscope.services.users import UserService


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


def test_branch_crud_is_admin_only(db_session: Session, audit_sink: InMemoryAuditSink) -> None:
    service = BranchService()
    manager = Actor(id="m1", role=Role.MANAGER, branch_ids=["b1"])

    with pytest.raises(PermissionDeniedError):
        service.create_branch(db_session, manager, BranchCreate(name="North"))

    branch = service.create_branch(db_session, ADMIN, BranchCreate(name="  North "))
    assert branch.name == "North"
    assert branch.is_active is True

    renamed = service.update_branch(db_session, ADMIN, branch.id, BranchUpdate(name="North East"))
    assert renamed.name == "North East"

    service.delete_branch(db_session, ADMIN, branch.id)
    assert [entry["action"] for entry in audit_sink.entries] == ["BRANCH_CREATE", "BRANCH_UPDATE", "BRANCH_DELETE"]
    with pytest.raises(NotFoundError):
        service.update_branch(db_session, ADMIN, branch.id, BranchUpdate(is_active=False))


def test_branch_name_unique_among_active(db_session: Session) -> None:
    service = BranchService()
    north = service.create_branch(db_session, ADMIN, BranchCreate(name="North"))

    with pytest.raises(DuplicateBranchNameError) as exc_info:
        service.create_branch(db_session, ADMIN, BranchCreate(name="North"))
    assert str(exc_info.value) == "A branch with this name already exists"

    service.update_branch(db_session, ADMIN, north.id, BranchUpdate(is_active=False))
    replacement = service.create_branch(db_session, ADMIN, BranchCreate(name="North"))

    with pytest.raises(DuplicateBranchNameError):
        service.update_branch(db_session, ADMIN, north.id, BranchUpdate(is_active=True))
    south = service.create_branch(db_session, ADMIN, BranchCreate(name="South"))
    with pytest.raises(DuplicateBranchNameError):
        service.update_branch(db_session, ADMIN, south.id, BranchUpdate(name="North"))
    assert replacement.is_active is True


def test_delete_blocked_by_managers_and_active_leads(db_session: Session) -> None:
    branches = BranchService()
    staffed = branches.create_branch(db_session, ADMIN, BranchCreate(name="Staffed"))
    busy = branches.create_branch(db_session, ADMIN, BranchCreate(name="Busy"))
    UserService().create_manager(
        db_session,
        ADMIN,
        CreateManagerInput(name="Maya", email="maya@example.com", password="secret-123", branch_ids=[staffed.id]),
    )
    lead = LeadService().create_lead(db_session, ADMIN, LeadCreate(payload={"name": "Acme"}, branch_id=busy.id))

    with pytest.raises(BranchInUseError) as exc_info:
        branches.delete_branch(db_session, ADMIN, staffed.id)
    assert str(exc_info.value) == "Cannot delete branch with assigned managers"

    with pytest.raises(BranchInUseError) as exc_info:
        branches.delete_branch(db_session, ADMIN, busy.id)
    assert exc_info.value.reason == "active leads"

    LeadService().close_lead(db_session, ADMIN, lead.id, LeadClose(status="Lost"))
    branches.delete_branch(db_session, ADMIN, busy.id)


def test_list_branches_with_stats_and_scope(db_session: Session) -> None:
    branches = BranchService()
    north = branches.create_branch(db_session, ADMIN, BranchCreate(name="North"))
    south = branches.create_branch(db_session, ADMIN, BranchCreate(name="South"))
    closed = branches.create_branch(db_session, ADMIN, BranchCreate(name="Closed"))
    branches.update_branch(db_session, ADMIN, closed.id, BranchUpdate(is_active=False))
    UserService().create_manager(
        db_session,
        ADMIN,
        CreateManagerInput(name="Maya", email="maya@example.com", password="secret-123", branch_ids=[north.id, south.id]),
    )
    LeadService().create_lead(db_session, ADMIN, LeadCreate(payload={"name": "Acme"}, branch_id=north.id))

    stats = {item.name: item for item in branches.list_branches(db_session, ADMIN)}
    assert set(stats) == {"North", "South"}
    assert stats["North"].manager_count == 1
    assert stats["North"].active_lead_count == 1
    assert stats["South"].active_lead_count == 0

    assert len(branches.list_branches(db_session, ADMIN, include_inactive=True)) == 3

    scoped = branches.list_branches(db_session, Actor(id="t1", role=Role.TEAM_LEAD, branch_ids=[south.id]))
    assert [item.id for item in scoped] == [south.id]
    assert branches.list_branches(db_session, Actor(id="t2", role=Role.TEAM_LEAD)) == []
