from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from leadscope.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class BranchRecord(Base):
    __tablename__ = "ls_branch"
    __table_args__ = (
        Index(
            "uq_ls_branch_active_name",
            "name",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class UserRecord(Base):
    __tablename__ = "ls_user"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    # back-references are lookup-only and fixed at creation
    manager_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    team_lead_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    external_subject_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class UserBranch(Base):
    __tablename__ = "ls_user_branch"
    __table_args__ = (UniqueConstraint("user_id", "branch_id", name="uq_ls_user_branch"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("ls_user.id", ondelete="CASCADE"), nullable=False, index=True)
    branch_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class LeadRecord(Base):
    __tablename__ = "ls_lead"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    # JSON-serialized key/value map, opaque to the store
    payload: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    status: Mapped[str] = mapped_column(String(64), nullable=False, default="New", server_default="New")
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    assigned_to_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    branch_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    is_closed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class LeadContactKey(Base):
    """Indexed projection of the unique contact fields of a lead payload."""

    __tablename__ = "ls_lead_contact_key"
    __table_args__ = (UniqueConstraint("field", "value", name="uq_ls_lead_contact_key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lead_id: Mapped[str] = mapped_column(String(64), ForeignKey("ls_lead.id", ondelete="CASCADE"), nullable=False, index=True)
    field: Mapped[str] = mapped_column(String(32), nullable=False)
    value: Mapped[str] = mapped_column(String(320), nullable=False)


class RecordGrant(Base):
    __tablename__ = "ls_record_grant"
    __table_args__ = (
        UniqueConstraint("collection", "record_id", "subject_id", "capability", name="uq_ls_record_grant"),
        Index("ix_ls_record_grant_record", "collection", "record_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    collection: Mapped[str] = mapped_column(String(32), nullable=False)
    record_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    capability: Mapped[str] = mapped_column(String(16), nullable=False)


class BranchCascadeRun(Base):
    __tablename__ = "ls_branch_cascade"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    manager_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    branch_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", server_default="pending", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    applied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    items: Mapped[list[BranchCascadeItem]] = relationship(
        "BranchCascadeItem",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="BranchCascadeItem.id",
    )


class BranchCascadeItem(Base):
    __tablename__ = "ls_branch_cascade_item"
    __table_args__ = (UniqueConstraint("cascade_id", "user_id", name="uq_ls_branch_cascade_item"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cascade_id: Mapped[str] = mapped_column(String(64), ForeignKey("ls_branch_cascade.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    target_branch_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", server_default="pending")
    applied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    run: Mapped[BranchCascadeRun] = relationship("BranchCascadeRun", back_populates="items")
