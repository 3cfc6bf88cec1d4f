from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class UserCreateBase(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr
    password: str = Field(min_length=8)
    branch_ids: list[str] = Field(default_factory=list)


class CreateManagerInput(UserCreateBase):
    pass


class CreateTeamLeadInput(UserCreateBase):
    pass


class CreateAgentInput(UserCreateBase):
    pass


class UserUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    email: str
    role: str
    manager_id: str | None
    team_lead_id: str | None
    branch_ids: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class BranchVisibilityRead(BaseModel):
    user_id: str
    visible_branch_ids: list[str]
    hidden_count: int


class ManagerBranchesUpdate(BaseModel):
    branch_ids: list[str]


class LeadCreate(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)
    status: str | None = None
    branch_id: str | None = None
    assigned_to_id: str | None = None


class LeadUpdate(BaseModel):
    payload: dict[str, Any] | None = None
    status: str | None = None


class LeadAssign(BaseModel):
    assigned_to_id: str = Field(min_length=1)


class LeadClose(BaseModel):
    status: str


class LeadRead(BaseModel):
    id: str
    payload: dict[str, Any]
    status: str
    owner_id: str
    assigned_to_id: str | None
    branch_id: str | None
    is_closed: bool
    closed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class LeadListFilters(BaseModel):
    status: str | None = None
    assigned_to_id: str | None = None
    # None lists both active and closed leads
    is_closed: bool | None = False
    created_from: datetime | None = None
    created_to: datetime | None = None
    search: str | None = None
    limit: int = Field(default=50, ge=1, le=500)
    offset: int = Field(default=0, ge=0)


class BranchCreate(BaseModel):
    name: str = Field(min_length=1)


class BranchUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    is_active: bool | None = None


class BranchRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    is_active: bool
    created_at: datetime
    updated_at: datetime


class BranchStatsRead(BranchRead):
    manager_count: int = 0
    active_lead_count: int = 0
