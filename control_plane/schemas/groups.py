from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class GrantResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    app_id: str
    permissions: list[str]
    granted_at: datetime
    granted_by: str
    expires_at: datetime | None = None


class GrantAssignRequest(BaseModel):
    permissions: list[str] = Field(min_length=1)
    expires_at: datetime | None = None


class GrantAssignResponse(BaseModel):
    grant: GrantResponse
    rejected: list[str] = Field(default_factory=list)
    notifications_scheduled: int = 0


class GroupCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    description: str | None = Field(default=None, max_length=2000)
    member_ids: list[UUID] = Field(default_factory=list)


class GroupUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=120)
    description: str | None = Field(default=None, max_length=2000)


class GroupMembersRequest(BaseModel):
    user_ids: list[UUID] = Field(min_length=1)


class GroupMembersResponse(BaseModel):
    group_id: UUID
    changed: int


class GroupResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    name: str
    description: str | None = None
    member_count: int
    created_by: str
    created_at: datetime
    updated_at: datetime
    last_modified_by: str
    members: list[UUID] | None = None
    app_permissions: list[GrantResponse] | None = None
