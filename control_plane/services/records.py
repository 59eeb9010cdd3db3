from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from control_plane.models.group import GroupAppPermission, TenantGroup
from control_plane.models.membership import DirectAppPermission


@dataclass(slots=True)
class GrantRecord:
    app_id: str
    permissions: list[str]
    granted_at: datetime
    granted_by: str
    expires_at: datetime | None = None

    @classmethod
    def from_model(cls, row: GroupAppPermission | DirectAppPermission) -> GrantRecord:
        return cls(
            app_id=row.app_id,
            permissions=list(row.permissions),
            granted_at=row.granted_at,
            granted_by=row.granted_by,
            expires_at=row.expires_at,
        )

    def is_active(self, now: datetime) -> bool:
        return self.expires_at is None or self.expires_at > now


@dataclass(slots=True)
class GrantResult:
    grant: GrantRecord
    rejected: list[str] = field(default_factory=list)
    notifications_scheduled: int = 0


@dataclass(slots=True)
class GroupRecord:
    id: UUID
    tenant_id: UUID
    name: str
    description: str | None
    member_count: int
    created_by: str
    created_at: datetime
    updated_at: datetime
    last_modified_by: str
    members: list[UUID] | None = None
    app_permissions: list[GrantRecord] | None = None

    @classmethod
    def from_model(
        cls,
        group: TenantGroup,
        *,
        members: list[UUID] | None = None,
        app_permissions: list[GrantRecord] | None = None,
    ) -> GroupRecord:
        return cls(
            id=group.id,
            tenant_id=group.tenant_id,
            name=group.name,
            description=group.description,
            member_count=group.member_count,
            created_by=group.created_by,
            created_at=group.created_at,
            updated_at=group.updated_at,
            last_modified_by=group.last_modified_by,
            members=members,
            app_permissions=app_permissions,
        )
