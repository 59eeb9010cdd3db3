from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel


class EffectivePermissionsResponse(BaseModel):
    user_id: UUID
    tenant_id: UUID
    apps: dict[str, list[str]]
    earliest_expiry: datetime | None = None


class PermissionStatsResponse(BaseModel):
    total_groups: int
    total_users_with_direct_permissions: int
    total_apps_assigned: int
    expiring_permissions: int


class ManageableAppsResponse(BaseModel):
    tenant_id: UUID
    app_ids: list[str]
