from control_plane.schemas.admin import DataLocationResponse, MigrationRequest, MigrationResponse, SweepResponse
from control_plane.schemas.groups import (
    GrantAssignRequest,
    GrantAssignResponse,
    GrantResponse,
    GroupCreateRequest,
    GroupMembersRequest,
    GroupMembersResponse,
    GroupResponse,
    GroupUpdateRequest,
)
from control_plane.schemas.permissions import (
    EffectivePermissionsResponse,
    ManageableAppsResponse,
    PermissionStatsResponse,
)

__all__ = [
    "DataLocationResponse",
    "MigrationRequest",
    "MigrationResponse",
    "SweepResponse",
    "GrantAssignRequest",
    "GrantAssignResponse",
    "GrantResponse",
    "GroupCreateRequest",
    "GroupMembersRequest",
    "GroupMembersResponse",
    "GroupResponse",
    "GroupUpdateRequest",
    "EffectivePermissionsResponse",
    "ManageableAppsResponse",
    "PermissionStatsResponse",
]
