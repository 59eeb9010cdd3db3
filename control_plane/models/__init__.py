from control_plane.models.base import Base, RecordBase, TenantScopedBase, UTCDateTime, utcnow
from control_plane.models.entitlement import TenantAppEntitlement
from control_plane.models.group import GroupAppPermission, TenantGroup, TenantGroupMember
from control_plane.models.membership import DirectAppPermission, TenantMembership
from control_plane.models.migration import TenantMigration
from control_plane.models.notification import PermissionNotification
from control_plane.models.tenant import Tenant
from control_plane.models.user import User

__all__ = [
    "Base",
    "RecordBase",
    "TenantScopedBase",
    "UTCDateTime",
    "utcnow",
    "Tenant",
    "User",
    "TenantMembership",
    "DirectAppPermission",
    "TenantGroup",
    "TenantGroupMember",
    "GroupAppPermission",
    "PermissionNotification",
    "TenantAppEntitlement",
    "TenantMigration",
]
