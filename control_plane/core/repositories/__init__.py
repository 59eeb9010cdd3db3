from control_plane.core.repositories.base import TenantContextMissingError, TenantRepository
from control_plane.core.repositories.business_records import BusinessRecordRepository

__all__ = [
    "BusinessRecordRepository",
    "TenantContextMissingError",
    "TenantRepository",
]
