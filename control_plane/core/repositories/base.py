from __future__ import annotations

from uuid import UUID

from sqlalchemy import Table
from sqlalchemy.sql import Delete, Select, Update

from control_plane.core.context import get_current_tenant_id
from control_plane.models.business import TENANT_TAG
from control_plane.services.data_plane import DataPlaneHandle, DataPlaneRouter

ScopedStatement = Select | Update | Delete


class TenantContextMissingError(RuntimeError):
    pass


class TenantRepository:
    """Base for repositories over data-plane tables of the current request's tenant."""

    def __init__(self, router: DataPlaneRouter) -> None:
        self.router = router

    @property
    def tenant_id(self) -> UUID:
        tenant_id = get_current_tenant_id()
        if tenant_id is None:
            raise TenantContextMissingError("Tenant context is missing from the current request")
        return tenant_id

    async def _handle(self) -> DataPlaneHandle:
        return await self.router.get_tenant_database(self.tenant_id)

    def _scoped(self, statement: ScopedStatement, table: Table, handle: DataPlaneHandle) -> ScopedStatement:
        # Dedicated databases hold a single tenant and carry no tag column.
        if handle.is_shared:
            return statement.where(table.c[TENANT_TAG] == self.tenant_id)
        return statement
