from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends

from control_plane.api.dependencies import (
    get_data_plane_router,
    get_expiration_sweeper,
    http_error,
    unwrap_or_raise,
)
from control_plane.core.auth import AuthContext, require_platform_admin
from control_plane.core.errors import TenantNotFoundError
from control_plane.schemas.admin import DataLocationResponse, MigrationRequest, MigrationResponse, SweepResponse
from control_plane.services.data_plane import DataPlaneRouter
from control_plane.services.expiration_sweeper import ExpirationSweeper

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/tenants/{tenant_id}/data-location", response_model=DataLocationResponse)
async def get_data_location(
    tenant_id: UUID,
    _: AuthContext = Depends(require_platform_admin),
    data_planes: DataPlaneRouter = Depends(get_data_plane_router),
) -> DataLocationResponse:
    try:
        location = await data_planes.get_tenant_data_location(tenant_id)
    except TenantNotFoundError as exc:
        raise http_error(exc) from exc
    return DataLocationResponse(tenant_id=tenant_id, database=location.database, type=location.type)


@router.post("/tenants/{tenant_id}/migrate", response_model=MigrationResponse)
async def migrate_tenant(
    tenant_id: UUID,
    payload: MigrationRequest,
    _: AuthContext = Depends(require_platform_admin),
    data_planes: DataPlaneRouter = Depends(get_data_plane_router),
) -> MigrationResponse:
    report = unwrap_or_raise(await data_planes.migrate_tenant_to_dedicated(tenant_id, payload.slug))
    return MigrationResponse(
        tenant_id=report.tenant_id,
        migration_id=report.migration_id,
        status=report.status,
        target_database=report.target_database,
        collections=report.collections,
        records_moved=report.records_moved,
    )


@router.post("/sweep", response_model=SweepResponse)
async def run_sweep(
    _: AuthContext = Depends(require_platform_admin),
    sweeper: ExpirationSweeper = Depends(get_expiration_sweeper),
) -> SweepResponse:
    report = await sweeper.sweep()
    return SweepResponse(
        swept_at=report.swept_at,
        group_grants_removed=report.group_grants_removed,
        direct_grants_removed=report.direct_grants_removed,
        removed=report.removed,
        invalidated=report.invalidated,
    )
