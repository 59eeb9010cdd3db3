from __future__ import annotations

from fastapi import APIRouter, Depends

from control_plane.api.dependencies import get_permission_engine
from control_plane.core.auth import AuthContext, require_auth_context
from control_plane.schemas.permissions import EffectivePermissionsResponse
from control_plane.services.permission_engine import PermissionEngine

router = APIRouter(prefix="/me", tags=["permissions"])


@router.get("/permissions", response_model=EffectivePermissionsResponse)
async def get_my_permissions(
    auth: AuthContext = Depends(require_auth_context),
    engine: PermissionEngine = Depends(get_permission_engine),
) -> EffectivePermissionsResponse:
    effective = await engine.resolve(auth.user_id, auth.tenant_id)
    return EffectivePermissionsResponse(
        user_id=auth.user_id,
        tenant_id=auth.tenant_id,
        apps=effective.as_dict(),
        earliest_expiry=effective.earliest_expiry,
    )
