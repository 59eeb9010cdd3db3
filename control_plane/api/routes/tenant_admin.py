from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Response, status

from control_plane.api.dependencies import (
    get_direct_grants,
    get_group_registry,
    get_permission_engine,
    unwrap_or_raise,
)
from control_plane.core.auth import AuthContext, require_tenant_admin
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
from control_plane.services.direct_grants import DirectGrantStore
from control_plane.services.group_registry import GroupRegistry
from control_plane.services.permission_engine import PermissionEngine
from control_plane.services.records import GrantResult, GroupRecord

router = APIRouter(prefix="/tenant-admin", tags=["tenant-admin"])


async def _tenant_group(groups: GroupRegistry, group_id: UUID, auth: AuthContext) -> GroupRecord:
    group = unwrap_or_raise(await groups.get_group(group_id))
    # Groups of other tenants are reported as missing.
    if group.tenant_id != auth.tenant_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Group not found")
    return group


async def _require_manageable(engine: PermissionEngine, auth: AuthContext, app_id: str) -> None:
    if not await engine.can_tenant_admin_manage_app(auth.tenant_id, app_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"App {app_id!r} cannot be managed by tenant admins",
        )


def _grant_response(result: GrantResult) -> GrantAssignResponse:
    return GrantAssignResponse(
        grant=GrantResponse.model_validate(result.grant),
        rejected=result.rejected,
        notifications_scheduled=result.notifications_scheduled,
    )


@router.get("/groups", response_model=list[GroupResponse])
async def list_groups(
    auth: AuthContext = Depends(require_tenant_admin),
    groups: GroupRegistry = Depends(get_group_registry),
) -> list[GroupResponse]:
    records = unwrap_or_raise(await groups.list_groups(auth.tenant_id, include_permissions=True))
    return [GroupResponse.model_validate(record) for record in records]


@router.post("/groups", response_model=GroupResponse, status_code=status.HTTP_201_CREATED)
async def create_group(
    payload: GroupCreateRequest,
    auth: AuthContext = Depends(require_tenant_admin),
    groups: GroupRegistry = Depends(get_group_registry),
) -> GroupResponse:
    record = unwrap_or_raise(
        await groups.create_group(
            auth.tenant_id,
            payload.name,
            auth.subject,
            description=payload.description,
            member_ids=payload.member_ids,
        )
    )
    return GroupResponse.model_validate(record)


@router.get("/groups/{group_id}", response_model=GroupResponse)
async def get_group(
    group_id: UUID,
    auth: AuthContext = Depends(require_tenant_admin),
    groups: GroupRegistry = Depends(get_group_registry),
) -> GroupResponse:
    return GroupResponse.model_validate(await _tenant_group(groups, group_id, auth))


@router.patch("/groups/{group_id}", response_model=GroupResponse)
async def update_group(
    group_id: UUID,
    payload: GroupUpdateRequest,
    auth: AuthContext = Depends(require_tenant_admin),
    groups: GroupRegistry = Depends(get_group_registry),
) -> GroupResponse:
    await _tenant_group(groups, group_id, auth)
    record = unwrap_or_raise(
        await groups.update_group(group_id, auth.subject, name=payload.name, description=payload.description)
    )
    return GroupResponse.model_validate(record)


@router.delete("/groups/{group_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_group(
    group_id: UUID,
    auth: AuthContext = Depends(require_tenant_admin),
    groups: GroupRegistry = Depends(get_group_registry),
) -> Response:
    await _tenant_group(groups, group_id, auth)
    unwrap_or_raise(await groups.delete_group(group_id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/groups/{group_id}/members", response_model=GroupMembersResponse)
async def add_group_members(
    group_id: UUID,
    payload: GroupMembersRequest,
    auth: AuthContext = Depends(require_tenant_admin),
    groups: GroupRegistry = Depends(get_group_registry),
) -> GroupMembersResponse:
    await _tenant_group(groups, group_id, auth)
    added = unwrap_or_raise(await groups.add_members(group_id, payload.user_ids, auth.subject))
    return GroupMembersResponse(group_id=group_id, changed=added)


@router.post("/groups/{group_id}/members/remove", response_model=GroupMembersResponse)
async def remove_group_members(
    group_id: UUID,
    payload: GroupMembersRequest,
    auth: AuthContext = Depends(require_tenant_admin),
    groups: GroupRegistry = Depends(get_group_registry),
) -> GroupMembersResponse:
    await _tenant_group(groups, group_id, auth)
    removed = unwrap_or_raise(await groups.remove_members(group_id, payload.user_ids, auth.subject))
    return GroupMembersResponse(group_id=group_id, changed=removed)


@router.put("/groups/{group_id}/apps/{app_id}", response_model=GrantAssignResponse)
async def assign_group_app(
    group_id: UUID,
    app_id: str,
    payload: GrantAssignRequest,
    auth: AuthContext = Depends(require_tenant_admin),
    groups: GroupRegistry = Depends(get_group_registry),
    engine: PermissionEngine = Depends(get_permission_engine),
) -> GrantAssignResponse:
    await _tenant_group(groups, group_id, auth)
    await _require_manageable(engine, auth, app_id)
    result = unwrap_or_raise(
        await groups.assign_app(group_id, app_id, payload.permissions, auth.subject, payload.expires_at)
    )
    return _grant_response(result)


@router.delete("/groups/{group_id}/apps/{app_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_group_app(
    group_id: UUID,
    app_id: str,
    auth: AuthContext = Depends(require_tenant_admin),
    groups: GroupRegistry = Depends(get_group_registry),
) -> Response:
    await _tenant_group(groups, group_id, auth)
    if not unwrap_or_raise(await groups.remove_app(group_id, app_id, auth.subject)):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="App is not assigned to this group")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put("/users/{user_id}/apps/{app_id}", response_model=GrantAssignResponse)
async def assign_user_app(
    user_id: UUID,
    app_id: str,
    payload: GrantAssignRequest,
    auth: AuthContext = Depends(require_tenant_admin),
    direct_grants: DirectGrantStore = Depends(get_direct_grants),
    engine: PermissionEngine = Depends(get_permission_engine),
) -> GrantAssignResponse:
    await _require_manageable(engine, auth, app_id)
    result = unwrap_or_raise(
        await direct_grants.assign(
            user_id,
            auth.tenant_id,
            app_id,
            payload.permissions,
            auth.subject,
            payload.expires_at,
        )
    )
    return _grant_response(result)


@router.delete("/users/{user_id}/apps/{app_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_user_app(
    user_id: UUID,
    app_id: str,
    auth: AuthContext = Depends(require_tenant_admin),
    direct_grants: DirectGrantStore = Depends(get_direct_grants),
) -> Response:
    if not unwrap_or_raise(await direct_grants.revoke(user_id, auth.tenant_id, app_id, auth.subject)):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="App is not assigned to this user")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/users/{user_id}/permissions", response_model=EffectivePermissionsResponse)
async def get_user_permissions(
    user_id: UUID,
    auth: AuthContext = Depends(require_tenant_admin),
    engine: PermissionEngine = Depends(get_permission_engine),
) -> EffectivePermissionsResponse:
    effective = await engine.resolve(user_id, auth.tenant_id)
    return EffectivePermissionsResponse(
        user_id=user_id,
        tenant_id=auth.tenant_id,
        apps=effective.as_dict(),
        earliest_expiry=effective.earliest_expiry,
    )


@router.get("/apps", response_model=ManageableAppsResponse)
async def list_manageable_apps(
    auth: AuthContext = Depends(require_tenant_admin),
    engine: PermissionEngine = Depends(get_permission_engine),
) -> ManageableAppsResponse:
    return ManageableAppsResponse(
        tenant_id=auth.tenant_id,
        app_ids=await engine.get_tenant_manageable_apps(auth.tenant_id),
    )


@router.get("/stats", response_model=PermissionStatsResponse)
async def get_permission_stats(
    auth: AuthContext = Depends(require_tenant_admin),
    engine: PermissionEngine = Depends(get_permission_engine),
) -> PermissionStatsResponse:
    stats = await engine.permission_stats(auth.tenant_id)
    return PermissionStatsResponse(
        total_groups=stats.total_groups,
        total_users_with_direct_permissions=stats.total_users_with_direct_permissions,
        total_apps_assigned=stats.total_apps_assigned,
        expiring_permissions=stats.expiring_permissions,
    )
