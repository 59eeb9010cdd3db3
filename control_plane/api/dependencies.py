from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TypeVar

from fastapi import Depends, HTTPException, Request, status

from control_plane.core.auth import AuthContext, require_auth_context
from control_plane.core.errors import ControlPlaneError, Outcome
from control_plane.services.data_plane import DataPlaneRouter
from control_plane.services.direct_grants import DirectGrantStore
from control_plane.services.expiration_sweeper import ExpirationSweeper
from control_plane.services.group_registry import GroupRegistry
from control_plane.services.permission_engine import PermissionEngine
from control_plane.services.tenant_directory import TenantDirectory

T = TypeVar("T")


def get_permission_engine(request: Request) -> PermissionEngine:
    return request.app.state.permission_engine


def get_group_registry(request: Request) -> GroupRegistry:
    return request.app.state.group_registry


def get_direct_grants(request: Request) -> DirectGrantStore:
    return request.app.state.direct_grants


def get_tenant_directory(request: Request) -> TenantDirectory:
    return request.app.state.tenant_directory


def get_data_plane_router(request: Request) -> DataPlaneRouter:
    return request.app.state.data_plane_router


def get_expiration_sweeper(request: Request) -> ExpirationSweeper:
    return request.app.state.expiration_sweeper


def http_error(error: ControlPlaneError) -> HTTPException:
    return HTTPException(status_code=error.status_code, detail=error.payload())


def unwrap_or_raise(outcome: Outcome[T]) -> T:
    if outcome.error is not None:
        raise http_error(outcome.error)
    return outcome.value


def require_permission(app_id: str, permission: str) -> Callable[..., Awaitable[AuthContext]]:
    """Dependency that admits the caller only if they hold ``permission`` on ``app_id``."""

    async def _dependency(
        auth: AuthContext = Depends(require_auth_context),
        engine: PermissionEngine = Depends(get_permission_engine),
    ) -> AuthContext:
        if not await engine.has_permission(auth.user_id, auth.tenant_id, app_id, permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permission {permission!r} on app {app_id!r}",
            )
        return auth

    return _dependency
