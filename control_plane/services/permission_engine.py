"""Effective permission resolution.

A user's permissions inside a tenant are the union, per app, of the direct
grants on their membership and the grants of every group in that tenant that
lists them. Grants whose ``expires_at`` has passed are ignored whether or not
the sweeper has removed them yet.

Resolution fails closed: if the store cannot be read the caller gets an empty
result. Those failures are logged on ``FAILCLOSED_LOGGER`` and counted in
``PermissionEngine.metrics["store_failures"]`` so that operators can tell an
outage apart from a user who simply has no grants.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError

from control_plane.core.db import StoreClient
from control_plane.models.base import utcnow
from control_plane.models.entitlement import TenantAppEntitlement
from control_plane.models.group import GroupAppPermission, TenantGroup, TenantGroupMember
from control_plane.models.membership import DirectAppPermission, TenantMembership
from control_plane.models.tenant import Tenant
from control_plane.services.effective import (
    CUSTOM_PERMISSION_PREFIX,
    STANDARD_PERMISSIONS,
    SYSTEM_PERMISSIONS,
    EffectivePermissions,
    PermissionValidation,
    is_valid_permission,
    validate_permissions,
)
from control_plane.services.permission_cache import EffectivePermissionCache

logger = logging.getLogger(__name__)
failclosed_logger = logging.getLogger(f"{__name__}.failclosed")

FAILCLOSED_LOGGER = failclosed_logger.name
STORE_ERRORS: tuple[type[BaseException], ...] = (SQLAlchemyError, OSError, TimeoutError)

__all__ = [
    "CUSTOM_PERMISSION_PREFIX",
    "STANDARD_PERMISSIONS",
    "SYSTEM_PERMISSIONS",
    "EffectivePermissions",
    "PermissionEngine",
    "PermissionStats",
    "PermissionValidation",
    "is_valid_permission",
    "validate_permissions",
]


@dataclass(slots=True)
class PermissionStats:
    total_groups: int = 0
    total_users_with_direct_permissions: int = 0
    total_apps_assigned: int = 0
    expiring_permissions: int = 0


class PermissionEngine:
    def __init__(
        self,
        store: StoreClient,
        *,
        cache: EffectivePermissionCache | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._cache = cache
        self._clock = clock
        self.metrics: dict[str, int] = {"resolutions": 0, "cache_hits": 0, "store_failures": 0}

    async def resolve(self, user_id: UUID, tenant_id: UUID) -> EffectivePermissions:
        self.metrics["resolutions"] += 1
        if self._cache is not None:
            cached = await self._cache.get(user_id, tenant_id)
            if cached is not None:
                self.metrics["cache_hits"] += 1
                return cached

        now = self._clock()
        try:
            permissions = await self._load(user_id, tenant_id, now)
        except STORE_ERRORS as exc:
            self._record_failure("resolve", user_id, tenant_id, exc)
            return EffectivePermissions.empty()

        if self._cache is not None:
            await self._cache.set(user_id, tenant_id, permissions, now=now)
        return permissions

    async def _load(self, user_id: UUID, tenant_id: UUID, now: datetime) -> EffectivePermissions:
        async with self._store.session() as session:
            tenant_status = await session.scalar(select(Tenant.status).where(Tenant.id == tenant_id))
            if tenant_status != "active":
                return EffectivePermissions.empty()

            membership = await session.scalar(
                select(TenantMembership).where(
                    TenantMembership.tenant_id == tenant_id,
                    TenantMembership.user_id == user_id,
                )
            )
            if membership is not None and membership.status != "active":
                return EffectivePermissions.empty()

            grants: list[tuple[str, list[str], datetime | None]] = []
            if membership is not None:
                direct = await session.execute(
                    select(
                        DirectAppPermission.app_id,
                        DirectAppPermission.permissions,
                        DirectAppPermission.expires_at,
                    ).where(
                        DirectAppPermission.membership_id == membership.id,
                        or_(DirectAppPermission.expires_at.is_(None), DirectAppPermission.expires_at > now),
                    )
                )
                grants.extend(direct.tuples())

            inherited = await session.execute(
                select(
                    GroupAppPermission.app_id,
                    GroupAppPermission.permissions,
                    GroupAppPermission.expires_at,
                )
                .join(TenantGroupMember, TenantGroupMember.group_id == GroupAppPermission.group_id)
                .where(
                    GroupAppPermission.tenant_id == tenant_id,
                    TenantGroupMember.user_id == user_id,
                    or_(GroupAppPermission.expires_at.is_(None), GroupAppPermission.expires_at > now),
                )
            )
            grants.extend(inherited.tuples())

        return EffectivePermissions.union(
            (app_id, permissions, expires_at)
            for app_id, permissions, expires_at in grants
            if expires_at is None or expires_at > now
        )

    async def get_app_permissions(self, user_id: UUID, tenant_id: UUID, app_id: str) -> frozenset[str]:
        return (await self.resolve(user_id, tenant_id)).permissions_for(app_id)

    async def has_permission(self, user_id: UUID, tenant_id: UUID, app_id: str, permission: str) -> bool:
        return (await self.resolve(user_id, tenant_id)).has(app_id, permission)

    async def has_any_permission(
        self, user_id: UUID, tenant_id: UUID, app_id: str, permissions: Iterable[str]
    ) -> bool:
        return (await self.resolve(user_id, tenant_id)).has_any(app_id, permissions)

    async def has_all_permissions(
        self, user_id: UUID, tenant_id: UUID, app_id: str, permissions: Iterable[str]
    ) -> bool:
        return (await self.resolve(user_id, tenant_id)).has_all(app_id, permissions)

    async def accessible_apps(self, user_id: UUID, tenant_id: UUID) -> list[str]:
        return (await self.resolve(user_id, tenant_id)).accessible_apps()

    async def can_tenant_admin_manage_app(self, tenant_id: UUID, app_id: str) -> bool:
        try:
            async with self._store.session() as session:
                manageable = await session.scalar(
                    select(TenantAppEntitlement.admin_manageable).where(
                        TenantAppEntitlement.tenant_id == tenant_id,
                        TenantAppEntitlement.app_id == app_id,
                        TenantAppEntitlement.status == "active",
                    )
                )
        except STORE_ERRORS as exc:
            self._record_failure("entitlement", None, tenant_id, exc)
            return False
        return manageable is True

    async def get_tenant_manageable_apps(self, tenant_id: UUID) -> list[str]:
        try:
            async with self._store.session() as session:
                app_ids = await session.scalars(
                    select(TenantAppEntitlement.app_id)
                    .where(
                        TenantAppEntitlement.tenant_id == tenant_id,
                        TenantAppEntitlement.status == "active",
                        TenantAppEntitlement.admin_manageable.is_(True),
                    )
                    .order_by(TenantAppEntitlement.app_id)
                )
                return list(app_ids)
        except STORE_ERRORS as exc:
            self._record_failure("entitlement", None, tenant_id, exc)
            return []

    async def permission_stats(self, tenant_id: UUID, *, horizon: timedelta = timedelta(days=30)) -> PermissionStats:
        cutoff = self._clock() + horizon
        try:
            async with self._store.session() as session:
                total_groups = await session.scalar(
                    select(func.count()).select_from(TenantGroup).where(TenantGroup.tenant_id == tenant_id)
                )
                users_with_direct = await session.scalar(
                    select(func.count(func.distinct(DirectAppPermission.user_id))).where(
                        DirectAppPermission.tenant_id == tenant_id
                    )
                )
                group_rows = (
                    await session.execute(
                        select(GroupAppPermission.app_id, GroupAppPermission.expires_at).where(
                            GroupAppPermission.tenant_id == tenant_id
                        )
                    )
                ).tuples().all()
                direct_rows = (
                    await session.execute(
                        select(DirectAppPermission.app_id, DirectAppPermission.expires_at).where(
                            DirectAppPermission.tenant_id == tenant_id
                        )
                    )
                ).tuples().all()
        except STORE_ERRORS as exc:
            self._record_failure("stats", None, tenant_id, exc)
            return PermissionStats()

        rows = [*group_rows, *direct_rows]
        return PermissionStats(
            total_groups=int(total_groups or 0),
            total_users_with_direct_permissions=int(users_with_direct or 0),
            total_apps_assigned=len({app_id for app_id, _ in rows}),
            expiring_permissions=sum(1 for _, expires_at in rows if expires_at is not None and expires_at <= cutoff),
        )

    def _record_failure(
        self,
        operation: str,
        user_id: UUID | None,
        tenant_id: UUID,
        exc: BaseException,
    ) -> None:
        self.metrics["store_failures"] += 1
        failclosed_logger.error(
            "Permission %s failed closed for user=%s tenant=%s: %s",
            operation,
            user_id,
            tenant_id,
            exc,
            exc_info=exc,
        )

