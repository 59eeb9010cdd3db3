from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import datetime
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.core.db import StoreClient
from control_plane.core.errors import (
    InvalidInputError,
    MembershipNotFoundError,
    Outcome,
    StoreUnavailableError,
)
from control_plane.models.base import utcnow
from control_plane.models.membership import DirectAppPermission, TenantMembership
from control_plane.services.grants import check_grant_request, normalize_expiry, upsert_grant
from control_plane.services.notifications import DEFAULT_ALERT_DAYS, schedule_expiration_notifications
from control_plane.services.permission_cache import EffectivePermissionCache
from control_plane.services.records import GrantRecord, GrantResult

logger = logging.getLogger(__name__)


class DirectGrantStore:
    """App grants held by one membership, outside any group."""

    def __init__(
        self,
        store: StoreClient,
        *,
        cache: EffectivePermissionCache | None = None,
        alert_days: Sequence[int] = DEFAULT_ALERT_DAYS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._cache = cache
        self._alert_days = tuple(alert_days)
        self._clock = clock

    async def assign(
        self,
        user_id: UUID,
        tenant_id: UUID,
        app_id: str,
        permissions: Sequence[str],
        granted_by: str,
        expires_at: datetime | None = None,
    ) -> Outcome[GrantResult]:
        now = self._clock()
        expires_at = normalize_expiry(expires_at)
        try:
            validation = check_grant_request(app_id, permissions, expires_at, now)
        except InvalidInputError as exc:
            return Outcome.failure(exc)

        try:
            async with self._store.session() as session:
                membership = await self._membership(session, user_id, tenant_id)
                if membership is None:
                    return Outcome.failure(MembershipNotFoundError(user_id, tenant_id))

                await upsert_grant(
                    session,
                    DirectAppPermission.__table__,
                    conflict_columns=("membership_id", "app_id"),
                    values={
                        "tenant_id": tenant_id,
                        "membership_id": membership.id,
                        "user_id": user_id,
                        "app_id": app_id,
                        "permissions": validation.valid,
                        "granted_at": now,
                        "granted_by": granted_by,
                        "expires_at": expires_at,
                    },
                    now=now,
                )

                scheduled = 0
                if expires_at is not None:
                    scheduled = await schedule_expiration_notifications(
                        session,
                        tenant_id=tenant_id,
                        recipient_id=user_id,
                        app_id=app_id,
                        expires_at=expires_at,
                        source="direct",
                        source_id=membership.id,
                        now=now,
                        alert_days=self._alert_days,
                    )
                await session.commit()
        except SQLAlchemyError:
            logger.exception("Error assigning app %s to user %s in tenant %s", app_id, user_id, tenant_id)
            return Outcome.failure(StoreUnavailableError("Failed to assign app to user"))

        logger.info("Assigned app %s to user %s in tenant %s", app_id, user_id, tenant_id)
        await self._invalidate(user_id, tenant_id)
        grant = GrantRecord(
            app_id=app_id,
            permissions=validation.valid,
            granted_at=now,
            granted_by=granted_by,
            expires_at=expires_at,
        )
        return Outcome.success(GrantResult(grant=grant, rejected=validation.invalid, notifications_scheduled=scheduled))

    async def revoke(self, user_id: UUID, tenant_id: UUID, app_id: str, revoked_by: str) -> Outcome[bool]:
        try:
            async with self._store.session() as session:
                membership = await self._membership(session, user_id, tenant_id)
                if membership is None:
                    return Outcome.failure(MembershipNotFoundError(user_id, tenant_id))
                result = await session.execute(
                    delete(DirectAppPermission).where(
                        DirectAppPermission.membership_id == membership.id,
                        DirectAppPermission.app_id == app_id,
                    )
                )
                await session.commit()
        except SQLAlchemyError:
            logger.exception("Error revoking app %s from user %s in tenant %s", app_id, user_id, tenant_id)
            return Outcome.failure(StoreUnavailableError("Failed to revoke app from user"))

        revoked = (result.rowcount or 0) > 0
        if revoked:
            logger.info("Revoked app %s from user %s in tenant %s by %s", app_id, user_id, tenant_id, revoked_by)
            await self._invalidate(user_id, tenant_id)
        return Outcome.success(revoked)

    async def list_grants(self, user_id: UUID, tenant_id: UUID) -> Outcome[list[GrantRecord]]:
        try:
            async with self._store.session() as session:
                membership = await self._membership(session, user_id, tenant_id)
                if membership is None:
                    return Outcome.failure(MembershipNotFoundError(user_id, tenant_id))
                rows = await session.scalars(
                    select(DirectAppPermission)
                    .where(DirectAppPermission.membership_id == membership.id)
                    .order_by(DirectAppPermission.granted_at, DirectAppPermission.app_id)
                )
                grants = [GrantRecord.from_model(row) for row in rows]
        except SQLAlchemyError:
            logger.exception("Error listing direct grants of user %s in tenant %s", user_id, tenant_id)
            return Outcome.failure(StoreUnavailableError("Failed to list direct grants"))
        return Outcome.success(grants)

    async def _membership(self, session: AsyncSession, user_id: UUID, tenant_id: UUID) -> TenantMembership | None:
        return await session.scalar(
            select(TenantMembership).where(
                TenantMembership.user_id == user_id,
                TenantMembership.tenant_id == tenant_id,
            )
        )

    async def _invalidate(self, user_id: UUID, tenant_id: UUID) -> None:
        if self._cache is not None:
            await self._cache.invalidate(user_id, tenant_id)
