from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.core.db import StoreClient, dialect_insert, session_dialect
from control_plane.core.errors import (
    ConflictError,
    GroupNotFoundError,
    InvalidInputError,
    MembershipNotFoundError,
    Outcome,
    StoreUnavailableError,
    TenantNotFoundError,
)
from control_plane.models.base import utcnow
from control_plane.models.group import GroupAppPermission, TenantGroup, TenantGroupMember
from control_plane.models.membership import TenantMembership
from control_plane.models.tenant import Tenant
from control_plane.services.grants import check_grant_request, normalize_expiry, upsert_grant
from control_plane.services.notifications import DEFAULT_ALERT_DAYS, schedule_expiration_notifications
from control_plane.services.permission_cache import EffectivePermissionCache
from control_plane.services.records import GrantRecord, GrantResult, GroupRecord

logger = logging.getLogger(__name__)


class GroupRegistry:
    """Named groups per tenant: membership lists and app grants inherited by members."""

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

    async def create_group(
        self,
        tenant_id: UUID,
        name: str,
        created_by: str,
        *,
        description: str | None = None,
        member_ids: Iterable[UUID] = (),
    ) -> Outcome[GroupRecord]:
        name = (name or "").strip()
        if not name:
            return Outcome.failure(InvalidInputError("Group name is required"))

        members = list(dict.fromkeys(member_ids))
        now = self._clock()
        try:
            async with self._store.session() as session:
                if await session.get(Tenant, tenant_id) is None:
                    return Outcome.failure(TenantNotFoundError(tenant_id))
                outsider = await self._first_non_member(session, tenant_id, members)
                if outsider is not None:
                    return Outcome.failure(MembershipNotFoundError(outsider, tenant_id))

                # The unique index still guards the race between check and insert.
                if await self._name_taken(session, tenant_id, name):
                    logger.warning("Group name %r already exists for tenant %s", name, tenant_id)
                    return Outcome.failure(ConflictError(f"Group name {name!r} already exists"))

                group = TenantGroup(
                    tenant_id=tenant_id,
                    name=name,
                    description=description,
                    member_count=len(members),
                    created_by=created_by,
                    last_modified_by=created_by,
                    created_at=now,
                    updated_at=now,
                )
                session.add(group)
                await session.flush()
                session.add_all(
                    TenantGroupMember(group_id=group.id, user_id=user_id, position=index, added_at=now)
                    for index, user_id in enumerate(members)
                )
                await session.commit()
        except IntegrityError:
            logger.warning("Concurrent creation of group %r for tenant %s", name, tenant_id)
            return Outcome.failure(ConflictError(f"Group name {name!r} already exists"))
        except SQLAlchemyError:
            logger.exception("Error creating group %r for tenant %s", name, tenant_id)
            return Outcome.failure(StoreUnavailableError("Failed to create group"))

        logger.info("Created group %s for tenant %s", group.id, tenant_id)
        await self._invalidate(members, tenant_id)
        return Outcome.success(GroupRecord.from_model(group, members=members, app_permissions=[]))

    async def update_group(
        self,
        group_id: UUID,
        updated_by: str,
        *,
        name: str | None = None,
        description: str | None = None,
    ) -> Outcome[GroupRecord]:
        try:
            async with self._store.session() as session:
                group = await session.get(TenantGroup, group_id)
                if group is None:
                    return Outcome.failure(GroupNotFoundError(group_id))

                if name is not None:
                    name = name.strip()
                    if not name:
                        return Outcome.failure(InvalidInputError("Group name cannot be empty"))
                    if name != group.name and await self._name_taken(session, group.tenant_id, name):
                        return Outcome.failure(ConflictError(f"Group name {name!r} already exists"))
                    group.name = name
                if description is not None:
                    group.description = description

                group.updated_at = self._clock()
                group.last_modified_by = updated_by
                await session.commit()
        except IntegrityError:
            return Outcome.failure(ConflictError(f"Group name {name!r} already exists"))
        except SQLAlchemyError:
            logger.exception("Error updating group %s", group_id)
            return Outcome.failure(StoreUnavailableError("Failed to update group"))

        return Outcome.success(GroupRecord.from_model(group))

    async def delete_group(self, group_id: UUID) -> Outcome[bool]:
        """Delete a group with its members and grants; members' caches are dropped."""
        try:
            async with self._store.session() as session:
                group = await session.get(TenantGroup, group_id)
                if group is None:
                    return Outcome.failure(GroupNotFoundError(group_id))
                tenant_id = group.tenant_id
                members = await self._member_ids(session, group_id)

                await session.execute(delete(TenantGroupMember).where(TenantGroupMember.group_id == group_id))
                await session.execute(delete(GroupAppPermission).where(GroupAppPermission.group_id == group_id))
                await session.delete(group)
                await session.commit()
        except SQLAlchemyError:
            logger.exception("Error deleting group %s", group_id)
            return Outcome.failure(StoreUnavailableError("Failed to delete group"))

        logger.info("Deleted group %s from tenant %s", group_id, tenant_id)
        await self._invalidate(members, tenant_id)
        return Outcome.success(True)

    async def add_members(self, group_id: UUID, user_ids: Iterable[UUID], updated_by: str) -> Outcome[int]:
        requested = list(dict.fromkeys(user_ids))
        if not requested:
            return Outcome.success(0)

        now = self._clock()
        try:
            async with self._store.session() as session:
                group = await session.get(TenantGroup, group_id)
                if group is None:
                    return Outcome.failure(GroupNotFoundError(group_id))
                tenant_id = group.tenant_id
                outsider = await self._first_non_member(session, tenant_id, requested)
                if outsider is not None:
                    return Outcome.failure(MembershipNotFoundError(outsider, tenant_id))

                existing = set(
                    await session.scalars(
                        select(TenantGroupMember.user_id).where(
                            TenantGroupMember.group_id == group_id,
                            TenantGroupMember.user_id.in_(requested),
                        )
                    )
                )
                new_members = [user_id for user_id in requested if user_id not in existing]
                added = 0
                if new_members:
                    next_position = int(
                        await session.scalar(
                            select(func.coalesce(func.max(TenantGroupMember.position) + 1, 0)).where(
                                TenantGroupMember.group_id == group_id
                            )
                        )
                        or 0
                    )
                    stmt = dialect_insert(session_dialect(session), TenantGroupMember.__table__).values(
                        [
                            {
                                "group_id": group_id,
                                "user_id": user_id,
                                "position": next_position + offset,
                                "added_at": now,
                            }
                            for offset, user_id in enumerate(new_members)
                        ]
                    )
                    result = await session.execute(
                        stmt.on_conflict_do_nothing(index_elements=["group_id", "user_id"])
                    )
                    added = max(result.rowcount or 0, 0)

                await self._touch(session, group_id, updated_by, now)
                await session.commit()
        except SQLAlchemyError:
            logger.exception("Error adding members to group %s", group_id)
            return Outcome.failure(StoreUnavailableError("Failed to add members"))

        await self._invalidate(requested, tenant_id)
        return Outcome.success(added)

    async def remove_members(self, group_id: UUID, user_ids: Iterable[UUID], updated_by: str) -> Outcome[int]:
        requested = list(dict.fromkeys(user_ids))
        if not requested:
            return Outcome.success(0)

        now = self._clock()
        try:
            async with self._store.session() as session:
                group = await session.get(TenantGroup, group_id)
                if group is None:
                    return Outcome.failure(GroupNotFoundError(group_id))
                tenant_id = group.tenant_id

                result = await session.execute(
                    delete(TenantGroupMember).where(
                        TenantGroupMember.group_id == group_id,
                        TenantGroupMember.user_id.in_(requested),
                    )
                )
                removed = max(result.rowcount or 0, 0)
                await self._touch(session, group_id, updated_by, now)
                await session.commit()
        except SQLAlchemyError:
            logger.exception("Error removing members from group %s", group_id)
            return Outcome.failure(StoreUnavailableError("Failed to remove members"))

        await self._invalidate(requested, tenant_id)
        return Outcome.success(removed)

    async def get_group(
        self,
        group_id: UUID,
        *,
        include_members: bool = True,
        include_permissions: bool = True,
    ) -> Outcome[GroupRecord]:
        try:
            async with self._store.session() as session:
                group = await session.get(TenantGroup, group_id)
                if group is None:
                    return Outcome.failure(GroupNotFoundError(group_id))
                record = await self._build_record(session, group, include_members, include_permissions)
        except SQLAlchemyError:
            logger.exception("Error fetching group %s", group_id)
            return Outcome.failure(StoreUnavailableError("Failed to fetch group"))
        return Outcome.success(record)

    async def list_groups(
        self,
        tenant_id: UUID,
        *,
        include_members: bool = False,
        include_permissions: bool = False,
    ) -> Outcome[list[GroupRecord]]:
        try:
            async with self._store.session() as session:
                groups = (
                    await session.scalars(
                        select(TenantGroup).where(TenantGroup.tenant_id == tenant_id).order_by(TenantGroup.name)
                    )
                ).all()
                records = [
                    await self._build_record(session, group, include_members, include_permissions)
                    for group in groups
                ]
        except SQLAlchemyError:
            logger.exception("Error listing groups for tenant %s", tenant_id)
            return Outcome.failure(StoreUnavailableError("Failed to list groups"))
        return Outcome.success(records)

    async def get_user_groups(self, tenant_id: UUID, user_id: UUID) -> Outcome[list[GroupRecord]]:
        try:
            async with self._store.session() as session:
                groups = (
                    await session.scalars(
                        select(TenantGroup)
                        .join(TenantGroupMember, TenantGroupMember.group_id == TenantGroup.id)
                        .where(TenantGroup.tenant_id == tenant_id, TenantGroupMember.user_id == user_id)
                        .order_by(TenantGroup.name)
                    )
                ).all()
                records = [await self._build_record(session, group, False, True) for group in groups]
        except SQLAlchemyError:
            logger.exception("Error fetching groups of user %s in tenant %s", user_id, tenant_id)
            return Outcome.failure(StoreUnavailableError("Failed to fetch user groups"))
        return Outcome.success(records)

    async def assign_app(
        self,
        group_id: UUID,
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
                group = await session.get(TenantGroup, group_id)
                if group is None:
                    return Outcome.failure(GroupNotFoundError(group_id))
                tenant_id = group.tenant_id

                await upsert_grant(
                    session,
                    GroupAppPermission.__table__,
                    conflict_columns=("group_id", "app_id"),
                    values={
                        "tenant_id": tenant_id,
                        "group_id": group_id,
                        "app_id": app_id,
                        "permissions": validation.valid,
                        "granted_at": now,
                        "granted_by": granted_by,
                        "expires_at": expires_at,
                    },
                    now=now,
                )
                await self._touch(session, group_id, granted_by, now)

                scheduled = 0
                if expires_at is not None:
                    scheduled = await schedule_expiration_notifications(
                        session,
                        tenant_id=tenant_id,
                        recipient_id=group_id,
                        app_id=app_id,
                        expires_at=expires_at,
                        source="group",
                        source_id=group_id,
                        now=now,
                        alert_days=self._alert_days,
                    )
                members = await self._member_ids(session, group_id)
                await session.commit()
        except SQLAlchemyError:
            logger.exception("Error assigning app %s to group %s", app_id, group_id)
            return Outcome.failure(StoreUnavailableError("Failed to assign app to group"))

        if validation.invalid:
            logger.warning("Rejected permissions %s for app %s on group %s", validation.invalid, app_id, group_id)
        await self._invalidate(members, tenant_id)
        grant = GrantRecord(
            app_id=app_id,
            permissions=validation.valid,
            granted_at=now,
            granted_by=granted_by,
            expires_at=expires_at,
        )
        return Outcome.success(GrantResult(grant=grant, rejected=validation.invalid, notifications_scheduled=scheduled))

    async def remove_app(self, group_id: UUID, app_id: str, removed_by: str) -> Outcome[bool]:
        now = self._clock()
        try:
            async with self._store.session() as session:
                group = await session.get(TenantGroup, group_id)
                if group is None:
                    return Outcome.failure(GroupNotFoundError(group_id))
                tenant_id = group.tenant_id

                result = await session.execute(
                    delete(GroupAppPermission).where(
                        GroupAppPermission.group_id == group_id,
                        GroupAppPermission.app_id == app_id,
                    )
                )
                removed = (result.rowcount or 0) > 0
                if removed:
                    await self._touch(session, group_id, removed_by, now)
                members = await self._member_ids(session, group_id)
                await session.commit()
        except SQLAlchemyError:
            logger.exception("Error removing app %s from group %s", app_id, group_id)
            return Outcome.failure(StoreUnavailableError("Failed to remove app from group"))

        if removed:
            await self._invalidate(members, tenant_id)
        return Outcome.success(removed)

    async def _name_taken(self, session: AsyncSession, tenant_id: UUID, name: str) -> bool:
        existing = await session.scalar(
            select(TenantGroup.id).where(TenantGroup.tenant_id == tenant_id, TenantGroup.name == name)
        )
        return existing is not None

    async def _first_non_member(self, session: AsyncSession, tenant_id: UUID, user_ids: Sequence[UUID]) -> UUID | None:
        if not user_ids:
            return None
        members = set(
            await session.scalars(
                select(TenantMembership.user_id).where(
                    TenantMembership.tenant_id == tenant_id,
                    TenantMembership.user_id.in_(list(user_ids)),
                )
            )
        )
        return next((user_id for user_id in user_ids if user_id not in members), None)

    async def _member_ids(self, session: AsyncSession, group_id: UUID) -> list[UUID]:
        return list(
            await session.scalars(
                select(TenantGroupMember.user_id)
                .where(TenantGroupMember.group_id == group_id)
                .order_by(TenantGroupMember.position, TenantGroupMember.added_at)
            )
        )

    async def _touch(self, session: AsyncSession, group_id: UUID, modified_by: str, now: datetime) -> None:
        # member_count follows the member rows, so duplicate adds cannot drift it.
        member_count = (
            select(func.count())
            .select_from(TenantGroupMember)
            .where(TenantGroupMember.group_id == group_id)
            .scalar_subquery()
        )
        await session.execute(
            update(TenantGroup)
            .where(TenantGroup.id == group_id)
            .values(member_count=member_count, updated_at=now, last_modified_by=modified_by)
            .execution_options(synchronize_session=False)
        )

    async def _build_record(
        self,
        session: AsyncSession,
        group: TenantGroup,
        include_members: bool,
        include_permissions: bool,
    ) -> GroupRecord:
        await session.refresh(group)
        members = await self._member_ids(session, group.id) if include_members else None
        app_permissions = None
        if include_permissions:
            rows = await session.scalars(
                select(GroupAppPermission)
                .where(GroupAppPermission.group_id == group.id)
                .order_by(GroupAppPermission.app_id)
            )
            app_permissions = [GrantRecord.from_model(row) for row in rows]
        return GroupRecord.from_model(group, members=members, app_permissions=app_permissions)

    async def _invalidate(self, user_ids: Iterable[UUID], tenant_id: UUID) -> None:
        if self._cache is None:
            return
        await self._cache.invalidate_many((user_id, tenant_id) for user_id in user_ids)
