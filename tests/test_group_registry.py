from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from control_plane.core.errors import (
    ConflictError,
    GroupNotFoundError,
    InvalidInputError,
    MembershipNotFoundError,
    PermissionValidationError,
    TenantNotFoundError,
)
from control_plane.models.group import GroupAppPermission, TenantGroupMember
from control_plane.models.notification import PermissionNotification
from control_plane.services.group_registry import GroupRegistry
from factories import add_membership, add_tenant, add_user


@pytest.fixture
def registry(store, cache, clock) -> GroupRegistry:
    return GroupRegistry(store, cache=cache, clock=clock)


async def _members(store, tenant_id, count: int) -> list:
    user_ids = []
    for index in range(count):
        user = await add_user(store, f"user{index}-{uuid4().hex[:6]}@acme.test")
        await add_membership(store, tenant_id, user.id)
        user_ids.append(user.id)
    return user_ids


@pytest.mark.asyncio
async def test_assigning_same_app_replaces_previous_grant(store, registry: GroupRegistry) -> None:
    tenant = await add_tenant(store)
    group = (await registry.create_group(tenant.id, "Analysts", "admin@acme")).unwrap()

    assert (await registry.assign_app(group.id, "crm", ["view"], "admin@acme")).ok
    assert (await registry.assign_app(group.id, "crm", ["edit"], "admin@acme")).ok

    async with store.session() as session:
        rows = (
            await session.scalars(select(GroupAppPermission).where(GroupAppPermission.group_id == group.id))
        ).all()
    assert len(rows) == 1
    assert rows[0].permissions == ["edit"]


@pytest.mark.asyncio
async def test_duplicate_group_name_is_conflict(store, registry: GroupRegistry) -> None:
    tenant = await add_tenant(store)
    assert (await registry.create_group(tenant.id, "Sales", "owner")).ok

    outcome = await registry.create_group(tenant.id, "Sales", "owner")

    assert not outcome.ok
    assert isinstance(outcome.error, ConflictError)


@pytest.mark.asyncio
async def test_same_group_name_allowed_in_other_tenant(store, registry: GroupRegistry) -> None:
    first = await add_tenant(store, slug="acme")
    second = await add_tenant(store, slug="globex")

    assert (await registry.create_group(first.id, "Sales", "owner")).ok
    assert (await registry.create_group(second.id, "Sales", "owner")).ok


@pytest.mark.asyncio
async def test_create_group_for_unknown_tenant(registry: GroupRegistry) -> None:
    outcome = await registry.create_group(uuid4(), "Sales", "owner")

    assert isinstance(outcome.error, TenantNotFoundError)


@pytest.mark.asyncio
async def test_member_count_tracks_member_rows(store, registry: GroupRegistry) -> None:
    tenant = await add_tenant(store)
    alice, bob, carol = await _members(store, tenant.id, 3)
    group = (await registry.create_group(tenant.id, "Ops", "owner", member_ids=[alice, bob])).unwrap()
    assert group.member_count == 2

    added = (await registry.add_members(group.id, [bob, carol], "owner")).unwrap()
    assert added == 1

    removed = (await registry.remove_members(group.id, [alice, uuid4()], "owner")).unwrap()
    assert removed == 1

    refreshed = (await registry.get_group(group.id)).unwrap()
    assert refreshed.member_count == 2
    assert refreshed.members == [bob, carol]
    assert refreshed.last_modified_by == "owner"


@pytest.mark.asyncio
async def test_assign_reports_rejected_permissions(registry: GroupRegistry, store) -> None:
    tenant = await add_tenant(store)
    group = (await registry.create_group(tenant.id, "Ops", "owner")).unwrap()

    result = (await registry.assign_app(group.id, "crm", ["view", "bogus", "custom:x"], "owner")).unwrap()

    assert result.grant.permissions == ["view", "custom:x"]
    assert result.rejected == ["bogus"]


@pytest.mark.asyncio
async def test_assign_with_only_invalid_permissions_fails(registry: GroupRegistry, store) -> None:
    tenant = await add_tenant(store)
    group = (await registry.create_group(tenant.id, "Ops", "owner")).unwrap()

    outcome = await registry.assign_app(group.id, "crm", ["bogus"], "owner")

    assert isinstance(outcome.error, PermissionValidationError)
    assert outcome.error.invalid == ["bogus"]
    assert outcome.error.payload()["invalid"] == ["bogus"]


@pytest.mark.asyncio
async def test_assign_rejects_expiry_in_the_past(registry: GroupRegistry, store, clock) -> None:
    tenant = await add_tenant(store)
    group = (await registry.create_group(tenant.id, "Ops", "owner")).unwrap()

    outcome = await registry.assign_app(group.id, "crm", ["view"], "owner", clock.now - timedelta(minutes=1))

    assert isinstance(outcome.error, InvalidInputError)


@pytest.mark.asyncio
async def test_assign_to_missing_group(registry: GroupRegistry) -> None:
    outcome = await registry.assign_app(uuid4(), "crm", ["view"], "owner")

    assert isinstance(outcome.error, GroupNotFoundError)


@pytest.mark.asyncio
async def test_expiring_grant_schedules_each_future_warning_once(registry: GroupRegistry, store, clock) -> None:
    tenant = await add_tenant(store)
    group = (await registry.create_group(tenant.id, "Ops", "owner")).unwrap()
    expires_at = clock.now + timedelta(days=20)

    first = (await registry.assign_app(group.id, "crm", ["view"], "owner", expires_at)).unwrap()
    await registry.assign_app(group.id, "crm", ["view", "edit"], "owner", expires_at)

    async with store.session() as session:
        rows = (
            await session.scalars(
                select(PermissionNotification).order_by(PermissionNotification.days_until_expiration.desc())
            )
        ).all()

    assert first.notifications_scheduled == 3
    assert [row.days_until_expiration for row in rows] == [14, 7, 1]
    assert {row.recipient_id for row in rows} == {group.id}
    assert all(row.permission_source == "group" and row.status == "pending" for row in rows)
    assert all(row.recipient_email == "" and row.app_name == "" for row in rows)


@pytest.mark.asyncio
async def test_membership_change_invalidates_member_cache(registry: GroupRegistry, store, fake_redis) -> None:
    tenant = await add_tenant(store)
    (user_id,) = await _members(store, tenant.id, 1)
    group = (await registry.create_group(tenant.id, "Ops", "owner")).unwrap()

    await registry.add_members(group.id, [user_id], "owner")

    assert f"perms:effective:{tenant.id}:{user_id}" in fake_redis.deleted


@pytest.mark.asyncio
async def test_delete_group_removes_grants_members_and_cache(registry: GroupRegistry, store, fake_redis) -> None:
    tenant = await add_tenant(store)
    (user_id,) = await _members(store, tenant.id, 1)
    group = (await registry.create_group(tenant.id, "Ops", "owner", member_ids=[user_id])).unwrap()
    await registry.assign_app(group.id, "crm", ["view"], "owner")
    fake_redis.deleted.clear()

    assert (await registry.delete_group(group.id)).unwrap() is True

    async with store.session() as session:
        grants = await session.scalar(select(func.count()).select_from(GroupAppPermission))
        members = await session.scalar(select(func.count()).select_from(TenantGroupMember))
    assert grants == 0
    assert members == 0
    assert fake_redis.deleted == [f"perms:effective:{tenant.id}:{user_id}"]
    assert isinstance((await registry.get_group(group.id)).error, GroupNotFoundError)


@pytest.mark.asyncio
async def test_update_group_rename_conflict(registry: GroupRegistry, store) -> None:
    tenant = await add_tenant(store)
    await registry.create_group(tenant.id, "Sales", "owner")
    ops = (await registry.create_group(tenant.id, "Ops", "owner")).unwrap()

    conflict = await registry.update_group(ops.id, "admin", name="Sales")
    renamed = await registry.update_group(ops.id, "admin", name="Operations", description="Runs things")

    assert isinstance(conflict.error, ConflictError)
    assert renamed.unwrap().name == "Operations"
    assert renamed.unwrap().description == "Runs things"


@pytest.mark.asyncio
async def test_user_groups_and_listing(registry: GroupRegistry, store) -> None:
    tenant = await add_tenant(store)
    (user_id,) = await _members(store, tenant.id, 1)
    await registry.create_group(tenant.id, "B-team", "owner", member_ids=[user_id])
    await registry.create_group(tenant.id, "A-team", "owner", member_ids=[user_id])
    await registry.create_group(tenant.id, "C-team", "owner")

    listed = (await registry.list_groups(tenant.id)).unwrap()
    mine = (await registry.get_user_groups(tenant.id, user_id)).unwrap()

    assert [group.name for group in listed] == ["A-team", "B-team", "C-team"]
    assert [group.name for group in mine] == ["A-team", "B-team"]


@pytest.mark.asyncio
async def test_create_group_rejects_users_outside_the_tenant(store, registry: GroupRegistry) -> None:
    acme = await add_tenant(store, slug="acme")
    globex = await add_tenant(store, slug="globex")
    (insider,) = await _members(store, acme.id, 1)
    (outsider,) = await _members(store, globex.id, 1)

    outcome = await registry.create_group(acme.id, "Ops", "owner", member_ids=[insider, outsider])

    assert isinstance(outcome.error, MembershipNotFoundError)
    assert outcome.error.user_id == outsider
    assert (await registry.list_groups(acme.id)).unwrap() == []


@pytest.mark.asyncio
async def test_add_members_rejects_non_members_and_adds_nothing(
    store, registry: GroupRegistry, fake_redis
) -> None:
    tenant = await add_tenant(store)
    (member,) = await _members(store, tenant.id, 1)
    stranger = uuid4()
    group = (await registry.create_group(tenant.id, "Ops", "owner")).unwrap()
    fake_redis.deleted.clear()

    outcome = await registry.add_members(group.id, [member, stranger], "owner")

    assert isinstance(outcome.error, MembershipNotFoundError)
    assert outcome.error.user_id == stranger
    refreshed = (await registry.get_group(group.id)).unwrap()
    assert refreshed.members == []
    assert refreshed.member_count == 0
    assert fake_redis.deleted == []
