from __future__ import annotations

from unittest.mock import MagicMock
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy import func, insert, select

from control_plane.core.context import reset_current_tenant_id, set_current_tenant_id
from control_plane.core.errors import ConflictError, InvalidInputError, MigrationError, TenantNotFoundError
from control_plane.core.repositories import BusinessRecordRepository, TenantContextMissingError
from control_plane.models.business import DEDICATED_TABLES, SHARED_TABLES
from control_plane.models.migration import TenantMigration
from control_plane.models.tenant import Tenant
from control_plane.scripts.init_databases import init_databases
from control_plane.services.data_plane import DataPlaneRouter
from control_plane.services.tenant_directory import TenantDirectory, plan_data_plane
from factories import add_tenant


@pytest_asyncio.fixture
async def router(store, settings, clock) -> DataPlaneRouter:
    data_planes = DataPlaneRouter(store, settings, clock=clock)
    await data_planes.initialize_databases()
    return data_planes


async def _seed_shared(router: DataPlaneRouter, collection: str, tenant_id, count: int) -> list:
    ids = [uuid4() for _ in range(count)]
    table = SHARED_TABLES[collection]
    async with router.shared_handle().engine.begin() as conn:
        await conn.execute(
            insert(table),
            [{"id": record_id, "tenant_id": tenant_id, "payload": {"n": index}} for index, record_id in enumerate(ids)],
        )
    return ids


async def _count(handle, table, **filters) -> int:
    statement = select(func.count()).select_from(table)
    for column, value in filters.items():
        statement = statement.where(table.c[column] == value)
    async with handle.engine.connect() as conn:
        return int(await conn.scalar(statement))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("plan", "expected"),
    [
        ("free", "shared"),
        ("starter", "shared"),
        ("professional", "dedicated"),
        ("enterprise", "dedicated"),
        ("custom", "dedicated"),
    ],
)
async def test_routing_follows_plan(store, router: DataPlaneRouter, plan: str, expected: str) -> None:
    tenant = await add_tenant(store, slug=f"t-{plan}", plan=plan)

    handle = await router.get_tenant_database(tenant.id)

    assert handle.type == expected
    assert (handle.database == "rmap_shared") is (expected == "shared")


@pytest.mark.asyncio
async def test_professional_acme_routes_to_its_own_database(store, router: DataPlaneRouter) -> None:
    tenant = await add_tenant(store, slug="acme", plan="professional")

    handle = await router.get_tenant_database(tenant.id)
    location = await router.get_tenant_data_location(tenant.id)

    assert handle.type == "dedicated"
    assert handle.database == "rmap_tenant_acme"
    assert handle.engine is not router.shared_handle().engine
    assert (location.database, location.type) == ("rmap_tenant_acme", "dedicated")


@pytest.mark.asyncio
async def test_unknown_tenant_is_not_found(router: DataPlaneRouter) -> None:
    with pytest.raises(TenantNotFoundError):
        await router.get_tenant_database(uuid4())


@pytest.mark.asyncio
async def test_migration_moves_records_and_flips_routing(store, router: DataPlaneRouter) -> None:
    tenant = await add_tenant(store, slug="acme", plan="professional", data_plane_type="shared")
    neighbour = await add_tenant(store, slug="globex", plan="free")
    moved_ids = await _seed_shared(router, "campaigns", tenant.id, 3)
    await _seed_shared(router, "campaigns", neighbour.id, 2)
    await _seed_shared(router, "audiences", tenant.id, 1)

    report = (await router.migrate_tenant_to_dedicated(tenant.id, "acme")).unwrap()

    shared = router.shared_handle()
    dedicated = await router.get_tenant_database(tenant.id)
    assert report.status == "completed"
    assert report.collections == {"campaigns": 3, "audiences": 1, "analytics": 0, "workflows": 0}
    assert report.records_moved == 4
    assert dedicated.type == "dedicated" and dedicated.database == "rmap_tenant_acme"

    campaigns = DEDICATED_TABLES["campaigns"]
    async with dedicated.engine.connect() as conn:
        rows = (await conn.execute(select(campaigns).order_by(campaigns.c.id))).mappings().all()
    assert sorted(row["id"] for row in rows) == sorted(moved_ids)
    assert all("tenant_id" not in row for row in rows)
    assert await _count(shared, SHARED_TABLES["campaigns"], tenant_id=tenant.id) == 0
    assert await _count(shared, SHARED_TABLES["campaigns"], tenant_id=neighbour.id) == 2

    async with store.session() as session:
        migration = await session.scalar(select(TenantMigration).where(TenantMigration.id == report.migration_id))
    assert migration.status == "completed"
    assert migration.records_moved == 4
    assert migration.attempts == 1


@pytest.mark.asyncio
async def test_rerun_on_dedicated_tenant_is_a_no_op(store, router: DataPlaneRouter) -> None:
    tenant = await add_tenant(store, slug="acme", plan="professional", data_plane_type="shared")
    await _seed_shared(router, "campaigns", tenant.id, 1)
    assert (await router.migrate_tenant_to_dedicated(tenant.id, "acme")).ok

    again = (await router.migrate_tenant_to_dedicated(tenant.id, "acme")).unwrap()

    assert again.status == "already_dedicated"
    assert again.records_moved == 0


@pytest.mark.asyncio
async def test_failed_migration_resumes_with_same_token(store, router: DataPlaneRouter, monkeypatch) -> None:
    tenant = await add_tenant(store, slug="acme", plan="enterprise", data_plane_type="shared")
    await _seed_shared(router, "campaigns", tenant.id, 3)
    await _seed_shared(router, "workflows", tenant.id, 2)

    original = router._verify

    def _corrupt_workflows(collection, records, copied, migration_id):
        if collection == "workflows":
            raise MigrationError("workflows: checksum mismatch after copy", migration_id)
        original(collection, records, copied, migration_id)

    monkeypatch.setattr(router, "_verify", _corrupt_workflows)
    failed = await router.migrate_tenant_to_dedicated(tenant.id, "acme")

    assert isinstance(failed.error, MigrationError)
    async with store.session() as session:
        assert (await session.get(Tenant, tenant.id)).data_plane_type == "shared"
    shared = router.shared_handle()
    # Unverified sources stay put; verified collections are already gone.
    assert await _count(shared, SHARED_TABLES["workflows"], tenant_id=tenant.id) == 2
    assert await _count(shared, SHARED_TABLES["campaigns"], tenant_id=tenant.id) == 0

    monkeypatch.setattr(router, "_verify", original)
    resumed = (await router.migrate_tenant_to_dedicated(tenant.id, "acme")).unwrap()

    assert resumed.migration_id == failed.error.migration_id
    assert resumed.collections == {"workflows": 2}
    dedicated = await router.get_tenant_database(tenant.id)
    assert await _count(dedicated, DEDICATED_TABLES["workflows"]) == 2
    assert await _count(dedicated, DEDICATED_TABLES["campaigns"]) == 3
    async with store.session() as session:
        migration = await session.get(TenantMigration, resumed.migration_id)
    assert migration.attempts == 2
    assert migration.status == "completed"
    assert migration.error is None


@pytest.mark.asyncio
async def test_migration_rejects_foreign_slug_and_unknown_tenant(store, router: DataPlaneRouter) -> None:
    tenant = await add_tenant(store, slug="acme", data_plane_type="shared")

    assert isinstance((await router.migrate_tenant_to_dedicated(tenant.id, "globex")).error, InvalidInputError)
    assert isinstance((await router.migrate_tenant_to_dedicated(uuid4(), "acme")).error, TenantNotFoundError)


@pytest.mark.asyncio
async def test_repository_scopes_shared_records_to_current_tenant(store, router: DataPlaneRouter) -> None:
    acme = await add_tenant(store, slug="acme", plan="free")
    globex = await add_tenant(store, slug="globex", plan="free")
    await _seed_shared(router, "campaigns", globex.id, 2)
    repository = BusinessRecordRepository(router, "campaigns")

    with pytest.raises(TenantContextMissingError):
        _ = repository.tenant_id

    token = set_current_tenant_id(acme.id)
    try:
        created = await repository.create({"name": "Spring sale"})
        assert "tenant_id" not in created
        assert await repository.count() == 1
        assert [record["payload"] for record in await repository.list()] == [{"name": "Spring sale"}]

        updated = await repository.update(created["id"], {"name": "Summer sale"})
        assert updated["payload"] == {"name": "Summer sale"}
        assert await repository.delete(created["id"]) is True
        assert await repository.get(created["id"]) is None
    finally:
        reset_current_tenant_id(token)


@pytest.mark.asyncio
async def test_repository_reads_dedicated_plane_after_migration(store, router: DataPlaneRouter) -> None:
    tenant = await add_tenant(store, slug="acme", plan="professional", data_plane_type="shared")
    ids = await _seed_shared(router, "audiences", tenant.id, 2)
    await router.migrate_tenant_to_dedicated(tenant.id, "acme")
    repository = BusinessRecordRepository(router, "audiences")

    token = set_current_tenant_id(tenant.id)
    try:
        records = await repository.list()
        assert sorted(record["id"] for record in records) == sorted(ids)
        assert await repository.get(ids[0]) is not None
    finally:
        reset_current_tenant_id(token)


def test_repository_rejects_unknown_collection() -> None:
    with pytest.raises(ValueError):
        BusinessRecordRepository(MagicMock(), "invoices")


@pytest.mark.asyncio
async def test_tenant_record_keeps_plan_after_migration(store, router: DataPlaneRouter) -> None:
    tenant = await add_tenant(store, slug="acme", plan="professional", data_plane_type="shared")

    await router.migrate_tenant_to_dedicated(tenant.id, "acme")

    async with store.session() as session:
        refreshed = await session.get(Tenant, tenant.id)
    assert refreshed.plan == "professional"
    assert refreshed.data_plane_database == "rmap_tenant_acme"


@pytest.mark.asyncio
async def test_store_ping_reaches_every_database(store, router: DataPlaneRouter) -> None:
    assert await store.ping() is True
    assert await store.ping("rmap_shared") is True


@pytest.fixture
def directory(store, router: DataPlaneRouter, clock) -> TenantDirectory:
    return TenantDirectory(store, data_planes=router, clock=clock)


@pytest.mark.asyncio
async def test_downgrade_of_dedicated_tenant_is_refused(store, router: DataPlaneRouter, directory) -> None:
    tenant = await directory.create_tenant("Acme", "acme", plan="enterprise")

    outcome = await directory.update_subscription(tenant.id, "starter")

    assert isinstance(outcome.error, ConflictError)
    handle = await router.get_tenant_database(tenant.id)
    assert (handle.type, handle.database) == ("dedicated", "rmap_tenant_acme")
    assert (await directory.require_tenant(tenant.id)).plan == "enterprise"


@pytest.mark.asyncio
async def test_upgrade_moves_records_and_routes_to_dedicated(store, router: DataPlaneRouter, directory) -> None:
    tenant = await directory.create_tenant("Acme", "acme", plan="starter")
    await _seed_shared(router, "campaigns", tenant.id, 2)

    change = (await directory.update_subscription(tenant.id, "professional")).unwrap()

    handle = await router.get_tenant_database(tenant.id)
    assert (change.previous_plan, change.plan) == ("starter", "professional")
    assert change.requires_migration is False
    assert change.data_plane_type == "dedicated"
    assert (handle.type, handle.database) == ("dedicated", "rmap_tenant_acme")
    assert await _count(handle, DEDICATED_TABLES["campaigns"]) == 2
    assert await _count(router.shared_handle(), SHARED_TABLES["campaigns"], tenant_id=tenant.id) == 0


@pytest.mark.asyncio
async def test_routing_tracks_plan_through_subscription_changes(store, router: DataPlaneRouter, directory) -> None:
    tenant = await directory.create_tenant("Acme", "acme", plan="free")

    for plan in ("starter", "free", "custom", "enterprise", "professional"):
        assert (await directory.update_subscription(tenant.id, plan)).ok
        location = await router.get_tenant_data_location(tenant.id)
        assert location.type == plan_data_plane(plan)
        assert location.database == ("rmap_shared" if location.type == "shared" else "rmap_tenant_acme")

    assert isinstance((await directory.update_subscription(tenant.id, "free")).error, ConflictError)
    assert (await router.get_tenant_data_location(tenant.id)).type == "dedicated"


@pytest.mark.asyncio
async def test_failed_upgrade_migration_is_reported_and_resumable(
    store, router: DataPlaneRouter, directory, monkeypatch
) -> None:
    tenant = await directory.create_tenant("Acme", "acme", plan="starter")
    await _seed_shared(router, "workflows", tenant.id, 1)

    def _reject(collection, records, copied, migration_id):
        raise MigrationError(f"{collection}: checksum mismatch after copy", migration_id)

    original = router._verify
    monkeypatch.setattr(router, "_verify", _reject)
    change = (await directory.update_subscription(tenant.id, "enterprise")).unwrap()

    assert change.requires_migration is True
    assert change.data_plane_type == "shared"

    monkeypatch.setattr(router, "_verify", original)
    resumed = (await router.migrate_tenant_to_dedicated(tenant.id, "acme")).unwrap()
    assert resumed.collections == {"workflows": 1}


@pytest.mark.asyncio
async def test_migration_refuses_tenants_on_shared_plans(store, router: DataPlaneRouter) -> None:
    tenant = await add_tenant(store, slug="acme", plan="free", data_plane_type="shared")
    await _seed_shared(router, "campaigns", tenant.id, 1)

    outcome = await router.migrate_tenant_to_dedicated(tenant.id, "acme")

    assert isinstance(outcome.error, ConflictError)
    assert (await router.get_tenant_database(tenant.id)).type == "shared"
    assert await _count(router.shared_handle(), SHARED_TABLES["campaigns"], tenant_id=tenant.id) == 1
    async with store.session() as session:
        assert await session.scalar(select(func.count()).select_from(TenantMigration)) == 0
        assert (await session.get(Tenant, tenant.id)).data_plane_type == "shared"


@pytest.mark.asyncio
async def test_new_dedicated_tenant_gets_its_database(store, router: DataPlaneRouter, directory) -> None:
    tenant = await directory.create_tenant("Big Co", "big-co", plan="custom")

    handle = await router.get_tenant_database(tenant.id)

    assert handle.database == "rmap_tenant_big_co"
    assert await _count(handle, DEDICATED_TABLES["workflows"]) == 0


@pytest.mark.asyncio
async def test_init_databases_provisions_every_dedicated_tenant(store, settings) -> None:
    await add_tenant(store, slug="globex", plan="enterprise")
    await add_tenant(store, slug="acme", plan="professional")
    await add_tenant(store, slug="small", plan="free")

    provisioned = await init_databases(store, settings)

    assert provisioned == ["rmap_tenant_acme", "rmap_tenant_globex"]
    router = DataPlaneRouter(store, settings)
    assert await _count(router.dedicated_handle("rmap_tenant_globex"), DEDICATED_TABLES["analytics"]) == 0
    assert await _count(router.shared_handle(), SHARED_TABLES["analytics"]) == 0
