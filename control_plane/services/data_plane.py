"""Routing of tenant business records to the shared or a dedicated database.

Moving a tenant from the shared database to its own database is a saga keyed
by a ``tenant_migrations`` row. Each collection is copied, verified against
the source by row count and checksum, and only then deleted from the shared
database. Progress is recorded per collection so a failed run can simply be
started again and resumes where it stopped. Only tenants on a dedicated plan
can be migrated; routing itself always follows the plan.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import Table, delete, insert, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from control_plane.core.canonical import records_checksum
from control_plane.core.config import Settings
from control_plane.core.db import StoreClient
from control_plane.core.errors import (
    ConflictError,
    InvalidInputError,
    MigrationError,
    Outcome,
    StoreUnavailableError,
    TenantNotFoundError,
)
from control_plane.models.base import utcnow
from control_plane.models.business import (
    BUSINESS_COLLECTIONS,
    DEDICATED_TABLES,
    SHARED_TABLES,
    TENANT_TAG,
    dedicated_metadata,
    shared_metadata,
)
from control_plane.models.migration import TenantMigration
from control_plane.models.tenant import Tenant
from control_plane.services.tenant_directory import DEDICATED_PLANS, dedicated_database_name, is_dedicated_plan

logger = logging.getLogger(__name__)

UNFINISHED_MIGRATION_STATUSES: tuple[str, ...] = ("pending", "running", "failed")


@dataclass(frozen=True, slots=True)
class DataPlaneHandle:
    type: str
    database: str
    engine: AsyncEngine

    @property
    def is_shared(self) -> bool:
        return self.type == "shared"


@dataclass(frozen=True, slots=True)
class TenantDataLocation:
    database: str
    type: str


@dataclass(slots=True)
class MigrationReport:
    tenant_id: UUID
    target_database: str
    status: str
    migration_id: UUID | None = None
    collections: dict[str, int] = field(default_factory=dict)

    @property
    def records_moved(self) -> int:
        return sum(self.collections.values())


def _chunks(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class DataPlaneRouter:
    def __init__(
        self,
        store: StoreClient,
        settings: Settings | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._settings = settings or store.settings
        self._clock = clock
        self._batch_size = max(1, self._settings.migration_batch_size)

    def dedicated_database_name(self, slug: str) -> str:
        return dedicated_database_name(slug, self._settings.dedicated_database_prefix)

    def shared_handle(self) -> DataPlaneHandle:
        database = self._store.shared_database
        return DataPlaneHandle(type="shared", database=database, engine=self._store.engine_for(database))

    def dedicated_handle(self, database: str) -> DataPlaneHandle:
        return DataPlaneHandle(type="dedicated", database=database, engine=self._store.engine_for(database))

    def handle_for(self, tenant: Tenant) -> DataPlaneHandle:
        if not is_dedicated_plan(tenant.plan):
            return self.shared_handle()
        database = tenant.data_plane_database if tenant.data_plane_type == "dedicated" else None
        return self.dedicated_handle(database or self.dedicated_database_name(tenant.slug))

    async def get_tenant_database(self, tenant_id: UUID) -> DataPlaneHandle:
        async with self._store.session() as session:
            tenant = await session.get(Tenant, tenant_id)
        if tenant is None:
            raise TenantNotFoundError(tenant_id)
        return self.handle_for(tenant)

    async def get_tenant_data_location(self, tenant_id: UUID) -> TenantDataLocation:
        handle = await self.get_tenant_database(tenant_id)
        return TenantDataLocation(database=handle.database, type=handle.type)

    async def initialize_databases(self) -> None:
        """Create the control-plane schema and the shared data-plane tables."""
        try:
            await self._store.create_control_schema()
            await self._store.ensure_database(self._store.shared_database)
            async with self.shared_handle().engine.begin() as conn:
                await conn.run_sync(shared_metadata.create_all)
        except SQLAlchemyError as exc:
            logger.exception("Failed to initialize databases")
            raise StoreUnavailableError("Failed to initialize databases") from exc
        logger.info(
            "Initialized control database %s and shared database %s",
            self._store.control_database,
            self._store.shared_database,
        )

    async def create_dedicated_tenant_db(self, slug: str) -> DataPlaneHandle:
        database = self.dedicated_database_name(slug)
        await self._store.ensure_database(database)
        handle = self.dedicated_handle(database)
        async with handle.engine.begin() as conn:
            await conn.run_sync(dedicated_metadata.create_all)
        logger.info("Provisioned dedicated database %s", database)
        return handle

    async def provision_dedicated_tenants(self) -> list[str]:
        """Make sure every tenant on a dedicated plan has its database and tables."""
        try:
            async with self._store.session() as session:
                slugs = list(
                    await session.scalars(
                        select(Tenant.slug).where(Tenant.plan.in_(sorted(DEDICATED_PLANS))).order_by(Tenant.slug)
                    )
                )
            return [(await self.create_dedicated_tenant_db(slug)).database for slug in slugs]
        except SQLAlchemyError as exc:
            logger.exception("Failed to provision dedicated tenant databases")
            raise StoreUnavailableError("Failed to provision dedicated tenant databases") from exc

    async def migrate_tenant_to_dedicated(self, tenant_id: UUID, slug: str) -> Outcome[MigrationReport]:
        try:
            async with self._store.session() as session:
                tenant = await session.get(Tenant, tenant_id)
                if tenant is None:
                    return Outcome.failure(TenantNotFoundError(tenant_id))
                if tenant.slug != slug:
                    return Outcome.failure(
                        InvalidInputError(f"Slug {slug!r} does not belong to tenant {tenant_id}")
                    )
                if not is_dedicated_plan(tenant.plan):
                    logger.warning("Refusing to migrate tenant %s on the %s plan", tenant_id, tenant.plan)
                    return Outcome.failure(
                        ConflictError(f"Tenant {tenant_id} is on the {tenant.plan} plan and uses the shared database")
                    )

                target_database = self.dedicated_database_name(slug)
                if tenant.data_plane_type == "dedicated":
                    return Outcome.success(
                        MigrationReport(
                            tenant_id=tenant_id,
                            target_database=tenant.data_plane_database or target_database,
                            status="already_dedicated",
                        )
                    )

                migration = await session.scalar(
                    select(TenantMigration)
                    .where(
                        TenantMigration.tenant_id == tenant_id,
                        TenantMigration.status.in_(UNFINISHED_MIGRATION_STATUSES),
                    )
                    .order_by(TenantMigration.created_at.desc())
                )
                if migration is None:
                    migration = TenantMigration(
                        tenant_id=tenant_id,
                        slug=slug,
                        target_database=target_database,
                        status="pending",
                        completed_collections=[],
                        records_moved=0,
                        attempts=0,
                    )
                    session.add(migration)
                else:
                    logger.info("Resuming migration %s for tenant %s", migration.id, tenant_id)
                migration.status = "running"
                migration.attempts += 1
                migration.error = None
                migration.updated_at = self._clock()
                await session.commit()
        except SQLAlchemyError:
            logger.exception("Could not start migration for tenant %s", tenant_id)
            return Outcome.failure(StoreUnavailableError("Failed to start tenant migration"))

        report = MigrationReport(
            tenant_id=tenant_id,
            target_database=migration.target_database,
            status="running",
            migration_id=migration.id,
        )
        try:
            target = await self.create_dedicated_tenant_db(slug)
            done = list(migration.completed_collections or [])
            for collection in BUSINESS_COLLECTIONS:
                if collection in done:
                    continue
                moved = await self._move_collection(tenant_id, collection, target, migration.id)
                done.append(collection)
                report.collections[collection] = moved
                await self._record_progress(migration.id, done, moved)
                logger.info("Moved %d %s records of tenant %s to %s", moved, collection, tenant_id, target.database)

            await self._complete(tenant_id, migration.id, target.database)
        except (SQLAlchemyError, MigrationError, StoreUnavailableError) as exc:
            logger.error(
                "Migration %s of tenant %s to %s failed: %s",
                migration.id,
                tenant_id,
                migration.target_database,
                exc,
                exc_info=exc,
            )
            await self._record_failure(migration.id, str(exc))
            if isinstance(exc, MigrationError):
                return Outcome.failure(exc)
            return Outcome.failure(MigrationError(f"Migration failed: {exc}", migration.id))

        report.status = "completed"
        logger.info(
            "Migration %s completed: tenant %s now on %s (%d records moved)",
            migration.id,
            tenant_id,
            migration.target_database,
            report.records_moved,
        )
        return Outcome.success(report)

    async def _move_collection(
        self,
        tenant_id: UUID,
        collection: str,
        target: DataPlaneHandle,
        migration_id: UUID,
    ) -> int:
        source_table = SHARED_TABLES[collection]
        target_table = DEDICATED_TABLES[collection]
        shared = self.shared_handle()

        async with shared.engine.connect() as conn:
            rows = (
                await conn.execute(select(source_table).where(source_table.c[TENANT_TAG] == tenant_id))
            ).mappings().all()
        if not rows:
            return 0

        records = [{key: value for key, value in row.items() if key != TENANT_TAG} for row in rows]
        ids = [record["id"] for record in records]

        async with target.engine.begin() as conn:
            present = await self._existing_ids(conn, target_table, ids)
            missing = [record for record in records if record["id"] not in present]
            for batch in _chunks(missing, self._batch_size):
                await conn.execute(insert(target_table), list(batch))

        async with target.engine.connect() as conn:
            copied = await self._fetch(conn, target_table, ids)
        self._verify(collection, records, copied, migration_id)

        async with shared.engine.begin() as conn:
            for batch in _chunks(ids, self._batch_size):
                await conn.execute(
                    delete(source_table).where(
                        source_table.c[TENANT_TAG] == tenant_id,
                        source_table.c.id.in_(list(batch)),
                    )
                )
        return len(records)

    async def _existing_ids(self, conn: AsyncConnection, table: Table, ids: Sequence[UUID]) -> set[UUID]:
        present: set[UUID] = set()
        for batch in _chunks(ids, self._batch_size):
            present.update(await conn.scalars(select(table.c.id).where(table.c.id.in_(list(batch)))))
        return present

    async def _fetch(self, conn: AsyncConnection, table: Table, ids: Sequence[UUID]) -> list[Mapping[str, Any]]:
        rows: list[Mapping[str, Any]] = []
        for batch in _chunks(ids, self._batch_size):
            rows.extend((await conn.execute(select(table).where(table.c.id.in_(list(batch))))).mappings().all())
        return rows

    @staticmethod
    def _verify(
        collection: str,
        records: Sequence[Mapping[str, Any]],
        copied: Sequence[Mapping[str, Any]],
        migration_id: UUID,
    ) -> None:
        if len(copied) != len(records):
            raise MigrationError(
                f"{collection}: copied {len(copied)} of {len(records)} records",
                migration_id,
            )
        if records_checksum(copied) != records_checksum(records):
            raise MigrationError(f"{collection}: checksum mismatch after copy", migration_id)

    async def _record_progress(self, migration_id: UUID, done: list[str], moved: int) -> None:
        async with self._store.session() as session:
            migration = await session.get(TenantMigration, migration_id)
            migration.completed_collections = list(done)
            migration.records_moved += moved
            migration.updated_at = self._clock()
            await session.commit()

    async def _complete(self, tenant_id: UUID, migration_id: UUID, database: str) -> None:
        now = self._clock()
        async with self._store.session() as session:
            tenant = await session.get(Tenant, tenant_id)
            tenant.data_plane_type = "dedicated"
            tenant.data_plane_database = database
            tenant.updated_at = now
            migration = await session.get(TenantMigration, migration_id)
            migration.status = "completed"
            migration.completed_at = now
            migration.updated_at = now
            await session.commit()

    async def _record_failure(self, migration_id: UUID, error: str) -> None:
        try:
            async with self._store.session() as session:
                migration = await session.get(TenantMigration, migration_id)
                if migration is None:
                    return
                migration.status = "failed"
                migration.error = error[:2000]
                migration.updated_at = self._clock()
                await session.commit()
        except SQLAlchemyError:
            logger.exception("Could not record failure of migration %s", migration_id)
