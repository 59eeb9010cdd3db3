from __future__ import annotations

from collections.abc import Mapping
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import Table, delete, func, insert, select, update
from sqlalchemy.engine import RowMapping

from control_plane.core.repositories.base import TenantRepository
from control_plane.models.base import utcnow
from control_plane.models.business import BUSINESS_COLLECTIONS, DEDICATED_TABLES, SHARED_TABLES, TENANT_TAG
from control_plane.services.data_plane import DataPlaneHandle, DataPlaneRouter


def _as_record(row: RowMapping) -> dict[str, Any]:
    return {key: value for key, value in row.items() if key != TENANT_TAG}


class BusinessRecordRepository(TenantRepository):
    """Records of one business collection, read and written on the tenant's data plane."""

    def __init__(self, router: DataPlaneRouter, collection: str) -> None:
        if collection not in BUSINESS_COLLECTIONS:
            raise ValueError(f"Unknown business collection {collection!r}")
        super().__init__(router)
        self.collection = collection

    def _table(self, handle: DataPlaneHandle) -> Table:
        tables = SHARED_TABLES if handle.is_shared else DEDICATED_TABLES
        return tables[self.collection]

    async def create(self, payload: Mapping[str, Any], *, record_id: UUID | None = None) -> dict[str, Any]:
        handle = await self._handle()
        table = self._table(handle)
        now = utcnow()
        values: dict[str, Any] = {
            "id": record_id or uuid4(),
            "payload": dict(payload),
            "created_at": now,
            "updated_at": now,
        }
        if handle.is_shared:
            values[TENANT_TAG] = self.tenant_id
        async with handle.engine.begin() as conn:
            await conn.execute(insert(table).values(**values))
        values.pop(TENANT_TAG, None)
        return values

    async def get(self, record_id: UUID) -> dict[str, Any] | None:
        handle = await self._handle()
        table = self._table(handle)
        async with handle.engine.connect() as conn:
            row = (
                await conn.execute(self._scoped(select(table).where(table.c.id == record_id), table, handle))
            ).mappings().first()
        return _as_record(row) if row is not None else None

    async def list(self, *, limit: int = 100, offset: int = 0) -> list[dict[str, Any]]:
        handle = await self._handle()
        table = self._table(handle)
        statement = self._scoped(select(table), table, handle).order_by(table.c.created_at, table.c.id)
        async with handle.engine.connect() as conn:
            rows = (await conn.execute(statement.limit(limit).offset(offset))).mappings().all()
        return [_as_record(row) for row in rows]

    async def update(self, record_id: UUID, payload: Mapping[str, Any]) -> dict[str, Any] | None:
        handle = await self._handle()
        table = self._table(handle)
        statement = update(table).where(table.c.id == record_id).values(payload=dict(payload), updated_at=utcnow())
        async with handle.engine.begin() as conn:
            result = await conn.execute(self._scoped(statement, table, handle))
        if (result.rowcount or 0) == 0:
            return None
        return await self.get(record_id)

    async def delete(self, record_id: UUID) -> bool:
        handle = await self._handle()
        table = self._table(handle)
        async with handle.engine.begin() as conn:
            result = await conn.execute(self._scoped(delete(table).where(table.c.id == record_id), table, handle))
        return (result.rowcount or 0) > 0

    async def count(self) -> int:
        handle = await self._handle()
        table = self._table(handle)
        statement = self._scoped(select(func.count()).select_from(table), table, handle)
        async with handle.engine.connect() as conn:
            return int(await conn.scalar(statement) or 0)
