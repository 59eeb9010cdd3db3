"""Data-plane business collections.

The shared database holds every shared tenant's records side by side, tagged
with ``tenant_id``. A dedicated database holds one tenant's records and has
no tag column.
"""
from __future__ import annotations

from uuid import uuid4

from sqlalchemy import JSON, Column, MetaData, Table, Uuid

from control_plane.models.base import UTCDateTime, utcnow

BUSINESS_COLLECTIONS: tuple[str, ...] = ("campaigns", "audiences", "analytics", "workflows")
TENANT_TAG = "tenant_id"

shared_metadata = MetaData()
dedicated_metadata = MetaData()


def _business_table(name: str, metadata: MetaData, *, tenant_scoped: bool) -> Table:
    columns: list[Column] = [Column("id", Uuid, primary_key=True, default=uuid4)]
    if tenant_scoped:
        columns.append(Column(TENANT_TAG, Uuid, nullable=False, index=True))
    columns.extend(
        [
            Column("payload", JSON, nullable=False, default=dict),
            Column("created_at", UTCDateTime, nullable=False, default=utcnow),
            Column("updated_at", UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow),
        ]
    )
    return Table(name, metadata, *columns)


SHARED_TABLES: dict[str, Table] = {
    name: _business_table(name, shared_metadata, tenant_scoped=True) for name in BUSINESS_COLLECTIONS
}
DEDICATED_TABLES: dict[str, Table] = {
    name: _business_table(name, dedicated_metadata, tenant_scoped=False) for name in BUSINESS_COLLECTIONS
}
