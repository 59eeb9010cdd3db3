from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field


class DataLocationResponse(BaseModel):
    tenant_id: UUID
    database: str
    type: str


class MigrationRequest(BaseModel):
    slug: str = Field(min_length=1, max_length=63)


class MigrationResponse(BaseModel):
    tenant_id: UUID
    migration_id: UUID | None = None
    status: str
    target_database: str
    collections: dict[str, int] = Field(default_factory=dict)
    records_moved: int = 0


class SweepResponse(BaseModel):
    swept_at: datetime
    group_grants_removed: int
    direct_grants_removed: int
    removed: int
    invalidated: int
