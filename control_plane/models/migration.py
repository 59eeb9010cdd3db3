from __future__ import annotations

from datetime import datetime
from typing import Literal

from sqlalchemy import JSON, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from control_plane.models.base import TenantScopedBase, UTCDateTime

MigrationStatus = Literal["pending", "running", "failed", "completed"]


class TenantMigration(TenantScopedBase):
    __tablename__ = "tenant_migrations"

    slug: Mapped[str] = mapped_column(String(63), nullable=False)
    target_database: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", index=True)
    completed_collections: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    records_moved: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
