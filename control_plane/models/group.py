from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from control_plane.models.base import Base, TenantScopedBase, UTCDateTime, utcnow


class TenantGroup(TenantScopedBase):
    __tablename__ = "tenant_groups"
    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_tenant_groups_tenant_name"),
    )

    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    member_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_by: Mapped[str] = mapped_column(String(255), nullable=False)
    last_modified_by: Mapped[str] = mapped_column(String(255), nullable=False)


class TenantGroupMember(Base):
    __tablename__ = "tenant_group_members"

    group_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("tenant_groups.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    added_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class GroupAppPermission(TenantScopedBase):
    __tablename__ = "group_app_permissions"
    __table_args__ = (
        UniqueConstraint("group_id", "app_id", name="uq_group_app_permissions_group_app"),
    )

    group_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("tenant_groups.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    app_id: Mapped[str] = mapped_column(String(120), nullable=False)
    permissions: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    granted_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    granted_by: Mapped[str] = mapped_column(String(255), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, index=True)
