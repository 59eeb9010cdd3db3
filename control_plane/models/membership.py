from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from control_plane.models.base import TenantScopedBase, UTCDateTime, utcnow

TenantRole = Literal["owner", "admin", "member", "viewer"]
TENANT_ROLES: tuple[str, ...] = ("owner", "admin", "member", "viewer")
ADMIN_ROLES: frozenset[str] = frozenset({"owner", "admin"})


class TenantMembership(TenantScopedBase):
    __tablename__ = "tenant_memberships"
    __table_args__ = (
        UniqueConstraint("tenant_id", "user_id", name="uq_tenant_memberships_tenant_user"),
    )

    user_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="member")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")


class DirectAppPermission(TenantScopedBase):
    __tablename__ = "direct_app_permissions"
    __table_args__ = (
        UniqueConstraint("membership_id", "app_id", name="uq_direct_app_permissions_membership_app"),
    )

    membership_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("tenant_memberships.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    app_id: Mapped[str] = mapped_column(String(120), nullable=False)
    permissions: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    granted_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    granted_by: Mapped[str] = mapped_column(String(255), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, index=True)
