from __future__ import annotations

from sqlalchemy import String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from control_plane.models.base import TenantScopedBase


class TenantAppEntitlement(TenantScopedBase):
    __tablename__ = "tenant_app_entitlements"
    __table_args__ = (
        UniqueConstraint("tenant_id", "app_id", name="uq_tenant_app_entitlements_tenant_app"),
    )

    app_id: Mapped[str] = mapped_column(String(120), nullable=False)
    app_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    admin_manageable: Mapped[bool] = mapped_column(nullable=False, default=False)
