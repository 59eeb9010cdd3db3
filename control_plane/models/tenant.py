from __future__ import annotations

from typing import Literal

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from control_plane.models.base import RecordBase

SubscriptionPlan = Literal["free", "starter", "professional", "enterprise", "custom"]
TenantStatus = Literal["active", "suspended", "canceled"]
DataPlaneType = Literal["shared", "dedicated"]

SUBSCRIPTION_PLANS: tuple[str, ...] = ("free", "starter", "professional", "enterprise", "custom")
TENANT_STATUSES: tuple[str, ...] = ("active", "suspended", "canceled")


class Tenant(RecordBase):
    __tablename__ = "tenants"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(63), unique=True, nullable=False, index=True)
    plan: Mapped[str] = mapped_column(String(32), nullable=False, default="free")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    contact_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    data_plane_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    data_plane_database: Mapped[str | None] = mapped_column(String(128), nullable=True)
