from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from sqlalchemy import Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from control_plane.models.base import TenantScopedBase, UTCDateTime

PermissionSource = Literal["group", "direct"]
NotificationStatus = Literal["pending", "sent", "failed"]


class PermissionNotification(TenantScopedBase):
    __tablename__ = "permission_notifications"
    __table_args__ = (
        UniqueConstraint(
            "source_id",
            "app_id",
            "expires_at",
            "days_until_expiration",
            name="uq_permission_notifications_source_app_expiry_lead",
        ),
    )

    type: Mapped[str] = mapped_column(String(40), nullable=False, default="expiration_warning")
    recipient_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    recipient_email: Mapped[str] = mapped_column(String(320), nullable=False, default="")
    app_id: Mapped[str] = mapped_column(String(120), nullable=False)
    app_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    days_until_expiration: Mapped[int] = mapped_column(Integer, nullable=False)
    permission_source: Mapped[str] = mapped_column(String(16), nullable=False)
    source_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", index=True)
    scheduled_for: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
