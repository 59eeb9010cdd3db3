from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.core.db import dialect_insert, session_dialect
from control_plane.models.notification import PermissionNotification, PermissionSource

logger = logging.getLogger(__name__)

DEFAULT_ALERT_DAYS: tuple[int, ...] = (30, 14, 7, 1)


async def schedule_expiration_notifications(
    session: AsyncSession,
    *,
    tenant_id: UUID,
    recipient_id: UUID,
    app_id: str,
    expires_at: datetime,
    source: PermissionSource,
    source_id: UUID,
    now: datetime,
    alert_days: Sequence[int] = DEFAULT_ALERT_DAYS,
) -> int:
    """Queue one pending warning per lead time that is still ahead of ``now``.

    Re-assigning the same grant with the same expiry does not queue duplicates.
    Warnings for a superseded expiry stay queued; the dispatcher drops them.
    """
    rows: list[dict[str, object]] = []
    for days in alert_days:
        scheduled_for = expires_at - timedelta(days=days)
        if scheduled_for <= now:
            continue
        rows.append(
            {
                "id": uuid4(),
                "tenant_id": tenant_id,
                "type": "expiration_warning",
                "recipient_id": recipient_id,
                "recipient_email": "",
                "app_id": app_id,
                "app_name": "",
                "expires_at": expires_at,
                "days_until_expiration": days,
                "permission_source": source,
                "source_id": source_id,
                "status": "pending",
                "scheduled_for": scheduled_for,
                "attempts": 0,
                "created_at": now,
                "updated_at": now,
            }
        )

    if not rows:
        return 0

    stmt = dialect_insert(session_dialect(session), PermissionNotification.__table__).values(rows)
    stmt = stmt.on_conflict_do_nothing(
        index_elements=["source_id", "app_id", "expires_at", "days_until_expiration"],
    )
    await session.execute(stmt)
    logger.debug(
        "Scheduled %d expiration notifications for %s %s app=%s",
        len(rows),
        source,
        source_id,
        app_id,
    )
    return len(rows)
