from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Table
from sqlalchemy.ext.asyncio import AsyncSession

from control_plane.core.db import dialect_insert, session_dialect
from control_plane.core.errors import InvalidInputError, PermissionValidationError
from control_plane.services.effective import PermissionValidation, validate_permissions


def normalize_expiry(expires_at: datetime | None) -> datetime | None:
    if expires_at is None:
        return None
    if expires_at.tzinfo is None:
        return expires_at.replace(tzinfo=timezone.utc)
    return expires_at.astimezone(timezone.utc)


def check_grant_request(
    app_id: str,
    permissions: Sequence[str],
    expires_at: datetime | None,
    now: datetime,
) -> PermissionValidation:
    """Validate a grant request; raises ``InvalidInputError`` subclasses.

    Returns the partition so callers can persist the valid subset and report
    the rest.
    """
    if not app_id or not app_id.strip():
        raise InvalidInputError("app_id is required")
    validation = validate_permissions(permissions)
    if not validation.valid:
        raise PermissionValidationError(validation.valid, validation.invalid)
    if expires_at is not None and expires_at <= now:
        raise InvalidInputError("expires_at must be in the future")
    return validation


async def upsert_grant(
    session: AsyncSession,
    table: Table,
    *,
    conflict_columns: Sequence[str],
    values: dict[str, object],
    now: datetime,
) -> None:
    """Insert a grant or replace the one already held for the same app.

    A single ``INSERT .. ON CONFLICT DO UPDATE`` keeps at most one row per
    (holder, app) even under concurrent assignment.
    """
    stmt = dialect_insert(session_dialect(session), table).values(
        id=uuid4(),
        created_at=now,
        updated_at=now,
        **values,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=list(conflict_columns),
        set_={
            "permissions": stmt.excluded.permissions,
            "granted_at": stmt.excluded.granted_at,
            "granted_by": stmt.excluded.granted_by,
            "expires_at": stmt.excluded.expires_at,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    await session.execute(stmt)
