from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import TypeVar
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError

from control_plane.core.db import StoreClient
from control_plane.core.errors import StoreUnavailableError
from control_plane.models.base import utcnow
from control_plane.models.group import GroupAppPermission, TenantGroupMember
from control_plane.models.membership import DirectAppPermission
from control_plane.services.permission_cache import EffectivePermissionCache

logger = logging.getLogger(__name__)

ItemT = TypeVar("ItemT")


def _chunks(items: Sequence[ItemT], size: int) -> Iterator[Sequence[ItemT]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


@dataclass(slots=True)
class SweepReport:
    swept_at: datetime
    group_grants_removed: int = 0
    direct_grants_removed: int = 0
    invalidated: int = 0

    @property
    def removed(self) -> int:
        return self.group_grants_removed + self.direct_grants_removed


class ExpirationSweeper:
    """Prune grants whose ``expires_at`` has passed and drop the affected cache entries.

    Only rows matching ``expires_at <= now`` are deleted, so overlapping or
    repeated sweeps are harmless and an interrupted sweep is finished by the
    next one.
    """

    def __init__(
        self,
        store: StoreClient,
        *,
        cache: EffectivePermissionCache | None = None,
        clock: Callable[[], datetime] = utcnow,
        batch_size: int = 500,
    ) -> None:
        self._store = store
        self._cache = cache
        self._clock = clock
        self._batch_size = batch_size

    async def sweep(self) -> SweepReport:
        now = self._clock()
        report = SweepReport(swept_at=now)
        affected: set[tuple[UUID, UUID]] = set()

        try:
            report.group_grants_removed = await self._sweep_group_grants(now, affected)
            report.direct_grants_removed = await self._sweep_direct_grants(now, affected)
        except SQLAlchemyError as exc:
            logger.exception("Expiration sweep aborted after removing %d grants", report.removed)
            # Whatever was committed is already visible to resolution; drop those entries too.
            await self._invalidate(affected)
            raise StoreUnavailableError("Expiration sweep failed") from exc

        report.invalidated = await self._invalidate(affected)
        logger.info(
            "Expiration sweep removed %d group grants and %d direct grants, invalidated %d cache entries",
            report.group_grants_removed,
            report.direct_grants_removed,
            report.invalidated,
        )
        return report

    async def _sweep_group_grants(self, now: datetime, affected: set[tuple[UUID, UUID]]) -> int:
        removed = 0
        async with self._store.session() as session:
            expired = (
                await session.execute(
                    select(GroupAppPermission.id, GroupAppPermission.group_id, GroupAppPermission.tenant_id).where(
                        GroupAppPermission.expires_at <= now
                    )
                )
            ).tuples().all()
            if not expired:
                return 0

            for batch in _chunks(expired, self._batch_size):
                result = await session.execute(
                    delete(GroupAppPermission)
                    .where(
                        GroupAppPermission.id.in_([grant_id for grant_id, _, _ in batch]),
                        GroupAppPermission.expires_at <= now,
                    )
                    .execution_options(synchronize_session=False)
                )
                removed += max(result.rowcount or 0, 0)

                tenant_by_group = {group_id: tenant_id for _, group_id, tenant_id in batch}
                members = await session.execute(
                    select(TenantGroupMember.group_id, TenantGroupMember.user_id).where(
                        TenantGroupMember.group_id.in_(list(tenant_by_group))
                    )
                )
                await session.commit()
                affected.update((user_id, tenant_by_group[group_id]) for group_id, user_id in members.tuples())
        return removed

    async def _sweep_direct_grants(self, now: datetime, affected: set[tuple[UUID, UUID]]) -> int:
        removed = 0
        async with self._store.session() as session:
            expired = (
                await session.execute(
                    select(DirectAppPermission.id, DirectAppPermission.user_id, DirectAppPermission.tenant_id).where(
                        DirectAppPermission.expires_at <= now
                    )
                )
            ).tuples().all()
            if not expired:
                return 0

            for batch in _chunks(expired, self._batch_size):
                result = await session.execute(
                    delete(DirectAppPermission)
                    .where(
                        DirectAppPermission.id.in_([grant_id for grant_id, _, _ in batch]),
                        DirectAppPermission.expires_at <= now,
                    )
                    .execution_options(synchronize_session=False)
                )
                removed += max(result.rowcount or 0, 0)
                await session.commit()
                affected.update((user_id, tenant_id) for _, user_id, tenant_id in batch)
        return removed

    async def _invalidate(self, affected: set[tuple[UUID, UUID]]) -> int:
        if self._cache is None or not affected:
            return 0
        return await self._cache.invalidate_many(affected)
