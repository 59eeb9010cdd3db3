from __future__ import annotations

import json
import logging
import math
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any
from uuid import UUID

import redis.asyncio as redis
from redis.exceptions import RedisError

from control_plane.core.config import Settings
from control_plane.models.base import utcnow
from control_plane.services.effective import EffectivePermissions

logger = logging.getLogger(__name__)

UserTenant = tuple[UUID, UUID]


class EffectivePermissionCache:
    """Redis cache of resolved permissions keyed by (tenant, user).

    An entry never outlives the earliest expiry among the grants it was built
    from, so an expired grant cannot be served from cache.
    """

    def __init__(
        self,
        client: Any,
        *,
        ttl_seconds: int,
        prefix: str = "perms:effective",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._redis = client
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> EffectivePermissionCache:
        client = redis.from_url(settings.redis_url, decode_responses=True)
        return cls(
            client,
            ttl_seconds=settings.permission_cache_ttl_seconds,
            prefix=settings.permission_cache_prefix,
        )

    def key(self, user_id: UUID, tenant_id: UUID) -> str:
        return f"{self.prefix}:{tenant_id}:{user_id}"

    async def get(self, user_id: UUID, tenant_id: UUID) -> EffectivePermissions | None:
        try:
            raw = await self._redis.get(self.key(user_id, tenant_id))
        except RedisError:
            logger.warning("Permission cache read failed for user=%s tenant=%s", user_id, tenant_id)
            return None
        if not raw:
            return None

        try:
            cached = EffectivePermissions.from_payload(json.loads(raw))
        except (ValueError, TypeError, KeyError):
            logger.warning("Discarding malformed permission cache entry for user=%s", user_id)
            return None

        if cached.earliest_expiry is not None and cached.earliest_expiry <= self._clock():
            return None
        return cached

    async def set(
        self,
        user_id: UUID,
        tenant_id: UUID,
        permissions: EffectivePermissions,
        *,
        now: datetime | None = None,
    ) -> None:
        ttl = self.ttl_seconds
        if permissions.earliest_expiry is not None:
            remaining = (permissions.earliest_expiry - (now or self._clock())).total_seconds()
            if remaining <= 0:
                return
            ttl = min(ttl, max(1, math.floor(remaining)))

        try:
            await self._redis.set(
                self.key(user_id, tenant_id),
                json.dumps(permissions.to_payload()),
                ex=ttl,
            )
        except RedisError:
            logger.warning("Permission cache write failed for user=%s tenant=%s", user_id, tenant_id)

    async def invalidate(self, user_id: UUID, tenant_id: UUID) -> None:
        await self.invalidate_many([(user_id, tenant_id)])

    async def invalidate_many(self, pairs: Iterable[UserTenant]) -> int:
        keys = sorted({self.key(user_id, tenant_id) for user_id, tenant_id in pairs})
        if not keys:
            return 0
        try:
            await self._redis.delete(*keys)
        except RedisError:
            logger.exception("Permission cache invalidation failed for %d entries", len(keys))
        return len(keys)

    async def aclose(self) -> None:
        await self._redis.aclose()
