from __future__ import annotations

import pytest
import pytest_asyncio

from control_plane.core.config import Settings
from control_plane.core.db import open_store
from control_plane.services.permission_cache import EffectivePermissionCache
from factories import EPOCH, FakeRedis, FrozenClock, memory_engine


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///rmap_control",
        shared_database_name="rmap_shared",
        dedicated_database_prefix="rmap_tenant_",
        redis_url="redis://localhost:6379/15",
        permission_cache_ttl_seconds=300,
        migration_batch_size=2,
        notification_webhook_url="https://hooks.example.test/notify",
        notification_max_attempts=2,
        platform_admin_subjects_csv="ops-admin",
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(EPOCH)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def cache(fake_redis: FakeRedis, clock: FrozenClock) -> EffectivePermissionCache:
    return EffectivePermissionCache(fake_redis, ttl_seconds=300, prefix="perms:effective", clock=clock)


@pytest_asyncio.fixture
async def store(settings: Settings):
    async with open_store(settings, engine_factory=memory_engine) as client:
        await client.create_control_schema()
        yield client
