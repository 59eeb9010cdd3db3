"""Create the control-plane schema, the shared database and every dedicated tenant database.

Run after deploying and before starting the API: ``control-plane-init-db``.
Safe to run again; existing databases and tables are left as they are.
"""
from __future__ import annotations

import asyncio
import logging

from control_plane.core.config import Settings, settings
from control_plane.core.db import StoreClient, open_store
from control_plane.services.data_plane import DataPlaneRouter

logger = logging.getLogger(__name__)


async def init_databases(store: StoreClient, config: Settings) -> list[str]:
    data_planes = DataPlaneRouter(store, config)
    await data_planes.initialize_databases()
    provisioned = await data_planes.provision_dedicated_tenants()
    logger.info("Databases initialized, %d dedicated tenant databases provisioned", len(provisioned))
    return provisioned


async def run(config: Settings) -> list[str]:
    async with open_store(config) as store:
        return await init_databases(store, config)


def main() -> None:
    logging.basicConfig(level=settings.log_level)
    provisioned = asyncio.run(run(settings))
    for database in provisioned:
        print(f"Provisioned {database}")
    print("Database initialization complete")


if __name__ == "__main__":
    main()
