from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from control_plane.api.middleware import tenant_context_middleware
from control_plane.api.routes.admin import router as admin_router
from control_plane.api.routes.permissions import router as permissions_router
from control_plane.api.routes.tenant_admin import router as tenant_admin_router
from control_plane.core.config import Settings, settings
from control_plane.core.db import StoreClient
from control_plane.core.errors import ControlPlaneError
from control_plane.services.data_plane import DataPlaneRouter
from control_plane.services.direct_grants import DirectGrantStore
from control_plane.services.expiration_sweeper import ExpirationSweeper
from control_plane.services.group_registry import GroupRegistry
from control_plane.services.permission_cache import EffectivePermissionCache
from control_plane.services.permission_engine import PermissionEngine
from control_plane.services.tenant_directory import TenantDirectory

logger = logging.getLogger(__name__)


def wire_services(app: FastAPI, store: StoreClient, cache: EffectivePermissionCache | None, config: Settings) -> None:
    alert_days = config.expiration_alert_days()
    app.state.store = store
    app.state.cache = cache
    app.state.data_plane_router = DataPlaneRouter(store, config)
    app.state.tenant_directory = TenantDirectory(store, cache=cache, data_planes=app.state.data_plane_router)
    app.state.group_registry = GroupRegistry(store, cache=cache, alert_days=alert_days)
    app.state.direct_grants = DirectGrantStore(store, cache=cache, alert_days=alert_days)
    app.state.permission_engine = PermissionEngine(store, cache=cache)
    app.state.expiration_sweeper = ExpirationSweeper(store, cache=cache, batch_size=config.sweep_batch_size)


def create_app(config: Settings = settings) -> FastAPI:
    app = FastAPI(title="Tenant Control Plane")
    app.middleware("http")(tenant_context_middleware)
    app.include_router(tenant_admin_router, prefix="/api/v1")
    app.include_router(permissions_router, prefix="/api/v1")
    app.include_router(admin_router, prefix="/api/v1")

    @app.exception_handler(ControlPlaneError)
    async def control_plane_error_handler(_: Request, exc: ControlPlaneError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.payload()})

    @app.on_event("startup")
    async def startup_event() -> None:
        logging.basicConfig(level=config.log_level)
        if getattr(app.state, "store", None) is not None:
            return
        store = StoreClient(config)
        cache = EffectivePermissionCache.from_settings(config) if config.permission_cache_enabled else None
        wire_services(app, store, cache, config)
        logger.info("Control plane started against %s", store.control_database)

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        cache: EffectivePermissionCache | None = getattr(app.state, "cache", None)
        if cache is not None:
            await cache.aclose()
        store: StoreClient | None = getattr(app.state, "store", None)
        if store is not None:
            await store.dispose()

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()
