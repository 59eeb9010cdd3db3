from control_plane.api.routes.admin import router as admin_router
from control_plane.api.routes.permissions import router as permissions_router
from control_plane.api.routes.tenant_admin import router as tenant_admin_router

__all__ = ["admin_router", "permissions_router", "tenant_admin_router"]
