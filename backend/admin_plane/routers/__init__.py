"""
API routers for the admin control plane.

This module contains all API endpoint routers:
- auth: Login and the bearer-token dependencies
- admin: Administrative endpoints (super admin only unless noted)
- realtime: Admin dashboard websocket
"""

from fastapi import APIRouter

# Import individual routers
from .auth import router as auth_router
from .realtime import router as realtime_router

# Import admin sub-routers
from .admin import admin_router

# Create main API router
api_router = APIRouter()

# Include all routers with their prefixes
api_router.include_router(
    auth_router,
    prefix="/auth",
    tags=["authentication"]
)

api_router.include_router(
    admin_router,
    prefix="/admin",
    tags=["admin"]
)

api_router.include_router(
    realtime_router,
    prefix="/admin",
    tags=["realtime"]
)

# Export all routers
__all__ = [
    "api_router",
    "auth_router",
    "admin_router",
    "realtime_router"
]
