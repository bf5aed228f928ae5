"""
Admin routers for the admin control plane.

This module contains all admin-specific API endpoints:
- users: User management, role and status changes
- courses: Course moderation workflow
- analytics: Platform metrics, growth series and exports
- security: Security monitoring and policies
- support: Support tickets
- communications: Announcements, templates and notifications
- system: Health, backups, cleanup and maintenance
- audit: Audit trail reports
"""

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from admin_plane.core.security import Principal
from admin_plane.core.timeutils import to_iso, utcnow
from admin_plane.routers.auth import (
    command_context,
    get_current_admin_user,
    get_current_super_admin,
    get_services,
)
from admin_plane.schemas.admin import SettingsUpdate
from admin_plane.services import CommandContext, Services

# Import admin sub-routers
from .users import router as users_router
from .courses import router as courses_router
from .analytics import router as analytics_router
from .security import router as security_router
from .support import router as support_router
from .communications import router as communications_router
from .system import router as system_router
from .audit import router as audit_router


# Create admin router
admin_router = APIRouter()

# Include all admin sub-routers
for sub_router, prefix in (
    (users_router, "users"),
    (courses_router, "courses"),
    (analytics_router, "analytics"),
    (security_router, "security"),
    (support_router, "support"),
    (communications_router, "communications"),
    (system_router, "system"),
    (audit_router, "audit"),
):
    admin_router.include_router(
        sub_router,
        prefix=f"/{prefix}",
        tags=[f"admin-{prefix}"],
        dependencies=[Depends(get_current_super_admin)]
    )


@admin_router.get("/verify")
def verify_admin(
    principal: Principal = Depends(get_current_admin_user)
) -> Dict[str, Any]:
    """
    Confirm the caller's admin access and report its permissions.
    """
    return {
        "success": True,
        "data": {
            **principal.to_dict(),
            "permissions": principal.role.permissions,
            "verifiedAt": to_iso(utcnow()),
        },
    }


# Admin dashboard endpoints
@admin_router.get("/dashboard/overview")
def get_dashboard_overview(
    admin: Principal = Depends(get_current_super_admin),
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """
    Get admin dashboard overview with statistics and recent activity.
    """
    metrics = services.analytics.platform_metrics()
    recent = services.audit.recent(10)
    return {
        "success": True,
        "data": {
            "metrics": metrics,
            "recentActivity": [r.model_dump(mode="json") for r in recent],
            "realtime": services.multiplexer.stats(),
        },
    }


@admin_router.get("/dashboard/metrics")
def get_dashboard_metrics(
    admin: Principal = Depends(get_current_super_admin),
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """
    Get platform metrics with the time they were computed.
    """
    return {
        "success": True,
        "data": {**services.analytics.platform_metrics(), "timestamp": to_iso(utcnow())},
    }


@admin_router.get("/dashboard/activity")
def get_dashboard_activity(
    startDate: Optional[datetime] = None,
    endDate: Optional[datetime] = None,
    limit: int = Query(20, ge=1, le=100),
    lastEvaluatedKey: Optional[str] = None,
    admin: Principal = Depends(get_current_super_admin),
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """
    Get recent admin activity, newest first.
    """
    records, next_token = services.audit.by_range(startDate, endDate, limit, lastEvaluatedKey)
    return {
        "success": True,
        "data": [r.model_dump(mode="json") for r in records],
        "count": len(records),
        "lastEvaluatedKey": next_token,
    }


# Platform settings endpoints
@admin_router.get("/settings")
def get_settings(
    admin: Principal = Depends(get_current_super_admin),
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """
    Get platform settings.
    """
    settings, version = services.settings_repository.settings()
    return {"success": True, "data": {"settings": settings, "version": version}}


@admin_router.put("/settings/{section}")
def update_settings(
    section: str,
    body: SettingsUpdate,
    ctx: CommandContext = Depends(command_context),
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """
    Update one section of the platform settings.
    """
    result = services.commands.update_settings(ctx, section, body.settings)
    return {"success": True, "message": "Settings updated", "data": result}


__all__ = [
    "admin_router",
    "get_current_admin_user",
    "get_current_super_admin",
]
