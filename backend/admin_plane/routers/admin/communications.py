"""
Admin communications router for the admin control plane.

Handles announcements, notification templates and direct notifications.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, status

from admin_plane.models.communication import AnnouncementStatus
from admin_plane.routers.auth import command_context, get_services
from admin_plane.schemas.admin import (
    AnnouncementCreate,
    NotificationSend,
    TemplateCreate,
    payload,
)
from admin_plane.services import CommandContext, Services


router = APIRouter()


@router.post("/announcements", status_code=status.HTTP_201_CREATED)
def create_announcement(
    body: AnnouncementCreate,
    ctx: CommandContext = Depends(command_context),
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Create an announcement; published ones are pushed immediately."""
    announcement = services.communications.create_announcement(ctx, payload(body))
    return {"success": True, "message": "Announcement created", "data": announcement}


@router.get("/announcements")
def list_announcements(
    status: Optional[AnnouncementStatus] = None,
    limit: int = Query(50, ge=1, le=100),
    lastEvaluatedKey: Optional[str] = None,
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """List announcements, newest first."""
    announcements, next_token = services.communications.list_announcements(
        status, limit, lastEvaluatedKey
    )
    return {
        "success": True,
        "data": announcements,
        "count": len(announcements),
        "lastEvaluatedKey": next_token,
    }


@router.post("/notifications", status_code=status.HTTP_201_CREATED)
def send_notification(
    body: NotificationSend,
    ctx: CommandContext = Depends(command_context),
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Send a notification to users selected by id or role."""
    notification = services.communications.send_notification(ctx, payload(body))
    return {"success": True, "message": "Notification sent", "data": notification}


@router.post("/templates", status_code=status.HTTP_201_CREATED)
def create_template(
    body: TemplateCreate,
    ctx: CommandContext = Depends(command_context),
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Create a notification template."""
    template = services.communications.create_template(ctx, payload(body))
    return {"success": True, "message": "Template created", "data": template}


@router.get("/templates")
def list_templates(
    category: Optional[str] = None,
    limit: int = Query(50, ge=1, le=100),
    lastEvaluatedKey: Optional[str] = None,
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """List notification templates."""
    templates, next_token = services.communications.list_templates(category, limit, lastEvaluatedKey)
    return {
        "success": True,
        "data": templates,
        "count": len(templates),
        "lastEvaluatedKey": next_token,
    }
