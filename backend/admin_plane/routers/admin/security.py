"""
Admin security router for the admin control plane.

Handles the security dashboard, event and alert listings, event
acknowledgement and the security policy document.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from admin_plane.models.admin import SecurityEventType
from admin_plane.routers.auth import command_context, get_services
from admin_plane.schemas.admin import EventAcknowledgement, PoliciesUpdate
from admin_plane.services import CommandContext, Services


router = APIRouter()

HOURS_BACK = Query(24, ge=1, le=24 * 30)


@router.get("/dashboard")
def get_security_dashboard(
    hoursBack: int = HOURS_BACK,
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Get login metrics, active alerts, hourly trends and recent events."""
    return {"success": True, "data": services.monitor.dashboard(hoursBack)}


@router.get("/events")
def list_security_events(
    hoursBack: int = HOURS_BACK,
    eventType: Optional[SecurityEventType] = None,
    limit: int = Query(50, ge=1, le=100),
    lastEvaluatedKey: Optional[str] = None,
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """List security events newest first."""
    events, next_token = services.security_events.recent(
        hoursBack, limit, lastEvaluatedKey, eventType
    )
    data = [
        {k: v for k, v in e.items() if k not in ("PK", "SK", "entityType")}
        for e in events
    ]
    return {
        "success": True,
        "data": data,
        "count": len(data),
        "lastEvaluatedKey": next_token,
    }


@router.get("/suspicious")
def get_suspicious_activity(
    hoursBack: int = HOURS_BACK,
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """List suspicious activity alerts with acknowledgement state."""
    return {"success": True, "data": services.monitor.suspicious(hoursBack)}


@router.put("/events/{event_id}/ack")
def acknowledge_security_event(
    event_id: str,
    body: Optional[EventAcknowledgement] = None,
    ctx: CommandContext = Depends(command_context),
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Acknowledge a security event; each event is acknowledged once."""
    note = body.note if body else None
    ack = services.commands.acknowledge_event(ctx, event_id, note)
    return {"success": True, "message": "Security event acknowledged", "data": ack}


@router.get("/policies")
def get_security_policies(
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Get the current security policies."""
    policies, version = services.settings_repository.policies()
    return {"success": True, "data": {"policies": policies, "version": version}}


@router.put("/policies")
def update_security_policies(
    body: PoliciesUpdate,
    ctx: CommandContext = Depends(command_context),
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Update one or more security policy sections."""
    result = services.commands.update_policies(ctx, body.policies)
    return {"success": True, "message": "Security policies updated", "data": result}
