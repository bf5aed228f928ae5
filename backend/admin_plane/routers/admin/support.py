"""
Admin support router for the admin control plane.

Handles support ticket listing, creation, status changes and statistics.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, status

from admin_plane.models.support import TicketCategory, TicketPriority, TicketStatus
from admin_plane.routers.auth import command_context, get_services
from admin_plane.schemas.admin import TicketCreate, TicketStatusUpdate, payload
from admin_plane.services import CommandContext, Services


router = APIRouter()


@router.get("/tickets")
def list_tickets(
    status: Optional[TicketStatus] = None,
    priority: Optional[TicketPriority] = None,
    category: Optional[TicketCategory] = None,
    search: Optional[str] = Query(None, max_length=200),
    limit: int = Query(50, ge=1, le=100),
    lastEvaluatedKey: Optional[str] = None,
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """List support tickets with status, priority, category and text filters."""
    tickets, next_token = services.support.list_tickets(
        status, priority, category, search, limit, lastEvaluatedKey
    )
    return {
        "success": True,
        "data": tickets,
        "count": len(tickets),
        "lastEvaluatedKey": next_token,
    }


@router.post("/tickets", status_code=status.HTTP_201_CREATED)
def create_ticket(
    body: TicketCreate,
    ctx: CommandContext = Depends(command_context),
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Open a support ticket on behalf of a user."""
    ticket = services.support.create_ticket(ctx, payload(body))
    return {"success": True, "message": "Ticket created", "data": ticket}


@router.get("/tickets/statistics")
def get_ticket_statistics(
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Get ticket counts and average resolution time."""
    return {"success": True, "data": services.support.statistics()}


@router.get("/tickets/{ticket_id}")
def get_ticket(
    ticket_id: str,
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Get a single support ticket."""
    return {"success": True, "data": services.support.get_ticket(ticket_id)}


@router.put("/tickets/{ticket_id}/status")
def update_ticket_status(
    ticket_id: str,
    body: TicketStatusUpdate,
    ctx: CommandContext = Depends(command_context),
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Move a ticket through its workflow."""
    ticket = services.support.change_status(ctx, ticket_id, body.status, body.notes)
    return {"success": True, "message": f"Ticket {body.status.value}", "data": ticket}
