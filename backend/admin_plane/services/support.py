"""
Support ticket service.
"""

import logging
from collections import Counter
from typing import Any, Dict, List, Optional, Tuple

from boto3.dynamodb.conditions import Attr

from admin_plane.core.database import Store
from admin_plane.core.errors import validation_error
from admin_plane.core.timeutils import parse_iso, to_iso, utcnow
from admin_plane.models.admin import AuditAction
from admin_plane.models.support import (
    TICKET_TRANSITIONS,
    TicketCategory,
    TicketPriority,
    TicketStatus,
)
from admin_plane.repositories.base import EntityRepository, new_id, strip_keys
from .commands import AdminCommandHandler, CommandContext, check_reason


logger = logging.getLogger(__name__)

RESOLUTION_FIELDS = ("resolvedAt", "resolvedBy", "resolutionNotes")


class SupportService:
    """Ticket queries plus audited ticket creation and status changes."""

    def __init__(self, store: Store, commands: AdminCommandHandler):
        self.tickets = EntityRepository(store, "SupportTicket", "TICKET", "Ticket")
        self.commands = commands

    def list_tickets(
        self,
        status: Optional[TicketStatus] = None,
        priority: Optional[TicketPriority] = None,
        category: Optional[TicketCategory] = None,
        search: Optional[str] = None,
        limit: int = 50,
        token: Optional[str] = None
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        filter = None
        for name, value in (("status", status), ("priority", priority), ("category", category)):
            if value is not None:
                condition = Attr(name).eq(value.value)
                filter = condition if filter is None else filter & condition

        predicate = None
        if search:
            needle = search.strip().lower()

            def predicate(item: Dict[str, Any]) -> bool:
                return any(
                    needle in str(item.get(field, "")).lower()
                    for field in ("subject", "description", "userEmail", "userName")
                )

        items, next_token = self.tickets.list(limit, token, filter, predicate)
        return [strip_keys(i) for i in items], next_token

    def get_ticket(self, ticket_id: str) -> Dict[str, Any]:
        return strip_keys(self.tickets.require(ticket_id))

    def create_ticket(self, ctx: CommandContext, payload: Dict[str, Any]) -> Dict[str, Any]:
        ticket_id = new_id()
        now = to_iso(utcnow())
        attributes = {
            "ticketId": ticket_id,
            "userId": payload["userId"],
            "userEmail": payload.get("userEmail"),
            "userName": payload.get("userName"),
            "subject": payload["subject"],
            "description": payload["description"],
            "category": payload.get("category", TicketCategory.GENERAL.value),
            "priority": payload.get("priority", TicketPriority.MEDIUM.value),
            "status": TicketStatus.OPEN.value,
            "assignedTo": payload.get("assignedTo"),
            "tags": payload.get("tags") or [],
            "createdBy": ctx.admin_id,
            "createdAt": now,
            "updatedAt": now,
        }
        creation = self.tickets.creation(
            ticket_id, {k: v for k, v in attributes.items() if v is not None}
        )

        def build():
            details = {
                "from": None,
                "to": TicketStatus.OPEN.value,
                "subject": attributes["subject"],
                "priority": attributes["priority"],
            }
            return creation, details

        after, _ = self.commands.commit(ctx, AuditAction.TICKET_STATE_CHANGE, f"TICKET#{ticket_id}", build)
        return strip_keys(after)

    def change_status(
        self,
        ctx: CommandContext,
        ticket_id: str,
        status: TicketStatus,
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        notes = check_reason(notes, required=False, field="notes")

        def build():
            before = self.tickets.require(ticket_id)
            current = TicketStatus(before.get("status", TicketStatus.OPEN.value))
            if status not in TICKET_TRANSITIONS[current]:
                raise validation_error(
                    "status", "transition",
                    f"Cannot move ticket from {current.value} to {status.value}"
                )
            now = to_iso(utcnow())
            set_values: Dict[str, Any] = {"status": status.value, "updatedAt": now}
            remove: List[str] = []
            if status is TicketStatus.RESOLVED:
                set_values.update({"resolvedAt": now, "resolvedBy": ctx.admin_id})
                if notes:
                    set_values["resolutionNotes"] = notes
            elif status is TicketStatus.CLOSED:
                set_values.update({"closedAt": now, "closedBy": ctx.admin_id})
            elif status is TicketStatus.OPEN:
                remove = [f for f in RESOLUTION_FIELDS if f in before]
            details = {"from": current.value, "to": status.value}
            if notes:
                details["notes"] = notes
            return self.tickets.mutation(before, set_values, remove), details

        after, _ = self.commands.commit(ctx, AuditAction.TICKET_STATE_CHANGE, f"TICKET#{ticket_id}", build)
        return strip_keys(after)

    def statistics(self) -> Dict[str, Any]:
        tickets = self.tickets.all()
        by_status: Counter = Counter()
        by_priority: Counter = Counter()
        by_category: Counter = Counter()
        hours: List[float] = []
        for ticket in tickets:
            by_status[ticket.get("status")] += 1
            by_priority[ticket.get("priority")] += 1
            by_category[ticket.get("category")] += 1
            if ticket.get("resolvedAt") and ticket.get("createdAt"):
                elapsed = parse_iso(ticket["resolvedAt"]) - parse_iso(ticket["createdAt"])
                hours.append(elapsed.total_seconds() / 3600)
        return {
            "total": len(tickets),
            "byStatus": dict(by_status),
            "byPriority": dict(by_priority),
            "byCategory": dict(by_category),
            "avgResolutionTime": round(sum(hours) / len(hours), 2) if hours else 0,
        }
