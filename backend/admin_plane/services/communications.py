"""
Announcements, notification templates and targeted notifications.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from boto3.dynamodb.conditions import Attr

from admin_plane.core.database import Store
from admin_plane.core.errors import validation_error
from admin_plane.core.timeutils import to_iso, utcnow
from admin_plane.models.admin import AuditAction
from admin_plane.models.communication import (
    AUDIENCE_ROLES,
    AnnouncementStatus,
    Audience,
    Channel,
    NotificationStatus,
)
from admin_plane.models.user import PROFILE_SK, AccountStatus, user_pk
from admin_plane.repositories.base import EntityRepository, new_id, strip_keys
from admin_plane.repositories.users import UserRepository
from .commands import AdminCommandHandler, CommandContext
from .realtime import Multiplexer


logger = logging.getLogger(__name__)


def _compact(attributes: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in attributes.items() if v is not None}


def _user_id(item: Dict[str, Any]) -> str:
    return item.get("userId") or item["PK"].split("#", 1)[1]


class CommunicationService:
    """
    Args:
        store: Table gateway
        commands: Command pipeline used for every write
        users: User repository for recipient resolution
        publisher: Realtime publisher for `notification:new`
    """

    def __init__(
        self,
        store: Store,
        commands: AdminCommandHandler,
        users: UserRepository,
        publisher: Optional[Multiplexer] = None
    ):
        self.store = store
        self.commands = commands
        self.users = users
        self.publisher = publisher
        self.announcements = EntityRepository(store, "Announcement", "ANNOUNCEMENT", "Announcement")
        self.templates = EntityRepository(store, "NotificationTemplate", "TEMPLATE", "Template")
        self.notifications = EntityRepository(store, "Notification", "NOTIFICATION", "Notification")

    # Announcements

    def create_announcement(self, ctx: CommandContext, payload: Dict[str, Any]) -> Dict[str, Any]:
        announcement_id = new_id()
        now = to_iso(utcnow())
        status = payload.get("status") or AnnouncementStatus.DRAFT.value
        audience = payload.get("targetAudience") or Audience.ALL.value
        if audience == Audience.SPECIFIC.value and not payload.get("targetUserIds"):
            raise validation_error("targetUserIds", "required", "targetUserIds is required for a specific audience")
        if status == AnnouncementStatus.SCHEDULED.value and not payload.get("scheduledFor"):
            raise validation_error("scheduledFor", "required", "scheduledFor is required for a scheduled announcement")

        attributes = _compact({
            "announcementId": announcement_id,
            "title": payload["title"],
            "content": payload["content"],
            "type": payload.get("type") or "info",
            "targetAudience": audience,
            "targetUserIds": payload.get("targetUserIds") or [],
            "targetRoles": payload.get("targetRoles") or AUDIENCE_ROLES.get(Audience(audience), []),
            "status": status,
            "scheduledFor": payload.get("scheduledFor"),
            "publishedAt": now if status == AnnouncementStatus.PUBLISHED.value else None,
            "expiresAt": payload.get("expiresAt"),
            "channels": payload.get("channels") or [Channel.IN_APP.value],
            "priority": payload.get("priority") or "normal",
            "createdBy": ctx.admin_id,
            "createdAt": now,
            "updatedAt": now,
        })
        creation = self.announcements.creation(announcement_id, attributes)

        def build():
            return creation, {
                "title": attributes["title"],
                "status": status,
                "targetAudience": audience,
            }

        after, _ = self.commands.commit(
            ctx, AuditAction.ANNOUNCEMENT_PUBLISH, f"ANNOUNCEMENT#{announcement_id}", build
        )
        if status == AnnouncementStatus.PUBLISHED.value and self.publisher:
            self.publisher.publish("notification:new", {
                "kind": "announcement",
                "announcementId": announcement_id,
                "title": attributes["title"],
                "type": attributes["type"],
                "priority": attributes["priority"],
                "targetAudience": audience,
            })
        return strip_keys(after)

    def list_announcements(
        self,
        status: Optional[AnnouncementStatus] = None,
        limit: int = 50,
        token: Optional[str] = None
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        filter = Attr("status").eq(status.value) if status else None
        items, next_token = self.announcements.list(limit, token, filter)
        items.sort(key=lambda i: i.get("createdAt", ""), reverse=True)
        return [strip_keys(i) for i in items], next_token

    # Templates

    def create_template(self, ctx: CommandContext, payload: Dict[str, Any]) -> Dict[str, Any]:
        template_id = new_id()
        now = to_iso(utcnow())
        attributes = _compact({
            "templateId": template_id,
            "name": payload["name"],
            "category": payload.get("category") or "general",
            "subject": payload["subject"],
            "body": payload["body"],
            "variables": payload.get("variables") or [],
            "channels": payload.get("channels") or [Channel.EMAIL.value],
            "isActive": payload.get("isActive", True),
            "createdBy": ctx.admin_id,
            "createdAt": now,
            "updatedAt": now,
        })
        creation = self.templates.creation(template_id, attributes)

        def build():
            return creation, {"template": attributes["name"], "category": attributes["category"]}

        after, _ = self.commands.commit(ctx, AuditAction.SETTING_UPDATE, f"TEMPLATE#{template_id}", build)
        return strip_keys(after)

    def list_templates(
        self,
        category: Optional[str] = None,
        limit: int = 50,
        token: Optional[str] = None
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        filter = Attr("category").eq(category) if category else None
        items, next_token = self.templates.list(limit, token, filter)
        return [strip_keys(i) for i in items], next_token

    # Notifications

    def _recipients(self, user_ids: List[str], roles: List[str]) -> Tuple[List[str], List[str]]:
        """Resolve active recipients; returns (recipient ids, unknown or inactive ids)."""
        recipients: Dict[str, None] = {}
        missing: List[str] = []
        if user_ids:
            unique = list(dict.fromkeys(user_ids))
            rows = self.store.batch_get([{"PK": user_pk(u), "SK": PROFILE_SK} for u in unique])
            active = {
                _user_id(r) for r in rows
                if r.get("accountStatus", AccountStatus.ACTIVE.value) == AccountStatus.ACTIVE.value
            }
            for user_id in unique:
                if user_id in active:
                    recipients[user_id] = None
                else:
                    missing.append(user_id)
        if roles:
            for row in self.users.find_by_roles(roles):
                recipients[_user_id(row)] = None
        return list(recipients), missing

    def send_notification(self, ctx: CommandContext, payload: Dict[str, Any]) -> Dict[str, Any]:
        user_ids = payload.get("targetUserIds") or []
        roles = payload.get("targetRoles") or []
        if not user_ids and not roles:
            raise validation_error("targetUserIds", "required", "targetUserIds or targetRoles is required")

        recipients, missing = self._recipients(user_ids, roles)
        if not recipients:
            raise validation_error("targetUserIds", "no_recipients", "No active recipients matched")

        notification_id = new_id()
        now = to_iso(utcnow())
        attributes = _compact({
            "notificationId": notification_id,
            "title": payload["title"],
            "message": payload["message"],
            "type": payload.get("type") or "info",
            "targetUserIds": user_ids,
            "targetRoles": roles,
            "recipientIds": recipients,
            "channels": payload.get("channels") or [Channel.IN_APP.value],
            "templateId": payload.get("templateId"),
            "status": NotificationStatus.SENT.value,
            "sentAt": now,
            "deliveryStats": {
                "total": len(recipients) + len(missing),
                "sent": len(recipients),
                "delivered": 0,
                "failed": len(missing),
                "opened": 0,
            },
            "createdBy": ctx.admin_id,
            "createdAt": now,
            "updatedAt": now,
        })
        creation = self.notifications.creation(notification_id, attributes)

        def build():
            return creation, {
                "title": attributes["title"],
                "recipients": len(recipients),
                "channels": attributes["channels"],
            }

        after, _ = self.commands.commit(
            ctx, AuditAction.NOTIFICATION_SEND, f"NOTIFICATION#{notification_id}", build
        )
        if self.publisher:
            self.publisher.publish("notification:new", {
                "kind": "notification",
                "notificationId": notification_id,
                "title": attributes["title"],
                "message": attributes["message"],
                "type": attributes["type"],
                "recipientIds": recipients,
            })
        return strip_keys(after)
