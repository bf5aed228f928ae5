"""
Request and response schemas for the admin control plane.
"""

from .auth import Token, UserLogin
from .admin import (
    AnnouncementCreate,
    BackupCreate,
    BulkCourseOperation,
    BulkUserOperation,
    CleanupRequest,
    CourseDecision,
    CourseModeration,
    EventAcknowledgement,
    MaintenanceCreate,
    NotificationSend,
    PoliciesUpdate,
    RestoreRequest,
    RoleUpdate,
    SettingsUpdate,
    StatusUpdate,
    TemplateCreate,
    TicketCreate,
    TicketStatusUpdate,
    payload,
)

__all__ = [
    "AnnouncementCreate",
    "BackupCreate",
    "BulkCourseOperation",
    "BulkUserOperation",
    "CleanupRequest",
    "CourseDecision",
    "CourseModeration",
    "EventAcknowledgement",
    "MaintenanceCreate",
    "NotificationSend",
    "PoliciesUpdate",
    "RestoreRequest",
    "RoleUpdate",
    "SettingsUpdate",
    "StatusUpdate",
    "TemplateCreate",
    "TicketCreate",
    "TicketStatusUpdate",
    "Token",
    "UserLogin",
    "payload",
]
