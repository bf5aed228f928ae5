"""
Communication models: announcements, notification templates and notifications.

Each entity is keyed by its own id with SK = META.
"""

from enum import Enum


class AnnouncementType(str, Enum):
    INFO = "info"
    WARNING = "warning"
    MAINTENANCE = "maintenance"
    FEATURE = "feature"
    PROMOTION = "promotion"


class AnnouncementStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class Audience(str, Enum):
    ALL = "all"
    STUDENTS = "students"
    INSTRUCTORS = "instructors"
    ADMINS = "admins"
    SPECIFIC = "specific"


class Channel(str, Enum):
    IN_APP = "in_app"
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class NotificationStatus(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


AUDIENCE_ROLES = {
    Audience.STUDENTS: ["student"],
    Audience.INSTRUCTORS: ["instructor"],
    Audience.ADMINS: ["admin", "super_admin"],
}


def announcement_pk(announcement_id: str) -> str:
    return f"ANNOUNCEMENT#{announcement_id}"


def template_pk(template_id: str) -> str:
    return f"TEMPLATE#{template_id}"


def notification_pk(notification_id: str) -> str:
    return f"NOTIFICATION#{notification_id}"
