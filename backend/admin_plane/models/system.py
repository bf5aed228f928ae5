"""
System operation models: backups, maintenance windows and data cleanup.
"""

from enum import Enum


class BackupType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    SELECTIVE = "selective"


class BackupStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class MaintenanceType(str, Enum):
    SCHEDULED = "scheduled"
    EMERGENCY = "emergency"
    UPGRADE = "upgrade"


class MaintenanceStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CleanupType(str, Enum):
    SECURITY_EVENTS = "security_events"
    EXPIRED_NOTIFICATIONS = "expired_notifications"
    CLOSED_TICKETS = "closed_tickets"
    AUDIT_LOGS = "audit_logs"


# Entity types a backup may carry; audit and security rows are never restored over
BACKUP_ENTITY_TYPES = (
    "User", "Course", "Enrollment", "Rating", "SupportTicket", "Announcement",
    "NotificationTemplate", "Notification", "SystemSettings", "SecurityPolicy",
    "MaintenanceWindow",
)

INCREMENTAL_ENTITY_TYPES = ("User", "Course", "Enrollment", "Rating")


def backup_pk(backup_id: str) -> str:
    return f"BACKUP#{backup_id}"


def maintenance_pk(maintenance_id: str) -> str:
    return f"MAINTENANCE#{maintenance_id}"
