"""
Domain models for the admin control plane.

Every entity lives in one wide-row table keyed by (PK, SK).
"""

from .user import Role, AccountStatus, User
from .course import CourseStatus, ModerationAction, Course, Enrollment, Rating
from .admin import (
    AuditAction,
    AuditRecord,
    SecurityEvent,
    SecurityEventType,
    SuspiciousType,
    SystemSettings,
    SecurityPolicy,
)

__all__ = [
    "Role",
    "AccountStatus",
    "User",
    "CourseStatus",
    "ModerationAction",
    "Course",
    "Enrollment",
    "Rating",
    "AuditAction",
    "AuditRecord",
    "SecurityEvent",
    "SecurityEventType",
    "SuspiciousType",
    "SystemSettings",
    "SecurityPolicy",
]
