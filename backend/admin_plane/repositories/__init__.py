"""
Repository layer over the single wide-row table.

- users: user profiles, enrollments, login tracking
- courses: course metadata, moderation, ratings
- security: append-only security events and acknowledgements
- settings: platform settings and security policy documents
- base: versioned mutations and the generic entity repository used for
  tickets, announcements, templates, notifications, backups and maintenance
"""

from .base import Creation, EntityRepository, Mutation, new_id
from .courses import CourseRepository
from .security import SecurityEventRepository
from .settings import SettingsRepository
from .users import UserRepository

__all__ = [
    "Creation",
    "EntityRepository",
    "Mutation",
    "new_id",
    "CourseRepository",
    "SecurityEventRepository",
    "SettingsRepository",
    "UserRepository",
]
