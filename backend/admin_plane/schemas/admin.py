"""
Request schemas for the admin API.

Shape validation only: enum membership, lengths and required fields.
State-dependent rules (transitions, last super admin) live in the services.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from admin_plane.models.communication import (
    AnnouncementStatus,
    AnnouncementType,
    Audience,
    Channel,
    Priority,
)
from admin_plane.models.course import MAX_REASON_LENGTH, ModerationAction
from admin_plane.models.support import TicketCategory, TicketPriority, TicketStatus
from admin_plane.models.system import BackupType, CleanupType, MaintenanceType
from admin_plane.models.user import AccountStatus, Role

MAX_BULK = 100

Reason = Optional[str]


class _Request(BaseModel):
    model_config = {"extra": "ignore", "str_strip_whitespace": True}


# Users

class RoleUpdate(_Request):
    role: Role
    reason: Reason = Field(default=None, max_length=MAX_REASON_LENGTH)


class StatusUpdate(_Request):
    status: AccountStatus
    reason: Reason = Field(default=None, max_length=MAX_REASON_LENGTH)

    @field_validator("status")
    @classmethod
    def settable_status(cls, v: AccountStatus) -> AccountStatus:
        if v is AccountStatus.PENDING:
            raise ValueError("status must be active or suspended")
        return v


class BulkUserOperation(_Request):
    userIds: List[str] = Field(min_length=1, max_length=MAX_BULK)
    operation: Literal["role", "status"]
    role: Optional[Role] = None
    status: Optional[AccountStatus] = None
    reason: Reason = Field(default=None, max_length=MAX_REASON_LENGTH)

    @model_validator(mode="after")
    def operation_value(self) -> "BulkUserOperation":
        if self.operation == "role" and self.role is None:
            raise ValueError("role is required for a role operation")
        if self.operation == "status":
            if self.status is None:
                raise ValueError("status is required for a status operation")
            if self.status is AccountStatus.PENDING:
                raise ValueError("status must be active or suspended")
        return self


# Courses

class CourseDecision(_Request):
    reason: Reason = Field(default=None, max_length=MAX_REASON_LENGTH)


class CourseModeration(_Request):
    action: ModerationAction
    reason: Reason = Field(default=None, max_length=MAX_REASON_LENGTH)


class BulkCourseOperation(_Request):
    courseIds: List[str] = Field(min_length=1, max_length=MAX_BULK)
    action: ModerationAction
    reason: Reason = Field(default=None, max_length=MAX_REASON_LENGTH)


# Settings and security

class SettingsUpdate(_Request):
    settings: Dict[str, Any] = Field(min_length=1)


class PoliciesUpdate(_Request):
    policies: Dict[str, Dict[str, Any]] = Field(min_length=1)


class EventAcknowledgement(_Request):
    note: Optional[str] = Field(default=None, max_length=MAX_REASON_LENGTH)


# Support

class TicketCreate(_Request):
    userId: str = Field(min_length=1)
    userEmail: Optional[str] = None
    userName: Optional[str] = None
    subject: str = Field(min_length=1, max_length=200)
    description: str = Field(min_length=1, max_length=5000)
    category: TicketCategory = TicketCategory.GENERAL
    priority: TicketPriority = TicketPriority.MEDIUM
    assignedTo: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class TicketStatusUpdate(_Request):
    status: TicketStatus
    notes: Optional[str] = Field(default=None, max_length=MAX_REASON_LENGTH)


# Communications

class AnnouncementCreate(_Request):
    title: str = Field(min_length=1, max_length=200)
    content: str = Field(min_length=1, max_length=10000)
    type: AnnouncementType = AnnouncementType.INFO
    targetAudience: Audience = Audience.ALL
    targetUserIds: List[str] = Field(default_factory=list)
    targetRoles: List[Role] = Field(default_factory=list)
    status: AnnouncementStatus = AnnouncementStatus.DRAFT
    scheduledFor: Optional[datetime] = None
    expiresAt: Optional[datetime] = None
    channels: List[Channel] = Field(default_factory=lambda: [Channel.IN_APP])
    priority: Priority = Priority.NORMAL


class NotificationSend(_Request):
    title: str = Field(min_length=1, max_length=200)
    message: str = Field(min_length=1, max_length=5000)
    type: str = "info"
    targetRoles: List[Role] = Field(default_factory=list)
    targetUserIds: List[str] = Field(default_factory=list)
    channels: List[Channel] = Field(default_factory=lambda: [Channel.IN_APP])
    templateId: Optional[str] = None


class TemplateCreate(_Request):
    name: str = Field(min_length=1, max_length=200)
    category: str = "general"
    subject: str = Field(min_length=1, max_length=500)
    body: str = Field(min_length=1)
    variables: List[str] = Field(default_factory=list)
    channels: List[Channel] = Field(default_factory=lambda: [Channel.EMAIL])
    isActive: bool = True


# System

class CleanupRequest(_Request):
    cleanupType: CleanupType
    daysOld: int = Field(default=90, ge=1, le=3650)
    dryRun: bool = True


class BackupCreate(_Request):
    backupType: BackupType = BackupType.FULL
    includeData: List[str] = Field(default_factory=list)


class RestoreOptions(_Request):
    dryRun: bool = False
    entityTypes: List[str] = Field(default_factory=list)


class RestoreRequest(_Request):
    restoreOptions: RestoreOptions = Field(default_factory=RestoreOptions)


class MaintenanceCreate(_Request):
    title: str = Field(min_length=1, max_length=200)
    description: str = ""
    startTime: datetime
    endTime: datetime
    maintenanceType: MaintenanceType = MaintenanceType.SCHEDULED
    affectedServices: List[str] = Field(default_factory=list)
    notifyUsers: bool = True


def payload(model: BaseModel) -> Dict[str, Any]:
    """Store-ready dict: enum values, ISO-8601 datetimes, no unset optionals."""
    return model.model_dump(mode="json", exclude_none=True)
