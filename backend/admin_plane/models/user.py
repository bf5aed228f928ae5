"""
User model for the admin control plane.

Defines the role hierarchy, account status lifecycle and the stored
profile shape (PK = USER#{userId}, SK = PROFILE).
"""

from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List

from pydantic import BaseModel, ConfigDict, Field

from admin_plane.core.timeutils import parse_iso


class Role(str, Enum):
    """
    Platform roles, ordered student < instructor < admin < super_admin.

    Ordering goes through `rank`; string values are never compared.
    """
    STUDENT = "student"
    INSTRUCTOR = "instructor"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]

    def at_least(self, other: "Role") -> bool:
        return self.rank >= other.rank

    def outranks(self, other: "Role") -> bool:
        return self.rank > other.rank

    @property
    def permissions(self) -> List[str]:
        if self is Role.SUPER_ADMIN:
            return [Role.SUPER_ADMIN.value, Role.ADMIN.value]
        if self is Role.ADMIN:
            return [Role.ADMIN.value]
        return []


_ROLE_RANK = {
    Role.STUDENT: 0,
    Role.INSTRUCTOR: 1,
    Role.ADMIN: 2,
    Role.SUPER_ADMIN: 3,
}


class AccountStatus(str, Enum):
    """Account lifecycle states."""
    ACTIVE = "active"
    SUSPENDED = "suspended"
    PENDING = "pending"


STATUS_TRANSITIONS = {
    AccountStatus.ACTIVE: {AccountStatus.SUSPENDED},
    AccountStatus.SUSPENDED: {AccountStatus.ACTIVE},
    AccountStatus.PENDING: {AccountStatus.ACTIVE, AccountStatus.SUSPENDED},
}


def can_transition_status(current: AccountStatus, target: AccountStatus) -> bool:
    return target in STATUS_TRANSITIONS.get(current, set())


def user_pk(user_id: str) -> str:
    return f"USER#{user_id}"


PROFILE_SK = "PROFILE"


class User(BaseModel):
    """
    Stored user profile.

    Only the fields the admin plane reads or writes are typed; anything else
    the registration plane stores is kept in `extra`.
    """
    model_config = ConfigDict(use_enum_values=False)

    userId: str
    name: str = ""
    email: str = ""
    role: Role = Role.STUDENT
    accountStatus: AccountStatus = AccountStatus.ACTIVE
    createdAt: Optional[str] = None
    lastLoginAt: Optional[str] = None
    loginCount: int = 0
    failedLoginAttempts: int = 0
    lockedUntil: Optional[str] = None
    suspendedBy: Optional[str] = None
    suspendedAt: Optional[str] = None
    suspensionReason: Optional[str] = None
    reactivatedBy: Optional[str] = None
    reactivatedAt: Optional[str] = None
    version: int = 0
    extra: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "User":
        known = set(cls.model_fields) - {"extra"}
        data = {k: v for k, v in item.items() if k in known}
        data.setdefault("userId", item["PK"].split("#", 1)[1])
        extra = {
            k: v for k, v in item.items()
            if k not in known and k not in {"PK", "SK", "entityType", "password"}
        }
        return cls(**data, extra=extra)

    def is_locked(self, now: datetime) -> bool:
        if not self.lockedUntil:
            return False
        return parse_iso(self.lockedUntil) > now

    def to_view(self) -> Dict[str, Any]:
        """Public view returned by admin endpoints (never includes credentials)."""
        view = self.model_dump(mode="json", exclude={"extra", "version"}, exclude_none=True)
        view.update({k: v for k, v in self.extra.items() if k not in view})
        return view
