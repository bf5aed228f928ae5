"""
User repository.

Reads user profiles and enrollments, and builds the versioned mutations
the command handler applies for role and status changes.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from boto3.dynamodb.conditions import Attr, Key

from admin_plane.core.database import Store
from admin_plane.core.errors import not_found
from admin_plane.core.timeutils import to_iso
from admin_plane.models.course import Enrollment
from admin_plane.models.user import PROFILE_SK, AccountStatus, Role, User, user_pk
from .base import Mutation, scan_page


logger = logging.getLogger(__name__)

SUSPENSION_FIELDS = ("suspendedBy", "suspendedAt", "suspensionReason")


class UserRepository:
    """Typed access to USER# rows."""

    def __init__(self, store: Store):
        self.store = store

    def get_item(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self.store.get(user_pk(user_id), PROFILE_SK)

    def get(self, user_id: str) -> Optional[User]:
        item = self.get_item(user_id)
        return User.from_item(item) if item else None

    def require_item(self, user_id: str) -> Dict[str, Any]:
        item = self.get_item(user_id)
        if item is None:
            raise not_found("User")
        return item

    def list(
        self,
        role: Optional[Role] = None,
        status: Optional[AccountStatus] = None,
        search: Optional[str] = None,
        limit: int = 50,
        token: Optional[str] = None
    ) -> Tuple[List[User], Optional[str]]:
        """
        List user profiles with optional filters.

        `search` matches name or email case-insensitively.
        """
        condition = Attr("entityType").eq("User") & Attr("SK").eq(PROFILE_SK)
        if role:
            condition = condition & Attr("role").eq(role.value)
        if status:
            condition = condition & Attr("accountStatus").eq(status.value)

        predicate = None
        if search:
            needle = search.strip().lower()

            def predicate(item: Dict[str, Any]) -> bool:
                return (
                    needle in str(item.get("name", "")).lower()
                    or needle in str(item.get("email", "")).lower()
                )

        items, next_token = scan_page(self.store, condition, limit, token, predicate)
        return [User.from_item(i) for i in items], next_token

    def all_items(self) -> List[Dict[str, Any]]:
        return list(self.store.scan_all(Attr("entityType").eq("User") & Attr("SK").eq(PROFILE_SK)))

    def find_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        # TODO: replace with a byEmail index lookup once registration writes one
        condition = Attr("entityType").eq("User") & Attr("email").eq(email.strip().lower())
        for item in self.store.scan_all(condition):
            return item
        return None

    def find_by_roles(self, roles: List[str]) -> List[Dict[str, Any]]:
        condition = (
            Attr("entityType").eq("User")
            & Attr("SK").eq(PROFILE_SK)
            & Attr("role").is_in(roles)
            & Attr("accountStatus").eq(AccountStatus.ACTIVE.value)
        )
        return list(self.store.scan_all(condition))

    def count_active(self, role: Role) -> int:
        condition = (
            Attr("entityType").eq("User")
            & Attr("SK").eq(PROFILE_SK)
            & Attr("role").eq(role.value)
            & Attr("accountStatus").eq(AccountStatus.ACTIVE.value)
        )
        return self.store.count(condition)

    def enrollments(self, user_id: str) -> List[Enrollment]:
        rows = self.store.query_all(
            Key("PK").eq(user_pk(user_id)) & Key("SK").begins_with("ENROLL#"),
            consistent=True,
        )
        return [Enrollment.from_item(r) for r in rows]

    # Mutations

    def role_change(self, before: Dict[str, Any], role: Role, admin_id: str, now: datetime) -> Mutation:
        return Mutation(
            key={"PK": before["PK"], "SK": before["SK"]},
            before=before,
            set_values={
                "role": role.value,
                "roleUpdatedBy": admin_id,
                "roleUpdatedAt": to_iso(now),
            },
            condition=Attr("role").eq(before.get("role")),
        )

    def status_change(
        self,
        before: Dict[str, Any],
        status: AccountStatus,
        admin_id: str,
        reason: Optional[str],
        now: datetime
    ) -> Mutation:
        stamp = to_iso(now)
        set_values: Dict[str, Any] = {"accountStatus": status.value}
        remove: List[str] = []
        if status is AccountStatus.SUSPENDED:
            set_values.update({
                "suspendedBy": admin_id,
                "suspendedAt": stamp,
                "suspensionReason": reason,
            })
        else:
            set_values.update({"reactivatedBy": admin_id, "reactivatedAt": stamp})
            remove = [f for f in SUSPENSION_FIELDS if f in before]
        return Mutation(
            key={"PK": before["PK"], "SK": before["SK"]},
            before=before,
            set_values={k: v for k, v in set_values.items() if v is not None},
            remove=remove,
            condition=Attr("accountStatus").eq(before.get("accountStatus")),
        )

    # Login tracking (not audited; these are the user's own actions)

    def record_login(self, user_id: str, success: bool, now: datetime) -> None:
        key = {"PK": user_pk(user_id), "SK": PROFILE_SK}
        if success:
            self.store.update(
                key,
                set_values={"lastLoginAt": to_iso(now), "failedLoginAttempts": 0},
                add={"loginCount": 1},
                condition=Attr("PK").exists(),
            )
        else:
            self.store.update(key, add={"failedLoginAttempts": 1}, condition=Attr("PK").exists())

    def lock(self, user_id: str, until: datetime) -> None:
        self.store.update(
            {"PK": user_pk(user_id), "SK": PROFILE_SK},
            set_values={"lockedUntil": to_iso(until)},
            condition=Attr("PK").exists(),
        )
        logger.info(f"Locked account {user_id} until {to_iso(until)}")
