"""
Admin command handler.

Every privileged mutation runs the same pipeline:

1. shape validation (request schemas and the checks below)
2. authorization of the issuing principal
3. conditional, versioned write of the entity
4. audit record, in the same transaction as 3 when the store allows it,
   otherwise written right after 3 with a compensating write on failure
5. realtime publish
6. the new entity view is returned

Conditional-write losses are retried at most twice, and only while the
entity still carries the version the command first read; once another
writer has moved it on, the command fails with CONFLICT.
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from admin_plane.core.database import ConditionFailed, Delete, Store, TransactionCancelled, Update
from admin_plane.core.errors import AdminError, ErrorKind, validation_error
from admin_plane.core.logging import log_error
from admin_plane.core.security import Principal, authorize
from admin_plane.core.timeutils import utcnow
from admin_plane.models.admin import AuditAction, AuditRecord, SecurityPolicy, SystemSettings
from admin_plane.models.course import (
    MAX_REASON_LENGTH,
    CourseStatus,
    ModerationAction,
    next_status,
    reason_required,
)
from admin_plane.models.user import AccountStatus, Role, User, can_transition_status
from admin_plane.repositories.base import Creation, Mutation, strip_keys
from admin_plane.repositories.courses import CourseRepository
from admin_plane.repositories.security import SecurityEventRepository
from admin_plane.repositories.settings import SettingsRepository
from admin_plane.repositories.users import UserRepository
from .audit import AuditLogger
from .identity import IdentityGate
from .realtime import Multiplexer
from .settings_cache import SettingsCache


logger = logging.getLogger(__name__)

MAX_BULK_TARGETS = 100

Write = Union[Mutation, Creation]

MODERATION_AUDIT = {
    ModerationAction.APPROVE: AuditAction.COURSE_APPROVAL,
    ModerationAction.REJECT: AuditAction.COURSE_REJECTION,
    ModerationAction.FLAG: AuditAction.COURSE_MODERATION,
    ModerationAction.SUBMIT: AuditAction.COURSE_MODERATION,
}


@dataclass
class CommandContext:
    """Who issued a command, from where, and by when it must finish."""
    principal: Principal
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    deadline: Optional[float] = None

    @property
    def admin_id(self) -> str:
        return self.principal.sub

    def check_deadline(self) -> None:
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise AdminError(ErrorKind.TIMEOUT)


def check_reason(reason: Optional[str], required: bool, field: str = "reason") -> Optional[str]:
    """Validate a moderation/admin reason (1..1000 chars)."""
    if reason is None or (isinstance(reason, str) and not reason.strip()):
        if required:
            raise validation_error(field, "required", f"{field} is required")
        return None
    if len(reason) > MAX_REASON_LENGTH:
        raise validation_error(field, "max_length", f"{field} must be at most {MAX_REASON_LENGTH} characters")
    return reason.strip()


class AdminCommandHandler:
    """
    Audited mutations for users, courses, settings and security events.

    Args:
        store: Table gateway (decides transactional vs compensating mode)
        audit: Audit logger
        users: User repository
        courses: Course repository
        security_events: Security event repository (acknowledgements)
        settings_repository: Settings/policy documents
        settings_cache: Snapshot refreshed after settings/policy commands
        identity: Identity gate (decision cache invalidation)
        publisher: Realtime publisher
        max_retries: Retries for conflicts and for STORE_FAILED during the mutation
        sleep: Backoff sleep (injectable for tests)
    """

    def __init__(
        self,
        store: Store,
        audit: AuditLogger,
        users: UserRepository,
        courses: CourseRepository,
        security_events: SecurityEventRepository,
        settings_repository: SettingsRepository,
        settings_cache: SettingsCache,
        identity: Optional[IdentityGate] = None,
        publisher: Optional[Multiplexer] = None,
        max_retries: int = 2,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.store = store
        self.audit = audit
        self.users = users
        self.courses = courses
        self.security_events = security_events
        self.settings_repository = settings_repository
        self.settings_cache = settings_cache
        self.identity = identity
        self.publisher = publisher
        self.max_retries = max_retries
        self._sleep = sleep

    # Pipeline

    def _backoff(self, attempt: int) -> None:
        self._sleep(random.uniform(0.02, 0.1) * attempt)

    def _apply(self, op: Union[Update, Delete, Any]) -> None:
        if isinstance(op, Update):
            self.store.update(op.key, op.set_values, op.remove, op.add, op.condition)
        elif isinstance(op, Delete):
            self.store.delete(op.key, op.condition)
        else:
            self.store.put(op.item, op.condition)

    def _compensate(self, write: Write, record: AuditRecord) -> None:
        try:
            self._apply(write.compensation())
            logger.warning(
                f"Reverted {record.action.value} on {record.targetEntity} after audit failure",
                extra={"action_id": record.actionId},
            )
        except (AdminError, ConditionFailed) as exc:
            log_error(logger, exc, {
                "compensation_failed": True,
                "target_entity": record.targetEntity,
                "action_id": record.actionId,
            })

    def _write_and_audit(self, ctx: CommandContext, write: Write, record: AuditRecord) -> None:
        if self.store.use_transactions:
            try:
                self.store.transact_write([write.forward(), self.audit.write_op(record)])
            except TransactionCancelled as exc:
                if exc.failed_at(1) and not exc.failed_at(0):
                    raise AdminError(ErrorKind.AUDIT_FAILED) from exc
                raise
            return

        self._apply(write.forward())
        try:
            ctx.check_deadline()
            self.audit.persist(record)
        except (AdminError, ConditionFailed) as exc:
            self._compensate(write, record)
            if isinstance(exc, AdminError) and exc.kind is ErrorKind.TIMEOUT:
                raise
            raise AdminError(ErrorKind.AUDIT_FAILED) from exc

    def commit(
        self,
        ctx: CommandContext,
        action: AuditAction,
        target_entity: str,
        build: Callable[[], Tuple[Write, Dict[str, Any]]],
        requirement: Role = Role.SUPER_ADMIN
    ) -> Tuple[Dict[str, Any], AuditRecord]:
        """
        Run steps 2-4 of the pipeline for one entity.

        `build` reads current state, validates the transition and returns the
        write plus the audit details; it is re-run on every retry.

        Returns the entity as written and its audit record.
        """
        authorize(ctx.principal, requirement)
        conflicts = 0
        failures = 0
        first_version: Optional[int] = None
        while True:
            ctx.check_deadline()
            try:
                write, details = build()
            except AdminError as exc:
                # After a lost write, domain checks see the winner's state.
                if conflicts and exc.kind not in (ErrorKind.STORE_FAILED, ErrorKind.TIMEOUT):
                    raise AdminError(ErrorKind.CONFLICT) from exc
                raise
            if isinstance(write, Mutation):
                if first_version is None:
                    first_version = write.expected_version
                elif write.expected_version != first_version:
                    raise AdminError(ErrorKind.CONFLICT)
            record = self.audit.record(
                ctx.admin_id, action, target_entity, details, ctx.ip, ctx.user_agent
            )
            try:
                self._write_and_audit(ctx, write, record)
            except (ConditionFailed, TransactionCancelled):
                conflicts += 1
                if conflicts > self.max_retries:
                    raise AdminError(ErrorKind.CONFLICT)
                self._backoff(conflicts)
                continue
            except AdminError as exc:
                if exc.kind is ErrorKind.STORE_FAILED and failures < self.max_retries:
                    failures += 1
                    logger.warning(f"Store failure during {action.value}; retry {failures}")
                    self._backoff(failures)
                    continue
                raise
            self.audit.committed(record)
            return write.after(), record

    def bulk(
        self,
        ids: Sequence[str],
        operation: Callable[[str], Any]
    ) -> Dict[str, List[Dict[str, Any]]]:
        """
        Apply `operation` to each id independently.

        Failures never roll back successful items.
        """
        if not ids:
            raise validation_error("ids", "required", "At least one target is required")
        if len(ids) > MAX_BULK_TARGETS:
            raise validation_error("ids", "max_items", f"At most {MAX_BULK_TARGETS} targets per request")
        successful: List[Dict[str, Any]] = []
        failed: List[Dict[str, Any]] = []
        pending = list(dict.fromkeys(ids))
        while pending:
            target_id = pending.pop(0)
            try:
                operation(target_id)
                successful.append({"id": target_id})
            except AdminError as exc:
                failed.append({"id": target_id, "errorKind": exc.kind.value, "message": exc.message})
                if exc.kind is ErrorKind.TIMEOUT:
                    # Out of time: nothing further is attempted
                    failed.extend({"id": i, "errorKind": exc.kind.value, "message": exc.message} for i in pending)
                    break
        return {"successful": successful, "failed": failed}

    # Users

    def change_role(self, ctx: CommandContext, user_id: str, role: Role, reason: Optional[str] = None) -> Dict[str, Any]:
        reason = check_reason(reason, required=False)
        authorize(ctx.principal, Role.SUPER_ADMIN)

        def build():
            before = self.users.require_item(user_id)
            current = Role(before.get("role", Role.STUDENT.value))
            if current is role:
                raise validation_error("role", "unchanged", f"User already has role {role.value}")
            if (
                current is Role.SUPER_ADMIN
                and before.get("accountStatus") == AccountStatus.ACTIVE.value
            ):
                if self.users.count_active(Role.SUPER_ADMIN) <= 1:
                    raise AdminError(ErrorKind.LAST_SUPER_ADMIN)
            details = {"previousRole": current.value, "newRole": role.value}
            if reason:
                details["reason"] = reason
            return self.users.role_change(before, role, ctx.admin_id, utcnow()), details

        after, _ = self.commit(ctx, AuditAction.USER_ROLE_CHANGE, f"USER#{user_id}", build)
        if self.identity:
            self.identity.invalidate(user_id)
        return User.from_item(after).to_view()

    def update_status(
        self,
        ctx: CommandContext,
        user_id: str,
        status: AccountStatus,
        reason: Optional[str] = None
    ) -> Dict[str, Any]:
        reason = check_reason(reason, required=status is AccountStatus.SUSPENDED)
        authorize(ctx.principal, Role.SUPER_ADMIN)

        def build():
            before = self.users.require_item(user_id)
            current = AccountStatus(before.get("accountStatus", AccountStatus.ACTIVE.value))
            if not can_transition_status(current, status):
                raise validation_error(
                    "status", "transition",
                    f"Cannot change account status from {current.value} to {status.value}"
                )
            if (
                status is AccountStatus.SUSPENDED
                and before.get("role") == Role.SUPER_ADMIN.value
                and current is AccountStatus.ACTIVE
                and self.users.count_active(Role.SUPER_ADMIN) <= 1
            ):
                raise AdminError(ErrorKind.LAST_SUPER_ADMIN)
            details = {"previousStatus": current.value, "newStatus": status.value}
            if reason:
                details["reason"] = reason
            return self.users.status_change(before, status, ctx.admin_id, reason, utcnow()), details

        after, _ = self.commit(ctx, AuditAction.USER_STATUS_UPDATE, f"USER#{user_id}", build)
        if self.identity:
            self.identity.invalidate(user_id)
        if status is AccountStatus.SUSPENDED and self.publisher:
            self.publisher.disconnect_principal(user_id, "suspended")
        return User.from_item(after).to_view()

    def bulk_role_change(self, ctx: CommandContext, user_ids: Sequence[str], role: Role, reason: Optional[str] = None):
        check_reason(reason, required=False)
        authorize(ctx.principal, Role.SUPER_ADMIN)
        return self.bulk(user_ids, lambda uid: self.change_role(ctx, uid, role, reason))

    def bulk_status_update(self, ctx: CommandContext, user_ids: Sequence[str], status: AccountStatus, reason: Optional[str] = None):
        check_reason(reason, required=status is AccountStatus.SUSPENDED)
        authorize(ctx.principal, Role.SUPER_ADMIN)
        return self.bulk(user_ids, lambda uid: self.update_status(ctx, uid, status, reason))

    # Courses

    def moderate_course(
        self,
        ctx: CommandContext,
        course_id: str,
        action: ModerationAction,
        reason: Optional[str] = None
    ) -> Dict[str, Any]:
        reason = check_reason(reason, required=reason_required(action))
        authorize(ctx.principal, Role.SUPER_ADMIN)

        def build():
            before = self.courses.require_item(course_id)
            current = CourseStatus(before.get("status", CourseStatus.DRAFT.value))
            target = next_status(current, action)
            if target is None:
                raise validation_error(
                    "action", "transition",
                    f"Cannot {action.value} a course in status {current.value}"
                )
            details = {
                "action": action.value,
                "previousStatus": current.value,
                "newStatus": target.value,
            }
            if reason:
                details["reason"] = reason
            return self.courses.moderation(before, target, ctx.admin_id, reason, utcnow()), details

        after, _ = self.commit(ctx, MODERATION_AUDIT[action], f"COURSE#{course_id}", build)
        view = strip_keys(after)
        view.setdefault("courseId", course_id)
        return view

    def bulk_moderate(self, ctx: CommandContext, course_ids: Sequence[str], action: ModerationAction, reason: Optional[str] = None):
        check_reason(reason, required=reason_required(action))
        authorize(ctx.principal, Role.SUPER_ADMIN)
        return self.bulk(course_ids, lambda cid: self.moderate_course(ctx, cid, action, reason))

    # Settings and policies

    def update_settings(self, ctx: CommandContext, section: str, values: Dict[str, Any]) -> Dict[str, Any]:
        key = SystemSettings.SECTIONS.get(section)
        if key is None:
            raise validation_error(
                "section", "enum",
                f"Supported sections: {', '.join(SystemSettings.SECTIONS)}"
            )
        if not values:
            raise validation_error("settings", "required", "settings must not be empty")

        def build():
            write, previous, merged = self.settings_repository.settings_change(
                {key: values}, ctx.admin_id, utcnow()
            )
            details = {"section": key, "previous": previous.get(key, {}), "updated": merged[key]}
            return write, details

        self.commit(ctx, AuditAction.SETTING_UPDATE, f"SETTINGS#{section}", build)
        snapshot = self.settings_cache.refresh(broadcast=True)
        return {"settings": snapshot.settings, "version": snapshot.version}

    def update_policies(self, ctx: CommandContext, policies: Dict[str, Any]) -> Dict[str, Any]:
        if not policies:
            raise validation_error("policies", "required", "policies must not be empty")
        unknown = [k for k in policies if k not in SecurityPolicy.SECTIONS]
        if unknown:
            raise validation_error(
                "policies", "enum",
                f"Supported policy sections: {', '.join(SecurityPolicy.SECTIONS)}"
            )
        for section, values in policies.items():
            if not isinstance(values, dict):
                raise validation_error(f"policies.{section}", "type", f"{section} must be an object")

        def build():
            write, previous, merged = self.settings_repository.policies_change(
                policies, ctx.admin_id, utcnow()
            )
            details = {
                "sections": sorted(policies),
                "previous": {k: previous.get(k) for k in policies},
                "updated": {k: merged.get(k) for k in policies},
            }
            return write, details

        self.commit(ctx, AuditAction.POLICY_UPDATE, "POLICY#security", build)
        snapshot = self.settings_cache.refresh(broadcast=True)
        return {"policies": snapshot.policies, "version": snapshot.version}

    # Security events

    def acknowledge_event(self, ctx: CommandContext, event_id: str, note: Optional[str] = None) -> Dict[str, Any]:
        note = check_reason(note, required=False, field="note")
        authorize(ctx.principal, Role.SUPER_ADMIN)

        def build():
            event = self.security_events.find(event_id)
            if event is None:
                raise AdminError(ErrorKind.NOT_FOUND, "Security event not found")
            if self.security_events.acknowledged_ids([event_id]):
                raise AdminError(ErrorKind.CONFLICT, "Security event already acknowledged")
            details = {"eventType": event.get("eventType"), "subtype": event.get("subtype")}
            if note:
                details["note"] = note
            return self.security_events.acknowledgement(event, ctx.admin_id, note, utcnow()), details

        after, _ = self.commit(ctx, AuditAction.SECURITY_EVENT_ACK, f"SECURITY_EVENT#{event_id}", build)
        return strip_keys(after)
