"""
System operations: backups, restores, maintenance windows and data cleanup.

Backups are JSON snapshots of entity rows stored under
`s3://{BUCKET}/backups/{backupId}.json`. Audit and security rows are never
part of a snapshot, so a restore cannot rewrite history.
"""

import json
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from boto3.dynamodb.conditions import Attr
from botocore.exceptions import BotoCoreError, ClientError

from admin_plane.core.config import Settings
from admin_plane.core.database import Store
from admin_plane.core.errors import AdminError, ErrorKind, validation_error
from admin_plane.core.logging import log_error
from admin_plane.core.timeutils import to_iso, utcnow
from admin_plane.models.admin import AuditAction
from admin_plane.models.system import (
    BACKUP_ENTITY_TYPES,
    INCREMENTAL_ENTITY_TYPES,
    BackupStatus,
    BackupType,
    CleanupType,
    MaintenanceStatus,
)
from admin_plane.repositories.base import EntityRepository, new_id, strip_keys
from .commands import AdminCommandHandler, CommandContext
from .realtime import Multiplexer
from .settings_cache import SettingsCache


logger = logging.getLogger(__name__)

SETTINGS_ENTITY_TYPES = {"SystemSettings", "SecurityPolicy"}


class MaintenanceService:
    """
    Args:
        store: Table gateway
        commands: Command pipeline used for every write
        settings: Application settings (bucket, audit retention)
        s3: boto3 S3 client; backups are unavailable without a bucket
        settings_cache: Refreshed after a restore that touched settings rows
        publisher: Realtime publisher for `system:maintenance` and `notification:new`
    """

    def __init__(
        self,
        store: Store,
        commands: AdminCommandHandler,
        settings: Settings,
        s3: Any = None,
        settings_cache: Optional[SettingsCache] = None,
        publisher: Optional[Multiplexer] = None
    ):
        self.store = store
        self.commands = commands
        self.settings = settings
        self.s3 = s3
        self.settings_cache = settings_cache
        self.publisher = publisher
        self.backups = EntityRepository(store, "Backup", "BACKUP", "Backup")
        self.windows = EntityRepository(store, "MaintenanceWindow", "MAINTENANCE", "Maintenance window")
        self.cleanups = EntityRepository(store, "CleanupJob", "CLEANUP", "Cleanup job")

    # Object storage

    def _object_key(self, backup_id: str) -> str:
        return f"backups/{backup_id}.json"

    def _require_bucket(self) -> str:
        if not self.settings.backups_enabled or self.s3 is None:
            raise validation_error("backupType", "unavailable", "Backups are not configured (BUCKET is unset)")
        return self.settings.BUCKET

    def _s3(self, operation: str, **kwargs) -> Dict[str, Any]:
        try:
            return getattr(self.s3, operation)(**kwargs)
        except (ClientError, BotoCoreError) as exc:
            log_error(logger, exc, {"operation": f"s3.{operation}"})
            raise AdminError(ErrorKind.STORE_FAILED) from exc

    # Backups

    def _snapshot_types(self, backup_type: BackupType, include: Sequence[str]) -> List[str]:
        if backup_type is BackupType.SELECTIVE:
            if not include:
                raise validation_error("includeData", "required", "includeData is required for a selective backup")
            unknown = [t for t in include if t not in BACKUP_ENTITY_TYPES]
            if unknown:
                raise validation_error(
                    "includeData", "enum",
                    f"Supported entity types: {', '.join(BACKUP_ENTITY_TYPES)}"
                )
            return list(dict.fromkeys(include))
        if backup_type is BackupType.INCREMENTAL:
            return list(INCREMENTAL_ENTITY_TYPES)
        return list(BACKUP_ENTITY_TYPES)

    def _last_completed_at(self) -> Optional[str]:
        completed = self.backups.all(Attr("status").eq(BackupStatus.COMPLETED.value))
        stamps = [b["completedAt"] for b in completed if b.get("completedAt")]
        return max(stamps) if stamps else None

    def _collect(self, types: Sequence[str], since: Optional[str]) -> List[Dict[str, Any]]:
        items = []
        for item in self.store.scan_all(Attr("entityType").is_in(list(types))):
            if since and max(item.get("updatedAt") or "", item.get("createdAt") or "") < since:
                continue
            items.append(item)
        return items

    def create_backup(self, ctx: CommandContext, backup_type: BackupType, include: Sequence[str] = ()) -> Dict[str, Any]:
        bucket = self._require_bucket()
        types = self._snapshot_types(backup_type, include)
        since = self._last_completed_at() if backup_type is BackupType.INCREMENTAL else None
        items = self._collect(types, since)

        backup_id = new_id()
        created = to_iso(utcnow())
        body = json.dumps({
            "backupId": backup_id,
            "backupType": backup_type.value,
            "createdAt": created,
            "since": since,
            "entityTypes": types,
            "items": items,
        }, default=str).encode("utf-8")
        key = self._object_key(backup_id)
        self._s3("put_object", Bucket=bucket, Key=key, Body=body, ContentType="application/json")

        attributes = {
            "backupId": backup_id,
            "backupType": backup_type.value,
            "includeData": types,
            "status": BackupStatus.COMPLETED.value,
            "itemCount": len(items),
            "size": len(body),
            "location": f"s3://{bucket}/{key}",
            "createdBy": ctx.admin_id,
            "createdAt": created,
            "completedAt": to_iso(utcnow()),
        }
        if since:
            attributes["since"] = since
        creation = self.backups.creation(backup_id, attributes)

        def build():
            return creation, {
                "backupType": backup_type.value,
                "entityTypes": types,
                "itemCount": len(items),
                "location": attributes["location"],
            }

        try:
            after, _ = self.commands.commit(ctx, AuditAction.BACKUP_CREATE, f"BACKUP#{backup_id}", build)
        except AdminError:
            # No row and no audit: drop the object too
            try:
                self._s3("delete_object", Bucket=bucket, Key=key)
            except AdminError:
                logger.warning(f"Orphaned backup object s3://{bucket}/{key}")
            raise
        logger.info(f"Backup {backup_id} stored {len(items)} items at {attributes['location']}")
        return strip_keys(after)

    def list_backups(self, limit: int = 50, token: Optional[str] = None) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        items, next_token = self.backups.list(limit, token)
        items.sort(key=lambda i: i.get("createdAt", ""), reverse=True)
        return [strip_keys(i) for i in items], next_token

    def _load_snapshot(self, bucket: str, backup_id: str) -> Dict[str, Any]:
        response = self._s3("get_object", Bucket=bucket, Key=self._object_key(backup_id))
        try:
            return json.loads(response["Body"].read())
        except ValueError as exc:
            raise AdminError(ErrorKind.STORE_FAILED, "Backup object is unreadable") from exc

    def restore_backup(self, ctx: CommandContext, backup_id: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Re-write the rows captured by a completed backup.

        Options: `dryRun` (count only) and `entityTypes` (subset to restore).
        """
        options = options or {}
        bucket = self._require_bucket()
        dry_run = bool(options.get("dryRun", False))
        wanted = options.get("entityTypes") or list(BACKUP_ENTITY_TYPES)
        unknown = [t for t in wanted if t not in BACKUP_ENTITY_TYPES]
        if unknown:
            raise validation_error(
                "restoreOptions.entityTypes", "enum",
                f"Supported entity types: {', '.join(BACKUP_ENTITY_TYPES)}"
            )

        backup = self.backups.require(backup_id)
        if backup.get("status") != BackupStatus.COMPLETED.value:
            raise validation_error("backupId", "not_completed", "Backup is not completed")
        snapshot = self._load_snapshot(bucket, backup_id)
        items = [i for i in snapshot.get("items", []) if i.get("entityType") in wanted]

        restore_id = new_id()
        restore = {
            "restoreId": restore_id,
            "restoredBy": ctx.admin_id,
            "restoredAt": to_iso(utcnow()),
            "itemsRestored": 0 if dry_run else len(items),
            "itemsMatched": len(items),
            "entityTypes": wanted,
            "dryRun": dry_run,
        }

        def build():
            before = self.backups.require(backup_id)
            details = {
                "backupId": backup_id,
                "restoreId": restore_id,
                "itemsMatched": len(items),
                "entityTypes": wanted,
                "dryRun": dry_run,
            }
            count = int(before.get("restoreCount") or 0) + (0 if dry_run else 1)
            return self.backups.mutation(before, {"lastRestore": restore, "restoreCount": count}), details

        self.commands.commit(ctx, AuditAction.BACKUP_RESTORE, f"BACKUP#{backup_id}", build)

        if not dry_run and items:
            self.store.batch_write(puts=items)
            logger.info(f"Restore {restore_id} rewrote {len(items)} items from backup {backup_id}")
            if self.settings_cache and any(i.get("entityType") in SETTINGS_ENTITY_TYPES for i in items):
                self.settings_cache.refresh(broadcast=True)

        return {
            **restore,
            "backupId": backup_id,
            "status": BackupStatus.COMPLETED.value,
            "completedAt": to_iso(utcnow()),
        }

    # Maintenance windows

    def schedule_maintenance(self, ctx: CommandContext, payload: Dict[str, Any]) -> Dict[str, Any]:
        start, end = to_iso(payload["startTime"]), to_iso(payload["endTime"])
        if end <= start:
            raise validation_error("endTime", "after_start", "endTime must be after startTime")

        maintenance_id = new_id()
        now = to_iso(utcnow())
        attributes = {
            "maintenanceId": maintenance_id,
            "title": payload["title"],
            "description": payload.get("description") or "",
            "startTime": start,
            "endTime": end,
            "maintenanceType": payload["maintenanceType"],
            "affectedServices": payload.get("affectedServices") or [],
            "status": MaintenanceStatus.SCHEDULED.value,
            "notifyUsers": payload.get("notifyUsers", True),
            "scheduledBy": ctx.admin_id,
            "createdAt": now,
            "updatedAt": now,
        }
        creation = self.windows.creation(maintenance_id, attributes)

        def build():
            return creation, {
                "title": attributes["title"],
                "startTime": attributes["startTime"],
                "endTime": attributes["endTime"],
                "maintenanceType": attributes["maintenanceType"],
            }

        after, _ = self.commands.commit(
            ctx, AuditAction.MAINTENANCE_SCHEDULE, f"MAINTENANCE#{maintenance_id}", build
        )
        view = strip_keys(after)
        if self.publisher:
            self.publisher.publish("system:maintenance", view)
            if attributes["notifyUsers"]:
                self.publisher.publish("notification:new", {
                    "kind": "maintenance",
                    "maintenanceId": maintenance_id,
                    "title": attributes["title"],
                    "startTime": attributes["startTime"],
                    "endTime": attributes["endTime"],
                })
        return view

    def list_maintenance(self, status: Optional[MaintenanceStatus] = None) -> List[Dict[str, Any]]:
        filter = Attr("status").eq(status.value) if status else None
        windows = [strip_keys(w) for w in self.windows.all(filter)]
        windows.sort(key=lambda w: w.get("startTime", ""))
        return windows

    # Cleanup

    def _cleanup_candidates(self, cleanup_type: CleanupType, cutoff: str) -> List[Dict[str, Any]]:
        if cleanup_type is CleanupType.SECURITY_EVENTS:
            condition = Attr("entityType").eq("SecurityEvent") & Attr("timestamp").lt(cutoff)
        elif cleanup_type is CleanupType.EXPIRED_NOTIFICATIONS:
            condition = Attr("entityType").eq("Notification") & Attr("createdAt").lt(cutoff)
        elif cleanup_type is CleanupType.CLOSED_TICKETS:
            condition = (
                Attr("entityType").eq("SupportTicket")
                & Attr("status").eq("closed")
                & Attr("updatedAt").lt(cutoff)
            )
        else:
            condition = Attr("entityType").eq("AuditRecord") & Attr("timestamp").lt(cutoff)
        return list(self.store.scan_all(condition))

    def cleanup(self, ctx: CommandContext, cleanup_type: CleanupType, days_old: int = 90, dry_run: bool = True) -> Dict[str, Any]:
        """
        Delete rows of one kind older than `days_old` days.

        Audit records are append-only: an audit_logs cleanup only reports
        what falls outside the retention window.
        """
        if days_old < 1:
            raise validation_error("daysOld", "min", "daysOld must be at least 1")
        if cleanup_type is CleanupType.AUDIT_LOGS:
            days_old = max(days_old, self.settings.AUDIT_RETENTION_DAYS)
            dry_run = True

        cutoff = to_iso(utcnow() - timedelta(days=days_old))
        candidates = self._cleanup_candidates(cleanup_type, cutoff)

        cleanup_id = new_id()
        performed = to_iso(utcnow())
        job = {
            "cleanupId": cleanup_id,
            "cleanupType": cleanup_type.value,
            "daysOld": days_old,
            "cutoffDate": cutoff,
            "itemsAffected": len(candidates),
            "itemsDeleted": 0,
            "dryRun": dry_run,
            "performedAt": performed,
            "performedBy": ctx.admin_id,
        }
        creation = self.cleanups.creation(cleanup_id, job)

        def build():
            return creation, {
                "cleanupType": cleanup_type.value,
                "cutoffDate": cutoff,
                "itemsAffected": len(candidates),
                "dryRun": dry_run,
            }

        self.commands.commit(ctx, AuditAction.DATA_CLEANUP, f"CLEANUP#{cleanup_id}", build)

        if not dry_run and candidates:
            deleted = self.cleanups.delete_many(candidates)
            job["itemsDeleted"] = deleted
            self.store.update(self.cleanups.key(cleanup_id), set_values={"itemsDeleted": deleted})
            logger.info(f"Cleanup {cleanup_id} deleted {deleted} {cleanup_type.value} rows")
        return job

