"""
Admin system router for the admin control plane.

Handles health and metrics reporting, data cleanup, backups and
maintenance windows.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, status

from admin_plane.models.system import MaintenanceStatus
from admin_plane.routers.auth import command_context, get_services
from admin_plane.schemas.admin import (
    BackupCreate,
    CleanupRequest,
    MaintenanceCreate,
    RestoreRequest,
    payload,
)
from admin_plane.services import CommandContext, Services


router = APIRouter()


# Monitoring
@router.get("/health")
def get_system_health(
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Get overall status with store, API and storage health."""
    return {"success": True, "data": services.system.health()}


@router.get("/database")
def get_database_metrics(
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Get store latency, table description and call counters."""
    return {"success": True, "data": services.system.database()}


@router.get("/api-metrics")
def get_api_metrics(
    endpoint: Optional[str] = None,
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Get request counts, latency and error rates per route."""
    return {"success": True, "data": services.system.api_metrics(endpoint)}


@router.get("/metrics/realtime")
def get_realtime_metrics(
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Get process load and realtime connection counts."""
    return {"success": True, "data": services.system.realtime()}


@router.get("/storage")
def get_storage_usage(
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Get table size, items per entity type and backup bucket usage."""
    return {"success": True, "data": services.system.storage()}


# Maintenance operations
@router.post("/cleanup")
def cleanup_data(
    body: CleanupRequest,
    ctx: CommandContext = Depends(command_context),
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Remove (or count, on a dry run) rows older than daysOld."""
    job = services.maintenance.cleanup(ctx, body.cleanupType, body.daysOld, body.dryRun)
    message = "Cleanup dry run completed" if job.get("dryRun") else "Cleanup completed"
    return {"success": True, "message": message, "data": job}


@router.post("/backups", status_code=status.HTTP_201_CREATED)
def create_backup(
    body: BackupCreate,
    ctx: CommandContext = Depends(command_context),
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Snapshot entity rows to the backup bucket."""
    backup = services.maintenance.create_backup(ctx, body.backupType, body.includeData)
    return {"success": True, "message": "Backup created", "data": backup}


@router.get("/backups")
def list_backups(
    limit: int = Query(50, ge=1, le=100),
    lastEvaluatedKey: Optional[str] = None,
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """List backups, newest first."""
    backups, next_token = services.maintenance.list_backups(limit, lastEvaluatedKey)
    return {
        "success": True,
        "data": backups,
        "count": len(backups),
        "lastEvaluatedKey": next_token,
    }


@router.post("/backups/{backup_id}/restore")
def restore_backup(
    backup_id: str,
    body: Optional[RestoreRequest] = None,
    ctx: CommandContext = Depends(command_context),
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Restore the rows captured by a completed backup."""
    options = body.restoreOptions.model_dump() if body else {}
    result = services.maintenance.restore_backup(ctx, backup_id, options)
    return {"success": True, "message": "Backup restore processed", "data": result}


@router.post("/maintenance", status_code=status.HTTP_201_CREATED)
def schedule_maintenance(
    body: MaintenanceCreate,
    ctx: CommandContext = Depends(command_context),
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Schedule a maintenance window and notify connected admins."""
    window = services.maintenance.schedule_maintenance(
        ctx, {**payload(body), "startTime": body.startTime, "endTime": body.endTime}
    )
    return {"success": True, "message": "Maintenance scheduled", "data": window}


@router.get("/maintenance")
def list_maintenance(
    status: Optional[MaintenanceStatus] = None,
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """List maintenance windows by start time."""
    windows = services.maintenance.list_maintenance(status)
    return {"success": True, "data": windows, "count": len(windows)}
