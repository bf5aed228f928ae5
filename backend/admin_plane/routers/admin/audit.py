"""
Admin audit router for the admin control plane.

Handles audit trail reports filtered by admin, action, target and range.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from admin_plane.models.admin import AuditAction
from admin_plane.routers.auth import get_services
from admin_plane.services import Services


router = APIRouter()


@router.get("/reports")
def get_audit_report(
    adminId: Optional[str] = None,
    action: Optional[AuditAction] = None,
    targetEntity: Optional[str] = None,
    startDate: Optional[datetime] = None,
    endDate: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=100),
    lastEvaluatedKey: Optional[str] = None,
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """List audit records newest first with optional filters."""
    records, next_token = services.audit.query(
        admin_id=adminId,
        action=action,
        target_entity=targetEntity,
        start=startDate,
        end=endDate,
        limit=limit,
        token=lastEvaluatedKey,
    )
    return {
        "success": True,
        "data": [r.model_dump(mode="json") for r in records],
        "count": len(records),
        "lastEvaluatedKey": next_token,
    }


@router.get("/statistics")
def get_audit_statistics(
    startDate: Optional[datetime] = None,
    endDate: Optional[datetime] = None,
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Get audit action counts for a range."""
    return {"success": True, "data": services.analytics.audit_statistics(startDate, endDate)}
