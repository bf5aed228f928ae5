"""
Admin users router for the admin control plane.

Handles user listing, detail, role and status changes, bulk operations
and per-user activity.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from admin_plane.models.user import AccountStatus, Role, User
from admin_plane.routers.auth import command_context, get_services
from admin_plane.schemas.admin import BulkUserOperation, RoleUpdate, StatusUpdate
from admin_plane.services import CommandContext, Services


router = APIRouter()


@router.get("")
def list_users(
    role: Optional[Role] = None,
    accountStatus: Optional[AccountStatus] = None,
    search: Optional[str] = Query(None, max_length=200),
    limit: int = Query(50, ge=1, le=100),
    lastEvaluatedKey: Optional[str] = None,
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """List users with role, status and name/email filters."""
    users, next_token = services.users.list(role, accountStatus, search, limit, lastEvaluatedKey)
    return {
        "success": True,
        "data": [u.to_view() for u in users],
        "count": len(users),
        "lastEvaluatedKey": next_token,
    }


@router.post("/bulk")
def bulk_update_users(
    body: BulkUserOperation,
    ctx: CommandContext = Depends(command_context),
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Apply one role or status change to up to 100 users."""
    if body.operation == "role":
        result = services.commands.bulk_role_change(ctx, body.userIds, body.role, body.reason)
    else:
        result = services.commands.bulk_status_update(ctx, body.userIds, body.status, body.reason)
    return {"success": True, "data": result, **result}


@router.get("/{user_id}")
def get_user(
    user_id: str,
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Get a user profile with enrollments."""
    user = User.from_item(services.users.require_item(user_id))
    enrollments = services.users.enrollments(user_id)
    return {
        "success": True,
        "data": {
            **user.to_view(),
            "enrollments": [e.model_dump(mode="json", exclude_none=True) for e in enrollments],
        },
    }


@router.put("/{user_id}/role")
def update_user_role(
    user_id: str,
    body: RoleUpdate,
    ctx: CommandContext = Depends(command_context),
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Change a user's role."""
    user = services.commands.change_role(ctx, user_id, body.role, body.reason)
    return {"success": True, "message": "User role updated", "data": user}


@router.put("/{user_id}/status")
def update_user_status(
    user_id: str,
    body: StatusUpdate,
    ctx: CommandContext = Depends(command_context),
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Suspend or reactivate a user."""
    user = services.commands.update_status(ctx, user_id, body.status, body.reason)
    return {"success": True, "message": f"User {body.status.value}", "data": user}


@router.get("/{user_id}/activity")
def get_user_activity(
    user_id: str,
    startDate: Optional[datetime] = None,
    endDate: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=100),
    lastEvaluatedKey: Optional[str] = None,
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """List audit records that target a user."""
    services.users.require_item(user_id)
    records, next_token = services.audit.by_target(
        f"USER#{user_id}", startDate, endDate, limit, lastEvaluatedKey
    )
    return {
        "success": True,
        "data": [r.model_dump(mode="json") for r in records],
        "count": len(records),
        "lastEvaluatedKey": next_token,
    }
