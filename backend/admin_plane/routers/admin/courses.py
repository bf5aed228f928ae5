"""
Admin courses router for the admin control plane.

Handles course listing and the moderation workflow: approve, reject,
generic moderation actions and bulk moderation.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from admin_plane.models.course import CourseStatus, ModerationAction
from admin_plane.routers.auth import command_context, get_services
from admin_plane.schemas.admin import BulkCourseOperation, CourseDecision, CourseModeration
from admin_plane.services import CommandContext, Services


router = APIRouter()


@router.get("")
def list_courses(
    status: Optional[CourseStatus] = None,
    limit: int = Query(50, ge=1, le=100),
    lastEvaluatedKey: Optional[str] = None,
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """List courses, optionally filtered by moderation status."""
    courses, next_token = services.courses.list(status, limit, lastEvaluatedKey)
    return {
        "success": True,
        "data": [c.to_view() for c in courses],
        "count": len(courses),
        "lastEvaluatedKey": next_token,
    }


@router.post("/bulk")
def bulk_moderate_courses(
    body: BulkCourseOperation,
    ctx: CommandContext = Depends(command_context),
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Apply one moderation action to up to 100 courses."""
    result = services.commands.bulk_moderate(ctx, body.courseIds, body.action, body.reason)
    return {"success": True, "data": result, **result}


@router.put("/{course_id}/approve")
def approve_course(
    course_id: str,
    body: Optional[CourseDecision] = None,
    ctx: CommandContext = Depends(command_context),
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Approve a pending or flagged course."""
    reason = body.reason if body else None
    course = services.commands.moderate_course(ctx, course_id, ModerationAction.APPROVE, reason)
    return {"success": True, "message": "Course approved", "data": course}


@router.put("/{course_id}/reject")
def reject_course(
    course_id: str,
    body: CourseDecision,
    ctx: CommandContext = Depends(command_context),
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Reject a pending or flagged course; a reason is required."""
    course = services.commands.moderate_course(ctx, course_id, ModerationAction.REJECT, body.reason)
    return {"success": True, "message": "Course rejected", "data": course}


@router.put("/{course_id}/moderate")
def moderate_course(
    course_id: str,
    body: CourseModeration,
    ctx: CommandContext = Depends(command_context),
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Apply any moderation action allowed from the course's current status."""
    course = services.commands.moderate_course(ctx, course_id, body.action, body.reason)
    return {"success": True, "message": f"Course moderation applied: {body.action.value}", "data": course}
