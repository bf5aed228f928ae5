"""
Admin analytics router for the admin control plane.

Handles platform metrics, revenue and user growth series, and data export.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from admin_plane.routers.auth import get_services
from admin_plane.services import Services


router = APIRouter()


@router.get("/platform")
def get_platform_analytics(
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Get platform-wide totals with 30-day percentage changes."""
    return {"success": True, "data": services.analytics.platform_metrics()}


@router.get("/revenue")
def get_revenue_analytics(
    startDate: Optional[datetime] = None,
    endDate: Optional[datetime] = None,
    groupBy: str = "day",
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Get revenue per period and the top earning courses."""
    return {
        "success": True,
        "data": services.analytics.revenue_analytics(startDate, endDate, groupBy),
    }


@router.get("/users")
def get_user_growth(
    groupBy: str = "day",
    startDate: Optional[datetime] = None,
    endDate: Optional[datetime] = None,
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Get user registrations binned by day, week or month."""
    return {
        "success": True,
        "data": services.analytics.user_growth(startDate, endDate, groupBy),
    }


@router.get("/export")
def export_data(
    format: str = Query("json"),
    dataType: str = Query("platform"),
    startDate: Optional[datetime] = None,
    endDate: Optional[datetime] = None,
    services: Services = Depends(get_services)
) -> Response:
    """Export one data set as a JSON or CSV download."""
    body, media_type, filename = services.analytics.export(format, dataType, startDate, endDate)
    return Response(
        content=body,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
