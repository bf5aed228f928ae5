"""
Aggregation engine: platform metrics, growth series, revenue and exports.

Aggregates are computed by scanning the relevant entity namespace with
pagination and binning timestamps into UTC buckets.
"""

import csv
import io
import json
import logging
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from admin_plane.core.errors import AdminError, ErrorKind, validation_error
from admin_plane.core.timeutils import as_utc, bucket_key, iter_buckets, parse_iso, to_iso, utcnow
from admin_plane.models.user import User
from admin_plane.repositories.courses import CourseRepository
from admin_plane.repositories.users import UserRepository
from .audit import AuditLogger


logger = logging.getLogger(__name__)

EXPORT_FORMATS = ("json", "csv")
EXPORT_DATA_TYPES = ("platform", "users", "revenue", "audit")
GROUP_BY = ("day", "week", "month")
COMPARISON_DAYS = 30
TOP_COURSES = 10

CSV_COLUMNS = {
    "platform": ("metric", "value"),
    "users": ("userId", "name", "email", "role", "accountStatus", "createdAt", "lastLoginAt", "loginCount"),
    "revenue": ("period", "revenue", "enrollments"),
    "audit": ("actionId", "timestamp", "adminId", "action", "targetEntity", "ip", "details"),
}

MEDIA_TYPES = {
    "json": "application/json",
    "csv": "text/csv; charset=utf-8",
}


def _stamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return parse_iso(value)
    except ValueError:
        return None


def percentage_change(current: float, previous: float) -> float:
    """(current - previous) / max(previous, 1)."""
    return round((current - previous) / max(previous, 1), 4)


def check_range(start: Optional[datetime], end: Optional[datetime], default_days: int = COMPARISON_DAYS) -> Tuple[datetime, datetime]:
    end = as_utc(end) or utcnow()
    start = as_utc(start) or end - timedelta(days=default_days)
    if start > end:
        raise validation_error("startDate", "before_end", "startDate must not be after endDate")
    return start, end


def check_group_by(group_by: str) -> str:
    if group_by not in GROUP_BY:
        raise AdminError(ErrorKind.BAD_FORMAT, f"Supported groupBy values: {', '.join(GROUP_BY)}", field="groupBy", rule="enum")
    return group_by


class AnalyticsService:
    """
    Args:
        users: User repository
        courses: Course repository (courses and enrollments)
        audit: Audit logger (audit statistics and exports)
    """

    def __init__(self, users: UserRepository, courses: CourseRepository, audit: AuditLogger):
        self.users = users
        self.courses = courses
        self.audit = audit

    # Metrics

    def _window_counts(self, stamps: Iterable[Optional[datetime]], now: datetime) -> Tuple[int, int]:
        current_start = now - timedelta(days=COMPARISON_DAYS)
        previous_start = current_start - timedelta(days=COMPARISON_DAYS)
        current = previous = 0
        for stamp in stamps:
            if stamp is None or stamp > now:
                continue
            if stamp >= current_start:
                current += 1
            elif stamp >= previous_start:
                previous += 1
        return current, previous

    def platform_metrics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        users = self.users.all_items()
        courses = self.courses.all_items()
        enrollments = self.courses.all_enrollments()

        users_by_role = Counter(u.get("role", "student") for u in users)
        courses_by_status = Counter(c.get("status", "draft") for c in courses)
        total_revenue = round(sum(e.paymentAmount for e in enrollments), 2)

        current_start = now - timedelta(days=COMPARISON_DAYS)
        previous_start = current_start - timedelta(days=COMPARISON_DAYS)
        revenue_current = revenue_previous = 0.0
        for enrollment in enrollments:
            stamp = _stamp(enrollment.enrolledAt)
            if stamp is None or stamp > now:
                continue
            if stamp >= current_start:
                revenue_current += enrollment.paymentAmount
            elif stamp >= previous_start:
                revenue_previous += enrollment.paymentAmount

        changes = {
            "users": percentage_change(*self._window_counts((_stamp(u.get("createdAt")) for u in users), now)),
            "courses": percentage_change(*self._window_counts((_stamp(c.get("createdAt")) for c in courses), now)),
            "enrollments": percentage_change(*self._window_counts((_stamp(e.enrolledAt) for e in enrollments), now)),
            "revenue": percentage_change(revenue_current, revenue_previous),
        }
        return {
            "totalUsers": len(users),
            "totalCourses": len(courses),
            "totalEnrollments": len(enrollments),
            "totalRevenue": total_revenue,
            "usersByRole": dict(users_by_role),
            "coursesByStatus": dict(courses_by_status),
            "percentageChanges": changes,
        }

    def user_growth(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        group_by: str = "day"
    ) -> Dict[str, Any]:
        check_group_by(group_by)
        start, end = check_range(start, end)
        counts: Counter = Counter()
        for user in self.users.all_items():
            stamp = _stamp(user.get("createdAt"))
            if stamp is not None and start <= stamp <= end:
                counts[bucket_key(stamp, group_by)] += 1
        series = [{"bucket": b, "count": counts.get(b, 0)} for b in iter_buckets(start, end, group_by)]
        return {
            "groupBy": group_by,
            "startDate": to_iso(start),
            "endDate": to_iso(end),
            "series": series,
            "total": sum(counts.values()),
        }

    def revenue_analytics(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        group_by: str = "day"
    ) -> Dict[str, Any]:
        check_group_by(group_by)
        start, end = check_range(start, end)
        revenue: Dict[str, float] = defaultdict(float)
        enrolled: Counter = Counter()
        per_course: Dict[str, Dict[str, float]] = defaultdict(lambda: {"revenue": 0.0, "enrollments": 0})
        total_revenue = 0.0
        total = 0
        for enrollment in self.courses.all_enrollments():
            stamp = _stamp(enrollment.enrolledAt)
            if stamp is None or not start <= stamp <= end:
                continue
            bucket = bucket_key(stamp, group_by)
            revenue[bucket] += enrollment.paymentAmount
            enrolled[bucket] += 1
            per_course[enrollment.courseId]["revenue"] += enrollment.paymentAmount
            per_course[enrollment.courseId]["enrollments"] += 1
            total_revenue += enrollment.paymentAmount
            total += 1

        titles = {c.get("courseId") or c["PK"].split("#", 1)[1]: c.get("title", "") for c in self.courses.all_items()}
        ranked = sorted(per_course.items(), key=lambda kv: (-kv[1]["revenue"], -kv[1]["enrollments"], kv[0]))
        top_courses = [
            {
                "courseId": course_id,
                "title": titles.get(course_id, ""),
                "revenue": round(stats["revenue"], 2),
                "enrollments": int(stats["enrollments"]),
            }
            for course_id, stats in ranked[:TOP_COURSES]
        ]
        return {
            "startDate": to_iso(start),
            "endDate": to_iso(end),
            "totalRevenue": round(total_revenue, 2),
            "totalEnrollments": total,
            "byPeriod": [
                {"period": b, "revenue": round(revenue.get(b, 0.0), 2), "enrollments": enrolled.get(b, 0)}
                for b in iter_buckets(start, end, group_by)
            ],
            "topCourses": top_courses,
        }

    def audit_statistics(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> Dict[str, Any]:
        start, end = check_range(start, end)
        return self.audit.statistics(start, end)

    # Export

    def _rows(self, data_type: str, start: datetime, end: datetime) -> Tuple[Any, List[Dict[str, Any]]]:
        """Returns (json payload, csv rows) for a data type."""
        if data_type == "platform":
            metrics = self.platform_metrics()
            rows = []
            for key, value in metrics.items():
                if isinstance(value, dict):
                    rows.extend({"metric": f"{key}.{k}", "value": v} for k, v in value.items())
                else:
                    rows.append({"metric": key, "value": value})
            return metrics, rows
        if data_type == "users":
            users = []
            for item in self.users.all_items():
                stamp = _stamp(item.get("createdAt"))
                if stamp is None or start <= stamp <= end:
                    users.append(User.from_item(item).to_view())
            return users, users
        if data_type == "revenue":
            revenue = self.revenue_analytics(start, end)
            return revenue, revenue["byPeriod"]
        records = [r.model_dump(mode="json") for r in self.audit.iter_range(start, end)]
        rows = [
            {**r, "details": json.dumps(r.get("details") or {}, sort_keys=True, separators=(",", ":"))}
            for r in records
        ]
        return records, rows

    @staticmethod
    def to_csv(columns: Sequence[str], rows: Iterable[Dict[str, Any]]) -> bytes:
        """RFC 4180: CRLF line endings, minimal quoting, fixed column order."""
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=list(columns), extrasaction="ignore", lineterminator="\r\n")
        writer.writeheader()
        for row in rows:
            writer.writerow({c: "" if row.get(c) is None else row.get(c) for c in columns})
        return buffer.getvalue().encode("utf-8")

    def export(
        self,
        format: str,
        data_type: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> Tuple[bytes, str, str]:
        """
        Render one data type as JSON or CSV.

        Returns (body, media type, file name).

        Raises:
            AdminError: BAD_FORMAT for an unsupported format or data type
        """
        if format not in EXPORT_FORMATS:
            raise AdminError(ErrorKind.BAD_FORMAT, f"Supported formats: {', '.join(EXPORT_FORMATS)}", field="format", rule="enum")
        if data_type not in EXPORT_DATA_TYPES:
            raise AdminError(ErrorKind.BAD_FORMAT, f"Supported data types: {', '.join(EXPORT_DATA_TYPES)}", field="dataType", rule="enum")
        start, end = check_range(start, end)

        payload, rows = self._rows(data_type, start, end)
        generated = utcnow()
        filename = f"{data_type}-{generated.strftime('%Y%m%d%H%M%S')}.{format}"
        if format == "csv":
            body = self.to_csv(CSV_COLUMNS[data_type], rows)
        else:
            body = json.dumps({
                "dataType": data_type,
                "generatedAt": to_iso(generated),
                "startDate": to_iso(start),
                "endDate": to_iso(end),
                "data": payload,
            }, default=str).encode("utf-8")
        logger.info(f"Exported {data_type} as {format} ({len(body)} bytes)")
        return body, MEDIA_TYPES[format], filename
