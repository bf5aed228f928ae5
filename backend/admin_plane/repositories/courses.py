"""
Course repository: course metadata, ratings and enrollments.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from boto3.dynamodb.conditions import Attr, Key

from admin_plane.core.database import ConditionFailed, Put, Store, TransactionCancelled, Update
from admin_plane.core.errors import AdminError, ErrorKind, not_found, validation_error
from admin_plane.core.timeutils import to_iso
from admin_plane.models.course import (
    MAX_REASON_LENGTH,
    META_SK,
    Course,
    CourseStatus,
    Enrollment,
    course_pk,
    rating_sk,
)
from .base import Mutation, scan_page, version_condition


logger = logging.getLogger(__name__)


class CourseRepository:
    """Typed access to COURSE# rows and enrollment rows."""

    def __init__(self, store: Store):
        self.store = store

    def get_item(self, course_id: str) -> Optional[Dict[str, Any]]:
        return self.store.get(course_pk(course_id), META_SK)

    def get(self, course_id: str) -> Optional[Course]:
        item = self.get_item(course_id)
        return Course.from_item(item) if item else None

    def require_item(self, course_id: str) -> Dict[str, Any]:
        item = self.get_item(course_id)
        if item is None:
            raise not_found("Course")
        return item

    def list(
        self,
        status: Optional[CourseStatus] = None,
        limit: int = 50,
        token: Optional[str] = None
    ) -> Tuple[List[Course], Optional[str]]:
        condition = Attr("entityType").eq("Course") & Attr("SK").eq(META_SK)
        if status:
            condition = condition & Attr("status").eq(status.value)
        items, next_token = scan_page(self.store, condition, limit, token)
        return [Course.from_item(i) for i in items], next_token

    def all_items(self) -> List[Dict[str, Any]]:
        return list(self.store.scan_all(Attr("entityType").eq("Course") & Attr("SK").eq(META_SK)))

    def all_enrollments(self) -> List[Enrollment]:
        condition = Attr("entityType").eq("Enrollment")
        return [Enrollment.from_item(i) for i in self.store.scan_all(condition)]

    def moderation(
        self,
        before: Dict[str, Any],
        status: CourseStatus,
        admin_id: str,
        reason: Optional[str],
        now: datetime
    ) -> Mutation:
        set_values = {
            "status": status.value,
            "moderatedBy": admin_id,
            "moderatedAt": to_iso(now),
            "updatedAt": to_iso(now),
        }
        remove = []
        if reason:
            set_values["moderationReason"] = reason
        elif "moderationReason" in before:
            remove.append("moderationReason")
        return Mutation(
            key={"PK": before["PK"], "SK": before["SK"]},
            before=before,
            set_values=set_values,
            remove=remove,
            condition=Attr("status").eq(before.get("status")),
        )

    def upsert_rating(
        self,
        course_id: str,
        user_id: str,
        stars: int,
        review: str,
        now: datetime,
        attempts: int = 3
    ) -> Dict[str, Any]:
        """
        Write one user's rating and recompute the course aggregates atomically.

        Returns the course's new aggregate fields.
        """
        if not isinstance(stars, int) or not 1 <= stars <= 5:
            raise validation_error("stars", "range", "stars must be between 1 and 5")
        if len(review or "") > MAX_REASON_LENGTH:
            raise validation_error("review", "max_length", "review must be at most 1000 characters")

        for _ in range(attempts):
            course = self.require_item(course_id)
            previous = self.store.get(course_pk(course_id), rating_sk(user_id))
            count = int(course.get("ratingCount") or 0)
            total = float(course.get("averageRating") or 0) * count
            if previous:
                total += stars - int(previous["stars"])
                rating_condition = Attr("stars").eq(int(previous["stars"]))
            else:
                total += stars
                count += 1
                rating_condition = Attr("PK").not_exists()
            average = round(total / count, 2) if count else 0
            version = int(course.get("version") or 0)
            try:
                self.store.transact_write([
                    Put(
                        {
                            "PK": course_pk(course_id),
                            "SK": rating_sk(user_id),
                            "entityType": "Rating",
                            "courseId": course_id,
                            "userId": user_id,
                            "stars": stars,
                            "review": review or "",
                            "updatedAt": to_iso(now),
                        },
                        condition=rating_condition,
                    ),
                    Update(
                        key={"PK": course_pk(course_id), "SK": META_SK},
                        set_values={
                            "averageRating": average,
                            "ratingCount": count,
                            "version": version + 1,
                        },
                        condition=version_condition(version),
                    ),
                ])
                return {"courseId": course_id, "averageRating": average, "ratingCount": count}
            except (TransactionCancelled, ConditionFailed):
                logger.info(f"Rating write for course {course_id} lost a race; retrying")
        raise AdminError(ErrorKind.CONFLICT)

    def ratings(self, course_id: str) -> List[Dict[str, Any]]:
        return list(self.store.query_all(
            Key("PK").eq(course_pk(course_id)) & Key("SK").begins_with("RATING#"),
            consistent=True,
        ))
