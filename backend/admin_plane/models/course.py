"""
Course models for the admin control plane.

Defines the moderation state machine, stored course/enrollment/rating
shapes and their key helpers.
"""

from enum import Enum
from typing import Optional, Dict, Any, List, Tuple

from pydantic import BaseModel, Field


class CourseStatus(str, Enum):
    """Course moderation states."""
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    FLAGGED = "flagged"


class ModerationAction(str, Enum):
    """Transitions an admin can apply to a course."""
    SUBMIT = "submit"
    APPROVE = "approve"
    REJECT = "reject"
    FLAG = "flag"


# (from, action) -> to
COURSE_TRANSITIONS: Dict[Tuple[CourseStatus, ModerationAction], CourseStatus] = {
    (CourseStatus.DRAFT, ModerationAction.SUBMIT): CourseStatus.PENDING,
    (CourseStatus.PENDING, ModerationAction.APPROVE): CourseStatus.APPROVED,
    (CourseStatus.PENDING, ModerationAction.REJECT): CourseStatus.REJECTED,
    (CourseStatus.APPROVED, ModerationAction.FLAG): CourseStatus.FLAGGED,
    (CourseStatus.FLAGGED, ModerationAction.APPROVE): CourseStatus.APPROVED,
    (CourseStatus.FLAGGED, ModerationAction.REJECT): CourseStatus.REJECTED,
}

MAX_REASON_LENGTH = 1000


def next_status(current: CourseStatus, action: ModerationAction) -> Optional[CourseStatus]:
    """Return the state reached by applying `action`, or None when not allowed."""
    return COURSE_TRANSITIONS.get((current, action))


def reason_required(action: ModerationAction) -> bool:
    return action is not ModerationAction.APPROVE


def course_pk(course_id: str) -> str:
    return f"COURSE#{course_id}"


META_SK = "META"


def enrollment_sk(course_id: str) -> str:
    return f"ENROLL#{course_id}"


def rating_sk(user_id: str) -> str:
    return f"RATING#{user_id}"


class Course(BaseModel):
    """Stored course metadata (PK = COURSE#{courseId}, SK = META)."""
    courseId: str
    title: str = ""
    instructorId: Optional[str] = None
    status: CourseStatus = CourseStatus.DRAFT
    price: float = 0
    categoryId: Optional[str] = None
    averageRating: float = 0
    ratingCount: int = 0
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None
    moderatedBy: Optional[str] = None
    moderatedAt: Optional[str] = None
    moderationReason: Optional[str] = None
    version: int = 0

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "Course":
        data = {k: v for k, v in item.items() if k in cls.model_fields}
        data.setdefault("courseId", item["PK"].split("#", 1)[1])
        return cls(**data)

    def to_view(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude={"version"}, exclude_none=True)


class Enrollment(BaseModel):
    """Stored enrollment (PK = USER#{userId}, SK = ENROLL#{courseId})."""
    userId: str
    courseId: str
    enrolledAt: Optional[str] = None
    completedAt: Optional[str] = None
    progress: List[str] = Field(default_factory=list)
    paymentAmount: float = 0

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "Enrollment":
        data = {k: v for k, v in item.items() if k in cls.model_fields}
        data.setdefault("userId", item["PK"].split("#", 1)[1])
        data.setdefault("courseId", item["SK"].split("#", 1)[1])
        if isinstance(data.get("progress"), (set, frozenset)):
            data["progress"] = sorted(data["progress"])
        return cls(**data)


class Rating(BaseModel):
    """Stored rating (PK = COURSE#{courseId}, SK = RATING#{userId})."""
    courseId: str
    userId: str
    stars: int = Field(ge=1, le=5)
    review: str = Field(default="", max_length=MAX_REASON_LENGTH)
    updatedAt: Optional[str] = None
