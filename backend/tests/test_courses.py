"""Tests for course moderation and ratings."""

import pytest
from hypothesis import HealthCheck, given, settings as hypothesis_settings
from hypothesis import strategies as st
from ulid import ULID

from admin_plane.core.errors import AdminError, ErrorKind
from admin_plane.core.timeutils import utcnow
from admin_plane.models.course import CourseStatus, ModerationAction


# Allowed moves, written out independently of the model table
ALLOWED = {
    ("draft", "submit"): "pending",
    ("pending", "approve"): "approved",
    ("pending", "reject"): "rejected",
    ("approved", "flag"): "flagged",
    ("flagged", "approve"): "approved",
    ("flagged", "reject"): "rejected",
}


@pytest.fixture
def commands(services):
    services.commands._sleep = lambda seconds: None
    return services.commands


def _new_course(store, status="draft") -> str:
    course_id = f"c-{ULID()}"
    store.put({
        "PK": f"COURSE#{course_id}",
        "SK": "META",
        "entityType": "Course",
        "courseId": course_id,
        "title": "Generated",
        "status": status,
        "version": 1,
    })
    return course_id


class TestModeration:
    """Tests for moderate_course."""

    def test_approve_pending(self, commands, services, root_ctx, audit_rows):
        """Test approval without a reason."""
        view = commands.moderate_course(root_ctx, "c-pending", ModerationAction.APPROVE)
        assert view["status"] == "approved"
        assert view["moderatedBy"] == "u-root"
        assert "PK" not in view
        rows = audit_rows("COURSE#c-pending")
        assert [r["action"] for r in rows] == ["COURSE_APPROVAL"]
        assert rows[0]["details"]["previousStatus"] == "pending"

    @pytest.mark.parametrize("action", [ModerationAction.REJECT, ModerationAction.FLAG, ModerationAction.SUBMIT])
    def test_reason_required(self, commands, root_ctx, action):
        """Test that every action other than approve needs a reason."""
        with pytest.raises(AdminError) as exc_info:
            commands.moderate_course(root_ctx, "c-approved", action, "   ")
        assert exc_info.value.rule == "required"

    def test_reject_records_reason(self, commands, services, root_ctx, audit_rows):
        """Test that a rejection stores its reason and audits as COURSE_REJECTION."""
        commands.moderate_course(root_ctx, "c-pending", ModerationAction.REJECT, "Incomplete syllabus")
        assert services.courses.get("c-pending").moderationReason == "Incomplete syllabus"
        assert audit_rows("COURSE#c-pending")[0]["action"] == "COURSE_REJECTION"

    def test_invalid_transition_leaves_state(self, commands, services, root_ctx, audit_rows):
        """Test that approving a draft fails and changes nothing."""
        with pytest.raises(AdminError) as exc_info:
            commands.moderate_course(root_ctx, "c-draft", ModerationAction.APPROVE)
        assert exc_info.value.kind is ErrorKind.VALIDATION
        assert exc_info.value.rule == "transition"
        assert services.courses.get("c-draft").status is CourseStatus.DRAFT
        assert audit_rows() == []

    def test_unknown_course(self, commands, root_ctx):
        """Test that a missing course is NOT_FOUND."""
        with pytest.raises(AdminError) as exc_info:
            commands.moderate_course(root_ctx, "c-missing", ModerationAction.APPROVE)
        assert exc_info.value.kind is ErrorKind.NOT_FOUND

    @given(actions=st.lists(st.sampled_from(list(ModerationAction)), min_size=1, max_size=6))
    @hypothesis_settings(
        max_examples=100,
        deadline=None,
        suppress_health_check=[HealthCheck.function_scoped_fixture],
    )
    def test_state_machine(self, commands, services, store, root_ctx, actions):
        """Test that any action sequence follows the allowed moves and audits each success."""
        course_id = _new_course(store)
        state = "draft"
        successes = 0
        for action in actions:
            expected = ALLOWED.get((state, action.value))
            if expected is None:
                with pytest.raises(AdminError) as exc_info:
                    commands.moderate_course(root_ctx, course_id, action, "Reviewed")
                assert exc_info.value.rule == "transition"
            else:
                view = commands.moderate_course(root_ctx, course_id, action, "Reviewed")
                assert view["status"] == expected
                state = expected
                successes += 1
            assert services.courses.get(course_id).status.value == state
        records, _ = services.audit.by_target(f"COURSE#{course_id}")
        assert len(records) == successes

    def test_bulk_moderate(self, commands, store, root_ctx):
        """Test that bulk moderation reports each course separately."""
        pending = _new_course(store, "pending")
        result = commands.bulk_moderate(
            root_ctx, [pending, "c-draft", "c-pending"], ModerationAction.APPROVE
        )
        assert [s["id"] for s in result["successful"]] == [pending, "c-pending"]
        assert result["failed"][0]["id"] == "c-draft"
        assert result["failed"][0]["errorKind"] == "VALIDATION"


class TestRatings:
    """Tests for CourseRepository.upsert_rating."""

    def test_aggregates(self, services):
        """Test that averages follow inserts and updates."""
        courses = services.courses
        now = utcnow()
        assert courses.upsert_rating("c-approved", "u-1", 4, "Good", now) == {
            "courseId": "c-approved", "averageRating": 4.0, "ratingCount": 1,
        }
        assert courses.upsert_rating("c-approved", "u-2", 2, "", now)["averageRating"] == 3.0
        result = courses.upsert_rating("c-approved", "u-1", 5, "Better", now)
        assert result == {"courseId": "c-approved", "averageRating": 3.5, "ratingCount": 2}
        assert len(courses.ratings("c-approved")) == 2
        assert courses.get("c-approved").ratingCount == 2

    @pytest.mark.parametrize("stars", [0, 6, -1])
    def test_out_of_range(self, services, stars):
        """Test that stars outside 1..5 are rejected."""
        with pytest.raises(AdminError) as exc_info:
            services.courses.upsert_rating("c-approved", "u-1", stars, "", utcnow())
        assert exc_info.value.kind is ErrorKind.VALIDATION

    def test_unknown_course(self, services):
        """Test that rating a missing course is NOT_FOUND."""
        with pytest.raises(AdminError) as exc_info:
            services.courses.upsert_rating("c-missing", "u-1", 3, "", utcnow())
        assert exc_info.value.kind is ErrorKind.NOT_FOUND
