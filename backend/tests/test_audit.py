"""Tests for the audit logger."""

from datetime import timedelta

import pytest

from admin_plane.core.database import ConditionFailed
from admin_plane.core.errors import AdminError, ErrorKind
from admin_plane.core.timeutils import utcnow
from admin_plane.models.admin import AuditAction, AuditRecord


@pytest.fixture
def audit(services):
    return services.audit


class TestAuditRecord:
    """Tests for the stored record shape."""

    def test_keys(self):
        """Test that records partition by day and sort by timestamp then id."""
        record = AuditRecord.create("u-root", AuditAction.USER_ROLE_CHANGE, "USER#u-1", {"newRole": "admin"})
        item = record.to_item()
        assert item["PK"] == f"AUDIT#{record.timestamp[:10]}"
        assert item["SK"] == f"{record.timestamp}#{record.actionId}"
        assert item["entityType"] == "AuditRecord"
        assert AuditRecord.from_item(item) == record


class TestAuditLogger:
    """Tests for writing and querying the trail."""

    def test_log_persists_and_publishes(self, audit, services):
        """Test that log writes one row and pushes dashboard:activity."""
        record = audit.log("u-root", AuditAction.SETTING_UPDATE, "SETTINGS#platform", {"k": "v"}, "10.0.0.1")
        stored = services.store.get(record.pk, record.sk)
        assert stored["adminId"] == "u-root"
        assert stored["details"] == {"k": "v"}
        assert services.multiplexer.published["dashboard:activity"] == 1

    def test_records_are_append_only(self, audit):
        """Test that a record id cannot be written twice."""
        record = audit.log("u-root", AuditAction.SETTING_UPDATE, "SETTINGS#platform")
        with pytest.raises(ConditionFailed):
            audit.persist(record)

    def test_by_range_pages_newest_first(self, audit):
        """Test date-range paging across a continuation token."""
        now = utcnow()
        logged = [
            audit.persist(AuditRecord.create(
                "u-root", AuditAction.USER_ROLE_CHANGE, f"USER#u-{i}", at=now - timedelta(minutes=3 - i)
            ))
            for i in range(3)
        ]
        first, token = audit.by_range(limit=2)
        assert [r.actionId for r in first] == [logged[2].actionId, logged[1].actionId]
        assert token is not None
        second, _ = audit.by_range(limit=2, token=token)
        assert [r.actionId for r in second] == [logged[0].actionId]

    def test_by_range_filters(self, audit):
        """Test filtering the range by action and admin."""
        audit.log("u-root", AuditAction.USER_ROLE_CHANGE, "USER#u-1")
        audit.log("u-root", AuditAction.COURSE_APPROVAL, "COURSE#c-1")
        audit.log("u-other", AuditAction.COURSE_APPROVAL, "COURSE#c-2")
        records, _ = audit.by_range(action=AuditAction.COURSE_APPROVAL, admin_id="u-root")
        assert [r.targetEntity for r in records] == ["COURSE#c-1"]

    def test_index_queries(self, audit):
        """Test admin, action and target lookups."""
        audit.log("u-root", AuditAction.USER_ROLE_CHANGE, "USER#u-1")
        audit.log("u-root", AuditAction.USER_STATUS_UPDATE, "USER#u-1")
        audit.log("u-admin", AuditAction.USER_ROLE_CHANGE, "USER#u-2")

        by_target, _ = audit.by_target("USER#u-1")
        assert len(by_target) == 2
        by_admin, _ = audit.by_admin("u-admin")
        assert [r.targetEntity for r in by_admin] == ["USER#u-2"]
        by_action, _ = audit.by_action(AuditAction.USER_ROLE_CHANGE)
        assert len(by_action) == 2

        combined, _ = audit.query(admin_id="u-root", action=AuditAction.USER_STATUS_UPDATE)
        assert len(combined) == 1

    def test_recent_writes_visible_before_index(self, audit):
        """Test that a committed record is returned even if the index lacks it."""
        record = audit.record("u-root", AuditAction.POLICY_UPDATE, "POLICY#security")
        audit.committed(record)
        records, _ = audit.by_admin("u-root")
        assert [r.actionId for r in records] == [record.actionId]

    def test_statistics(self, audit):
        """Test counts by type, admin and date."""
        audit.log("u-root", AuditAction.USER_ROLE_CHANGE, "USER#u-1")
        audit.log("u-root", AuditAction.USER_ROLE_CHANGE, "USER#u-2")
        audit.log("u-admin", AuditAction.COURSE_APPROVAL, "COURSE#c-1")
        stats = audit.statistics()
        assert stats["totalActions"] == 3
        assert stats["actionsByType"] == {"USER_ROLE_CHANGE": 2, "COURSE_APPROVAL": 1}
        assert stats["actionsByAdmin"] == {"u-root": 2, "u-admin": 1}
        assert sum(stats["actionsByDate"].values()) == 3

    def test_invalid_range(self, audit):
        """Test that start after end is VALIDATION."""
        now = utcnow()
        with pytest.raises(AdminError) as exc_info:
            audit.by_range(now, now - timedelta(days=1))
        assert exc_info.value.kind is ErrorKind.VALIDATION
        assert exc_info.value.rule == "before_end"

    def test_invalid_token(self, audit):
        """Test that a foreign continuation token is VALIDATION."""
        with pytest.raises(AdminError) as exc_info:
            audit.by_admin("u-root", token="not-a-token")
        assert exc_info.value.kind is ErrorKind.VALIDATION
