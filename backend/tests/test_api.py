"""End-to-end tests for the HTTP edge and the admin websocket."""

import base64
import json

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from admin_plane.core.security import create_access_token
from admin_plane.core.timeutils import utcnow
from admin_plane.main import create_app
from admin_plane.models.admin import SecurityEventType
from admin_plane.models.user import Role

from .conftest import PASSWORDS


WRITE_OPERATIONS = ("put_item", "update_item", "delete_item", "transact_write_items", "batch_write_item")


def _tampered(token: str, **claims) -> str:
    header, payload, signature = token.split(".")
    decoded = json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))
    decoded.update(claims)
    forged = base64.urlsafe_b64encode(json.dumps(decoded).encode()).decode().rstrip("=")
    return f"{header}.{forged}.{signature}"


def _writes(store):
    return {op: store.metrics.operations.get(op, 0) for op in WRITE_OPERATIONS}


class TestScenarios:
    """Tests for the literal end-to-end scenarios."""

    def test_role_change_happy_path(self, client, auth, audit_rows):
        """Test PUT /users/{id}/role as a super admin."""
        response = client.put(
            "/api/admin/users/u-1/role",
            json={"role": "instructor", "reason": "approved"},
            headers=auth["u-root"],
        )
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["userId"] == "u-1"
        assert body["data"]["role"] == "instructor"
        assert "password" not in body["data"]

        rows = audit_rows()
        assert len(rows) == 1
        assert rows[0]["adminId"] == "u-root"
        assert rows[0]["action"] == "USER_ROLE_CHANGE"
        assert rows[0]["targetEntity"] == "USER#u-1"
        assert rows[0]["details"] == {"previousRole": "student", "newRole": "instructor", "reason": "approved"}

    def test_student_is_forbidden(self, client, auth, services, audit_rows):
        """Test that a student token is refused without a write."""
        response = client.put(
            "/api/admin/users/u-1/role",
            json={"role": "instructor", "reason": "approved"},
            headers=auth["u-1"],
        )
        assert response.status_code == 403
        assert response.json()["error"] == "FORBIDDEN_ROLE"
        assert audit_rows() == []
        assert services.users.get_item("u-1")["role"] == "student"

    def test_tampered_token(self, client, tokens):
        """Test that a rewritten payload is refused."""
        forged = _tampered(tokens["u-1"], role="super_admin")
        response = client.put(
            "/api/admin/users/u-1/role",
            json={"role": "instructor", "reason": "approved"},
            headers={"Authorization": f"Bearer {forged}"},
        )
        assert response.status_code == 403
        assert response.json()["error"] in ("TAMPERED", "BAD_SIGNATURE")

    def test_export_invalid_format(self, client, auth):
        """Test that xml export is BAD_FORMAT."""
        response = client.get(
            "/api/admin/analytics/export",
            params={"format": "xml", "dataType": "platform"},
            headers=auth["u-root"],
        )
        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["message"] == "Supported formats: json, csv"
        assert body["code"] == "BAD_FORMAT"

    def test_bulk_partial_failure(self, client, auth, audit_rows):
        """Test a bulk role change with one unknown id."""
        response = client.post(
            "/api/admin/users/bulk",
            json={"userIds": ["u-1", "u-nope"], "operation": "role", "role": "instructor"},
            headers=auth["u-root"],
        )
        assert response.status_code == 200
        body = response.json()
        assert body["successful"] == [{"id": "u-1"}]
        assert [(f["id"], f["errorKind"]) for f in body["failed"]] == [("u-nope", "NOT_FOUND")]
        assert len(audit_rows()) == 1


class TestGate:
    """Tests that rejected requests never write."""

    @pytest.mark.parametrize("method,path,body", [
        ("put", "/api/admin/users/u-1/role", {"role": "admin"}),
        ("put", "/api/admin/users/u-1/status", {"status": "suspended", "reason": "x"}),
        ("put", "/api/admin/courses/c-pending/approve", None),
        ("put", "/api/admin/settings/platform", {"settings": {"maintenanceMode": True}}),
        ("post", "/api/admin/system/backups", {"backupType": "full"}),
        ("post", "/api/admin/communications/announcements", {"title": "t", "content": "c"}),
    ])
    def test_rejected_requests_do_not_write(self, client, services, tokens, auth, method, path, body):
        """Test missing, forged, low-role and suspended callers across mutating routes."""
        callers = [
            {},
            {"Authorization": "Bearer not.a.jwt"},
            {"Authorization": f"Bearer {_tampered(tokens['u-admin'], role='super_admin')}"},
            auth["u-admin"],
            auth["u-1"],
            auth["u-suspended"],
        ]
        before = _writes(services.store)
        for headers in callers:
            response = getattr(client, method)(path, json=body, headers=headers)
            assert response.status_code in (401, 403)
        assert _writes(services.store) == before

    def test_missing_token(self, client):
        """Test the 401 envelope and challenge header."""
        response = client.get("/api/admin/users")
        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"
        assert response.json() == {
            "success": False,
            "message": "Access token required",
            "error": "MISSING_TOKEN",
            "code": "MISSING_TOKEN",
        }

    def test_suspended_super_admin(self, client, auth):
        """Test that a valid token for a suspended account is FORBIDDEN_STATUS."""
        response = client.get("/api/admin/users", headers=auth["u-suspended"])
        assert response.status_code == 403
        assert response.json()["code"] == "FORBIDDEN_STATUS"

    def test_verify_allows_admins(self, client, auth):
        """Test that /verify accepts admins and reports permissions."""
        response = client.get("/api/admin/verify", headers=auth["u-admin"])
        assert response.status_code == 200
        assert response.json()["data"]["permissions"] == ["admin"]
        assert client.get("/api/admin/verify", headers=auth["u-1"]).status_code == 403


class TestValidationEnvelope:
    """Tests for request validation errors."""

    def test_missing_field(self, client, auth):
        """Test that a missing role is VALIDATION/required."""
        response = client.put("/api/admin/users/u-1/role", json={}, headers=auth["u-root"])
        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "VALIDATION"
        assert body["field"] == "role"
        assert body["rule"] == "required"

    def test_enum_field(self, client, auth):
        """Test that an unknown role is VALIDATION/enum."""
        response = client.put("/api/admin/users/u-1/role", json={"role": "overlord"}, headers=auth["u-root"])
        assert response.status_code == 400
        assert response.json()["rule"] == "enum"

    def test_reject_requires_reason(self, client, auth):
        """Test that a rejection without a reason is VALIDATION/required."""
        response = client.put("/api/admin/courses/c-pending/reject", json={}, headers=auth["u-root"])
        assert response.status_code == 400
        assert response.json()["field"] == "reason"
        assert response.json()["rule"] == "required"

    def test_bulk_limit(self, client, auth):
        """Test that more than 100 ids are refused."""
        response = client.post(
            "/api/admin/users/bulk",
            json={"userIds": [f"u-{i}" for i in range(101)], "operation": "role", "role": "admin"},
            headers=auth["u-root"],
        )
        assert response.status_code == 400
        assert response.json()["rule"] == "max_items"

    def test_last_super_admin(self, client, auth):
        """Test the LAST_SUPER_ADMIN mapping."""
        response = client.put("/api/admin/users/u-root/role", json={"role": "admin"}, headers=auth["u-root"])
        assert response.status_code == 403
        assert response.json()["code"] == "LAST_SUPER_ADMIN"

    def test_unknown_route(self, client, auth):
        """Test the 404 envelope."""
        response = client.get("/api/admin/nothing-here", headers=auth["u-root"])
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"


class TestAuthRoutes:
    """Tests for /api/auth."""

    def test_login(self, client, services):
        """Test a successful login and its follow-up /me call."""
        response = client.post(
            "/api/auth/login",
            json={"email": "Root@UpSkillPro.com", "password": PASSWORDS["u-root"]},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["token_type"] == "bearer"
        assert body["user"]["userId"] == "u-root"
        assert "password" not in body["user"]
        assert services.users.get("u-root").loginCount == 1

        me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {body['access_token']}"})
        assert me.json()["data"]["role"] == "super_admin"

    def test_wrong_password(self, client, services):
        """Test that a bad password is 401 and recorded as LOGIN_FAIL."""
        response = client.post("/api/auth/login", json={"email": "sam@example.com", "password": "nope"})
        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_CREDENTIALS"
        assert len(services.security_events.by_user("u-1", SecurityEventType.LOGIN_FAIL)) == 1

    def test_unknown_email(self, client):
        """Test that an unknown email gets the same answer as a bad password."""
        response = client.post("/api/auth/login", json={"email": "who@example.com", "password": "nope"})
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid email or password"

    def test_unknown_email_scan_is_detected(self, client, services):
        """Test that failed logins for many unknown emails from one address raise IP_SCAN."""
        for i in range(10):
            response = client.post(
                "/api/auth/login",
                json={"email": f"Victim{i}@Example.com", "password": "guess"},
                headers={"X-Forwarded-For": "203.0.113.9"},
            )
            assert response.status_code == 401
        events, _ = services.security_events.recent(1, 50, event_type=SecurityEventType.SUSPICIOUS)
        assert [(e["subtype"], e["ip"]) for e in events] == [("IP_SCAN", "203.0.113.9")]
        assert "victim0@example.com" in events[0]["details"]["targetedUsers"]

    def test_suspended_login(self, client):
        """Test that a suspended account cannot log in."""
        response = client.post(
            "/api/auth/login",
            json={"email": "sid@upskillpro.com", "password": PASSWORDS["u-suspended"]},
        )
        assert response.status_code == 403

    def test_lockout_after_failures(self, client):
        """Test that repeated failures lock the account even for the right password."""
        for _ in range(5):
            client.post("/api/auth/login", json={"email": "sam@example.com", "password": "nope"})
        response = client.post(
            "/api/auth/login",
            json={"email": "sam@example.com", "password": PASSWORDS["u-1"]},
        )
        assert response.status_code == 403
        assert "locked" in response.json()["message"]

    def test_liveness(self, client):
        """Test /health outside the API prefix."""
        assert client.get("/health").json()["status"] == "ok"


class TestAdminRoutes:
    """Smoke tests for read endpoints."""

    @pytest.mark.parametrize("path", [
        "/api/admin/dashboard/overview",
        "/api/admin/dashboard/metrics",
        "/api/admin/dashboard/activity",
        "/api/admin/settings",
        "/api/admin/users?role=student",
        "/api/admin/users/u-1",
        "/api/admin/users/u-1/activity",
        "/api/admin/courses?status=pending",
        "/api/admin/analytics/platform",
        "/api/admin/analytics/revenue",
        "/api/admin/analytics/users?groupBy=week",
        "/api/admin/security/dashboard",
        "/api/admin/security/events",
        "/api/admin/security/suspicious",
        "/api/admin/security/policies",
        "/api/admin/support/tickets",
        "/api/admin/support/tickets/statistics",
        "/api/admin/communications/announcements",
        "/api/admin/communications/templates",
        "/api/admin/system/health",
        "/api/admin/system/database",
        "/api/admin/system/api-metrics",
        "/api/admin/system/metrics/realtime",
        "/api/admin/system/storage",
        "/api/admin/system/backups",
        "/api/admin/system/maintenance",
        "/api/admin/audit/reports",
        "/api/admin/audit/statistics",
    ])
    def test_read_endpoints(self, client, auth, path):
        """Test that every read endpoint answers with the success envelope."""
        response = client.get(path, headers=auth["u-root"])
        assert response.status_code == 200, response.text
        assert response.json()["success"] is True

    def test_user_listing_and_detail(self, client, auth):
        """Test filters and the enrollment view."""
        listing = client.get("/api/admin/users", params={"search": "ivy"}, headers=auth["u-root"]).json()
        assert [u["userId"] for u in listing["data"]] == ["u-2"]

        detail = client.get("/api/admin/users/u-1", headers=auth["u-root"]).json()["data"]
        assert detail["enrollments"][0]["courseId"] == "c-approved"

    def test_csv_export_download(self, client, auth):
        """Test the CSV download headers."""
        response = client.get(
            "/api/admin/analytics/export",
            params={"format": "csv", "dataType": "users"},
            headers=auth["u-root"],
        )
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "attachment" in response.headers["content-disposition"]
        assert response.content.startswith(b"userId,name,email")

    def test_audit_report_after_action(self, client, auth):
        """Test that a committed action is immediately visible in the audit report."""
        client.put("/api/admin/courses/c-pending/approve", headers=auth["u-root"])
        report = client.get("/api/admin/audit/reports", params={"adminId": "u-root"}, headers=auth["u-root"]).json()
        assert [r["action"] for r in report["data"]] == ["COURSE_APPROVAL"]

    def test_request_metrics(self, client, auth, services):
        """Test that requests are counted per route template."""
        client.get("/api/admin/users/u-1", headers=auth["u-root"])
        client.get("/api/admin/users/u-missing", headers=auth["u-root"])
        metrics = services.system.api_metrics("/api/admin/users/{user_id}")
        assert [(m["method"], m["requestCount"]) for m in metrics["endpointMetrics"]] == [("GET", 2)]

    def test_request_metrics_keep_router_prefixes(self, client, auth, services):
        """Test that routes from different routers are never merged."""
        client.get("/api/admin/users", headers=auth["u-root"])
        client.get("/api/admin/support/tickets/t-missing", headers=auth["u-root"])
        client.get("/api/admin/users/u-1", headers=auth["u-root"])
        endpoints = {m["endpoint"] for m in services.system.api_metrics()["endpointMetrics"]}
        assert endpoints == {
            "/api/admin/users",
            "/api/admin/users/{user_id}",
            "/api/admin/support/tickets/{ticket_id}",
        }


class TestDateRanges:
    """Tests for startDate and endDate on range routes."""

    RANGE_PATHS = [
        "/api/admin/analytics/revenue",
        "/api/admin/analytics/users",
        "/api/admin/analytics/export",
        "/api/admin/audit/reports",
        "/api/admin/audit/statistics",
        "/api/admin/dashboard/activity",
        "/api/admin/users/u-1/activity",
    ]

    @pytest.mark.parametrize("path", RANGE_PATHS)
    @pytest.mark.parametrize("params", [
        {"startDate": "2025-01-01"},
        {"startDate": "2025-01-01T00:00:00", "endDate": "2025-02-01T12:30:00"},
        {"startDate": "2025-01-01T00:00:00Z", "endDate": "2025-02-01"},
    ])
    def test_naive_and_date_only_bounds(self, client, auth, path, params):
        """Test that bounds without a timezone are read as UTC."""
        response = client.get(path, params=params, headers=auth["u-root"])
        assert response.status_code == 200

    def test_date_only_window_finds_todays_records(self, client, auth):
        """Test that a date-only startDate covers records written today."""
        client.put("/api/admin/courses/c-pending/approve", json={}, headers=auth["u-root"])
        today = utcnow().strftime("%Y-%m-%d")
        report = client.get(
            "/api/admin/audit/reports", params={"startDate": today}, headers=auth["u-root"]
        ).json()
        assert [r["action"] for r in report["data"]] == ["COURSE_APPROVAL"]

    @pytest.mark.parametrize("path", ["/api/admin/analytics/revenue", "/api/admin/audit/reports"])
    def test_reversed_naive_bounds(self, client, auth, path):
        """Test that a reversed window is a validation error, not a crash."""
        response = client.get(
            path,
            params={"startDate": "2025-03-01", "endDate": "2025-02-01T00:00:00"},
            headers=auth["u-root"],
        )
        assert response.status_code == 400
        assert response.json()["rule"] == "before_end"


class TestWebsocket:
    """Tests for /api/admin/ws."""

    def test_activity_push(self, settings, services, tokens, auth):
        """Test that an HTTP command pushes dashboard:activity to a subscribed socket."""
        with TestClient(create_app(settings, services)) as client:
            with client.websocket_connect(f"/api/admin/ws?token={tokens['u-root']}") as ws:
                connected = ws.receive_json()
                assert connected["type"] == "connected"
                assert connected["data"]["userId"] == "u-root"

                ws.send_json({"type": "subscribe:activity"})
                assert ws.receive_json()["type"] == "subscribed"

                response = client.put(
                    "/api/admin/users/u-1/role",
                    json={"role": "instructor"},
                    headers=auth["u-root"],
                )
                assert response.status_code == 200

                pushed = ws.receive_json()
                assert pushed["type"] == "dashboard:activity"
                assert pushed["data"]["targetEntity"] == "USER#u-1"

                ws.send_json({"type": "ping"})
                assert ws.receive_json()["type"] == "pong"

    @pytest.mark.parametrize("user_id,token,code", [
        (None, "garbage", 4401),
        ("u-1", None, 4403),
        ("u-suspended", None, 4403),
    ])
    def test_handshake_rejections(self, settings, services, tokens, user_id, token, code):
        """Test close codes for bad tokens, low roles and suspended accounts."""
        token = token or tokens[user_id]
        with TestClient(create_app(settings, services)) as client:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                with client.websocket_connect(f"/api/admin/ws?token={token}") as ws:
                    ws.receive_json()
            assert exc_info.value.code == code

    def test_suspension_closes_socket(self, settings, services, auth):
        """Test that suspending a connected super admin closes their socket with 4403."""
        with TestClient(create_app(settings, services)) as client:
            promoted = client.put(
                "/api/admin/users/u-admin/role",
                json={"role": "super_admin"},
                headers=auth["u-root"],
            )
            assert promoted.status_code == 200
            token = create_access_token(settings, "u-admin", Role.SUPER_ADMIN, "ada@upskillpro.com", "Ada Admin")
            with client.websocket_connect(f"/api/admin/ws?token={token}") as ws:
                assert ws.receive_json()["type"] == "connected"
                response = client.put(
                    "/api/admin/users/u-admin/status",
                    json={"status": "suspended", "reason": "Compromised"},
                    headers=auth["u-root"],
                )
                assert response.status_code == 200
                with pytest.raises(WebSocketDisconnect) as exc_info:
                    ws.receive_json()
                assert exc_info.value.code == 4403


class TestWriteRoutes:
    """Tests that mutating routes reach their commands and audit once."""

    def test_status_and_moderation(self, client, auth, audit_rows):
        """Test user status and course moderation routes."""
        suspended = client.put(
            "/api/admin/users/u-1/status",
            json={"status": "suspended", "reason": "Chargeback"},
            headers=auth["u-root"],
        )
        assert suspended.json()["data"]["accountStatus"] == "suspended"

        moderated = client.put(
            "/api/admin/courses/c-approved/moderate",
            json={"action": "flag", "reason": "Reported content"},
            headers=auth["u-root"],
        )
        assert moderated.json()["data"]["status"] == "flagged"

        bulk = client.post(
            "/api/admin/courses/bulk",
            json={"courseIds": ["c-pending"], "action": "approve"},
            headers=auth["u-root"],
        ).json()
        assert bulk["successful"] == [{"id": "c-pending"}]
        assert len(audit_rows()) == 3

    def test_pending_is_not_a_status_target(self, client, auth):
        """Test that status updates only accept active or suspended."""
        response = client.put(
            "/api/admin/users/u-1/status",
            json={"status": "pending"},
            headers=auth["u-root"],
        )
        assert response.status_code == 400
        assert response.json()["field"] == "status"

    def test_settings_and_policies(self, client, auth, services):
        """Test settings and policy updates through HTTP."""
        response = client.put(
            "/api/admin/settings/platform",
            json={"settings": {"maintenanceMode": True}},
            headers=auth["u-root"],
        )
        assert response.status_code == 200
        settings = client.get("/api/admin/settings", headers=auth["u-root"]).json()["data"]
        assert settings["settings"]["platformSettings"]["maintenanceMode"] is True

        response = client.put(
            "/api/admin/security/policies",
            json={"policies": {"accessControl": {"maxFailedAttempts": 3}}},
            headers=auth["u-root"],
        )
        assert response.status_code == 200
        assert services.settings_cache.current().policy("accessControl", "maxFailedAttempts") == 3

    def test_support_and_communications(self, client, auth):
        """Test ticket, announcement, template and notification routes."""
        created = client.post(
            "/api/admin/support/tickets",
            json={"userId": "u-1", "subject": "Login issue", "description": "Cannot sign in"},
            headers=auth["u-root"],
        )
        assert created.status_code == 201
        ticket_id = created.json()["data"]["ticketId"]
        closed = client.put(
            f"/api/admin/support/tickets/{ticket_id}/status",
            json={"status": "closed"},
            headers=auth["u-root"],
        )
        assert closed.json()["data"]["status"] == "closed"
        assert client.get(f"/api/admin/support/tickets/{ticket_id}", headers=auth["u-root"]).status_code == 200

        announcement = client.post(
            "/api/admin/communications/announcements",
            json={"title": "Welcome", "content": "Hello", "targetAudience": "all", "status": "published"},
            headers=auth["u-root"],
        )
        assert announcement.status_code == 201

        template = client.post(
            "/api/admin/communications/templates",
            json={"name": "Welcome", "subject": "Hi", "body": "Hello {{name}}"},
            headers=auth["u-root"],
        )
        assert template.status_code == 201

        notification = client.post(
            "/api/admin/communications/notifications",
            json={"title": "Hi", "message": "Hello", "targetRoles": ["student"]},
            headers=auth["u-root"],
        )
        assert notification.status_code == 201
        assert notification.json()["data"]["recipientIds"] == ["u-1"]

    def test_system_operations(self, client, auth):
        """Test backup, restore, cleanup and maintenance routes."""
        backup = client.post(
            "/api/admin/system/backups",
            json={"backupType": "selective", "includeData": ["Course"]},
            headers=auth["u-root"],
        )
        assert backup.status_code == 201
        backup_id = backup.json()["data"]["backupId"]

        restored = client.post(
            f"/api/admin/system/backups/{backup_id}/restore",
            json={"restoreOptions": {"dryRun": True}},
            headers=auth["u-root"],
        ).json()
        assert restored["data"]["itemsMatched"] == 3

        cleanup = client.post(
            "/api/admin/system/cleanup",
            json={"cleanupType": "closed_tickets", "daysOld": 30},
            headers=auth["u-root"],
        ).json()
        assert cleanup["message"] == "Cleanup dry run completed"

        window = client.post(
            "/api/admin/system/maintenance",
            json={
                "title": "Upgrade",
                "startTime": "2030-01-01T02:00:00Z",
                "endTime": "2030-01-01T04:00:00Z",
                "maintenanceType": "upgrade",
            },
            headers=auth["u-root"],
        )
        assert window.status_code == 201
        assert window.json()["data"]["startTime"] == "2030-01-01T02:00:00.000Z"
