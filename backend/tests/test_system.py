"""Tests for system monitoring."""

from admin_plane.models.system import BackupType
from admin_plane.services import Services
from admin_plane.services.system import RequestMetrics


class TestRequestMetrics:
    """Tests for RequestMetrics."""

    def test_snapshot(self):
        """Test per-route counts, latency and error rates."""
        metrics = RequestMetrics()
        for _ in range(19):
            metrics.record("GET", "/api/admin/users", 200, 10.0)
        metrics.record("GET", "/api/admin/users", 500, 30.0)
        metrics.record("GET", "/api/admin/settings", 404, 5.0)

        snapshot = metrics.snapshot()
        assert snapshot["totalRequests"] == 21
        assert snapshot["errorCount"] == 1
        users = snapshot["endpointMetrics"][0]
        assert users["endpoint"] == "/api/admin/users"
        assert users["requestCount"] == 20
        assert users["averageResponseTime"] == 11.0
        assert users["maxResponseTime"] == 30.0
        assert users["errorRate"] == 5.0
        assert users["status"] == "degraded"

        settings = metrics.snapshot("/api/admin/settings")["endpointMetrics"]
        assert [(m["endpoint"], m["status"]) for m in settings] == [("/api/admin/settings", "healthy")]

    def test_empty(self):
        """Test a snapshot with no traffic."""
        snapshot = RequestMetrics().snapshot()
        assert snapshot["totalRequests"] == 0
        assert snapshot["errorRate"] == 0.0
        assert snapshot["endpointMetrics"] == []


class TestSystemMonitor:
    """Tests for SystemMonitor."""

    def test_health(self, services):
        """Test overall status and per-service states."""
        health = services.system.health()
        assert health["status"] == "healthy"
        assert health["services"] == {"api": "operational", "database": "operational", "storage": "operational"}
        assert health["metrics"]["storeLatencyMs"] is not None
        assert "cpuUsage" in health["metrics"]

    def test_degraded_api(self, services):
        """Test that a high server error rate degrades health."""
        services.request_metrics.record("GET", "/api/admin/users", 500, 1.0)
        health = services.system.health()
        assert health["services"]["api"] == "degraded"
        assert health["status"] == "degraded"

    def test_database(self, services):
        """Test table description and store call counters."""
        database = services.system.database()
        assert database["table"]["tableName"] == services.settings.TABLE_NAME
        assert {i["name"] for i in database["table"]["indexes"]} >= {"byUser"}
        assert database["operations"]["totalOperations"] > 0

    def test_realtime(self, services, tokens):
        """Test connection counts in the realtime view."""
        services.multiplexer.register(services.identity.verify(tokens["u-root"]))
        realtime = services.system.realtime()
        assert realtime["activeConnections"] == 1
        assert realtime["uptime"] >= 0

    def test_storage(self, services, root_ctx):
        """Test item counts by entity type and bucket usage."""
        services.maintenance.create_backup(root_ctx, BackupType.SELECTIVE, ["User"])
        storage = services.system.storage()
        by_type = storage["database"]["itemsByType"]
        assert by_type["User"] == 6
        assert by_type["Course"] == 3
        assert by_type["Enrollment"] == 1
        assert storage["storage"]["backupObjects"] == 1
        assert storage["storage"]["totalBytes"] > 0

    def test_storage_not_configured(self, settings, store, services):
        """Test the storage state without a backup bucket."""
        bare = Services(settings.model_copy(update={"BUCKET": None}), store=store)
        assert bare.system.health()["services"]["storage"] == "not_configured"
        assert bare.system.storage()["storage"] is None
