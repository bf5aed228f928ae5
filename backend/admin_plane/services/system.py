"""
System monitoring: service health, store metrics, request metrics,
realtime connection counts and storage usage.
"""

import logging
import threading
import time
from collections import defaultdict
from typing import Any, Dict, List, Optional

import psutil
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import BotoCoreError, ClientError

from admin_plane.core.config import Settings
from admin_plane.core.database import Store
from admin_plane.core.errors import AdminError, ErrorKind
from admin_plane.core.timeutils import to_iso, utcnow
from .realtime import Multiplexer


logger = logging.getLogger(__name__)

SLOW_STORE_MS = 500
DEGRADED_ERROR_RATE = 5.0


class RequestMetrics:
    """Per-route request counters fed by the HTTP middleware."""

    def __init__(self):
        self._lock = threading.Lock()
        self._routes: Dict[tuple, Dict[str, float]] = defaultdict(
            lambda: {"count": 0, "errors": 0, "total_ms": 0.0, "max_ms": 0.0}
        )
        self._started = time.monotonic()

    def record(self, method: str, route: str, status_code: int, elapsed_ms: float) -> None:
        with self._lock:
            entry = self._routes[(method, route)]
            entry["count"] += 1
            entry["total_ms"] += elapsed_ms
            entry["max_ms"] = max(entry["max_ms"], elapsed_ms)
            if status_code >= 500:
                entry["errors"] += 1

    def snapshot(self, endpoint: Optional[str] = None) -> Dict[str, Any]:
        with self._lock:
            routes = {k: dict(v) for k, v in self._routes.items()}
        total = sum(int(v["count"]) for v in routes.values())
        errors = sum(int(v["errors"]) for v in routes.values())
        total_ms = sum(v["total_ms"] for v in routes.values())
        endpoints: List[Dict[str, Any]] = []
        for (method, route), v in sorted(routes.items(), key=lambda kv: -kv[1]["count"]):
            if endpoint and route != endpoint:
                continue
            error_rate = v["errors"] / v["count"] * 100 if v["count"] else 0.0
            endpoints.append({
                "endpoint": route,
                "method": method,
                "requestCount": int(v["count"]),
                "averageResponseTime": round(v["total_ms"] / v["count"], 2) if v["count"] else 0.0,
                "maxResponseTime": round(v["max_ms"], 2),
                "errorRate": round(error_rate, 2),
                "status": "healthy" if error_rate < DEGRADED_ERROR_RATE else "degraded",
            })
        elapsed = max(time.monotonic() - self._started, 1e-9)
        return {
            "totalRequests": total,
            "errorCount": errors,
            "errorRate": round(errors / total * 100, 2) if total else 0.0,
            "averageResponseTime": round(total_ms / total, 2) if total else 0.0,
            "requestsPerSecond": round(total / elapsed, 3),
            "endpointMetrics": endpoints,
        }


class SystemMonitor:
    """
    Args:
        settings: Application settings (bucket, table)
        store: Table gateway
        requests: Request metrics collected by the middleware
        multiplexer: Realtime multiplexer for connection counts
        s3: boto3 S3 client used for backup bucket usage
    """

    def __init__(
        self,
        settings: Settings,
        store: Store,
        requests: RequestMetrics,
        multiplexer: Optional[Multiplexer] = None,
        s3: Any = None
    ):
        self.settings = settings
        self.store = store
        self.requests = requests
        self.multiplexer = multiplexer
        self.s3 = s3
        self._started = time.monotonic()
        self._process = psutil.Process()

    def uptime(self) -> str:
        seconds = int(time.monotonic() - self._started)
        return f"{seconds // 3600}h {(seconds % 3600) // 60}m"

    def _process_metrics(self) -> Dict[str, Any]:
        memory = self._process.memory_info()
        return {
            "cpuUsage": psutil.cpu_percent(interval=None),
            "memoryUsage": round(psutil.virtual_memory().percent, 2),
            "processMemoryMb": round(memory.rss / 1024 / 1024, 2),
            "diskUsage": round(psutil.disk_usage("/").percent, 2),
        }

    def health(self) -> Dict[str, Any]:
        try:
            latency = self.store.ping()
            database = "operational" if latency < SLOW_STORE_MS else "degraded"
        except AdminError:
            latency = None
            database = "unavailable"
        api = self.requests.snapshot()
        api_status = "operational" if api["errorRate"] < DEGRADED_ERROR_RATE else "degraded"
        storage = "operational" if self.settings.backups_enabled else "not_configured"

        if database == "unavailable":
            status = "unhealthy"
        elif "degraded" in (database, api_status):
            status = "degraded"
        else:
            status = "healthy"
        return {
            "status": status,
            "uptime": self.uptime(),
            "timestamp": to_iso(utcnow()),
            "metrics": {**self._process_metrics(), "storeLatencyMs": latency},
            "services": {"api": api_status, "database": database, "storage": storage},
        }

    def database(self) -> Dict[str, Any]:
        try:
            latency = self.store.ping()
        except AdminError:
            latency = None
        description = self.store.describe()
        calls = self.store.metrics.snapshot()
        return {
            "status": "healthy" if latency is not None and latency < SLOW_STORE_MS else "degraded",
            "timestamp": to_iso(utcnow()),
            "latencyMs": latency,
            "table": description,
            "operations": calls,
        }

    def api_metrics(self, endpoint: Optional[str] = None) -> Dict[str, Any]:
        return {"timestamp": to_iso(utcnow()), **self.requests.snapshot(endpoint)}

    def realtime(self) -> Dict[str, Any]:
        api = self.requests.snapshot()
        connections = self.multiplexer.stats() if self.multiplexer else {}
        return {
            "timestamp": to_iso(utcnow()),
            **self._process_metrics(),
            "activeConnections": connections.get("activeConnections", 0),
            "realtime": connections,
            "requestsPerSecond": api["requestsPerSecond"],
            "uptime": int(time.monotonic() - self._started),
        }

    def _bucket_usage(self) -> Optional[Dict[str, Any]]:
        if not self.settings.backups_enabled or self.s3 is None:
            return None
        total = 0
        count = 0
        paginator = self.s3.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=self.settings.BUCKET, Prefix="backups/"):
                for obj in page.get("Contents", []):
                    total += obj["Size"]
                    count += 1
        except (ClientError, BotoCoreError) as exc:
            raise AdminError(ErrorKind.STORE_FAILED) from exc
        return {"bucket": self.settings.BUCKET, "backupObjects": count, "totalBytes": total}

    def storage(self) -> Dict[str, Any]:
        description = self.store.describe()
        by_type: Dict[str, int] = defaultdict(int)
        for item in self.store.scan_all(Attr("entityType").exists()):
            by_type[item["entityType"]] += 1

        recommendations = []
        audit_rows = by_type.get("AuditRecord", 0)
        if audit_rows > 100000:
            recommendations.append({
                "type": "cleanup",
                "priority": "low",
                "message": f"{audit_rows} audit records stored; review the {self.settings.AUDIT_RETENTION_DAYS}-day retention window",
            })
        if by_type.get("SecurityEvent", 0) > 100000:
            recommendations.append({
                "type": "cleanup",
                "priority": "medium",
                "message": "Consider a security_events cleanup",
            })
        return {
            "timestamp": to_iso(utcnow()),
            "database": {
                "table": description.get("tableName"),
                "sizeBytes": description.get("sizeBytes"),
                "itemCount": sum(by_type.values()),
                "itemsByType": dict(sorted(by_type.items())),
                "indexes": description.get("indexes", []),
            },
            "storage": self._bucket_usage(),
            "recommendations": recommendations,
        }
