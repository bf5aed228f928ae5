"""
Service layer for the admin control plane.

`Services` wires every component from one Settings instance:
- store, repositories
- audit logger, identity gate, settings snapshot
- command handler and the support, communication and maintenance services
- security monitor, analytics, system monitor
- realtime multiplexer
"""

from typing import Any, Optional

import boto3

from admin_plane.core.config import Settings
from admin_plane.core.database import Store
from admin_plane.repositories import (
    CourseRepository,
    SecurityEventRepository,
    SettingsRepository,
    UserRepository,
)
from .analytics import AnalyticsService
from .audit import AuditLogger
from .commands import AdminCommandHandler, CommandContext
from .communications import CommunicationService
from .identity import IdentityGate
from .maintenance import MaintenanceService
from .realtime import Multiplexer, Topic
from .security_monitor import SecurityMonitor
from .settings_cache import SettingsCache
from .support import SupportService
from .system import RequestMetrics, SystemMonitor


class Services:
    """
    Process-wide component graph.

    Args:
        settings: Application settings
        store: Table gateway (built from settings when omitted)
        s3: S3 client for backups (built when a bucket is configured)
    """

    def __init__(self, settings: Settings, store: Optional[Store] = None, s3: Any = None):
        self.settings = settings
        self.store = store or Store.from_settings(settings)
        if s3 is None and settings.backups_enabled:
            s3 = boto3.client("s3", region_name=settings.REGION)
        self.s3 = s3

        self.multiplexer = Multiplexer(max_buffer=settings.REALTIME_MAX_BUFFER)

        self.users = UserRepository(self.store)
        self.courses = CourseRepository(self.store)
        self.security_events = SecurityEventRepository(self.store)
        self.settings_repository = SettingsRepository(self.store)

        self.audit = AuditLogger(self.store, self.multiplexer, settings.AUDIT_RETENTION_DAYS)
        self.identity = IdentityGate(settings, self.users)
        self.settings_cache = SettingsCache(
            self.settings_repository, self.multiplexer, settings.SETTINGS_REFRESH
        )
        self.monitor = SecurityMonitor(
            self.security_events,
            self.users,
            self.settings_cache,
            self.multiplexer,
            window=settings.MONITOR_WINDOW,
        )

        self.commands = AdminCommandHandler(
            self.store,
            self.audit,
            self.users,
            self.courses,
            self.security_events,
            self.settings_repository,
            self.settings_cache,
            identity=self.identity,
            publisher=self.multiplexer,
        )
        self.support = SupportService(self.store, self.commands)
        self.communications = CommunicationService(
            self.store, self.commands, self.users, self.multiplexer
        )
        self.maintenance = MaintenanceService(
            self.store,
            self.commands,
            settings,
            s3=self.s3,
            settings_cache=self.settings_cache,
            publisher=self.multiplexer,
        )

        self.analytics = AnalyticsService(self.users, self.courses, self.audit)
        self.request_metrics = RequestMetrics()
        self.system = SystemMonitor(
            settings, self.store, self.request_metrics, self.multiplexer, s3=self.s3
        )


__all__ = [
    "AdminCommandHandler",
    "AnalyticsService",
    "AuditLogger",
    "CommandContext",
    "CommunicationService",
    "IdentityGate",
    "MaintenanceService",
    "Multiplexer",
    "RequestMetrics",
    "SecurityMonitor",
    "Services",
    "SettingsCache",
    "SupportService",
    "SystemMonitor",
    "Topic",
]
