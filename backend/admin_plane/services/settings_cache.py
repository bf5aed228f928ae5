"""
Process-wide snapshot of platform settings and security policies.

Readers get an immutable, versioned snapshot. It is reloaded lazily once it
is older than the refresh interval, and eagerly after a settings or policy
command, in which case the new snapshot is broadcast on the system topic.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from admin_plane.repositories.settings import SettingsRepository
from .realtime import Multiplexer


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Snapshot:
    version: int
    settings: Dict[str, Any]
    policies: Dict[str, Any]
    settings_version: int
    policies_version: int
    loaded_at: float

    def policy(self, section: str, key: str, default: Any = None) -> Any:
        return self.policies.get(section, {}).get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "settings": self.settings,
            "policies": self.policies,
        }


class SettingsCache:
    """Versioned in-memory copy of the settings and policy documents."""

    def __init__(
        self,
        repository: SettingsRepository,
        publisher: Optional[Multiplexer] = None,
        refresh_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.repository = repository
        self.publisher = publisher
        self.refresh_interval = refresh_interval
        self._clock = clock
        self._snapshot: Optional[Snapshot] = None
        self._lock = threading.Lock()

    def current(self) -> Snapshot:
        snapshot = self._snapshot
        if snapshot is None or self._clock() - snapshot.loaded_at >= self.refresh_interval:
            snapshot = self.refresh()
        return snapshot

    def refresh(self, broadcast: bool = False) -> Snapshot:
        settings, settings_version = self.repository.settings()
        policies, policies_version = self.repository.policies()
        with self._lock:
            previous = self._snapshot
            changed = previous is None or (
                previous.settings_version != settings_version
                or previous.policies_version != policies_version
            )
            version = (previous.version if previous else 0) + (1 if changed else 0)
            snapshot = Snapshot(
                version=version,
                settings=settings,
                policies=policies,
                settings_version=settings_version,
                policies_version=policies_version,
                loaded_at=self._clock(),
            )
            self._snapshot = snapshot
        if changed and previous is not None:
            logger.info(f"Settings snapshot advanced to version {version}")
        if broadcast and self.publisher:
            self.publisher.publish("system:settings", snapshot.to_dict())
        return snapshot
