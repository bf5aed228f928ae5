"""
Security monitor.

Ingests login outcomes, keeps rolling failure counters per user and per
source address, and derives suspicious-activity events:

- repeated failures for one user -> MULTIPLE_FAILED_LOGINS (+ account lockout)
- repeated failures from one address across users -> IP_SCAN
- a successful login from an address the user never used -> NEW_LOCATION

Counter maps are mutated under a per-key lock that is never held across
store I/O.
"""

import logging
import threading
import time
from collections import Counter, deque
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

from admin_plane.core.timeutils import hour_key, parse_iso, to_iso, utcnow
from admin_plane.models.admin import (
    SecurityEvent,
    SecurityEventType,
    Severity,
    SuspiciousType,
)
from admin_plane.repositories.security import SecurityEventRepository
from admin_plane.repositories.users import UserRepository
from .realtime import Multiplexer
from .settings_cache import SettingsCache


logger = logging.getLogger(__name__)

IP_SCAN_THRESHOLD = 10
DEFAULT_USER_THRESHOLD = 5

ALERT_PRIORITY = {
    Severity.HIGH: "critical",
    Severity.MEDIUM: "high",
    Severity.LOW: "normal",
}


class SecurityMonitor:
    """
    Rolling-window detector over authentication outcomes.

    Args:
        events: Security event repository
        users: User repository (for lockouts)
        settings: Policy snapshot (maxFailedAttempts, lockoutDuration)
        publisher: Realtime publisher for `security:alert`
        window: Rolling window in seconds
        clock: Wall clock returning epoch seconds
    """

    def __init__(
        self,
        events: SecurityEventRepository,
        users: UserRepository,
        settings: SettingsCache,
        publisher: Optional[Multiplexer] = None,
        window: int = 15 * 60,
        clock: Callable[[], float] = time.time
    ):
        self.events = events
        self.users = users
        self.settings = settings
        self.publisher = publisher
        self.window = window
        self._clock = clock
        self._user_fails: Dict[str, Deque[float]] = {}
        self._ip_fails: Dict[str, Deque[Tuple[float, Optional[str]]]] = {}
        self._user_flagged: Set[str] = set()
        self._ip_flagged: Set[str] = set()
        self._known_ips: Dict[str, Set[str]] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._registry:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _prune(self, entries: deque, now: float) -> None:
        while entries:
            first = entries[0]
            stamp = first[0] if isinstance(first, tuple) else first
            if now - stamp < self.window:
                break
            entries.popleft()

    # Ingestion

    def ingest(
        self,
        event_type: SecurityEventType,
        user_id: Optional[str],
        ip: Optional[str],
        details: Optional[Dict[str, Any]] = None
    ) -> List[SecurityEvent]:
        """Record one authentication outcome; returns any derived SUSPICIOUS events."""
        if event_type is SecurityEventType.LOGIN_FAIL:
            return self.record_failure(user_id, ip, details)
        if event_type is SecurityEventType.LOGIN_SUCCESS:
            return self.record_success(user_id, ip, details)
        self.events.append(SecurityEvent.create(event_type, user_id, ip, details, at=self._now()))
        return []

    def record_failure(
        self,
        user_id: Optional[str],
        ip: Optional[str],
        details: Optional[Dict[str, Any]] = None
    ) -> List[SecurityEvent]:
        now = self._clock()
        self.events.append(SecurityEvent.create(
            SecurityEventType.LOGIN_FAIL, user_id, ip, details, at=self._now()
        ))

        threshold = int(self.settings.current().policy(
            "accessControl", "maxFailedAttempts", DEFAULT_USER_THRESHOLD
        ))
        user_streak = 0
        if user_id:
            with self._lock_for(f"user:{user_id}"):
                fails = self._user_fails.setdefault(user_id, deque())
                self._prune(fails, now)
                if not fails:
                    self._user_flagged.discard(user_id)
                fails.append(now)
                if len(fails) >= threshold and user_id not in self._user_flagged:
                    self._user_flagged.add(user_id)
                    user_streak = len(fails)

        ip_targets: List[str] = []
        if ip:
            with self._lock_for(f"ip:{ip}"):
                fails_from_ip = self._ip_fails.setdefault(ip, deque())
                self._prune(fails_from_ip, now)
                if not fails_from_ip:
                    self._ip_flagged.discard(ip)
                # Unknown accounts are told apart by the email that was tried
                target = user_id or (details or {}).get("email")
                fails_from_ip.append((now, target))
                targets = {u for _, u in fails_from_ip if u}
                if (
                    len(fails_from_ip) >= IP_SCAN_THRESHOLD
                    and len(targets) > 1
                    and ip not in self._ip_flagged
                ):
                    self._ip_flagged.add(ip)
                    ip_targets = sorted(targets)

        derived = []
        if user_streak:
            derived.append(self._multiple_failures(user_id, ip, user_streak))
        if ip_targets:
            derived.append(self._emit(
                SuspiciousType.IP_SCAN,
                None,
                ip,
                {
                    "failedAttempts": IP_SCAN_THRESHOLD,
                    "targetedUsers": ip_targets,
                    "windowMinutes": self.window // 60,
                },
            ))
        return derived

    def record_success(
        self,
        user_id: Optional[str],
        ip: Optional[str],
        details: Optional[Dict[str, Any]] = None
    ) -> List[SecurityEvent]:
        known = None
        if user_id and ip and user_id not in self._known_ips:
            known = {
                e["ip"] for e in self.events.by_user(user_id, SecurityEventType.LOGIN_SUCCESS)
                if e.get("ip")
            }

        self.events.append(SecurityEvent.create(
            SecurityEventType.LOGIN_SUCCESS, user_id, ip, details, at=self._now()
        ))
        if not user_id:
            return []

        new_location = False
        with self._lock_for(f"user:{user_id}"):
            # A success ends the failure streak
            self._user_fails.pop(user_id, None)
            self._user_flagged.discard(user_id)
            if ip:
                if known is not None and user_id not in self._known_ips:
                    self._known_ips[user_id] = known
                seen = self._known_ips.setdefault(user_id, set())
                # The first known address is the baseline
                new_location = bool(seen) and ip not in seen
                seen.add(ip)

        if new_location:
            return [self._emit(
                SuspiciousType.NEW_LOCATION,
                user_id,
                ip,
                {"knownLocations": len(self._known_ips.get(user_id, ())) - 1},
            )]
        return []

    def _multiple_failures(self, user_id: str, ip: Optional[str], attempts: int) -> SecurityEvent:
        snapshot = self.settings.current()
        details: Dict[str, Any] = {
            "failedAttempts": attempts,
            "windowMinutes": self.window // 60,
        }
        if snapshot.policy("accessControl", "enableBruteForceProtection", True):
            minutes = int(snapshot.policy("accessControl", "lockoutDuration", 30))
            until = self._now() + timedelta(minutes=minutes)
            details["lockedUntil"] = to_iso(until)
            details["lockoutMinutes"] = minutes
            self._lockout(user_id, ip, until, minutes)
        return self._emit(SuspiciousType.MULTIPLE_FAILED_LOGINS, user_id, ip, details)

    def _lockout(self, user_id: str, ip: Optional[str], until: datetime, minutes: int) -> None:
        if self.users.get_item(user_id) is None:
            return
        self.users.lock(user_id, until)
        self.events.append(SecurityEvent.create(
            SecurityEventType.LOCKOUT,
            user_id,
            ip,
            {"lockedUntil": to_iso(until), "lockoutMinutes": minutes},
            at=self._now(),
        ))

    def _emit(
        self,
        subtype: SuspiciousType,
        user_id: Optional[str],
        ip: Optional[str],
        details: Dict[str, Any]
    ) -> SecurityEvent:
        event = SecurityEvent.create(
            SecurityEventType.SUSPICIOUS, user_id, ip, details, subtype=subtype, at=self._now()
        )
        self.events.append(event)
        logger.warning(
            f"Suspicious activity {subtype.value} user={user_id} ip={ip}",
            extra={"event_id": event.eventId},
        )
        if self.publisher:
            payload = event.model_dump(mode="json", exclude_none=True)
            payload["priority"] = ALERT_PRIORITY[event.severity]
            self.publisher.publish("security:alert", payload)
        return event

    # Read side

    def suspicious(self, hours_back: int = 24) -> Dict[str, Any]:
        alerts = [
            SecurityEvent.from_item(i)
            for i in self.events.iter_recent(hours_back, SecurityEventType.SUSPICIOUS)
        ]
        acknowledged = self.events.acknowledged_ids([a.eventId for a in alerts])
        by_severity = Counter(a.severity.value for a in alerts if a.severity)
        return {
            "alerts": [
                {**a.model_dump(mode="json", exclude_none=True), "acknowledged": a.eventId in acknowledged}
                for a in alerts
            ],
            "summary": {
                "total": len(alerts),
                "high": by_severity.get(Severity.HIGH.value, 0),
                "medium": by_severity.get(Severity.MEDIUM.value, 0),
                "low": by_severity.get(Severity.LOW.value, 0),
                "unacknowledged": sum(1 for a in alerts if a.eventId not in acknowledged),
            },
            "hoursBack": hours_back,
        }

    def dashboard(self, hours_back: int = 24) -> Dict[str, Any]:
        events = [SecurityEvent.from_item(i) for i in self.events.iter_recent(hours_back)]
        successes = sum(1 for e in events if e.eventType is SecurityEventType.LOGIN_SUCCESS)
        failures = sum(1 for e in events if e.eventType is SecurityEventType.LOGIN_FAIL)
        suspicious = [e for e in events if e.eventType is SecurityEventType.SUSPICIOUS]
        acknowledged = self.events.acknowledged_ids([e.eventId for e in suspicious])
        active = [e for e in suspicious if e.eventId not in acknowledged]

        by_hour: Dict[str, Dict[str, int]] = {}
        for event in events:
            bucket = by_hour.setdefault(
                hour_key(parse_iso(event.timestamp)),
                {"total": 0, "failed": 0, "suspicious": 0},
            )
            bucket["total"] += 1
            if event.eventType is SecurityEventType.LOGIN_FAIL:
                bucket["failed"] += 1
            elif event.eventType is SecurityEventType.SUSPICIOUS:
                bucket["suspicious"] += 1

        attempts = successes + failures
        return {
            "metrics": {
                "totalLoginAttempts": attempts,
                "successfulLogins": successes,
                "failedLoginAttempts": failures,
                "loginSuccessRate": round(successes / attempts * 100, 2) if attempts else 0.0,
                "suspiciousActivityCount": len(suspicious),
                "activeAlerts": len(active),
            },
            "alerts": [e.model_dump(mode="json", exclude_none=True) for e in active[:10]],
            "trends": {"eventsByHour": dict(sorted(by_hour.items()))},
            "recentEvents": [e.model_dump(mode="json", exclude_none=True) for e in events[:20]],
            "hoursBack": hours_back,
            "generatedAt": to_iso(utcnow()),
        }
