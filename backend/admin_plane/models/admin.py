"""
Admin-specific models for the control plane.

Defines the audit trail record, security events, and the platform
settings/policy documents with their defaults.
"""

import copy
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any

from pydantic import BaseModel, Field
from ulid import ULID

from admin_plane.core.timeutils import to_iso, day_key, hour_key, utcnow


class AuditAction(str, Enum):
    """Types of admin actions recorded in the audit trail."""
    USER_ROLE_CHANGE = "USER_ROLE_CHANGE"
    USER_STATUS_UPDATE = "USER_STATUS_UPDATE"
    COURSE_APPROVAL = "COURSE_APPROVAL"
    COURSE_REJECTION = "COURSE_REJECTION"
    COURSE_MODERATION = "COURSE_MODERATION"
    SETTING_UPDATE = "SETTING_UPDATE"
    POLICY_UPDATE = "POLICY_UPDATE"
    ANNOUNCEMENT_PUBLISH = "ANNOUNCEMENT_PUBLISH"
    NOTIFICATION_SEND = "NOTIFICATION_SEND"
    BACKUP_CREATE = "BACKUP_CREATE"
    BACKUP_RESTORE = "BACKUP_RESTORE"
    MAINTENANCE_SCHEDULE = "MAINTENANCE_SCHEDULE"
    DATA_CLEANUP = "DATA_CLEANUP"
    TICKET_STATE_CHANGE = "TICKET_STATE_CHANGE"
    SECURITY_EVENT_ACK = "SECURITY_EVENT_ACK"


class AuditRecord(BaseModel):
    """
    Append-only record of a privileged operation.

    PK = AUDIT#{yyyy-mm-dd}, SK = {timestamp}#{actionId}
    """
    actionId: str
    adminId: str
    action: AuditAction
    targetEntity: str
    details: Dict[str, Any] = Field(default_factory=dict)
    ip: Optional[str] = None
    userAgent: Optional[str] = None
    timestamp: str

    @classmethod
    def create(
        cls,
        admin_id: str,
        action: AuditAction,
        target_entity: str,
        details: Optional[Dict[str, Any]] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        at: Optional[datetime] = None
    ) -> "AuditRecord":
        """
        Factory method to build an audit record with a fresh id and timestamp.
        """
        return cls(
            actionId=str(ULID()),
            adminId=admin_id,
            action=action,
            targetEntity=target_entity,
            details=details or {},
            ip=ip,
            userAgent=user_agent,
            timestamp=to_iso(at or utcnow()),
        )

    @property
    def pk(self) -> str:
        return f"AUDIT#{self.timestamp[:10]}"

    @property
    def sk(self) -> str:
        return f"{self.timestamp}#{self.actionId}"

    def to_item(self) -> Dict[str, Any]:
        item = self.model_dump(mode="json", exclude_none=True)
        item.update({"PK": self.pk, "SK": self.sk, "entityType": "AuditRecord"})
        return item

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "AuditRecord":
        return cls(**{k: v for k, v in item.items() if k in cls.model_fields})


def audit_partition(at: datetime) -> str:
    return f"AUDIT#{day_key(at)}"


class SecurityEventType(str, Enum):
    """Security event kinds."""
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAIL = "LOGIN_FAIL"
    SUSPICIOUS = "SUSPICIOUS"
    MFA_CHALLENGE = "MFA_CHALLENGE"
    LOCKOUT = "LOCKOUT"


class SuspiciousType(str, Enum):
    """Subtypes of SUSPICIOUS events derived by the security monitor."""
    MULTIPLE_FAILED_LOGINS = "MULTIPLE_FAILED_LOGINS"
    IP_SCAN = "IP_SCAN"
    NEW_LOCATION = "NEW_LOCATION"


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


SUBTYPE_SEVERITY = {
    SuspiciousType.MULTIPLE_FAILED_LOGINS: Severity.MEDIUM,
    SuspiciousType.IP_SCAN: Severity.HIGH,
    SuspiciousType.NEW_LOCATION: Severity.LOW,
}


class SecurityEvent(BaseModel):
    """
    Append-only security event.

    PK = SEC#{yyyy-mm-dd-HH}, SK = {timestamp}#{eventId}
    """
    eventId: str
    eventType: SecurityEventType
    subtype: Optional[SuspiciousType] = None
    severity: Optional[Severity] = None
    userId: Optional[str] = None
    ip: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: str

    @classmethod
    def create(
        cls,
        event_type: SecurityEventType,
        user_id: Optional[str],
        ip: Optional[str],
        details: Optional[Dict[str, Any]] = None,
        subtype: Optional[SuspiciousType] = None,
        at: Optional[datetime] = None
    ) -> "SecurityEvent":
        return cls(
            eventId=str(ULID()),
            eventType=event_type,
            subtype=subtype,
            severity=SUBTYPE_SEVERITY.get(subtype) if subtype else None,
            userId=user_id,
            ip=ip,
            details=details or {},
            timestamp=to_iso(at or utcnow()),
        )

    @property
    def pk(self) -> str:
        return f"SEC#{self.timestamp[:10]}-{self.timestamp[11:13]}"

    @property
    def sk(self) -> str:
        return f"{self.timestamp}#{self.eventId}"

    def to_item(self) -> Dict[str, Any]:
        item = self.model_dump(mode="json", exclude_none=True)
        item.update({"PK": self.pk, "SK": self.sk, "entityType": "SecurityEvent"})
        return item

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "SecurityEvent":
        return cls(**{k: v for k, v in item.items() if k in cls.model_fields})


def security_partition(at: datetime) -> str:
    return f"SEC#{hour_key(at)}"


SETTINGS_PK = "SYSTEM#SETTINGS"
POLICIES_PK = "SYSTEM#POLICIES"
CURRENT_SK = "CURRENT"


class SystemSettings:
    """
    Platform settings document, one section per key.
    """

    SECTIONS = {
        "platform": "platformSettings",
        "features": "featureFlags",
        "payment": "paymentSettings",
        "integrations": "integrationSettings",
    }

    @staticmethod
    def get_default_settings() -> Dict[str, Any]:
        """
        Get default platform settings.
        """
        return copy.deepcopy({
            "platformSettings": {
                "platformName": "UpSkillPro",
                "maintenanceMode": False,
                "allowUserRegistration": True,
                "requireCourseApproval": True,
                "maxFileUploadSize": 100,
                "supportEmail": "support@upskillpro.com",
                "defaultLanguage": "en",
            },
            "featureFlags": {
                "enableCertificates": True,
                "enableDiscussions": True,
                "enableLiveClasses": False,
                "enableMobileApp": True,
                "enableGamification": False,
            },
            "paymentSettings": {
                "paymentProvider": "stripe",
                "currency": "USD",
                "commissionRate": 15,
                "enableRefunds": True,
                "refundPeriodDays": 30,
            },
            "integrationSettings": {
                "enableGoogleAnalytics": False,
                "enableSlackNotifications": False,
                "enableZoomIntegration": False,
            },
        })


class SecurityPolicy:
    """
    Security policy document (password, session and access control).
    """

    SECTIONS = ("passwordPolicy", "sessionPolicy", "accessControl")

    @staticmethod
    def get_default_policies() -> Dict[str, Any]:
        """
        Get default security policies.
        """
        return copy.deepcopy({
            "passwordPolicy": {
                "minLength": 8,
                "requireUppercase": True,
                "requireLowercase": True,
                "requireNumbers": True,
                "requireSpecialChars": True,
                "maxAge": 90,
                "preventReuse": 5,
            },
            "sessionPolicy": {
                "maxDuration": 24,
                "idleTimeout": 2,
                "requireMFA": False,
                "maxConcurrentSessions": 3,
            },
            "accessControl": {
                "enableIPWhitelist": False,
                "allowedIPs": [],
                "enableRateLimit": True,
                "maxRequestsPerMinute": 100,
                "enableBruteForceProtection": True,
                "maxFailedAttempts": 5,
                "lockoutDuration": 30,
            },
        })


def merge_document(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge `updates` into a copy of `base`."""
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_document(merged[key], value)
        else:
            merged[key] = value
    return merged
