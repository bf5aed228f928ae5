"""
Error taxonomy for the admin control plane.

Every failure that reaches a client is an ErrorKind; the HTTP status for a
kind is looked up in a single table.
"""

from enum import Enum
from typing import Optional, Dict, Any


class ErrorKind(str, Enum):
    """Closed set of failure kinds exposed to clients."""
    MISSING_TOKEN = "MISSING_TOKEN"
    EXPIRED = "EXPIRED"
    MALFORMED = "MALFORMED"
    BAD_SIGNATURE = "BAD_SIGNATURE"
    TAMPERED = "TAMPERED"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    FORBIDDEN_ROLE = "FORBIDDEN_ROLE"
    FORBIDDEN_STATUS = "FORBIDDEN_STATUS"
    LAST_SUPER_ADMIN = "LAST_SUPER_ADMIN"
    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    BAD_FORMAT = "BAD_FORMAT"
    AUDIT_FAILED = "AUDIT_FAILED"
    STORE_FAILED = "STORE_FAILED"
    TIMEOUT = "TIMEOUT"


HTTP_STATUS: Dict[ErrorKind, int] = {
    ErrorKind.MISSING_TOKEN: 401,
    ErrorKind.EXPIRED: 401,
    ErrorKind.MALFORMED: 401,
    ErrorKind.BAD_SIGNATURE: 403,
    ErrorKind.TAMPERED: 403,
    ErrorKind.INVALID_CREDENTIALS: 401,
    ErrorKind.FORBIDDEN_ROLE: 403,
    ErrorKind.FORBIDDEN_STATUS: 403,
    ErrorKind.LAST_SUPER_ADMIN: 403,
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.BAD_FORMAT: 400,
    ErrorKind.AUDIT_FAILED: 500,
    ErrorKind.STORE_FAILED: 500,
    ErrorKind.TIMEOUT: 504,
}

DEFAULT_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.MISSING_TOKEN: "Access token required",
    ErrorKind.EXPIRED: "Token has expired",
    ErrorKind.MALFORMED: "Malformed token",
    ErrorKind.BAD_SIGNATURE: "Token signature verification failed",
    ErrorKind.TAMPERED: "Token integrity check failed",
    ErrorKind.INVALID_CREDENTIALS: "Invalid email or password",
    ErrorKind.FORBIDDEN_ROLE: "Insufficient permissions",
    ErrorKind.FORBIDDEN_STATUS: "Account is not active",
    ErrorKind.LAST_SUPER_ADMIN: "Operation would leave no active super admin",
    ErrorKind.VALIDATION: "Validation failed",
    ErrorKind.NOT_FOUND: "Resource not found",
    ErrorKind.CONFLICT: "Resource was modified concurrently",
    ErrorKind.BAD_FORMAT: "Unsupported format",
    ErrorKind.AUDIT_FAILED: "Audit logging failed; operation was reverted",
    ErrorKind.STORE_FAILED: "Storage operation failed",
    ErrorKind.TIMEOUT: "Request deadline exceeded",
}

AUTH_KINDS = frozenset({
    ErrorKind.MISSING_TOKEN,
    ErrorKind.EXPIRED,
    ErrorKind.MALFORMED,
    ErrorKind.BAD_SIGNATURE,
    ErrorKind.TAMPERED,
})


class AdminError(Exception):
    """
    Failure carrying a stable error kind.

    Args:
        kind: The error kind
        message: Short client-safe message
        field: Offending input field for VALIDATION errors
        rule: Violated rule for VALIDATION errors
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: Optional[str] = None,
        field: Optional[str] = None,
        rule: Optional[str] = None
    ):
        self.kind = kind
        self.message = message or DEFAULT_MESSAGES[kind]
        self.field = field
        self.rule = rule
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return HTTP_STATUS[self.kind]

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.STORE_FAILED

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": False,
            "message": self.message,
            "error": self.kind.value,
            "code": self.kind.value,
        }
        if self.field is not None:
            body["field"] = self.field
        if self.rule is not None:
            body["rule"] = self.rule
        return body


def validation_error(field: str, rule: str, message: Optional[str] = None) -> AdminError:
    """Build a VALIDATION error for a field/rule pair."""
    return AdminError(
        ErrorKind.VALIDATION,
        message or f"Invalid value for '{field}' ({rule})",
        field=field,
        rule=rule
    )


def not_found(entity: str) -> AdminError:
    return AdminError(ErrorKind.NOT_FOUND, f"{entity} not found")
