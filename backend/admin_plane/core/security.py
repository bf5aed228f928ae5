"""
Security utilities for the admin control plane.

Handles password hashing, JWT creation, bearer token verification and the
role gate used by every admin route.
"""

import base64
import binascii
import json
import re
import time
from dataclasses import dataclass, replace
from typing import Optional, Dict, Any

from jose import jws, jwt
from jose.exceptions import JWSError, JWSSignatureError
from passlib.context import CryptContext

from .config import Settings
from .errors import AdminError, ErrorKind
from admin_plane.models.user import Role


# Password hashing context; bcrypt hashes from the registration plane still verify
pwd_context = CryptContext(schemes=["pbkdf2_sha256", "bcrypt"], deprecated="auto")

_SEGMENT = r"[A-Za-z0-9_-]+"
_TOKEN_PATTERN = re.compile(rf"^{_SEGMENT}\.{_SEGMENT}\.{_SEGMENT}$")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a plain password against a hashed password.

    Args:
        plain_password: The plain text password to verify
        hashed_password: The stored hash

    Returns:
        bool: True if password matches, False otherwise
    """
    if not hashed_password:
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        # Unrecognised hash format
        return False


def get_password_hash(password: str) -> str:
    """
    Hash a password with the context's default scheme.
    """
    return pwd_context.hash(password)


@dataclass(frozen=True)
class Principal:
    """Verified identity carried by a bearer token."""
    sub: str
    role: Role
    email: str
    name: str
    iat: int
    exp: int

    def with_role(self, role: Role) -> "Principal":
        return replace(self, role=role)

    def expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) >= self.exp

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.sub,
            "role": self.role.value,
            "email": self.email,
            "name": self.name,
            "iat": self.iat,
            "exp": self.exp,
        }


def create_access_token(
    settings: Settings,
    subject: str,
    role: Role,
    email: str = "",
    name: str = "",
    expires_in: Optional[int] = None,
    now: Optional[int] = None
) -> str:
    """
    Create a signed access token.

    Args:
        settings: Application settings (secret, algorithm, default TTL)
        subject: The user id
        role: The user's role at issue time
        email: The user's email
        name: The user's display name
        expires_in: Optional lifetime in seconds
        now: Optional issue time (epoch seconds)

    Returns:
        str: The encoded JWT token
    """
    issued = int(now if now is not None else time.time())
    claims = {
        "sub": subject,
        "role": role.value,
        "email": email,
        "name": name,
        "iat": issued,
        "exp": issued + (expires_in if expires_in is not None else settings.TOKEN_TTL),
    }
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def _b64decode_json(segment: str) -> Dict[str, Any]:
    padded = segment + "=" * (-len(segment) % 4)
    value = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    if not isinstance(value, dict):
        raise ValueError("segment is not a JSON object")
    return value


def extract_bearer(authorization: Optional[str]) -> str:
    """
    Pull the token out of an Authorization header.

    Raises:
        AdminError: MISSING_TOKEN when absent, MALFORMED when not a Bearer header
    """
    if not authorization or not authorization.strip():
        raise AdminError(ErrorKind.MISSING_TOKEN)
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AdminError(ErrorKind.MALFORMED, "Authorization header must be 'Bearer <token>'")
    return token.strip()


def verify_token(token: Optional[str], settings: Settings, now: Optional[float] = None) -> Principal:
    """
    Verify a bearer token and return its principal.

    Raises:
        AdminError: MISSING_TOKEN, MALFORMED, TAMPERED, BAD_SIGNATURE or EXPIRED
    """
    if not token:
        raise AdminError(ErrorKind.MISSING_TOKEN)
    if not _TOKEN_PATTERN.match(token):
        raise AdminError(ErrorKind.MALFORMED)

    header_segment, payload_segment, _ = token.split(".")
    try:
        header = _b64decode_json(header_segment)
        decoded_claims = _b64decode_json(payload_segment)
    except (ValueError, binascii.Error, UnicodeError):
        raise AdminError(ErrorKind.MALFORMED)

    if header.get("alg") != settings.JWT_ALGORITHM:
        # Algorithm substitution (e.g. "none") is treated as tampering
        raise AdminError(ErrorKind.TAMPERED)

    try:
        signed_payload = jws.verify(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWSSignatureError:
        raise AdminError(ErrorKind.BAD_SIGNATURE)
    except JWSError:
        raise AdminError(ErrorKind.BAD_SIGNATURE)

    try:
        signed_claims = json.loads(signed_payload)
    except ValueError:
        raise AdminError(ErrorKind.TAMPERED)
    if signed_claims != decoded_claims:
        raise AdminError(ErrorKind.TAMPERED)

    try:
        role = Role(signed_claims["role"])
        exp = int(signed_claims["exp"])
        iat = int(signed_claims.get("iat", 0))
        sub = str(signed_claims["sub"])
    except (KeyError, TypeError, ValueError):
        raise AdminError(ErrorKind.MALFORMED, "Token is missing required claims")

    current = now if now is not None else time.time()
    if current >= exp:
        raise AdminError(ErrorKind.EXPIRED)

    return Principal(
        sub=sub,
        role=role,
        email=str(signed_claims.get("email", "")),
        name=str(signed_claims.get("name", "")),
        iat=iat,
        exp=exp,
    )


def authorize(principal: Principal, requirement: Role) -> Principal:
    """
    Check that the principal holds at least `requirement`.

    Raises:
        AdminError: FORBIDDEN_ROLE otherwise
    """
    if not principal.role.at_least(requirement):
        raise AdminError(
            ErrorKind.FORBIDDEN_ROLE,
            f"{requirement.value} role required"
        )
    return principal
