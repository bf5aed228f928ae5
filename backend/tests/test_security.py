"""Tests for token creation and verification, bearer parsing and passwords."""

import base64
import json
import time

import pytest
from hypothesis import given, settings as hypothesis_settings
from hypothesis import strategies as st
from jose import jwt
from passlib.hash import bcrypt

from admin_plane.core.config import Settings
from admin_plane.core.errors import AdminError, ErrorKind
from admin_plane.core.security import (
    authorize,
    create_access_token,
    extract_bearer,
    get_password_hash,
    verify_password,
    verify_token,
)
from admin_plane.models.user import Role


SETTINGS = Settings(JWT_SECRET="unit-test-secret-0123456789")


def _segment(value) -> str:
    raw = json.dumps(value, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _replace_payload(token: str, claims) -> str:
    header, _, signature = token.split(".")
    return f"{header}.{_segment(claims)}.{signature}"


def _kind(token, now=None) -> ErrorKind:
    with pytest.raises(AdminError) as exc_info:
        verify_token(token, SETTINGS, now=now)
    return exc_info.value.kind


class TestVerifyToken:
    """Tests for verify_token."""

    def test_valid_token_yields_principal(self):
        """Test that a freshly issued token verifies."""
        token = create_access_token(SETTINGS, "u-root", Role.SUPER_ADMIN, "root@upskillpro.com", "Root")
        principal = verify_token(token, SETTINGS)
        assert principal.sub == "u-root"
        assert principal.role is Role.SUPER_ADMIN
        assert principal.email == "root@upskillpro.com"
        assert principal.exp - principal.iat == SETTINGS.TOKEN_TTL

    def test_missing_token(self):
        """Test that an empty token is MISSING_TOKEN."""
        assert _kind(None) is ErrorKind.MISSING_TOKEN
        assert _kind("") is ErrorKind.MISSING_TOKEN

    @pytest.mark.parametrize("token", ["abc", "a.b", "a.b.c.d", "a.b.c d", "ey!.x.y"])
    def test_malformed_token(self, token):
        """Test that tokens without three url-safe segments are MALFORMED."""
        assert _kind(token) is ErrorKind.MALFORMED

    def test_undecodable_segments_are_malformed(self):
        """Test that segments that are not base64 JSON objects are MALFORMED."""
        assert _kind("bm90anNvbg.bm90anNvbg.c2ln") is ErrorKind.MALFORMED

    def test_expired(self):
        """Test that a token past its exp is EXPIRED."""
        token = create_access_token(SETTINGS, "u-1", Role.STUDENT, expires_in=10, now=int(time.time()) - 100)
        assert _kind(token) is ErrorKind.EXPIRED

    def test_expiry_boundary(self):
        """Test that now == exp is already expired."""
        token = create_access_token(SETTINGS, "u-1", Role.STUDENT, expires_in=60, now=1_000_000)
        assert verify_token(token, SETTINGS, now=1_000_059).sub == "u-1"
        assert _kind(token, now=1_000_060) is ErrorKind.EXPIRED

    def test_wrong_secret_is_bad_signature(self):
        """Test that a token signed with another secret is BAD_SIGNATURE."""
        other = Settings(JWT_SECRET="another-secret-9876543210")
        token = create_access_token(other, "u-root", Role.SUPER_ADMIN)
        assert _kind(token) is ErrorKind.BAD_SIGNATURE

    def test_algorithm_none_is_tampered(self):
        """Test that swapping the header algorithm is TAMPERED."""
        token = create_access_token(SETTINGS, "u-1", Role.STUDENT)
        _, payload, signature = token.split(".")
        forged = f"{_segment({'alg': 'none', 'typ': 'JWT'})}.{payload}.{signature}"
        assert _kind(forged) is ErrorKind.TAMPERED

    def test_role_escalation_rejected(self):
        """Test that rewriting the role claim does not verify."""
        token = create_access_token(SETTINGS, "u-1", Role.STUDENT, now=int(time.time()))
        claims = verify_token(token, SETTINGS).to_dict()
        forged = _replace_payload(token, {
            "sub": "u-1", "role": "super_admin", "email": "", "name": "",
            "iat": claims["iat"], "exp": claims["exp"],
        })
        assert _kind(forged) in (ErrorKind.TAMPERED, ErrorKind.BAD_SIGNATURE)

    @given(claims=st.dictionaries(
        st.text(min_size=1, max_size=8),
        st.one_of(st.integers(), st.text(max_size=12), st.booleans()),
        min_size=1,
        max_size=6,
    ))
    @hypothesis_settings(max_examples=100)
    def test_any_replaced_payload_rejected(self, claims):
        """Test that every replaced payload segment is rejected as tampering."""
        token = create_access_token(SETTINGS, "u-1", Role.STUDENT, now=2_000_000_000 - 3600)
        forged = _replace_payload(token, claims)
        if forged == token:
            return
        assert _kind(forged, now=2_000_000_000 - 10) in (ErrorKind.TAMPERED, ErrorKind.BAD_SIGNATURE)

    def test_missing_claims_are_malformed(self):
        """Test that a signed token without role/sub is MALFORMED."""
        token = jwt.encode({"exp": int(time.time()) + 60}, SETTINGS.JWT_SECRET, algorithm="HS256")
        assert _kind(token) is ErrorKind.MALFORMED


class TestBearerAndRoles:
    """Tests for extract_bearer and authorize."""

    def test_extract_bearer(self):
        """Test header parsing."""
        assert extract_bearer("Bearer abc.def.ghi") == "abc.def.ghi"
        assert extract_bearer("bearer   abc.def.ghi ") == "abc.def.ghi"

    @pytest.mark.parametrize("header,kind", [
        (None, ErrorKind.MISSING_TOKEN),
        ("   ", ErrorKind.MISSING_TOKEN),
        ("Basic dXNlcjpwYXNz", ErrorKind.MALFORMED),
        ("Bearer", ErrorKind.MALFORMED),
    ])
    def test_extract_bearer_rejects(self, header, kind):
        """Test missing and non-Bearer headers."""
        with pytest.raises(AdminError) as exc_info:
            extract_bearer(header)
        assert exc_info.value.kind is kind

    def test_role_ordering_uses_rank(self):
        """Test the explicit role hierarchy."""
        assert Role.SUPER_ADMIN.at_least(Role.ADMIN)
        assert Role.ADMIN.at_least(Role.ADMIN)
        assert not Role.INSTRUCTOR.at_least(Role.ADMIN)
        # "student" > "admin" as strings, but not as roles
        assert not Role.STUDENT.at_least(Role.ADMIN)

    def test_authorize(self):
        """Test that a lower role is FORBIDDEN_ROLE."""
        token = create_access_token(SETTINGS, "u-1", Role.STUDENT)
        principal = verify_token(token, SETTINGS)
        with pytest.raises(AdminError) as exc_info:
            authorize(principal, Role.SUPER_ADMIN)
        assert exc_info.value.kind is ErrorKind.FORBIDDEN_ROLE
        assert exc_info.value.status_code == 403


class TestPasswords:
    """Tests for password hashing."""

    def test_hash_and_verify(self):
        """Test the default scheme round trip."""
        hashed = get_password_hash("S3cret!pass")
        assert hashed.startswith("$pbkdf2-sha256$")
        assert verify_password("S3cret!pass", hashed)
        assert not verify_password("wrong", hashed)

    def test_bcrypt_hashes_still_verify(self):
        """Test that registration-plane bcrypt hashes are accepted."""
        hashed = bcrypt.hash("S3cret!pass")
        assert verify_password("S3cret!pass", hashed)

    def test_unknown_hash_format(self):
        """Test that an unrecognised hash never verifies."""
        assert not verify_password("anything", "not-a-hash")
        assert not verify_password("anything", "")
