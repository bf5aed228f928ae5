"""Tests for the identity gate: token checks plus account re-checks."""

import pytest

from admin_plane.core.errors import AdminError, ErrorKind
from admin_plane.core.security import create_access_token
from admin_plane.models.user import Role
from admin_plane.services.identity import IdentityGate


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gate(settings, services, clock):
    return IdentityGate(settings, services.users, clock=clock)


def _suspend(store, user_id):
    store.update({"PK": f"USER#{user_id}", "SK": "PROFILE"}, set_values={"accountStatus": "suspended"})


class TestIdentityGate:
    """Tests for IdentityGate.verify."""

    def test_active_super_admin(self, gate, tokens):
        """Test the happy path."""
        principal = gate.verify(tokens["u-root"], Role.SUPER_ADMIN)
        assert principal.sub == "u-root"
        assert principal.role is Role.SUPER_ADMIN

    def test_role_requirement(self, gate, tokens):
        """Test that students and admins cannot pass a super admin gate."""
        for user_id in ("u-1", "u-admin"):
            with pytest.raises(AdminError) as exc_info:
                gate.verify(tokens[user_id], Role.SUPER_ADMIN)
            assert exc_info.value.kind is ErrorKind.FORBIDDEN_ROLE
        assert gate.verify(tokens["u-admin"], Role.ADMIN).role is Role.ADMIN

    def test_suspended_account_rejected(self, gate, tokens):
        """Test that a valid token for a suspended account is FORBIDDEN_STATUS."""
        with pytest.raises(AdminError) as exc_info:
            gate.verify(tokens["u-suspended"], Role.SUPER_ADMIN)
        assert exc_info.value.kind is ErrorKind.FORBIDDEN_STATUS

    def test_unknown_account_rejected(self, gate, settings):
        """Test that a token for a deleted account is rejected."""
        token = create_access_token(settings, "u-gone", Role.SUPER_ADMIN)
        with pytest.raises(AdminError) as exc_info:
            gate.verify(token, Role.SUPER_ADMIN)
        assert exc_info.value.kind is ErrorKind.FORBIDDEN_STATUS

    def test_stored_role_overrides_token_role(self, gate, settings):
        """Test that a token claiming more than the stored role is refused."""
        token = create_access_token(settings, "u-admin", Role.SUPER_ADMIN)
        with pytest.raises(AdminError) as exc_info:
            gate.verify(token, Role.SUPER_ADMIN)
        assert exc_info.value.kind is ErrorKind.FORBIDDEN_ROLE

        promoted = create_access_token(settings, "u-2", Role.STUDENT)
        assert gate.verify(promoted).role is Role.INSTRUCTOR

    def test_decision_cache_bounds_staleness(self, gate, tokens, store, clock):
        """Test that a suspension takes effect once the cached decision ages out."""
        gate.verify(tokens["u-admin"], Role.ADMIN)
        _suspend(store, "u-admin")

        clock.advance(10)
        assert gate.verify(tokens["u-admin"], Role.ADMIN).sub == "u-admin"

        clock.advance(gate.cache_ttl)
        with pytest.raises(AdminError) as exc_info:
            gate.verify(tokens["u-admin"], Role.ADMIN)
        assert exc_info.value.kind is ErrorKind.FORBIDDEN_STATUS

    def test_invalidate_applies_immediately(self, gate, tokens, store):
        """Test that invalidating a subject drops its cached decision."""
        gate.verify(tokens["u-admin"], Role.ADMIN)
        _suspend(store, "u-admin")
        gate.invalidate("u-admin")
        with pytest.raises(AdminError) as exc_info:
            gate.verify(tokens["u-admin"], Role.ADMIN)
        assert exc_info.value.kind is ErrorKind.FORBIDDEN_STATUS

    def test_session_idle_timeout(self, gate, tokens, settings, clock):
        """Test that a session unused for longer than SESSION_IDLE expires."""
        gate.verify(tokens["u-root"])
        clock.advance(settings.SESSION_IDLE + 1)
        with pytest.raises(AdminError) as exc_info:
            gate.verify(tokens["u-root"])
        assert exc_info.value.kind is ErrorKind.EXPIRED

    def test_rejection_happens_before_lookup(self, settings, tokens):
        """Test that a role failure never reaches the repository."""
        class Untouchable:
            def get(self, user_id):
                raise AssertionError("repository read after a role rejection")

        gate = IdentityGate(settings, Untouchable())
        with pytest.raises(AdminError) as exc_info:
            gate.verify(tokens["u-1"], Role.SUPER_ADMIN)
        assert exc_info.value.kind is ErrorKind.FORBIDDEN_ROLE
