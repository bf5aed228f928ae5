"""
Identity gate.

Wraps token verification with the per-request account re-check: the
principal's current status and role are read from the user profile, with
decisions cached per subject for a bounded time.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from admin_plane.core.config import Settings
from admin_plane.core.errors import AdminError, ErrorKind
from admin_plane.core.security import Principal, authorize, verify_token
from admin_plane.models.user import AccountStatus, Role
from admin_plane.repositories.users import UserRepository


logger = logging.getLogger(__name__)


@dataclass
class Decision:
    status: Optional[AccountStatus]
    role: Optional[Role]
    checked_at: float


class IdentityGate:
    """
    verify(bearer) -> Principal, including status and role re-checks.

    Args:
        settings: Secret, algorithm, cache TTL and session idle limit
        users: User repository for status lookups
        clock: Monotonic clock (injectable for tests)
    """

    def __init__(
        self,
        settings: Settings,
        users: UserRepository,
        clock: Callable[[], float] = time.monotonic
    ):
        self.settings = settings
        self.users = users
        self.cache_ttl = settings.DECISION_CACHE_TTL
        self.session_idle = settings.SESSION_IDLE
        self._clock = clock
        self._decisions: Dict[str, Decision] = {}
        self._activity: Dict[Tuple[str, int], float] = {}
        self._lock = threading.Lock()

    def _decision(self, sub: str) -> Decision:
        now = self._clock()
        with self._lock:
            cached = self._decisions.get(sub)
        if cached and now - cached.checked_at < self.cache_ttl:
            return cached
        # Lookup happens outside the lock
        user = self.users.get(sub)
        decision = Decision(
            status=user.accountStatus if user else None,
            role=user.role if user else None,
            checked_at=now,
        )
        with self._lock:
            self._decisions[sub] = decision
        return decision

    def invalidate(self, sub: str) -> None:
        with self._lock:
            self._decisions.pop(sub, None)

    def _touch_session(self, principal: Principal) -> None:
        now = self._clock()
        key = (principal.sub, principal.iat)
        with self._lock:
            last = self._activity.get(key)
            if last is not None and now - last > self.session_idle:
                self._activity.pop(key, None)
                raise AdminError(ErrorKind.EXPIRED, "Session idle timeout exceeded")
            self._activity[key] = now
            if len(self._activity) > 10000:
                cutoff = now - self.session_idle
                for stale in [k for k, t in self._activity.items() if t < cutoff]:
                    self._activity.pop(stale, None)

    def check_account(self, principal: Principal) -> Principal:
        """
        Re-check the account behind a verified token.

        Returns the principal with its current stored role.

        Raises:
            AdminError: FORBIDDEN_STATUS when the account is missing or not active
        """
        decision = self._decision(principal.sub)
        if decision.status is None:
            raise AdminError(ErrorKind.FORBIDDEN_STATUS, "Account not found")
        if decision.status is not AccountStatus.ACTIVE:
            raise AdminError(ErrorKind.FORBIDDEN_STATUS, f"Account is {decision.status.value}")
        if decision.role is not None and decision.role is not principal.role:
            principal = principal.with_role(decision.role)
        return principal

    def verify(self, token: Optional[str], requirement: Optional[Role] = None, now: Optional[float] = None) -> Principal:
        """
        Full gate: signature, claims, expiry, session idle, account status, role.
        """
        principal = verify_token(token, self.settings, now=now)
        if requirement is not None:
            authorize(principal, requirement)
        self._touch_session(principal)
        principal = self.check_account(principal)
        if requirement is not None:
            # The stored role may have been lowered since the token was issued
            authorize(principal, requirement)
        return principal
