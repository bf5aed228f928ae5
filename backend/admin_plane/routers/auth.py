"""
Authentication router for the admin control plane.

Handles login and provides the bearer-token dependencies every admin
route is gated with.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.security import APIKeyHeader

from admin_plane.core.errors import AdminError, ErrorKind
from admin_plane.core.security import (
    Principal,
    create_access_token,
    extract_bearer,
    verify_password,
)
from admin_plane.core.timeutils import utcnow
from admin_plane.models.admin import SecurityEventType
from admin_plane.models.user import AccountStatus, Role, User
from admin_plane.schemas.auth import Token, UserLogin
from admin_plane.services import CommandContext, Services


logger = logging.getLogger(__name__)

router = APIRouter()

# Bearer header scheme; absence and shape are reported by extract_bearer
bearer_scheme = APIKeyHeader(name="Authorization", auto_error=False)


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


# Dependencies
def get_services(request: Request) -> Services:
    return request.app.state.services


def get_current_principal(
    authorization: Optional[str] = Depends(bearer_scheme),
    services: Services = Depends(get_services)
) -> Principal:
    """
    Verify the bearer token and re-check the account behind it.
    """
    return services.identity.verify(extract_bearer(authorization))


def get_current_admin_user(
    authorization: Optional[str] = Depends(bearer_scheme),
    services: Services = Depends(get_services)
) -> Principal:
    """
    Verify that the caller holds at least the admin role.
    """
    return services.identity.verify(extract_bearer(authorization), Role.ADMIN)


def get_current_super_admin(
    authorization: Optional[str] = Depends(bearer_scheme),
    services: Services = Depends(get_services)
) -> Principal:
    """
    Verify that the caller is an active super admin.
    """
    return services.identity.verify(extract_bearer(authorization), Role.SUPER_ADMIN)


def command_context(
    request: Request,
    principal: Principal = Depends(get_current_super_admin)
) -> CommandContext:
    """
    Build the context a command runs under: issuer, origin and deadline.
    """
    return CommandContext(
        principal=principal,
        ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        deadline=getattr(request.state, "deadline", None),
    )


# Endpoints
@router.post("/login", response_model=Token)
def login(
    credentials: UserLogin,
    request: Request,
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """
    Exchange email and password for an access token.
    """
    ip = client_ip(request)
    now = utcnow()
    item = services.users.find_by_email(credentials.email)
    if item is None:
        services.monitor.ingest(
            SecurityEventType.LOGIN_FAIL,
            None,
            ip,
            {"reason": "unknown_email", "email": credentials.email.strip().lower()},
        )
        raise AdminError(ErrorKind.INVALID_CREDENTIALS)

    user = User.from_item(item)
    if user.is_locked(now):
        raise AdminError(
            ErrorKind.FORBIDDEN_STATUS,
            f"Account is locked until {user.lockedUntil}"
        )

    if not verify_password(credentials.password, item.get("password", "")):
        services.users.record_login(user.userId, success=False, now=now)
        services.monitor.ingest(
            SecurityEventType.LOGIN_FAIL, user.userId, ip, {"reason": "bad_password"}
        )
        raise AdminError(ErrorKind.INVALID_CREDENTIALS)

    if user.accountStatus is not AccountStatus.ACTIVE:
        raise AdminError(ErrorKind.FORBIDDEN_STATUS, f"Account is {user.accountStatus.value}")

    services.users.record_login(user.userId, success=True, now=now)
    services.monitor.ingest(SecurityEventType.LOGIN_SUCCESS, user.userId, ip)

    settings = services.settings
    access_token = create_access_token(
        settings,
        subject=user.userId,
        role=user.role,
        email=user.email,
        name=user.name,
    )
    logger.info(f"Login succeeded for {user.userId}")
    return {
        "access_token": access_token,
        "token_type": "bearer",
        "expires_in": settings.TOKEN_TTL,
        "user": user.to_view(),
    }


@router.get("/me")
def get_current_user_info(
    principal: Principal = Depends(get_current_principal)
) -> Dict[str, Any]:
    """
    Get the verified principal behind the bearer token.
    """
    return {"success": True, "data": principal.to_dict()}
