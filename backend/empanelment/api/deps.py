"""API dependencies for dependency injection."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Annotated

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from empanelment.audit.alerts import AlertRulesService, get_alert_rules_service
from empanelment.core.errors import ForbiddenError, UnauthorizedError
from empanelment.core.security import ADMIN_ROLES, decode_token
from empanelment.db.session import get_db, get_session_factory

# Security audit logger - separate from general logging for SIEM integration
auth_logger = logging.getLogger("security.auth")

security = HTTPBearer()


@dataclass
class TokenUser:
    """Caller identity taken from the access token claims.

    Users live in the identity module; the audit surface trusts the signed
    claims and does not look them up.
    """

    id: str
    role: str | None
    session_id: str | None = None


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> TokenUser:
    """Get the current authenticated user."""
    payload = decode_token(credentials.credentials)

    if payload is None or payload.get("type") != "access":
        raise UnauthorizedError("Could not validate credentials")

    user_id = payload.get("sub")
    if user_id is None:
        raise UnauthorizedError("Could not validate credentials")

    return TokenUser(id=str(user_id), role=payload.get("role"), session_id=payload.get("sid"))


def _log_auth_failure(
    event_type: str,
    user: TokenUser,
    resource: str,
    action: str,
    request: Request | None = None,
    extra: dict | None = None,
) -> None:
    """
    Log authorization failure for security audit.

    These logs should be:
    - Shipped to SIEM for monitoring
    - Retained per compliance requirements
    - Alertable for anomaly detection
    """
    log_data = {
        "event": "authorization_failure",
        "event_type": event_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "user_id": user.id,
        "user_role": user.role,
        "resource": resource,
        "action": action,
    }

    if request:
        log_data["ip_address"] = request.client.host if request.client else None
        log_data["user_agent"] = request.headers.get("user-agent")
        log_data["path"] = request.url.path
        log_data["method"] = request.method

    if extra:
        log_data.update(extra)

    auth_logger.warning(
        f"AUTH_FAILURE: {event_type} - user={user.id} resource={resource}:{action}",
        extra={"security_event": log_data},
    )


def require_role(*roles: str):
    """
    Dependency factory for role checking.

    Logs all authorization failures for security audit.

    Usage:
        @router.get("/verify")
        async def verify(
            current_user: Annotated[TokenUser, Depends(require_role("ADMIN"))],
        ):
            ...
    """
    allowed = frozenset(roles)

    async def role_checker(
        request: Request,
        current_user: Annotated[TokenUser, Depends(get_current_user)],
    ) -> TokenUser:
        if current_user.role not in allowed:
            _log_auth_failure(
                event_type="role_required",
                user=current_user,
                resource="role",
                action=",".join(sorted(allowed)),
                request=request,
            )
            raise ForbiddenError(f"Role required: one of {', '.join(sorted(allowed))}")
        return current_user

    return role_checker


def request_context(request: Request, user: TokenUser) -> dict[str, str | None]:
    """Actor and client fields for an audit record written on behalf of a request."""
    return {
        "user_id": user.id,
        "user_role": user.role,
        "session_id": user.session_id,
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


# Type aliases for commonly used dependencies
DBSession = Annotated[AsyncSession, Depends(get_db)]
SessionFactory = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]
AlertRules = Annotated[AlertRulesService, Depends(get_alert_rules_service)]
CurrentAdmin = Annotated[TokenUser, Depends(require_role(*ADMIN_ROLES))]
