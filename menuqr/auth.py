"""
Authentication dependency for FastAPI endpoints.

Provides JWT verification via Supabase auth.get_user() and FastAPI
dependencies that protect endpoints and resolve the caller's tenant.
Tenant and role come from the user's ``app_metadata``, which only the
service role can write.
"""

from enum import Enum
from typing import Annotated

import structlog
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from menuqr.models.delivery import Actor, ActorKind

logger = structlog.get_logger(__name__)

_bearer_scheme = HTTPBearer()


class UserRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    DRIVER = "driver"
    CUSTOMER = "customer"
    SYSTEM = "system"


STAFF_ROLES = {UserRole.OWNER, UserRole.ADMIN, UserRole.SYSTEM}

_ROLE_ACTORS: dict[UserRole, ActorKind] = {
    UserRole.OWNER: ActorKind.RESTAURANT,
    UserRole.ADMIN: ActorKind.RESTAURANT,
    UserRole.DRIVER: ActorKind.DRIVER,
    UserRole.CUSTOMER: ActorKind.CUSTOMER,
    UserRole.SYSTEM: ActorKind.SYSTEM,
}


class AuthenticatedUser(BaseModel):
    """Represents a verified authenticated user."""

    id: str
    email: str | None = None
    tenant_id: str | None = None
    role: UserRole = UserRole.CUSTOMER


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> AuthenticatedUser:
    """
    FastAPI dependency that verifies a JWT Bearer token via Supabase.

    Raises:
        HTTPException 503: Supabase client not configured.
        HTTPException 401: Token is invalid, expired, or user not found.
    """
    supabase = getattr(request.app.state, "supabase", None)
    if supabase is None:
        raise HTTPException(status_code=503, detail="Authentication service unavailable")

    token = credentials.credentials
    try:
        response = await supabase.auth.get_user(token)
        user = response.user if response else None
        if user is None:
            raise HTTPException(status_code=401, detail="Invalid or expired token")
        metadata = getattr(user, "app_metadata", None) or {}
        role = metadata.get("role", UserRole.CUSTOMER.value)
        authenticated = AuthenticatedUser(
            id=str(user.id),
            email=user.email,
            tenant_id=metadata.get("tenant_id"),
            role=role if role in UserRole._value2member_map_ else UserRole.CUSTOMER,
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.warning("auth_token_verification_failed", error=str(e))
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    structlog.contextvars.bind_contextvars(user_id=authenticated.id, tenant_id=authenticated.tenant_id)
    return authenticated


CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]


async def get_tenant_user(user: CurrentUser) -> AuthenticatedUser:
    """Staff member of a tenant (owner, admin or system)."""
    if user.tenant_id is None:
        raise HTTPException(status_code=403, detail="User is not attached to a restaurant")
    if user.role not in STAFF_ROLES:
        raise HTTPException(status_code=403, detail="Insufficient role")
    return user


TenantUser = Annotated[AuthenticatedUser, Depends(get_tenant_user)]


def actor_for(user: AuthenticatedUser) -> Actor:
    """The audit and status-history actor for an authenticated caller."""
    return Actor(kind=_ROLE_ACTORS[user.role], id=user.id)
