"""Authenticated principal resolution.

Sessions are issued elsewhere; this module only validates the bearer JWT
and exposes the caller as a :class:`Principal` with a role and, for
academy staff, the academy they belong to.
"""

import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from academy_billing.core.config import settings
from academy_billing.core.messages import get_message

ALGORITHM = "HS256"

security = HTTPBearer(auto_error=False)


class Role(str, Enum):
    """Caller roles known to the billing engine."""
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    MANAGER = "manager"
    TEACHER = "teacher"


ADMIN_ROLES = (Role.SUPER_ADMIN, Role.ADMIN)


class Principal(BaseModel):
    """The authenticated caller."""

    user_id: uuid.UUID
    role: Role
    academy_id: Optional[uuid.UUID] = None

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


def create_access_token(
    user_id: uuid.UUID,
    role: Role,
    academy_id: Optional[uuid.UUID] = None,
    expires_delta: timedelta = timedelta(minutes=15),
) -> str:
    """Create a signed access token (used by tests and internal tooling)."""
    now = datetime.utcnow()
    payload = {
        "sub": str(user_id),
        "role": role.value,
        "academy_id": str(academy_id) if academy_id else None,
        "iat": now,
        "exp": now + expires_delta,
        "type": "access",
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=ALGORITHM)


def decode_principal(token: str) -> Optional[Principal]:
    """Decode a bearer token into a principal.

    Returns:
        Principal if the token is a valid, unexpired access token, None otherwise
    """
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None

    if payload.get("type") != "access":
        return None

    try:
        academy_id = payload.get("academy_id")
        return Principal(
            user_id=uuid.UUID(payload["sub"]),
            role=Role(payload["role"]),
            academy_id=uuid.UUID(academy_id) if academy_id else None,
        )
    except (KeyError, ValueError):
        return None


async def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Principal:
    """FastAPI dependency resolving the caller from the Authorization header."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=get_message("auth.missing_token"),
            headers={"WWW-Authenticate": "Bearer"},
        )

    principal = decode_principal(credentials.credentials)
    if principal is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=get_message("auth.invalid_token"),
            headers={"WWW-Authenticate": "Bearer"},
        )
    return principal


async def get_optional_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[Principal]:
    """Like :func:`get_current_principal`, but anonymous callers get None."""
    if credentials is None:
        return None
    return decode_principal(credentials.credentials)


def require_roles(*roles: Role) -> Callable:
    """Build a dependency that admits only the given roles."""

    async def dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=get_message("auth.forbidden"),
            )
        return principal

    return dependency


def resolve_academy_id(principal: Principal, academy_id: Optional[uuid.UUID] = None) -> uuid.UUID:
    """Pick the academy a request acts on.

    Staff always act on their own academy; admins must name one explicitly.
    """
    if principal.is_admin:
        if academy_id is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=get_message("auth.academy_required"),
            )
        return academy_id

    if principal.academy_id is None or (academy_id and academy_id != principal.academy_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=get_message("auth.forbidden"),
        )
    return principal.academy_id
