"""Authenticated identity for tutor endpoints.

Tokens are issued by the surrounding platform; this module only verifies
them and exposes the caller's identity and admin flag.
"""

import logging
from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from ..core.errors import AuthorizationError
from ..core.security import verify_access_token

logger = logging.getLogger(__name__)

# OAuth2 scheme for JWT bearer tokens
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/v1/auth/token")


@dataclass(frozen=True)
class CurrentUser:
    id: int
    is_admin: bool = False


async def get_current_user(token: str = Depends(oauth2_scheme)) -> CurrentUser:
    """Get the current authenticated user from the JWT token."""
    payload = verify_access_token(token)
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = payload.get("user_id")
    try:
        user_id = int(user_id)
    except (TypeError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        ) from None

    return CurrentUser(id=user_id, is_admin=bool(payload.get("is_admin", False)))


async def require_admin(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """Reject non-admin callers before any data access."""
    if not current_user.is_admin:
        logger.warning(f"User {current_user.id} denied access to admin tutor endpoint")
        raise AuthorizationError("Admin access required")
    return current_user
