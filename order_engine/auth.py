"""
Authentication and authorization utilities for the Orders service.

Validates staff JWT tokens issued by the storefront's admin login.
"""
import logging
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel

from . import config

logger = logging.getLogger(__name__)

# Security scheme for JWT bearer tokens
security = HTTPBearer()


class CurrentUser(BaseModel):
    """Current authenticated staff member."""
    id: int
    email: str
    role: str

    @property
    def actor(self) -> str:
        """Identifier recorded on order timeline events."""
        return f"staff:{self.email}"


def decode_token(token: str) -> CurrentUser:
    """
    Decode and validate a bearer token.

    Raises:
        JWTError: If the token is invalid or expired
        ValueError: If required claims are missing or malformed
    """
    payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    user_id_str = payload.get("sub")
    email = payload.get("email")
    role = payload.get("role")

    if user_id_str is None or email is None or role is None:
        raise ValueError("Token is missing required claims")
    return CurrentUser(id=int(user_id_str), email=email, role=role)


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> CurrentUser:
    """
    FastAPI dependency to get the current authenticated user from JWT token.

    Args:
        credentials: HTTP Authorization credentials (injected)

    Returns:
        Current authenticated user information

    Raises:
        HTTPException: 401 if token is invalid
    """
    try:
        return decode_token(credentials.credentials)
    except (JWTError, ValueError) as e:
        logger.error(f"JWT validation error: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


def require_admin(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """
    FastAPI dependency to require admin role.

    Raises:
        HTTPException: 403 if user is not an admin
    """
    if current_user.role != "admin":
        logger.warning(f"Non-admin user {current_user.id} attempted an admin operation")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required"
        )
    return current_user
