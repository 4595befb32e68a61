"""
Authentication and authorization utilities for the Fulfillment service.

Validates JWT tokens issued by the external identity provider.
"""
import logging
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from pydantic import BaseModel

from .config import ALGORITHM, SECRET_KEY

logger = logging.getLogger(__name__)

ROLES = ("customer", "driver", "staff", "admin")

# Security scheme for JWT bearer tokens
security = HTTPBearer()


class CurrentUser(BaseModel):
    """
    Current authenticated principal.

    Attributes:
        uid (str): External identity (the token's ``sub`` claim)
        role (str): customer, driver, staff or admin
        token (str): Raw bearer token, forwarded to collaborator services
    """
    uid: str
    role: str
    token: str

    @property
    def is_staff(self) -> bool:
        return self.role in ("staff", "admin")


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
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        token = credentials.credentials
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        uid = payload.get("sub")
        role = payload.get("role")
    except JWTError as e:
        logger.error(f"JWT validation error: {e}")
        raise credentials_exception

    if not uid or role not in ROLES:
        logger.warning(f"Rejected token with sub={uid!r} role={role!r}")
        raise credentials_exception
    return CurrentUser(uid=str(uid), role=role, token=token)


def require_staff(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """Require kitchen staff or admin privileges."""
    if not current_user.is_staff:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Staff privileges required"
        )
    return current_user


def require_admin(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """
    FastAPI dependency to require admin role.

    Raises:
        HTTPException: 403 if user is not an admin
    """
    if current_user.role != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required"
        )
    return current_user


def require_driver(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if current_user.role != "driver":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Driver privileges required"
        )
    return current_user


def require_customer(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if current_user.role != "customer":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Customer account required"
        )
    return current_user
