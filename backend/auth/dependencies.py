"""
FastAPI dependencies for authentication and authorization.

This module provides dependency functions that can be used in route handlers to:
- Verify the identity token and resolve (or provision) the current user
- Enforce global role checks
"""

import logging
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from database import get_db
from models import User, UserRole, UserStatus
from auth.security import IdentityClaims, IdentityError, verify_identity_token

logger = logging.getLogger(__name__)

# HTTP Bearer token scheme for identity tokens
security = HTTPBearer(auto_error=False)


def resolve_identity(db: Session, claims: IdentityClaims, avatar: Optional[str] = None,
                     name: Optional[str] = None) -> User:
    """
    Return the local user for a verified identity, creating it on first sight.

    Args:
        db: Database session
        claims: Verified identity claims
        avatar: Optional avatar override for newly created users
        name: Optional display name override for newly created users

    Returns:
        The persisted User
    """
    user = db.query(User).filter(User.id == claims.uid).first()
    if user is not None:
        return user

    user = User(
        id=claims.uid,
        email=claims.email,
        name=name or claims.display_name,
        avatar=avatar or claims.picture,
        role=UserRole.user,
        status=UserStatus.active,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"Provisioned new user from identity token: {user.email} (ID: {user.id})")
    return user


def ensure_not_blocked(user: User) -> None:
    if user.status == UserStatus.blocked:
        logger.info(f"Blocked user attempted access: {user.id}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is blocked",
        )


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """
    Verify the bearer identity token and return the matching local user.

    Unknown identities are provisioned on first request. The verified claims
    are attached to request.state.identity.

    Raises:
        HTTPException: 401 if the token is missing, invalid or expired,
            403 if the user is blocked

    Example:
        @router.get("/api/protected")
        async def protected_route(user: User = Depends(get_current_user)):
            return {"user_id": user.id}
    """
    logger.debug("Attempting to authenticate user")

    if not credentials or not credentials.credentials:
        logger.info("No authentication credentials provided")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        claims = verify_identity_token(credentials.credentials)
    except IdentityError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = resolve_identity(db, claims)
    ensure_not_blocked(user)

    request.state.identity = claims
    logger.debug(f"User authenticated: {user.email}")
    return user


def require_role(required_role: str):
    """
    Create a dependency that requires a specific global user role.

    Example:
        @router.post("/api/notifications")
        async def dispatch(current_user: User = Depends(require_role("admin"))):
            pass
    """
    logger.debug(f"Creating role requirement dependency for role: {required_role}")

    async def role_checker(current_user: User = Depends(get_current_user)) -> User:
        """Check if the current user has the required role."""
        role_hierarchy = {UserRole.user.value: 0, UserRole.admin.value: 1}

        current_level = role_hierarchy.get(UserRole(current_user.role).value, 0)
        required_level = role_hierarchy.get(required_role, 0)

        if current_level < required_level:
            logger.info(
                f"Access denied: user {current_user.email} has role '{current_user.role}', "
                f"but '{required_role}' is required"
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required role: {required_role}",
            )

        return current_user

    return role_checker


async def get_current_admin(current_user: User = Depends(require_role("admin"))) -> User:
    """Convenience dependency for admin-only endpoints."""
    return current_user
