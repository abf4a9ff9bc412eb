"""
Session API endpoints.

This module provides REST API endpoints for:
- Syncing a signed-in identity into the local user table
- Checking the current session
- Fetching the current user
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from database import get_db
import models
import schemas
from auth.security import IdentityError, verify_identity_token
from auth.dependencies import ensure_not_blocked, get_current_user, resolve_identity

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/user", tags=["session"])


@router.post("/sync", response_model=schemas.User)
async def sync_user(request: schemas.UserSyncRequest, db: Session = Depends(get_db)):
    """
    Get or create the local user for an identity token.

    Called by the client right after sign-in with the identity provider.
    Profile fields from the body are only used when the user is created.

    Raises:
        HTTPException: 401 if the token is invalid or expired, 403 if the user is blocked
    """
    logger.info("Identity sync attempt")

    try:
        claims = verify_identity_token(request.token)
    except IdentityError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = resolve_identity(db, claims, avatar=request.photo_url, name=request.display_name)
    ensure_not_blocked(user)

    logger.info(f"Identity synced for user {user.id}")
    return user


@router.get("/auth", response_model=schemas.SessionResponse)
async def check_session(request: Request, current_user: models.User = Depends(get_current_user)):
    """Confirm the bearer token is valid and return the resolved user."""
    claims = request.state.identity
    logger.debug(f"Session check for {claims.uid}")
    return {"authenticated": True, "user": current_user}


@router.get("/me", response_model=schemas.User)
async def get_me(current_user: models.User = Depends(get_current_user)):
    """Get current authenticated user information."""
    logger.debug(f"User info requested: {current_user.email}")
    return current_user
