"""
FastAPI dependencies for authentication.

This module turns the bearer token of a request into a local User:
- Verify the token through the claims provider (auth.security)
- Resolve the email for the claims
- Find or create the matching user
"""

import logging
from typing import Optional

from fastapi import Depends, Header
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from database import get_db
from models import User
from auth.security import verify_token
from errors import Unauthenticated
from services.users import resolve_email, resolve_user

logger = logging.getLogger(__name__)

# HTTP Bearer token scheme
security = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    x_user_email: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> User:
    """
    Extract the current user from the bearer token.

    Args:
        credentials: HTTP Bearer credentials
        x_user_email: Optional X-User-Email header (honoured only when enabled)
        db: Database session

    Returns:
        User object, created on the first request of a new subject

    Raises:
        Unauthenticated: 401 if the token is missing, invalid, or has no subject

    Example:
        @app.get("/api/protected")
        def protected_route(user: User = Depends(get_current_user)):
            return {"user_id": user.id}
    """
    logger.debug("Attempting to authenticate user")

    if not credentials or not credentials.credentials:
        logger.info("No authentication credentials provided")
        raise Unauthenticated("Not authenticated")

    claims = verify_token(credentials.credentials)
    if claims is None:
        raise Unauthenticated("Invalid or expired token")

    subject = claims.get("sub")
    if not subject:
        logger.info("Token payload missing 'sub' claim")
        raise Unauthenticated("Invalid token payload")

    email = resolve_email(claims, x_user_email)
    user = resolve_user(db, str(subject), email)

    logger.debug(f"User authenticated: {user.id}")
    return user
