"""
FastAPI dependency that resolves the authenticated user from a Bearer token.
"""

import logging
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from teamtrack.auth.security import verify_token
from teamtrack.database import get_db
from teamtrack.models import User

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """
    Return the user identified by the access token.

    Raises:
        HTTPException: 401 for a missing, invalid or expired token or an
            unknown user; 403 for an inactive account

    Example:
        @app.get("/api/protected")
        def protected_route(user: User = Depends(get_current_user)):
            return {"user_id": user.id}
    """
    if credentials is None or not credentials.credentials:
        logger.info("No authentication credentials provided")
        raise _unauthorized("Not authenticated")

    payload = verify_token(credentials.credentials, expected_type="access")
    if payload is None:
        raise _unauthorized("Invalid or expired token")

    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        logger.info(f"Invalid user_id format in token: {payload.get('sub')}")
        raise _unauthorized("Invalid token format")

    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        logger.info(f"User not found for id: {user_id}")
        raise _unauthorized("User not found")

    if not user.is_active:
        logger.info(f"Inactive user attempted access: {user_id}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User account is inactive")

    logger.debug(f"User authenticated via JWT: {user.email}")
    return user
