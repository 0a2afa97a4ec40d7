"""
Authentication API endpoints: registration, login, token refresh, logout and
the current-user lookup.
"""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session

from teamtrack.auth.dependencies import get_current_user
from teamtrack.auth.security import (
    COOKIE_SAMESITE,
    COOKIE_SECURE,
    REFRESH_COOKIE_NAME,
    REFRESH_TOKEN_EXPIRE_DAYS,
    create_access_token,
    create_refresh_token,
    hash_password,
    verify_password,
    verify_token,
)
from teamtrack.database import get_db
from teamtrack.models import ParticipantRole, User, UserVerifyStatus
from teamtrack.time_utils import utc_now

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=100)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class UserResponse(BaseModel):
    id: int
    username: str
    email: str
    avatar_url: str
    verify: UserVerifyStatus
    role: ParticipantRole
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


def _issue_tokens(user: User, response: Response) -> TokenResponse:
    access_token = create_access_token({"sub": str(user.id), "email": user.email})
    refresh_token = create_refresh_token({"sub": str(user.id)})
    response.set_cookie(
        key=REFRESH_COOKIE_NAME,
        value=refresh_token,
        path="/",
        httponly=True,
        secure=COOKIE_SECURE,
        samesite=COOKIE_SAMESITE,
        max_age=REFRESH_TOKEN_EXPIRE_DAYS * 24 * 60 * 60,
    )
    return TokenResponse(access_token=access_token)


@router.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
def register(request: RegisterRequest, db: Session = Depends(get_db)):
    """
    Register a new user account.

    Raises:
        HTTPException: 400 if the email or username is already registered
    """
    logger.info(f"Registration attempt for email: {request.email}")

    if db.query(User).filter(User.email == request.email).first():
        logger.info(f"Registration failed: email already exists: {request.email}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Email already registered")

    if db.query(User).filter(User.username == request.username).first():
        logger.info(f"Registration failed: username already exists: {request.username}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Username already taken")

    user = User(
        username=request.username,
        email=request.email,
        password_hash=hash_password(request.password),
        avatar_url="",
        verify=UserVerifyStatus.unverified,
        role=ParticipantRole.staff,
        is_active=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)

    logger.info(f"User registered successfully: {user.email} (ID: {user.id})")
    return user


@router.post("/login", response_model=TokenResponse)
def login(request: LoginRequest, response: Response, db: Session = Depends(get_db)):
    """
    Login with email and password.

    Returns an access token and sets the refresh token as an httpOnly cookie.

    Raises:
        HTTPException: 401 for bad credentials, 403 for an inactive account
    """
    logger.info(f"Login attempt for email: {request.email}")

    user = db.query(User).filter(User.email == request.email).first()
    if user is None or not user.password_hash or not verify_password(request.password, user.password_hash):
        logger.info(f"Login failed for email: {request.email}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")

    if not user.is_active:
        logger.info(f"Login failed: inactive user: {request.email}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is inactive")

    user.last_login_at = utc_now()
    db.commit()

    logger.info(f"User logged in: {user.email} (ID: {user.id})")
    return _issue_tokens(user, response)


@router.post("/refresh", response_model=TokenResponse)
def refresh(request: Request, response: Response, db: Session = Depends(get_db)):
    """
    Exchange the refresh-token cookie for a new access token.

    The cookie is rotated on every call.

    Raises:
        HTTPException: 401 if the cookie is missing or invalid or the user is gone
    """
    token = request.cookies.get(REFRESH_COOKIE_NAME)
    if not token:
        logger.info("Token refresh failed: no refresh token cookie")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Refresh token not found")

    payload = verify_token(token, expected_type="refresh")
    if payload is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid refresh token")

    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        logger.info(f"Invalid sub format in refresh token: {payload.get('sub')}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token format")

    user = db.query(User).filter(User.id == user_id).first()
    if user is None or not user.is_active:
        logger.info(f"Token refresh failed: user not found or inactive (ID: {user_id})")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found or inactive")

    logger.debug(f"Token refreshed for user {user.id}")
    return _issue_tokens(user, response)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout(response: Response):
    """Clear the refresh-token cookie. Works without a valid access token."""
    response.delete_cookie(
        key=REFRESH_COOKIE_NAME,
        path="/",
        secure=COOKIE_SECURE,
        samesite=COOKIE_SAMESITE,
    )
    response.status_code = status.HTTP_204_NO_CONTENT
    return response


@router.get("/me", response_model=UserResponse)
def get_current_user_info(current_user: User = Depends(get_current_user)):
    logger.debug(f"Fetching user info for: {current_user.email}")
    return current_user
