"""
Password hashing and JWT handling.

- Passwords are hashed with Argon2id through passlib
- Access and refresh tokens are signed JWTs (python-jose); the refresh token
  travels in an httpOnly cookie
"""

import logging
import os
import secrets
from datetime import timedelta
from typing import Any, Dict, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from teamtrack.time_utils import utc_now

logger = logging.getLogger(__name__)

ENVIRONMENT = os.environ.get("ENVIRONMENT", "development")


def is_production_like() -> bool:
    """True when ENVIRONMENT is production or staging."""
    return ENVIRONMENT.lower() in ("production", "staging")


def _int_env(name: str, default: int, low: int, high: int) -> int:
    raw = os.environ.get(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"⚠️  Invalid {name}={raw!r} in environment. Using default of {default}.")
        return default
    if value < low or value > high:
        logger.warning(f"⚠️  {name}={value} is outside safe range ({low}-{high}). Using default of {default}.")
        return default
    return value


pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")

SECRET_KEY = os.environ.get("JWT_SECRET_KEY")
if not SECRET_KEY:
    if is_production_like():
        raise ValueError("JWT_SECRET_KEY environment variable is required in production and staging.")
    SECRET_KEY = "dev-insecure-key-" + secrets.token_urlsafe(32)
    logger.warning("⚠️  JWT_SECRET_KEY not set! Using a temporary development key.")

SUPPORTED_ALGORITHMS = ("HS256", "HS384", "HS512")
ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")
if ALGORITHM not in SUPPORTED_ALGORITHMS:
    logger.warning(f"⚠️  Unsupported JWT_ALGORITHM={ALGORITHM}. Using HS256.")
    ALGORITHM = "HS256"

ACCESS_TOKEN_EXPIRE_MINUTES = _int_env("ACCESS_TOKEN_EXPIRE_MINUTES", 15, 1, 1440)
REFRESH_TOKEN_EXPIRE_DAYS = _int_env("REFRESH_TOKEN_EXPIRE_DAYS", 7, 1, 90)

REFRESH_COOKIE_NAME = "refresh_token"
COOKIE_SECURE = is_production_like()
COOKIE_SAMESITE = "strict" if is_production_like() else "lax"


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    is_valid = pwd_context.verify(plain_password, hashed_password)
    logger.debug(f"Password verification result: {is_valid}")
    return is_valid


def _encode(data: Dict[str, Any], token_type: str, lifetime: timedelta) -> str:
    payload = data.copy()
    payload.update({"exp": utc_now() + lifetime, "type": token_type})
    if token_type == "refresh":
        payload["jti"] = secrets.token_urlsafe(16)
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a short-lived access token.

    Example:
        >>> token = create_access_token({"sub": "1"})
    """
    return _encode(data, "access", expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))


def create_refresh_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    return _encode(data, "refresh", expires_delta or timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS))


def verify_token(token: str, expected_type: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """
    Decode a JWT.

    Returns:
        The payload, or None if the signature, expiry or type is wrong
    """
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as e:
        logger.info(f"JWT verification failed: {str(e)}")
        return None

    if expected_type is not None and payload.get("type") != expected_type:
        logger.info(f"Invalid token type: {payload.get('type')}, expected {expected_type}")
        return None
    return payload
