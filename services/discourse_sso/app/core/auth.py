"""
JWT bearer tokens for service-to-service calls to the Connector API.
"""

from datetime import UTC, datetime, timedelta
from typing import Any

from jose import JWTError, jwt

from .config import Settings
from .logging import get_logger

logger = get_logger(__name__)


def create_access_token(
    settings: Settings, data: dict[str, Any], expires_delta: timedelta | None = None
) -> str:
    """
    Create a JWT access token.

    Args:
        settings: Provides the signing key and algorithm
        data: Payload to encode (should include 'sub' naming the calling service)
        expires_delta: Optional custom expiration time, defaults to settings value

    Returns:
        Encoded JWT token string
    """
    to_encode = data.copy()
    expire = datetime.now(UTC) + (
        expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes)
    )
    to_encode.update({"exp": expire, "iat": datetime.now(UTC)})

    encoded_jwt = jwt.encode(
        to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm
    )
    logger.info("auth.token_created", sub=data.get("sub"), expires_at=expire.isoformat())
    return encoded_jwt


def verify_token(settings: Settings, token: str) -> dict[str, Any]:
    """
    Decode and verify a JWT token.

    Raises:
        JWTError: If token is invalid, expired, or has no subject
    """
    try:
        payload = jwt.decode(
            token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm]
        )
    except JWTError as e:
        logger.warning("auth.token_decode_failed", error=str(e))
        raise
    if not payload.get("sub"):
        raise JWTError("Token has no subject")
    return payload
