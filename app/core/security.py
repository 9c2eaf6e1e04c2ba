"""Token utilities for identifying the calling principal"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
import uuid
from jose import JWTError, jwt
from app.core.config import settings


def create_access_token(
    principal_id: str,
    email: Optional[str] = None,
    expires_delta: Optional[timedelta] = None
) -> str:
    """
    Create a signed access token for a principal.

    Tokens are normally minted by the identity provider in front of the
    API; this helper exists for tooling and tests that share its secret.

    Args:
        principal_id: Authenticated user's identifier
        email: Optional e-mail claim
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token string
    """
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))

    to_encode = {
        "sub": principal_id,
        "exp": expire,
        "iat": now,
        "jti": str(uuid.uuid4())
    }
    if email:
        to_encode["email"] = email

    return jwt.encode(
        to_encode,
        settings.SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM
    )


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Decode and verify a JWT token (signature and expiry).

    Returns:
        Decoded token payload if valid, None otherwise
    """
    try:
        return jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM]
        )
    except JWTError:
        return None


def get_principal_id(token: str) -> Optional[str]:
    """
    Extract the principal id (``sub`` claim) from a valid token.

    Returns:
        Principal id, or None for invalid, expired or subject-less tokens
    """
    payload = decode_token(token)
    if payload is None:
        return None
    subject = payload.get("sub")
    return str(subject) if subject else None
