"""
Authentication and authorization utilities.
"""

import hmac
from datetime import datetime, timedelta, timezone
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from memorymesh.config import get_settings

# Security scheme
security = HTTPBearer()


class TokenData(BaseModel):
    """Data extracted from JWT token."""

    client_id: str
    exp: datetime


class AuthenticatedClient(BaseModel):
    """Authenticated API client context."""

    client_id: str


def create_access_token(
    client_id: str,
    expires_delta: timedelta | None = None,
) -> str:
    """
    Create a JWT access token.

    Args:
        client_id: The client identifier.
        expires_delta: Optional custom expiration time.

    Returns:
        The encoded JWT token.
    """
    settings = get_settings()

    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.api_access_token_expire_minutes)

    now = datetime.now(timezone.utc)
    to_encode = {
        "client_id": client_id,
        "exp": now + expires_delta,
        "iat": now,
    }

    return jwt.encode(
        to_encode,
        settings.api_secret_key,
        algorithm=settings.api_algorithm,
    )


def decode_token(token: str) -> TokenData:
    """
    Decode and validate a JWT token.

    Args:
        token: The JWT token to decode.

    Returns:
        TokenData extracted from the token.

    Raises:
        HTTPException: If token is invalid or expired.
    """
    settings = get_settings()

    try:
        payload = jwt.decode(
            token,
            settings.api_secret_key,
            algorithms=[settings.api_algorithm],
        )
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {e}",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e

    client_id = payload.get("client_id")
    if client_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing client_id",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return TokenData(
        client_id=client_id,
        exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
    )


async def get_current_client(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> AuthenticatedClient:
    """
    FastAPI dependency to get the current authenticated client.

    Raises:
        HTTPException: If authentication fails.
    """
    token_data = decode_token(credentials.credentials)
    return AuthenticatedClient(client_id=token_data.client_id)


# Type alias for dependency injection
CurrentClient = Annotated[AuthenticatedClient, Depends(get_current_client)]


def validate_api_key(api_key: str, client_id: str) -> bool:
    """
    Validate an API key for a client.

    With API_KEY configured the key must match it. Without one, any
    non-empty key is accepted outside production and none in production.

    Args:
        api_key: The API key to validate.
        client_id: The client identifier.

    Returns:
        True if the API key is valid.
    """
    if not api_key or not client_id:
        return False

    settings = get_settings()
    if settings.api_key:
        return hmac.compare_digest(api_key.encode(), settings.api_key.encode())
    return not settings.is_production
