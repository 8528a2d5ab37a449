"""
Authentication and authorization utilities.

Tokens carry the tenant the caller acts for and an operator flag.
Producers only see their own tenant's rows; operators see everything and
may use the maintenance endpoints.
"""

import secrets
from datetime import UTC, datetime, timedelta
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from jobcore.config import get_settings
from jobcore.utils import utcnow

# Security scheme
security = HTTPBearer()


class TokenData(BaseModel):
    """Data extracted from JWT token."""

    tenant_id: str
    operator: bool = False
    exp: datetime


class AuthenticatedUser(BaseModel):
    """Authenticated caller context."""

    tenant_id: str
    operator: bool = False

    def can_access(self, tenant_id: str | None) -> bool:
        """Check whether the caller may read or change rows of `tenant_id`."""
        return self.operator or tenant_id == self.tenant_id


def create_access_token(
    tenant_id: str,
    operator: bool = False,
    expires_delta: timedelta | None = None,
) -> str:
    """
    Create a JWT access token.

    Args:
        tenant_id: The tenant identifier.
        operator: Whether the token grants operator access.
        expires_delta: Optional custom expiration time.

    Returns:
        The encoded JWT token.
    """
    settings = get_settings()

    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.api_access_token_expire_minutes)

    now = utcnow()
    to_encode = {
        "tenant_id": tenant_id,
        "operator": operator,
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
            detail=f"Invalid token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )

    tenant_id: str | None = payload.get("tenant_id")
    if tenant_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing tenant_id",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return TokenData(
        tenant_id=tenant_id,
        operator=bool(payload.get("operator", False)),
        exp=datetime.fromtimestamp(payload["exp"], UTC).replace(tzinfo=None),
    )


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> AuthenticatedUser:
    """
    FastAPI dependency to get the current authenticated caller.

    Raises:
        HTTPException: If authentication fails.
    """
    token_data = decode_token(credentials.credentials)
    return AuthenticatedUser(
        tenant_id=token_data.tenant_id,
        operator=token_data.operator,
    )


async def require_operator(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> AuthenticatedUser:
    """FastAPI dependency admitting operator tokens only."""
    user = await get_current_user(credentials)
    if not user.operator:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Operator access required",
        )
    return user


# Type aliases for dependency injection
CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]
OperatorUser = Annotated[AuthenticatedUser, Depends(require_operator)]


def validate_api_key(api_key: str, tenant_id: str) -> bool | None:
    """
    Validate an API key.

    Keys are compared in constant time against the configured producer
    and operator keys.

    Returns:
        None if the key is invalid, otherwise whether it is the operator key.
    """
    if not api_key or not tenant_id:
        return None

    settings = get_settings()
    candidate = api_key.encode("utf-8")
    if secrets.compare_digest(candidate, settings.operator_api_key.encode("utf-8")):
        return True
    if secrets.compare_digest(candidate, settings.api_key.encode("utf-8")):
        return False
    return None


def ensure_tenant_access(user: AuthenticatedUser, tenant_id: str | None) -> None:
    """
    Raise 403 unless the caller may act on `tenant_id`.

    Raises:
        HTTPException: If access is denied.
    """
    if not user.can_access(tenant_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access denied",
        )
