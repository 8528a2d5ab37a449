"""
Authentication routes.
"""

import logging

from fastapi import APIRouter, HTTPException, status

from jobcore.api.auth import create_access_token, validate_api_key
from jobcore.config import get_settings
from jobcore.types.api import AuthRequest, TokenResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


@router.post(
    "/token",
    response_model=TokenResponse,
    summary="Get access token",
    description="Exchange an API key for a JWT access token.",
)
async def get_token(request: AuthRequest) -> TokenResponse:
    """
    Get an access token using API key authentication.

    The operator key yields an operator token; the producer key a token
    scoped to the requested tenant.

    Raises:
        HTTPException: If authentication fails.
    """
    operator = validate_api_key(request.api_key, request.tenant_id)
    if operator is None:
        logger.warning(
            "Rejected token request",
            extra={"tenant_id": request.tenant_id},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )

    settings = get_settings()
    access_token = create_access_token(
        tenant_id=request.tenant_id,
        operator=operator,
    )

    return TokenResponse(
        access_token=access_token,
        expires_in=settings.api_access_token_expire_minutes * 60,
        operator=operator,
    )
