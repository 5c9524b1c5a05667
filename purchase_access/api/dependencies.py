"""
FastAPI Dependencies - Authentication for callers and internal services.

NO DICTIONARIES - All dependencies return typed objects.
"""

import secrets
from uuid import UUID

import jwt
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from purchase_access.config import settings
from purchase_access.models.domain import AuthenticatedCaller
from purchase_access.observability.logging import get_logger

logger = get_logger(__name__)

# ============================================================================
# User JWT Authentication (tokens issued by the auth provider)
# ============================================================================

# Bearer token scheme for JWT auth
bearer_scheme = HTTPBearer(auto_error=False)


def decode_caller_token(token: str) -> AuthenticatedCaller:
    """
    Verify an HS256 bearer token and build the caller from its claims.

    Claims used: sub (user id) and email.

    Raises:
        HTTPException 401 if the token is invalid, expired or lacks claims
    """
    try:
        payload = jwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=["HS256"],
            audience=settings.auth_jwt_audience,
            options={"verify_aud": settings.auth_jwt_audience is not None},
        )
    except jwt.ExpiredSignatureError as exc:
        logger.warning("jwt_token_expired")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token expired",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
    except jwt.InvalidTokenError as exc:
        logger.warning("jwt_token_invalid", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc

    try:
        return AuthenticatedCaller(id=UUID(str(payload.get("sub"))), email=str(payload.get("email")))
    except ValueError as exc:
        logger.warning("jwt_token_claims_invalid")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token is missing user id or email",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


async def get_optional_caller(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> AuthenticatedCaller | None:
    """
    Caller if a bearer token was sent, None for anonymous requests.

    An invalid token is still rejected rather than treated as anonymous.
    """
    if credentials is None:
        return None
    return decode_caller_token(credentials.credentials)


async def get_authenticated_caller(
    caller: AuthenticatedCaller | None = Depends(get_optional_caller),
) -> AuthenticatedCaller:
    """
    Require a logged-in caller.

    Raises:
        HTTPException 401 if no token was sent
    """
    if caller is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return caller


# ============================================================================
# Internal API Key (checkout, auth hooks, scheduler)
# ============================================================================


async def require_internal_api_key(
    x_api_key: str | None = Header(None, description="Internal service API key"),
) -> None:
    """
    Validate the shared internal key from the X-API-Key header.

    Raises:
        HTTPException 503 if no key is configured, 401 if the key is wrong
    """
    if not settings.internal_api_key:
        logger.error("internal_api_key_not_configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Internal API key not configured",
        )

    if not x_api_key or not secrets.compare_digest(x_api_key, settings.internal_api_key):
        logger.warning("internal_api_key_rejected", key_present=bool(x_api_key))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )
