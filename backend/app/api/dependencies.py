"""
API Dependencies

Authentication for the two kinds of callers:
- students, identified by a Supabase access token (JWKS ES256, with the
  HS256 project secret as fallback for legacy tokens)
- operators and cron, identified by the X-Admin-Key header
"""

import logging
import secrets
from typing import Annotated, Optional
from uuid import UUID

import jwt
from jwt import PyJWKClient
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.config.settings import get_settings


logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

# PyJWKClient caches keys and refetches on unknown kid
_jwks_client: Optional[PyJWKClient] = None


def _get_jwks_client() -> PyJWKClient:
    global _jwks_client
    if _jwks_client is None:
        settings = get_settings()
        _jwks_client = PyJWKClient(
            f"{settings.supabase_url}/auth/v1/.well-known/jwks.json",
            cache_keys=True,
        )
    return _jwks_client


def _decode(token: str, key, algorithm: str, issuer: str) -> dict:
    return jwt.decode(
        token,
        key,
        algorithms=[algorithm],
        issuer=issuer,
        audience="authenticated",
        options={"require": ["exp", "sub", "iss"]},
    )


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> UUID:
    """
    Verified user id (`sub` claim) of the caller.

    Raises:
        HTTPException 401: token missing, expired, invalid, or `sub` not a UUID.
    """
    if not credentials:
        raise _unauthorized("Missing authorization token")

    token = credentials.credentials
    settings = get_settings()
    issuer = f"{settings.supabase_url}/auth/v1"
    payload: Optional[dict] = None

    try:
        signing_key = _get_jwks_client().get_signing_key_from_jwt(token)
        payload = _decode(token, signing_key.key, "ES256", issuer)
    except (jwt.exceptions.PyJWKClientError, jwt.InvalidTokenError) as e:
        logger.debug(f"JWKS verification failed, trying HS256: {e}")

    if payload is None and settings.supabase_jwt_secret:
        try:
            payload = _decode(token, settings.supabase_jwt_secret, "HS256", issuer)
        except jwt.ExpiredSignatureError:
            raise _unauthorized("Token has expired")
        except jwt.InvalidTokenError as e:
            logger.warning(f"HS256 verification failed: {e}")

    if payload is None:
        raise _unauthorized("Invalid or unverifiable token")

    try:
        return UUID(str(payload.get("sub")))
    except ValueError:
        raise _unauthorized("Invalid token: missing user ID")


async def verify_admin_api_key(
    x_admin_key: str = Header(..., description="Admin API key for operator endpoints"),
) -> bool:
    """Constant-time check of X-Admin-Key against ADMIN_API_KEY."""
    expected_key = get_settings().admin_api_key
    if not expected_key:
        logger.error("ADMIN_API_KEY is not set")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin authentication not configured",
        )
    if not secrets.compare_digest(x_admin_key, expected_key):
        logger.warning("Invalid admin API key attempt")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin API key",
        )
    return True


CurrentUserId = Annotated[UUID, Depends(get_current_user_id)]


# =============================================================================
# Re-export DB dependencies for a single import source
# Routers should import from api.dependencies, not db.dependencies directly.
# =============================================================================
from app.infrastructure.db.dependencies import (  # noqa: E402, F401
    SessionDep,
    ServicesDep,
    get_services,
)
