from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import httpx
import structlog
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from agentic_ocr.core.config import settings

logger = structlog.get_logger()

bearer_scheme = HTTPBearer()

_jwks_cache: dict[str, Any] | None = None


async def _get_jwks() -> dict[str, Any]:
    global _jwks_cache
    if _jwks_cache is not None:
        return _jwks_cache

    jwks_url = f"{settings.auth0_issuer_url}.well-known/jwks.json"
    async with httpx.AsyncClient(timeout=10.0) as client:
        response = await client.get(jwks_url)
        response.raise_for_status()
        _jwks_cache = response.json()
        return _jwks_cache


def _find_rsa_key(jwks: dict[str, Any], token: str) -> dict[str, str] | None:
    kid = jwt.get_unverified_header(token).get("kid")
    for key in jwks.get("keys", []):
        if key.get("kid") == kid:
            return {field: key[field] for field in ("kty", "kid", "use", "n", "e")}
    return None


def token_permissions(claims: dict[str, Any]) -> set[str]:
    """Auth0 RBAC ``permissions`` claim plus space-separated OAuth ``scope``."""
    granted = set(claims.get("permissions") or [])
    scope = claims.get("scope")
    if isinstance(scope, str):
        granted.update(scope.split())
    return granted


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> dict[str, Any]:
    token = credentials.credentials

    try:
        jwks = await _get_jwks()
        rsa_key = _find_rsa_key(jwks, token)
        if rsa_key is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Unable to find appropriate key",
            )

        return jwt.decode(
            token,
            rsa_key,
            algorithms=["RS256"],
            audience=settings.auth0_audience,
            issuer=settings.auth0_issuer_url,
        )

    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {e}",
        )
    except httpx.HTTPError as e:
        logger.error("JWKS fetch failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authorization server unavailable",
        )


def require_permission(permission: str) -> Callable[..., Awaitable[dict[str, Any]]]:
    """Dependency factory: the caller's token must grant ``permission``."""

    async def _check(user: dict[str, Any] = Depends(get_current_user)) -> dict[str, Any]:
        if permission not in token_permissions(user):
            logger.warning("Permission denied", sub=user.get("sub"), permission=permission)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permission: {permission}",
            )
        return user

    return _check


require_admin = require_permission(settings.admin_permission)
