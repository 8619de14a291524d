# src/dpr/reporting/security/auth.py
from __future__ import annotations

import logging
from typing import Any, Optional

import httpx
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from dpr.reporting.core.config import settings
from dpr.reporting.security.models import UserContext

logger = logging.getLogger(__name__)


bearer_scheme = HTTPBearer(auto_error=False)

_JWKS_CACHE: dict[str, Any] = {}


def _jwks_url() -> str:
    if settings.oidc_jwks_uri:
        return settings.oidc_jwks_uri
    if settings.oidc_issuer:
        # Keycloak JWKS endpoint
        return f"{settings.oidc_issuer.rstrip('/')}/protocol/openid-connect/certs"
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="OIDC issuer not configured.",
    )


async def _fetch_jwks(url: str) -> dict[str, Any]:
    if url in _JWKS_CACHE:
        return _JWKS_CACHE[url]

    async with httpx.AsyncClient(timeout=5.0) as client:
        resp = await client.get(url)
        resp.raise_for_status()
        jwks = resp.json()

    _JWKS_CACHE[url] = jwks
    return jwks


async def _decode_jwt(token: str) -> dict[str, Any]:
    jwks = await _fetch_jwks(_jwks_url())

    try:
        header = jwt.get_unverified_header(token)
        kid = header.get("kid")
    except JWTError as exc:
        logger.warning("Invalid JWT header: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token header.",
        )

    key = next((k for k in jwks.get("keys", []) if k.get("kid") == kid), None)
    if key is None:
        logger.warning("No matching JWK for kid=%s", kid)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token key not recognized.",
        )

    options = {"verify_aud": settings.oidc_audience is not None}
    try:
        claims = jwt.decode(
            token,
            key,
            algorithms=[key.get("alg", "RS256")],
            audience=settings.oidc_audience,
            issuer=settings.oidc_issuer.rstrip("/") if settings.oidc_issuer else None,
            options=options,
        )
    except JWTError as exc:
        logger.warning("JWT validation failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token."
        )

    return claims


def user_from_claims(claims: dict[str, Any], token: Optional[str] = None) -> UserContext:
    """Map token claims onto the caller identity used by policies.

    Roles come from ``authorities`` when present, otherwise from Keycloak's
    ``realm_access.roles``.
    """
    roles = claims.get("authorities")
    if roles is None:
        roles = claims.get("realm_access", {}).get("roles", [])

    caseloads = claims.get("caseloads") or []
    if isinstance(caseloads, str):
        caseloads = [c for c in caseloads.split(",") if c]

    active = claims.get("active_caseload") or (caseloads[0] if caseloads else None)

    return UserContext(
        username=claims.get("user_name")
        or claims.get("preferred_username")
        or claims.get("sub"),
        roles=sorted(set(roles)),
        active_caseload=active,
        caseloads=caseloads,
        claims=claims,
        token=token,
    )


async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[UserContext]:
    """
    Authenticate the caller if an Authorization header is present.

    Reports without access policies may be read anonymously.
    """
    if credentials is None:
        return None

    token = credentials.credentials
    return user_from_claims(await _decode_jwt(token), token)


