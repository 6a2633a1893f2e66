"""Bearer token validation and role checks for the apps and workflow APIs."""
from __future__ import annotations

import asyncio
from typing import Any, Sequence

import httpx
import structlog
from authlib.jose import JsonWebKey, jwt
from authlib.jose.errors import JoseError
from fastapi import HTTPException, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..config import DeployerSettings, get_settings

logger = structlog.get_logger(__name__)

ANONYMOUS = "anonymous"


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def roles_from_claims(claims: dict[str, Any], role_claim: str) -> set[str]:
    roles = claims.get(role_claim) or []
    if isinstance(roles, str):
        roles = [roles]
    return set(roles)


def principal_from_claims(claims: dict[str, Any]) -> str:
    """Identity recorded in audit entries for the caller."""
    return str(claims.get("sub") or ANONYMOUS)


class OIDCVerifier:
    """Validate JWT bearer tokens against the issuer's JWKS."""

    def __init__(self, settings: DeployerSettings) -> None:
        self._security = settings.security
        self._jwks: JsonWebKey | None = None
        self._lock = asyncio.Lock()

    async def _get_jwks(self) -> JsonWebKey:
        async with self._lock:
            if self._jwks is None:
                jwks_url = self._security.oidc_issuer_url.rstrip("/") + "/.well-known/jwks.json"
                async with httpx.AsyncClient() as client:
                    response = await client.get(jwks_url, timeout=10)
                    response.raise_for_status()
                self._jwks = JsonWebKey.import_key_set(response.json())
                logger.info("auth.jwks_loaded", url=jwks_url)
            return self._jwks

    def _check_claims(self, claims: dict[str, Any], required_roles: Sequence[str]) -> None:
        if claims.get("iss") != self._security.oidc_issuer_url:
            raise _unauthorized("Invalid issuer")
        audience = self._security.oidc_audience
        aud = claims.get("aud")
        if audience and audience not in set(aud if isinstance(aud, list) else [aud]):
            raise _unauthorized("Invalid audience")
        if required_roles and not roles_from_claims(claims, self._security.role_claim) & set(required_roles):
            logger.warning("auth.forbidden", sub=claims.get("sub"), required=list(required_roles))
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role")

    async def verify(self, credentials: HTTPAuthorizationCredentials | None, required_roles: Sequence[str]) -> dict:
        if not self._security.oidc_issuer_url:
            # No issuer configured: every caller acts with the required roles
            return {"sub": ANONYMOUS, "roles": list(required_roles)}
        if credentials is None:
            raise _unauthorized("Missing bearer token")

        jwks = await self._get_jwks()
        try:
            claims = jwt.decode(credentials.credentials, jwks)
            claims.validate()
        except JoseError as exc:
            logger.warning("auth.invalid_token", error=str(exc))
            raise _unauthorized("Invalid token") from exc

        self._check_claims(claims, required_roles)
        return dict(claims)


_oidc_singleton: OIDCVerifier | None = None


def get_oidc_verifier() -> OIDCVerifier:
    global _oidc_singleton
    if _oidc_singleton is None:
        _oidc_singleton = OIDCVerifier(get_settings())
    return _oidc_singleton


def require_roles(*roles: str):
    async def dependency(credentials: HTTPAuthorizationCredentials = Security(HTTPBearer(auto_error=False))):
        return await get_oidc_verifier().verify(credentials, roles)

    return dependency


__all__ = [
    "OIDCVerifier",
    "get_oidc_verifier",
    "principal_from_claims",
    "require_roles",
    "roles_from_claims",
]
