"""
Bearer token verification.

Tokens are issued elsewhere (Keycloak in production). With
``KEYCLOAK_URL``/``KEYCLOAK_REALM`` configured, RS256 tokens are verified
against the realm's JWKS and issuer; otherwise tokens are verified with the
shared ``SECRET_KEY``. The authenticated user id is the ``sub`` claim.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
from fastapi import Request
from jose import JWTError, jwt

from dragonchat.errors import AuthenticationError
from dragonchat.logging_config import logger
from dragonchat.settings import settings

NO_TOKEN = "No token provided"
INVALID_TOKEN = "Invalid or expired token"
ACCESS_TOKEN_COOKIE = "access_token"


@dataclass
class AuthenticatedUser:
    id: str
    username: Optional[str] = None
    email: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict)


class JWKSCache:
    """Caches the realm's signing keys for ``ttl`` seconds."""

    def __init__(self, ttl: int) -> None:
        self.ttl = ttl
        self._keys: List[Dict[str, Any]] = []
        self._fetched_at = 0.0

    def clear(self) -> None:
        self._keys = []
        self._fetched_at = 0.0

    async def _refresh(self, jwks_url: str) -> None:
        async with httpx.AsyncClient(timeout=10.0) as client:
            resp = await client.get(jwks_url)
            resp.raise_for_status()
            payload = resp.json()
        self._keys = list(payload.get("keys") or [])
        self._fetched_at = time.monotonic()

    async def get_key(self, jwks_url: str, kid: Optional[str]) -> Optional[Dict[str, Any]]:
        expired = time.monotonic() - self._fetched_at > self.ttl
        if expired or not self._find(kid):
            # Unknown kid usually means the realm rotated its keys.
            await self._refresh(jwks_url)
        return self._find(kid)

    def _find(self, kid: Optional[str]) -> Optional[Dict[str, Any]]:
        for key in self._keys:
            if kid is None or key.get("kid") == kid:
                return key
        return None


_jwks_cache = JWKSCache(settings.jwks_cache_ttl)


def extract_token(request: Request) -> Optional[str]:
    authorization = request.headers.get("Authorization")
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return token.strip()
    cookie = request.cookies.get(ACCESS_TOKEN_COOKIE)
    return cookie or None


async def decode_token(token: str) -> Dict[str, Any]:
    """
    Verify ``token`` and return its claims; raises ``JWTError`` when the
    token is malformed, expired or signed with an unknown key.
    """
    issuer = settings.keycloak_issuer
    if issuer:
        header = jwt.get_unverified_header(token)
        jwks_url = f"{issuer}/protocol/openid-connect/certs"
        try:
            key = await _jwks_cache.get_key(jwks_url, header.get("kid"))
        except (httpx.HTTPError, ValueError) as exc:
            raise JWTError(f"Failed to load signing keys: {exc}") from exc
        if key is None:
            raise JWTError("Signing key not found")
        return jwt.decode(
            token,
            key,
            algorithms=["RS256"],
            issuer=issuer,
            options={"verify_aud": False},
        )

    return jwt.decode(
        token,
        settings.jwt_secret_key,
        algorithms=settings.jwt_algorithms,
        options={"verify_aud": False},
    )


async def require_user(request: Request) -> AuthenticatedUser:
    """FastAPI dependency: the caller's identity or a 401."""
    token = extract_token(request)
    if not token:
        raise AuthenticationError(NO_TOKEN)

    try:
        claims = await decode_token(token)
    except JWTError as exc:
        logger.info("Rejected token on %s: %s", request.url.path, exc)
        raise AuthenticationError(INVALID_TOKEN) from exc

    user_id = claims.get("sub")
    if not user_id:
        raise AuthenticationError(INVALID_TOKEN)

    return AuthenticatedUser(
        id=str(user_id),
        username=claims.get("preferred_username"),
        email=claims.get("email"),
        claims=claims,
    )


__all__ = ["AuthenticatedUser", "JWKSCache", "decode_token", "extract_token", "require_user"]
