"""Supabase JWT identity provider."""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, Optional

import httpx
from jose import jwt
from jose.exceptions import JWTError


logger = logging.getLogger("plank.auth")


class JwksCache:
    def __init__(self, jwks_url: str, ttl: float = 600.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.jwks_url = jwks_url
        self.ttl = ttl
        self._transport = transport
        self._keys: Dict[str, Any] | None = None
        self._fetched_at = 0.0

    async def get(self, force: bool = False) -> dict:
        now = time.time()
        if not force and self._keys and now - self._fetched_at < self.ttl:
            return self._keys
        async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
            resp = await client.get(self.jwks_url)
            resp.raise_for_status()
            data = resp.json()
        self._keys = data
        self._fetched_at = now
        return data

    async def find(self, kid: str | None) -> dict | None:
        for force in (False, True):
            jwks = await self.get(force=force)
            for jwk in jwks.get("keys", []):
                if jwk.get("kid") == kid:
                    return jwk
        return None


class SupabaseIdentity:
    """Identity collaborator reading the user id (`sub`) from a Supabase JWT.

    With `jwt_secret` set, tokens are verified as HS256; otherwise the signing
    key is looked up by `kid` in the project's JWKS document. Invalid or
    missing tokens yield no user rather than an error.
    """

    def __init__(
        self,
        token: str | None,
        supabase_url: str | None = None,
        jwt_secret: str | None = None,
        audience: Optional[str] = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.token = token
        self.supabase_url = (supabase_url or os.getenv("SUPABASE_URL") or "").rstrip("/")
        self.jwt_secret = jwt_secret if jwt_secret is not None else os.getenv("SUPABASE_JWT_SECRET")
        self.audience = audience if audience is not None else os.getenv("SUPABASE_AUD")
        self.issuer = f"{self.supabase_url}/auth/v1" if self.supabase_url else None
        self._jwks = JwksCache(f"{self.supabase_url}/auth/v1/.well-known/jwks.json", transport=transport)
        self._claims: dict | None = None

    async def _verify(self, token: str) -> dict:
        options = {"verify_aud": self.audience is not None, "verify_iss": self.issuer is not None}
        if self.jwt_secret:
            return jwt.decode(token, self.jwt_secret, algorithms=["HS256"], audience=self.audience, issuer=self.issuer, options=options)
        headers = jwt.get_unverified_header(token)
        key = await self._jwks.find(headers.get("kid"))
        if key is None:
            raise JWTError("Unknown kid")
        return jwt.decode(token, key, algorithms=[headers.get("alg", "RS256")], audience=self.audience, issuer=self.issuer, options=options)

    async def claims(self) -> dict | None:
        if self._claims is not None:
            return self._claims
        if not self.token:
            return None
        try:
            self._claims = await self._verify(self.token)
        except (JWTError, httpx.HTTPError) as exc:
            logger.warning("auth_invalid_token issuer=%s audience=%s error=%s", self.issuer, self.audience, exc)
            return None
        return self._claims

    async def current_user_id(self) -> str | None:
        claims = await self.claims()
        if not claims:
            return None
        return claims.get("sub")
