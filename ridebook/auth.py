"""
Bearer token verification against the identity provider's published signing
keys.

The caller id used by the ownership guards is the ``sub`` claim of a token
whose signature, issuer, audience and lifetime all check out.
"""

from __future__ import annotations

import base64
import logging
import time
from typing import Dict, Optional

import httpx
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from google.auth import jwt

from ridebook.errors import ExternalServiceError, UnauthenticatedError

logger = logging.getLogger(__name__)

JWKS_PATH = "/oauth/v2/keys"
KEYS_REFRESH_INTERVAL = 60


def _b64_int(value: str) -> int:
    padded = value + "=" * (-len(value) % 4)
    return int.from_bytes(base64.urlsafe_b64decode(padded), "big")


def jwk_to_pem(jwk: dict) -> Optional[str]:
    """PEM public key for an RSA JWK, or None for key types we don't verify."""
    if jwk.get("kty") != "RSA" or not jwk.get("n") or not jwk.get("e"):
        return None
    public_key = rsa.RSAPublicNumbers(_b64_int(jwk["e"]), _b64_int(jwk["n"])).public_key()
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


class TokenVerifier:
    """
    Verifies RS256 access tokens. Keys are fetched from the JWKS endpoint on
    first use and again when a token names a key id we have not seen, at most
    once per ``refresh_interval`` seconds.
    """

    def __init__(
        self,
        issuer: str,
        http: httpx.AsyncClient,
        audience: Optional[str] = None,
        jwks_url: Optional[str] = None,
        clock_skew_in_seconds: int = 30,
        refresh_interval: float = KEYS_REFRESH_INTERVAL,
    ):
        self.issuer = issuer.rstrip("/")
        self.http = http
        self.audience = audience
        self.jwks_url = jwks_url or f"{self.issuer}{JWKS_PATH}"
        self.clock_skew_in_seconds = clock_skew_in_seconds
        self.refresh_interval = refresh_interval
        self._keys: Dict[str, str] = {}
        self._fetched_at: Optional[float] = None

    async def _refresh_keys(self) -> None:
        now = time.monotonic()
        if self._fetched_at is not None and now - self._fetched_at < self.refresh_interval:
            return
        try:
            response = await self.http.get(self.jwks_url, headers={"Accept": "application/json"})
        except httpx.HTTPError as exc:
            raise ExternalServiceError("identity", None, str(exc)) from exc
        if response.is_error:
            raise ExternalServiceError("identity", response.status_code, "JWKS fetch failed")
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        keys = {}
        for jwk in payload.get("keys") or []:
            if not isinstance(jwk, dict) or not jwk.get("kid"):
                continue
            try:
                pem = jwk_to_pem(jwk)
            except ValueError as exc:
                logger.warning("Skipping unreadable signing key %s: %s", jwk["kid"], exc)
                continue
            if pem:
                keys[jwk["kid"]] = pem
        self._keys = keys
        self._fetched_at = now
        logger.info("Loaded %d signing keys from %s", len(keys), self.jwks_url)

    async def verify(self, token: str) -> dict:
        """Return the claims of a valid token, else raise UnauthenticatedError."""
        try:
            header = jwt.decode_header(token)
        except ValueError as exc:
            raise UnauthenticatedError("Malformed bearer token") from exc

        key_id = header.get("kid")
        if not key_id:
            raise UnauthenticatedError("Bearer token has no key id")
        if key_id not in self._keys:
            await self._refresh_keys()
        if key_id not in self._keys:
            raise UnauthenticatedError("Unknown signing key")

        try:
            claims = jwt.decode(
                token,
                certs={key_id: self._keys[key_id]},
                clock_skew_in_seconds=self.clock_skew_in_seconds,
            )
        except ValueError as exc:
            raise UnauthenticatedError(str(exc)) from exc

        if str(claims.get("iss") or "").rstrip("/") != self.issuer:
            raise UnauthenticatedError("Token issuer mismatch")
        if self.audience:
            audiences = claims.get("aud")
            if not isinstance(audiences, list):
                audiences = [audiences]
            if self.audience not in audiences:
                raise UnauthenticatedError("Token audience mismatch")
        if not claims.get("sub"):
            raise UnauthenticatedError("Token has no subject")
        return dict(claims)
