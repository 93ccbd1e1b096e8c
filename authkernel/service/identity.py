from __future__ import annotations

import base64
import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import httpx
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.service.errors import InvalidCredentialsError, ValidationError

logger = get_logger(__name__)

GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
GOOGLE_ISSUERS = {"accounts.google.com", "https://accounts.google.com"}
APPLE_ISSUER = "https://appleid.apple.com"
APPLE_KEYS_URL = "https://appleid.apple.com/auth/keys"
APPLE_TOKEN_URL = "https://appleid.apple.com/auth/token"
_JWKS_CACHE_SECONDS = 3600


@dataclass(frozen=True)
class ExternalIdentity:
    provider: str
    subject: str
    email: Optional[str] = None
    name: Optional[str] = None


def _b64url_decode(segment: str) -> bytes:
    padding_chars = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding_chars)


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


class IdentityVerifier:
    """Turn a provider-issued token into (subject, email, name).

    Provider failures of any kind surface as InvalidCredentialsError so the
    caller answers with a plain 401.
    """

    def __init__(self, settings: Settings, *, timeout: float = 10.0) -> None:
        self.settings = settings
        self.timeout = timeout
        self._jwks: Dict[str, Any] = {}
        self._jwks_fetched_at = 0.0
        self._registry: Dict[Tuple[str, str], ExternalIdentity] = {}
        self._code_registry: Dict[str, str] = {}

    def register_identity(self, provider: str, token: str, identity: ExternalIdentity) -> None:
        """Pre-register a verified identity for a token, for tests and offline flows."""
        self._registry[(provider, token)] = identity

    def register_apple_code(self, code: str, id_token: str) -> None:
        """Pre-register the id token an Apple authorization code exchanges to."""
        self._code_registry[code] = id_token

    async def verify(
        self, provider: str, token: str, *, client_id: Optional[str] = None
    ) -> ExternalIdentity:
        if not token:
            raise ValidationError(f"{provider} token is required")
        registered = self._registry.pop((provider, token), None)
        if registered:
            return registered
        try:
            if provider == "google":
                return await self._verify_google(token)
            if provider == "apple":
                return await self._verify_apple(token, client_id or self.settings.apple_client_id)
        except httpx.HTTPError as exc:
            logger.error("identity_provider_unreachable", provider=provider, error=str(exc))
            raise InvalidCredentialsError(f"{provider} verification failed") from exc
        raise ValidationError(f"unsupported identity provider: {provider}")

    async def _verify_google(self, id_token: str) -> ExternalIdentity:
        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=False) as client:
            response = await client.get(GOOGLE_TOKENINFO_URL, params={"id_token": id_token})
        if response.status_code != 200:
            logger.warning("google_token_rejected", status_code=response.status_code)
            raise InvalidCredentialsError("google token invalid")
        try:
            claims = response.json()
        except ValueError:
            raise InvalidCredentialsError("google token invalid")
        if claims.get("iss") not in GOOGLE_ISSUERS:
            raise InvalidCredentialsError("google token issuer mismatch")
        expected_aud = self.settings.google_client_id
        if expected_aud and claims.get("aud") != expected_aud:
            logger.warning("google_token_audience_mismatch", aud=claims.get("aud"))
            raise InvalidCredentialsError("google token audience mismatch")
        if int(claims.get("exp", 0)) <= time.time():
            raise InvalidCredentialsError("google token expired")
        email = claims.get("email")
        if email and str(claims.get("email_verified", "true")).lower() != "true":
            email = None
        return ExternalIdentity(
            provider="google",
            subject=str(claims["sub"]),
            email=email.lower() if email else None,
            name=claims.get("name"),
        )

    async def _apple_keys(self) -> Dict[str, Any]:
        if self._jwks and time.time() - self._jwks_fetched_at < _JWKS_CACHE_SECONDS:
            return self._jwks
        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=False) as client:
            response = await client.get(APPLE_KEYS_URL)
            response.raise_for_status()
        self._jwks = {key["kid"]: key for key in response.json().get("keys", [])}
        self._jwks_fetched_at = time.time()
        return self._jwks

    async def _verify_apple(self, id_token: str, client_id: Optional[str]) -> ExternalIdentity:
        try:
            header_b64, payload_b64, sig_b64 = id_token.split(".")
            header = json.loads(_b64url_decode(header_b64))
            claims = json.loads(_b64url_decode(payload_b64))
            signature = _b64url_decode(sig_b64)
        except ValueError:
            raise InvalidCredentialsError("apple token malformed")
        if header.get("alg") != "RS256":
            raise InvalidCredentialsError("apple token algorithm not accepted")
        jwk = (await self._apple_keys()).get(header.get("kid"))
        if not jwk:
            raise InvalidCredentialsError("apple signing key unknown")
        public_key = rsa.RSAPublicNumbers(
            int.from_bytes(_b64url_decode(jwk["e"]), "big"),
            int.from_bytes(_b64url_decode(jwk["n"]), "big"),
        ).public_key()
        try:
            public_key.verify(
                signature,
                f"{header_b64}.{payload_b64}".encode(),
                padding.PKCS1v15(),
                hashes.SHA256(),
            )
        except InvalidSignature:
            raise InvalidCredentialsError("apple token signature invalid")
        if claims.get("iss") != APPLE_ISSUER:
            raise InvalidCredentialsError("apple token issuer mismatch")
        if client_id and claims.get("aud") != client_id:
            logger.warning("apple_token_audience_mismatch", aud=claims.get("aud"))
            raise InvalidCredentialsError("apple token audience mismatch")
        if int(claims.get("exp", 0)) <= time.time():
            raise InvalidCredentialsError("apple token expired")
        email = claims.get("email")
        return ExternalIdentity(
            provider="apple",
            subject=str(claims["sub"]),
            email=email.lower() if email else None,
            name=claims.get("name"),
        )

    def _apple_client_secret(self, client_id: str) -> str:
        """ES256 client assertion Apple requires for the token endpoint."""
        settings = self.settings
        if not (settings.apple_team_id and settings.apple_key_id and settings.apple_private_key):
            raise InvalidCredentialsError("apple code exchange is not configured")
        private_key = serialization.load_pem_private_key(
            settings.apple_private_key.replace("\\n", "\n").encode(), password=None
        )
        now = int(time.time())
        header = {"alg": "ES256", "kid": settings.apple_key_id}
        claims = {
            "iss": settings.apple_team_id,
            "iat": now,
            "exp": now + 300,
            "aud": APPLE_ISSUER,
            "sub": client_id,
        }
        signing_input = ".".join(
            _b64url_encode(json.dumps(part, separators=(",", ":")).encode())
            for part in (header, claims)
        )
        der = private_key.sign(signing_input.encode(), ec.ECDSA(hashes.SHA256()))
        r, s = decode_dss_signature(der)
        raw_sig = r.to_bytes(32, "big") + s.to_bytes(32, "big")
        return f"{signing_input}.{_b64url_encode(raw_sig)}"

    async def exchange_apple_code(
        self, code: str, *, client_id: Optional[str] = None, redirect_uri: Optional[str] = None
    ) -> str:
        """Exchange an Apple authorization code for its id token."""
        registered = self._code_registry.pop(code, None)
        if registered:
            return registered
        resolved_client = client_id or self.settings.apple_client_id
        if not resolved_client:
            raise InvalidCredentialsError("apple client id is not configured")
        data = {
            "client_id": resolved_client,
            "client_secret": self._apple_client_secret(resolved_client),
            "code": code,
            "grant_type": "authorization_code",
        }
        if redirect_uri:
            data["redirect_uri"] = redirect_uri
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=False) as client:
                response = await client.post(
                    APPLE_TOKEN_URL, data=data, headers={"Accept": "application/json"}
                )
                response.raise_for_status()
                token_result = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("apple_code_exchange_failed", error=str(exc))
            raise InvalidCredentialsError("apple code exchange failed") from exc
        id_token = token_result.get("id_token") if isinstance(token_result, dict) else None
        if not id_token:
            raise InvalidCredentialsError("apple code exchange failed")
        return id_token


__all__ = ["ExternalIdentity", "IdentityVerifier"]
