from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.service.errors import (
    InvalidTokenError,
    SessionRevokedError,
    StoreUnavailableError,
    TokenExpiredError,
)
from authkernel.service.sessions import DeviceInfo, SessionStore, hash_token

logger = get_logger(__name__)

ANONYMOUS_ROLE = "anonymous"


@dataclass(frozen=True)
class Principal:
    """Identity and role claims carried by a token."""

    id: str
    role: str
    is_anonymous: bool = False

    @classmethod
    def anonymous(cls) -> "Principal":
        anon_id = f"anon_{int(time.time() * 1000)}_{secrets.token_hex(6)}"
        return cls(id=anon_id, role=ANONYMOUS_ROLE, is_anonymous=True)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: int
    refresh_expires_at: int

    def as_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": "bearer",
            "expires_at": self.access_expires_at,
            "refresh_expires_at": self.refresh_expires_at,
        }


class TokenIssuer:
    """Mint and verify HS256 access and refresh tokens.

    Access tokens are checked by signature and expiry only. Refresh tokens
    must additionally have a live record in the session store; rotation
    consumes that record so each refresh token works once.
    """

    def __init__(
        self,
        settings: Settings,
        sessions: SessionStore,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.sessions = sessions
        self._clock = clock
        self._access_secret = settings.jwt_access_secret.encode()
        self._refresh_secret = settings.jwt_refresh_secret.encode()
        self.access_ttl_seconds = settings.access_token_ttl_minutes * 60
        self.refresh_ttl_seconds = settings.refresh_token_ttl_minutes * 60
        self.leeway_seconds = settings.jwt_leeway_seconds

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: bytes) -> str:
        digest = hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any], secret: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _decode_jwt(self, token: str, secret: bytes, token_type: str) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise InvalidTokenError("token missing")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("token malformed")

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("token malformed")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError("token algorithm not accepted")

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}", secret), sig_b64):
            raise InvalidTokenError("token signature invalid")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("token malformed")
        if not isinstance(payload, dict):
            raise InvalidTokenError("token malformed")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError("token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise InvalidTokenError("token audience mismatch")
        if payload.get("token_type") != token_type:
            raise InvalidTokenError("wrong token type")
        if not payload.get("sub"):
            raise InvalidTokenError("token subject missing")
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            raise InvalidTokenError("token expiry missing")
        if exp_ts <= self._clock() - self.leeway_seconds:
            raise TokenExpiredError("token expired")
        return payload

    def _base_claims(self, principal: Principal, token_type: str, ttl: int) -> dict:
        now = int(self._clock())
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": principal.id,
            "role": principal.role,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + ttl,
        }

    def issue_access_token(self, principal: Principal) -> str:
        claims = self._base_claims(principal, "access", self.access_ttl_seconds)
        claims["is_anonymous"] = principal.is_anonymous
        return self._encode_jwt(claims, self._access_secret)

    def verify_access_token(self, token: str) -> Principal:
        """Return the principal in ``token``; no store lookup is made.

        Raises:
            TokenExpiredError: signature valid but past expiry
            InvalidTokenError: anything else wrong with the token
        """
        payload = self._decode_jwt(token, self._access_secret, "access")
        return Principal(
            id=str(payload["sub"]),
            role=str(payload.get("role") or ANONYMOUS_ROLE),
            is_anonymous=bool(payload.get("is_anonymous", False)),
        )

    def issue_refresh_token(self, principal: Principal) -> str:
        claims = self._base_claims(principal, "refresh", self.refresh_ttl_seconds)
        return self._encode_jwt(claims, self._refresh_secret)

    def decode_refresh_token(self, token: str) -> dict[str, Any]:
        """Cryptographic half of refresh validation; session lookup is separate."""
        return self._decode_jwt(token, self._refresh_secret, "refresh")

    async def issue_pair(self, principal: Principal, device: DeviceInfo) -> TokenPair:
        """Mint a pair and record the refresh token.

        Raises:
            StoreUnavailableError: when the session record could not be written;
                no token may be returned to the client in that case
        """
        access = self.issue_access_token(principal)
        refresh = self.issue_refresh_token(principal)
        saved = await self.sessions.save(
            principal.id, refresh, device, ttl_seconds=self.refresh_ttl_seconds
        )
        if not saved:
            raise StoreUnavailableError("could not record session")
        now = int(self._clock())
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            access_expires_at=now + self.access_ttl_seconds,
            refresh_expires_at=now + self.refresh_ttl_seconds,
        )

    async def rotate(
        self,
        old_refresh_token: str,
        device: DeviceInfo,
        resolve_principal: Callable[[str], Awaitable[Principal]],
    ) -> tuple[Principal, TokenPair]:
        """Exchange a refresh token for a new pair, consuming the old record.

        ``resolve_principal`` rebuilds the claims from current account state
        and may raise to block the exchange.

        Raises:
            InvalidTokenError: bad signature, wrong type or unknown session
            TokenExpiredError: refresh token past expiry
        """
        payload = self.decode_refresh_token(old_refresh_token)
        user_id = str(payload["sub"])
        consumed = await self.sessions.consume(user_id, old_refresh_token)
        if not consumed:
            logger.warning("refresh_session_missing", user_id=user_id, jti=payload.get("jti"))
            raise SessionRevokedError("session revoked")
        principal = await resolve_principal(user_id)
        pair = await self.issue_pair(principal, device)
        logger.info("refresh_rotated", user_id=user_id)
        return principal, pair


__all__ = ["Principal", "TokenPair", "TokenIssuer", "hash_token", "ANONYMOUS_ROLE"]
