from __future__ import annotations

import hashlib
import hmac
import secrets
import time
from enum import Enum
from typing import Callable

from authkernel.config import Settings
from authkernel.logging import get_logger

logger = get_logger(__name__)

OTP_PURPOSES = ("signup", "login", "forgot_password")


class OtpStatus(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    TOO_MANY_ATTEMPTS = "too_many_attempts"
    INVALID_CODE = "invalid"

    @property
    def ok(self) -> bool:
        return self is OtpStatus.OK


class OtpManager:
    """Issue and check short numeric one-time passcodes per identifier.

    One identifier holds at most one live code per purpose, so a password
    reset request leaves a pending signup or login code alone. Generating
    again for the same purpose replaces the previous record and resets its
    attempt counter. Codes are stored as
    keyed hashes so a store dump does not reveal live codes.
    """

    def __init__(
        self,
        cache,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.length = settings.otp_length
        self.ttl_seconds = settings.otp_ttl_seconds
        self.max_attempts = settings.otp_max_attempts
        self._pepper = settings.jwt_access_secret.encode()
        self._clock = clock

    @staticmethod
    def _key(identifier: str, purpose: str) -> str:
        return f"otp:{purpose}:{identifier.strip().lower()}"

    def _hash(self, identifier: str, code: str) -> str:
        message = f"{identifier.strip().lower()}:{code}".encode()
        return hmac.new(self._pepper, message, hashlib.sha256).hexdigest()

    def _new_code(self) -> str:
        low = 10 ** (self.length - 1)
        return str(low + secrets.randbelow(9 * low))

    async def generate(self, identifier: str, purpose: str) -> str:
        if purpose not in OTP_PURPOSES:
            raise ValueError(f"unknown otp purpose: {purpose}")
        code = self._new_code()
        await self.cache.store_otp(
            self._key(identifier, purpose),
            self._hash(identifier, code),
            purpose,
            self.ttl_seconds,
            created_at=self._clock(),
        )
        logger.info("otp_generated", identifier=identifier, purpose=purpose)
        return code

    async def verify(self, identifier: str, code: str, purpose: str) -> OtpStatus:
        # Malformed codes are hashed like any other and count as a failed attempt
        submitted = (code or "").strip()[:16]
        result = await self.cache.verify_otp(
            self._key(identifier, purpose),
            self._hash(identifier, submitted),
            purpose,
            max_attempts=self.max_attempts,
            ttl_seconds=self.ttl_seconds,
            now=self._clock(),
        )
        status = OtpStatus(result)
        if status.ok:
            logger.info("otp_verified", identifier=identifier, purpose=purpose)
        else:
            logger.warning(
                "otp_verify_failed",
                identifier=identifier,
                purpose=purpose,
                reason=status.value,
            )
        return status

    async def attempts(self, identifier: str, purpose: str) -> int:
        """Failed attempts recorded against the live code, 0 when none exists."""
        record = await self.cache.get_otp(self._key(identifier, purpose))
        if not record:
            return 0
        return int(record.get("attempts", 0))


__all__ = ["OtpManager", "OtpStatus", "OTP_PURPOSES"]
