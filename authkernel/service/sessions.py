from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import List, Optional

from authkernel.logging import get_logger
from authkernel.storage.models import SessionRecord

logger = get_logger(__name__)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


@dataclass(frozen=True)
class DeviceInfo:
    """Client details captured with each tracked session."""

    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    device: Optional[str] = None

    @property
    def fingerprint(self) -> str:
        parts = [self.user_agent, self.ip_addr, self.browser, self.os, self.device]
        raw = "|".join(part or "" for part in parts)
        return hashlib.sha256(raw.encode()).hexdigest()


class SessionStore:
    """Tracked refresh tokens, keyed by token hash and indexed per user.

    A refresh token is valid only while its record exists here, so
    revocation takes effect on the very next request.
    """

    def __init__(self, cache) -> None:
        self.cache = cache

    async def save(
        self,
        user_id: str,
        refresh_token: str,
        device: DeviceInfo,
        *,
        ttl_seconds: int,
    ) -> bool:
        """Persist a session record; False means the token must not be handed out."""
        record = SessionRecord.new(
            str(user_id),
            hash_token(refresh_token),
            ttl_minutes=max(1, ttl_seconds // 60),
            fingerprint=device.fingerprint,
            ip_addr=device.ip_addr,
            app=device.user_agent,
        )
        try:
            await self.cache.save_session(
                str(user_id), record.token_hash, record.to_dict(), ttl_seconds
            )
        except Exception as exc:
            logger.error("session_save_failed", user_id=user_id, error=str(exc))
            return False
        return True

    async def consume(self, user_id: str, refresh_token: str) -> bool:
        """Atomically delete the record if present; True only for the caller that removed it."""
        return await self.cache.consume_session(str(user_id), hash_token(refresh_token))

    async def revoke_one(self, user_id: str, refresh_token: str) -> bool:
        revoked = await self.cache.consume_session(str(user_id), hash_token(refresh_token))
        logger.info("session_revoked", user_id=user_id, revoked=revoked)
        return revoked

    async def revoke_all(self, user_id: str) -> int:
        count = await self.cache.revoke_user_sessions(str(user_id))
        logger.info("sessions_revoked_all", user_id=user_id, count=count)
        return count

    async def is_active(self, user_id: str, refresh_token: str) -> bool:
        record = await self.cache.get_session(hash_token(refresh_token))
        return bool(record) and str(record.get("user_id")) == str(user_id)

    async def list(self, user_id: str) -> List[SessionRecord]:
        records = await self.cache.list_user_sessions(str(user_id))
        return [SessionRecord.from_dict(record) for record in records]


__all__ = ["DeviceInfo", "SessionStore", "hash_token"]
