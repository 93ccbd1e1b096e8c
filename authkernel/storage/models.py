from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Optional

ACCOUNT_STATUSES = ("active", "pending", "suspended", "deleted")
ROLES = ("anonymous", "normal", "creator", "admin")


@dataclass
class User:
    id: int
    email: Optional[str] = None
    username: Optional[str] = None
    name: Optional[str] = None
    mobile: Optional[str] = None
    country_code: Optional[str] = None
    role: str = "normal"
    status: str = "active"
    verified: bool = False
    two_factor_enabled: bool = False
    avatar: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    meta: Dict | None = None

    @property
    def phone_identifier(self) -> Optional[str]:
        if self.mobile and self.country_code:
            return f"{self.country_code}{self.mobile}"
        return None


@dataclass
class UserAuthCredential:
    user_id: int
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    last_updated_at: Optional[datetime] = None


@dataclass
class UserAuthProvider:
    id: int
    user_id: int
    provider: str
    provider_uid: str
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class SessionRecord:
    """One tracked refresh token, stored by token hash."""

    user_id: str
    token_hash: str
    fingerprint: Optional[str]
    issued_at: datetime
    last_seen_at: datetime
    expires_at: datetime
    ip_addr: Optional[str] = None
    app: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        ttl_minutes: int,
        *,
        fingerprint: str | None = None,
        ip_addr: str | None = None,
        app: str | None = None,
    ) -> "SessionRecord":
        now = datetime.utcnow()
        return cls(
            user_id=user_id,
            token_hash=token_hash,
            fingerprint=fingerprint,
            issued_at=now,
            last_seen_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            ip_addr=ip_addr,
            app=app,
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        for key in ("issued_at", "last_seen_at", "expires_at"):
            data[key] = data[key].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "SessionRecord":
        payload = dict(data)
        for key in ("issued_at", "last_seen_at", "expires_at"):
            payload[key] = datetime.fromisoformat(payload[key])
        return cls(**payload)
