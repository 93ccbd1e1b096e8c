from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from authkernel.logging import get_logger
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import (
    ACCOUNT_STATUSES,
    ROLES,
    User,
    UserAuthProvider,
)


class MemoryStore:
    """In-process profile store persisted as JSON under ``fs_root/state``.

    Used for local development and tests. Every public method holds the data
    lock, so uniqueness checks and inserts cannot interleave between threads.
    """

    def __init__(self, fs_root: str = "/tmp/authkernel") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.credentials: Dict[int, tuple[str, str]] = {}
        self.providers: List[UserAuthProvider] = []
        self._user_seq: int = 1
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "profiles.json"

    def ping(self) -> bool:
        return True

    # users
    def create_user(
        self,
        *,
        email: Optional[str] = None,
        username: Optional[str] = None,
        name: Optional[str] = None,
        mobile: Optional[str] = None,
        country_code: Optional[str] = None,
        role: str = "normal",
        status: str = "active",
        verified: bool = False,
        avatar: Optional[str] = None,
        meta: Optional[Dict] = None,
    ) -> User:
        if role not in ROLES or role == "anonymous":
            raise ValueError(f"invalid role: {role}")
        if status not in ACCOUNT_STATUSES:
            raise ValueError(f"invalid status: {status}")
        normalized_email = email.strip().lower() if email else None
        with self._data_lock:
            for existing in self.users.values():
                if normalized_email and existing.email == normalized_email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if username and existing.username == username:
                    raise ConstraintViolation("username already exists", {"field": "username"})
                if (
                    mobile
                    and existing.mobile == mobile
                    and existing.country_code == country_code
                ):
                    raise ConstraintViolation("mobile already exists", {"field": "mobile"})
            user_id = self._user_seq
            self._user_seq += 1
            user = User(
                id=user_id,
                email=normalized_email,
                username=username,
                name=name,
                mobile=mobile,
                country_code=country_code,
                role=role,
                status=status,
                verified=verified,
                avatar=avatar,
                meta=meta.copy() if meta else {},
            )
            self.users[user_id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            return self.users.get(int(user_id))

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.username == username), None)

    def get_user_by_mobile(self, mobile: str, country_code: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.mobile == mobile and u.country_code == country_code
                ),
                None,
            )

    def find_by_identifier(self, identifier: str) -> Optional[User]:
        """Resolve an email or ``countryCode+number`` phone identifier."""
        if "@" in identifier:
            return self.get_user_by_email(identifier)
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.phone_identifier == identifier),
                None,
            )

    def find_duplicate(
        self,
        email: Optional[str],
        mobile: Optional[str],
        country_code: Optional[str] = None,
    ) -> Optional[User]:
        normalized = email.strip().lower() if email else None
        with self._data_lock:
            for user in self.users.values():
                if normalized and user.email == normalized:
                    return user
                if mobile and user.mobile == mobile and (
                    country_code is None or user.country_code == country_code
                ):
                    return user
            return None

    def update_status(self, user_id: int, status: str) -> Optional[User]:
        if status not in ACCOUNT_STATUSES:
            raise ValueError(f"invalid status: {status}")
        with self._data_lock:
            user = self.users.get(int(user_id))
            if not user:
                return None
            user.status = status
            self._persist_state()
            return user

    def update_user_role(self, user_id: int, role: str) -> Optional[User]:
        if role not in ROLES or role == "anonymous":
            raise ValueError(f"invalid role: {role}")
        with self._data_lock:
            user = self.users.get(int(user_id))
            if not user:
                return None
            user.role = role
            self._persist_state()
            return user

    def set_verified(self, user_id: int, verified: bool = True) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(int(user_id))
            if not user:
                return None
            user.verified = verified
            self._persist_state()
            return user

    def set_two_factor(self, user_id: int, enabled: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(int(user_id))
            if not user:
                return None
            user.two_factor_enabled = enabled
            self._persist_state()
            return user

    # credentials
    def save_password(
        self, user_id: int, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if int(user_id) not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[int(user_id)] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(int(user_id))

    # external identity providers
    def link_user_auth_provider(
        self, user_id: int, provider: str, provider_uid: str
    ) -> None:
        with self._data_lock:
            for existing in self.providers:
                if existing.provider == provider and existing.provider_uid == provider_uid:
                    return
            max_id = max((p.id for p in self.providers), default=0)
            mapping = UserAuthProvider(
                id=max_id + 1, user_id=int(user_id), provider=provider, provider_uid=provider_uid
            )
            self.providers.append(mapping)
            self._persist_state()

    def get_user_by_provider(self, provider: str, provider_uid: str) -> Optional[User]:
        with self._data_lock:
            for mapping in self.providers:
                if mapping.provider == provider and mapping.provider_uid == provider_uid:
                    return self.users.get(mapping.user_id)
            return None

    # persistence
    def _persist_state(self) -> None:
        state = {
            "user_seq": self._user_seq,
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "providers": [self._serialize_provider(p) for p in self.providers],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist profile state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {int(u["id"]): self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            int(entry["user_id"]): (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.providers = [
            self._deserialize_provider(p) for p in data.get("providers", [])
        ]
        self._user_seq = max(
            data.get("user_seq", 1), max(self.users.keys(), default=0) + 1
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "username": user.username,
            "name": user.name,
            "mobile": user.mobile,
            "country_code": user.country_code,
            "role": user.role,
            "status": user.status,
            "verified": user.verified,
            "two_factor_enabled": user.two_factor_enabled,
            "avatar": user.avatar,
            "created_at": user.created_at.isoformat(),
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=int(data["id"]),
            email=data.get("email"),
            username=data.get("username"),
            name=data.get("name"),
            mobile=data.get("mobile"),
            country_code=data.get("country_code"),
            role=data.get("role", "normal"),
            status=data.get("status", "active"),
            verified=data.get("verified", False),
            two_factor_enabled=data.get("two_factor_enabled", False),
            avatar=data.get("avatar"),
            created_at=datetime.fromisoformat(data["created_at"]),
            meta=data.get("meta"),
        )

    def _serialize_provider(self, provider: UserAuthProvider) -> dict:
        return {
            "id": provider.id,
            "user_id": provider.user_id,
            "provider": provider.provider,
            "provider_uid": provider.provider_uid,
            "created_at": provider.created_at.isoformat(),
        }

    def _deserialize_provider(self, data: dict) -> UserAuthProvider:
        return UserAuthProvider(
            id=int(data["id"]),
            user_id=int(data["user_id"]),
            provider=data["provider"],
            provider_uid=data["provider_uid"],
            created_at=datetime.fromisoformat(data["created_at"]),
        )
