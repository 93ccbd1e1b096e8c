from __future__ import annotations

import hashlib
import math
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from authkernel.storage.redis_cache import (
    OTP_EXPIRED,
    OTP_INVALID,
    OTP_NOT_FOUND,
    OTP_OK,
    OTP_TOO_MANY_ATTEMPTS,
)


class LocalCache:
    """In-process record store with the RedisCache API.

    Only valid for a single worker process: state is not shared, so it is
    allowed under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV. Each operation runs
    under one lock, which gives the same all-or-nothing behaviour as the
    Redis scripts within this process.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._records: Dict[str, Tuple[Any, float]] = {}
        self._user_sessions: Dict[str, Set[str]] = {}

    def _live(self, key: str) -> Optional[Any]:
        entry = self._records.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            self._records.pop(key, None)
            return None
        return value

    def _store(self, key: str, value: Any, ttl_seconds: float) -> None:
        self._records[key] = (value, self._clock() + max(1, ttl_seconds))

    def verify_connection(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._records.clear()
            self._user_sessions.clear()

    # generic records
    async def put_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._store(key, value, ttl_seconds)
            return True

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._store(key, value, ttl_seconds)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    async def delete(self, key: str) -> bool:
        with self._lock:
            present = self._live(key) is not None
            self._records.pop(key, None)
            return present

    async def take(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live(key)
            self._records.pop(key, None)
            return value

    async def increment(self, key: str, field: str, amount: int = 1) -> int:
        with self._lock:
            record = self._live(key)
            if record is None:
                record = {}
                self._store(key, record, 24 * 3600)
            record[field] = int(record.get(field, 0)) + amount
            return record[field]

    async def hit_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        safe_key = "rate:" + hashlib.sha256(key.encode()).hexdigest()
        with self._lock:
            now = self._clock()
            entry = self._records.get(safe_key)
            if entry is None or entry[1] <= now:
                self._records[safe_key] = (1, now + window_seconds)
                return 1, int(window_seconds)
            count, expires_at = entry
            count += 1
            self._records[safe_key] = (count, expires_at)
            return count, max(1, math.ceil(expires_at - now))

    # one-time passcodes
    async def store_otp(
        self, key: str, code_hash: str, purpose: str, ttl_seconds: int, *, created_at: float
    ) -> None:
        with self._lock:
            self._store(
                key,
                {
                    "code_hash": code_hash,
                    "purpose": purpose,
                    "attempts": 0,
                    "created_at": created_at,
                },
                ttl_seconds + 60,
            )

    async def get_otp(self, key: str) -> Optional[dict]:
        with self._lock:
            record = self._live(key)
            return dict(record) if record else None

    async def verify_otp(
        self,
        key: str,
        code_hash: str,
        purpose: str,
        *,
        max_attempts: int,
        ttl_seconds: int,
        now: float,
    ) -> str:
        with self._lock:
            record = self._live(key)
            if not record or record.get("purpose") != purpose:
                return OTP_NOT_FOUND
            if now - float(record["created_at"]) > ttl_seconds:
                self._records.pop(key, None)
                return OTP_EXPIRED
            if int(record["attempts"]) >= max_attempts:
                return OTP_TOO_MANY_ATTEMPTS
            if record["code_hash"] != code_hash:
                record["attempts"] = int(record["attempts"]) + 1
                return OTP_INVALID
            self._records.pop(key, None)
            return OTP_OK

    # tracked refresh sessions
    async def save_session(
        self, user_id: str, token_hash: str, record: dict, ttl_seconds: int
    ) -> None:
        with self._lock:
            self._store(f"auth:session:{token_hash}", dict(record), ttl_seconds)
            self._user_sessions.setdefault(str(user_id), set()).add(token_hash)

    async def get_session(self, token_hash: str) -> Optional[dict]:
        with self._lock:
            record = self._live(f"auth:session:{token_hash}")
            return dict(record) if record else None

    async def consume_session(self, user_id: str, token_hash: str) -> bool:
        key = f"auth:session:{token_hash}"
        with self._lock:
            index = self._user_sessions.get(str(user_id), set())
            record = self._live(key)
            if record is None:
                index.discard(token_hash)
                return False
            if str(record.get("user_id")) != str(user_id):
                return False
            self._records.pop(key, None)
            index.discard(token_hash)
            return True

    async def revoke_user_sessions(self, user_id: str) -> int:
        with self._lock:
            removed = 0
            for token_hash in self._user_sessions.pop(str(user_id), set()):
                if self._live(f"auth:session:{token_hash}") is not None:
                    removed += 1
                self._records.pop(f"auth:session:{token_hash}", None)
            return removed

    async def list_user_sessions(self, user_id: str) -> List[dict]:
        with self._lock:
            records = []
            for token_hash in sorted(self._user_sessions.get(str(user_id), set())):
                record = self._live(f"auth:session:{token_hash}")
                if record is not None:
                    records.append(dict(record))
            return records
