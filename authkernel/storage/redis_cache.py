from __future__ import annotations

import asyncio
import hashlib
import inspect
import json
from contextlib import asynccontextmanager
from typing import Any, List, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from authkernel.storage.errors import RecordStoreError

# Outcomes returned by the OTP verification script
OTP_OK = "ok"
OTP_NOT_FOUND = "not_found"
OTP_EXPIRED = "expired"
OTP_TOO_MANY_ATTEMPTS = "too_many_attempts"
OTP_INVALID = "invalid"


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class RedisCache:
    """Time-boxed record store on Redis.

    Every operation that enforces a security property runs as a single Redis
    command or Lua script, so concurrent workers cannot interleave a check and
    its update.
    """

    # Fixed window counter: first hit in a window sets the expiry
    _FIXED_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('TTL', KEYS[1])
if ttl < 0 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

    _OTP_VERIFY_SCRIPT = """
local data = redis.call('HMGET', KEYS[1], 'code_hash', 'purpose', 'attempts', 'created_at')
if not data[1] then
  return 'not_found'
end
if data[2] ~= ARGV[2] then
  return 'not_found'
end
if tonumber(ARGV[4]) - tonumber(data[4]) > tonumber(ARGV[5]) then
  redis.call('DEL', KEYS[1])
  return 'expired'
end
if tonumber(data[3]) >= tonumber(ARGV[3]) then
  return 'too_many_attempts'
end
if data[1] ~= ARGV[1] then
  redis.call('HINCRBY', KEYS[1], 'attempts', 1)
  return 'invalid'
end
redis.call('DEL', KEYS[1])
return 'ok'
"""

    # Delete one session only when it belongs to the expected user
    _CONSUME_SESSION_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  redis.call('SREM', KEYS[2], ARGV[2])
  return 0
end
local record = cjson.decode(raw)
if tostring(record['user_id']) ~= ARGV[1] then
  return 0
end
redis.call('DEL', KEYS[1])
redis.call('SREM', KEYS[2], ARGV[2])
return 1
"""

    _REVOKE_ALL_SCRIPT = """
local hashes = redis.call('SMEMBERS', KEYS[1])
local removed = 0
for _, token_hash in ipairs(hashes) do
  removed = removed + redis.call('DEL', ARGV[1] .. token_hash)
end
redis.call('DEL', KEYS[1])
return removed
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 2.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._register_scripts(self.client)

    def _register_scripts(self, client) -> None:
        self._fixed_window = client.register_script(self._FIXED_WINDOW_SCRIPT)
        self._otp_verify = client.register_script(self._OTP_VERIFY_SCRIPT)
        self._consume_session = client.register_script(self._CONSUME_SESSION_SCRIPT)
        self._revoke_all = client.register_script(self._REVOKE_ALL_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @asynccontextmanager
    async def _store_call(self, operation: str):
        try:
            yield
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise RecordStoreError(f"{operation} failed: {exc}") from exc

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate subjects so client-supplied parts cannot collide on delimiters."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    @staticmethod
    def _session_key(token_hash: str) -> str:
        return f"auth:session:{token_hash}"

    @staticmethod
    def _user_sessions_key(user_id: str) -> str:
        return f"auth:user_sessions:{user_id}"

    # generic records
    async def put_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        async with self._store_call("put_if_absent"):
            created = await _resolve(
                self.client.set(key, value, nx=True, ex=max(1, int(ttl_seconds)))
            )
        return bool(created)

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        async with self._store_call("put"):
            await _resolve(self.client.set(key, value, ex=max(1, int(ttl_seconds))))

    async def get(self, key: str) -> Optional[str]:
        async with self._store_call("get"):
            return await _resolve(self.client.get(key))

    async def delete(self, key: str) -> bool:
        async with self._store_call("delete"):
            removed = await _resolve(self.client.delete(key))
        return bool(removed)

    async def take(self, key: str) -> Optional[str]:
        """Atomically read and delete a record."""
        async with self._store_call("take"):
            return await _resolve(self.client.getdel(key))

    async def increment(self, key: str, field: str, amount: int = 1) -> int:
        async with self._store_call("increment"):
            return int(await _resolve(self.client.hincrby(key, field, amount)))

    async def hit_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """Count one hit in the fixed window for ``key``.

        Returns the post-increment count and the seconds left in the window.
        """
        safe_key = self._normalize_rate_key(key)
        async with self._store_call("hit_window"):
            count, ttl = await _resolve(
                self._fixed_window(keys=[safe_key], args=[int(window_seconds)])
            )
        return int(count), int(ttl)

    # one-time passcodes
    async def store_otp(
        self, key: str, code_hash: str, purpose: str, ttl_seconds: int, *, created_at: float
    ) -> None:
        """Replace any record under ``key`` with a fresh zero-attempt one."""
        # Keep the record a little past its logical expiry so verify can report it
        grace = 60
        async with self._store_call("store_otp"):
            pipe = self.client.pipeline(transaction=True)
            pipe.delete(key)
            pipe.hset(
                key,
                mapping={
                    "code_hash": code_hash,
                    "purpose": purpose,
                    "attempts": 0,
                    "created_at": repr(created_at),
                },
            )
            pipe.expire(key, int(ttl_seconds) + grace)
            await _resolve(pipe.execute())

    async def get_otp(self, key: str) -> Optional[dict]:
        async with self._store_call("get_otp"):
            data = await _resolve(self.client.hgetall(key))
        return data or None

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
        async with self._store_call("verify_otp"):
            result = await _resolve(
                self._otp_verify(
                    keys=[key],
                    args=[code_hash, purpose, int(max_attempts), repr(now), int(ttl_seconds)],
                )
            )
        return str(result)

    # tracked refresh sessions
    async def save_session(
        self, user_id: str, token_hash: str, record: dict, ttl_seconds: int
    ) -> None:
        ttl = max(1, int(ttl_seconds))
        index_key = self._user_sessions_key(user_id)
        async with self._store_call("save_session"):
            pipe = self.client.pipeline(transaction=True)
            pipe.set(self._session_key(token_hash), json.dumps(record), ex=ttl)
            pipe.sadd(index_key, token_hash)
            pipe.expire(index_key, ttl)
            await _resolve(pipe.execute())

    async def get_session(self, token_hash: str) -> Optional[dict]:
        async with self._store_call("get_session"):
            raw = await _resolve(self.client.get(self._session_key(token_hash)))
        if not raw:
            return None
        return json.loads(raw)

    async def consume_session(self, user_id: str, token_hash: str) -> bool:
        async with self._store_call("consume_session"):
            removed = await _resolve(
                self._consume_session(
                    keys=[self._session_key(token_hash), self._user_sessions_key(user_id)],
                    args=[str(user_id), token_hash],
                )
            )
        return bool(int(removed))

    async def revoke_user_sessions(self, user_id: str) -> int:
        async with self._store_call("revoke_user_sessions"):
            removed = await _resolve(
                self._revoke_all(
                    keys=[self._user_sessions_key(user_id)],
                    args=["auth:session:"],
                )
            )
        return int(removed)

    async def list_user_sessions(self, user_id: str) -> List[dict]:
        index_key = self._user_sessions_key(user_id)
        async with self._store_call("list_user_sessions"):
            hashes = sorted(await _resolve(self.client.smembers(index_key)))
            if not hashes:
                return []
            raws = await _resolve(
                self.client.mget([self._session_key(h) for h in hashes])
            )
        return [json.loads(raw) for raw in raws if raw]

    async def ping(self) -> bool:
        async with self._store_call("ping"):
            return bool(await _resolve(self.client.ping()))

    async def close(self) -> None:
        """Close the connection pool. Call on shutdown or runtime reset."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache(RedisCache):
    """Redis record store backed by a synchronous client, for tests.

    Exposes the same awaitable API as RedisCache without binding a
    connection pool to a particular event loop.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 2.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._register_scripts(self.client)

    def verify_connection(self) -> None:
        self.client.ping()

    async def close(self) -> None:
        self.client.close()


__all__ = [
    "RedisCache",
    "SyncRedisCache",
    "OTP_OK",
    "OTP_NOT_FOUND",
    "OTP_EXPIRED",
    "OTP_TOO_MANY_ATTEMPTS",
    "OTP_INVALID",
]
