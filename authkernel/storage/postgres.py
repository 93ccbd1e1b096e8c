from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authkernel.logging import get_logger
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import ACCOUNT_STATUSES, ROLES, User

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id BIGSERIAL PRIMARY KEY,
        email TEXT UNIQUE,
        username TEXT UNIQUE,
        name TEXT,
        mobile TEXT,
        country_code TEXT,
        role TEXT NOT NULL DEFAULT 'normal',
        status TEXT NOT NULL DEFAULT 'active',
        verified BOOLEAN NOT NULL DEFAULT FALSE,
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        avatar TEXT,
        meta JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (country_code, mobile)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id BIGINT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_provider (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        provider TEXT NOT NULL,
        provider_uid TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (provider, provider_uid)
    )
    """,
)


class PostgresStore:
    """Postgres-backed profile store."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the profile tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=int(row["id"]),
            email=row.get("email"),
            username=row.get("username"),
            name=row.get("name"),
            mobile=row.get("mobile"),
            country_code=row.get("country_code"),
            role=row.get("role", "normal"),
            status=row.get("status", "active"),
            verified=bool(row.get("verified", False)),
            two_factor_enabled=bool(row.get("two_factor_enabled", False)),
            avatar=row.get("avatar"),
            created_at=row.get("created_at", datetime.utcnow()),
            meta=row.get("meta"),
        )

    def _fetch_user(self, query: str, params: tuple) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

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
        meta: Optional[dict] = None,
    ) -> User:
        if role not in ROLES or role == "anonymous":
            raise ValueError(f"invalid role: {role}")
        if status not in ACCOUNT_STATUSES:
            raise ValueError(f"invalid status: {status}")
        normalized_email = email.strip().lower() if email else None
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (email, username, name, mobile, country_code, role, status, verified, avatar, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        normalized_email,
                        username,
                        name,
                        mobile,
                        country_code,
                        role,
                        status,
                        verified,
                        avatar,
                        json.dumps(meta) if meta else None,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or ""
            field = "mobile" if "mobile" in constraint else (
                "username" if "username" in constraint else "email"
            )
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._row_to_user(row)

    def get_user(self, user_id: int) -> Optional[User]:
        return self._fetch_user("SELECT * FROM app_user WHERE id = %s", (int(user_id),))

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user(
            "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
        )

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._fetch_user("SELECT * FROM app_user WHERE username = %s", (username,))

    def get_user_by_mobile(self, mobile: str, country_code: str) -> Optional[User]:
        return self._fetch_user(
            "SELECT * FROM app_user WHERE mobile = %s AND country_code = %s",
            (mobile, country_code),
        )

    def find_by_identifier(self, identifier: str) -> Optional[User]:
        if "@" in identifier:
            return self.get_user_by_email(identifier)
        return self._fetch_user(
            "SELECT * FROM app_user WHERE country_code || mobile = %s", (identifier,)
        )

    def find_duplicate(
        self,
        email: Optional[str],
        mobile: Optional[str],
        country_code: Optional[str] = None,
    ) -> Optional[User]:
        normalized = email.strip().lower() if email else None
        if country_code is None:
            return self._fetch_user(
                "SELECT * FROM app_user WHERE email = %s OR mobile = %s LIMIT 1",
                (normalized, mobile),
            )
        return self._fetch_user(
            "SELECT * FROM app_user WHERE email = %s OR (mobile = %s AND country_code = %s) LIMIT 1",
            (normalized, mobile, country_code),
        )

    def _update_user(self, user_id: int, column: str, value) -> Optional[User]:
        return self._fetch_user(
            f"UPDATE app_user SET {column} = %s WHERE id = %s RETURNING *",
            (value, int(user_id)),
        )

    def update_status(self, user_id: int, status: str) -> Optional[User]:
        if status not in ACCOUNT_STATUSES:
            raise ValueError(f"invalid status: {status}")
        return self._update_user(user_id, "status", status)

    def update_user_role(self, user_id: int, role: str) -> Optional[User]:
        if role not in ROLES or role == "anonymous":
            raise ValueError(f"invalid role: {role}")
        return self._update_user(user_id, "role", role)

    def set_verified(self, user_id: int, verified: bool = True) -> Optional[User]:
        return self._update_user(user_id, "verified", verified)

    def set_two_factor(self, user_id: int, enabled: bool) -> Optional[User]:
        return self._update_user(user_id, "two_factor_enabled", enabled)

    # credentials
    def save_password(
        self, user_id: int, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (int(user_id), password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (int(user_id),),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # external identity providers
    def link_user_auth_provider(
        self, user_id: int, provider: str, provider_uid: str
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_auth_provider (user_id, provider, provider_uid)
                VALUES (%s, %s, %s)
                ON CONFLICT (provider, provider_uid) DO NOTHING
                """,
                (int(user_id), provider, provider_uid),
            )

    def get_user_by_provider(self, provider: str, provider_uid: str) -> Optional[User]:
        return self._fetch_user(
            "SELECT u.* FROM user_auth_provider p JOIN app_user u ON u.id = p.user_id "
            "WHERE p.provider = %s AND p.provider_uid = %s",
            (provider, provider_uid),
        )
