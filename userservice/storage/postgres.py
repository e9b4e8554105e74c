from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from userservice.logging import get_logger
from userservice.storage.errors import ConstraintViolation
from userservice.storage.models import (
    RefreshToken,
    Role,
    User,
    UserStatus,
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id BIGSERIAL PRIMARY KEY,
        username TEXT NOT NULL,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'USER',
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        account_locked_until TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        first_name TEXT,
        last_name TEXT,
        phone TEXT,
        avatar_url TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT app_user_email_key UNIQUE (email),
        CONSTRAINT app_user_username_key UNIQUE (username)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id BIGSERIAL PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
)

_USER_COLUMNS = (
    "username",
    "email",
    "password_hash",
    "role",
    "status",
    "email_verified",
    "failed_login_attempts",
    "account_locked_until",
    "last_login_at",
    "first_name",
    "last_name",
    "phone",
    "avatar_url",
)


def _constraint_field(exc: errors.UniqueViolation) -> Optional[str]:
    name = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
    if "username" in name:
        return "username"
    if "email" in name:
        return "email"
    if "token" in name:
        return "token"
    return None


class PostgresStore:
    """Postgres-backed credential and refresh token store."""

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
        """Create the ``app_user`` and ``refresh_token`` tables if missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=int(row["id"]),
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            role=Role(row.get("role") or Role.USER.value),
            status=UserStatus(row.get("status") or UserStatus.ACTIVE.value),
            email_verified=bool(row.get("email_verified", False)),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            account_locked_until=row.get("account_locked_until"),
            last_login_at=row.get("last_login_at"),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            phone=row.get("phone"),
            avatar_url=row.get("avatar_url"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _token_from_row(row: dict) -> RefreshToken:
        return RefreshToken(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
            revoked=bool(row.get("revoked", False)),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _user_values(user: User) -> tuple:
        return (
            user.username,
            user.email,
            user.password_hash,
            Role(user.role).value,
            UserStatus(user.status).value,
            user.email_verified,
            user.failed_login_attempts,
            user.account_locked_until,
            user.last_login_at,
            user.first_name,
            user.last_name,
            user.phone,
            user.avatar_url,
        )

    # users
    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        role: Role = Role.USER,
        status: UserStatus = UserStatus.ACTIVE,
        email_verified: bool = False,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (username, email, password_hash, role, status,
                                          email_verified, first_name, last_name, phone)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        username,
                        email,
                        password_hash,
                        Role(role).value,
                        UserStatus(status).value,
                        email_verified,
                        first_name,
                        last_name,
                        phone,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc) or "email"
            raise ConstraintViolation(f"{field} already exists", field=field)
        return self._user_from_row(row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE username = %s", (username,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def email_exists(self, email: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return row is not None

    def username_exists(self, username: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM app_user WHERE username = %s", (username,)
            ).fetchone()
        return row is not None

    def _write_user(self, conn, user: User) -> Optional[dict]:
        assignments = ", ".join(f"{col} = %s" for col in _USER_COLUMNS)
        return conn.execute(
            f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
            (*self._user_values(user), user.id),
        ).fetchone()

    def save_user(self, user: User) -> User:
        try:
            with self._connect() as conn:
                row = self._write_user(conn, user)
        except errors.UniqueViolation as exc:
            field = _constraint_field(exc) or "email"
            raise ConstraintViolation(f"{field} already exists", field=field)
        if not row:
            raise ConstraintViolation("user not found", {"user_id": user.id})
        return self._user_from_row(row)

    def update_user_locked(
        self, user_id: int, mutate: Callable[[User], User]
    ) -> Optional[User]:
        """Row-locked read-modify-write so concurrent logins never lose a count."""
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s FOR UPDATE", (user_id,)
            ).fetchone()
            if not row:
                return None
            current = self._user_from_row(row)
            updated = mutate(replace(current))
            if updated == current:
                return current
            written = self._write_user(conn, replace(updated, id=current.id))
        return self._user_from_row(written) if written else None

    def update_password(self, user_id: int, password_hash: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET password_hash = %s, updated_at = now() WHERE id = %s RETURNING *",
                (password_hash, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def mark_email_verified(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET email_verified = TRUE, updated_at = now() WHERE id = %s RETURNING *",
                (user_id,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def delete_user(self, user_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
        return bool(cur.rowcount)

    # refresh tokens
    def save_refresh_token(
        self, user_id: int, token: str, expires_at: datetime
    ) -> RefreshToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_token (user_id, token, expires_at)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, token, expires_at),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for refresh token", {"user_id": user_id}
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", field="token")
        return self._token_from_row(row)

    def find_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def revoke_all_refresh_tokens(self, user_id: int) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE user_id = %s", (user_id,)
            )
        return cur.rowcount or 0

    def rotate_refresh_token(
        self, user_id: int, token: str, expires_at: datetime
    ) -> RefreshToken:
        """Delete the user's tokens and insert ``token`` in one transaction."""
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    "DELETE FROM refresh_token WHERE user_id = %s", (user_id,)
                )
                row = conn.execute(
                    """
                    INSERT INTO refresh_token (user_id, token, expires_at)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, token, expires_at),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for refresh token", {"user_id": user_id}
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", field="token")
        return self._token_from_row(row)

    def list_refresh_tokens(self, user_id: int) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE user_id = %s ORDER BY id", (user_id,)
            ).fetchall()
        return [self._token_from_row(row) for row in rows]

    def delete_expired_and_revoked_refresh_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE revoked OR expires_at <= %s", (now,)
            )
        removed = cur.rowcount or 0
        if removed:
            self.logger.info("refresh_tokens_purged", removed=removed)
        return removed
