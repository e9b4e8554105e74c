from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from userservice.logging import get_logger
from userservice.storage.errors import ConstraintViolation
from userservice.storage.models import (
    RefreshToken,
    Role,
    User,
    UserStatus,
    utcnow,
)


class MemoryStore:
    """In-process credential and refresh token store.

    Every read returns a copy so callers cannot mutate stored records outside
    the data lock. State is mirrored to ``<fs_root>/state/memory_store.json``
    after each write so a restarted dev server keeps its accounts.
    """

    def __init__(self, fs_root: str = "/tmp/userservice") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self._user_id_seq: int = 1
        self._token_id_seq: int = 1
        # RLock so helpers can nest under a caller's acquisition
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

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
        with self._data_lock:
            for existing in self.users.values():
                if existing.email == email:
                    raise ConstraintViolation("email already exists", field="email")
                if existing.username == username:
                    raise ConstraintViolation("username already exists", field="username")
            now = utcnow()
            user = User(
                id=self._user_id_seq,
                username=username,
                email=email,
                password_hash=password_hash,
                role=role,
                status=status,
                email_verified=email_verified,
                first_name=first_name,
                last_name=last_name,
                phone=phone,
                created_at=now,
                updated_at=now,
            )
            self._user_id_seq += 1
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.username == username), None
            )
            return replace(user) if user else None

    def email_exists(self, email: str) -> bool:
        with self._data_lock:
            return any(u.email == email for u in self.users.values())

    def username_exists(self, username: str) -> bool:
        with self._data_lock:
            return any(u.username == username for u in self.users.values())

    def save_user(self, user: User) -> User:
        with self._data_lock:
            if user.id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user.id})
            for other in self.users.values():
                if other.id == user.id:
                    continue
                if other.email == user.email:
                    raise ConstraintViolation("email already exists", field="email")
                if other.username == user.username:
                    raise ConstraintViolation("username already exists", field="username")
            stored = replace(user, updated_at=utcnow())
            self.users[user.id] = stored
            self._persist_state()
            return replace(stored)

    def update_user_locked(
        self, user_id: int, mutate: Callable[[User], User]
    ) -> Optional[User]:
        """Apply ``mutate`` to the current record as one atomic read-modify-write."""
        with self._data_lock:
            current = self.users.get(user_id)
            if current is None:
                return None
            updated = mutate(replace(current))
            if updated != current:
                updated = replace(updated, id=current.id, updated_at=utcnow())
                self.users[user_id] = updated
                self._persist_state()
            return replace(self.users[user_id])

    def update_password(self, user_id: int, password_hash: str) -> Optional[User]:
        return self.update_user_locked(
            user_id, lambda user: replace(user, password_hash=password_hash)
        )

    def mark_email_verified(self, user_id: int) -> Optional[User]:
        return self.update_user_locked(
            user_id, lambda user: replace(user, email_verified=True)
        )

    def delete_user(self, user_id: int) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            for token, record in list(self.refresh_tokens.items()):
                if record.user_id == user_id:
                    self.refresh_tokens.pop(token, None)
            self._persist_state()
            return True

    # refresh tokens
    def _insert_refresh_token(
        self, user_id: int, token: str, expires_at: datetime
    ) -> RefreshToken:
        if token in self.refresh_tokens:
            raise ConstraintViolation("refresh token already exists", field="token")
        if user_id not in self.users:
            raise ConstraintViolation(
                "user not found for refresh token", {"user_id": user_id}
            )
        record = RefreshToken(
            id=self._token_id_seq,
            user_id=user_id,
            token=token,
            expires_at=expires_at,
            created_at=utcnow(),
        )
        self._token_id_seq += 1
        self.refresh_tokens[token] = record
        return record

    def _remove_user_refresh_tokens(self, user_id: int) -> int:
        doomed = [t for t, rec in self.refresh_tokens.items() if rec.user_id == user_id]
        for token in doomed:
            self.refresh_tokens.pop(token, None)
        return len(doomed)

    def save_refresh_token(
        self, user_id: int, token: str, expires_at: datetime
    ) -> RefreshToken:
        with self._data_lock:
            record = self._insert_refresh_token(user_id, token, expires_at)
            self._persist_state()
            return replace(record)

    def find_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            return replace(record) if record else None

    def revoke_all_refresh_tokens(self, user_id: int) -> int:
        with self._data_lock:
            removed = self._remove_user_refresh_tokens(user_id)
            if removed:
                self._persist_state()
            return removed

    def rotate_refresh_token(
        self, user_id: int, token: str, expires_at: datetime
    ) -> RefreshToken:
        """Replace every refresh token of ``user_id`` with ``token`` atomically."""
        with self._data_lock:
            self._remove_user_refresh_tokens(user_id)
            record = self._insert_refresh_token(user_id, token, expires_at)
            self._persist_state()
            return replace(record)

    def list_refresh_tokens(self, user_id: int) -> List[RefreshToken]:
        with self._data_lock:
            return [
                replace(rec)
                for rec in self.refresh_tokens.values()
                if rec.user_id == user_id
            ]

    def delete_expired_and_revoked_refresh_tokens(self, now: datetime) -> int:
        with self._data_lock:
            doomed = [
                token
                for token, rec in self.refresh_tokens.items()
                if rec.revoked or rec.expires_at <= now
            ]
            for token in doomed:
                self.refresh_tokens.pop(token, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning(
                "memory_store_state_corrupt", path=str(path), error=str(exc)
            )
            return False
        self.users = {}
        for raw in data.get("users", []):
            user = self._deserialize_user(raw)
            self.users[user.id] = user
        self.refresh_tokens = {}
        for raw in data.get("refresh_tokens", []):
            record = self._deserialize_refresh_token(raw)
            self.refresh_tokens[record.token] = record
        self._user_id_seq = max(self.users, default=0) + 1
        self._token_id_seq = (
            max((rec.id for rec in self.refresh_tokens.values()), default=0) + 1
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "password_hash": user.password_hash,
            "role": Role(user.role).value,
            "status": UserStatus(user.status).value,
            "email_verified": user.email_verified,
            "failed_login_attempts": user.failed_login_attempts,
            "account_locked_until": self._serialize_datetime(user.account_locked_until),
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "first_name": user.first_name,
            "last_name": user.last_name,
            "phone": user.phone,
            "avatar_url": user.avatar_url,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=int(data["id"]),
            username=data["username"],
            email=data["email"],
            password_hash=data["password_hash"],
            role=Role(data.get("role", Role.USER.value)),
            status=UserStatus(data.get("status", UserStatus.ACTIVE.value)),
            email_verified=bool(data.get("email_verified", False)),
            failed_login_attempts=int(data.get("failed_login_attempts", 0)),
            account_locked_until=self._deserialize_datetime(
                data.get("account_locked_until")
            ),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            phone=data.get("phone"),
            avatar_url=data.get("avatar_url"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )

    def _serialize_refresh_token(self, record: RefreshToken) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "token": record.token,
            "expires_at": self._serialize_datetime(record.expires_at),
            "revoked": record.revoked,
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=int(data["id"]),
            user_id=int(data["user_id"]),
            token=data["token"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked=bool(data.get("revoked", False)),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )
