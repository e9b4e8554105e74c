from __future__ import annotations

import secrets
import threading
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Optional, Tuple, Union

from userservice.logging import get_logger
from userservice.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


class TokenKind(str, Enum):
    VERIFICATION = "verification"
    PASSWORD_RESET = "password_reset"


class TokenNotFoundOrExpired(Exception):
    """Token is unknown, already used, or past its expiry."""


class EphemeralTokenStore:
    """Single-use tokens for email verification and password reset.

    With a Redis cache the entries live in Redis and are consumed with GETDEL;
    otherwise they are kept in per-kind dicts guarded by one lock. Either way a
    token is handed out by ``consume`` at most once.
    """

    def __init__(
        self,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.cache = cache
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._entries: Dict[TokenKind, Dict[str, Tuple[str, datetime]]] = {
            kind: {} for kind in TokenKind
        }
        self._last_cleanup = self._clock()

    def _expired(self, expires_at: datetime, now: datetime) -> bool:
        return now > expires_at

    async def issue(self, kind: TokenKind, email: str, ttl: timedelta) -> str:
        if ttl <= timedelta(0):
            raise ValueError("token ttl must be positive")
        kind = TokenKind(kind)
        token = secrets.token_urlsafe(32)
        expires_at = self._clock() + ttl
        if self.cache:
            await self.cache.store_ephemeral_token(
                kind.value, token, email, expires_at, int(ttl.total_seconds())
            )
        else:
            with self._lock:
                self._entries[kind][token] = (email, expires_at)
        return token

    async def consume(self, kind: TokenKind, token: str) -> str:
        """Remove ``token`` and return its email; raises if missing or expired."""
        kind = TokenKind(kind)
        if not token:
            raise TokenNotFoundOrExpired(kind.value)
        if self.cache:
            entry = await self.cache.pop_ephemeral_token(kind.value, token)
        else:
            with self._lock:
                entry = self._entries[kind].pop(token, None)
        if entry is None:
            raise TokenNotFoundOrExpired(kind.value)
        email, expires_at = entry
        if self._expired(expires_at, self._clock()):
            raise TokenNotFoundOrExpired(kind.value)
        return email

    async def peek(self, kind: TokenKind, token: str) -> str:
        """Validate ``token`` without consuming it; expired entries are evicted."""
        kind = TokenKind(kind)
        if not token:
            raise TokenNotFoundOrExpired(kind.value)
        now = self._clock()
        if self.cache:
            entry = await self.cache.peek_ephemeral_token(kind.value, token)
            if entry is not None and self._expired(entry[1], now):
                await self.cache.delete_ephemeral_token(kind.value, token)
                entry = None
        else:
            with self._lock:
                entry = self._entries[kind].get(token)
                if entry is not None and self._expired(entry[1], now):
                    self._entries[kind].pop(token, None)
                    entry = None
        if entry is None:
            raise TokenNotFoundOrExpired(kind.value)
        return entry[0]

    async def invalidate(self, kind: TokenKind, token: str) -> bool:
        kind = TokenKind(kind)
        if self.cache:
            return await self.cache.delete_ephemeral_token(kind.value, token)
        with self._lock:
            return self._entries[kind].pop(token, None) is not None

    def pending(self, kind: TokenKind) -> int:
        """Number of in-process entries of ``kind`` (always 0 with Redis)."""
        with self._lock:
            return len(self._entries[TokenKind(kind)])

    def cleanup_expired(self) -> int:
        """Drop expired in-process entries; Redis expires its own keys."""
        now = self._clock()
        cleaned = 0
        with self._lock:
            for entries in self._entries.values():
                expired = [
                    token
                    for token, (_, expires_at) in entries.items()
                    if self._expired(expires_at, now)
                ]
                for token in expired:
                    entries.pop(token, None)
                cleaned += len(expired)
        if cleaned:
            logger.debug("ephemeral_token_cleanup", cleaned=cleaned)
        self._last_cleanup = now
        return cleaned

    def maybe_cleanup(self, interval_minutes: int = 5) -> int:
        """Run ``cleanup_expired`` if the interval has elapsed since the last run."""
        now = self._clock()
        if (now - self._last_cleanup).total_seconds() >= interval_minutes * 60:
            return self.cleanup_expired()
        return 0
