from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

# Atomic get-and-delete for servers that predate GETDEL (Redis < 6.2)
_GETDEL_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""


def _ephemeral_key(kind: str, token: str) -> str:
    return f"auth:ephemeral:{kind}:{token}"


def _encode_entry(email: str, expires_at: datetime) -> str:
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return json.dumps({"email": email, "expires_at": expires_at.isoformat()})


def _decode_entry(raw: Optional[str]) -> Optional[Tuple[str, datetime]]:
    """Parse a stored entry; corrupted payloads read as missing."""
    if raw is None:
        return None
    try:
        data = json.loads(raw)
        email = data["email"]
        expires_at = datetime.fromisoformat(data["expires_at"])
    except (json.JSONDecodeError, TypeError, KeyError, ValueError):
        return None
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return email, expires_at


class RedisCache:
    """Thin Redis wrapper holding single-use verification and reset tokens.

    Entries carry their own ``expires_at`` so the caller's clock stays the
    authority on expiry; the Redis TTL only bounds storage.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def store_ephemeral_token(
        self, kind: str, token: str, email: str, expires_at: datetime, ttl_seconds: int
    ) -> None:
        await self.client.set(
            _ephemeral_key(kind, token),
            _encode_entry(email, expires_at),
            ex=max(1, int(ttl_seconds)),
        )

    async def pop_ephemeral_token(
        self, kind: str, token: str
    ) -> Optional[Tuple[str, datetime]]:
        """Atomically read and delete an entry so two consumers cannot both win."""
        key = _ephemeral_key(kind, token)
        try:
            cached = await self.client.getdel(key)
        except AttributeError:
            cached = await self.client.eval(_GETDEL_SCRIPT, 1, key)
        return _decode_entry(cached)

    async def peek_ephemeral_token(
        self, kind: str, token: str
    ) -> Optional[Tuple[str, datetime]]:
        return _decode_entry(await self.client.get(_ephemeral_key(kind, token)))

    async def delete_ephemeral_token(self, kind: str, token: str) -> bool:
        return bool(await self.client.delete(_ephemeral_key(kind, token)))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    in pytest, but exposes the same awaitable API as ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def store_ephemeral_token(
        self, kind: str, token: str, email: str, expires_at: datetime, ttl_seconds: int
    ) -> None:
        self.client.set(
            _ephemeral_key(kind, token),
            _encode_entry(email, expires_at),
            ex=max(1, int(ttl_seconds)),
        )

    async def pop_ephemeral_token(
        self, kind: str, token: str
    ) -> Optional[Tuple[str, datetime]]:
        key = _ephemeral_key(kind, token)
        try:
            cached = self.client.getdel(key)
        except AttributeError:
            cached = self.client.eval(_GETDEL_SCRIPT, 1, key)
        return _decode_entry(cached)

    async def peek_ephemeral_token(
        self, kind: str, token: str
    ) -> Optional[Tuple[str, datetime]]:
        return _decode_entry(self.client.get(_ephemeral_key(kind, token)))

    async def delete_ephemeral_token(self, kind: str, token: str) -> bool:
        return bool(self.client.delete(_ephemeral_key(kind, token)))

    async def close(self) -> None:
        self.client.close()
