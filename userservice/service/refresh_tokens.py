"""Refresh token contract and the background sweeper that purges dead tokens.

Refresh tokens are opaque random strings stored server-side. A login rotates
them (all of the user's tokens are replaced by one new token) and logout or a
password change removes them. The sweeper deletes rows that are revoked or
past ``expires_at`` so the table does not grow without bound; a failed sweep
is logged and retried after a doubling delay capped at the sweep interval,
never surfaced to a request.
"""

from __future__ import annotations

import asyncio
import secrets
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, List, Optional, Protocol

from userservice.logging import get_logger
from userservice.storage.models import RefreshToken

if TYPE_CHECKING:
    from userservice.service.ephemeral import EphemeralTokenStore

logger = get_logger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 60 * 60
DEFAULT_RETRY_DELAY_SECONDS = 30


class RefreshTokenStore(Protocol):
    def save_refresh_token(
        self, user_id: int, token: str, expires_at: datetime
    ) -> RefreshToken: ...

    def find_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def revoke_all_refresh_tokens(self, user_id: int) -> int: ...

    def rotate_refresh_token(
        self, user_id: int, token: str, expires_at: datetime
    ) -> RefreshToken: ...

    def list_refresh_tokens(self, user_id: int) -> List[RefreshToken]: ...

    def delete_expired_and_revoked_refresh_tokens(self, now: datetime) -> int: ...


def new_refresh_token_value() -> str:
    # 384 bits of entropy, URL safe
    return secrets.token_urlsafe(48)


class RefreshTokenSweeper:
    """Periodically purges revoked and expired refresh tokens."""

    def __init__(
        self,
        store: RefreshTokenStore,
        *,
        interval_seconds: int = DEFAULT_SWEEP_INTERVAL_SECONDS,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        ephemeral: Optional["EphemeralTokenStore"] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.interval_seconds = interval_seconds
        self.retry_delay_seconds = retry_delay_seconds
        self.ephemeral = ephemeral
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.last_removed: int = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("refresh_token_sweeper_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("refresh_token_sweeper_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("refresh_token_sweeper_stopped")

    def retry_delay(self, consecutive_errors: int) -> float:
        """Delay before retrying a failed sweep: doubles per failure, capped at the interval."""
        return min(
            self.interval_seconds,
            self.retry_delay_seconds * (2 ** (max(consecutive_errors, 1) - 1)),
        )

    async def sweep_once(self) -> int:
        """Run one sweep; store errors propagate to the caller."""
        now = self._clock()
        removed = await asyncio.to_thread(
            self.store.delete_expired_and_revoked_refresh_tokens, now
        )
        if self.ephemeral is not None:
            self.ephemeral.cleanup_expired()
        self.last_removed = removed
        logger.info("refresh_token_sweep_completed", removed=removed)
        return removed

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.sweep_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "refresh_token_sweep_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                backoff = self.retry_delay(consecutive_errors)
                if consecutive_errors > 1:
                    logger.warning(
                        "refresh_token_sweep_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                await asyncio.sleep(backoff)
                continue

            await asyncio.sleep(self.interval_seconds)
