import asyncio
from datetime import timedelta

import pytest

from userservice.service.ephemeral import EphemeralTokenStore, TokenKind
from userservice.service.refresh_tokens import (
    RefreshTokenSweeper,
    new_refresh_token_value,
)
from userservice.storage.memory import MemoryStore


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


def test_refresh_token_values_are_long_and_unique():
    values = {new_refresh_token_value() for _ in range(100)}
    assert len(values) == 100
    assert all(len(v) >= 64 for v in values)


async def test_sweep_once_purges_dead_tokens(store, clock):
    user = store.create_user("alice", "a@x.com", "hash")
    store.save_refresh_token(user.id, "old", clock() + timedelta(minutes=5))
    store.save_refresh_token(user.id, "new", clock() + timedelta(days=7))
    ephemeral = EphemeralTokenStore(clock=clock)
    await ephemeral.issue(TokenKind.VERIFICATION, "a@x.com", timedelta(minutes=1))
    sweeper = RefreshTokenSweeper(store, interval_seconds=60, ephemeral=ephemeral, clock=clock)
    clock.advance(minutes=10)

    removed = await sweeper.sweep_once()

    assert removed == 1
    assert sweeper.last_removed == 1
    assert store.find_refresh_token("new") is not None
    assert ephemeral.pending(TokenKind.VERIFICATION) == 0


async def test_start_and_stop(store):
    sweeper = RefreshTokenSweeper(store, interval_seconds=3600)

    await sweeper.start()
    assert sweeper.running
    await asyncio.sleep(0.05)
    await sweeper.stop()

    assert not sweeper.running


class FlakyStore:
    def __init__(self):
        self.calls = 0

    def delete_expired_and_revoked_refresh_tokens(self, now):
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("database unavailable")
        return 0


async def test_loop_survives_store_errors():
    store = FlakyStore()
    sweeper = RefreshTokenSweeper(store, interval_seconds=0.01)

    await sweeper.start()
    for _ in range(100):
        if store.calls >= 2:
            break
        await asyncio.sleep(0.01)
    await sweeper.stop()

    assert store.calls >= 2


async def test_sweep_once_propagates_errors():
    sweeper = RefreshTokenSweeper(FlakyStore(), interval_seconds=60)
    with pytest.raises(RuntimeError):
        await sweeper.sweep_once()


def test_retry_delay_doubles_up_to_interval(store):
    sweeper = RefreshTokenSweeper(store, interval_seconds=3600, retry_delay_seconds=30)

    delays = [sweeper.retry_delay(n) for n in range(1, 10)]

    assert delays[:4] == [30, 60, 120, 240]
    assert delays[-1] == 3600
    assert delays == sorted(delays)
