"""Tests for the lease lock."""

from __future__ import annotations

import asyncio

import pytest

from task_manager.watcher.lock import LeaseLock


async def _lease_rows(db) -> list[tuple[str, str]]:
    cursor = await db.execute("SELECT name, owner_id FROM leases")
    return [(r["name"], r["owner_id"]) for r in await cursor.fetchall()]


class TestAcquire:
    @pytest.mark.asyncio
    async def test_held_lease_blocks_other_workers(self, db):
        w1 = LeaseLock(db, "w1")
        w2 = LeaseLock(db, "w2")

        assert await w1.acquire("alice-nft-1")
        assert not await w2.acquire("alice-nft-1")
        # the holder cannot take it twice either
        assert not await w1.acquire("alice-nft-1")
        assert await _lease_rows(db) == [("alice-nft-1", "w1")]

    @pytest.mark.asyncio
    async def test_release_lets_others_in(self, db):
        w1 = LeaseLock(db, "w1")
        w2 = LeaseLock(db, "w2")

        await w1.acquire("t")
        assert await w1.release("t")
        assert await w2.acquire("t")

    @pytest.mark.asyncio
    async def test_expired_lease_is_reclaimed(self, db):
        stale = LeaseLock(db, "w1", lease_time=-1)
        fresh = LeaseLock(db, "w2")

        assert await stale.acquire("t")
        assert await fresh.acquire("t")
        assert await _lease_rows(db) == [("t", "w2")]

    @pytest.mark.asyncio
    async def test_names_are_independent(self, db):
        w1 = LeaseLock(db, "w1")
        w2 = LeaseLock(db, "w2")

        assert await w1.acquire("a")
        assert await w2.acquire("b")

    @pytest.mark.asyncio
    async def test_concurrent_acquire_has_one_winner(self, db):
        locks = [LeaseLock(db, f"w{i}") for i in range(5)]
        results = await asyncio.gather(*(lock.acquire("t") for lock in locks))
        assert results.count(True) == 1


class TestReleaseAndRenew:
    @pytest.mark.asyncio
    async def test_release_by_non_owner_is_refused(self, db):
        w1 = LeaseLock(db, "w1")
        w2 = LeaseLock(db, "w2")

        await w1.acquire("t")
        assert not await w2.release("t")
        assert await _lease_rows(db) == [("t", "w1")]

    @pytest.mark.asyncio
    async def test_release_after_expiry_is_refused(self, db, caplog):
        w1 = LeaseLock(db, "w1", lease_time=-1)
        assert await w1.acquire("t")

        with caplog.at_level("WARNING", logger="task_manager.watcher.lock"):
            assert not await w1.release("t")

        assert "no longer held" in caplog.text
        # an expired row is left for the next acquirer to reclaim
        assert await _lease_rows(db) == [("t", "w1")]
        assert await LeaseLock(db, "w2").acquire("t")

    @pytest.mark.asyncio
    async def test_release_of_missing_lease(self, db):
        assert not await LeaseLock(db, "w1").release("t")

    @pytest.mark.asyncio
    async def test_renew_while_held(self, db):
        w1 = LeaseLock(db, "w1")
        await w1.acquire("t")
        assert await w1.renew("t")
        assert not await LeaseLock(db, "w2").renew("t")

    @pytest.mark.asyncio
    async def test_renew_of_expired_lease_fails(self, db):
        w1 = LeaseLock(db, "w1", lease_time=-1)
        await w1.acquire("t")
        assert not await w1.renew("t")


class TestHold:
    @pytest.mark.asyncio
    async def test_hold_releases_on_exit(self, db):
        lock = LeaseLock(db, "w1")
        async with lock.hold("t") as acquired:
            assert acquired
            assert await _lease_rows(db) == [("t", "w1")]
        assert await _lease_rows(db) == []

    @pytest.mark.asyncio
    async def test_hold_releases_on_error(self, db):
        lock = LeaseLock(db, "w1")
        with pytest.raises(RuntimeError):
            async with lock.hold("t"):
                raise RuntimeError("boom")
        assert await _lease_rows(db) == []

    @pytest.mark.asyncio
    async def test_hold_does_not_release_foreign_lease(self, db):
        await LeaseLock(db, "w2").acquire("t")
        async with LeaseLock(db, "w1").hold("t") as acquired:
            assert not acquired
        assert await _lease_rows(db) == [("t", "w2")]
