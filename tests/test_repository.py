"""Tests for the versioned entity store."""
import gc
from dataclasses import dataclass

import pytest

from quorum_custody.exceptions import ConcurrentModification, QuorumConflictError, QuorumNotFoundError
from quorum_custody.repository import EntityLocks, InMemoryEntityStore


@dataclass
class Item:
    item_id: str
    value: int = 0
    version: int = 0


@pytest.fixture
def store():
    return InMemoryEntityStore("Item", "item_id")


class TestInMemoryEntityStore:
    @pytest.mark.asyncio
    async def test_create_sets_version(self, store):
        item = await store.create(Item("a"))
        assert item.version == 1
        with pytest.raises(QuorumConflictError):
            await store.create(Item("a"))

    @pytest.mark.asyncio
    async def test_update_checks_version(self, store):
        await store.create(Item("a"))
        first = await store.require("a")
        second = await store.require("a")

        first.value = 1
        await store.update(first, expected_version=first.version)
        assert (await store.require("a")).version == 2

        second.value = 2
        with pytest.raises(ConcurrentModification):
            await store.update(second, expected_version=second.version)
        assert (await store.require("a")).value == 1

    @pytest.mark.asyncio
    async def test_reads_are_copies(self, store):
        await store.create(Item("a"))
        snapshot = await store.require("a")
        snapshot.value = 99
        assert (await store.require("a")).value == 0

    @pytest.mark.asyncio
    async def test_missing(self, store):
        assert await store.get("nope") is None
        with pytest.raises(QuorumNotFoundError):
            await store.require("nope")
        with pytest.raises(QuorumNotFoundError):
            await store.update(Item("nope"), expected_version=0)
        assert not await store.delete("nope")

    @pytest.mark.asyncio
    async def test_list_with_predicate(self, store):
        await store.create(Item("a", value=1))
        await store.create(Item("b", value=2))
        assert [i.item_id for i in await store.list(lambda i: i.value > 1)] == ["b"]


class TestEntityLocks:
    def test_same_key_same_lock(self):
        locks = EntityLocks()
        assert locks.get("wallet", "msw_1") is locks.get("wallet", "msw_1")
        assert locks.get("wallet", "msw_1") is not locks.get("transaction", "msw_1")

    @pytest.mark.asyncio
    async def test_lock_shared_while_held(self):
        locks = EntityLocks()
        async with locks.get("deposit", "dep_1"):
            assert locks.get("deposit", "dep_1").locked()

    def test_idle_locks_are_dropped(self):
        locks = EntityLocks()
        lock = locks.get("transaction", "tx_1")
        assert len(locks) == 1
        del lock
        gc.collect()
        assert len(locks) == 0
