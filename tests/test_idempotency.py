"""Tests for idempotent execution support."""
import pytest

from quorum_custody.exceptions import IdempotencyKeyConflict, IdempotencyOperationInProgress
from quorum_custody.idempotency import IdempotencyManager, IdempotencyRecord, InMemoryIdempotencyStore


@pytest.fixture
def manager(clock):
    return IdempotencyManager(clock=clock)


class Counter:
    def __init__(self, fail_times: int = 0):
        self.calls = 0
        self.fail_times = fail_times

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.fail_times:
            raise RuntimeError("boom")
        return {"receipt": f"0x{self.calls}"}


class TestExecuteIdempotent:
    """Tests for execute_idempotent."""

    @pytest.mark.asyncio
    async def test_replays_completed_result(self, manager):
        fn = Counter()
        first, duplicate = await manager.execute_idempotent("key-1", "execute", {"id": "tx_1"}, fn, dict)
        assert not duplicate

        again, duplicate = await manager.execute_idempotent("key-1", "execute", {"id": "tx_1"}, fn, dict)
        assert duplicate
        assert again == first
        assert fn.calls == 1

    @pytest.mark.asyncio
    async def test_key_reuse_with_other_request(self, manager):
        await manager.execute_idempotent("key-1", "execute", {"id": "tx_1"}, Counter(), dict)
        with pytest.raises(IdempotencyKeyConflict):
            await manager.execute_idempotent("key-1", "execute", {"id": "tx_2"}, Counter(), dict)

    @pytest.mark.asyncio
    async def test_failure_can_be_retried(self, manager):
        fn = Counter(fail_times=1)
        with pytest.raises(RuntimeError):
            await manager.execute_idempotent("key-1", "execute", {"id": "tx_1"}, fn, dict)

        result, duplicate = await manager.execute_idempotent("key-1", "execute", {"id": "tx_1"}, fn, dict)
        assert not duplicate
        assert result == {"receipt": "0x2"}

    @pytest.mark.asyncio
    async def test_pending_operation_blocks(self, manager):
        await manager.start_operation("key-1", "execute", {"id": "tx_1"})
        with pytest.raises(IdempotencyOperationInProgress):
            await manager.execute_idempotent("key-1", "execute", {"id": "tx_1"}, Counter(), dict)

    @pytest.mark.asyncio
    async def test_stale_pending_lock_is_released(self, manager, clock):
        await manager.start_operation("key-1", "execute", {"id": "tx_1"})
        clock.advance(seconds=manager.lock_timeout_seconds + 1)

        fn = Counter()
        _, duplicate = await manager.execute_idempotent("key-1", "execute", {"id": "tx_1"}, fn, dict)
        assert not duplicate
        assert fn.calls == 1


class TestInMemoryIdempotencyStore:
    """Tests for record expiry."""

    @pytest.mark.asyncio
    async def test_expired_records_are_dropped(self, clock):
        store = InMemoryIdempotencyStore(clock=clock)
        record = IdempotencyRecord(
            idempotency_key="key-1",
            operation="execute",
            request_hash="abc",
            expires_at=clock(),
            created_at=clock(),
        )
        assert await store.create(record)
        assert not await store.create(record)

        clock.advance(seconds=1)
        assert await store.cleanup_expired() == 1
        assert await store.get("key-1") is None
