"""Tests for the hash-chained audit log."""
import asyncio

import pytest

from quorum_custody.audit_log import GENESIS_HASH, AuditAction, AuditCategory, AuditLogger


async def _log(audit, wallet_id, action=AuditAction.WALLET_CREATED, **kwargs):
    return await audit.log(wallet_id=wallet_id, category=AuditCategory.WALLET, action=action, **kwargs)


class TestAuditChain:
    """Tests for chaining and verification."""

    @pytest.mark.asyncio
    async def test_entries_are_chained_per_wallet(self, audit):
        first = await _log(audit, "msw_a")
        other = await _log(audit, "msw_b")
        second = await _log(audit, "msw_a", AuditAction.THRESHOLD_UPDATED)

        assert first.previous_hash == GENESIS_HASH
        assert other.previous_hash == GENESIS_HASH
        assert second.previous_hash == first.entry_hash
        assert second.entry_hash == second.compute_hash()

    @pytest.mark.asyncio
    async def test_verify_intact_chain(self, audit):
        for _ in range(3):
            await _log(audit, "msw_a", actor_id="alice")
        assert await audit.verify_chain("msw_a") == (True, [])

    @pytest.mark.asyncio
    async def test_verify_detects_edit(self, audit):
        await _log(audit, "msw_a")
        entry = await _log(audit, "msw_a", details={"threshold": 2})
        await _log(audit, "msw_a")

        entry.details["threshold"] = 1

        valid, errors = await audit.verify_chain("msw_a")
        assert not valid
        assert any(entry.entry_id in e and "hash verification failed" in e for e in errors)

    @pytest.mark.asyncio
    async def test_concurrent_appends_do_not_fork(self, audit):
        await asyncio.gather(*(_log(audit, "msw_a", resource_id=str(i)) for i in range(20)))
        valid, _ = await audit.verify_chain("msw_a")
        assert valid

    @pytest.mark.asyncio
    async def test_unknown_wallet_verifies_empty(self):
        assert await AuditLogger().verify_chain("msw_none") == (True, [])


class TestAuditHistory:
    """Tests for reading history."""

    @pytest.mark.asyncio
    async def test_history_newest_first(self, audit, clock):
        await _log(audit, "msw_a", resource_id="tx_1")
        clock.advance(seconds=1)
        await _log(audit, "msw_a", AuditAction.SIGNATURE_ADDED, resource_id="tx_2")
        clock.advance(seconds=1)
        await _log(audit, "msw_a", AuditAction.TRANSACTION_APPROVED, resource_id="tx_2")

        history = await audit.get_history("msw_a")
        assert [e.action for e in history] == [
            AuditAction.TRANSACTION_APPROVED,
            AuditAction.SIGNATURE_ADDED,
            AuditAction.WALLET_CREATED,
        ]
        assert len(await audit.get_history("msw_a", resource_id="tx_2")) == 2
        assert len(await audit.get_history("msw_a", limit=1)) == 1

    @pytest.mark.asyncio
    async def test_to_dict(self, audit, clock):
        entry = await _log(audit, "msw_a", actor_id="alice", old_status="active", new_status="suspended")
        data = entry.to_dict()
        assert data["category"] == "wallet"
        assert data["timestamp"] == clock().isoformat()
        assert data["entry_hash"] == entry.entry_hash
