"""Tests for signature collection and threshold evaluation."""
import asyncio
import json

import pytest

from quorum_custody.exceptions import (
    AlreadyExecuted,
    AlreadySigned,
    LedgerTransientError,
    NotApproved,
    NotParticipant,
    SignatureInvalid,
    WalletSuspended,
)
from quorum_custody.signatures import SignatureCollector
from quorum_custody.transactions import TransactionStateMachine, TransactionStatus
from quorum_custody.verifiers import Ed25519SignatureVerifier


@pytest.fixture
def auto_settings(settings):
    return settings.model_copy(update={"auto_execute_on_approval": True})


@pytest.fixture
def auto_machine(registry, ledger, auto_settings, audit, locks, clock):
    return TransactionStateMachine(
        wallets=registry, ledger=ledger, locks=locks, settings=auto_settings, audit=audit, clock=clock
    )


@pytest.fixture
def auto_collector(auto_machine, registry, clock):
    return SignatureCollector(auto_machine, registry, Ed25519SignatureVerifier(), clock=clock)


async def _propose(machine, wallet):
    return await machine.propose(
        wallet.wallet_id, "payment", {"recipient": "GDEST", "amount": "42.5"}, proposed_by="alice"
    )


class TestSubmitSignature:
    """Tests for signature validation."""

    @pytest.mark.asyncio
    async def test_canonical_payload_is_stable_json(self, machine, wallet):
        tx = await _propose(machine, wallet)
        payload = SignatureCollector.canonical_payload(tx)
        body = json.loads(payload)

        assert body["transaction_id"] == tx.transaction_id
        assert body["payload"]["amount"] == "42.5"
        assert payload == (await machine.get_transaction(tx.transaction_id)).canonical_payload()

    @pytest.mark.asyncio
    async def test_records_signature(self, machine, collector, wallet, members):
        tx = await _propose(machine, wallet)
        alice = members["alice"]
        result = await collector.submit_signature(
            tx.transaction_id, "alice", alice.public_key, alice.sign(tx.canonical_payload())
        )
        assert result.signature_count == 1
        assert result.required == 2

        stored = await machine.get_transaction(tx.transaction_id)
        assert stored.signatures[0].signer == "alice"
        assert stored.signatures[0].public_key == alice.public_key

    @pytest.mark.asyncio
    async def test_key_mismatch(self, machine, collector, wallet, members):
        tx = await _propose(machine, wallet)
        alice = members["alice"]
        with pytest.raises(SignatureInvalid):
            await collector.submit_signature(
                tx.transaction_id, "bob", alice.public_key, alice.sign(tx.canonical_payload())
            )

    @pytest.mark.asyncio
    async def test_signature_over_wrong_bytes(self, machine, collector, wallet, members):
        tx = await _propose(machine, wallet)
        bob = members["bob"]
        with pytest.raises(SignatureInvalid):
            await collector.submit_signature(tx.transaction_id, "bob", bob.public_key, bob.sign(b"something else"))
        assert (await machine.get_transaction(tx.transaction_id)).signature_count == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("signature", ["", "zz", "00" * 64])
    async def test_malformed_signature(self, machine, collector, wallet, members, signature):
        tx = await _propose(machine, wallet)
        with pytest.raises(SignatureInvalid):
            await collector.submit_signature(tx.transaction_id, "bob", members["bob"].public_key, signature)

    @pytest.mark.asyncio
    async def test_malformed_key(self, machine, collector, wallet):
        tx = await _propose(machine, wallet)
        with pytest.raises(SignatureInvalid):
            await collector.submit_signature(tx.transaction_id, "bob", "not-a-key", "00")

    @pytest.mark.asyncio
    async def test_outsider(self, machine, collector, wallet, members):
        tx = await _propose(machine, wallet)
        dave = members["dave"]
        with pytest.raises(NotParticipant):
            await collector.submit_signature(
                tx.transaction_id, "dave", dave.public_key, dave.sign(tx.canonical_payload())
            )

    @pytest.mark.asyncio
    async def test_removed_participant(self, machine, registry, wallet, sign):
        tx = await _propose(machine, wallet)
        await registry.remove_participant(wallet.wallet_id, "carol", actor="alice")
        with pytest.raises(NotParticipant):
            await sign(tx.transaction_id, "carol")

    @pytest.mark.asyncio
    async def test_double_sign(self, machine, wallet, sign):
        tx = await _propose(machine, wallet)
        await sign(tx.transaction_id, "alice")
        with pytest.raises(AlreadySigned):
            await sign(tx.transaction_id, "alice")

    @pytest.mark.asyncio
    async def test_suspended_wallet(self, machine, registry, wallet, sign):
        tx = await _propose(machine, wallet)
        await registry.set_status(wallet.wallet_id, "suspended", actor="alice")
        with pytest.raises(WalletSuspended):
            await sign(tx.transaction_id, "bob")

    @pytest.mark.asyncio
    async def test_threshold_read_from_current_wallet(self, machine, registry, wallet, sign):
        tx = await _propose(machine, wallet)
        await registry.update_threshold(wallet.wallet_id, 3, actor="alice")

        await sign(tx.transaction_id, "alice")
        second = await sign(tx.transaction_id, "bob")
        assert second.status == TransactionStatus.PROPOSED
        third = await sign(tx.transaction_id, "carol")
        assert third.status == TransactionStatus.APPROVED

    @pytest.mark.asyncio
    async def test_removed_signer_no_longer_counts(self, machine, registry, wallet, sign, ledger):
        tx = await _propose(machine, wallet)
        await sign(tx.transaction_id, "bob")
        await registry.remove_participant(wallet.wallet_id, "bob", actor="alice")

        second = await sign(tx.transaction_id, "carol")
        assert second.signature_count == 1
        assert second.status == TransactionStatus.PROPOSED

        third = await sign(tx.transaction_id, "alice")
        assert third.signature_count == 2
        assert third.status == TransactionStatus.APPROVED

        await machine.execute(tx.transaction_id, executed_by="alice")
        signers = [s["signer"] for s in ledger.submitted[0]["signatures"]]
        assert sorted(signers) == ["alice", "carol"]

    @pytest.mark.asyncio
    async def test_execute_rechecks_membership(self, machine, registry, wallet, sign, ledger):
        tx = await _propose(machine, wallet)
        await sign(tx.transaction_id, "alice")
        await sign(tx.transaction_id, "bob")
        await registry.remove_participant(wallet.wallet_id, "bob", actor="alice")

        with pytest.raises(NotApproved):
            await machine.execute(tx.transaction_id, executed_by="alice")
        assert ledger.submitted == []
        assert (await machine.get_transaction(tx.transaction_id)).status == TransactionStatus.APPROVED

        await sign(tx.transaction_id, "carol")
        executed = await machine.execute(tx.transaction_id, executed_by="alice")
        assert executed.status == TransactionStatus.EXECUTED

    @pytest.mark.asyncio
    async def test_rotated_key_invalidates_old_signature(self, machine, registry, wallet, sign, members):
        tx = await _propose(machine, wallet)
        await sign(tx.transaction_id, "bob")
        await registry.remove_participant(wallet.wallet_id, "bob", actor="alice")
        await registry.add_participant(wallet.wallet_id, "bob", members["dave"].public_key, actor="alice")

        result = await sign(tx.transaction_id, "carol")
        assert result.signature_count == 1
        assert result.status == TransactionStatus.PROPOSED


class TestSignatureRaces:
    """Concurrent submissions on one transaction."""

    @pytest.mark.asyncio
    async def test_same_signer_race(self, machine, collector, wallet, members):
        tx = await _propose(machine, wallet)
        alice = members["alice"]
        signature = alice.sign(tx.canonical_payload())

        results = await asyncio.gather(
            collector.submit_signature(tx.transaction_id, "alice", alice.public_key, signature),
            collector.submit_signature(tx.transaction_id, "alice", alice.public_key, signature),
            return_exceptions=True,
        )
        assert sum(1 for r in results if isinstance(r, AlreadySigned)) == 1
        assert (await machine.get_transaction(tx.transaction_id)).signature_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_signatures_execute_once(self, auto_machine, auto_collector, wallet, members, ledger):
        tx = await _propose(auto_machine, wallet)
        payload = tx.canonical_payload()
        ledger.delay = 0.01

        results = await asyncio.gather(
            *(
                auto_collector.submit_signature(tx.transaction_id, name, members[name].public_key, members[name].sign(payload))
                for name in ("alice", "bob", "carol")
            ),
            return_exceptions=True,
        )

        assert len(ledger.submitted) == 1
        errors = [r for r in results if isinstance(r, Exception)]
        assert all(isinstance(e, AlreadyExecuted) for e in errors)
        executed = [r for r in results if not isinstance(r, Exception) and r.execution is not None]
        assert len(executed) == 1
        assert executed[0].status == TransactionStatus.EXECUTED
        assert (await auto_machine.get_transaction(tx.transaction_id)).status == TransactionStatus.EXECUTED

    @pytest.mark.asyncio
    async def test_auto_execution_failure_is_reported(self, auto_machine, auto_collector, wallet, members, ledger):
        tx = await _propose(auto_machine, wallet)
        payload = tx.canonical_payload()
        ledger.failures.append(LedgerTransientError())

        for name in ("alice", "bob"):
            result = await auto_collector.submit_signature(
                tx.transaction_id, name, members[name].public_key, members[name].sign(payload)
            )

        assert result.just_approved
        assert result.execution is None
        assert result.execution_error["error"] == "LEDGER_UNAVAILABLE"
        assert result.status == TransactionStatus.APPROVED
