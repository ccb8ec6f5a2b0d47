"""Tests for ledger reconciliation."""
from decimal import Decimal

import pytest

from quorum_custody.deposits import DepositConfirmationTracker, DepositStatus
from quorum_custody.exceptions import LedgerTransientError
from quorum_custody.interfaces import LedgerReceipt
from quorum_custody.reconciliation import DiscrepancyType, ReconciliationService, ResolutionStrategy
from quorum_custody.repository import InMemoryEntityStore
from quorum_custody.retry import RetryConfig
from quorum_custody.transactions import TransactionStateMachine, TransactionStatus


@pytest.fixture
def tx_store():
    return InMemoryEntityStore("Transaction", "transaction_id")


@pytest.fixture
def machine(registry, ledger, settings, audit, locks, clock, tx_store):
    return TransactionStateMachine(
        wallets=registry, ledger=ledger, store=tx_store, locks=locks, settings=settings, audit=audit, clock=clock
    )


@pytest.fixture
def deposits(registry, settings, audit, locks, clock):
    return DepositConfirmationTracker(wallets=registry, locks=locks, settings=settings, audit=audit, clock=clock)


@pytest.fixture
def service(machine, deposits, ledger, settings, clock):
    return ReconciliationService(
        machine,
        deposits,
        ledger,
        settings=settings,
        retry_config=RetryConfig(max_retries=1, base_delay=0.0, max_delay=0.0),
        clock=clock,
    )


@pytest.fixture
def stuck_execution(machine, tx_store, wallet, sign, clock):
    """An approved transaction left in executing, as after a crash mid-execution."""

    async def _make(receipt=None):
        tx = await machine.propose(wallet.wallet_id, "payment", {"recipient": "GDEST", "amount": "10"})
        await sign(tx.transaction_id, "alice")
        await sign(tx.transaction_id, "bob")

        stored = await tx_store.require(tx.transaction_id)
        stored.status = TransactionStatus.EXECUTING
        stored.execution_started_at = clock()
        stored.chain_receipt = receipt
        await tx_store.update(stored, expected_version=stored.version)
        return stored

    return _make


class TestTransactionReconciliation:
    """Executing transactions are settled from the ledger or flagged."""

    @pytest.mark.asyncio
    async def test_settles_confirmed_receipt(self, service, machine, ledger, stuck_execution):
        tx = await stuck_execution(LedgerReceipt(tx_hash="0xfeed", block_number=9))
        ledger.confirmations["0xfeed"] = 4

        report = await service.reconcile()

        assert report.settled_transactions == [tx.transaction_id]
        discrepancy = report.discrepancies[0]
        assert discrepancy.discrepancy_type == DiscrepancyType.STATUS_MISMATCH
        assert discrepancy.chain_tx_hash == "0xfeed"
        assert (await machine.get_transaction(tx.transaction_id)).status == TransactionStatus.EXECUTED
        assert ledger.submitted == []

    @pytest.mark.asyncio
    async def test_unconfirmed_receipt_is_left_alone(self, service, machine, ledger, stuck_execution):
        tx = await stuck_execution(LedgerReceipt(tx_hash="0xfeed"))

        report = await service.reconcile()

        assert report.transactions_checked == 1
        assert report.discrepancies == []
        assert (await machine.get_transaction(tx.transaction_id)).status == TransactionStatus.EXECUTING

    @pytest.mark.asyncio
    async def test_stale_execution_without_receipt(self, service, machine, ledger, stuck_execution, clock, settings):
        tx = await stuck_execution()

        assert (await service.reconcile()).discrepancies == []

        clock.advance(seconds=settings.stale_execution_seconds)
        report = await service.reconcile()

        assert [d.resource_id for d in report.unresolved] == [tx.transaction_id]
        assert report.unresolved[0].discrepancy_type == DiscrepancyType.MISSING_ON_CHAIN
        assert report.unresolved[0].resolution_strategy == ResolutionStrategy.MANUAL_REVIEW
        assert (await machine.get_transaction(tx.transaction_id)).status == TransactionStatus.EXECUTING
        assert ledger.submitted == []

    @pytest.mark.asyncio
    async def test_gateway_outage_is_reported(self, service, ledger, stuck_execution):
        tx = await stuck_execution(LedgerReceipt(tx_hash="0xfeed"))
        ledger.confirmation_failures = [LedgerTransientError(), LedgerTransientError()]

        report = await service.reconcile()

        assert report.discrepancies == []
        assert report.errors[0]["resource_id"] == tx.transaction_id

    @pytest.mark.asyncio
    async def test_gateway_recovers_within_retries(self, service, ledger, stuck_execution):
        tx = await stuck_execution(LedgerReceipt(tx_hash="0xfeed"))
        ledger.confirmations["0xfeed"] = 1
        ledger.confirmation_failures = [LedgerTransientError()]

        report = await service.reconcile()
        assert report.settled_transactions == [tx.transaction_id]
        assert report.errors == []


class TestDepositReconciliation:
    """Pending deposits the chain has confirmed are confirmed locally."""

    @pytest.mark.asyncio
    async def test_confirms_deep_enough_deposits(self, service, deposits, ledger, wallet):
        deep = await deposits.register_deposit(wallet.wallet_id, "25", "GSOURCE", "0xdeep")
        shallow = await deposits.register_deposit(wallet.wallet_id, "5", "GSOURCE", "0xshallow")
        ledger.confirmations.update({"0xdeep": 12, "0xshallow": 1})

        report = await service.reconcile(wallet.wallet_id)

        assert report.deposits_checked == 2
        assert report.confirmed_deposits == [deep.deposit_id]
        confirmed = await deposits.get_deposit(deep.deposit_id)
        assert confirmed.status == DepositStatus.CONFIRMED
        assert confirmed.confirmations == 12
        assert (await deposits.get_deposit(shallow.deposit_id)).status == DepositStatus.PENDING

    @pytest.mark.asyncio
    async def test_report_serializes(self, service, deposits, ledger, wallet):
        deposit = await deposits.register_deposit(wallet.wallet_id, Decimal("25"), "GSOURCE", "0xdeep")
        ledger.confirmations["0xdeep"] = 3

        data = (await service.reconcile()).to_dict()

        assert data["confirmed_deposits"] == [deposit.deposit_id]
        assert data["unresolved_count"] == 0
        assert data["discrepancies"][0]["discrepancy_type"] == "unconfirmed_deposit"
