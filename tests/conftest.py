"""Shared fixtures for the custody core tests."""
import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

# Add the src directory to the path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

os.environ.setdefault("QUORUM_ENVIRONMENT", "dev")

import pytest
import pytest_asyncio
from nacl.signing import SigningKey

from quorum_custody.audit_log import AuditLogger
from quorum_custody.config import QuorumSettings
from quorum_custody.deposits import DepositConfirmationTracker
from quorum_custody.fund_split import FundSplitEngine
from quorum_custody.interfaces import LedgerGateway, LedgerReceipt
from quorum_custody.repository import EntityLocks
from quorum_custody.signatures import SignatureCollector
from quorum_custody.transactions import TransactionStateMachine
from quorum_custody.verifiers import Ed25519SignatureVerifier
from quorum_custody.wallets import WalletRegistry


class ManualClock:
    """Clock the tests move by hand."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeLedgerGateway(LedgerGateway):
    """Records submissions; failures queued in ``failures`` are raised in order."""

    def __init__(self):
        self.submitted: List[Dict[str, Any]] = []
        self.failures: List[Exception] = []
        self.confirmations: Dict[str, int] = {}
        self.confirmation_failures: List[Exception] = []
        self.delay = 0.0
        self._counter = 0

    async def submit(self, payload: Dict[str, Any]) -> LedgerReceipt:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.submitted.append(payload)
        if self.failures:
            raise self.failures.pop(0)
        self._counter += 1
        return LedgerReceipt(
            tx_hash=f"0x{self._counter:064x}",
            block_number=1000 + self._counter,
            fee=Decimal("0.01"),
        )

    async def get_confirmations(self, tx_hash: str) -> int:
        if self.confirmation_failures:
            raise self.confirmation_failures.pop(0)
        return self.confirmations.get(tx_hash, 0)

    async def get_balance(self, wallet_ref: str) -> Decimal:
        return Decimal("0")


class Member:
    """A participant holding a real Ed25519 key."""

    def __init__(self, identity: str):
        self.identity = identity
        self.signing_key = SigningKey.generate()

    @property
    def public_key(self) -> str:
        return self.signing_key.verify_key.encode().hex()

    def sign(self, payload: bytes) -> str:
        return self.signing_key.sign(payload).signature.hex()

    def as_participant(self, role: str = "participant") -> Dict[str, str]:
        return {"identity": self.identity, "public_key": self.public_key, "role": role}


@pytest.fixture
def settings():
    return QuorumSettings(_env_file=None, retry_base_delay=0.0, retry_max_delay=0.0)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def ledger():
    return FakeLedgerGateway()


@pytest.fixture
def locks():
    return EntityLocks()


@pytest.fixture
def audit(clock):
    return AuditLogger(clock=clock)


@pytest.fixture
def members():
    return {name: Member(name) for name in ("alice", "bob", "carol", "dave")}


@pytest.fixture
def registry(settings, audit, locks, clock):
    return WalletRegistry(locks=locks, audit=audit, settings=settings, clock=clock)


@pytest.fixture
def machine(registry, ledger, settings, audit, locks, clock):
    return TransactionStateMachine(
        wallets=registry,
        ledger=ledger,
        locks=locks,
        settings=settings,
        audit=audit,
        clock=clock,
    )


@pytest.fixture
def collector(machine, registry, clock):
    return SignatureCollector(machine, registry, Ed25519SignatureVerifier(), clock=clock)


@pytest.fixture
def engine(registry, machine, settings, audit, locks, clock):
    return FundSplitEngine(
        wallets=registry,
        transactions=machine,
        locks=locks,
        settings=settings,
        audit=audit,
        clock=clock,
    )


@pytest.fixture
def tracker(registry, engine, settings, audit, locks, clock):
    return DepositConfirmationTracker(
        wallets=registry,
        locks=locks,
        settings=settings,
        audit=audit,
        fund_split=engine,
        clock=clock,
    )


@pytest_asyncio.fixture
async def wallet(registry, members):
    """2-of-3 wallet administered by alice."""
    return await registry.create_wallet(
        participants=[
            members["alice"].as_participant("admin"),
            members["bob"].as_participant(),
            members["carol"].as_participant(),
        ],
        threshold=2,
        contract_ref="C-MULTISIG-1",
        name="Treasury",
        created_by="alice",
    )


@pytest.fixture
def sign(machine, collector, members):
    """Sign a transaction's canonical payload as the named member."""

    async def _sign(transaction_id: str, name: str):
        tx = await machine.get_transaction(transaction_id)
        member = members[name]
        return await collector.submit_signature(
            transaction_id,
            name,
            member.public_key,
            member.sign(tx.canonical_payload()),
        )

    return _sign
