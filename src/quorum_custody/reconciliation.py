"""
Ledger-as-source-of-truth reconciliation.

Repairs local state after partial failures:
- executing transactions whose receipt was recorded but whose terminal
  status never landed are settled once the ledger reports confirmations
- executing transactions with no receipt past ``stale_execution_seconds``
  are reported for manual review and never resubmitted
- pending deposits the chain has confirmed deeply enough are confirmed
"""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .config import QuorumSettings, get_settings
from .deposits import DepositConfirmationTracker
from .exceptions import QuorumException
from .interfaces import LedgerGateway
from .retry import RetryConfig, RetryExhausted, retry_async
from .transactions import TransactionStateMachine, TransactionStatus

logger = logging.getLogger(__name__)


class DiscrepancyType(str, Enum):
    """Types of discrepancies found during reconciliation."""
    STATUS_MISMATCH = "status_mismatch"
    MISSING_ON_CHAIN = "missing_on_chain"
    UNCONFIRMED_DEPOSIT = "unconfirmed_deposit"


class ResolutionStrategy(str, Enum):
    """Strategies for resolving discrepancies."""
    AUTO_CORRECT_LEDGER = "auto_correct_ledger"  # Trust the chain
    MANUAL_REVIEW = "manual_review"


@dataclass
class Discrepancy:
    discrepancy_id: str
    discrepancy_type: DiscrepancyType
    wallet_id: str
    resource_type: str
    resource_id: str
    chain_tx_hash: Optional[str] = None
    description: str = ""
    resolution_strategy: Optional[ResolutionStrategy] = None
    is_resolved: bool = False
    detected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "discrepancy_id": self.discrepancy_id,
            "discrepancy_type": self.discrepancy_type.value,
            "wallet_id": self.wallet_id,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "chain_tx_hash": self.chain_tx_hash,
            "description": self.description,
            "resolution_strategy": self.resolution_strategy.value if self.resolution_strategy else None,
            "is_resolved": self.is_resolved,
            "detected_at": self.detected_at.isoformat(),
        }


@dataclass
class ReconciliationReport:
    started_at: datetime
    wallet_id: Optional[str] = None
    completed_at: Optional[datetime] = None
    transactions_checked: int = 0
    deposits_checked: int = 0
    discrepancies: List[Discrepancy] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def settled_transactions(self) -> List[str]:
        return [
            d.resource_id for d in self.discrepancies
            if d.resource_type == "transaction" and d.is_resolved
        ]

    @property
    def confirmed_deposits(self) -> List[str]:
        return [
            d.resource_id for d in self.discrepancies
            if d.resource_type == "deposit" and d.is_resolved
        ]

    @property
    def unresolved(self) -> List[Discrepancy]:
        return [d for d in self.discrepancies if not d.is_resolved]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wallet_id": self.wallet_id,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "transactions_checked": self.transactions_checked,
            "deposits_checked": self.deposits_checked,
            "settled_transactions": self.settled_transactions,
            "confirmed_deposits": self.confirmed_deposits,
            "discrepancies": [d.to_dict() for d in self.discrepancies],
            "unresolved_count": len(self.unresolved),
            "errors": list(self.errors),
        }


class ReconciliationService:
    """
    Re-queries the ledger gateway and repairs local status.

    Usage:
        service = ReconciliationService(machine, tracker, gateway)
        report = await service.reconcile(wallet_id)
        for item in report.unresolved:
            ...  # manual review
    """

    def __init__(
        self,
        machine: TransactionStateMachine,
        deposits: DepositConfirmationTracker,
        ledger: LedgerGateway,
        settings: Optional[QuorumSettings] = None,
        retry_config: Optional[RetryConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._machine = machine
        self._deposits = deposits
        self._ledger = ledger
        self._settings = settings or get_settings()
        self._retry = retry_config or RetryConfig.from_settings(self._settings)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _discrepancy(self, kind: DiscrepancyType, wallet_id: str, resource_type: str, resource_id: str, **kwargs) -> Discrepancy:
        return Discrepancy(
            discrepancy_id=f"disc_{secrets.token_hex(8)}",
            discrepancy_type=kind,
            wallet_id=wallet_id,
            resource_type=resource_type,
            resource_id=resource_id,
            detected_at=self._clock(),
            **kwargs,
        )

    async def _confirmations(self, tx_hash: str, report: ReconciliationReport, resource_id: str) -> Optional[int]:
        try:
            return await retry_async(self._ledger.get_confirmations, tx_hash, config=self._retry)
        except RetryExhausted as e:
            logger.warning(f"Ledger confirmations unavailable for {resource_id}: {e}")
            report.errors.append({"resource_id": resource_id, "error": str(e.original_exception)})
        except QuorumException as e:
            logger.warning(f"Ledger rejected confirmation lookup for {resource_id}: {e.message}")
            report.errors.append({"resource_id": resource_id, "error": e.message})
        return None

    async def reconcile(self, wallet_id: Optional[str] = None) -> ReconciliationReport:
        report = ReconciliationReport(started_at=self._clock(), wallet_id=wallet_id)
        await self._reconcile_transactions(wallet_id, report)
        await self._reconcile_deposits(wallet_id, report)
        report.completed_at = self._clock()

        logger.info(
            f"Reconciliation finished: {report.transactions_checked} transaction(s), "
            f"{report.deposits_checked} deposit(s), {len(report.discrepancies)} discrepancy(ies), "
            f"{len(report.unresolved)} unresolved"
        )
        return report

    async def _reconcile_transactions(self, wallet_id: Optional[str], report: ReconciliationReport) -> None:
        stale_before = self._clock() - timedelta(seconds=self._settings.stale_execution_seconds)
        executing = await self._machine.list_transactions(wallet_id, status=TransactionStatus.EXECUTING)

        for tx in executing:
            report.transactions_checked += 1
            if tx.chain_receipt is None:
                started = tx.execution_started_at or tx.updated_at
                if started <= stale_before:
                    report.discrepancies.append(
                        self._discrepancy(
                            DiscrepancyType.MISSING_ON_CHAIN,
                            tx.wallet_id,
                            "transaction",
                            tx.transaction_id,
                            description="Executing without a ledger receipt; outcome unknown",
                            resolution_strategy=ResolutionStrategy.MANUAL_REVIEW,
                        )
                    )
                continue

            tx_hash = tx.chain_receipt.tx_hash
            confirmations = await self._confirmations(tx_hash, report, tx.transaction_id)
            if not confirmations:
                continue

            discrepancy = self._discrepancy(
                DiscrepancyType.STATUS_MISMATCH,
                tx.wallet_id,
                "transaction",
                tx.transaction_id,
                chain_tx_hash=tx_hash,
                description=f"Confirmed on chain ({confirmations}) but recorded as executing",
                resolution_strategy=ResolutionStrategy.AUTO_CORRECT_LEDGER,
            )
            try:
                await self._machine.settle_from_ledger(tx.transaction_id)
                discrepancy.is_resolved = True
            except QuorumException as e:
                logger.warning(f"Could not settle {tx.transaction_id}: {e.message}")
                report.errors.append({"resource_id": tx.transaction_id, "error": e.message})
            report.discrepancies.append(discrepancy)

    async def _reconcile_deposits(self, wallet_id: Optional[str], report: ReconciliationReport) -> None:
        for deposit in await self._deposits.list_pending_confirmations(wallet_id):
            report.deposits_checked += 1
            confirmations = await self._confirmations(deposit.chain_tx_hash, report, deposit.deposit_id)
            if confirmations is None or confirmations < deposit.required_confirmations:
                continue

            discrepancy = self._discrepancy(
                DiscrepancyType.UNCONFIRMED_DEPOSIT,
                deposit.wallet_id,
                "deposit",
                deposit.deposit_id,
                chain_tx_hash=deposit.chain_tx_hash,
                description=f"Chain reports {confirmations} confirmation(s), deposit still pending",
                resolution_strategy=ResolutionStrategy.AUTO_CORRECT_LEDGER,
            )
            try:
                await self._deposits.confirm_deposit(deposit.deposit_id, None, confirmations)
                discrepancy.is_resolved = True
            except QuorumException as e:
                logger.warning(f"Could not confirm deposit {deposit.deposit_id}: {e.message}")
                report.errors.append({"resource_id": deposit.deposit_id, "error": e.message})
            report.discrepancies.append(discrepancy)


__all__ = [
    "DiscrepancyType",
    "ResolutionStrategy",
    "Discrepancy",
    "ReconciliationReport",
    "ReconciliationService",
]
