"""
Inbound deposit confirmation lifecycle.

    pending --> confirmed
       |  ^
       |  +---- failed (retry_deposit)
       +------> failed
       +------> cancelled

A chain transaction hash is claimed for a wallet on registration and never
released, so one hash can credit a wallet at most once. Confirming a
deposit may hand the amount to the fund split engine when the wallet has
auto-executing deposit rules.
"""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from .audit_log import AuditAction, AuditCategory, AuditLogger
from .config import QuorumSettings, get_settings
from .exceptions import (
    AlreadyConfirmed,
    DepositNotPending,
    DuplicateDepositHash,
    InsufficientConfirmations,
    NotParticipant,
    QuorumException,
    QuorumValidationError,
)
from .fund_split import DistributionPlan, FundSplitEngine, TriggerEvent
from .interfaces import NotificationService, send_notification
from .repository import EntityLocks, EntityStore, InMemoryEntityStore
from .transactions import to_plain, validate_amount
from .wallets import WalletRegistry

logger = logging.getLogger(__name__)

DEPOSIT_LOCK = "deposit"
HASH_INDEX_LOCK = "deposit_hash"


class DepositStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class Deposit:
    """Funds claimed to have arrived on chain for a wallet."""
    deposit_id: str
    wallet_id: str
    amount: Decimal
    source_address: str
    chain_tx_hash: str
    required_confirmations: int
    currency: str = "USDC"
    memo: Optional[str] = None
    status: DepositStatus = DepositStatus.PENDING
    confirmations: int = 0
    block_number: Optional[int] = None
    fee: Optional[Decimal] = None
    registered_by: Optional[str] = None
    registered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    retry_count: int = 0
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deposit_id": self.deposit_id,
            "wallet_id": self.wallet_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "source_address": self.source_address,
            "chain_tx_hash": self.chain_tx_hash,
            "memo": self.memo,
            "status": self.status.value,
            "confirmations": self.confirmations,
            "required_confirmations": self.required_confirmations,
            "block_number": self.block_number,
            "fee": str(self.fee) if self.fee is not None else None,
            "registered_by": self.registered_by,
            "registered_at": self.registered_at.isoformat(),
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "cancellation_reason": self.cancellation_reason,
            "failed_at": self.failed_at.isoformat() if self.failed_at else None,
            "failure_reason": self.failure_reason,
            "retry_count": self.retry_count,
            "version": self.version,
        }


@dataclass
class DepositConfirmation:
    """Confirmed deposit plus the distribution it triggered, if any."""
    deposit: Deposit
    distribution: Optional[DistributionPlan] = None
    split_error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deposit": self.deposit.to_dict(),
            "distribution": self.distribution.to_dict() if self.distribution else None,
            "split_error": self.split_error,
        }


def _required_text(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise QuorumValidationError(f"{field_name} is required", field=field_name)
    return value.strip()


class DepositConfirmationTracker:
    """
    Tracks deposits from registration until chain confirmation.

    Usage:
        tracker = DepositConfirmationTracker(wallets=registry, fund_split=engine)
        deposit = await tracker.register_deposit(wallet_id, "250", "GSRC..", "0xabc..")
        result = await tracker.confirm_deposit(deposit.deposit_id, block_number=812, confirmations=3)
    """

    def __init__(
        self,
        wallets: WalletRegistry,
        store: Optional[EntityStore[Deposit]] = None,
        locks: Optional[EntityLocks] = None,
        settings: Optional[QuorumSettings] = None,
        audit: Optional[AuditLogger] = None,
        fund_split: Optional[FundSplitEngine] = None,
        notifier: Optional[NotificationService] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._wallets = wallets
        self._store = store or InMemoryEntityStore("Deposit", "deposit_id")
        self._locks = locks or EntityLocks()
        self._settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._audit = audit or AuditLogger(clock=self._clock)
        self._fund_split = fund_split
        self._notifier = notifier

    async def _record(
        self,
        deposit: Deposit,
        action: AuditAction,
        actor: Optional[str],
        old_status: Optional[DepositStatus] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self._audit.log(
            wallet_id=deposit.wallet_id,
            category=AuditCategory.DEPOSIT,
            action=action,
            actor_id=actor,
            resource_type="deposit",
            resource_id=deposit.deposit_id,
            old_status=old_status.value if old_status else None,
            new_status=deposit.status.value,
            details=details,
        )

    async def _save(self, deposit: Deposit) -> None:
        deposit.updated_at = self._clock()
        await self._store.update(deposit, expected_version=deposit.version)

    async def register_deposit(
        self,
        wallet_id: str,
        amount: Union[Decimal, str],
        source_address: str,
        chain_tx_hash: str,
        memo: Optional[str] = None,
        registered_by: Optional[str] = None,
        required_confirmations: Optional[int] = None,
        currency: Optional[str] = None,
    ) -> Deposit:
        """Register a pending deposit.

        Raises:
            DuplicateDepositHash: The hash was already registered for the wallet
            WalletSuspended: The wallet is not active
        """
        value = validate_amount(amount, self._settings)
        source = _required_text(source_address, "source_address")
        tx_hash = _required_text(chain_tx_hash, "chain_tx_hash")
        if memo is not None and len(memo) > 500:
            raise QuorumValidationError("Memo exceeds 500 characters", field="memo")

        minimum = self._settings.min_deposit_confirmations
        required = minimum if required_confirmations is None else required_confirmations
        if isinstance(required, bool) or not isinstance(required, int) or required < minimum:
            raise QuorumValidationError(
                f"required_confirmations must be an integer of at least {minimum}",
                field="required_confirmations",
            )

        wallet = await self._wallets.get_wallet(wallet_id)
        WalletRegistry.require_active(wallet)
        if registered_by is not None and not wallet.is_participant(registered_by):
            raise NotParticipant(registered_by, wallet_id)

        hash_key = tx_hash.lower()
        async with self._locks.get(HASH_INDEX_LOCK, wallet_id):
            # Cancelled and failed deposits keep their hash claimed.
            existing = await self._store.list(
                lambda d: d.wallet_id == wallet_id and d.chain_tx_hash.lower() == hash_key
            )
            if existing:
                raise DuplicateDepositHash(wallet_id, tx_hash, existing[0].deposit_id)

            now = self._clock()
            deposit = Deposit(
                deposit_id=f"dep_{secrets.token_hex(8)}",
                wallet_id=wallet_id,
                amount=value,
                currency=currency or self._settings.default_currency,
                source_address=source,
                chain_tx_hash=tx_hash,
                memo=memo,
                required_confirmations=required,
                registered_by=registered_by,
                registered_at=now,
                updated_at=now,
            )
            await self._store.create(deposit)

        await self._record(
            deposit,
            AuditAction.DEPOSIT_REGISTERED,
            registered_by,
            details={"amount": str(value), "chain_tx_hash": tx_hash},
        )
        await send_notification(self._notifier, "deposit_registered", wallet_id, deposit.to_dict())
        logger.info(f"Registered deposit {deposit.deposit_id} of {value} on wallet {wallet_id}")
        return deposit

    @staticmethod
    def _require_pending(deposit: Deposit) -> None:
        if deposit.status == DepositStatus.CONFIRMED:
            raise AlreadyConfirmed(deposit.deposit_id)
        if deposit.status != DepositStatus.PENDING:
            raise DepositNotPending(deposit.deposit_id, deposit.status.value)

    async def confirm_deposit(
        self,
        deposit_id: str,
        block_number: Optional[int],
        confirmations: int,
        fee: Optional[Union[Decimal, str]] = None,
    ) -> DepositConfirmation:
        """Confirm a pending deposit once the chain reports enough confirmations.

        Raises:
            InsufficientConfirmations: Below the deposit's requirement, stays pending
            AlreadyConfirmed: The deposit is already confirmed
            DepositNotPending: The deposit failed or was cancelled
        """
        if isinstance(confirmations, bool) or not isinstance(confirmations, int) or confirmations < 0:
            raise QuorumValidationError("confirmations must be a non-negative integer", field="confirmations")
        fee_value = None
        if fee is not None:
            try:
                fee_value = Decimal(str(fee))
            except InvalidOperation:
                raise QuorumValidationError(f"Invalid fee: {fee!r}", field="fee") from None
            if not fee_value.is_finite() or fee_value < 0:
                raise QuorumValidationError("fee must be a non-negative amount", field="fee")

        async with self._locks.get(DEPOSIT_LOCK, deposit_id):
            deposit = await self._store.require(deposit_id)
            self._require_pending(deposit)
            if confirmations < deposit.required_confirmations:
                raise InsufficientConfirmations(deposit_id, confirmations, deposit.required_confirmations)

            deposit.status = DepositStatus.CONFIRMED
            deposit.confirmations = confirmations
            deposit.block_number = block_number
            deposit.fee = fee_value
            deposit.confirmed_at = self._clock()
            await self._save(deposit)
            await self._record(
                deposit,
                AuditAction.DEPOSIT_CONFIRMED,
                None,
                DepositStatus.PENDING,
                details={"confirmations": confirmations, "block_number": block_number},
            )

        logger.info(f"Deposit {deposit_id} confirmed with {confirmations} confirmation(s)")
        await send_notification(self._notifier, "deposit_confirmed", deposit.wallet_id, deposit.to_dict())

        result = DepositConfirmation(deposit=deposit)
        if self._fund_split is not None and await self._fund_split.has_auto_rules(
            deposit.wallet_id, TriggerEvent.DEPOSIT
        ):
            try:
                result.distribution = await self._fund_split.evaluate(
                    deposit.wallet_id,
                    deposit.amount,
                    TriggerEvent.DEPOSIT,
                    deposit_id=deposit.deposit_id,
                    currency=deposit.currency,
                )
            except QuorumException as e:
                logger.error(f"Fund split for deposit {deposit_id} failed: {e.message}")
                result.split_error = e.to_dict()
        return result

    async def cancel_deposit(
        self,
        deposit_id: str,
        cancelled_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Deposit:
        async with self._locks.get(DEPOSIT_LOCK, deposit_id):
            deposit = await self._store.require(deposit_id)
            if cancelled_by is not None:
                wallet = await self._wallets.get_wallet(deposit.wallet_id)
                if not wallet.is_participant(cancelled_by):
                    raise NotParticipant(cancelled_by, deposit.wallet_id)
            self._require_pending(deposit)

            deposit.status = DepositStatus.CANCELLED
            deposit.cancelled_at = self._clock()
            deposit.cancelled_by = cancelled_by
            deposit.cancellation_reason = reason
            await self._save(deposit)
            await self._record(
                deposit, AuditAction.DEPOSIT_CANCELLED, cancelled_by, DepositStatus.PENDING, {"reason": reason}
            )
            logger.info(f"Deposit {deposit_id} cancelled")
            return deposit

    async def fail_deposit(self, deposit_id: str, reason: str) -> Deposit:
        """Mark a pending deposit failed, e.g. the chain reported a revert."""
        failure = _required_text(reason, "reason")
        async with self._locks.get(DEPOSIT_LOCK, deposit_id):
            deposit = await self._store.require(deposit_id)
            self._require_pending(deposit)

            deposit.status = DepositStatus.FAILED
            deposit.failed_at = self._clock()
            deposit.failure_reason = failure
            await self._save(deposit)
            await self._record(
                deposit, AuditAction.DEPOSIT_FAILED, None, DepositStatus.PENDING, {"reason": failure}
            )
            logger.warning(f"Deposit {deposit_id} failed: {failure}")
            return deposit

    async def retry_deposit(self, deposit_id: str, retried_by: Optional[str] = None) -> Deposit:
        async with self._locks.get(DEPOSIT_LOCK, deposit_id):
            deposit = await self._store.require(deposit_id)
            if deposit.status != DepositStatus.FAILED:
                raise DepositNotPending(deposit_id, deposit.status.value)

            deposit.status = DepositStatus.PENDING
            deposit.retry_count += 1
            deposit.failed_at = None
            deposit.failure_reason = None
            await self._save(deposit)
            await self._record(
                deposit,
                AuditAction.DEPOSIT_RETRIED,
                retried_by,
                DepositStatus.FAILED,
                {"retry_count": deposit.retry_count},
            )
            return deposit

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_deposit(self, deposit_id: str) -> Deposit:
        return await self._store.require(deposit_id)

    async def list_deposits(
        self,
        wallet_id: Optional[str] = None,
        status: Optional[Union[DepositStatus, str]] = None,
    ) -> List[Deposit]:
        """Newest-first deposits."""
        try:
            status_filter = DepositStatus(status) if status is not None else None
        except ValueError:
            raise QuorumValidationError(f"Unknown deposit status: {status}", field="status") from None
        deposits = await self._store.list(
            lambda d: (wallet_id is None or d.wallet_id == wallet_id)
            and (status_filter is None or d.status == status_filter)
        )
        return sorted(deposits, key=lambda d: d.registered_at, reverse=True)

    async def list_pending_confirmations(self, wallet_id: Optional[str] = None) -> List[Deposit]:
        """Oldest-first pending deposits awaiting chain confirmations."""
        deposits = await self._store.list(
            lambda d: d.status == DepositStatus.PENDING
            and (wallet_id is None or d.wallet_id == wallet_id)
        )
        return sorted(deposits, key=lambda d: d.registered_at)

    async def get_wallet_stats(self, wallet_id: str, period_days: int = 30) -> Dict[str, Any]:
        if isinstance(period_days, bool) or not isinstance(period_days, int) or period_days < 1:
            raise QuorumValidationError("period_days must be a positive integer", field="period_days")
        await self._wallets.get_wallet(wallet_id)

        since = self._clock() - timedelta(days=period_days)
        deposits = [d for d in await self.list_deposits(wallet_id) if d.registered_at >= since]

        by_status = {s.value: {"count": 0, "total_amount": Decimal("0")} for s in DepositStatus}
        confirmation_seconds: List[float] = []
        for deposit in deposits:
            by_status[deposit.status.value]["count"] += 1
            by_status[deposit.status.value]["total_amount"] += deposit.amount
            if deposit.confirmed_at is not None:
                confirmation_seconds.append((deposit.confirmed_at - deposit.registered_at).total_seconds())

        return {
            "wallet_id": wallet_id,
            "period_days": period_days,
            "total_deposits": len(deposits),
            "by_status": to_plain(by_status),
            "total_confirmed": str(by_status[DepositStatus.CONFIRMED.value]["total_amount"]),
            "average_confirmation_seconds": (
                round(sum(confirmation_seconds) / len(confirmation_seconds), 2)
                if confirmation_seconds else None
            ),
        }


__all__ = [
    "DepositStatus",
    "Deposit",
    "DepositConfirmation",
    "DepositConfirmationTracker",
]
