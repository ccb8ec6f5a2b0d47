"""
Transaction proposal state machine.

    proposed --> approved --> executing --> executed
        |           |  ^          |
        |           |  +----------+ (transient ledger failure, retry)
        |           |             +--> failed (permanent error / attempts exhausted)
        +-----------+--> rejected
        +-----------+--> expired

Every transition of one transaction happens under its entity lock. The lock
is released while the ledger gateway call is in flight and re-acquired to
record the outcome. Expiry is evaluated lazily at the start of each
operation; ``sweep_expired`` can additionally be run for reporting.
"""
from __future__ import annotations

import asyncio
import json
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, List, Literal, Optional, Set, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .audit_log import AuditAction, AuditCategory, AuditLogger
from .config import QuorumSettings, get_settings
from .exceptions import (
    AlreadyExecuted,
    AlreadySigned,
    ExecutionFailed,
    ExecutionInProgress,
    InvalidStateTransition,
    LedgerPermanentError,
    LedgerTransientError,
    NotApproved,
    NotParticipant,
    QuorumStateError,
    QuorumValidationError,
    TransactionExpired,
)
from .idempotency import IdempotencyManager
from .interfaces import LedgerGateway, LedgerReceipt, NotificationService, send_notification
from .repository import EntityLocks, EntityStore, InMemoryEntityStore
from .retry import RetryConfig
from .wallets import MultisigWallet, WalletRegistry

logger = logging.getLogger(__name__)

TRANSACTION_LOCK = "transaction"
SYSTEM_ACTOR = "system"


class TransactionType(str, Enum):
    PAYMENT = "payment"
    DEPOSIT = "deposit"
    DIVISION = "division"
    CONFIGURATION = "configuration"


class TransactionStatus(str, Enum):
    PROPOSED = "proposed"
    APPROVED = "approved"
    EXECUTING = "executing"
    EXECUTED = "executed"
    REJECTED = "rejected"
    EXPIRED = "expired"
    FAILED = "failed"


_TRANSITIONS: Dict[TransactionStatus, Set[TransactionStatus]] = {
    TransactionStatus.PROPOSED: {
        TransactionStatus.APPROVED,
        TransactionStatus.REJECTED,
        TransactionStatus.EXPIRED,
    },
    TransactionStatus.APPROVED: {
        TransactionStatus.EXECUTING,
        TransactionStatus.REJECTED,
        TransactionStatus.EXPIRED,
    },
    TransactionStatus.EXECUTING: {
        TransactionStatus.EXECUTED,
        TransactionStatus.APPROVED,
        TransactionStatus.FAILED,
    },
}

OPEN_STATUSES = frozenset({TransactionStatus.PROPOSED, TransactionStatus.APPROVED})
TERMINAL_STATUSES = frozenset({
    TransactionStatus.EXECUTED,
    TransactionStatus.REJECTED,
    TransactionStatus.EXPIRED,
    TransactionStatus.FAILED,
})


# =============================================================================
# Payload schemas
# =============================================================================

class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class PaymentPayload(_Payload):
    recipient: str = Field(min_length=1, max_length=256)
    amount: Decimal
    currency: Optional[str] = Field(default=None, max_length=16)
    memo: Optional[str] = Field(default=None, max_length=500)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class DepositPayload(_Payload):
    amount: Decimal
    source_address: str = Field(min_length=1, max_length=256)
    chain_tx_hash: str = Field(min_length=1, max_length=256)
    currency: Optional[str] = Field(default=None, max_length=16)
    deposit_id: Optional[str] = None
    memo: Optional[str] = Field(default=None, max_length=500)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class DivisionPayload(_Payload):
    recipient: str = Field(min_length=1, max_length=256)
    amount: Decimal
    rule_id: str = Field(min_length=1)
    currency: Optional[str] = Field(default=None, max_length=16)
    deposit_id: Optional[str] = None
    trigger_event: Optional[str] = None
    memo: Optional[str] = Field(default=None, max_length=500)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ConfigurationPayload(_Payload):
    action: Literal["update_threshold", "add_participant", "remove_participant", "set_status", "update_contract"]
    parameters: Dict[str, Any] = Field(default_factory=dict)
    memo: Optional[str] = Field(default=None, max_length=500)
    metadata: Dict[str, Any] = Field(default_factory=dict)


PAYLOAD_SCHEMAS: Dict[TransactionType, Type[_Payload]] = {
    TransactionType.PAYMENT: PaymentPayload,
    TransactionType.DEPOSIT: DepositPayload,
    TransactionType.DIVISION: DivisionPayload,
    TransactionType.CONFIGURATION: ConfigurationPayload,
}


def validate_amount(amount: Any, settings: QuorumSettings, field_name: str = "amount") -> Decimal:
    """Parse an amount and check it against the configured bounds and precision."""
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise QuorumValidationError(f"Invalid amount: {amount!r}", field=field_name) from None
    if not value.is_finite():
        raise QuorumValidationError(f"Invalid amount: {amount!r}", field=field_name)
    if value < settings.min_amount or value > settings.max_amount:
        raise QuorumValidationError(
            f"Amount must be between {settings.min_amount} and {settings.max_amount}",
            field=field_name,
            details={"amount": str(value)},
        )
    if value != value.quantize(settings.amount_quantum):
        raise QuorumValidationError(
            f"Amount has more than {settings.decimal_places} decimal places",
            field=field_name,
            details={"amount": str(value)},
        )
    return value


def validate_payload(
    transaction_type: TransactionType,
    payload: Dict[str, Any],
    settings: QuorumSettings,
) -> Dict[str, Any]:
    schema = PAYLOAD_SCHEMAS[transaction_type]
    try:
        model = schema.model_validate(payload or {})
    except ValidationError as e:
        raise QuorumValidationError(
            f"Invalid {transaction_type.value} payload",
            field="payload",
            details={
                "errors": [
                    {"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"]}
                    for err in e.errors()
                ]
            },
        ) from None

    data = model.model_dump()
    if "amount" in data:
        data["amount"] = validate_amount(data["amount"], settings)
    if "currency" in data and not data["currency"]:
        data["currency"] = settings.default_currency
    return data


def to_plain(value: Any) -> Any:
    """Convert Decimals and datetimes inside nested payloads to strings."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    return value


# =============================================================================
# Entities
# =============================================================================

@dataclass
class Signature:
    signer: str
    public_key: str
    signature: str
    signed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signer": self.signer,
            "public_key": self.public_key,
            "signature": self.signature,
            "signed_at": self.signed_at.isoformat(),
        }


@dataclass
class Transaction:
    """A proposal to move value out of (or account value into) a wallet."""
    transaction_id: str
    wallet_id: str
    transaction_type: TransactionType
    payload: Dict[str, Any]
    required_signatures: int
    expires_at: datetime
    status: TransactionStatus = TransactionStatus.PROPOSED
    signatures: List[Signature] = field(default_factory=list)
    proposed_by: str = SYSTEM_ACTOR
    proposed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    approved_at: Optional[datetime] = None
    execution_started_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    failed_at: Optional[datetime] = None
    chain_receipt: Optional[LedgerReceipt] = None
    retry_count: int = 0
    execution_error: Optional[str] = None
    version: int = 0

    @property
    def amount(self) -> Optional[Decimal]:
        return self.payload.get("amount")

    @property
    def signers(self) -> Set[str]:
        return {s.signer for s in self.signatures}

    @property
    def signature_count(self) -> int:
        return len(self.signers)

    def valid_signatures(self, wallet: MultisigWallet) -> List[Signature]:
        """Signatures from current members whose registered key still matches."""
        valid = []
        for s in self.signatures:
            participant = wallet.get_participant(s.signer)
            if participant is not None and participant.public_key == s.public_key:
                valid.append(s)
        return valid

    def valid_signature_count(self, wallet: MultisigWallet) -> int:
        return len({s.signer for s in self.valid_signatures(wallet)})

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def has_signed(self, identity: str) -> bool:
        return identity in self.signers

    def canonical_payload(self) -> bytes:
        """The exact bytes every participant signs."""
        body = {
            "transaction_id": self.transaction_id,
            "wallet_id": self.wallet_id,
            "transaction_type": self.transaction_type.value,
            "payload": to_plain(self.payload),
            "proposed_at": self.proposed_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }
        return json.dumps(body, sort_keys=True, separators=(",", ":")).encode()

    def ledger_payload(self, wallet: MultisigWallet) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "wallet_id": self.wallet_id,
            "contract_ref": wallet.contract_ref,
            "transaction_type": self.transaction_type.value,
            "payload": to_plain(self.payload),
            "signatures": [
                {"signer": s.signer, "public_key": s.public_key, "signature": s.signature}
                for s in self.valid_signatures(wallet)
            ],
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "wallet_id": self.wallet_id,
            "transaction_type": self.transaction_type.value,
            "payload": to_plain(self.payload),
            "status": self.status.value,
            "signatures": [s.to_dict() for s in self.signatures],
            "signature_count": self.signature_count,
            "required_signatures": self.required_signatures,
            "proposed_by": self.proposed_by,
            "proposed_at": self.proposed_at.isoformat(),
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
            "expires_at": self.expires_at.isoformat(),
            "rejected_by": self.rejected_by,
            "rejection_reason": self.rejection_reason,
            "chain_receipt": self.chain_receipt.to_dict() if self.chain_receipt else None,
            "retry_count": self.retry_count,
            "execution_error": self.execution_error,
            "version": self.version,
        }


@dataclass
class ThresholdEvaluation:
    """Outcome of re-checking the threshold after a signature."""
    signature_count: int
    required: int
    threshold_reached: bool
    approved_now: bool = False
    execution_claimed: bool = False


# =============================================================================
# State machine
# =============================================================================

class TransactionStateMachine:
    """
    Drives proposals through propose -> sign -> approve -> execute.

    Usage:
        machine = TransactionStateMachine(wallets=registry, ledger=gateway)
        tx = await machine.propose(wallet_id, "payment", {"recipient": "G...", "amount": "100"}, proposed_by="alice")
        ...  # signatures via SignatureCollector
        tx = await machine.execute(tx.transaction_id, idempotency_key="req-1")
    """

    def __init__(
        self,
        wallets: WalletRegistry,
        ledger: LedgerGateway,
        store: Optional[EntityStore[Transaction]] = None,
        locks: Optional[EntityLocks] = None,
        settings: Optional[QuorumSettings] = None,
        audit: Optional[AuditLogger] = None,
        idempotency: Optional[IdempotencyManager] = None,
        notifier: Optional[NotificationService] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._wallets = wallets
        self._ledger = ledger
        self._store = store or InMemoryEntityStore("Transaction", "transaction_id")
        self._locks = locks or EntityLocks()
        self._settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._audit = audit or AuditLogger(clock=self._clock)
        self._idempotency = idempotency or IdempotencyManager(
            default_ttl_hours=self._settings.idempotency_ttl_hours,
            lock_timeout_seconds=self._settings.stale_execution_seconds,
            clock=self._clock,
        )
        self._notifier = notifier
        self._retry = RetryConfig.from_settings(self._settings)

    @property
    def settings(self) -> QuorumSettings:
        return self._settings

    def lock_for(self, transaction_id: str) -> asyncio.Lock:
        return self._locks.get(TRANSACTION_LOCK, transaction_id)

    # ------------------------------------------------------------------
    # Internal helpers (callers hold the transaction lock)
    # ------------------------------------------------------------------

    def _transition(self, tx: Transaction, target: TransactionStatus) -> TransactionStatus:
        if target not in _TRANSITIONS.get(tx.status, ()):
            raise InvalidStateTransition("Transaction", tx.transaction_id, tx.status.value, target.value)
        previous = tx.status
        tx.status = target
        tx.updated_at = self._clock()
        return previous

    async def _save(self, tx: Transaction) -> None:
        await self._store.update(tx, expected_version=tx.version)

    async def _record(
        self,
        tx: Transaction,
        action: AuditAction,
        actor: Optional[str],
        old_status: Optional[TransactionStatus] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self._audit.log(
            wallet_id=tx.wallet_id,
            category=AuditCategory.TRANSACTION,
            action=action,
            actor_id=actor,
            resource_type="transaction",
            resource_id=tx.transaction_id,
            old_status=old_status.value if old_status else None,
            new_status=tx.status.value,
            details=details,
        )

    async def _expire_if_due(self, tx: Transaction) -> bool:
        if tx.status in OPEN_STATUSES and self._clock() >= tx.expires_at:
            previous = self._transition(tx, TransactionStatus.EXPIRED)
            await self._save(tx)
            await self._record(tx, AuditAction.TRANSACTION_EXPIRED, SYSTEM_ACTOR, previous)
            logger.info(f"Transaction {tx.transaction_id} expired (was {previous.value})")
            return True
        return False

    async def load_current(self, transaction_id: str) -> Transaction:
        """Load a transaction and apply lazy expiry. Caller holds the lock."""
        tx = await self._store.require(transaction_id)
        await self._expire_if_due(tx)
        return tx

    @staticmethod
    def _check_not_closed(tx: Transaction) -> None:
        if tx.status == TransactionStatus.EXPIRED:
            raise TransactionExpired(tx.transaction_id)
        if tx.status in (TransactionStatus.EXECUTED, TransactionStatus.REJECTED, TransactionStatus.FAILED):
            raise AlreadyExecuted(tx.transaction_id, tx.status.value)

    # ------------------------------------------------------------------
    # Propose
    # ------------------------------------------------------------------

    async def propose(
        self,
        wallet_id: str,
        transaction_type: Union[TransactionType, str],
        payload: Dict[str, Any],
        proposed_by: Optional[str] = None,
    ) -> Transaction:
        """Create a proposal. ``proposed_by=None`` marks a system proposal."""
        try:
            tx_type = TransactionType(transaction_type)
        except ValueError:
            raise QuorumValidationError(
                f"Unknown transaction type: {transaction_type}", field="transaction_type"
            ) from None

        wallet = await self._wallets.get_wallet(wallet_id)
        WalletRegistry.require_active(wallet)
        if proposed_by is not None and not wallet.is_participant(proposed_by):
            raise NotParticipant(proposed_by, wallet_id)

        data = validate_payload(tx_type, payload, self._settings)
        now = self._clock()
        tx = Transaction(
            transaction_id=f"tx_{secrets.token_hex(8)}",
            wallet_id=wallet_id,
            transaction_type=tx_type,
            payload=data,
            required_signatures=wallet.threshold,
            proposed_by=proposed_by or SYSTEM_ACTOR,
            proposed_at=now,
            updated_at=now,
            expires_at=now + timedelta(seconds=self._settings.transaction_ttl_seconds),
        )
        await self._store.create(tx)
        await self._record(
            tx,
            AuditAction.TRANSACTION_PROPOSED,
            tx.proposed_by,
            details={"transaction_type": tx_type.value, "amount": data.get("amount")},
        )
        await send_notification(self._notifier, "transaction_proposed", wallet_id, tx.to_dict())
        logger.info(
            f"Proposed {tx_type.value} transaction {tx.transaction_id} on wallet {wallet_id}"
        )
        return tx

    # ------------------------------------------------------------------
    # Signatures and threshold
    # ------------------------------------------------------------------

    def evaluate_threshold(self, tx: Transaction, wallet: MultisigWallet) -> ThresholdEvaluation:
        """Approve once distinct signers reach the wallet threshold.

        Must run under the transaction lock together with the signature
        append. With auto execution enabled the approved -> executing claim
        happens in the same step, so only one caller ever gets
        ``execution_claimed``.
        """
        required = wallet.threshold
        count = tx.valid_signature_count(wallet)
        evaluation = ThresholdEvaluation(
            signature_count=count,
            required=required,
            threshold_reached=count >= required,
        )
        if tx.status == TransactionStatus.PROPOSED and evaluation.threshold_reached:
            now = self._clock()
            self._transition(tx, TransactionStatus.APPROVED)
            tx.approved_at = now
            evaluation.approved_now = True
            if self._settings.auto_execute_on_approval:
                self._transition(tx, TransactionStatus.EXECUTING)
                tx.execution_started_at = now
                evaluation.execution_claimed = True
        return evaluation

    async def record_signature(
        self,
        tx: Transaction,
        signature: Signature,
        wallet: MultisigWallet,
    ) -> ThresholdEvaluation:
        """Append a verified signature and re-evaluate the threshold.

        Caller holds the transaction lock and has loaded ``tx`` under it.
        """
        if tx.has_signed(signature.signer):
            raise AlreadySigned(signature.signer, tx.transaction_id)

        tx.signatures.append(signature)
        tx.updated_at = self._clock()
        evaluation = self.evaluate_threshold(tx, wallet)
        await self._save(tx)

        await self._record(
            tx,
            AuditAction.SIGNATURE_ADDED,
            signature.signer,
            details={"signature_count": evaluation.signature_count, "required": evaluation.required},
        )
        if evaluation.approved_now:
            await self._record(tx, AuditAction.TRANSACTION_APPROVED, signature.signer, TransactionStatus.PROPOSED)
            await send_notification(self._notifier, "transaction_approved", tx.wallet_id, tx.to_dict())
            logger.info(
                f"Transaction {tx.transaction_id} approved with "
                f"{evaluation.signature_count}/{evaluation.required} signatures"
            )
        if evaluation.execution_claimed:
            await self._record(tx, AuditAction.EXECUTION_STARTED, SYSTEM_ACTOR, TransactionStatus.APPROVED)
        return evaluation

    # ------------------------------------------------------------------
    # Execute
    # ------------------------------------------------------------------

    async def execute(
        self,
        transaction_id: str,
        idempotency_key: Optional[str] = None,
        executed_by: Optional[str] = None,
    ) -> Transaction:
        """Submit an approved transaction to the ledger.

        Raises:
            NotApproved: Still collecting signatures
            ExecutionInProgress: Another caller holds the executing claim
            AlreadyExecuted: Executed, rejected or failed
            TransactionExpired: Past its deadline
            LedgerTransientError: Ledger unavailable, carries retry_after
            ExecutionFailed: Permanent failure, the transaction is now failed
        """
        if not idempotency_key:
            return await self._execute(transaction_id, executed_by)

        result, is_duplicate = await self._idempotency.execute_idempotent(
            idempotency_key=idempotency_key,
            operation="execute_transaction",
            request_data={"transaction_id": transaction_id},
            execute_fn=lambda: self._execute(transaction_id, executed_by),
            serialize_fn=lambda tx: {"transaction_id": tx.transaction_id, "status": tx.status.value},
            actor=executed_by,
        )
        if is_duplicate:
            logger.info(f"Replaying execute of {transaction_id} for idempotency key {idempotency_key}")
            return await self._store.require(result["transaction_id"])
        return result

    async def _execute(self, transaction_id: str, executed_by: Optional[str]) -> Transaction:
        async with self.lock_for(transaction_id):
            tx = await self.load_current(transaction_id)
            wallet = await self._wallets.get_wallet(tx.wallet_id)
            if executed_by is not None and not wallet.is_participant(executed_by):
                raise NotParticipant(executed_by, wallet.wallet_id)

            self._check_not_closed(tx)
            if tx.status == TransactionStatus.PROPOSED:
                raise NotApproved(tx.transaction_id, tx.status.value)
            if tx.status == TransactionStatus.EXECUTING:
                raise ExecutionInProgress(tx.transaction_id)
            WalletRegistry.require_active(wallet)
            # Membership may have changed since approval.
            count = tx.valid_signature_count(wallet)
            if count < wallet.threshold:
                logger.warning(
                    f"Transaction {tx.transaction_id} holds {count}/{wallet.threshold} "
                    f"signatures from current members; execution refused"
                )
                raise NotApproved(tx.transaction_id, tx.status.value)

            previous = self._transition(tx, TransactionStatus.EXECUTING)
            tx.execution_started_at = self._clock()
            await self._save(tx)
            await self._record(tx, AuditAction.EXECUTION_STARTED, executed_by or SYSTEM_ACTOR, previous)

        return await self.run_execution(transaction_id, wallet)

    async def run_execution(
        self,
        transaction_id: str,
        wallet: Optional[MultisigWallet] = None,
    ) -> Transaction:
        """Submit a transaction that has already been claimed as executing."""
        tx = await self._store.require(transaction_id)
        if tx.status != TransactionStatus.EXECUTING:
            raise InvalidStateTransition(
                "Transaction", transaction_id, tx.status.value, TransactionStatus.EXECUTED.value
            )
        if wallet is None:
            wallet = await self._wallets.get_wallet(tx.wallet_id)

        receipt: Optional[LedgerReceipt] = None
        error: Optional[Exception] = None
        permanent = False
        try:
            receipt = await self._ledger.submit(tx.ledger_payload(wallet))
        except LedgerPermanentError as e:
            error, permanent = e, True
        except LedgerTransientError as e:
            error = e
        except Exception as e:  # noqa: BLE001 - unknown gateway faults are retried
            logger.exception(f"Unexpected ledger gateway error for transaction {transaction_id}")
            error = e

        async with self.lock_for(transaction_id):
            tx = await self._store.require(transaction_id)
            if tx.status != TransactionStatus.EXECUTING:
                logger.warning(
                    f"Transaction {transaction_id} left executing during ledger call "
                    f"(now {tx.status.value}); outcome not recorded"
                )
                return tx
            if receipt is not None:
                return await self._record_success(tx, receipt)
            return await self._record_failure(tx, error, permanent)

    async def _record_success(self, tx: Transaction, receipt: LedgerReceipt) -> Transaction:
        # Receipt is written before the terminal status; an executing
        # transaction with a receipt is settled by reconciliation.
        tx.chain_receipt = receipt
        tx.execution_error = None
        tx.updated_at = self._clock()
        await self._save(tx)
        await self._record(tx, AuditAction.RECEIPT_RECORDED, SYSTEM_ACTOR, details=receipt.to_dict())
        return await self._settle(tx, source="gateway")

    async def _settle(self, tx: Transaction, source: str) -> Transaction:
        previous = self._transition(tx, TransactionStatus.EXECUTED)
        tx.executed_at = self._clock()
        await self._save(tx)
        await self._record(
            tx,
            AuditAction.TRANSACTION_EXECUTED,
            SYSTEM_ACTOR,
            previous,
            details={"tx_hash": tx.chain_receipt.tx_hash if tx.chain_receipt else None, "source": source},
        )
        await send_notification(self._notifier, "transaction_executed", tx.wallet_id, tx.to_dict())
        logger.info(f"Transaction {tx.transaction_id} executed ({source})")
        return tx

    async def _record_failure(self, tx: Transaction, error: Exception, permanent: bool) -> Transaction:
        tx.retry_count += 1
        tx.execution_error = str(error) or type(error).__name__
        attempts = tx.retry_count

        if permanent or attempts >= self._settings.max_execution_attempts:
            previous = self._transition(tx, TransactionStatus.FAILED)
            tx.failed_at = self._clock()
            await self._save(tx)
            await self._record(
                tx,
                AuditAction.TRANSACTION_FAILED,
                SYSTEM_ACTOR,
                previous,
                details={"attempts": attempts, "error": tx.execution_error, "permanent": permanent},
            )
            await send_notification(self._notifier, "transaction_failed", tx.wallet_id, tx.to_dict())
            logger.error(
                f"Transaction {tx.transaction_id} failed after {attempts} attempt(s): {tx.execution_error}"
            )
            raise ExecutionFailed(tx.transaction_id, attempts, tx.execution_error) from error

        previous = self._transition(tx, TransactionStatus.APPROVED)
        await self._save(tx)
        retry_after = self._retry.calculate_delay(attempts - 1)
        await self._record(
            tx,
            AuditAction.EXECUTION_RETRY_SCHEDULED,
            SYSTEM_ACTOR,
            previous,
            details={"attempts": attempts, "error": tx.execution_error, "retry_after": retry_after},
        )
        logger.warning(
            f"Ledger submit for {tx.transaction_id} failed (attempt {attempts}/"
            f"{self._settings.max_execution_attempts}), retry in {retry_after:.2f}s"
        )
        raise LedgerTransientError(
            f"Ledger unavailable for transaction '{tx.transaction_id}'",
            retry_after=retry_after,
            details={
                "transaction_id": tx.transaction_id,
                "attempts": attempts,
                "max_attempts": self._settings.max_execution_attempts,
            },
        ) from error

    async def settle_from_ledger(self, transaction_id: str) -> Transaction:
        """Mark an executing transaction with a recorded receipt as executed.

        Used by reconciliation once the ledger reports confirmations.
        """
        async with self.lock_for(transaction_id):
            tx = await self._store.require(transaction_id)
            if tx.status != TransactionStatus.EXECUTING or tx.chain_receipt is None:
                raise QuorumStateError(
                    f"Transaction '{transaction_id}' has no pending receipt to settle",
                    current_status=tx.status.value,
                )
            return await self._settle(tx, source="reconciliation")

    # ------------------------------------------------------------------
    # Reject / expire
    # ------------------------------------------------------------------

    async def reject(
        self,
        transaction_id: str,
        reason: str,
        rejected_by: Optional[str] = None,
    ) -> Transaction:
        if not isinstance(reason, str) or not reason.strip():
            raise QuorumValidationError("A rejection reason is required", field="reason")

        async with self.lock_for(transaction_id):
            tx = await self.load_current(transaction_id)
            wallet = await self._wallets.get_wallet(tx.wallet_id)
            if rejected_by is not None and not wallet.is_participant(rejected_by):
                raise NotParticipant(rejected_by, wallet.wallet_id)

            self._check_not_closed(tx)
            previous = self._transition(tx, TransactionStatus.REJECTED)
            tx.rejected_at = self._clock()
            tx.rejected_by = rejected_by or SYSTEM_ACTOR
            tx.rejection_reason = reason.strip()
            await self._save(tx)
            await self._record(
                tx,
                AuditAction.TRANSACTION_REJECTED,
                tx.rejected_by,
                previous,
                details={"reason": tx.rejection_reason},
            )
            await send_notification(self._notifier, "transaction_rejected", tx.wallet_id, tx.to_dict())
            logger.info(f"Transaction {transaction_id} rejected by {tx.rejected_by}")
            return tx

    async def sweep_expired(self, wallet_id: Optional[str] = None) -> List[str]:
        """Expire every open transaction past its deadline. Returns their ids."""
        now = self._clock()
        candidates = await self._store.list(
            lambda t: t.status in OPEN_STATUSES
            and t.expires_at <= now
            and (wallet_id is None or t.wallet_id == wallet_id)
        )
        expired: List[str] = []
        for candidate in candidates:
            async with self.lock_for(candidate.transaction_id):
                tx = await self._store.require(candidate.transaction_id)
                if await self._expire_if_due(tx):
                    expired.append(tx.transaction_id)
        if expired:
            logger.info(f"Expired {len(expired)} stale transaction(s)")
        return expired

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_transaction(self, transaction_id: str) -> Transaction:
        async with self.lock_for(transaction_id):
            return await self.load_current(transaction_id)

    async def list_transactions(
        self,
        wallet_id: Optional[str] = None,
        status: Optional[Union[TransactionStatus, str]] = None,
        transaction_type: Optional[Union[TransactionType, str]] = None,
    ) -> List[Transaction]:
        """Newest-first transactions matching the filters."""
        try:
            status_filter = TransactionStatus(status) if status is not None else None
            type_filter = TransactionType(transaction_type) if transaction_type is not None else None
        except ValueError as e:
            raise QuorumValidationError(str(e)) from None

        await self.sweep_expired(wallet_id)
        transactions = await self._store.list(
            lambda t: (wallet_id is None or t.wallet_id == wallet_id)
            and (status_filter is None or t.status == status_filter)
            and (type_filter is None or t.transaction_type == type_filter)
        )
        return sorted(transactions, key=lambda t: t.proposed_at, reverse=True)

    async def get_wallet_stats(self, wallet_id: str) -> Dict[str, Any]:
        """Counts and amount totals by status and by type."""
        await self._wallets.get_wallet(wallet_id)
        transactions = await self.list_transactions(wallet_id)

        by_status = {s.value: {"count": 0, "total_amount": Decimal("0")} for s in TransactionStatus}
        by_type = {t.value: {"count": 0, "total_amount": Decimal("0")} for t in TransactionType}
        for tx in transactions:
            amount = tx.amount or Decimal("0")
            by_status[tx.status.value]["count"] += 1
            by_status[tx.status.value]["total_amount"] += amount
            by_type[tx.transaction_type.value]["count"] += 1
            by_type[tx.transaction_type.value]["total_amount"] += amount

        return {
            "wallet_id": wallet_id,
            "total_transactions": len(transactions),
            "awaiting_signatures": by_status[TransactionStatus.PROPOSED.value]["count"],
            "by_status": to_plain(by_status),
            "by_type": to_plain(by_type),
        }


__all__ = [
    "TransactionType",
    "TransactionStatus",
    "OPEN_STATUSES",
    "TERMINAL_STATUSES",
    "SYSTEM_ACTOR",
    "PaymentPayload",
    "DepositPayload",
    "DivisionPayload",
    "ConfigurationPayload",
    "Signature",
    "Transaction",
    "ThresholdEvaluation",
    "TransactionStateMachine",
    "validate_amount",
    "validate_payload",
    "to_plain",
]
