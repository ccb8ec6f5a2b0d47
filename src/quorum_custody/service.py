"""
Result-returning custody facade for the transport layer.

Every public coroutine resolves the caller token through the
IdentityProvider, binds the logging context and returns an
OperationResult. Domain exceptions become structured errors; anything
unexpected is logged with its context and surfaced as a generic internal
error.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from .audit_log import AuditLogger
from .config import QuorumSettings, get_settings
from .deposits import DepositConfirmationTracker
from .exceptions import NotParticipant, QuorumException, QuorumInternalError, QuorumValidationError
from .fund_split import FundSplitEngine, RuleDefinition, TriggerEvent
from .idempotency import IdempotencyManager
from .interfaces import IdentityProvider, LedgerGateway, NotificationService, SignatureVerifier
from .logging_config import LogContext, generate_correlation_id
from .reconciliation import ReconciliationService
from .repository import EntityLocks
from .signatures import SignatureCollector
from .transactions import TransactionStateMachine
from .verifiers import Ed25519SignatureVerifier
from .wallets import MultisigWallet, ParticipantInput, WalletRegistry, WalletStatus

logger = logging.getLogger(__name__)


@dataclass
class OperationError:
    kind: str
    code: str
    message: str
    http_status: int
    details: Optional[Dict[str, Any]] = None

    @classmethod
    def from_exception(cls, exc: QuorumException) -> "OperationError":
        return cls(
            kind=exc.kind.value,
            code=exc.error_code,
            message=exc.message,
            http_status=exc.http_status,
            details=exc.details or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "code": self.code,
            "message": self.message,
            "http_status": self.http_status,
            "details": self.details,
        }


@dataclass
class OperationResult:
    """Plain success/failure envelope. Never carries a raw exception."""
    success: bool
    data: Any = None
    error: Optional[OperationError] = None

    @classmethod
    def ok(cls, data: Any = None) -> "OperationResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, exc: QuorumException) -> "OperationResult":
        return cls(success=False, error=OperationError.from_exception(exc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error.to_dict() if self.error else None,
        }


def _serialize(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, list):
        return [_serialize(v) for v in value]
    return value


class CustodyService:
    """
    Wires the custody components together and exposes the caller-facing surface.

    Usage:
        service = CustodyService(ledger=gateway, identity=provider)
        result = await service.propose_transaction(token, wallet_id, "payment", {...})
        if not result.success:
            return result.error.http_status, result.error.to_dict()
    """

    def __init__(
        self,
        ledger: LedgerGateway,
        identity: IdentityProvider,
        verifier: Optional[SignatureVerifier] = None,
        settings: Optional[QuorumSettings] = None,
        notifier: Optional[NotificationService] = None,
        audit: Optional[AuditLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._identity = identity
        locks = EntityLocks()

        self.audit = audit or AuditLogger(clock=self._clock)
        self.wallets = WalletRegistry(locks=locks, audit=self.audit, settings=self._settings, clock=self._clock)
        self.transactions = TransactionStateMachine(
            wallets=self.wallets,
            ledger=ledger,
            locks=locks,
            settings=self._settings,
            audit=self.audit,
            idempotency=IdempotencyManager(
                default_ttl_hours=self._settings.idempotency_ttl_hours,
                lock_timeout_seconds=self._settings.stale_execution_seconds,
                clock=self._clock,
            ),
            notifier=notifier,
            clock=self._clock,
        )
        self.signatures = SignatureCollector(
            self.transactions,
            self.wallets,
            verifier or Ed25519SignatureVerifier(),
            clock=self._clock,
        )
        self.fund_split = FundSplitEngine(
            wallets=self.wallets,
            transactions=self.transactions,
            locks=locks,
            settings=self._settings,
            audit=self.audit,
            notifier=notifier,
            clock=self._clock,
        )
        self.deposits = DepositConfirmationTracker(
            wallets=self.wallets,
            locks=locks,
            settings=self._settings,
            audit=self.audit,
            fund_split=self.fund_split,
            notifier=notifier,
            clock=self._clock,
        )
        self.reconciliation = ReconciliationService(
            self.transactions,
            self.deposits,
            ledger,
            settings=self._settings,
            clock=self._clock,
        )

    async def _run(
        self,
        operation: str,
        token: str,
        call: Callable[[str], Awaitable[Any]],
        wallet_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> OperationResult:
        with LogContext(
            correlation_id=generate_correlation_id(),
            wallet_id=wallet_id,
            transaction_id=transaction_id,
            operation=operation,
        ):
            try:
                actor = await self._identity.resolve(token)
                return OperationResult.ok(_serialize(await call(actor)))
            except QuorumException as e:
                logger.info(f"{operation} refused: {e.error_code} {e.message}")
                return OperationResult.fail(e)
            except Exception:
                logger.exception(
                    f"Unexpected error during {operation}",
                    extra={
                        "entity_id": entity_id or transaction_id or wallet_id,
                        "failed_operation": operation,
                        "occurred_at": self._clock().isoformat(),
                    },
                )
                return OperationResult.fail(QuorumInternalError())

    async def _member_wallet(self, wallet_id: str, actor: str) -> MultisigWallet:
        wallet = await self.wallets.get_wallet(wallet_id)
        if not wallet.is_participant(actor):
            raise NotParticipant(actor, wallet_id)
        return wallet

    # ------------------------------------------------------------------
    # Wallets
    # ------------------------------------------------------------------

    async def create_wallet(
        self,
        token: str,
        participants: Sequence[ParticipantInput],
        threshold: int,
        contract_ref: Optional[str] = None,
        name: str = "",
    ) -> OperationResult:
        return await self._run(
            "create_wallet",
            token,
            lambda actor: self.wallets.create_wallet(participants, threshold, contract_ref, name, created_by=actor),
        )

    async def get_wallet(self, token: str, wallet_id: str) -> OperationResult:
        return await self._run(
            "get_wallet", token, lambda actor: self._member_wallet(wallet_id, actor), wallet_id=wallet_id
        )

    async def list_wallets(self, token: str) -> OperationResult:
        return await self._run("list_wallets", token, lambda actor: self.wallets.list_wallets(participant=actor))

    async def update_threshold(self, token: str, wallet_id: str, threshold: int) -> OperationResult:
        return await self._run(
            "update_threshold",
            token,
            lambda actor: self.wallets.update_threshold(wallet_id, threshold, actor),
            wallet_id=wallet_id,
        )

    async def add_participant(
        self,
        token: str,
        wallet_id: str,
        identity: str,
        public_key: str,
        role: str = "participant",
    ) -> OperationResult:
        return await self._run(
            "add_participant",
            token,
            lambda actor: self.wallets.add_participant(wallet_id, identity, public_key, role, actor),
            wallet_id=wallet_id,
        )

    async def remove_participant(self, token: str, wallet_id: str, identity: str) -> OperationResult:
        return await self._run(
            "remove_participant",
            token,
            lambda actor: self.wallets.remove_participant(wallet_id, identity, actor),
            wallet_id=wallet_id,
        )

    async def suspend_wallet(self, token: str, wallet_id: str) -> OperationResult:
        return await self._set_wallet_status("suspend_wallet", token, wallet_id, WalletStatus.SUSPENDED)

    async def activate_wallet(self, token: str, wallet_id: str) -> OperationResult:
        return await self._set_wallet_status("activate_wallet", token, wallet_id, WalletStatus.ACTIVE)

    async def deactivate_wallet(self, token: str, wallet_id: str) -> OperationResult:
        return await self._set_wallet_status("deactivate_wallet", token, wallet_id, WalletStatus.INACTIVE)

    async def _set_wallet_status(
        self, operation: str, token: str, wallet_id: str, status: WalletStatus
    ) -> OperationResult:
        return await self._run(
            operation,
            token,
            lambda actor: self.wallets.set_status(wallet_id, status, actor),
            wallet_id=wallet_id,
        )

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def propose_transaction(
        self,
        token: str,
        wallet_id: str,
        transaction_type: str,
        payload: Dict[str, Any],
    ) -> OperationResult:
        return await self._run(
            "propose_transaction",
            token,
            lambda actor: self.transactions.propose(wallet_id, transaction_type, payload, proposed_by=actor),
            wallet_id=wallet_id,
        )

    async def get_signing_payload(self, token: str, transaction_id: str) -> OperationResult:
        """Canonical bytes a participant signs, as UTF-8 text."""
        async def call(actor: str) -> Dict[str, Any]:
            tx = await self.transactions.get_transaction(transaction_id)
            await self._member_wallet(tx.wallet_id, actor)
            return {
                "transaction_id": transaction_id,
                "payload": SignatureCollector.canonical_payload(tx).decode(),
            }

        return await self._run("get_signing_payload", token, call, transaction_id=transaction_id)

    async def sign_transaction(
        self,
        token: str,
        transaction_id: str,
        public_key: str,
        signature: str,
    ) -> OperationResult:
        return await self._run(
            "sign_transaction",
            token,
            lambda actor: self.signatures.submit_signature(transaction_id, actor, public_key, signature),
            transaction_id=transaction_id,
        )

    async def execute_transaction(
        self,
        token: str,
        transaction_id: str,
        idempotency_key: Optional[str] = None,
    ) -> OperationResult:
        return await self._run(
            "execute_transaction",
            token,
            lambda actor: self.transactions.execute(transaction_id, idempotency_key, executed_by=actor),
            transaction_id=transaction_id,
        )

    async def reject_transaction(self, token: str, transaction_id: str, reason: str) -> OperationResult:
        return await self._run(
            "reject_transaction",
            token,
            lambda actor: self.transactions.reject(transaction_id, reason, rejected_by=actor),
            transaction_id=transaction_id,
        )

    async def get_transaction(self, token: str, transaction_id: str) -> OperationResult:
        async def call(actor: str):
            tx = await self.transactions.get_transaction(transaction_id)
            await self._member_wallet(tx.wallet_id, actor)
            return tx

        return await self._run("get_transaction", token, call, transaction_id=transaction_id)

    async def list_transactions(
        self,
        token: str,
        wallet_id: str,
        status: Optional[str] = None,
        transaction_type: Optional[str] = None,
    ) -> OperationResult:
        async def call(actor: str):
            await self._member_wallet(wallet_id, actor)
            return await self.transactions.list_transactions(wallet_id, status, transaction_type)

        return await self._run("list_transactions", token, call, wallet_id=wallet_id)

    async def get_transaction_stats(self, token: str, wallet_id: str) -> OperationResult:
        async def call(actor: str):
            await self._member_wallet(wallet_id, actor)
            return await self.transactions.get_wallet_stats(wallet_id)

        return await self._run("get_transaction_stats", token, call, wallet_id=wallet_id)

    async def sweep_expired(self, token: str, wallet_id: str) -> OperationResult:
        async def call(actor: str):
            await self._member_wallet(wallet_id, actor)
            return {"expired": await self.transactions.sweep_expired(wallet_id)}

        return await self._run("sweep_expired", token, call, wallet_id=wallet_id)

    # ------------------------------------------------------------------
    # Deposits
    # ------------------------------------------------------------------

    async def register_deposit(
        self,
        token: str,
        wallet_id: str,
        amount: Union[Decimal, str],
        source_address: str,
        chain_tx_hash: str,
        memo: Optional[str] = None,
        required_confirmations: Optional[int] = None,
        currency: Optional[str] = None,
    ) -> OperationResult:
        return await self._run(
            "register_deposit",
            token,
            lambda actor: self.deposits.register_deposit(
                wallet_id,
                amount,
                source_address,
                chain_tx_hash,
                memo,
                registered_by=actor,
                required_confirmations=required_confirmations,
                currency=currency,
            ),
            wallet_id=wallet_id,
        )

    async def _member_deposit(self, deposit_id: str, actor: str):
        deposit = await self.deposits.get_deposit(deposit_id)
        await self._member_wallet(deposit.wallet_id, actor)
        return deposit

    async def confirm_deposit(
        self,
        token: str,
        deposit_id: str,
        block_number: Optional[int],
        confirmations: int,
        fee: Optional[Union[Decimal, str]] = None,
    ) -> OperationResult:
        async def call(actor: str):
            await self._member_deposit(deposit_id, actor)
            return await self.deposits.confirm_deposit(deposit_id, block_number, confirmations, fee)

        return await self._run("confirm_deposit", token, call, entity_id=deposit_id)

    async def cancel_deposit(self, token: str, deposit_id: str, reason: Optional[str] = None) -> OperationResult:
        return await self._run(
            "cancel_deposit",
            token,
            lambda actor: self.deposits.cancel_deposit(deposit_id, cancelled_by=actor, reason=reason),
            entity_id=deposit_id,
        )

    async def fail_deposit(self, token: str, deposit_id: str, reason: str) -> OperationResult:
        async def call(actor: str):
            await self._member_deposit(deposit_id, actor)
            return await self.deposits.fail_deposit(deposit_id, reason)

        return await self._run("fail_deposit", token, call, entity_id=deposit_id)

    async def retry_deposit(self, token: str, deposit_id: str) -> OperationResult:
        async def call(actor: str):
            await self._member_deposit(deposit_id, actor)
            return await self.deposits.retry_deposit(deposit_id, retried_by=actor)

        return await self._run("retry_deposit", token, call, entity_id=deposit_id)

    async def get_deposit(self, token: str, deposit_id: str) -> OperationResult:
        return await self._run(
            "get_deposit", token, lambda actor: self._member_deposit(deposit_id, actor), entity_id=deposit_id
        )

    async def list_deposits(self, token: str, wallet_id: str, status: Optional[str] = None) -> OperationResult:
        async def call(actor: str):
            await self._member_wallet(wallet_id, actor)
            return await self.deposits.list_deposits(wallet_id, status)

        return await self._run("list_deposits", token, call, wallet_id=wallet_id)

    async def get_deposit_stats(self, token: str, wallet_id: str, period_days: int = 30) -> OperationResult:
        async def call(actor: str):
            await self._member_wallet(wallet_id, actor)
            return await self.deposits.get_wallet_stats(wallet_id, period_days)

        return await self._run("get_deposit_stats", token, call, wallet_id=wallet_id)

    # ------------------------------------------------------------------
    # Fund split rules
    # ------------------------------------------------------------------

    async def create_rule(
        self,
        token: str,
        wallet_id: str,
        definition: Union[RuleDefinition, Dict[str, Any]],
    ) -> OperationResult:
        return await self._run(
            "create_rule",
            token,
            lambda actor: self.fund_split.create_rule(wallet_id, definition, actor),
            wallet_id=wallet_id,
        )

    async def update_rule(self, token: str, rule_id: str, changes: Dict[str, Any]) -> OperationResult:
        return await self._run(
            "update_rule", token, lambda actor: self.fund_split.update_rule(rule_id, changes, actor), entity_id=rule_id
        )

    async def delete_rule(self, token: str, rule_id: str) -> OperationResult:
        return await self._run(
            "delete_rule", token, lambda actor: self.fund_split.delete_rule(rule_id, actor), entity_id=rule_id
        )

    async def toggle_rule(self, token: str, rule_id: str, status: Optional[str] = None) -> OperationResult:
        return await self._run(
            "toggle_rule",
            token,
            lambda actor: self.fund_split.toggle_rule(rule_id, actor, status),
            entity_id=rule_id,
        )

    async def _member_rule(self, rule_id: str, actor: str):
        rule = await self.fund_split.get_rule(rule_id)
        await self._member_wallet(rule.wallet_id, actor)
        return rule

    async def get_rule(self, token: str, rule_id: str) -> OperationResult:
        return await self._run(
            "get_rule", token, lambda actor: self._member_rule(rule_id, actor), entity_id=rule_id
        )

    async def simulate_rule(self, token: str, rule_id: str, amount: Union[Decimal, str]) -> OperationResult:
        async def call(actor: str):
            await self._member_rule(rule_id, actor)
            return await self.fund_split.simulate(rule_id, amount)

        return await self._run("simulate_rule", token, call, entity_id=rule_id)

    async def evaluate_rules(
        self,
        token: str,
        wallet_id: str,
        amount: Union[Decimal, str],
        trigger_event: str = "manual_trigger",
    ) -> OperationResult:
        """Run the wallet's rules by hand. Admins only.

        Deposit-driven triggers belong to the deposit tracker, which fires
        them once a deposit is confirmed.
        """

        async def call(actor: str):
            await self.wallets.require_admin(wallet_id, actor)
            if trigger_event in (TriggerEvent.DEPOSIT, TriggerEvent.PAYMENT_RECEIVED):
                raise QuorumValidationError(
                    f"Trigger event {trigger_event} is raised by confirmed deposits only",
                    field="trigger_event",
                )
            return await self.fund_split.evaluate(wallet_id, amount, trigger_event)

        return await self._run("evaluate_rules", token, call, wallet_id=wallet_id)

    async def list_rules(
        self,
        token: str,
        wallet_id: str,
        status: Optional[str] = None,
        rule_type: Optional[str] = None,
    ) -> OperationResult:
        async def call(actor: str):
            await self._member_wallet(wallet_id, actor)
            return await self.fund_split.list_rules(wallet_id, status, rule_type)

        return await self._run("list_rules", token, call, wallet_id=wallet_id)

    async def get_rule_statistics(self, token: str, rule_id: str) -> OperationResult:
        async def call(actor: str):
            await self._member_rule(rule_id, actor)
            return await self.fund_split.get_rule_statistics(rule_id)

        return await self._run("get_rule_statistics", token, call, entity_id=rule_id)

    # ------------------------------------------------------------------
    # Reconciliation and audit
    # ------------------------------------------------------------------

    async def reconcile(self, token: str, wallet_id: str) -> OperationResult:
        async def call(actor: str):
            await self.wallets.require_admin(wallet_id, actor)
            return await self.reconciliation.reconcile(wallet_id)

        return await self._run("reconcile", token, call, wallet_id=wallet_id)

    async def get_audit_history(
        self,
        token: str,
        wallet_id: str,
        resource_id: Optional[str] = None,
        limit: int = 100,
    ) -> OperationResult:
        async def call(actor: str) -> List[Any]:
            await self._member_wallet(wallet_id, actor)
            return await self.audit.get_history(wallet_id, resource_id, limit)

        return await self._run("get_audit_history", token, call, wallet_id=wallet_id)

    async def verify_audit_chain(self, token: str, wallet_id: str) -> OperationResult:
        async def call(actor: str) -> Dict[str, Any]:
            await self._member_wallet(wallet_id, actor)
            valid, errors = await self.audit.verify_chain(wallet_id)
            return {"wallet_id": wallet_id, "valid": valid, "errors": errors}

        return await self._run("verify_audit_chain", token, call, wallet_id=wallet_id)


__all__ = [
    "OperationError",
    "OperationResult",
    "CustodyService",
]
