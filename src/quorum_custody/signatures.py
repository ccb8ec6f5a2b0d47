"""
Signature collection for multisig proposals.

Verification against the canonical payload happens outside the
transaction lock. The duplicate-signer check, the append and the threshold
evaluation then run as one locked step in the state machine.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from .exceptions import (
    AlreadyExecuted,
    AlreadySigned,
    NotParticipant,
    QuorumExternalServiceError,
    QuorumValidationError,
    SignatureInvalid,
    TransactionExpired,
)
from .interfaces import SignatureVerifier
from .transactions import (
    Signature,
    Transaction,
    TransactionStateMachine,
    TransactionStatus,
)
from .wallets import MultisigWallet, WalletRegistry, normalize_public_key

logger = logging.getLogger(__name__)


@dataclass
class SignatureResult:
    """What a signer learns after submitting."""
    transaction_id: str
    signer: str
    signature_count: int
    required: int
    threshold_reached: bool
    just_approved: bool
    status: TransactionStatus
    execution: Optional[Transaction] = None
    execution_error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "signer": self.signer,
            "signature_count": self.signature_count,
            "required": self.required,
            "threshold_reached": self.threshold_reached,
            "just_approved": self.just_approved,
            "status": self.status.value,
            "execution": self.execution.to_dict() if self.execution else None,
            "execution_error": self.execution_error,
        }


class SignatureCollector:
    """Accumulates and validates signatures until the threshold is met."""

    def __init__(
        self,
        machine: TransactionStateMachine,
        wallets: WalletRegistry,
        verifier: SignatureVerifier,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._machine = machine
        self._wallets = wallets
        self._verifier = verifier
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @staticmethod
    def canonical_payload(transaction: Transaction) -> bytes:
        """Bytes a participant must sign for ``transaction``."""
        return transaction.canonical_payload()

    @staticmethod
    def _check_signable(tx: Transaction) -> None:
        if tx.status == TransactionStatus.EXPIRED:
            raise TransactionExpired(tx.transaction_id)
        if tx.status not in (TransactionStatus.PROPOSED, TransactionStatus.APPROVED):
            raise AlreadyExecuted(tx.transaction_id, tx.status.value)

    @staticmethod
    def _registered_key(wallet: MultisigWallet, signer: str) -> str:
        participant = wallet.get_participant(signer)
        if participant is None:
            raise NotParticipant(signer, wallet.wallet_id)
        return participant.public_key

    async def submit_signature(
        self,
        transaction_id: str,
        signer: str,
        public_key: str,
        signature: str,
    ) -> SignatureResult:
        """Validate and record one participant's signature.

        Raises:
            NotParticipant: Signer is not a current wallet member
            AlreadySigned: Signer already signed this transaction
            SignatureInvalid: Key mismatch or verification failure
            TransactionExpired: Transaction passed its deadline
            AlreadyExecuted: Transaction is executing or closed
        """
        snapshot = await self._machine.get_transaction(transaction_id)
        wallet = await self._wallets.get_wallet(snapshot.wallet_id)

        registered_key = self._registered_key(wallet, signer)
        self._check_signable(snapshot)
        if snapshot.has_signed(signer):
            raise AlreadySigned(signer, transaction_id)
        WalletRegistry.require_active(wallet)

        try:
            key = normalize_public_key(public_key)
        except QuorumValidationError:
            raise SignatureInvalid(transaction_id, "malformed public key") from None
        if key != registered_key:
            raise SignatureInvalid(transaction_id, "public key does not match the registered key")
        if not isinstance(signature, str) or not signature.strip():
            raise SignatureInvalid(transaction_id, "empty signature")
        raw_signature = signature.strip().lower()

        if not self._verifier.verify(self.canonical_payload(snapshot), key, raw_signature):
            logger.warning(f"Rejected signature from {signer} on transaction {transaction_id}")
            raise SignatureInvalid(transaction_id)

        async with self._machine.lock_for(transaction_id):
            tx = await self._machine.load_current(transaction_id)
            wallet = await self._wallets.get_wallet(tx.wallet_id)
            if self._registered_key(wallet, signer) != key:
                raise SignatureInvalid(transaction_id, "public key does not match the registered key")
            self._check_signable(tx)
            WalletRegistry.require_active(wallet)

            evaluation = await self._machine.record_signature(
                tx,
                Signature(signer=signer, public_key=key, signature=raw_signature, signed_at=self._clock()),
                wallet,
            )
            status = tx.status

        result = SignatureResult(
            transaction_id=transaction_id,
            signer=signer,
            signature_count=evaluation.signature_count,
            required=evaluation.required,
            threshold_reached=evaluation.threshold_reached,
            just_approved=evaluation.approved_now,
            status=status,
        )

        if evaluation.execution_claimed:
            try:
                result.execution = await self._machine.run_execution(transaction_id, wallet)
                result.status = result.execution.status
            except QuorumExternalServiceError as e:
                logger.warning(f"Auto execution of {transaction_id} did not complete: {e.message}")
                result.execution_error = e.to_dict()
                result.status = (await self._machine.get_transaction(transaction_id)).status

        logger.info(
            f"Signature {result.signature_count}/{result.required} from {signer} "
            f"on transaction {transaction_id} ({result.status.value})"
        )
        return result


__all__ = ["SignatureResult", "SignatureCollector"]
