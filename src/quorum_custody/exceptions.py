"""Unified exception hierarchy for Quorum Custody.

Every domain failure raised by the core inherits from QuorumException and
belongs to exactly one error kind:

- validation_error: malformed or out-of-range input, caller-fixable
- conflict_error: the same operation must not be retried (duplicates, replays)
- permission_error: caller is not allowed to act on the entity
- state_error: entity is in the wrong state, inspect it before retrying
- external_service_error: ledger gateway failure, retryable with backoff
- not_found_error: the referenced entity does not exist
- internal_error: unexpected fault, details are never leaked to callers

Usage:
    from quorum_custody.exceptions import AlreadySigned, ErrorKind

    try:
        await collector.submit_signature(...)
    except QuorumException as e:
        if e.kind is ErrorKind.CONFLICT:
            ...

All exceptions have:
- kind: ErrorKind used by callers for control flow
- error_code: Machine-readable error code (e.g., "ALREADY_SIGNED")
- http_status: Status code the transport layer should map to
- message: Human-readable error message
- details: Optional additional context dictionary
- to_dict(): Convert to API response format
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional, Type


class ErrorKind(str, Enum):
    """Error taxonomy exposed to callers."""
    VALIDATION = "validation_error"
    CONFLICT = "conflict_error"
    PERMISSION = "permission_error"
    STATE = "state_error"
    EXTERNAL_SERVICE = "external_service_error"
    NOT_FOUND = "not_found_error"
    INTERNAL = "internal_error"


class QuorumException(Exception):
    """Base exception for all Quorum errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Optional additional context
    """

    kind: ErrorKind = ErrorKind.INTERNAL
    error_code: str = "QUORUM_ERROR"
    http_status: int = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response format."""
        result = {
            "kind": self.kind.value,
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Error kinds
# =============================================================================

class QuorumValidationError(QuorumException):
    """Invalid input data or parameters."""

    kind = ErrorKind.VALIDATION
    error_code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details)


class QuorumConflictError(QuorumException):
    """Duplicate or replayed operation."""

    kind = ErrorKind.CONFLICT
    error_code = "CONFLICT"
    http_status = 409


class QuorumPermissionError(QuorumException):
    """Caller lacks the role required for the operation."""

    kind = ErrorKind.PERMISSION
    error_code = "PERMISSION_DENIED"
    http_status = 403


class QuorumStateError(QuorumException):
    """Entity is not in a state that allows the operation."""

    kind = ErrorKind.STATE
    error_code = "INVALID_STATE"
    http_status = 409

    def __init__(
        self,
        message: str,
        current_status: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if current_status:
            details["current_status"] = current_status
        super().__init__(message, details=details)


class QuorumExternalServiceError(QuorumException):
    """External collaborator (ledger gateway) failed."""

    kind = ErrorKind.EXTERNAL_SERVICE
    error_code = "EXTERNAL_SERVICE_ERROR"
    http_status = 502

    def __init__(
        self,
        message: str,
        service: Optional[str] = None,
        retryable: bool = False,
        retry_after: Optional[float] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if service:
            details["service"] = service
        details["retryable"] = retryable
        if retry_after is not None:
            details["retry_after_seconds"] = round(retry_after, 3)
        self.retryable = retryable
        super().__init__(message, details=details)


class QuorumNotFoundError(QuorumException):
    """Requested resource not found."""

    kind = ErrorKind.NOT_FOUND
    error_code = "NOT_FOUND"
    http_status = 404

    def __init__(
        self,
        resource_type: str,
        resource_id: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        message = f"{resource_type} '{resource_id}' not found"
        details = details or {}
        details["resource_type"] = resource_type
        details["resource_id"] = resource_id
        super().__init__(message, details=details)


class QuorumInternalError(QuorumException):
    """Unexpected fault wrapped before it reaches the caller."""

    kind = ErrorKind.INTERNAL
    error_code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(
        self,
        message: str = "An internal error occurred",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=details)


# =============================================================================
# Wallet Errors
# =============================================================================

class InvalidThreshold(QuorumValidationError):
    """Threshold outside 1..participant count."""

    error_code = "INVALID_THRESHOLD"

    def __init__(self, threshold: int, participant_count: int) -> None:
        super().__init__(
            f"Threshold {threshold} must be between 1 and {participant_count}",
            field="threshold",
            details={"threshold": threshold, "participant_count": participant_count},
        )


class DuplicateParticipant(QuorumValidationError):
    """Participant identity appears more than once."""

    error_code = "DUPLICATE_PARTICIPANT"

    def __init__(self, identity: str) -> None:
        super().__init__(
            f"Participant '{identity}' is already a member",
            field="participants",
            details={"identity": identity},
        )


class ThresholdViolation(QuorumValidationError):
    """Removing a participant would leave threshold above member count."""

    error_code = "THRESHOLD_VIOLATION"

    def __init__(self, threshold: int, remaining: int) -> None:
        super().__init__(
            f"Removal would leave {remaining} participants for threshold {threshold}",
            details={"threshold": threshold, "remaining_participants": remaining},
        )


class NotParticipant(QuorumPermissionError):
    """Identity is not a current wallet participant."""

    error_code = "NOT_PARTICIPANT"

    def __init__(self, identity: str, wallet_id: str) -> None:
        super().__init__(
            f"'{identity}' is not a participant of wallet '{wallet_id}'",
            details={"identity": identity, "wallet_id": wallet_id},
        )


class NotAdmin(QuorumPermissionError):
    """Identity is not an admin of the wallet."""

    error_code = "NOT_ADMIN"

    def __init__(self, identity: str, wallet_id: str) -> None:
        super().__init__(
            f"'{identity}' is not an admin of wallet '{wallet_id}'",
            details={"identity": identity, "wallet_id": wallet_id},
        )


class WalletSuspended(QuorumStateError):
    """Wallet is not active."""

    error_code = "WALLET_SUSPENDED"

    def __init__(self, wallet_id: str, status: str) -> None:
        super().__init__(
            f"Wallet '{wallet_id}' is {status}",
            current_status=status,
            details={"wallet_id": wallet_id},
        )


# =============================================================================
# Transaction Errors
# =============================================================================

class AlreadySigned(QuorumConflictError):
    """Signer already signed this transaction."""

    error_code = "ALREADY_SIGNED"

    def __init__(self, signer: str, transaction_id: str) -> None:
        super().__init__(
            f"'{signer}' already signed transaction '{transaction_id}'",
            details={"signer": signer, "transaction_id": transaction_id},
        )


class AlreadyExecuted(QuorumConflictError):
    """Transaction already reached a terminal or executing state."""

    error_code = "ALREADY_EXECUTED"

    def __init__(self, transaction_id: str, status: str) -> None:
        super().__init__(
            f"Transaction '{transaction_id}' is already {status}",
            details={"transaction_id": transaction_id, "current_status": status},
        )


class ExecutionInProgress(QuorumConflictError):
    """Another caller holds the executing claim."""

    error_code = "EXECUTION_IN_PROGRESS"

    def __init__(self, transaction_id: str) -> None:
        super().__init__(
            f"Transaction '{transaction_id}' is being executed",
            details={"transaction_id": transaction_id},
        )


class SignatureInvalid(QuorumValidationError):
    """Signature does not verify against the canonical payload."""

    error_code = "SIGNATURE_INVALID"

    def __init__(self, transaction_id: str, reason: str = "verification failed") -> None:
        super().__init__(
            f"Invalid signature for transaction '{transaction_id}': {reason}",
            field="signature",
            details={"transaction_id": transaction_id},
        )


class NotApproved(QuorumStateError):
    """Execution requested before the threshold was met."""

    error_code = "NOT_APPROVED"

    def __init__(self, transaction_id: str, status: str) -> None:
        super().__init__(
            f"Transaction '{transaction_id}' is not approved",
            current_status=status,
            details={"transaction_id": transaction_id},
        )


class TransactionExpired(QuorumStateError):
    """Transaction passed its expiry deadline."""

    error_code = "TRANSACTION_EXPIRED"

    def __init__(self, transaction_id: str) -> None:
        super().__init__(
            f"Transaction '{transaction_id}' has expired",
            current_status="expired",
            details={"transaction_id": transaction_id},
        )


class InvalidStateTransition(QuorumStateError):
    """Requested transition is not allowed from the current state."""

    error_code = "INVALID_STATE_TRANSITION"

    def __init__(self, entity: str, entity_id: str, current: str, target: str) -> None:
        super().__init__(
            f"{entity} '{entity_id}' cannot move from {current} to {target}",
            current_status=current,
            details={"entity_id": entity_id, "target_status": target},
        )


class ConcurrentModification(QuorumConflictError):
    """Optimistic concurrency check failed on write."""

    error_code = "CONCURRENT_MODIFICATION"

    def __init__(self, entity: str, entity_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"{entity} '{entity_id}' was modified concurrently",
            details={"entity_id": entity_id, "expected_version": expected, "actual_version": actual},
        )


class IdempotencyKeyConflict(QuorumConflictError):
    """Idempotency key reused with different request parameters."""

    error_code = "IDEMPOTENCY_KEY_CONFLICT"


class IdempotencyOperationInProgress(QuorumConflictError):
    """An operation with the same idempotency key is still running."""

    error_code = "IDEMPOTENCY_IN_PROGRESS"


# =============================================================================
# Ledger Errors
# =============================================================================

class LedgerTransientError(QuorumExternalServiceError):
    """Ledger gateway failure that may succeed on retry."""

    error_code = "LEDGER_UNAVAILABLE"
    http_status = 503

    def __init__(
        self,
        message: str = "Ledger gateway temporarily unavailable",
        retry_after: Optional[float] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            message,
            service="ledger_gateway",
            retryable=True,
            retry_after=retry_after,
            details=details,
        )


class LedgerPermanentError(QuorumExternalServiceError):
    """Ledger gateway rejected the submission for good."""

    error_code = "LEDGER_REJECTED"

    def __init__(
        self,
        message: str = "Ledger gateway rejected the transaction",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, service="ledger_gateway", retryable=False, details=details)


class ExecutionFailed(QuorumExternalServiceError):
    """Execution ended in the terminal failed state."""

    error_code = "EXECUTION_FAILED"

    def __init__(self, transaction_id: str, attempts: int, reason: str) -> None:
        super().__init__(
            f"Transaction '{transaction_id}' failed after {attempts} attempt(s): {reason}",
            service="ledger_gateway",
            retryable=False,
            details={"transaction_id": transaction_id, "attempts": attempts},
        )


# =============================================================================
# Deposit Errors
# =============================================================================

class DuplicateDepositHash(QuorumConflictError):
    """Chain transaction hash already registered for this wallet."""

    error_code = "DUPLICATE_DEPOSIT_HASH"

    def __init__(self, wallet_id: str, chain_tx_hash: str, deposit_id: str) -> None:
        super().__init__(
            f"Deposit with hash '{chain_tx_hash}' already registered for wallet '{wallet_id}'",
            details={"wallet_id": wallet_id, "chain_tx_hash": chain_tx_hash, "deposit_id": deposit_id},
        )


class InsufficientConfirmations(QuorumValidationError):
    """Confirmation count below the configured minimum."""

    error_code = "INSUFFICIENT_CONFIRMATIONS"

    def __init__(self, deposit_id: str, confirmations: int, required: int) -> None:
        super().__init__(
            f"Deposit '{deposit_id}' has {confirmations} confirmations, {required} required",
            field="confirmations",
            details={"deposit_id": deposit_id, "confirmations": confirmations, "required": required},
        )


class AlreadyConfirmed(QuorumConflictError):
    """Deposit is already confirmed."""

    error_code = "ALREADY_CONFIRMED"

    def __init__(self, deposit_id: str) -> None:
        super().__init__(
            f"Deposit '{deposit_id}' is already confirmed",
            details={"deposit_id": deposit_id},
        )


class DepositNotPending(QuorumStateError):
    """Deposit left the pending state."""

    error_code = "DEPOSIT_NOT_PENDING"

    def __init__(self, deposit_id: str, status: str) -> None:
        super().__init__(
            f"Deposit '{deposit_id}' is {status}",
            current_status=status,
            details={"deposit_id": deposit_id},
        )


# =============================================================================
# Fund Split Errors
# =============================================================================

class InsufficientAmount(QuorumValidationError):
    """Fixed shares exceed the triggering amount."""

    error_code = "INSUFFICIENT_AMOUNT"

    def __init__(self, rule_id: str, required: str, available: str) -> None:
        super().__init__(
            f"Rule '{rule_id}' needs {required} but only {available} is available",
            field="amount",
            details={"rule_id": rule_id, "required": required, "available": available},
        )


# =============================================================================
# Error Mapping Utilities
# =============================================================================

EXCEPTION_REGISTRY: dict[str, Type[QuorumException]] = {
    cls.error_code: cls
    for cls in (
        QuorumException,
        QuorumValidationError,
        QuorumConflictError,
        QuorumPermissionError,
        QuorumStateError,
        QuorumExternalServiceError,
        QuorumNotFoundError,
        QuorumInternalError,
        InvalidThreshold,
        DuplicateParticipant,
        ThresholdViolation,
        NotParticipant,
        NotAdmin,
        WalletSuspended,
        AlreadySigned,
        AlreadyExecuted,
        ExecutionInProgress,
        SignatureInvalid,
        NotApproved,
        TransactionExpired,
        InvalidStateTransition,
        ConcurrentModification,
        IdempotencyKeyConflict,
        IdempotencyOperationInProgress,
        LedgerTransientError,
        LedgerPermanentError,
        ExecutionFailed,
        DuplicateDepositHash,
        InsufficientConfirmations,
        AlreadyConfirmed,
        DepositNotPending,
        InsufficientAmount,
    )
}


def get_exception_class(error_code: str) -> Type[QuorumException]:
    """Get the exception class for an error code.

    Args:
        error_code: The error code string

    Returns:
        Exception class (defaults to QuorumException if not found)
    """
    return EXCEPTION_REGISTRY.get(error_code, QuorumException)


__all__ = [
    "ErrorKind",
    "QuorumException",
    "QuorumValidationError",
    "QuorumConflictError",
    "QuorumPermissionError",
    "QuorumStateError",
    "QuorumExternalServiceError",
    "QuorumNotFoundError",
    "QuorumInternalError",
    "InvalidThreshold",
    "DuplicateParticipant",
    "ThresholdViolation",
    "NotParticipant",
    "NotAdmin",
    "WalletSuspended",
    "AlreadySigned",
    "AlreadyExecuted",
    "ExecutionInProgress",
    "SignatureInvalid",
    "NotApproved",
    "TransactionExpired",
    "InvalidStateTransition",
    "ConcurrentModification",
    "IdempotencyKeyConflict",
    "IdempotencyOperationInProgress",
    "LedgerTransientError",
    "LedgerPermanentError",
    "ExecutionFailed",
    "DuplicateDepositHash",
    "InsufficientConfirmations",
    "AlreadyConfirmed",
    "DepositNotPending",
    "InsufficientAmount",
    "EXCEPTION_REGISTRY",
    "get_exception_class",
]
