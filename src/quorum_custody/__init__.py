"""
Quorum Custody - multisig approval and distribution core.

This package provides:
- Multisig wallets with participant sets and signature thresholds
- A transaction state machine with at-most-once ledger execution
- Signature collection with pluggable verification (Ed25519 built in)
- Deposit confirmation tracking
- A fund split rule engine for distributing incoming funds
- Hash-chained audit trail and ledger reconciliation

Example usage:

    from quorum_custody import CustodyService, StaticIdentityProvider

    service = CustodyService(ledger=gateway, identity=StaticIdentityProvider({"tok-a": "alice"}))
    result = await service.create_wallet("tok-a", participants, threshold=2)
"""
from .config import QuorumSettings, get_settings

from .exceptions import (
    # Base
    ErrorKind,
    QuorumException,
    QuorumValidationError,
    QuorumConflictError,
    QuorumPermissionError,
    QuorumStateError,
    QuorumExternalServiceError,
    QuorumNotFoundError,
    QuorumInternalError,
    # Wallets
    InvalidThreshold,
    DuplicateParticipant,
    ThresholdViolation,
    NotParticipant,
    NotAdmin,
    WalletSuspended,
    # Transactions
    AlreadySigned,
    AlreadyExecuted,
    ExecutionInProgress,
    SignatureInvalid,
    NotApproved,
    TransactionExpired,
    InvalidStateTransition,
    ConcurrentModification,
    ExecutionFailed,
    LedgerTransientError,
    LedgerPermanentError,
    # Deposits
    DuplicateDepositHash,
    InsufficientConfirmations,
    AlreadyConfirmed,
    DepositNotPending,
    # Fund split
    InsufficientAmount,
)

from .interfaces import (
    LedgerReceipt,
    SignatureVerifier,
    LedgerGateway,
    IdentityProvider,
    StaticIdentityProvider,
    NotificationService,
)
from .verifiers import Ed25519SignatureVerifier
from .repository import EntityStore, InMemoryEntityStore, EntityLocks
from .audit_log import AuditLogger, AuditEntry, AuditAction, AuditCategory

from .wallets import (
    WalletStatus,
    ParticipantRole,
    Participant,
    MultisigWallet,
    WalletRegistry,
)
from .transactions import (
    TransactionType,
    TransactionStatus,
    Signature,
    Transaction,
    TransactionStateMachine,
)
from .signatures import SignatureCollector, SignatureResult
from .fund_split import (
    RuleType,
    RuleStatus,
    TriggerEvent,
    RuleDefinition,
    FundSplitRule,
    DistributionPlan,
    FundSplitEngine,
)
from .deposits import DepositStatus, Deposit, DepositConfirmation, DepositConfirmationTracker
from .reconciliation import ReconciliationService, ReconciliationReport
from .service import CustodyService, OperationResult, OperationError

__version__ = "0.1.0"

__all__ = [
    # Config
    "QuorumSettings",
    "get_settings",
    # Errors
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
    "ExecutionFailed",
    "LedgerTransientError",
    "LedgerPermanentError",
    "DuplicateDepositHash",
    "InsufficientConfirmations",
    "AlreadyConfirmed",
    "DepositNotPending",
    "InsufficientAmount",
    # Ports
    "LedgerReceipt",
    "SignatureVerifier",
    "LedgerGateway",
    "IdentityProvider",
    "StaticIdentityProvider",
    "NotificationService",
    "Ed25519SignatureVerifier",
    # Persistence
    "EntityStore",
    "InMemoryEntityStore",
    "EntityLocks",
    # Audit
    "AuditLogger",
    "AuditEntry",
    "AuditAction",
    "AuditCategory",
    # Wallets
    "WalletStatus",
    "ParticipantRole",
    "Participant",
    "MultisigWallet",
    "WalletRegistry",
    # Transactions
    "TransactionType",
    "TransactionStatus",
    "Signature",
    "Transaction",
    "TransactionStateMachine",
    "SignatureCollector",
    "SignatureResult",
    # Fund split
    "RuleType",
    "RuleStatus",
    "TriggerEvent",
    "RuleDefinition",
    "FundSplitRule",
    "DistributionPlan",
    "FundSplitEngine",
    # Deposits
    "DepositStatus",
    "Deposit",
    "DepositConfirmation",
    "DepositConfirmationTracker",
    # Reconciliation / facade
    "ReconciliationService",
    "ReconciliationReport",
    "CustodyService",
    "OperationResult",
    "OperationError",
]
