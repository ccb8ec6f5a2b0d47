"""
Tamper-evident audit trail for multisig wallets.

Every state transition of a wallet, transaction, deposit or fund-split rule
appends one entry. Entries are chained per wallet: each stores the hash of
the previous entry, so editing or dropping an entry breaks ``verify_chain``.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import secrets
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)

GENESIS_HASH = "genesis"


class AuditCategory(str, Enum):
    """Category of audit event."""
    WALLET = "wallet"
    TRANSACTION = "transaction"
    DEPOSIT = "deposit"
    FUND_SPLIT = "fund_split"
    RECONCILIATION = "reconciliation"


class AuditAction(str, Enum):
    """Specific audit actions."""
    # Wallets
    WALLET_CREATED = "wallet_created"
    THRESHOLD_UPDATED = "threshold_updated"
    PARTICIPANT_ADDED = "participant_added"
    PARTICIPANT_REMOVED = "participant_removed"
    WALLET_STATUS_CHANGED = "wallet_status_changed"

    # Transactions
    TRANSACTION_PROPOSED = "transaction_proposed"
    SIGNATURE_ADDED = "signature_added"
    TRANSACTION_APPROVED = "transaction_approved"
    EXECUTION_STARTED = "execution_started"
    RECEIPT_RECORDED = "receipt_recorded"
    TRANSACTION_EXECUTED = "transaction_executed"
    EXECUTION_RETRY_SCHEDULED = "execution_retry_scheduled"
    TRANSACTION_FAILED = "transaction_failed"
    TRANSACTION_REJECTED = "transaction_rejected"
    TRANSACTION_EXPIRED = "transaction_expired"

    # Deposits
    DEPOSIT_REGISTERED = "deposit_registered"
    DEPOSIT_CONFIRMED = "deposit_confirmed"
    DEPOSIT_CANCELLED = "deposit_cancelled"
    DEPOSIT_FAILED = "deposit_failed"
    DEPOSIT_RETRIED = "deposit_retried"

    # Fund split rules
    RULE_CREATED = "rule_created"
    RULE_UPDATED = "rule_updated"
    RULE_DELETED = "rule_deleted"
    RULE_STATUS_CHANGED = "rule_status_changed"
    RULE_EXECUTED = "rule_executed"


@dataclass
class AuditEntry:
    """A single audit log entry."""
    entry_id: str
    timestamp: datetime
    wallet_id: str
    category: AuditCategory
    action: AuditAction

    actor_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    old_status: Optional[str] = None
    new_status: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    # Hash chain for tamper detection
    previous_hash: str = ""
    entry_hash: str = ""

    def compute_hash(self) -> str:
        """Compute hash of this entry."""
        data = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "wallet_id": self.wallet_id,
            "category": self.category.value,
            "action": self.action.value,
            "actor_id": self.actor_id,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "details": self.details,
            "previous_hash": self.previous_hash,
        }
        content = json.dumps(data, sort_keys=True, default=str)
        return hashlib.sha256(content.encode()).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "wallet_id": self.wallet_id,
            "category": self.category.value,
            "action": self.action.value,
            "actor_id": self.actor_id,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "details": self.details,
            "previous_hash": self.previous_hash,
            "entry_hash": self.entry_hash,
        }


class AuditStorageBackend(Protocol):
    """Protocol for audit log storage backends."""

    async def store(self, entry: AuditEntry) -> bool:
        ...

    async def entries_for_wallet(self, wallet_id: str) -> List[AuditEntry]:
        """Entries of one wallet in append order."""
        ...


class InMemoryAuditStorage:
    """In-memory audit storage for testing/development."""

    def __init__(self):
        self._entries: List[AuditEntry] = []
        self._by_wallet: Dict[str, List[int]] = defaultdict(list)

    async def store(self, entry: AuditEntry) -> bool:
        index = len(self._entries)
        self._entries.append(entry)
        self._by_wallet[entry.wallet_id].append(index)
        return True

    async def entries_for_wallet(self, wallet_id: str) -> List[AuditEntry]:
        return [self._entries[i] for i in self._by_wallet.get(wallet_id, [])]


class AuditLogger:
    """
    Append-only, hash-chained audit log.

    ``log`` serializes appends so the chain for a wallet is never forked by
    concurrent writers.
    """

    def __init__(
        self,
        storage: Optional[AuditStorageBackend] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._storage = storage or InMemoryAuditStorage()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._last_hash: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def log(
        self,
        wallet_id: str,
        category: AuditCategory,
        action: AuditAction,
        actor_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        old_status: Optional[str] = None,
        new_status: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        """Append an audit entry to the wallet's chain."""
        async with self._lock:
            entry = AuditEntry(
                entry_id=f"audit_{secrets.token_hex(8)}",
                timestamp=self._clock(),
                wallet_id=wallet_id,
                category=category,
                action=action,
                actor_id=actor_id,
                resource_type=resource_type,
                resource_id=resource_id,
                old_status=old_status,
                new_status=new_status,
                details=details or {},
                previous_hash=self._last_hash.get(wallet_id, GENESIS_HASH),
            )
            entry.entry_hash = entry.compute_hash()
            self._last_hash[wallet_id] = entry.entry_hash

            await self._storage.store(entry)

            logger.info(
                f"AUDIT [{category.value}] {action.value} - wallet:{wallet_id} "
                f"resource:{resource_id} actor:{actor_id}"
            )
            return entry

    async def get_history(
        self,
        wallet_id: str,
        resource_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        """Newest-first entries of a wallet, optionally for one resource."""
        entries = await self._storage.entries_for_wallet(wallet_id)
        if resource_id is not None:
            entries = [e for e in entries if e.resource_id == resource_id]
        return list(reversed(entries))[:limit]

    async def verify_chain(self, wallet_id: str) -> Tuple[bool, List[str]]:
        """
        Verify the hash chain integrity for a wallet.

        Returns:
            Tuple of (is_valid, list of error messages)
        """
        entries = await self._storage.entries_for_wallet(wallet_id)

        errors = []
        expected_previous = GENESIS_HASH

        for entry in entries:
            if entry.previous_hash != expected_previous:
                errors.append(
                    f"Entry {entry.entry_id}: previous hash mismatch "
                    f"(expected {expected_previous[:8]}..., got {entry.previous_hash[:8]}...)"
                )

            computed_hash = entry.compute_hash()
            if entry.entry_hash != computed_hash:
                errors.append(
                    f"Entry {entry.entry_id}: hash verification failed "
                    f"(stored {entry.entry_hash[:8]}..., computed {computed_hash[:8]}...)"
                )

            expected_previous = entry.entry_hash

        return len(errors) == 0, errors


__all__ = [
    "AuditCategory",
    "AuditAction",
    "AuditEntry",
    "AuditStorageBackend",
    "InMemoryAuditStorage",
    "AuditLogger",
]
