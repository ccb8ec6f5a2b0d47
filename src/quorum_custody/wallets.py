"""
Multisig wallet registry.

Owns MultisigWallet entities: the participant set, the signature threshold
and the wallet status. All mutations of one wallet are serialized by its
entity lock; readers get snapshots.

Invariants:
- 1 <= threshold <= participant count at every stored version
- at least one admin participant
- wallets are never deleted, only suspended or deactivated
"""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from .audit_log import AuditAction, AuditCategory, AuditLogger
from .config import QuorumSettings, get_settings
from .exceptions import (
    DuplicateParticipant,
    InvalidThreshold,
    NotAdmin,
    NotParticipant,
    QuorumValidationError,
    ThresholdViolation,
    WalletSuspended,
)
from .repository import EntityLocks, EntityStore, InMemoryEntityStore

logger = logging.getLogger(__name__)

WALLET_LOCK = "wallet"


class WalletStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class ParticipantRole(str, Enum):
    ADMIN = "admin"
    PARTICIPANT = "participant"


@dataclass
class Participant:
    """A wallet member and the key it signs with."""
    identity: str
    public_key: str
    role: ParticipantRole = ParticipantRole.PARTICIPANT
    added_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    added_by: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ParticipantRole.ADMIN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identity": self.identity,
            "public_key": self.public_key,
            "role": self.role.value,
            "added_at": self.added_at.isoformat(),
            "added_by": self.added_by,
        }


@dataclass
class MultisigWallet:
    """A wallet jointly controlled by its participants."""
    wallet_id: str
    participants: List[Participant]
    threshold: int
    name: str = ""
    status: WalletStatus = WalletStatus.ACTIVE
    contract_ref: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    version: int = 0

    @property
    def participant_count(self) -> int:
        return len(self.participants)

    @property
    def admin_count(self) -> int:
        return sum(1 for p in self.participants if p.is_admin)

    @property
    def is_active(self) -> bool:
        return self.status == WalletStatus.ACTIVE

    def get_participant(self, identity: str) -> Optional[Participant]:
        for participant in self.participants:
            if participant.identity == identity:
                return participant
        return None

    def is_participant(self, identity: Optional[str]) -> bool:
        return identity is not None and self.get_participant(identity) is not None

    def is_admin(self, identity: Optional[str]) -> bool:
        if identity is None:
            return False
        participant = self.get_participant(identity)
        return participant is not None and participant.is_admin

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wallet_id": self.wallet_id,
            "name": self.name,
            "participants": [p.to_dict() for p in self.participants],
            "threshold": self.threshold,
            "status": self.status.value,
            "contract_ref": self.contract_ref,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "version": self.version,
        }


ParticipantInput = Union[Participant, Dict[str, Any]]


def normalize_public_key(public_key: str) -> str:
    """Validate a hex public key and return it lower-cased."""
    if not isinstance(public_key, str) or not public_key.strip():
        raise QuorumValidationError("Public key is required", field="public_key")
    key = public_key.strip().lower()
    try:
        bytes.fromhex(key)
    except ValueError:
        raise QuorumValidationError("Public key must be hex encoded", field="public_key") from None
    return key


def _check_threshold(threshold: int, participant_count: int) -> None:
    if isinstance(threshold, bool) or not isinstance(threshold, int):
        raise InvalidThreshold(threshold, participant_count)
    if threshold < 1 or threshold > participant_count:
        raise InvalidThreshold(threshold, participant_count)


class WalletRegistry:
    """
    Registry of multisig wallets.

    Usage:
        registry = WalletRegistry()
        wallet = await registry.create_wallet(
            participants=[
                {"identity": "alice", "public_key": "ab..", "role": "admin"},
                {"identity": "bob", "public_key": "cd.."},
            ],
            threshold=2,
        )
    """

    def __init__(
        self,
        store: Optional[EntityStore[MultisigWallet]] = None,
        locks: Optional[EntityLocks] = None,
        audit: Optional[AuditLogger] = None,
        settings: Optional[QuorumSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._store = store or InMemoryEntityStore("MultisigWallet", "wallet_id")
        self._locks = locks or EntityLocks()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._audit = audit or AuditLogger(clock=self._clock)
        self._settings = settings or get_settings()

    def _to_participant(self, item: ParticipantInput, actor: Optional[str], now: datetime) -> Participant:
        if isinstance(item, Participant):
            participant = item
        else:
            identity = item.get("identity")
            try:
                role = ParticipantRole(item.get("role", ParticipantRole.PARTICIPANT.value))
            except ValueError:
                raise QuorumValidationError(
                    f"Unknown participant role: {item.get('role')}", field="role"
                ) from None
            participant = Participant(
                identity=identity,
                public_key=item.get("public_key", ""),
                role=role,
                added_at=now,
                added_by=actor,
            )
        if not isinstance(participant.identity, str) or not participant.identity.strip():
            raise QuorumValidationError("Participant identity is required", field="identity")
        participant.identity = participant.identity.strip()
        participant.public_key = normalize_public_key(participant.public_key)
        return participant

    async def create_wallet(
        self,
        participants: Sequence[ParticipantInput],
        threshold: int,
        contract_ref: Optional[str] = None,
        name: str = "",
        created_by: Optional[str] = None,
    ) -> MultisigWallet:
        """Create a wallet.

        Raises:
            DuplicateParticipant: If a participant identity repeats
            InvalidThreshold: If threshold < 1 or > participant count
            QuorumValidationError: If no participant is an admin
        """
        now = self._clock()
        members: List[Participant] = []
        seen = set()
        for item in participants:
            participant = self._to_participant(item, created_by, now)
            if participant.identity in seen:
                raise DuplicateParticipant(participant.identity)
            seen.add(participant.identity)
            members.append(participant)

        if len(members) > self._settings.max_participants:
            raise QuorumValidationError(
                f"A wallet holds at most {self._settings.max_participants} participants",
                field="participants",
            )
        _check_threshold(threshold, len(members))
        if not any(p.is_admin for p in members):
            raise QuorumValidationError("At least one participant must be an admin", field="participants")

        wallet = MultisigWallet(
            wallet_id=f"msw_{secrets.token_hex(8)}",
            name=name,
            participants=members,
            threshold=threshold,
            contract_ref=contract_ref,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        await self._store.create(wallet)
        await self._audit.log(
            wallet_id=wallet.wallet_id,
            category=AuditCategory.WALLET,
            action=AuditAction.WALLET_CREATED,
            actor_id=created_by,
            resource_type="wallet",
            resource_id=wallet.wallet_id,
            new_status=wallet.status.value,
            details={"threshold": threshold, "participants": [p.identity for p in members]},
        )
        logger.info(
            f"Created wallet {wallet.wallet_id}: {threshold}-of-{len(members)}"
        )
        return wallet

    async def get_wallet(self, wallet_id: str) -> MultisigWallet:
        """Return a snapshot of the wallet. Raises NotFound."""
        return await self._store.require(wallet_id)

    async def list_wallets(self, participant: Optional[str] = None) -> List[MultisigWallet]:
        """List wallets, optionally only those the identity belongs to."""
        wallets = await self._store.list(
            None if participant is None else (lambda w: w.is_participant(participant))
        )
        return sorted(wallets, key=lambda w: w.created_at)

    async def require_admin(self, wallet_id: str, actor: Optional[str]) -> MultisigWallet:
        """Snapshot of an active wallet whose admin is ``actor``."""
        wallet = await self.get_wallet(wallet_id)
        self._require_admin(wallet, actor)
        self.require_active(wallet)
        return wallet

    @staticmethod
    def require_active(wallet: MultisigWallet) -> None:
        if not wallet.is_active:
            raise WalletSuspended(wallet.wallet_id, wallet.status.value)

    @staticmethod
    def _require_admin(wallet: MultisigWallet, actor: Optional[str]) -> None:
        if not wallet.is_admin(actor):
            raise NotAdmin(str(actor), wallet.wallet_id)

    async def _save(
        self,
        wallet: MultisigWallet,
        action: AuditAction,
        actor: Optional[str],
        old_status: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> MultisigWallet:
        wallet.updated_at = self._clock()
        await self._store.update(wallet, expected_version=wallet.version)
        await self._audit.log(
            wallet_id=wallet.wallet_id,
            category=AuditCategory.WALLET,
            action=action,
            actor_id=actor,
            resource_type="wallet",
            resource_id=wallet.wallet_id,
            old_status=old_status,
            new_status=wallet.status.value,
            details=details,
        )
        return wallet

    async def update_threshold(self, wallet_id: str, new_threshold: int, actor: Optional[str]) -> MultisigWallet:
        async with self._locks.get(WALLET_LOCK, wallet_id):
            wallet = await self.get_wallet(wallet_id)
            self._require_admin(wallet, actor)
            self.require_active(wallet)
            _check_threshold(new_threshold, wallet.participant_count)

            old_threshold = wallet.threshold
            wallet.threshold = new_threshold
            await self._save(
                wallet,
                AuditAction.THRESHOLD_UPDATED,
                actor,
                details={"old_threshold": old_threshold, "new_threshold": new_threshold},
            )
            logger.info(f"Wallet {wallet_id} threshold {old_threshold} -> {new_threshold}")
            return wallet

    async def add_participant(
        self,
        wallet_id: str,
        identity: str,
        public_key: str,
        role: Union[ParticipantRole, str] = ParticipantRole.PARTICIPANT,
        actor: Optional[str] = None,
    ) -> MultisigWallet:
        async with self._locks.get(WALLET_LOCK, wallet_id):
            wallet = await self.get_wallet(wallet_id)
            self._require_admin(wallet, actor)
            self.require_active(wallet)

            role_value = role.value if isinstance(role, ParticipantRole) else role
            participant = self._to_participant(
                {"identity": identity, "public_key": public_key, "role": role_value},
                actor,
                self._clock(),
            )
            if wallet.is_participant(participant.identity):
                raise DuplicateParticipant(participant.identity)
            if wallet.participant_count >= self._settings.max_participants:
                raise QuorumValidationError(
                    f"A wallet holds at most {self._settings.max_participants} participants",
                    field="participants",
                )

            wallet.participants.append(participant)
            await self._save(
                wallet,
                AuditAction.PARTICIPANT_ADDED,
                actor,
                details={"identity": participant.identity, "role": participant.role.value},
            )
            return wallet

    async def remove_participant(self, wallet_id: str, identity: str, actor: Optional[str]) -> MultisigWallet:
        """Remove a participant.

        Raises:
            NotParticipant: If the identity is not a member
            QuorumValidationError: If the last admin would be removed
            ThresholdViolation: If threshold would exceed the remaining count
        """
        async with self._locks.get(WALLET_LOCK, wallet_id):
            wallet = await self.get_wallet(wallet_id)
            self._require_admin(wallet, actor)
            self.require_active(wallet)

            participant = wallet.get_participant(identity)
            if participant is None:
                raise NotParticipant(identity, wallet_id)
            if participant.is_admin and wallet.admin_count == 1:
                raise QuorumValidationError("Cannot remove the last admin", field="identity")
            remaining = wallet.participant_count - 1
            if wallet.threshold > remaining:
                raise ThresholdViolation(wallet.threshold, remaining)

            wallet.participants = [p for p in wallet.participants if p.identity != identity]
            await self._save(
                wallet,
                AuditAction.PARTICIPANT_REMOVED,
                actor,
                details={"identity": identity},
            )
            return wallet

    async def set_status(
        self,
        wallet_id: str,
        status: Union[WalletStatus, str],
        actor: Optional[str],
    ) -> MultisigWallet:
        """Suspend, deactivate or reactivate a wallet."""
        try:
            target = WalletStatus(status)
        except ValueError:
            raise QuorumValidationError(f"Unknown wallet status: {status}", field="status") from None

        async with self._locks.get(WALLET_LOCK, wallet_id):
            wallet = await self.get_wallet(wallet_id)
            self._require_admin(wallet, actor)
            if wallet.status == target:
                return wallet

            old_status = wallet.status.value
            wallet.status = target
            await self._save(wallet, AuditAction.WALLET_STATUS_CHANGED, actor, old_status=old_status)
            logger.info(f"Wallet {wallet_id} status {old_status} -> {target.value}")
            return wallet


__all__ = [
    "WalletStatus",
    "ParticipantRole",
    "Participant",
    "MultisigWallet",
    "WalletRegistry",
    "normalize_public_key",
]
