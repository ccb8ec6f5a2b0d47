"""Collaborator ports consumed by the custody core.

The core never talks to a chain, an identity system or a notification
channel directly. It depends on the abstract interfaces below; concrete
adapters are injected at construction time.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from .exceptions import LedgerPermanentError, LedgerTransientError, QuorumPermissionError

logger = logging.getLogger(__name__)


@dataclass
class LedgerReceipt:
    """What the ledger gateway reports for a committed transaction."""
    tx_hash: str
    block_number: Optional[int] = None
    fee: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "block_number": self.block_number,
            "fee": str(self.fee) if self.fee is not None else None,
        }


class SignatureVerifier(ABC):
    """Checks a detached signature over the canonical transaction bytes."""

    @abstractmethod
    def verify(self, payload: bytes, public_key: str, signature: str) -> bool:
        """Return True when ``signature`` is valid for ``payload`` under ``public_key``."""


class LedgerGateway(ABC):
    """
    External service that commits approved transactions.

    ``submit`` raises LedgerTransientError for failures worth retrying and
    LedgerPermanentError when the ledger rejected the submission.
    """

    @abstractmethod
    async def submit(self, payload: Dict[str, Any]) -> LedgerReceipt:
        ...

    @abstractmethod
    async def get_confirmations(self, tx_hash: str) -> int:
        ...

    @abstractmethod
    async def get_balance(self, wallet_ref: str) -> Decimal:
        ...


class IdentityProvider(ABC):
    """Resolves a caller token to a participant identity."""

    @abstractmethod
    async def resolve(self, token: str) -> str:
        """Return the identity or raise a permission error."""


class StaticIdentityProvider(IdentityProvider):
    """Token table lookup, for development and tests."""

    def __init__(self, tokens: Mapping[str, str]):
        self._tokens = dict(tokens)

    async def resolve(self, token: str) -> str:
        identity = self._tokens.get(token) if token else None
        if identity is None:
            raise QuorumPermissionError(
                "Caller token could not be resolved",
                error_code="INVALID_TOKEN",
            )
        return identity


class NotificationService(ABC):
    """Optional outbound notifications. Failures never fail the operation."""

    @abstractmethod
    async def notify(self, event: str, wallet_id: str, data: Dict[str, Any]) -> None:
        ...


async def send_notification(
    notifier: Optional[NotificationService],
    event: str,
    wallet_id: str,
    data: Dict[str, Any],
) -> None:
    """Deliver a notification, logging delivery failures."""
    if notifier is None:
        return
    try:
        await notifier.notify(event, wallet_id, data)
    except Exception as e:  # noqa: BLE001 - notifications are best-effort
        logger.warning(f"Notification {event} for wallet {wallet_id} failed: {e}")


__all__ = [
    "LedgerReceipt",
    "SignatureVerifier",
    "LedgerGateway",
    "LedgerTransientError",
    "LedgerPermanentError",
    "IdentityProvider",
    "StaticIdentityProvider",
    "NotificationService",
    "send_notification",
]
