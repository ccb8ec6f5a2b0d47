"""
Idempotency support for transaction execution.

Clients may attach an idempotency key to ``execute``. A retried request with
the same key and the same target replays the recorded outcome instead of
submitting to the ledger again.
"""
from __future__ import annotations

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from .exceptions import IdempotencyKeyConflict, IdempotencyOperationInProgress

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class IdempotencyRecord:
    idempotency_key: str
    operation: str
    request_hash: str
    expires_at: datetime
    status: str = "pending"  # pending, completed, failed
    response: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    actor: Optional[str] = None


class IdempotencyStore(ABC):
    """Abstract interface for idempotency record storage."""

    @abstractmethod
    async def get(self, idempotency_key: str) -> Optional[IdempotencyRecord]:
        pass

    @abstractmethod
    async def create(self, record: IdempotencyRecord) -> bool:
        """
        Create a new idempotency record.

        Returns True if created, False if key already exists.
        """

    @abstractmethod
    async def update(self, record: IdempotencyRecord) -> bool:
        pass

    @abstractmethod
    async def delete(self, idempotency_key: str) -> bool:
        pass

    @abstractmethod
    async def cleanup_expired(self) -> int:
        """Remove expired records. Returns count of removed records."""


class InMemoryIdempotencyStore(IdempotencyStore):
    """
    In-memory idempotency store for development and testing.

    Note: This store is not suitable for production use in distributed
    environments.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._records: Dict[str, IdempotencyRecord] = {}
        self._clock = clock or _utcnow

    async def get(self, idempotency_key: str) -> Optional[IdempotencyRecord]:
        record = self._records.get(idempotency_key)
        if record and record.expires_at < self._clock():
            del self._records[idempotency_key]
            return None
        return record

    async def create(self, record: IdempotencyRecord) -> bool:
        existing = self._records.get(record.idempotency_key)
        if existing and existing.expires_at >= self._clock():
            return False
        self._records[record.idempotency_key] = record
        return True

    async def update(self, record: IdempotencyRecord) -> bool:
        if record.idempotency_key not in self._records:
            return False
        self._records[record.idempotency_key] = record
        return True

    async def delete(self, idempotency_key: str) -> bool:
        if idempotency_key in self._records:
            del self._records[idempotency_key]
            return True
        return False

    async def cleanup_expired(self) -> int:
        now = self._clock()
        expired_keys = [
            key for key, record in self._records.items()
            if record.expires_at < now
        ]
        for key in expired_keys:
            del self._records[key]
        return len(expired_keys)


class IdempotencyManager:
    """
    Manages idempotent operations.

    Operations with the same idempotency key:
    1. Return the same response if already completed
    2. Block concurrent duplicate requests
    3. Allow retries after failures
    """

    def __init__(
        self,
        store: Optional[IdempotencyStore] = None,
        default_ttl_hours: int = 24,
        lock_timeout_seconds: int = 300,
        clock: Optional[Clock] = None,
    ):
        self._clock = clock or _utcnow
        self.store = store or InMemoryIdempotencyStore(clock=self._clock)
        self.default_ttl_hours = default_ttl_hours
        self.lock_timeout_seconds = lock_timeout_seconds

    def _compute_request_hash(self, operation: str, request_data: Dict[str, Any]) -> str:
        normalized = json.dumps(
            {"operation": operation, "request": request_data},
            sort_keys=True,
            default=str,
        )
        return hashlib.sha256(normalized.encode()).hexdigest()

    async def check_idempotency(
        self,
        idempotency_key: str,
        operation: str,
        request_data: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """
        Check if an idempotent operation has already been completed.

        Returns:
            Cached response if operation was completed, None otherwise

        Raises:
            IdempotencyKeyConflict: If key was used with different parameters
            IdempotencyOperationInProgress: If operation is currently running
        """
        record = await self.store.get(idempotency_key)
        if record is None:
            return None

        request_hash = self._compute_request_hash(operation, request_data)
        if record.request_hash != request_hash:
            raise IdempotencyKeyConflict(
                f"Idempotency key '{idempotency_key}' was previously used with "
                f"different request parameters",
                details={"idempotency_key": idempotency_key},
            )

        if record.status == "pending":
            lock_expiry = record.created_at + timedelta(seconds=self.lock_timeout_seconds)
            if self._clock() < lock_expiry:
                raise IdempotencyOperationInProgress(
                    f"Operation with idempotency key '{idempotency_key}' is in progress",
                    details={"idempotency_key": idempotency_key},
                )
            logger.warning(f"Releasing stale idempotency lock for key '{idempotency_key}'")
            await self.store.delete(idempotency_key)
            return None

        if record.status == "completed" and record.response is not None:
            logger.info(f"Returning cached response for idempotency key '{idempotency_key}'")
            return record.response

        # Failed operations can be retried
        if record.status == "failed":
            await self.store.delete(idempotency_key)

        return None

    async def start_operation(
        self,
        idempotency_key: str,
        operation: str,
        request_data: Dict[str, Any],
        actor: Optional[str] = None,
    ) -> IdempotencyRecord:
        """Create a pending record to lock the operation."""
        now = self._clock()
        record = IdempotencyRecord(
            idempotency_key=idempotency_key,
            operation=operation,
            request_hash=self._compute_request_hash(operation, request_data),
            expires_at=now + timedelta(hours=self.default_ttl_hours),
            created_at=now,
            actor=actor,
        )

        if not await self.store.create(record):
            raise IdempotencyOperationInProgress(
                f"Could not acquire lock for idempotency key '{idempotency_key}'",
                details={"idempotency_key": idempotency_key},
            )
        return record

    async def complete_operation(self, idempotency_key: str, response: Dict[str, Any]) -> None:
        record = await self.store.get(idempotency_key)
        if record is None:
            logger.warning(f"Attempted to complete unknown idempotency key '{idempotency_key}'")
            return

        record.status = "completed"
        record.response = response
        record.completed_at = self._clock()
        await self.store.update(record)

    async def fail_operation(self, idempotency_key: str, error_message: Optional[str] = None) -> None:
        record = await self.store.get(idempotency_key)
        if record is None:
            return

        record.status = "failed"
        record.completed_at = self._clock()
        if error_message:
            record.response = {"error": error_message}
        await self.store.update(record)

    async def execute_idempotent(
        self,
        idempotency_key: str,
        operation: str,
        request_data: Dict[str, Any],
        execute_fn: Callable[[], Awaitable[T]],
        serialize_fn: Callable[[T], Dict[str, Any]],
        actor: Optional[str] = None,
    ) -> Tuple[Any, bool]:
        """
        Execute an operation with idempotency guarantees.

        Returns:
            Tuple of (result, is_duplicate). For duplicates the result is the
            serialized response recorded by the first call.
        """
        cached = await self.check_idempotency(idempotency_key, operation, request_data)
        if cached is not None:
            return cached, True

        await self.start_operation(idempotency_key, operation, request_data, actor)

        try:
            result = await execute_fn()
        except Exception as e:
            await self.fail_operation(idempotency_key, str(e))
            raise

        await self.complete_operation(idempotency_key, serialize_fn(result))
        return result, False


__all__ = [
    "IdempotencyRecord",
    "IdempotencyStore",
    "InMemoryIdempotencyStore",
    "IdempotencyManager",
]
