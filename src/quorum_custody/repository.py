"""Entity persistence contract with optimistic concurrency.

One store contract serves wallets, transactions, deposits and fund-split
rules. Every entity carries an integer ``version``; ``update`` only succeeds
when the caller's expected version matches the stored one. Reads hand out
deep copies so callers always work on snapshots.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import weakref
from abc import ABC, abstractmethod
from typing import Callable, Dict, Generic, List, Optional, Tuple, TypeVar

from .exceptions import ConcurrentModification, QuorumConflictError, QuorumNotFoundError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EntityStore(ABC, Generic[T]):
    """Abstract interface for entity storage."""

    @abstractmethod
    async def create(self, entity: T) -> T:
        """Persist a new entity. Raises a conflict if the id is taken."""

    @abstractmethod
    async def get(self, entity_id: str) -> Optional[T]:
        """Return a snapshot of the entity or None."""

    @abstractmethod
    async def update(self, entity: T, expected_version: int) -> T:
        """Replace the stored entity if its version equals ``expected_version``."""

    @abstractmethod
    async def delete(self, entity_id: str) -> bool:
        """Remove an entity. Returns False when it did not exist."""

    @abstractmethod
    async def list(self, predicate: Optional[Callable[[T], bool]] = None) -> List[T]:
        """Return snapshots of all entities matching ``predicate``."""

    async def require(self, entity_id: str) -> T:
        """Like ``get`` but raises NotFound."""
        entity = await self.get(entity_id)
        if entity is None:
            raise QuorumNotFoundError(self.entity_name, entity_id)
        return entity

    @property
    @abstractmethod
    def entity_name(self) -> str:
        """Human-readable entity kind used in errors."""


class InMemoryEntityStore(EntityStore[T]):
    """
    In-memory entity store for development and testing.

    Note: Not suitable for multi-process deployments. A database-backed
    store must enforce the same version check in its UPDATE statement.
    """

    def __init__(self, entity_name: str, id_attr: str):
        self._entity_name = entity_name
        self._id_attr = id_attr
        self._items: Dict[str, T] = {}

    @property
    def entity_name(self) -> str:
        return self._entity_name

    def _id_of(self, entity: T) -> str:
        return getattr(entity, self._id_attr)

    async def create(self, entity: T) -> T:
        entity_id = self._id_of(entity)
        if entity_id in self._items:
            raise QuorumConflictError(
                f"{self._entity_name} '{entity_id}' already exists",
                details={"resource_id": entity_id},
            )
        entity.version = 1
        self._items[entity_id] = copy.deepcopy(entity)
        return entity

    async def get(self, entity_id: str) -> Optional[T]:
        entity = self._items.get(entity_id)
        return copy.deepcopy(entity) if entity is not None else None

    async def update(self, entity: T, expected_version: int) -> T:
        entity_id = self._id_of(entity)
        current = self._items.get(entity_id)
        if current is None:
            raise QuorumNotFoundError(self._entity_name, entity_id)
        if current.version != expected_version:
            logger.warning(
                f"Version conflict on {self._entity_name} {entity_id}: "
                f"expected {expected_version}, stored {current.version}"
            )
            raise ConcurrentModification(
                self._entity_name, entity_id, expected_version, current.version
            )
        entity.version = expected_version + 1
        self._items[entity_id] = copy.deepcopy(entity)
        return entity

    async def delete(self, entity_id: str) -> bool:
        if entity_id in self._items:
            del self._items[entity_id]
            return True
        return False

    async def list(self, predicate: Optional[Callable[[T], bool]] = None) -> List[T]:
        return [
            copy.deepcopy(entity)
            for entity in self._items.values()
            if predicate is None or predicate(entity)
        ]


class EntityLocks:
    """Registry of one asyncio.Lock per (entity kind, entity id).

    Locks are held weakly: an entry lives only while some caller holds or
    waits on the lock, so ids of settled entities do not accumulate.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[Tuple[str, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def get(self, kind: str, entity_id: str) -> asyncio.Lock:
        """Get or create the lock for an entity."""
        key = (kind, entity_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)


__all__ = [
    "EntityStore",
    "InMemoryEntityStore",
    "EntityLocks",
]
