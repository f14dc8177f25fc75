"""Entity Mapping Store -- durable source-id <-> target-id correspondence.

Invariants enforced by every implementation:
- At most one mapping per (entity_type, source_system, source_id).
- Lookup succeeds given either end's id; callers never need to know which
  side they hold.
- An id on a platform belongs to at most one mapping. An upsert that would
  attach an already-mapped id to a different counterpart raises
  MappingConflictError instead of overwriting.

Mappings are never deleted automatically; stale ones are tolerated and
re-validated lazily by the orchestrator.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod

import structlog

from src.syncbridge.sync.errors import MappingConflictError
from src.syncbridge.sync.schemas import EntityMapping, EntityType, Platform

logger = structlog.get_logger(__name__)


class MappingRepository(ABC):
    """Abstract interface for Entity Mapping persistence."""

    @abstractmethod
    async def find(
        self, entity_type: EntityType, system: Platform, entity_id: str
    ) -> EntityMapping | None:
        """Find the mapping that has (system, entity_id) at either end."""
        ...

    @abstractmethod
    async def upsert(self, mapping: EntityMapping) -> EntityMapping:
        """Insert or refresh a mapping; raises MappingConflictError on collision."""
        ...

    @abstractmethod
    async def list_mappings(self, entity_type: EntityType) -> list[EntityMapping]:
        """Return every mapping of ``entity_type``."""
        ...


def _endpoint(entity_type: EntityType, system: Platform, entity_id: str) -> tuple[str, str, str]:
    return (entity_type.value, system.value, entity_id)


def _source_key(mapping: EntityMapping) -> tuple[str, str, str]:
    return _endpoint(mapping.entity_type, mapping.source_system, mapping.source_id)


def _target_key(mapping: EntityMapping) -> tuple[str, str, str]:
    return _endpoint(mapping.entity_type, mapping.target_system, mapping.target_id)


class InMemoryMappingRepository(MappingRepository):
    """Process-local mapping store.

    Both ends of every mapping are indexed so lookups by either id are O(1).
    Writes are serialized with an asyncio.Lock so a single upsert is atomic
    with respect to concurrent workers.
    """

    def __init__(self) -> None:
        self._mappings: dict[tuple[str, str, str], EntityMapping] = {}
        self._endpoints: dict[tuple[str, str, str], tuple[str, str, str]] = {}
        self._lock = asyncio.Lock()

    async def find(
        self, entity_type: EntityType, system: Platform, entity_id: str
    ) -> EntityMapping | None:
        key = self._endpoints.get(_endpoint(entity_type, system, entity_id))
        if key is None:
            return None
        mapping = self._mappings.get(key)
        return mapping.model_copy() if mapping else None

    async def upsert(self, mapping: EntityMapping) -> EntityMapping:
        source_key = _source_key(mapping)
        target_key = _target_key(mapping)

        async with self._lock:
            existing = self._mappings.get(source_key)
            if existing is None:
                # The source id may already be mapped from the other orientation
                owner = self._endpoints.get(source_key)
                if owner is not None:
                    current = self._mappings[owner]
                    if not current.matches(mapping.target_system, mapping.target_id):
                        msg = (
                            f"{mapping.source_system.value} id '{mapping.source_id}' is already "
                            f"mapped to {current.id_on(mapping.target_system)}"
                        )
                        raise MappingConflictError(msg, entity_id=mapping.source_id)
                    # Same pair stored the other way round -- refresh that record
                    current.last_synced_at = mapping.last_synced_at
                    return current.model_copy()

            owner = self._endpoints.get(target_key)
            if owner is not None and owner != source_key:
                holder = self._mappings[owner]
                msg = (
                    f"{mapping.target_system.value} id '{mapping.target_id}' is already mapped "
                    f"to {holder.source_system.value} id '{holder.source_id}'"
                )
                raise MappingConflictError(msg, entity_id=mapping.source_id)

            if existing is not None and existing.target_id != mapping.target_id:
                self._endpoints.pop(_target_key(existing), None)

            stored = mapping.model_copy()
            self._mappings[source_key] = stored
            self._endpoints[source_key] = source_key
            self._endpoints[target_key] = source_key

        logger.debug(
            "mapping.upserted",
            entity_type=mapping.entity_type.value,
            source_id=mapping.source_id,
            target_id=mapping.target_id,
        )
        return stored.model_copy()

    async def list_mappings(self, entity_type: EntityType) -> list[EntityMapping]:
        return [
            m.model_copy() for m in self._mappings.values() if m.entity_type is entity_type
        ]
