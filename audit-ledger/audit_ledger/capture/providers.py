"""
Entity Snapshot Providers
=========================
Pre-change state lookups used for field-level diffing.

The host registers one provider per auditable entity type at startup:

    registry = SnapshotRegistry()
    registry.register(CallableSnapshotProvider(EntityType.CONTACT, load_contact, {"name", "phone"}))

An entity type without a provider is audited with a single general UPDATE
record instead of one record per field.
"""

from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, Optional, Protocol, Union

import structlog

from ..audit.event_types import EntityType

logger = structlog.get_logger(__name__)

Snapshot = Dict[str, Any]


class EntitySnapshotProvider(Protocol):
    """Looks up the current state of one entity type by id."""

    entity_type: EntityType
    # None means every field present in the snapshot is tracked
    tracked_fields: Optional[FrozenSet[str]]

    async def get_snapshot(self, entity_id: int) -> Optional[Snapshot]:
        ...


class CallableSnapshotProvider:
    """Provider backed by an async lookup function."""

    def __init__(
        self,
        entity_type: Union[EntityType, str],
        fetch: Callable[[int], Awaitable[Optional[Snapshot]]],
        tracked_fields: Optional[Iterable[str]] = None,
    ):
        self.entity_type = EntityType(entity_type)
        self.tracked_fields = frozenset(tracked_fields) if tracked_fields is not None else None
        self._fetch = fetch

    async def get_snapshot(self, entity_id: int) -> Optional[Snapshot]:
        return await self._fetch(entity_id)


class SnapshotRegistry:
    """Static mapping from entity type to its snapshot provider."""

    def __init__(self, providers: Iterable[EntitySnapshotProvider] = ()):
        self._providers: Dict[EntityType, EntitySnapshotProvider] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: EntitySnapshotProvider) -> None:
        entity_type = EntityType(provider.entity_type)
        if entity_type in self._providers:
            logger.warning("snapshot_provider_replaced", entity_type=entity_type.value)
        self._providers[entity_type] = provider

    def get(self, entity_type: Union[EntityType, str]) -> Optional[EntitySnapshotProvider]:
        return self._providers.get(EntityType(entity_type))

    def __contains__(self, entity_type) -> bool:
        return EntityType(entity_type) in self._providers

    def __len__(self) -> int:
        return len(self._providers)
