"""
Provider Sync

The boundary used by the cloud-provider adapter. The adapter does the
network I/O; here it mirrors provider definitions into the catalog,
writes back provider-assigned ids, and reads what should be pushed. All
writes go through the journaled mutation path.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Iterable, Optional

from pydantic import BaseModel, Field

from govcore.catalog.catalog import PolicyCatalog
from govcore.catalog.models import ParameterSpec, PolicyOrigin
from govcore.entity import EntityType, build, utcnow
from govcore.exceptions import NotFoundError, ValidationError
from govcore.registry.registry import target_environment_id
from govcore.store.locks import PARTITION, UNPARTITIONED, environment_key

if TYPE_CHECKING:
    from govcore.store.state import StoreState
    from govcore.store.store import GovernanceStore

logger = logging.getLogger(__name__)

SYNC_ACTOR = "provider-sync"

_WRITE_BACK_TYPES = frozenset({
    EntityType.POLICY_DEFINITION,
    EntityType.POLICY_SET,
    EntityType.ASSIGNMENT,
    EntityType.EXEMPTION,
})


class ProviderDefinition(BaseModel):
    """A built-in definition as reported by the provider."""

    provider_id: str
    name: str
    effect: str
    rule: dict[str, Any]
    parameters: dict[str, ParameterSpec] = Field(default_factory=dict)
    display_name: Optional[str] = None
    description: Optional[str] = None


class ProviderExport(BaseModel):
    """Entity images the adapter should push to the provider."""

    exported_at: datetime = Field(default_factory=utcnow)
    sequence: int = 0
    environment_id: Optional[str] = None
    definitions: list[dict[str, Any]] = Field(default_factory=list)
    sets: list[dict[str, Any]] = Field(default_factory=list)
    assignments: list[dict[str, Any]] = Field(default_factory=list)
    exemptions: list[dict[str, Any]] = Field(default_factory=list)


class ProviderSync:
    """Read/write surface for the provider adapter."""

    def __init__(self, store: GovernanceStore) -> None:
        self._store = store
        self._catalog = PolicyCatalog(store)

    def mirror_definitions(
        self,
        definitions: Iterable[ProviderDefinition | dict[str, Any]],
        actor: str = SYNC_ACTOR,
    ) -> list[str]:
        """Create or refresh read-only provider definitions.

        Returns:
            Ids of the definitions that were created or changed.
        """
        items = [d if isinstance(d, ProviderDefinition) else build(ProviderDefinition, **d) for d in definitions]
        changed = []
        with self._store.transaction(actor, exclusive=[UNPARTITIONED]) as txn:
            for item in items:
                written = self._catalog.mirror_provider_definition(txn, **item.model_dump())
                if written is not None:
                    changed.append(written.id)
        logger.info("Mirrored %d provider definition(s), %d changed", len(items), len(changed))
        return changed

    def record_provider_id(
        self,
        entity_type: EntityType,
        entity_id: str,
        provider_id: str,
        actor: str = SYNC_ACTOR,
    ):
        """Write back the id the provider assigned to a pushed entity."""
        if entity_type not in _WRITE_BACK_TYPES:
            raise ValidationError(f"{entity_type.value} entities carry no provider id")
        view = self._store.snapshot()
        entity = view.get(entity_type, entity_id)
        if entity is None:
            raise NotFoundError(f"{entity_type.value} not found: {entity_id}")
        with self._store.transaction(
            actor, exclusive=[environment_key(_environment_of(view, entity))], shared=[PARTITION]
        ) as txn:
            entity = txn.view.require(entity_type, entity_id)
            if entity.provider_id == provider_id:
                return entity
            entity = txn.update(entity.evolve(provider_id=provider_id))
        logger.info("Recorded provider id %s for %s %s", provider_id, entity_type.value, entity_id)
        return entity

    def export_state(self, environment_id: Optional[str] = None) -> ProviderExport:
        """Custom catalog entries, assignments and active exemptions to push."""
        view = self._store.snapshot()
        now = self._store.now()

        def wanted(entity) -> bool:
            return environment_id is None or _environment_of(view, entity) == environment_id

        return ProviderExport(
            exported_at=now,
            sequence=view.sequence,
            environment_id=environment_id,
            definitions=[
                d.snapshot() for d in view.all(EntityType.POLICY_DEFINITION)
                if d.origin == PolicyOrigin.CUSTOM and wanted(d)
            ],
            sets=[
                s.snapshot() for s in view.all(EntityType.POLICY_SET)
                if s.origin == PolicyOrigin.CUSTOM and wanted(s)
            ],
            assignments=[a.snapshot() for a in view.all(EntityType.ASSIGNMENT) if wanted(a)],
            exemptions=[
                e.snapshot() for e in view.all(EntityType.EXEMPTION)
                if e.is_active(now) and wanted(e)
            ],
        )


def _environment_of(view: StoreState, entity) -> Optional[str]:
    if entity.entity_type in (EntityType.ASSIGNMENT, EntityType.EXEMPTION):
        return target_environment_id(view, entity.target)
    return entity.origin_environment_id
